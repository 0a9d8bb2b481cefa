"""
xdgwrap - keep a program's dotfiles out of your home directory.

xdgwrap runs a program, records which dotfiles it creates in your home
directory, and moves them into an XDG data folder between runs so that your
home stays clean while the program still finds its files.
"""

__version__ = "0.1.0"
__license__ = "GPL-3.0-or-later"

from .core import (
    WrapContext,
    WrapResult,
    diff_snapshots,
    evacuate,
    restore,
    snapshot,
    wrap_program,
)
from .registry import lookup, persist

__all__ = [
    "WrapContext",
    "WrapResult",
    "snapshot",
    "diff_snapshots",
    "evacuate",
    "restore",
    "wrap_program",
    # Registry functions
    "lookup",
    "persist",
]
