"""Core functionality for xdgwrap - an XDG dotfile relocating wrapper."""

import copy
import fcntl
import fnmatch
import json
import os
import shutil
import signal
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set

import typer

from . import registry
from .exceptions import (
    XdgWrapConfigurationError,
    XdgWrapEnvironmentError,
    XdgWrapIOError,
    XdgWrapLockError,
    XdgWrapRegistryDriftError,
    XdgWrapRelocationError,
    XdgWrapRestoreCollisionError,
    XdgWrapValidationError,
)

# Constants
APP_DIR_NAME = "xdgwrap"
CONFIG_FILENAME = "config.json"
LOCK_DIR_NAME = ".locks"
STORAGE_ROOT_ENV = "XDGWRAP_DIR"
MODE_DISCOVER = "discover"
MODE_RESTORE = "restore"

# Default configuration
DEFAULT_CONFIG: Dict[str, Any] = {
    "storage_root": "",  # empty means $XDG_DATA_HOME/xdgwrap
    "propagate_exit_code": True,
    "discovery": {
        "exclude": [
            ".cache",  # XDG base directories are never owned by one program
            ".config",
            ".local",
        ],
        "case_sensitive": False,
    },
}


# ============================================================================
# PATH MANAGEMENT
# ============================================================================


def get_home_dir() -> Path:
    """Get the home directory, respecting environment variables for testing."""
    if "HOME" in os.environ:
        return Path(os.environ["HOME"])
    return Path.home()


def _xdg_dir(variable: str, fallback: Path) -> Path:
    # Relative values are invalid per the XDG base directory convention
    value = os.environ.get(variable, "")
    if value and os.path.isabs(value):
        return Path(value)
    return fallback


def get_xdgwrap_paths(home_dir: Optional[Path] = None) -> Dict[str, Path]:
    """Get all xdgwrap-related default paths based on home directory."""
    if home_dir is None:
        home_dir = get_home_dir()

    data_home = _xdg_dir("XDG_DATA_HOME", home_dir / ".local" / "share")
    config_home = _xdg_dir("XDG_CONFIG_HOME", home_dir / ".config")
    config_dir = config_home / APP_DIR_NAME

    return {
        "home": home_dir,
        "storage_root": data_home / APP_DIR_NAME,
        "config_dir": config_dir,
        "config_file": config_dir / CONFIG_FILENAME,
    }


def resolve_storage_root(
    override: Optional[Path] = None,
    config: Optional[Dict[str, Any]] = None,
    home_dir: Optional[Path] = None,
) -> Path:
    """Pick the storage root: explicit override, env var, config, XDG default."""
    if override is not None:
        return Path(override).expanduser()
    env_value = os.environ.get(STORAGE_ROOT_ENV, "")
    if env_value:
        return Path(env_value).expanduser()
    if config is None:
        config = load_config()
    configured = config.get("storage_root") or ""
    if configured:
        return Path(configured).expanduser()
    return get_xdgwrap_paths(home_dir)["storage_root"]


def derive_identity(command: str) -> str:
    """Default identity for a program: its invocation path without directories."""
    return Path(command).name


@dataclass
class WrapContext:
    """Everything one invocation needs to know about where things live."""

    home: Path
    storage_root: Path
    identity: str

    def __post_init__(self) -> None:
        registry.validate_identity(self.identity)
        self.home = Path(self.home)
        self.storage_root = Path(self.storage_root)

    @property
    def registry_file(self) -> Path:
        return self.storage_root / registry.REGISTRY_FILENAME

    @property
    def program_dir(self) -> Path:
        return self.storage_root / self.identity

    @property
    def lock_file(self) -> Path:
        return self.storage_root / LOCK_DIR_NAME / f"{self.identity}.lock"

    def home_path(self, key: str) -> Path:
        """Where the entry for key lives while the program runs."""
        return self.home / f".{key}"

    def stored_path(self, key: str) -> Path:
        """Where the entry for key lives between runs."""
        return self.program_dir / key


@dataclass
class WrapResult:
    """Outcome of one wrapped run."""

    identity: str
    mode: str
    keys: List[str] = field(default_factory=list)
    exit_code: int = 0


# ============================================================================
# CONFIGURATION MANAGEMENT
# ============================================================================


def _config_file(config_file: Optional[Path]) -> Path:
    if config_file is None:
        return get_xdgwrap_paths()["config_file"]
    return config_file


def load_config(config_file: Optional[Path] = None) -> Dict[str, Any]:
    """Load configuration from config file, or return default if not exists."""
    config_file = _config_file(config_file)
    if not config_file.exists():
        return copy.deepcopy(DEFAULT_CONFIG)

    try:
        with open(config_file, "r", encoding="utf-8") as f:
            config = json.load(f)
        if not isinstance(config, dict):
            raise ValueError("top level must be an object")
    except (json.JSONDecodeError, ValueError, OSError) as e:
        typer.secho(
            f"Warning: Error reading config file: {e}. Using defaults.",
            fg=typer.colors.YELLOW,
            err=True,
        )
        return copy.deepcopy(DEFAULT_CONFIG)

    # Merge with defaults to ensure all keys exist
    merged_config = copy.deepcopy(DEFAULT_CONFIG)
    for key, value in config.items():
        if isinstance(value, dict) and isinstance(merged_config.get(key), dict):
            merged_config[key].update(value)
        else:
            merged_config[key] = value
    return merged_config


def save_config(config: Dict[str, Any], config_file: Optional[Path] = None) -> None:
    """Save configuration to config file."""
    config_file = _config_file(config_file)
    try:
        config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(config_file, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2)
    except OSError as e:
        raise XdgWrapConfigurationError(
            f"Could not write config file {config_file}: {e}"
        ) from e


def get_config_value(key_path: str, config_file: Optional[Path] = None) -> Any:
    """Get a configuration value by key path (e.g., 'discovery.exclude')."""
    value: Any = load_config(config_file)
    try:
        for key in key_path.split("."):
            value = value[key]
    except (KeyError, TypeError):
        raise XdgWrapConfigurationError(
            f"Configuration key '{key_path}' not found."
        ) from None
    return value


def set_config_value(
    key_path: str, value: Any, config_file: Optional[Path] = None
) -> None:
    """Set a configuration value by key path.

    String values that parse as JSON (``true``, ``3``, ``["a"]``) are stored
    as the parsed value.
    """
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            pass

    config = load_config(config_file)
    keys = key_path.split(".")
    target = config
    for key in keys[:-1]:
        if not isinstance(target.get(key), dict):
            target[key] = {}
        target = target[key]
    target[keys[-1]] = value
    save_config(config, config_file)


def reset_config(config_file: Optional[Path] = None) -> None:
    """Reset configuration to defaults."""
    save_config(copy.deepcopy(DEFAULT_CONFIG), config_file)


# ============================================================================
# SNAPSHOT AND DISCOVERY
# ============================================================================


def snapshot(home: Path) -> Set[str]:
    """Names of the entries directly inside home, dotfiles included."""
    try:
        return set(os.listdir(home))
    except OSError as e:
        raise XdgWrapIOError(f"Could not read home directory {home}: {e}") from e


def diff_snapshots(before: Iterable[str], after: Iterable[str]) -> List[str]:
    """Relocation keys for the dot-entries present in after but not before."""
    new_entries = set(after) - set(before)
    keys = {name[1:] for name in new_entries if name.startswith(".")}
    keys.discard("")
    return sorted(keys)


def matches_patterns(
    filename: str, patterns: Sequence[str], case_sensitive: bool = False
) -> bool:
    """Check if a filename matches any of the given fnmatch patterns."""
    if not case_sensitive:
        filename = filename.lower()
        patterns = [p.lower() for p in patterns]
    return any(fnmatch.fnmatch(filename, pattern) for pattern in patterns)


def filter_keys(
    keys: Sequence[str],
    exclude_patterns: Sequence[str] = (),
    case_sensitive: bool = False,
) -> List[str]:
    """Drop keys whose dotted home name matches an exclude pattern."""
    return [
        key
        for key in keys
        if not matches_patterns(f".{key}", exclude_patterns, case_sensitive)
    ]


# ============================================================================
# RELOCATION
# ============================================================================


def _move(src: Path, dest: Path) -> None:
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(src), str(dest))
    except OSError as e:
        raise XdgWrapIOError(f"Could not move {src} to {dest}: {e}") from e


def _check_destination(ctx: WrapContext, key: str) -> None:
    dest = ctx.stored_path(key)
    if not os.path.lexists(dest):
        return
    # A leftover empty folder is safe to replace, stored data is not
    if dest.is_dir() and not dest.is_symlink() and not any(dest.iterdir()):
        return
    raise XdgWrapRelocationError(
        f"Refusing to overwrite stored entry {dest}", key=key
    )


def evacuate(ctx: WrapContext, keys: Sequence[str], quiet: bool = False) -> None:
    """Move every owned entry out of home into the program's storage folder.

    Entries that are present are all moved even if some are missing, so home
    is as clean as possible; the first missing key is then reported as drift.
    """
    missing = []
    for key in keys:
        src = ctx.home_path(key)
        dest = ctx.stored_path(key)

        if not os.path.lexists(src):
            missing.append(key)
            continue

        _check_destination(ctx, key)
        if os.path.lexists(dest):
            dest.rmdir()

        _move(src, dest)
        if not quiet:
            typer.secho(f"Stored .{key}", fg=typer.colors.GREEN)

    if missing:
        raise XdgWrapRegistryDriftError(
            f"Registered entry {ctx.home_path(missing[0])} for "
            f"'{ctx.identity}' is missing from home",
            key=missing[0],
        )


def restore(ctx: WrapContext, keys: Sequence[str], quiet: bool = False) -> None:
    """Move every owned entry from storage back into home.

    Nothing is moved unless every key passes the pre-flight checks.
    """
    for key in keys:
        if os.path.lexists(ctx.home_path(key)):
            raise XdgWrapRestoreCollisionError(
                f"Cannot restore '{key}': {ctx.home_path(key)} already exists",
                key=key,
            )

    for key in keys:
        if not os.path.lexists(ctx.stored_path(key)):
            raise XdgWrapRegistryDriftError(
                f"Registered entry '{key}' for '{ctx.identity}' is missing "
                f"from {ctx.program_dir}",
                key=key,
            )

    for key in keys:
        _move(ctx.stored_path(key), ctx.home_path(key))
        if not quiet:
            typer.secho(f"Restored .{key}", fg=typer.colors.GREEN)


# ============================================================================
# LOCKING
# ============================================================================


@contextmanager
def program_lock(ctx: WrapContext) -> Iterator[None]:
    """Hold an advisory lock for ctx.identity for the duration of the block."""
    try:
        ctx.lock_file.parent.mkdir(parents=True, exist_ok=True)
        fh = open(ctx.lock_file, "w")
    except OSError as e:
        raise XdgWrapIOError(f"Could not create lock file {ctx.lock_file}: {e}") from e

    with fh:
        try:
            fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise XdgWrapLockError(
                f"Another xdgwrap process is already running '{ctx.identity}'"
            ) from None
        try:
            yield
        finally:
            fcntl.flock(fh, fcntl.LOCK_UN)


# ============================================================================
# CHILD PROCESS
# ============================================================================


def resolve_program(command: str) -> str:
    """Return the executable for command, searching PATH for bare names."""
    if os.sep in command:
        path = Path(command).expanduser()
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)
    else:
        found = shutil.which(command)
        if found:
            return found
    raise XdgWrapEnvironmentError(f"Program '{command}' not found")


def run_program(
    command: str, args: Sequence[str] = (), executable: Optional[str] = None
) -> int:
    """Run command with args, inheriting environment and standard streams."""
    if executable is None:
        executable = resolve_program(command)
    try:
        proc = subprocess.Popen([command, *args], executable=executable)
    except OSError as e:
        raise XdgWrapEnvironmentError(f"Could not start '{command}': {e}") from e

    # SIGINT from the terminal reaches the child; keep waiting for it
    previous = signal.signal(signal.SIGINT, signal.SIG_IGN)
    try:
        return proc.wait()
    finally:
        signal.signal(signal.SIGINT, previous)


def exit_status(returncode: int) -> int:
    """Map a subprocess return code to a shell-style exit status."""
    if returncode < 0:
        # Killed by a signal
        return 128 + abs(returncode)
    return returncode


# ============================================================================
# ORCHESTRATION
# ============================================================================


def _storable_keys(keys: Sequence[str], quiet: bool) -> List[str]:
    # Names the registry format cannot hold stay in home
    storable = []
    for key in keys:
        try:
            registry.validate_key(key)
        except XdgWrapValidationError as e:
            if not quiet:
                typer.secho(f"Warning: skipping '.{key}': {e}", fg=typer.colors.YELLOW)
            continue
        storable.append(key)
    return storable


def _discover(
    ctx: WrapContext,
    command: str,
    args: Sequence[str],
    executable: str,
    exclude_patterns: Sequence[str],
    case_sensitive: bool,
    quiet: bool,
) -> WrapResult:
    before = snapshot(ctx.home)
    returncode = run_program(command, args, executable)
    after = snapshot(ctx.home)

    keys = filter_keys(diff_snapshots(before, after), exclude_patterns, case_sensitive)
    keys = _storable_keys(keys, quiet)
    if not keys:
        if not quiet:
            typer.secho(
                f"No new dotfiles created by '{ctx.identity}', nothing to store",
                fg=typer.colors.YELLOW,
            )
        return WrapResult(ctx.identity, MODE_DISCOVER, [], returncode)

    if not quiet:
        typer.secho(
            f"Discovered {len(keys)} new dotfile(s) for '{ctx.identity}': "
            + ", ".join(f".{key}" for key in keys),
            fg=typer.colors.BLUE,
        )
    # Stored data left behind by --forget must not be overwritten
    for key in keys:
        _check_destination(ctx, key)
    registry.persist(ctx.registry_file, ctx.identity, keys)
    evacuate(ctx, keys, quiet=quiet)
    return WrapResult(ctx.identity, MODE_DISCOVER, keys, returncode)


def _restore_and_run(
    ctx: WrapContext,
    keys: List[str],
    command: str,
    args: Sequence[str],
    executable: str,
    quiet: bool,
) -> WrapResult:
    restore(ctx, keys, quiet=quiet)
    try:
        returncode = run_program(command, args, executable)
    finally:
        evacuate(ctx, keys, quiet=quiet)
    return WrapResult(ctx.identity, MODE_RESTORE, keys, returncode)


def wrap_program(
    ctx: WrapContext,
    command: str,
    args: Sequence[str] = (),
    exclude_patterns: Sequence[str] = (),
    case_sensitive: bool = False,
    quiet: bool = False,
) -> WrapResult:
    """Run command so that its dotfiles only exist in home while it runs.

    Unknown programs are run once with the home directory diffed around the
    run, and the new dot-entries are recorded. Known programs get their
    entries restored before the run. Either way the entries are moved back
    to storage afterwards.
    """
    executable = resolve_program(command)

    with program_lock(ctx):
        keys = registry.lookup(ctx.registry_file, ctx.identity)
        if keys is None:
            return _discover(
                ctx,
                command,
                args,
                executable,
                exclude_patterns,
                case_sensitive,
                quiet,
            )
        return _restore_and_run(ctx, keys, command, args, executable, quiet)


def list_programs(storage_root: Path) -> Dict[str, List[str]]:
    """Return the full registry stored under a storage root."""
    return registry.load_registry(storage_root / registry.REGISTRY_FILENAME)


def forget_program(ctx: WrapContext) -> bool:
    """Drop the registry record for ctx.identity, leaving stored files alone."""
    with program_lock(ctx):
        return registry.forget(ctx.registry_file, ctx.identity)
