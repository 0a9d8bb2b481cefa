"""Exception classes for xdgwrap - an XDG dotfile relocating wrapper."""

from typing import Optional


class XdgWrapError(Exception):
    """Base exception for all xdgwrap-related errors."""

    pass


class XdgWrapEnvironmentError(XdgWrapError):
    """Raised when a required program or capability is missing."""

    pass


class XdgWrapIOError(XdgWrapError):
    """Raised when home or storage cannot be read or written."""

    pass


class XdgWrapValidationError(XdgWrapError):
    """Errors related to identity or relocation key validation."""

    pass


class XdgWrapConfigurationError(XdgWrapError):
    """Errors related to configuration management."""

    pass


class XdgWrapLockError(XdgWrapError):
    """Raised when another invocation already wraps the same program."""

    pass


class XdgWrapRelocationError(XdgWrapError):
    """Errors related to moving entries between home and storage."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message)
        self.key = key


class XdgWrapRestoreCollisionError(XdgWrapRelocationError):
    """Raised when an entry slated for restore already exists in home."""

    pass


class XdgWrapRegistryDriftError(XdgWrapRelocationError):
    """Raised when the registry names an entry missing from the filesystem."""

    pass
