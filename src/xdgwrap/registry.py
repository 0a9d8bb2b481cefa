"""Program registry for xdgwrap.

The registry maps a program identity to the ordered set of relocation keys
it owns. It is stored as a flat text file, one record per line::

    identity;key1;key2;...;keyN;

Lines are kept sorted after every write.
"""

import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .exceptions import XdgWrapIOError, XdgWrapValidationError

# Constants
FIELD_SEPARATOR = ";"
REGISTRY_FILENAME = ".registry"


# ============================================================================
# VALIDATION
# ============================================================================


def validate_identity(identity: str) -> str:
    """Return identity unchanged, or raise if it cannot be stored."""
    if not identity:
        raise XdgWrapValidationError("Program identity must not be empty")
    if FIELD_SEPARATOR in identity or "\n" in identity:
        raise XdgWrapValidationError(
            f"Program identity '{identity}' must not contain "
            f"'{FIELD_SEPARATOR}' or newlines"
        )
    if "/" in identity or identity.startswith("."):
        raise XdgWrapValidationError(
            f"Program identity '{identity}' must be a plain name "
            "without '/' or a leading '.'"
        )
    return identity


def validate_key(key: str) -> str:
    """Return key unchanged, or raise if it is not a safe relocation key."""
    if not key:
        raise XdgWrapValidationError("Relocation key must not be empty")
    if FIELD_SEPARATOR in key or "\n" in key:
        raise XdgWrapValidationError(
            f"Relocation key '{key}' must not contain "
            f"'{FIELD_SEPARATOR}' or newlines"
        )
    # Keys must stay inside home and storage
    if key.startswith("/") or ".." in Path(key).parts:
        raise XdgWrapValidationError(
            f"Relocation key '{key}' must be a relative path inside home"
        )
    return key


def normalize_keys(keys: Sequence[str]) -> List[str]:
    """Validate keys and drop duplicates, keeping first occurrence."""
    seen = set()
    result = []
    for key in keys:
        validate_key(key)
        if key not in seen:
            seen.add(key)
            result.append(key)
    return result


# ============================================================================
# LINE FORMAT
# ============================================================================


def parse_line(line: str) -> Tuple[str, List[str]]:
    """Split a registry record into its identity and relocation keys."""
    fields = line.rstrip("\n").split(FIELD_SEPARATOR)
    identity = fields[0]
    keys = [field for field in fields[1:] if field]
    return identity, keys


def format_line(identity: str, keys: Sequence[str]) -> str:
    """Build the canonical record for identity, without a newline."""
    validate_identity(identity)
    fields = [identity] + normalize_keys(keys)
    return FIELD_SEPARATOR.join(fields) + FIELD_SEPARATOR


# ============================================================================
# FILE ACCESS
# ============================================================================


def _read_lines(registry_file: Path) -> List[str]:
    if not registry_file.exists():
        return []
    try:
        text = registry_file.read_text(encoding="utf-8")
    except OSError as e:
        raise XdgWrapIOError(f"Could not read registry {registry_file}: {e}") from e
    return [line for line in text.splitlines() if line.strip()]


def _write_lines(registry_file: Path, lines: List[str]) -> None:
    """Write lines sorted, replacing the registry file atomically."""
    try:
        registry_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=str(registry_file.parent), prefix=".registry-", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                for line in sorted(lines):
                    f.write(line + "\n")
            os.replace(tmp_name, registry_file)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
    except OSError as e:
        raise XdgWrapIOError(f"Could not write registry {registry_file}: {e}") from e


def load_registry(registry_file: Path) -> Dict[str, List[str]]:
    """Load the whole registry. Missing file means an empty registry.

    When an identity appears on several lines the first one wins, which is
    how older append-only registries were read.
    """
    registry: Dict[str, List[str]] = {}
    for line in _read_lines(registry_file):
        identity, keys = parse_line(line)
        if identity and identity not in registry:
            registry[identity] = keys
    return registry


def lookup(registry_file: Path, identity: str) -> Optional[List[str]]:
    """Return the keys stored for identity, or None for an unknown program.

    Keys from a hand-edited record are validated before anything moves them.
    """
    keys = load_registry(registry_file).get(identity)
    if keys is not None:
        for key in keys:
            validate_key(key)
    return keys


def persist(registry_file: Path, identity: str, keys: Sequence[str]) -> None:
    """Store keys for identity, replacing any earlier record for it."""
    new_line = format_line(identity, keys)
    lines = [
        line for line in _read_lines(registry_file) if parse_line(line)[0] != identity
    ]
    lines.append(new_line)
    _write_lines(registry_file, lines)


def forget(registry_file: Path, identity: str) -> bool:
    """Remove every record for identity. Return False if there was none."""
    lines = _read_lines(registry_file)
    kept = [line for line in lines if parse_line(line)[0] != identity]
    if len(kept) == len(lines):
        return False
    _write_lines(registry_file, kept)
    return True
