"""Tests for the xdgwrap program registry."""

from pathlib import Path

import pytest

from xdgwrap import registry
from xdgwrap.exceptions import XdgWrapValidationError


class TestLineFormat:
    """Test parsing and formatting of registry records."""

    @pytest.mark.parametrize(
        "line,expected",
        [
            ("bar;barrc;", ("bar", ["barrc"])),
            ("bar;barrc;bar.d;\n", ("bar", ["barrc", "bar.d"])),
            ("bar;barrc", ("bar", ["barrc"])),
            ("bar;", ("bar", [])),
            ("vim;;viminfo;;vim;", ("vim", ["viminfo", "vim"])),
            ("tool;config/tool/settings;", ("tool", ["config/tool/settings"])),
        ],
    )
    def test_parse_line(self, line, expected):
        """Test that the first field is the identity and empty fields are dropped."""
        assert registry.parse_line(line) == expected

    def test_format_line_has_trailing_separator(self):
        """Test the canonical record layout."""
        assert registry.format_line("bar", ["barrc", "bar.d"]) == "bar;barrc;bar.d;"

    def test_format_line_drops_duplicate_keys(self):
        """Test that duplicate keys keep their first position."""
        assert registry.format_line("bar", ["b", "a", "b"]) == "bar;b;a;"

    def test_format_line_without_keys(self):
        """Test formatting an identity with an empty path set."""
        assert registry.format_line("bar", []) == "bar;"


class TestValidation:
    """Test identity and key validation."""

    @pytest.mark.parametrize(
        "identity", ["", "a;b", "a\nb", "dir/bar", ".hidden", ".locks"]
    )
    def test_invalid_identity(self, identity):
        """Test that identities unusable as a record or folder name are rejected."""
        with pytest.raises(XdgWrapValidationError):
            registry.validate_identity(identity)

    @pytest.mark.parametrize("identity", ["bar", "my-tool", "tool.v2", "Tool_3"])
    def test_valid_identity(self, identity):
        """Test that ordinary program names are accepted."""
        assert registry.validate_identity(identity) == identity

    @pytest.mark.parametrize(
        "key", ["", "a;b", "a\nb", "/etc/passwd", "../escape", "config/../../x"]
    )
    def test_invalid_key(self, key):
        """Test that keys escaping home or breaking the format are rejected."""
        with pytest.raises(XdgWrapValidationError):
            registry.validate_key(key)

    def test_format_line_validates(self):
        """Test that formatting refuses a key containing the separator."""
        with pytest.raises(XdgWrapValidationError):
            registry.format_line("bar", ["bad;key"])


class TestRegistryFile:
    """Test reading and writing the registry file."""

    @pytest.fixture
    def registry_file(self, storage_root: Path) -> Path:
        return storage_root / registry.REGISTRY_FILENAME

    def test_lookup_missing_file(self, registry_file):
        """Test that an absent registry is not an error."""
        assert registry.lookup(registry_file, "bar") is None
        assert not registry_file.exists()

    def test_lookup_unknown_identity(self, registry_file):
        """Test lookup of a program that was never registered."""
        registry_file.parent.mkdir(parents=True)
        registry_file.write_text("foo;foorc;\n")

        assert registry.lookup(registry_file, "bar") is None

    def test_persist_creates_storage_root(self, registry_file):
        """Test that persist creates the registry and its folder."""
        registry.persist(registry_file, "bar", ["barrc"])

        assert registry_file.read_text() == "bar;barrc;\n"

    def test_persist_lookup_round_trip(self, registry_file):
        """Test that persisted keys are returned by lookup."""
        registry.persist(registry_file, "bar", ["a", "b", "c"])

        assert set(registry.lookup(registry_file, "bar")) == {"a", "b", "c"}

    def test_persist_keeps_lines_sorted(self, registry_file):
        """Test that records are sorted after every write."""
        registry.persist(registry_file, "zsh", ["zshrc"])
        registry.persist(registry_file, "bar", ["barrc"])
        registry.persist(registry_file, "mutt", ["muttrc"])

        assert registry_file.read_text().splitlines() == [
            "bar;barrc;",
            "mutt;muttrc;",
            "zsh;zshrc;",
        ]

    def test_persist_replaces_existing_record(self, registry_file):
        """Test that persisting an identity again leaves one record for it."""
        registry.persist(registry_file, "bar", ["barrc"])
        registry.persist(registry_file, "foo", ["foorc"])
        registry.persist(registry_file, "bar", ["bar.d"])

        lines = registry_file.read_text().splitlines()
        assert lines == ["bar;bar.d;", "foo;foorc;"]
        assert registry.lookup(registry_file, "bar") == ["bar.d"]

    def test_persist_does_not_leave_temp_files(self, registry_file):
        """Test that the atomic write cleans up after itself."""
        registry.persist(registry_file, "bar", ["barrc"])

        assert [p.name for p in registry_file.parent.iterdir()] == [
            registry.REGISTRY_FILENAME
        ]

    def test_load_registry_first_duplicate_wins(self, registry_file):
        """Test reading a registry written by an append-only tool."""
        registry_file.parent.mkdir(parents=True)
        registry_file.write_text("bar;old;\nbar;new;\nfoo;foorc;\n\n")

        assert registry.load_registry(registry_file) == {
            "bar": ["old"],
            "foo": ["foorc"],
        }

    @pytest.mark.parametrize("bad_key", ["../x", "/etc/passwd", "a/../../b"])
    def test_lookup_rejects_escaping_keys(self, registry_file, bad_key):
        """Test that a hand-edited key leaving home is refused on lookup."""
        registry_file.parent.mkdir(parents=True)
        registry_file.write_text(f"bar;barrc;{bad_key};\n")

        with pytest.raises(XdgWrapValidationError):
            registry.lookup(registry_file, "bar")

    def test_persist_collapses_legacy_duplicates(self, registry_file):
        """Test that an upsert removes every stale record for the identity."""
        registry_file.parent.mkdir(parents=True)
        registry_file.write_text("bar;old;\nbar;older;\n")

        registry.persist(registry_file, "bar", ["barrc"])

        assert registry_file.read_text() == "bar;barrc;\n"

    def test_identity_prefix_is_not_a_match(self, registry_file):
        """Test that 'ba' does not match the record for 'bar'."""
        registry.persist(registry_file, "bar", ["barrc"])

        assert registry.lookup(registry_file, "ba") is None

    def test_forget(self, registry_file):
        """Test removing a record."""
        registry.persist(registry_file, "bar", ["barrc"])
        registry.persist(registry_file, "foo", ["foorc"])

        assert registry.forget(registry_file, "bar") is True
        assert registry.lookup(registry_file, "bar") is None
        assert registry.lookup(registry_file, "foo") == ["foorc"]

    def test_forget_unknown(self, registry_file):
        """Test forgetting a program that is not registered."""
        assert registry.forget(registry_file, "bar") is False
        assert not registry_file.exists()
