"""Tests for FileCatalog enumeration, lookup and scoped streams."""

from unittest.mock import patch

import pytest

from catalog.file_catalog import FileCatalog, is_temporary_name, validate_file_name
from catalog.storage_provider import LocalStorageProvider
from common.exceptions import StorageError


@pytest.fixture
def populated(server_root, make_file):
    make_file(server_root, "top.txt", b"top")
    make_file(server_root, "a/nested.txt", b"nested")
    make_file(server_root, "a/deeper/deep.bin", b"\x00" * 32)
    make_file(server_root, "b/other.txt", b"other")
    (server_root / "empty_dir").mkdir()
    return FileCatalog(server_root)


class TestListing:

    def test_recursive_listing_contains_only_files(self, populated):
        entries = populated.list_files()

        assert sorted(e.name for e in entries) == ["deep.bin", "nested.txt", "other.txt", "top.txt"]
        assert not any(e.is_directory for e in entries)

    def test_sizes(self, populated):
        sizes = {e.name: e.size for e in populated.list_files()}

        assert sizes["deep.bin"] == 32
        assert sizes["top.txt"] == 3

    def test_non_recursive_listing(self, populated):
        assert [e.name for e in populated.list_files(recursive=False)] == ["top.txt"]

    def test_empty_root(self, client_catalog):
        assert client_catalog.list_files() == []
        assert client_catalog.names() == []

    def test_root_is_created(self, tmp_path):
        catalog = FileCatalog(tmp_path / "new" / "root")

        assert (tmp_path / "new" / "root").is_dir()
        assert catalog.list_files() == []

    def test_temporary_files_are_hidden(self, server_root, make_file):
        make_file(server_root, ".peersync-abc123.partial", b"half")
        make_file(server_root, "real.txt", b"x")

        assert FileCatalog(server_root).names() == ["real.txt"]

    def test_enumeration_failure_becomes_storage_error(self, populated):
        with patch.object(LocalStorageProvider, "enumerate", side_effect=FileNotFoundError("gone")):
            with pytest.raises(StorageError, match="Failed to enumerate"):
                populated.list_files()

    def test_dangling_link_is_skipped(self, server_root, make_file):
        make_file(server_root, "a.txt", b"a")
        (server_root / "dangling").symlink_to(server_root / "gone")

        assert FileCatalog(server_root).names() == ["a.txt"]

    def test_file_link_listed_with_target_size(self, server_root, tmp_path):
        target = tmp_path / "outside.bin"
        target.write_bytes(b"12345")
        (server_root / "linked.bin").symlink_to(target)

        entries = FileCatalog(server_root).list_files()

        assert [(e.name, e.size) for e in entries] == [("linked.bin", 5)]

    def test_directory_link_is_not_followed(self, server_root, tmp_path, make_file):
        make_file(tmp_path / "elsewhere", "hidden.txt", b"h")
        (server_root / "loop").symlink_to(tmp_path / "elsewhere", target_is_directory=True)
        (server_root / "self").symlink_to(server_root, target_is_directory=True)

        assert FileCatalog(server_root).list_files() == []


class TestLookup:

    def test_get_file(self, populated):
        entry = populated.get_file("deep.bin")

        assert entry is not None
        assert entry.size == 32

    def test_get_missing_file(self, populated):
        assert populated.get_file("nope.txt") is None

    def test_duplicate_names_first_match_wins(self, server_root, make_file):
        make_file(server_root, "a/dup.txt", b"from a")
        make_file(server_root, "b/dup.txt", b"from b")
        catalog = FileCatalog(server_root)

        entry = catalog.get_file("dup.txt")

        with catalog.open_read(entry) as stream:
            assert stream.read() == b"from a"
        assert catalog.names().count("dup.txt") == 2


class TestStreams:

    def test_open_read_closes_stream(self, populated):
        entry = populated.get_file("top.txt")

        with populated.open_read(entry) as stream:
            assert stream.read() == b"top"

        assert stream.closed

    def test_open_write_commits_on_success(self, client_root, client_catalog):
        with client_catalog.open_write("new.txt") as out:
            out.write(b"hello ")
            out.write(b"world")

        assert (client_root / "new.txt").read_bytes() == b"hello world"
        assert client_catalog.names() == ["new.txt"]

    def test_open_write_replaces_existing(self, client_root, client_catalog, make_file):
        make_file(client_root, "same.txt", b"old contents")

        with client_catalog.open_write("same.txt") as out:
            out.write(b"new")

        assert (client_root / "same.txt").read_bytes() == b"new"

    def test_open_write_leaves_nothing_on_failure(self, client_root, client_catalog):
        with pytest.raises(RuntimeError):
            with client_catalog.open_write("broken.txt") as out:
                out.write(b"partial data")
                raise RuntimeError("connection dropped")

        assert list(client_root.iterdir()) == []

    def test_open_write_replaces_nested_first_match(self, client_root, client_catalog, make_file):
        make_file(client_root, "docs/report.txt", b"old")

        with client_catalog.open_write("report.txt") as out:
            out.write(b"new")

        assert (client_root / "docs" / "report.txt").read_bytes() == b"new"
        assert not (client_root / "report.txt").exists()
        assert client_catalog.names() == ["report.txt"]

    def test_failed_write_keeps_previous_version(self, client_root, client_catalog, make_file):
        make_file(client_root, "keep.txt", b"original")

        with pytest.raises(RuntimeError):
            with client_catalog.open_write("keep.txt") as out:
                out.write(b"garbage")
                raise RuntimeError("boom")

        assert (client_root / "keep.txt").read_bytes() == b"original"

    @pytest.mark.parametrize("name", ["", "  ", ".", "..", "a/b.txt", "..\\x", "nul\x00l", ".peersync-x.partial"])
    def test_invalid_names_rejected_before_io(self, client_root, client_catalog, name):
        with pytest.raises(StorageError):
            with client_catalog.open_write(name):
                pass

        assert list(client_root.iterdir()) == []


class TestNameHelpers:

    def test_is_temporary_name(self):
        assert is_temporary_name(".peersync-1234.partial")
        assert not is_temporary_name("notes.partial")
        assert not is_temporary_name(".peersync-config")

    def test_validate_accepts_plain_names(self):
        validate_file_name("report (final).pdf")
        validate_file_name(".hidden")
