"""
Unit tests for compression module (sitebackup/backup/compression.py).

Tests archive creation and extraction of site trees.
"""

import os
import tarfile

import pytest

from sitebackup.backup.compression import (
    create_archive,
    extract_archive,
    get_archive_size,
    walk_tree,
    CompressionError
)


def _tree_contents(root):
    """Map relative path -> bytes (None for directories)."""
    contents = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames:
            contents[os.path.relpath(os.path.join(dirpath, name), root)] = None
        for name in filenames:
            path = os.path.join(dirpath, name)
            with open(path, 'rb') as f:
                contents[os.path.relpath(path, root)] = f.read()
    return contents


class TestWalkTree:
    """Test walk_tree ordering and exclusion rules."""

    def test_walk_tree_skips_excluded_dirs_and_symlinks(self, site_tree):
        """Test excluded directories and symlinks are not yielded."""
        relative_paths = [rel for _, rel, _ in walk_tree(str(site_tree))]

        assert 'index.php' in relative_paths
        assert os.path.join('config', 'app.php') in relative_paths
        assert 'link.php' not in relative_paths
        assert not any(rel.startswith('node_modules') for rel in relative_paths)

    def test_walk_tree_sorted_order(self, tmp_path):
        """Test entries are yielded in sorted order per directory."""
        for name in ('b.txt', 'a.txt', 'c.txt'):
            (tmp_path / name).write_text(name)

        names = [rel for _, rel, _ in walk_tree(str(tmp_path), ())]

        assert names == ['a.txt', 'b.txt', 'c.txt']

    def test_walk_tree_does_not_yield_root(self, site_tree):
        """Test the root directory itself is not an entry."""
        relative_paths = [rel for _, rel, _ in walk_tree(str(site_tree))]

        assert '.' not in relative_paths

    def test_walk_tree_no_exclusions(self, site_tree):
        """Test nothing is excluded with an empty exclusion list."""
        relative_paths = [rel for _, rel, _ in walk_tree(str(site_tree), ())]

        assert os.path.join('node_modules', 'lib', 'index.js') in relative_paths


class TestCreateArchive:
    """Test create_archive function with different formats."""

    @pytest.mark.parametrize("compression_format", ["tar.gz", "tar.bz2", "tar.xz", "none"])
    def test_create_archive_all_formats(self, site_tree, tmp_path, compression_format):
        """Test creating archives in all supported formats."""
        output_path = str(tmp_path / "out" / "archive")

        archive_path = create_archive(str(site_tree), output_path, compression_format=compression_format)

        assert archive_path == output_path
        assert os.path.exists(archive_path)
        with tarfile.open(archive_path, 'r:*') as tar:
            assert 'index.php' in tar.getnames()

    def test_create_archive_relative_member_names(self, site_tree, tmp_path):
        """Test members are stored relative to the tree root."""
        archive_path = create_archive(str(site_tree), str(tmp_path / "files.tar.gz"))

        with tarfile.open(archive_path, 'r:gz') as tar:
            names = tar.getnames()

        assert 'config/app.php' in names
        assert not any(name.startswith('/') for name in names)

    def test_create_archive_excludes_node_modules_and_symlinks(self, site_tree, tmp_path):
        """Test excluded directories and symlinks are absent."""
        archive_path = create_archive(str(site_tree), str(tmp_path / "files.tar.gz"))

        with tarfile.open(archive_path, 'r:gz') as tar:
            members = tar.getmembers()

        assert not any(m.name.startswith('node_modules') for m in members)
        assert not any(m.issym() for m in members)
        assert 'link.php' not in [m.name for m in members]

    def test_create_archive_keeps_mode_and_mtime(self, site_tree, tmp_path):
        """Test entries carry mode bits and modification time."""
        script = site_tree / 'artisan'
        script.write_text('#!/usr/bin/env php')
        os.chmod(script, 0o750)
        os.utime(script, (1700000000, 1700000000))

        archive_path = create_archive(str(site_tree), str(tmp_path / "files.tar.gz"))

        with tarfile.open(archive_path, 'r:gz') as tar:
            member = tar.getmember('artisan')

        assert member.mode & 0o777 == 0o750
        assert member.mtime == 1700000000

    def test_create_archive_custom_exclusions(self, site_tree, tmp_path):
        """Test custom exclusion list replaces the default."""
        archive_path = create_archive(
            str(site_tree),
            str(tmp_path / "files.tar.gz"),
            exclude_dirs=['storage']
        )

        with tarfile.open(archive_path, 'r:gz') as tar:
            names = tar.getnames()

        assert not any(name.startswith('storage') for name in names)
        assert 'node_modules/lib/index.js' in names

    def test_create_archive_invalid_format(self, site_tree, tmp_path):
        """Test error with invalid compression format."""
        with pytest.raises(ValueError, match="Invalid compression format"):
            create_archive(str(site_tree), str(tmp_path / "out"), compression_format="zip")

    def test_create_archive_missing_source(self, tmp_path):
        """Test error when the source directory does not exist."""
        with pytest.raises(CompressionError, match="does not exist"):
            create_archive(str(tmp_path / "missing"), str(tmp_path / "out.tar.gz"))

    def test_create_archive_failure_leaves_no_file(self, site_tree, tmp_path):
        """Test a failed archive leaves neither the target nor a temp file."""
        out_dir = tmp_path / "out"
        out_dir.mkdir()
        unreadable = site_tree / 'secret.txt'
        unreadable.write_text('x')
        os.chmod(unreadable, 0)

        if os.access(unreadable, os.R_OK):
            pytest.skip("running with privileges that ignore file permissions")

        try:
            with pytest.raises(CompressionError):
                create_archive(str(site_tree), str(out_dir / "files.tar.gz"))
        finally:
            os.chmod(unreadable, 0o644)

        assert os.listdir(out_dir) == []


class TestExtractArchive:
    """Test archive extraction."""

    def test_round_trip_reproduces_tree(self, site_tree, tmp_path):
        """Test extract(create(tree)) reproduces files and directories."""
        archive_path = create_archive(str(site_tree), str(tmp_path / "files.tar.gz"))
        restored = tmp_path / "restored"

        extract_archive(archive_path, str(restored))

        expected = _tree_contents(site_tree)
        expected = {
            rel: data for rel, data in expected.items()
            if not rel.startswith('node_modules') and rel != 'link.php'
        }
        assert _tree_contents(restored) == expected

    def test_round_trip_hard_links(self, tmp_path):
        """Test every hard-linked path comes back as a regular file."""
        source = tmp_path / "src"
        source.mkdir()
        (source / "a.txt").write_text("shared content")
        os.link(source / "a.txt", source / "b.txt")
        archive_path = create_archive(str(source), str(tmp_path / "files.tar.gz"))

        with tarfile.open(archive_path) as tar:
            members = {m.name: m for m in tar.getmembers()}
        assert members["b.txt"].isreg()
        assert members["b.txt"].size == len("shared content")

        restored = tmp_path / "restored"
        extract_archive(archive_path, str(restored))

        assert sorted(os.listdir(restored)) == ["a.txt", "b.txt"]
        assert (restored / "b.txt").read_text() == "shared content"

    def test_extract_skips_symlinks(self, tmp_path):
        """Test symlink members are not recreated."""
        archive_path = tmp_path / "links.tar"
        target = tmp_path / "target.txt"
        target.write_text("data")
        with tarfile.open(archive_path, 'w') as tar:
            info = tarfile.TarInfo('link.txt')
            info.type = tarfile.SYMTYPE
            info.linkname = str(target)
            tar.addfile(info)

        extract_archive(str(archive_path), str(tmp_path / "dest"))

        assert not os.path.lexists(tmp_path / "dest" / "link.txt")

    def test_extract_rejects_path_traversal(self, tmp_path):
        """Test members escaping the destination are rejected."""
        archive_path = tmp_path / "evil.tar"
        payload = tmp_path / "payload.txt"
        payload.write_text("evil")
        with tarfile.open(archive_path, 'w') as tar:
            tar.add(str(payload), arcname='../escaped.txt')

        with pytest.raises(CompressionError, match="Unsafe path"):
            extract_archive(str(archive_path), str(tmp_path / "dest"))

        assert not (tmp_path / "escaped.txt").exists()

    def test_extract_corrupt_archive(self, tmp_path):
        """Test error on an unreadable archive."""
        archive_path = tmp_path / "broken.tar.gz"
        archive_path.write_bytes(b"not an archive")

        with pytest.raises(CompressionError):
            extract_archive(str(archive_path), str(tmp_path / "dest"))


class TestArchiveSize:
    """Test archive size calculation."""

    def test_get_archive_size_matches_os_getsize(self, site_tree, tmp_path):
        """Test archive size matches os.path.getsize."""
        archive_path = create_archive(str(site_tree), str(tmp_path / "files.tar.gz"))

        assert get_archive_size(archive_path) == os.path.getsize(archive_path)

    def test_get_archive_size_nonexistent_file(self, tmp_path):
        """Test error for nonexistent file."""
        with pytest.raises(CompressionError, match="Archive not found"):
            get_archive_size(str(tmp_path / "nope.tar.gz"))
