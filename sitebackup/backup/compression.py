"""
Archive creation and extraction for site file trees.

Packing and compression are two separate layers: the tar container is
written in stream mode into a compression stream, so the compression
algorithm can be swapped without touching the packing code.

Supported compression formats:
- tar.gz: Gzip compressed tar (default, used for file artifacts)
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- none: No compression (tar only)

Known limitation: symbolic links are neither archived nor followed, and
they are skipped again on extraction.
"""

import bz2
import gzip
import lzma
import os
import shutil
import tarfile
from pathlib import Path
from typing import Iterable, Iterator, Tuple

from .storage import atomic_output


DEFAULT_EXCLUDE_DIRS = ('node_modules',)


class CompressionError(Exception):
    """Raised when archive creation or extraction fails."""
    pass


def _open_gzip(raw):
    # mtime=0 keeps the gzip header identical for identical input
    return gzip.GzipFile(fileobj=raw, mode='wb', mtime=0)


def _open_bz2(raw):
    return bz2.BZ2File(raw, mode='wb')


def _open_xz(raw):
    return lzma.LZMAFile(raw, mode='wb')


class _Uncompressed:
    """Pass-through stream; closing it leaves the underlying file open."""

    def __init__(self, raw):
        self.raw = raw

    def write(self, data):
        return self.raw.write(data)

    def close(self):
        self.raw.flush()


# format -> compression stream factory
COMPRESSORS = {
    'tar.gz': _open_gzip,
    'tar.bz2': _open_bz2,
    'tar.xz': _open_xz,
    'none': _Uncompressed,
}


def walk_tree(source_dir: str, exclude_dirs: Iterable[str] = DEFAULT_EXCLUDE_DIRS) -> Iterator[Tuple[str, str, bool]]:
    """
    Walk a directory tree in a stable order with the archive exclusion rules.

    Excluded directory names are not descended into, symbolic links are
    skipped entirely and special files (sockets, fifos) are ignored. The
    root itself is not yielded.

    Yields:
        (absolute path, path relative to source_dir, is_directory)
    """
    excluded = set(exclude_dirs or ())

    def _raise(error):
        raise error

    for dirpath, dirnames, filenames in os.walk(source_dir, onerror=_raise):
        kept_dirs = []
        for name in sorted(dirnames):
            full_path = os.path.join(dirpath, name)
            if name in excluded or os.path.islink(full_path):
                continue
            kept_dirs.append(name)
        dirnames[:] = kept_dirs

        if dirpath != source_dir:
            yield dirpath, os.path.relpath(dirpath, source_dir), True

        for name in sorted(filenames):
            full_path = os.path.join(dirpath, name)
            if os.path.islink(full_path) or not os.path.isfile(full_path):
                continue
            yield full_path, os.path.relpath(full_path, source_dir), False


def create_archive(
    source_dir: str,
    output_path: str,
    exclude_dirs: Iterable[str] = DEFAULT_EXCLUDE_DIRS,
    compression_format: str = 'tar.gz'
) -> str:
    """
    Create a compressed archive of a directory tree.

    Entries are stored relative to source_dir with their mode bits and
    modification time. The archive is written to a temporary file and only
    renamed to output_path once it is complete.

    Args:
        source_dir: Directory to archive
        output_path: Final archive path (including extension)
        exclude_dirs: Directory names to skip entirely
        compression_format: Format to use ('tar.gz', 'tar.bz2', 'tar.xz', 'none')

    Returns:
        output_path

    Raises:
        CompressionError: If archive creation fails
        ValueError: If compression_format is invalid
    """
    if compression_format not in COMPRESSORS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(COMPRESSORS.keys())}"
        )

    if not os.path.isdir(source_dir):
        raise CompressionError(f"Source directory does not exist: {source_dir}")

    try:
        with atomic_output(output_path) as temp_path:
            with open(temp_path, 'wb') as raw:
                stream = COMPRESSORS[compression_format](raw)
                try:
                    with tarfile.open(fileobj=stream, mode='w|', format=tarfile.PAX_FORMAT) as tar:
                        for full_path, relative_path, is_dir in walk_tree(source_dir, exclude_dirs):
                            _add_entry(tar, full_path, relative_path, is_dir)
                finally:
                    stream.close()
        return output_path
    except CompressionError:
        raise
    except Exception as e:
        raise CompressionError(f"Failed to create archive of {source_dir}: {e}")


def _add_entry(tar: tarfile.TarFile, full_path: str, relative_path: str, is_dir: bool):
    """Write one header, plus content for regular files."""
    info = tar.gettarinfo(full_path, arcname=relative_path)

    if is_dir:
        tar.addfile(info)
        return

    # Every hard link is stored as a full copy so each path extracts on its own
    if info.islnk():
        info.type = tarfile.REGTYPE
        info.linkname = ''
        info.size = os.path.getsize(full_path)

    with open(full_path, 'rb') as f:
        tar.addfile(info, f)


def extract_archive(archive_path: str, dest_dir: str) -> str:
    """
    Extract an archive created by create_archive().

    Symlinks, hard links and special files are skipped; parent directories
    are created on demand. Members that would land outside dest_dir are
    rejected.

    Args:
        archive_path: Archive to read (compression detected automatically)
        dest_dir: Directory to extract into

    Returns:
        dest_dir

    Raises:
        CompressionError: If the archive cannot be read or is unsafe
    """
    dest = Path(dest_dir).resolve()

    try:
        dest.mkdir(parents=True, exist_ok=True)

        with open(archive_path, 'rb') as raw:
            with tarfile.open(fileobj=raw, mode='r|*') as tar:
                for member in tar:
                    if not (member.isdir() or member.isreg()):
                        continue

                    target = (dest / member.name).resolve()
                    if target != dest and dest not in target.parents:
                        raise CompressionError(f"Unsafe path in archive: {member.name}")

                    if member.isdir():
                        target.mkdir(parents=True, exist_ok=True)
                        continue

                    target.parent.mkdir(parents=True, exist_ok=True)
                    source = tar.extractfile(member)
                    with open(target, 'wb') as f:
                        shutil.copyfileobj(source, f)
                    os.chmod(target, member.mode & 0o777)
                    os.utime(target, (member.mtime, member.mtime))

        return dest_dir
    except CompressionError:
        raise
    except Exception as e:
        raise CompressionError(f"Failed to extract {archive_path}: {e}")


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except Exception as e:
        raise CompressionError(f"Failed to get archive size: {e}")
