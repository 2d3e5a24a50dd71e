"""Streaming extraction of gzip-compressed tar archives.

Packages and application files are both ``.tar.gz`` streams. Entries are
read sequentially so a package never has to be buffered in full. Only
directories and regular files are materialized; everything else, and
anything that would land outside the destination, is skipped with a
warning instead of failing the whole extraction.
"""

from __future__ import annotations

import logging
import os
import shutil
import tarfile
from pathlib import Path
from typing import BinaryIO

from .errors import ArchiveError

logger = logging.getLogger("desiredstate.archive")

_COPY_CHUNK = 64 * 1024


def _normalize(name: str) -> str:
    """Strip leading "./" segments so "./app" is not mistaken for hidden."""
    while name.startswith("./"):
        name = name[2:]
    return "" if name in ("", ".") else name


def _safe_target(dest: Path, name: str) -> Path | None:
    """Resolve an entry name under dest, or None if it would escape."""
    if os.path.isabs(name) or name.startswith(("/", "\\")):
        return None
    target = (dest / name).resolve()
    if target != dest and dest not in target.parents:
        return None
    return target


def unpack_tgz(src: BinaryIO, dest: Path, skip_hidden: bool = True) -> list[Path]:
    """Extract a .tar.gz stream into a directory.

    Args:
        src: Readable binary stream positioned at the gzip header.
        dest: Destination directory; created if missing.
        skip_hidden: Skip entries whose name starts with ``.``.

    Returns:
        Paths of the directories and files written, in archive order.

    Raises:
        ArchiveError: If the stream is not a valid gzip/tar archive.
        OSError: If a directory or file cannot be written.
    """
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    dest = dest.resolve()
    written: list[Path] = []

    try:
        with tarfile.open(fileobj=src, mode="r|gz") as tar:
            for member in tar:
                name = _normalize(member.name)
                if not name:
                    continue
                if skip_hidden and name.startswith("."):
                    logger.warning("Skipping hidden entry %s", member.name)
                    continue

                target = _safe_target(dest, name)
                if target is None:
                    logger.warning("Skipping entry outside destination: %s", member.name)
                    continue

                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    target.chmod(member.mode & 0o7777 | 0o700)
                    written.append(target)
                elif member.isreg():
                    _write_file(tar, member, target)
                    written.append(target)
                else:
                    logger.warning(
                        "Skipping unsupported entry type %r: %s", member.type, member.name,
                    )
    except (tarfile.TarError, EOFError) as exc:
        raise ArchiveError(f"Corrupt archive: {exc}") from exc

    return written


def _write_file(tar: tarfile.TarFile, member: tarfile.TarInfo, target: Path) -> None:
    """Write one regular-file entry, preserving its permission bits."""
    target.parent.mkdir(parents=True, exist_ok=True)
    source = tar.extractfile(member)
    if source is None:
        raise ArchiveError(f"Cannot read entry {member.name}")
    with open(target, "wb") as out:
        shutil.copyfileobj(source, out, _COPY_CHUNK)
    target.chmod(member.mode & 0o7777)


def find_files(root: Path, suffix: str) -> list[Path]:
    """List regular files under root whose name ends with suffix.

    Args:
        root: Directory to walk.
        suffix: Filename suffix, e.g. ``.app``.

    Returns:
        Matching paths sorted for a deterministic first match.
    """
    matches = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for fname in sorted(filenames):
            if fname.endswith(suffix):
                matches.append(Path(dirpath) / fname)
    return matches
