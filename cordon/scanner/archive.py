"""
Cordon Archive Extractor

Unpacks an untrusted package tarball into a scratch directory. The single
conventional wrapper directory (``package/``) is stripped. Only regular
files and directories are materialized: symlinks, hard links and device
nodes are skipped, and members that would land outside the destination
abort the extraction.
"""

import logging
import os
import re
import shutil
import tarfile
import threading
from pathlib import Path, PurePosixPath
from typing import List, Optional

from cordon.errors import ExtractionError

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9]")

_COPY_CHUNK = 64 * 1024


def scratch_name(package_name: str) -> str:
    """Filesystem-safe directory stem for a package name."""
    return _UNSAFE_NAME_CHARS.sub("_", package_name)


def _member_parts(name: str, strip_components: int) -> List[str]:
    """Split a member name, reject traversal, and drop leading components."""
    path = PurePosixPath(name)
    if path.is_absolute() or name.startswith("\\"):
        raise ExtractionError(f"Absolute path in archive: {name}")
    parts = [p for p in path.parts if p not in ("", ".")]
    if ".." in parts:
        raise ExtractionError(f"Path traversal in archive: {name}")
    return parts[strip_components:]


def extract_archive(
    archive_path: Path,
    dest: Path,
    max_members: int = 10_000,
    max_unpacked_bytes: int = 512 * 1024 * 1024,
    strip_components: int = 1,
    cancel: Optional[threading.Event] = None,
) -> int:
    """
    Extract a (optionally compressed) tar archive into *dest*.

    Args:
        archive_path: Path to the .tgz / .tar file
        dest: Existing, empty scratch directory
        max_members: Abort if the archive has more members than this
        max_unpacked_bytes: Abort if regular file content exceeds this
        strip_components: Leading path components to drop from member names
        cancel: Set by the caller to stop a long-running extraction

    Returns:
        Number of regular files written

    Raises:
        ExtractionError: unreadable archive, unsafe member, or a limit hit
    """
    dest_root = Path(dest).resolve()
    files_written = 0
    total_bytes = 0

    try:
        tar = tarfile.open(str(archive_path), mode="r:*")
    except (tarfile.TarError, OSError) as e:
        raise ExtractionError(f"Cannot open archive {archive_path}: {e}") from e

    with tar:
        try:
            for count, member in enumerate(tar, start=1):
                if cancel is not None and cancel.is_set():
                    raise ExtractionError("Extraction cancelled")
                if count > max_members:
                    raise ExtractionError(
                        f"Archive has more than {max_members} members"
                    )

                parts = _member_parts(member.name, strip_components)
                if not parts:
                    continue

                target = dest_root.joinpath(*parts)
                if dest_root not in target.parents:
                    raise ExtractionError(f"Member escapes extraction root: {member.name}")

                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue

                if not member.isreg():
                    logger.debug("Skipping non-regular member %s", member.name)
                    continue

                total_bytes += member.size
                if total_bytes > max_unpacked_bytes:
                    raise ExtractionError(
                        f"Archive unpacks to more than {max_unpacked_bytes} bytes"
                    )

                source = tar.extractfile(member)
                if source is None:
                    continue

                target.parent.mkdir(parents=True, exist_ok=True)
                with source, open(target, "wb") as out:
                    shutil.copyfileobj(source, out, _COPY_CHUNK)

                # Keep exec bits for the binary detector, never setuid/setgid
                os.chmod(target, (member.mode & 0o755) | 0o600)
                files_written += 1
        except (tarfile.TarError, OSError, EOFError) as e:
            raise ExtractionError(f"Failed to extract {archive_path}: {e}") from e

    return files_written
