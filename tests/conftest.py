"""Pytest configuration and fixtures for Cordon tests."""

import io
import tarfile
from pathlib import Path
from typing import Dict, Union

import pytest

from cordon.config import QuarantineConfig
from cordon.quarantine import Quarantine


FileSpec = Union[str, bytes, tuple]


def build_tarball(
    path: Path,
    files: Dict[str, FileSpec],
    prefix: str = "package",
) -> Path:
    """
    Write a gzipped tarball at *path*.

    Each value is the file content, or a (content, mode) tuple. Names are
    placed under *prefix*/ like a registry tarball unless prefix is empty.
    """
    with tarfile.open(path, "w:gz") as tar:
        for name, spec in files.items():
            content, mode = spec if isinstance(spec, tuple) else (spec, 0o644)
            data = content.encode() if isinstance(content, str) else content
            info = tarfile.TarInfo(f"{prefix}/{name}" if prefix else name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return path


@pytest.fixture
def make_tarball(tmp_path):
    """Factory writing tarballs into a per-test archives directory."""
    archives = tmp_path / "archives"
    archives.mkdir()

    def _make(files: Dict[str, FileSpec], name: str = "pkg.tgz", prefix: str = "package") -> Path:
        return build_tarball(archives / name, files, prefix=prefix)

    return _make


@pytest.fixture
def quarantine_dir(tmp_path):
    path = tmp_path / "quarantine"
    path.mkdir()
    return path


@pytest.fixture
def config(quarantine_dir):
    return QuarantineConfig(quarantine_path=quarantine_dir, scan_timeout_seconds=10)


@pytest.fixture
def quarantine(config):
    return Quarantine(config=config)
