"""
Cordon Signal Detectors

Each detector inspects an extracted package tree and returns risk signals.
Detectors are independent and side-effect free; the scanner runs them in
order and concatenates their output.

Detectors:
- ManifestDetector       - install-time scripts and dependency names
- SourcePatternDetector  - network / filesystem API usage in source files
- BinaryDetector         - executables and oversized files
"""

import json
import logging
import os
import re
import stat
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Pattern, Tuple

from cordon.errors import CordonError, ScanTimeoutError
from cordon.models import RiskSeverity, RiskType, SecurityRisk

logger = logging.getLogger(__name__)


class WalkLimitExceeded(CordonError):
    """The extracted tree is deeper or larger than the walk allows."""
    pass


@dataclass
class ScanContext:
    """Everything a detector needs to inspect one extracted package."""
    root: Path
    package_name: str
    max_depth: int = 32
    max_files: int = 20_000
    large_file_bytes: int = 10 * 1024 * 1024
    cancel: threading.Event = field(default_factory=threading.Event)

    def walk(
        self, skip_dir: Optional[Callable[[str], bool]] = None
    ) -> Iterator[Path]:
        """
        Yield regular files under the root, never following symlinks.

        Raises:
            WalkLimitExceeded: depth or file count beyond the configured bounds
            ScanTimeoutError: the scan was cancelled
        """
        seen = 0
        for dirpath, dirnames, filenames in os.walk(self.root, followlinks=False):
            if self.cancel.is_set():
                raise ScanTimeoutError("Scan cancelled during directory walk")

            rel = Path(dirpath).relative_to(self.root)
            depth = len(rel.parts)
            if depth > self.max_depth:
                raise WalkLimitExceeded(
                    f"Directory depth {depth} exceeds limit {self.max_depth}: {rel}"
                )

            kept = []
            for d in sorted(dirnames):
                if os.path.islink(os.path.join(dirpath, d)):
                    continue
                if skip_dir is not None and skip_dir(d):
                    continue
                kept.append(d)
            dirnames[:] = kept

            for name in sorted(filenames):
                path = Path(dirpath) / name
                if path.is_symlink():
                    continue
                seen += 1
                if seen > self.max_files:
                    raise WalkLimitExceeded(
                        f"File count exceeds limit {self.max_files}"
                    )
                yield path

    def relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()


class Detector(ABC):
    """Base class for a static check over an extracted package tree."""

    name: str = "detector"

    @abstractmethod
    def inspect(self, context: ScanContext) -> List[SecurityRisk]:
        """Return the risks found in ``context.root``."""


# =========================================================================
# Manifest inspection
# =========================================================================

# Lifecycle hooks the package manager runs on install/uninstall
LIFECYCLE_SCRIPTS = ["preinstall", "postinstall", "preuninstall", "postuninstall"]

DEPENDENCY_KINDS = [
    "dependencies",
    "devDependencies",
    "peerDependencies",
    "optionalDependencies",
]


def is_suspicious_dependency(name: str) -> bool:
    """Dependency names hinting at code evaluation or a backdoor."""
    return "eval" in name or "exec" in name or "backdoor" in name.lower()


class ManifestDetector(Detector):
    """Inspect package.json for install hooks and suspicious dependencies."""

    name = "manifest"
    MANIFEST = "package.json"

    def inspect(self, context: ScanContext) -> List[SecurityRisk]:
        manifest_path = context.root / self.MANIFEST
        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
            if not isinstance(manifest, dict):
                raise ValueError("manifest is not a JSON object")
        except (OSError, UnicodeDecodeError, ValueError) as e:
            return [SecurityRisk(
                type=RiskType.PACKAGE_JSON_ERROR,
                severity=RiskSeverity.HIGH,
                description="Could not read or parse package.json",
                details={"error": str(e)},
            )]

        risks = self._check_scripts(manifest)
        risks.extend(self._check_dependencies(manifest))
        return risks

    def _check_scripts(self, manifest: dict) -> List[SecurityRisk]:
        scripts = manifest.get("scripts")
        if not isinstance(scripts, dict):
            return []

        risks = []
        for script in LIFECYCLE_SCRIPTS:
            command = scripts.get(script)
            if command:
                risks.append(SecurityRisk(
                    type=RiskType.SUSPICIOUS_SCRIPT,
                    severity=RiskSeverity.HIGH,
                    description=f"Package has '{script}' script: {command}",
                    details={"script": script, "command": command},
                ))
        return risks

    def _check_dependencies(self, manifest: dict) -> List[SecurityRisk]:
        all_deps = {}
        for kind in DEPENDENCY_KINDS:
            deps = manifest.get(kind)
            if isinstance(deps, dict):
                all_deps.update(deps)

        return [
            SecurityRisk(
                type=RiskType.SUSPICIOUS_DEPENDENCY,
                severity=RiskSeverity.MEDIUM,
                description=f"Potentially suspicious dependency: {dep}",
                details={"dependency": dep, "version": version},
            )
            for dep, version in all_deps.items()
            if is_suspicious_dependency(dep)
        ]


# =========================================================================
# Source pattern scanning
# =========================================================================

SOURCE_EXTENSIONS = (".js", ".ts", ".json", ".sh", ".py", ".jsx", ".tsx", ".mjs")

# Directories never descended into by the source scanner
SKIPPED_SOURCE_DIRS = ("node_modules",)

NETWORK_PATTERNS: List[Tuple[Pattern, str]] = [
    (re.compile(r"fetch\s*\(", re.IGNORECASE), "fetch() call"),
    (re.compile(r"XMLHttpRequest", re.IGNORECASE), "XMLHttpRequest usage"),
    (re.compile(r"\.post\s*\(", re.IGNORECASE), "HTTP POST call"),
    (re.compile(r"\.get\s*\(", re.IGNORECASE), "HTTP GET call"),
    (re.compile(r"axios\.", re.IGNORECASE), "Axios usage"),
    (re.compile(r"require\s*\(\s*['\"]https?['\"]\s*\)", re.IGNORECASE), "HTTP(S) require"),
]

FILESYSTEM_PATTERNS: List[Tuple[Pattern, str]] = [
    (re.compile(r"fs\.writeFile", re.IGNORECASE), "file write operation"),
    (re.compile(r"fs\.createWriteStream", re.IGNORECASE), "write stream creation"),
    (re.compile(r"process\.cwd", re.IGNORECASE), "current directory access"),
    (re.compile(r"\.\./\.\./"), "directory traversal"),
]


def _skip_source_dir(name: str) -> bool:
    return name.startswith(".") or name in SKIPPED_SOURCE_DIRS


def first_match(
    content: str, patterns: List[Tuple[Pattern, str]]
) -> Optional[Tuple[Pattern, str]]:
    """Return the first pattern (in list order) that matches *content*."""
    for pattern, description in patterns:
        if pattern.search(content):
            return pattern, description
    return None


class SourcePatternDetector(Detector):
    """Flag network and filesystem API usage, at most once per file and kind."""

    name = "source_patterns"

    def inspect(self, context: ScanContext) -> List[SecurityRisk]:
        risks = []
        for file_path in context.walk(skip_dir=_skip_source_dir):
            if not file_path.name.endswith(SOURCE_EXTENSIONS):
                continue
            try:
                content = file_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            risks.extend(self._scan_content(context.relative(file_path), content))
        return risks

    def _scan_content(self, rel_path: str, content: str) -> List[SecurityRisk]:
        risks = []
        filename = rel_path.rsplit("/", 1)[-1]

        hit = first_match(content, NETWORK_PATTERNS)
        if hit:
            risks.append(SecurityRisk(
                type=RiskType.NETWORK_ACCESS,
                severity=RiskSeverity.MEDIUM,
                description=f"File {filename} contains {hit[1]}",
                details={"file": rel_path, "pattern": hit[0].pattern},
            ))

        hit = first_match(content, FILESYSTEM_PATTERNS)
        if hit:
            risks.append(SecurityRisk(
                type=RiskType.FILESYSTEM_ACCESS,
                severity=RiskSeverity.LOW,
                description=f"File {filename} contains {hit[1]}",
                details={"file": rel_path, "pattern": hit[0].pattern},
            ))

        return risks


# =========================================================================
# Binary and size scanning
# =========================================================================

EXECUTABLE_EXTENSIONS = (".exe", ".bin", ".app", ".dmg", ".deb", ".rpm")


class BinaryDetector(Detector):
    """Flag executable files and files above the size threshold."""

    name = "binaries"

    def inspect(self, context: ScanContext) -> List[SecurityRisk]:
        risks = []
        for file_path in context.walk():
            try:
                st = file_path.lstat()
            except OSError:
                continue

            rel_path = context.relative(file_path)
            if st.st_size > context.large_file_bytes:
                risks.append(SecurityRisk(
                    type=RiskType.LARGE_FILES,
                    severity=RiskSeverity.LOW,
                    description=(
                        f"Large file detected: {file_path.name} "
                        f"({round(st.st_size / 1024 / 1024)}MB)"
                    ),
                    details={"file": rel_path, "size": st.st_size},
                ))

            executable_bits = st.st_mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            if file_path.name.endswith(EXECUTABLE_EXTENSIONS) or executable_bits:
                risks.append(SecurityRisk(
                    type=RiskType.BINARY_EXECUTABLE,
                    severity=RiskSeverity.MEDIUM,
                    description=f"Executable file detected: {file_path.name}",
                    details={"file": rel_path},
                ))
        return risks


def default_detectors() -> List[Detector]:
    """The standard detector set, in execution order."""
    return [ManifestDetector(), SourcePatternDetector(), BinaryDetector()]
