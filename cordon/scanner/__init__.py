"""
Cordon static package scanner.

Components:
- archive: safe tarball extraction into a scratch directory
- detectors: pluggable static checks over the extracted tree
- package_scanner: orchestration, aggregation and cleanup
"""

from cordon.scanner.detectors import (
    BinaryDetector,
    Detector,
    ManifestDetector,
    ScanContext,
    SourcePatternDetector,
    default_detectors,
)
from cordon.scanner.package_scanner import PackageScanner, calculate_risk_score

__all__ = [
    "BinaryDetector",
    "Detector",
    "ManifestDetector",
    "PackageScanner",
    "ScanContext",
    "SourcePatternDetector",
    "calculate_risk_score",
    "default_detectors",
]
