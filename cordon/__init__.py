"""
Cordon - quarantine gate for package registries.

Every fetch of a package nobody has cleared yet is denied, the package is
registered for review, and its archive can be statically scanned before an
administrator approves it.

Cordon provides:
- A durable per-package approval store
- A static archive scanner with pluggable detectors
- A gate that turns approval state into allow/deny for each fetch
- A bounded audit log of denied fetches
"""

from pathlib import Path

__version__ = "0.3.1"

# Directory constants
CORDON_HOME = Path.home() / ".cordon"
CONFIG_PATH = CORDON_HOME / "config.yaml"
DEFAULT_QUARANTINE_DIR = CORDON_HOME / "quarantine"
