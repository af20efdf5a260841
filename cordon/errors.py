"""Exception hierarchy shared by the store, scanner and gate."""


class CordonError(Exception):
    """Base class for all Cordon errors."""
    pass


class PackageNotFoundError(CordonError):
    """Operation on a package with no approval record."""

    def __init__(self, package: str):
        self.package = package
        super().__init__(f"Package not found in approval database: {package}")


class AssessmentUnavailableError(CordonError):
    """No completed scan exists for the package."""

    def __init__(self, package: str):
        self.package = package
        super().__init__(f"Risk assessment not available for package: {package}")


class StoreIOError(CordonError):
    """A persisted document could not be read, parsed or written."""
    pass


class ExtractionError(CordonError):
    """An archive could not be unpacked safely."""
    pass


class ScanTimeoutError(CordonError):
    """A scan exceeded its time budget."""
    pass


class ConfigError(CordonError):
    """Invalid configuration."""
    pass
