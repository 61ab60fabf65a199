"""Exception hierarchy for report generation."""


class ReportError(Exception):
    """Base exception for all report errors."""


# Fatal before any scan
class ConfigError(ReportError):
    """Missing or invalid configuration (database path, account id, ...)."""


class StoreError(ReportError):
    """A message-store operation failed."""


class StoreConnectionError(StoreError):
    """The message store could not be opened."""


class BulkStatsError(StoreError):
    """The bulk daily-count query failed; nothing can be ranked."""


# Recoverable
class FastPathUnavailable(StoreError):
    """The store cannot pre-aggregate extras; a full scan is required."""


class ReportCancelled(ReportError):
    """The caller cancelled the report or went away."""
