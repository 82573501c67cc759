"""Exception taxonomy for the collector.

Only ConnectivityError is fatal to a run. Engines that never stabilize or
have no open tab are reported through ExtractionStatus, not exceptions.
"""


class CollectorError(Exception):
    """Base class for collector failures."""


class ConnectivityError(CollectorError):
    """Raised when the browser's remote debugging endpoint cannot be reached."""


class ExtractionError(CollectorError):
    """Raised when evaluating a page script fails (script threw, tab gone, session lost)."""


class SynthesisError(CollectorError):
    """Raised when the synthesis backend fails, times out or returns oversized output."""


class ConfigError(CollectorError):
    """Raised when configuration or an engines override file is invalid."""
