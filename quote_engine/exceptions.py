class QuoteEngineError(Exception):
    """Base class for quote engine errors."""


class CacheIOError(QuoteEngineError):
    """
    The backing store could not be read or written.

    Raised by FreshnessCache. The orchestrator treats a failed read as a
    cache miss and logs a failed write without failing the request.
    """
