from typing import Optional


class HazardRealtimeError(Exception):
    """Base exception class"""
    pass


class ConfigError(HazardRealtimeError):
    """Invalid pipeline configuration"""
    pass


class TransportError(HazardRealtimeError):
    """A poll or push transport failed; the canonical table is left untouched."""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class FeedShapeError(TransportError):
    """The upstream answered, but not with an incident array."""
    pass


class PipelineClosedError(HazardRealtimeError):
    """Operation attempted on a pipeline that has been stopped"""
    pass
