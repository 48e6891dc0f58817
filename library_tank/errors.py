class ConfigError(ValueError):
    """Raised when a load profile or scenario cannot be used to start a run."""


class TransportError(Exception):
    """Raised when a request could not be delivered or answered."""


class TransportConnectionError(TransportError):
    """Raised when the target could not be reached; the request may be retried."""


class RunAborted(RuntimeError):
    """Raised when a run is stopped because the target is unreachable."""


__all__ = [
    "ConfigError",
    "RunAborted",
    "TransportConnectionError",
    "TransportError",
]
