"""Exception types raised by the surrogate gridding core."""


class ProjectionError(ValueError):
    """A CRS could not be built or a coordinate transform failed."""


class MissingLocationError(KeyError):
    """An allocation was requested without an input shape."""

    def __init__(self, key):
        super().__init__(key)
        self.key = key

    def __str__(self):
        return f"missing input location: {self.key!r}"


class SurrogateComputationError(RuntimeError):
    """Wraps any failure while gridding one surrogate for one location."""

    def __init__(self, surrogate: str, location: str, cause: BaseException):
        super().__init__(f"surrogate {surrogate} at location {location}: {cause}")
        self.surrogate = surrogate
        self.location = location


class CacheReentrancyError(RuntimeError):
    """A thread asked the cache for a key it is itself still computing."""
