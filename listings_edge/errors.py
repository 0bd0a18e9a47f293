"""Error taxonomy shared by the cache, image and featured-set services.

The HTTP layer maps these onto status codes:
  - UpstreamUnavailable → 503
  - NotFound            → 404
  - CapacityExceeded    → 400 (message carries the limit)
  - InvalidInput        → 400
  - InconsistentState   → 500
"""


class ListingsEdgeError(Exception):
    """Base class for every error raised by listings_edge services."""


class UpstreamUnavailable(ListingsEdgeError):
    """Upstream timed out, was unreachable, or answered with a non-2xx/304 status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NotFound(ListingsEdgeError):
    """Listing (or one of its images) does not exist."""


class CapacityExceeded(ListingsEdgeError):
    """Featured set is already at its maximum size."""

    def __init__(self, limit: int):
        super().__init__(
            f"Cannot add property. Maximum of {limit} featured properties allowed."
        )
        self.limit = limit


class InconsistentState(ListingsEdgeError):
    """Upstream answered 304 Not Modified but there is no cached copy to serve."""


class StoreError(ListingsEdgeError):
    """A key/value store read or write failed."""


class InvalidInput(ListingsEdgeError, ValueError):
    """Caller-supplied value out of range (variant, format, photo index, empty id)."""
