"""
Exporter Errors
===============
Exception hierarchy shared by the fetch, transform and delivery layers.
"""

from typing import Literal, Optional

DeliveryErrorKind = Literal["network", "http"]


class ExporterError(Exception):
    """Base class for all exporter errors."""


class DeliveryError(ExporterError):
    """
    A failed delivery attempt, classified once at the HTTP boundary.

    Attributes:
        kind: "network" when no response was received, "http" otherwise
        message: Human readable description
        status: HTTP status code (http kind only)
        code: Transport error code such as ECONNREFUSED (network kind only)
        retry_after: Server supplied Retry-After delay in seconds
    """

    def __init__(
        self,
        kind: DeliveryErrorKind,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status
        self.code = code
        self.retry_after = retry_after

    def __repr__(self) -> str:
        return (
            f"DeliveryError(kind={self.kind!r}, status={self.status!r}, "
            f"code={self.code!r}, message={self.message!r})"
        )


class TransformError(ExporterError):
    """Raised when a batch cannot be converted into the wire schema."""


class SpoolError(ExporterError):
    """Raised when a batch could not be durably written to the spool."""


class FetchError(ExporterError):
    """Raised when the upstream console API cannot be read."""
