"""Exception hierarchy for the ingest pipeline and review loop."""


class ListingIngestError(Exception):
    """Base class for everything this package raises on purpose."""


class CompressionError(ListingIngestError):
    """A photo could not be decoded or re-encoded. Fatal for the run."""


class UploadError(ListingIngestError):
    """An upload in the batch failed. Fatal for the run; partial results are discarded."""


class ServiceError(ListingIngestError):
    """Non-2xx response or transport failure from an external service."""

    def __init__(self, service: str, message: str, status: int | None = None):
        self.service = service
        self.status = status
        self.message = message
        label = f"{service} ({status})" if status is not None else service
        super().__init__(f"{label}: {message}")


class ReviewError(ListingIngestError):
    """Base class for review cursor failures. None of these move the cursor."""


class DraftIncomplete(ReviewError):
    """Save was attempted without a target user or a scheduled date."""


class PersistError(ReviewError):
    """The listing store rejected the draft."""


class CursorError(ReviewError):
    """The requested transition is not valid from the cursor's current state."""
