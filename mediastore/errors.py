class MediaIngestError(RuntimeError):
    """Base error for a media ingest job."""


class InputMissing(MediaIngestError):
    """A required job input field is absent or invalid."""


class TagEmbedFailure(MediaIngestError):
    """Tags could not be parsed from or saved into the staging file."""


class ConflictResolutionFailure(MediaIngestError):
    """Looking up or evicting the prior entry failed."""


class StoreWriteFailure(MediaIngestError):
    """Creating, filling or revealing the new entry failed."""


class LocalCleanupFailure(MediaIngestError):
    """The staging file could not be removed after a successful commit."""


class JobCancelled(MediaIngestError):
    """The scheduler cancelled the job between steps."""
