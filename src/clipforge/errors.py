"""Exception hierarchy for job orchestration.

Errors raised inside the execution, packaging and cleanup boundaries are
converted into Job state; these types exist so collaborators can signal
what went wrong without the engine having to parse messages.
"""


class ClipforgeError(Exception):
    """Base class for all orchestration errors."""


class MaterializationError(ClipforgeError):
    """The source could not be copied to a local working file."""


class UploadError(ClipforgeError):
    """The packaged archive could not be stored durably."""


class QueueError(ClipforgeError):
    """The external queue rejected or failed a request."""


class JobConflictError(ClipforgeError):
    """A non-terminal job already exists for the same source key."""

    def __init__(self, job_key: str):
        super().__init__(f"Job already active for {job_key}")
        self.job_key = job_key


class TranscodeError(ClipforgeError):
    """A transcoder invocation failed."""
