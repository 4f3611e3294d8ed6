"""
Transcoding failure types.

Everything raised by the orchestrator and its collaborators inherits from
TranscodeError. The `retryable` flag tells an outer retry layer whether running
the same input again can reasonably succeed: local and transport faults may,
a job the encoding service itself rejected will not.
"""


class TranscodeError(RuntimeError):
    """Base exception for all transcoding failures."""

    retryable = False


class ValidationFailure(TranscodeError, ValueError):
    """A required construction parameter is blank or invalid."""

    def __init__(self, field: str, reason: str = "is blank"):
        self.field = field
        super().__init__(f"{field} {reason}")


class ObjectStoreFailure(TranscodeError):
    """An object store call was rejected by the service or failed in transit."""

    retryable = True
    action = "access"

    def __init__(self, bucket: str, key: str, detail: str, code: str | None = None):
        self.bucket = bucket
        self.key = key
        self.detail = detail
        self.code = code
        super().__init__(f"Could not {self.action} s3://{bucket}/{key}: {detail}")


class UploadFailure(ObjectStoreFailure):
    action = "upload"


class DownloadFailure(ObjectStoreFailure):
    action = "download"


class DeleteFailure(ObjectStoreFailure):
    action = "delete"


class SubmissionFailure(TranscodeError):
    """The encoding service refused to create the job."""

    retryable = True

    def __init__(self, pipeline_id: str, input_key: str, detail: str):
        self.pipeline_id = pipeline_id
        self.input_key = input_key
        self.detail = detail
        super().__init__(f"Job creation for {input_key} on pipeline {pipeline_id} failed: {detail}")


class RemoteJobFailure(TranscodeError):
    """The encoding service reported a terminal ERROR for the job."""

    def __init__(self, input_key: str, job_id: str | None, event=None):
        self.input_key = input_key
        self.job_id = job_id
        self.event = event
        detail = f" ({event.message})" if event is not None and event.message else ""
        super().__init__(f"An error occurred while transcoding file {input_key} (job {job_id}){detail}")


class TranscodeTimeout(TranscodeError):
    """No terminal notification arrived for the job within the allowed time."""

    def __init__(self, input_key: str, job_id: str | None, timeout: float):
        self.input_key = input_key
        self.job_id = job_id
        self.timeout = timeout
        super().__init__(f"No terminal notification for job {job_id} ({input_key}) after {timeout}s")


class CleanupFailure(TranscodeError):
    """One or more remote deletions failed during cleanup (strict mode only)."""

    def __init__(self, failures: list[DeleteFailure]):
        self.failures = failures
        keys = ", ".join(f"s3://{f.bucket}/{f.key}" for f in failures)
        super().__init__(f"Cleanup could not delete {keys}")
