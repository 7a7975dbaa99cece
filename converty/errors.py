"""
Domain exceptions.

ValidationError is raised at submission time and never retried.
ConversionError subclasses are raised by converter adapters and carry an
ErrorKind the lifecycle controller uses to pick retry or terminal failure.
StoreError covers the job store and blob store being unreachable.
"""
from enum import Enum


class ErrorKind(str, Enum):
    TIMEOUT = "Timeout"
    PROCESS_FAILURE = "ProcessFailure"
    INPUT_CORRUPT = "InputCorrupt"
    UNSUPPORTED = "Unsupported"


RETRYABLE_KINDS = frozenset({ErrorKind.TIMEOUT, ErrorKind.PROCESS_FAILURE})


class ConvertyError(Exception):
    """Base class for every error raised by this package"""


class ValidationError(ConvertyError):
    """Submission rejected before a job was created"""


class UnsupportedConversion(ValidationError):
    def __init__(self, source_format: str, target_format: str):
        super().__init__(f"Conversion from {source_format} to {target_format} is not supported")
        self.source_format = source_format
        self.target_format = target_format


class FileTooLarge(ValidationError):
    def __init__(self, max_size_mb: int):
        super().__init__(f"File too large. Maximum size is {max_size_mb} MB")
        self.max_size_mb = max_size_mb


class ConversionError(ConvertyError):
    kind: ErrorKind = ErrorKind.PROCESS_FAILURE

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class ConversionTimeout(ConversionError):
    kind = ErrorKind.TIMEOUT


class ProcessFailure(ConversionError):
    kind = ErrorKind.PROCESS_FAILURE


class InputCorrupt(ConversionError):
    kind = ErrorKind.INPUT_CORRUPT


class UnsupportedAtExecution(ConversionError):
    kind = ErrorKind.UNSUPPORTED


class StoreError(ConvertyError):
    """Job store or blob store unavailable; transient"""


class JobNotFound(ConvertyError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class BlobNotFound(ConvertyError):
    def __init__(self, ref: str):
        super().__init__(f"Blob not found: {ref}")
        self.ref = ref


class JobNotCompleted(ConvertyError):
    def __init__(self, job_id: str, state: str):
        super().__init__(f"Job {job_id} is {state}, result not available")
        self.job_id = job_id
        self.state = state


class IllegalTransition(ConvertyError):
    def __init__(self, from_state: str, to_state: str):
        super().__init__(f"Illegal transition {from_state} -> {to_state}")
        self.from_state = from_state
        self.to_state = to_state


class StaleTransition(ConvertyError):
    """The job changed since it was read or claimed; re-fetch before deciding again"""

    def __init__(self, job_id: str, expected_state: str):
        super().__init__(f"Job {job_id} is no longer {expected_state}")
        self.job_id = job_id
        self.expected_state = expected_state
