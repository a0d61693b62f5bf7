"""
External Collaborator Interfaces

The mirror does not process images or run OAuth itself. Both are consumed
through narrow interfaces:

- BlobProcessor: submit a file -> poll the job -> receive a content-addressed
  blob reference
- SessionResolver: resolve a session token to the signed-in DID

Usage:
    from core.external import await_blob

    job_id = processor.submit(data, 'image/jpeg')
    blob = await_blob(processor, job_id, timeout=30)
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .errors import MirrorError


# =============================================================================
# Blob Processing
# =============================================================================

class JobStatus(Enum):
    """Lifecycle of a blob processing job."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class BlobRef:
    """Content-addressed reference to an uploaded blob."""
    ref: str
    mime_type: str
    size: int

    def to_dict(self) -> Dict[str, Any]:
        """Record-body shape of the reference."""
        return {
            "$type": "blob",
            "ref": {"$link": self.ref},
            "mimeType": self.mime_type,
            "size": self.size,
        }


class BlobJobError(MirrorError):
    """A blob job failed or did not finish in time."""
    status_code = 502
    error_type = 'blob_job_error'
    message = 'Blob processing failed'


class BlobProcessor(ABC):
    """Worker pool that turns uploaded files into blob references."""

    @abstractmethod
    def submit(self, data: bytes, mime_type: str) -> str:
        """Enqueue a file and return its job id."""

    @abstractmethod
    def status(self, job_id: str) -> JobStatus:
        """Current status of a job."""

    @abstractmethod
    def result(self, job_id: str) -> BlobRef:
        """Blob reference of a completed job."""


def await_blob(
    processor: BlobProcessor,
    job_id: str,
    poll_interval: float = 0.5,
    timeout: float = 60.0
) -> BlobRef:
    """
    Poll a job until it completes.

    Raises:
        BlobJobError: if the job fails or the timeout elapses
    """
    deadline = time.monotonic() + timeout
    while True:
        status = processor.status(job_id)
        if status == JobStatus.COMPLETED:
            return processor.result(job_id)
        if status == JobStatus.FAILED:
            raise BlobJobError('Blob job failed', job_id=job_id)
        if time.monotonic() >= deadline:
            raise BlobJobError('Timed out waiting for blob job', job_id=job_id,
                               timeout=timeout)
        time.sleep(poll_interval)


# =============================================================================
# Sessions
# =============================================================================

class SessionResolver(ABC):
    """Resolves an application session token to the signed-in identity."""

    @abstractmethod
    def resolve(self, token: str) -> Optional[str]:
        """Return the DID behind a session token, or None when unknown."""
