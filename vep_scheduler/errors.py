"""Exception taxonomy used by the scheduler and the delivery gateway.

Job-level errors (:class:`TemplateMissingError`, :class:`ChannelDisconnectedError`
raised at job start) abort a job and move it to ``ERROR``. Recipient-level
errors are caught inside the recipient loop and recorded as that recipient's
outcome.
"""

from __future__ import annotations

from typing import Iterable, Optional


class VepSchedulerError(RuntimeError):
    """Base class carrying a short machine readable ``code``."""

    code = "scheduler_error"

    def __init__(self, message: str):
        super().__init__(message)


class TemplateMissingError(VepSchedulerError):
    """Raised when no usable message template exists for a job category."""

    code = "template_missing"

    def __init__(self, category: str, reason: str = "no template available"):
        super().__init__(f"Template for category '{category}' unavailable: {reason}")
        self.category = category


class ChannelDisconnectedError(VepSchedulerError):
    """Raised when the messaging channel reports itself disconnected."""

    code = "channel_disconnected"

    def __init__(self, message: str = "WhatsApp channel is not connected"):
        super().__init__(message)


class AttachmentNotFoundError(VepSchedulerError):
    """Raised by fetchers when storage holds no document for a tax id."""

    code = "attachment_not_found"

    def __init__(self, cuit: str, folder: str):
        super().__init__(f"No document found for CUIT {cuit} in folder '{folder}'")
        self.cuit = cuit
        self.folder = folder


class NoAttachmentsError(VepSchedulerError):
    """Raised when a recipient ends up with zero documents to send."""

    code = "no_attachments"

    def __init__(self, recipient_name: str, attempted: Iterable[str]):
        attempted = list(attempted)
        tried = ", ".join(attempted) if attempted else "sin-cuit"
        super().__init__(f"No documents found for {recipient_name} (CUIT: {tried})")
        self.attempted = attempted


class PayloadTooLargeError(VepSchedulerError):
    """Raised when an attachment exceeds the channel's size ceiling."""

    code = "payload_too_large"

    def __init__(self, filename: str, size: int, limit: int):
        super().__init__(f"Attachment {filename} is {size} bytes, limit is {limit} bytes")
        self.filename = filename
        self.size = size
        self.limit = limit


class DeliverySendError(VepSchedulerError):
    """Raised once every retry of a logical send has failed."""

    code = "delivery_failed"

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class CircuitOpenError(VepSchedulerError):
    """Raised while the circuit breaker refuses deliveries."""

    code = "circuit_open"

    def __init__(self, retry_after: float):
        super().__init__(f"Circuit breaker open, retry in {int(retry_after) + 1}s")
        self.retry_after = retry_after


class InvalidTransitionError(VepSchedulerError):
    """Raised when a caller asks for an illegal job status transition."""

    code = "invalid_transition"

    def __init__(self, job_id: int, source: Optional[str], target: str):
        super().__init__(f"Job {job_id}: illegal status transition {source} -> {target}")
        self.job_id = job_id
        self.source = source
        self.target = target
