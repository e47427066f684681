"""Protected delivery path between the scheduler and the messaging channel.

Every delivery goes through the same gate sequence: circuit breaker, rate
limiter, payload size guard, then the send itself with per-attempt timeouts,
exponential backoff and a bounded wait for the channel to reconnect.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from .attachments import ResolvedAttachment
from .channel import MessagingChannel, jid_for
from .circuit_breaker import CircuitBreaker
from .config import DeliveryConfig
from .errors import ChannelDisconnectedError, DeliverySendError, PayloadTooLargeError, VepSchedulerError
from .logger import get_logger
from .models import DeliveryOutcome, Recipient
from .prometheus import SchedulerMetrics
from .rate_limit import RateLimiter


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay after failed attempt number ``attempt`` (1-based)."""
    return min(base * 2 ** (attempt - 1), cap)


def _describe(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class DeliveryGateway:
    """Send one recipient's message and documents over a :class:`MessagingChannel`."""

    def __init__(
        self,
        channel: MessagingChannel,
        config: DeliveryConfig | None = None,
        *,
        circuit: CircuitBreaker | None = None,
        rate_limiter: RateLimiter | None = None,
        metrics: SchedulerMetrics | None = None,
        logger=None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.channel = channel
        self.config = config or DeliveryConfig()
        self.circuit = circuit or CircuitBreaker()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.metrics = metrics
        self.logger = logger or get_logger()
        self._sleep = sleep

    async def deliver(
        self,
        recipient: Recipient,
        message: str,
        attachments: Sequence[ResolvedAttachment] = (),
        category: str = "",
    ) -> DeliveryOutcome:
        """Run :meth:`send` and convert delivery errors into a failed outcome."""
        try:
            await self.send(recipient, message, attachments)
        except VepSchedulerError as exc:
            self.logger.error("Delivery to %s failed: %s", recipient.real_name, exc)
            if self.metrics:
                self.metrics.inc_failed(category)
            outcome = DeliveryOutcome(
                recipient_id=recipient.id,
                recipient_name=recipient.real_name,
                success=False,
                error=str(exc),
            )
        else:
            if self.metrics:
                self.metrics.inc_sent(category)
            outcome = DeliveryOutcome(recipient_id=recipient.id, recipient_name=recipient.real_name, success=True)
        if self.metrics:
            self.metrics.set_circuit_open(self.circuit.is_open)
        return outcome

    async def send(
        self,
        recipient: Recipient,
        message: str,
        attachments: Sequence[ResolvedAttachment] = (),
    ) -> None:
        """Deliver or raise.

        Raises :class:`CircuitOpenError`, :class:`PayloadTooLargeError` or
        :class:`DeliverySendError`.
        """
        self.circuit.check()
        waited = await self.rate_limiter.acquire()
        if waited:
            self.logger.info("Rate limit reached, waited %.1fs before sending to %s", waited, recipient.real_name)

        limit = self.config.max_attachment_bytes
        for attachment in attachments:
            if attachment.size > limit:
                raise PayloadTooLargeError(attachment.filename, attachment.size, limit)

        jid = jid_for(recipient.mobile_number, recipient.is_group)
        try:
            await self._send_payload(jid, message, attachments)
        except DeliverySendError:
            self.circuit.record_failure()
            if self.circuit.is_open:
                self.logger.warning(
                    "Circuit breaker opened after %d consecutive failures", self.circuit.failures
                )
            raise
        self.circuit.record_success()

    async def _send_payload(self, jid: str, message: str, attachments: Sequence[ResolvedAttachment]) -> None:
        if not attachments:
            await self._send_text(jid, message)
            return
        if len(attachments) == 1:
            await self._send_document(jid, attachments[0], caption=message)
            return
        await self._send_text(jid, message)
        for attachment in attachments:
            await self._sleep(self.config.multi_send_pause)
            await self._send_document(jid, attachment)

    async def _send_text(self, jid: str, text: str) -> None:
        await self._send_with_retry(
            lambda: self.channel.send_text(jid, text),
            timeout=self.config.text_timeout,
            cap=self.config.text_backoff_cap,
            description=f"text to {jid}",
        )

    async def _send_document(self, jid: str, attachment: ResolvedAttachment, caption: Optional[str] = None) -> None:
        await self._send_with_retry(
            lambda: self.channel.send_document(
                jid, attachment.content, attachment.filename, caption=caption, mimetype=attachment.mimetype
            ),
            timeout=self.config.document_timeout,
            cap=self.config.document_backoff_cap,
            description=f"document {attachment.filename} to {jid}",
        )

    async def _send_with_retry(
        self,
        operation: Callable[[], Awaitable[None]],
        *,
        timeout: float,
        cap: float,
        description: str,
    ) -> None:
        attempts = max(1, int(self.config.max_attempts))
        last_exc: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                if not await self._wait_for_channel():
                    raise ChannelDisconnectedError()
                async with asyncio.timeout(timeout):
                    await operation()
                return
            except Exception as exc:
                last_exc = exc
                self.logger.warning(
                    "Sending %s failed (attempt %d/%d): %s", description, attempt, attempts, _describe(exc)
                )
                if attempt < attempts:
                    await self._sleep(backoff_delay(attempt, self.config.backoff_base, cap))
        raise DeliverySendError(
            f"Sending {description} failed after {attempts} attempts: {_describe(last_exc)}", attempts
        ) from last_exc

    async def _is_connected(self) -> bool:
        try:
            return bool(await self.channel.is_connected())
        except Exception as exc:
            self.logger.warning("Channel status check failed: %s", exc)
            return False

    async def _wait_for_channel(self) -> bool:
        """Return ``True`` once the channel is up, ``False`` after ``reconnect_wait``."""
        if await self._is_connected():
            return True
        poll = max(0.01, self.config.reconnect_poll)
        waited = 0.0
        self.logger.info("Channel disconnected, waiting up to %.0fs for reconnection", self.config.reconnect_wait)
        while waited < self.config.reconnect_wait:
            await self._sleep(poll)
            waited += poll
            if await self._is_connected():
                self.logger.info("Channel reconnected after %.1fs", waited)
                return True
        return False

    def status(self) -> Dict[str, Any]:
        """Circuit and rate limit snapshot for the status endpoints."""
        return {
            "circuit": self.circuit.state(),
            "rate_limit": {
                "in_window": self.rate_limiter.in_window,
                "max_per_window": self.rate_limiter.max_per_window,
                "window_seconds": self.rate_limiter.window_seconds,
            },
            "max_attachment_bytes": self.config.max_attachment_bytes,
        }
