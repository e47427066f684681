import asyncio
import types
from typing import Any, List

import pytest

from vep_scheduler.attachments import ResolvedAttachment
from vep_scheduler.circuit_breaker import CircuitBreaker
from vep_scheduler.config import DeliveryConfig
from vep_scheduler.errors import CircuitOpenError, DeliverySendError, PayloadTooLargeError
from vep_scheduler.gateway import DeliveryGateway, backoff_delay
from vep_scheduler.models import Recipient
from vep_scheduler.rate_limit import RateLimiter


class DummyChannel:
    def __init__(self):
        self.sent: List[tuple] = []
        self.failures: List[Exception] = []
        self.connected: List[bool] = []
        self.status_checks = 0
        self.hang = False

    async def is_connected(self):
        self.status_checks += 1
        if self.connected:
            return self.connected.pop(0)
        return True

    async def _maybe_fail(self):
        if self.hang:
            await asyncio.sleep(10)
        if self.failures:
            raise self.failures.pop(0)

    async def send_text(self, jid, text):
        await self._maybe_fail()
        self.sent.append(("text", jid, text))

    async def send_document(self, jid, content, filename, caption=None, mimetype="application/pdf"):
        await self._maybe_fail()
        self.sent.append(("document", jid, filename, caption))


class DummyMetrics:
    def __init__(self):
        self.sent: List[str] = []
        self.failed: List[str] = []
        self.circuit: List[bool] = []

    def inc_sent(self, category):
        self.sent.append(category)

    def inc_failed(self, category):
        self.failed.append(category)

    def set_circuit_open(self, value):
        self.circuit.append(value)


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def quiet_logger():
    return types.SimpleNamespace(
        warning=lambda *args, **kwargs: None,
        error=lambda *args, **kwargs: None,
        info=lambda *args, **kwargs: None,
        debug=lambda *args, **kwargs: None,
    )


def make_gateway(channel=None, **config_overrides: Any):
    channel = channel or DummyChannel()
    sleep = SleepRecorder()
    metrics = DummyMetrics()
    gateway = DeliveryGateway(
        channel,
        DeliveryConfig(**config_overrides),
        circuit=CircuitBreaker(5, 300.0),
        rate_limiter=RateLimiter(100, 60.0),
        metrics=metrics,
        logger=quiet_logger(),
        sleep=sleep,
    )
    return gateway, channel, sleep, metrics


RECIPIENT = Recipient(id=1, real_name="ANA PEREZ", mobile_number="5491100000001")
GROUP = Recipient(id=2, real_name="ESTUDIO", mobile_number="120363000000", is_group=True)


def doc(cuit="20111111112", owner="ANA PEREZ", content=b"%PDF"):
    return ResolvedAttachment(cuit=cuit, owner_name=owner, content=content)


@pytest.mark.asyncio
async def test_single_attachment_uses_caption():
    gateway, channel, _, metrics = make_gateway()
    outcome = await gateway.deliver(RECIPIENT, "Hola Ana", [doc()], category="monotributo")
    assert outcome.success is True
    assert channel.sent == [
        ("document", "5491100000001@s.whatsapp.net", "ANA PEREZ [20111111112].pdf", "Hola Ana")
    ]
    assert metrics.sent == ["monotributo"]


@pytest.mark.asyncio
async def test_multiple_attachments_send_text_then_documents_in_order():
    gateway, channel, sleep, _ = make_gateway()
    docs = [doc(), doc("27333333334", "MARIA PEREZ")]
    outcome = await gateway.deliver(GROUP, "Hola", docs)
    assert outcome.success is True
    assert channel.sent == [
        ("text", "120363000000@g.us", "Hola"),
        ("document", "120363000000@g.us", "ANA PEREZ [20111111112].pdf", None),
        ("document", "120363000000@g.us", "MARIA PEREZ [27333333334].pdf", None),
    ]
    assert sleep.calls == [1.0, 1.0]


@pytest.mark.asyncio
async def test_no_attachments_sends_text_only():
    gateway, channel, _, _ = make_gateway()
    await gateway.send(RECIPIENT, "solo texto")
    assert channel.sent == [("text", "5491100000001@s.whatsapp.net", "solo texto")]


@pytest.mark.asyncio
async def test_retries_with_backoff_then_succeeds():
    gateway, channel, sleep, _ = make_gateway()
    channel.failures = [RuntimeError("boom"), RuntimeError("boom again")]
    outcome = await gateway.deliver(RECIPIENT, "Hola", [doc()])
    assert outcome.success is True
    assert sleep.calls == [2.0, 4.0]
    assert gateway.circuit.failures == 0


@pytest.mark.asyncio
async def test_exhausted_retries_fail_and_count_toward_circuit():
    gateway, channel, sleep, metrics = make_gateway()
    channel.failures = [RuntimeError("down")] * 3
    with pytest.raises(DeliverySendError) as excinfo:
        await gateway.send(RECIPIENT, "Hola")
    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert sleep.calls == [2.0, 4.0]
    assert gateway.circuit.failures == 1


@pytest.mark.asyncio
async def test_attempt_timeout_counts_as_failure():
    gateway, channel, _, _ = make_gateway(max_attempts=1, text_timeout=0.01)
    channel.hang = True
    outcome = await gateway.deliver(RECIPIENT, "Hola")
    assert outcome.success is False
    assert "TimeoutError" in outcome.error


@pytest.mark.asyncio
async def test_disconnected_channel_waits_then_fails_without_sending():
    gateway, channel, sleep, _ = make_gateway(max_attempts=1, reconnect_wait=3.0, reconnect_poll=1.0)
    channel.connected = [False] * 10
    outcome = await gateway.deliver(RECIPIENT, "Hola", [doc()])
    assert outcome.success is False
    assert "not connected" in outcome.error
    assert channel.sent == []
    assert sleep.calls == [1.0, 1.0, 1.0]


@pytest.mark.asyncio
async def test_channel_reconnecting_within_wait_is_used():
    gateway, channel, sleep, _ = make_gateway()
    channel.connected = [False, False, True]
    outcome = await gateway.deliver(RECIPIENT, "Hola")
    assert outcome.success is True
    assert sleep.calls == [1.0, 1.0]


@pytest.mark.asyncio
async def test_oversized_attachment_rejected_without_network():
    gateway, channel, _, metrics = make_gateway(max_attachment_bytes=10)
    with pytest.raises(PayloadTooLargeError):
        await gateway.send(RECIPIENT, "Hola", [doc(content=b"x" * 11)])
    outcome = await gateway.deliver(RECIPIENT, "Hola", [doc(content=b"x" * 11)], category="autónomo")
    assert outcome.success is False
    assert channel.sent == []
    assert channel.status_checks == 0
    assert gateway.circuit.failures == 0
    assert metrics.failed == ["autónomo"]


@pytest.mark.asyncio
async def test_open_circuit_refuses_deliveries():
    gateway, channel, _, metrics = make_gateway(max_attempts=1)
    channel.failures = [RuntimeError("down")] * 5
    for _ in range(5):
        await gateway.deliver(RECIPIENT, "Hola")
    assert gateway.circuit.is_open
    with pytest.raises(CircuitOpenError):
        await gateway.send(RECIPIENT, "Hola")
    outcome = await gateway.deliver(RECIPIENT, "Hola")
    assert outcome.success is False
    assert "Circuit breaker open" in outcome.error
    assert metrics.circuit[-1] is True
    assert gateway.status()["circuit"]["open"] is True


def test_backoff_delay_is_capped():
    assert [backoff_delay(n, 2.0, 10.0) for n in range(1, 5)] == [2.0, 4.0, 8.0, 10.0]
    assert backoff_delay(3, 2.0, 5.0) == 5.0
