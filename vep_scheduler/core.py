"""Core orchestration logic for the VEP delivery scheduler."""

from __future__ import annotations

import asyncio
import math
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from .attachments import AttachmentFetcherBase, AttachmentResolver, build_fetcher
from .channel import MessagingChannel, WhatsAppBridgeChannel
from .circuit_breaker import CircuitBreaker
from .config import SchedulerConfig
from .errors import ChannelDisconnectedError
from .gateway import DeliveryGateway
from .logger import get_logger
from .models import (
    DeliveryOutcome,
    ExecutionReport,
    Job,
    JobCategory,
    JobReport,
    JobStatus,
    Recipient,
    VepUser,
)
from .persistence import Persistence
from .prometheus import SchedulerMetrics
from .rate_limit import RateLimiter
from .renderer import render
from .schedule import parse_execution_time, select_due_jobs
from .templates import DEFAULT_TEMPLATES, TemplateResolver


class JobScheduler:
    """Poll for due jobs, claim them and deliver their documents."""

    def __init__(
        self,
        config: SchedulerConfig | None = None,
        *,
        persistence: Persistence | None = None,
        channel: MessagingChannel | None = None,
        fetcher: AttachmentFetcherBase | None = None,
        gateway: DeliveryGateway | None = None,
        metrics: SchedulerMetrics | None = None,
        logger=None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Prepare the runtime collaborators and loop state."""
        self.config = config or SchedulerConfig()
        self.logger = logger or get_logger()
        self.metrics = metrics or SchedulerMetrics()
        self.persistence = persistence or Persistence(self.config.server.db_path, logger=self.logger)
        self.timezone = ZoneInfo(self.config.timing.timezone)
        self._clock = clock or (lambda: datetime.now(self.timezone))
        self._sleep = sleep

        self.channel = channel or WhatsAppBridgeChannel(
            self.config.channel.bridge_url,
            token=self.config.channel.token,
            request_timeout=self.config.channel.request_timeout,
            logger=self.logger,
        )
        self.templates = TemplateResolver(self.persistence, logger=self.logger)
        self.attachments = AttachmentResolver(
            fetcher or build_fetcher(self.config.storage),
            default_folder=self.config.storage.default_folder,
            fetch_timeout=self.config.storage.fetch_timeout,
            logger=self.logger,
        )
        self.gateway = gateway or DeliveryGateway(
            self.channel,
            self.config.delivery,
            circuit=CircuitBreaker(
                self.config.circuit.failure_threshold,
                self.config.circuit.cooldown_seconds,
            ),
            rate_limiter=RateLimiter(
                self.config.rate_limit.max_per_window,
                self.config.rate_limit.window_seconds,
                sleep=sleep,
                on_limited=self.metrics.inc_rate_limited,
            ),
            metrics=self.metrics,
            logger=self.logger,
            sleep=sleep,
        )

        self._active = self.config.server.scheduler_active
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._tick_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[ExecutionReport] = None

    def _now(self) -> datetime:
        return self._clock()

    def _now_iso(self) -> str:
        return self._now().isoformat(timespec="seconds")

    async def init(self) -> None:
        """Initialise persistence and check the timing configuration."""
        await self.persistence.init_db()
        self.config.validate()
        await self._refresh_pending_gauge()

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the background polling loop."""
        await self.init()
        self._stop.clear()
        if not self._active:
            self.logger.info("Scheduler loop disabled, only manual runs will execute jobs")
            return
        self._task = asyncio.create_task(self._poll_loop(), name="vep-poll-loop")
        self.logger.info("Scheduler started, polling every %.0fs", self.config.timing.poll_interval)

    async def stop(self) -> None:
        """Stop the background loop gracefully."""
        self._stop.set()
        self._wake_event.set()
        if self._task:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    def wake(self) -> None:
        """Run the next tick now instead of waiting for the poll interval."""
        self._wake_event.set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _poll_loop(self) -> None:
        while not self._stop.is_set():
            await self._tick()
            await self._wait_for_wakeup(self.config.timing.poll_interval)

    async def _tick(self) -> None:
        try:
            await self.run_pending_jobs()
        except Exception as exc:
            self.logger.exception("Unhandled error in scheduler tick: %s", exc)

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the loop while allowing external wake-ups."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(float(timeout)):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        timeout = max(0.0, float(timeout))
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except TimeoutError:
            return
        self._wake_event.clear()

    # ----------------------------------------------------------------- execution
    async def run_pending_jobs(self) -> ExecutionReport:
        """Select due jobs and execute them one at a time.

        Shared by the polling loop and manual triggers; only one pass runs at
        any moment.
        """
        async with self._tick_lock:
            now = self._now()
            pending = await self.persistence.list_jobs_by_status(JobStatus.PENDING)
            due = select_due_jobs(pending, now, self.config.timing, logger=self.logger)
            self.logger.debug("Tick at %s: %d pending, %d due", now.isoformat(), len(pending), len(due))
            report = ExecutionReport(executed_at=now.isoformat(timespec="seconds"))
            for job in due:
                report.jobs.append(await self.execute_job(job))
            await self._refresh_pending_gauge()
            self.last_report = report
            if due:
                self.logger.info("Execution pass finished: %s", report.summary())
            return report

    async def execute_job(self, job: Job) -> JobReport:
        """Claim ``job`` and deliver to every recipient.

        Never raises: job-level failures move the job to ``ERROR`` and are
        reported in the returned :class:`JobReport`. A failed claim leaves the
        job untouched and is reported as skipped.
        """
        try:
            claimed = await self.persistence.claim_job_if_pending(job.id)
        except Exception as exc:
            self.logger.exception("Could not claim job %s: %s", job.id, exc)
            return JobReport(job_id=job.id, skipped=True, error=str(exc))
        if claimed is None:
            self.logger.info("Job %s already claimed, skipping", job.id)
            return JobReport(job_id=job.id, skipped=True)

        self.logger.info("Executing job %s (%s, %d recipients)", claimed.id, claimed.type, len(claimed.users))
        outcomes: List[DeliveryOutcome] = []
        try:
            await self._process_job(claimed, outcomes)
            await self.persistence.update_job_status(claimed.id, JobStatus.FINISHED, self._now_iso())
        except Exception as exc:
            self.logger.exception("Job %s failed: %s", claimed.id, exc)
            try:
                await self.persistence.update_job_status(claimed.id, JobStatus.ERROR, self._now_iso())
            except Exception:
                self.logger.exception("Could not mark job %s as ERROR", claimed.id)
            self.metrics.inc_job_error()
            return JobReport(job_id=claimed.id, status=JobStatus.ERROR, error=str(exc), outcomes=outcomes)

        self.metrics.inc_job_finished()
        report = JobReport(job_id=claimed.id, status=JobStatus.FINISHED, outcomes=outcomes)
        self.logger.info(
            "Job %s finished: %d sent, %d failed", claimed.id, report.sent_count, report.failed_count
        )
        return report

    async def _process_job(self, job: Job, outcomes: List[DeliveryOutcome]) -> None:
        if not await self.channel.is_connected():
            raise ChannelDisconnectedError()
        template = await self.templates.resolve(job.type)
        folder = job.folder_name or self.config.storage.default_folder

        for index, recipient in enumerate(job.users):
            if index:
                await self._sleep(self.config.timing.recipient_pause)
            outcome = await self._process_recipient(job, recipient, template, folder)
            outcomes.append(outcome)
            await self.persistence.update_recipient_sent_flags(
                job.id, [{"recipient_id": recipient.id, "sent": outcome.success}]
            )
            if outcome.success:
                await self.persistence.update_last_execution(recipient.id, self._now_iso())

    async def _process_recipient(self, job: Job, recipient: Recipient, template: str, folder: str) -> DeliveryOutcome:
        try:
            attachments = await self.attachments.resolve(recipient, folder)
            message = render(template, recipient, job, self._now())
            return await self.gateway.deliver(recipient, message, attachments, category=job.type)
        except Exception as exc:
            self.logger.error("Recipient %s of job %s failed: %s", recipient.real_name, job.id, exc)
            self.metrics.inc_failed(job.type)
            return DeliveryOutcome(
                recipient_id=recipient.id,
                recipient_name=recipient.real_name,
                success=False,
                error=str(exc),
            )

    # ------------------------------------------------------------------- queries
    async def job_stats(self) -> Dict[str, int]:
        """Return job counts per status plus the total."""
        counts = await self.persistence.count_jobs_by_status()
        stats = {"total": sum(counts.values())}
        stats.update({status.lower(): count for status, count in counts.items()})
        return stats

    async def list_jobs(self, status: JobStatus | str | None = None) -> List[Job]:
        if status is None:
            return await self.persistence.list_jobs()
        return await self.persistence.list_jobs_by_status(status)

    async def ready_jobs(self) -> List[Job]:
        """Preview the jobs the next tick would pick, without claiming them."""
        pending = await self.persistence.list_jobs_by_status(JobStatus.PENDING)
        return select_due_jobs(pending, self._now(), self.config.timing, logger=self.logger)

    async def _refresh_pending_gauge(self) -> None:
        try:
            counts = await self.persistence.count_jobs_by_status()
        except Exception:
            self.logger.exception("Failed to refresh pending gauge")
            return
        self.metrics.set_pending(counts.get(JobStatus.PENDING.value, 0))

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands."""
        payload = payload or {}
        if cmd == "run now":
            report = await self.run_pending_jobs()
            return {"ok": True, "summary": report.summary(), "report": report.model_dump(mode="json")}
        if cmd == "stats":
            return {"ok": True, "stats": await self.job_stats()}
        if cmd == "listJobs":
            status = payload.get("status")
            if status is not None and JobStatus.__members__.get(str(status).upper()) is None:
                return {"ok": False, "error": f"unknown status '{status}'"}
            jobs = await self.list_jobs(str(status).upper() if status is not None else None)
            return {"ok": True, "jobs": [job.model_dump(mode="json") for job in jobs]}
        if cmd == "readyJobs":
            jobs = await self.ready_jobs()
            return {"ok": True, "jobs": [job.model_dump(mode="json") for job in jobs]}
        if cmd == "addJob":
            return await self._handle_add_job(payload)
        if cmd == "deleteJob":
            job_id = payload.get("id")
            if job_id is None:
                return {"ok": False, "error": "missing 'id'"}
            removed = await self.persistence.delete_job(int(job_id))
            await self._refresh_pending_gauge()
            return {"ok": removed} if removed else {"ok": False, "error": f"job {job_id} not found"}
        if cmd == "getJob":
            job_id = payload.get("id")
            if job_id is None:
                return {"ok": False, "error": "missing 'id'"}
            job = await self.persistence.get_job(int(job_id))
            if job is None:
                return {"ok": False, "error": f"job {job_id} not found"}
            return {"ok": True, "job": job.model_dump(mode="json")}
        if cmd == "updateJob":
            return await self._handle_update_job(payload)
        if cmd == "listTemplates":
            stored = await self.persistence.list_templates()
            return {
                "ok": True,
                "templates": stored,
                "defaults": {category.value: text for category, text in DEFAULT_TEMPLATES.items()},
                "cached": self.templates.cached_categories(),
            }
        if cmd == "gatewayStatus":
            connected = await self.channel.is_connected()
            return {"ok": True, "connected": connected, **self.gateway.status()}
        if cmd == "addUser":
            return await self._handle_save_user(payload, create=True)
        if cmd == "updateUser":
            return await self._handle_save_user(payload, create=False)
        if cmd == "listUsers":
            return {"ok": True, "users": await self.persistence.list_vep_users()}
        if cmd == "getUser":
            user_id = payload.get("id")
            if user_id is None:
                return {"ok": False, "error": "missing 'id'"}
            user = await self.persistence.get_vep_user(int(user_id))
            if user is None:
                return {"ok": False, "error": f"user {user_id} not found"}
            return {"ok": True, "user": user}
        if cmd == "deleteUser":
            user_id = payload.get("id")
            if user_id is None:
                return {"ok": False, "error": "missing 'id'"}
            removed = await self.persistence.delete_vep_user(int(user_id))
            return {"ok": removed} if removed else {"ok": False, "error": f"user {user_id} not found"}
        if cmd == "usersNotSentThisMonth":
            return {"ok": True, "users": await self.users_not_sent_this_month()}
        return {"ok": False, "error": "unknown command"}

    def _check_job_fields(self, payload: Dict[str, Any], *, partial: bool = False) -> Optional[str]:
        """Return an error message for invalid job fields, ``None`` when valid."""
        if not partial or "type" in payload:
            if not payload.get("type"):
                return "missing 'type'"
            if JobCategory.parse(payload["type"]) is None:
                return f"unknown type '{payload['type']}'"
        if not partial or "execution_time" in payload:
            if not payload.get("execution_time"):
                return "missing 'execution_time'"
            if parse_execution_time(payload["execution_time"], self.timezone) is None:
                return f"invalid execution_time '{payload['execution_time']}'"
        try:
            for user in payload.get("users") or []:
                Recipient.model_validate(user)
        except ValidationError as exc:
            return f"invalid recipient: {exc.errors()[0].get('msg')}"
        return None

    async def _handle_add_job(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        error = self._check_job_fields(payload)
        if error:
            return {"ok": False, "error": error}
        users = payload.get("users") or []
        data = dict(payload)
        data["status"] = JobStatus.PENDING.value
        job_id = await self.persistence.add_job(data)
        await self._refresh_pending_gauge()
        self.logger.info("Job %s added (%s, %d recipients)", job_id, data["type"], len(users))
        return {"ok": True, "id": job_id}

    async def _handle_update_job(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        job_id = payload.get("id")
        if job_id is None:
            return {"ok": False, "error": "missing 'id'"}
        fields = {key: value for key, value in payload.items() if key != "id"}
        error = self._check_job_fields(fields, partial=True)
        if error:
            return {"ok": False, "error": error}
        if not await self.persistence.update_job(int(job_id), fields):
            return {"ok": False, "error": f"job {job_id} not found or no longer pending"}
        self.logger.info("Job %s updated (%s)", job_id, ", ".join(sorted(fields)) or "no changes")
        return {"ok": True, "id": int(job_id)}

    async def _handle_save_user(self, payload: Dict[str, Any], *, create: bool) -> Dict[str, Any]:
        user_id = payload.get("id")
        existing = await self.persistence.get_vep_user(int(user_id)) if user_id is not None else None
        if create and existing is not None:
            return {"ok": False, "error": f"user {user_id} already exists"}
        if not create:
            if user_id is None:
                return {"ok": False, "error": "missing 'id'"}
            if existing is None:
                return {"ok": False, "error": f"user {user_id} not found"}
        try:
            user = VepUser.model_validate({**(existing or {}), **payload})
        except ValidationError as exc:
            return {"ok": False, "error": f"invalid user: {exc.errors()[0].get('msg')}"}
        saved_id = await self.persistence.upsert_vep_user(user.model_dump())
        return {"ok": True, "id": saved_id}

    async def users_not_sent_this_month(self) -> List[Dict[str, Any]]:
        """Directory entries without a delivery since the first day of the current month."""
        month_start = self._now().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        pending = []
        for user in await self.persistence.list_vep_users():
            last = parse_execution_time(user.get("last_execution"), self.timezone)
            if last is None or last < month_start:
                pending.append(user)
        return pending
