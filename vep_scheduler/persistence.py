"""SQLite backed persistence used by the VEP scheduler."""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite
from pydantic import ValidationError

from .errors import InvalidTransitionError
from .logger import get_logger
from .models import Job, JobStatus

_USER_FLAGS = ("is_group", "need_papers", "need_z", "need_compra", "need_auditoria")

# Columns of a job that may still change while it waits in PENDING.
EDITABLE_JOB_FIELDS = ("users", "type", "execution_time", "caducate", "folder_name")


class Persistence:
    """Helper class responsible for reading and writing jobs, templates and users."""

    def __init__(self, db_path: str = "/data/vep_scheduler.db", logger=None):
        """Persist data to the given database path."""
        self.db_path = db_path or ":memory:"
        self.logger = logger or get_logger()

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS job_time (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    users TEXT NOT NULL DEFAULT '[]',
                    type TEXT NOT NULL,
                    execution_time TEXT,
                    status TEXT NOT NULL DEFAULT 'PENDING'
                        CHECK (status IN ('PENDING', 'RUNNING', 'FINISHED', 'ERROR')),
                    caducate TEXT,
                    executed_at TEXT,
                    folder_name TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_job_time_status ON job_time(status)")

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS message_templates (
                    type TEXT PRIMARY KEY,
                    template TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS vep_users (
                    id INTEGER PRIMARY KEY,
                    real_name TEXT,
                    mobile_number TEXT,
                    cuit TEXT,
                    last_execution TEXT
                )
                """
            )
            for column in ("alter_name TEXT", *(f"{flag} INTEGER DEFAULT 0" for flag in _USER_FLAGS)):
                try:
                    await db.execute(f"ALTER TABLE vep_users ADD COLUMN {column}")
                except aiosqlite.OperationalError:
                    pass
            await db.commit()

    # Jobs ---------------------------------------------------------------------
    @staticmethod
    def _decode_job_row(row: Tuple[Any, ...], columns: Sequence[str]) -> Job:
        data = dict(zip(columns, row))
        users = data.pop("users", None)
        try:
            data["users"] = json.loads(users) if users else []
        except json.JSONDecodeError:
            data["users"] = []
        return Job.model_validate(data)

    def _decode_job_rows(self, rows: Iterable[Tuple[Any, ...]], columns: Sequence[str]) -> List[Job]:
        """Decode listed rows; rows that fail validation are logged and left out."""
        jobs: List[Job] = []
        for row in rows:
            try:
                jobs.append(self._decode_job_row(row, columns))
            except ValidationError as exc:
                job_id = dict(zip(columns, row)).get("id")
                self.logger.warning(
                    "Skipping job %s: stored row is invalid (%d errors): %s",
                    job_id,
                    exc.error_count(),
                    exc,
                )
        return jobs

    async def add_job(self, job: Dict[str, Any]) -> int:
        """Insert a new job in ``PENDING`` state and return its id."""
        users = job.get("users") or []
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO job_time (id, users, type, execution_time, status, caducate, folder_name)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.get("id"),
                    json.dumps(users, ensure_ascii=False),
                    job["type"],
                    job.get("execution_time"),
                    JobStatus(job.get("status", JobStatus.PENDING)).value,
                    job.get("caducate"),
                    job.get("folder_name"),
                ),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def get_job(self, job_id: int) -> Optional[Job]:
        """Return a job or ``None`` when it does not exist."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM job_time WHERE id=?", (job_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_job_row(row, cols)

    async def list_jobs(self) -> List[Job]:
        """Return every job ordered by execution time."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM job_time ORDER BY execution_time ASC, id ASC") as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return self._decode_job_rows(rows, cols)

    async def list_jobs_by_status(self, status: JobStatus | str) -> List[Job]:
        """Return jobs in the given status ordered by execution time."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM job_time WHERE status=? ORDER BY execution_time ASC, id ASC",
                (JobStatus(status).value,),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return self._decode_job_rows(rows, cols)

    async def delete_job(self, job_id: int) -> bool:
        """Remove a job regardless of its state."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM job_time WHERE id=?", (job_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def update_job(self, job_id: int, fields: Dict[str, Any]) -> bool:
        """Overwrite editable columns of a job still in ``PENDING``.

        Keys outside :data:`EDITABLE_JOB_FIELDS` are ignored. Returns ``False``
        when the job does not exist or has already been claimed.
        """
        changes = {key: fields[key] for key in EDITABLE_JOB_FIELDS if key in fields}
        if "users" in changes:
            changes["users"] = json.dumps(changes["users"] or [], ensure_ascii=False)
        async with aiosqlite.connect(self.db_path) as db:
            if not changes:
                async with db.execute(
                    "SELECT 1 FROM job_time WHERE id=? AND status=?",
                    (job_id, JobStatus.PENDING.value),
                ) as cur:
                    return await cur.fetchone() is not None
            assignments = ", ".join(f"{key}=?" for key in changes)
            cursor = await db.execute(
                f"UPDATE job_time SET {assignments} WHERE id=? AND status=?",
                (*changes.values(), job_id, JobStatus.PENDING.value),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def count_jobs_by_status(self) -> Dict[str, int]:
        """Return the number of jobs per status, every status present."""
        counts = {status.value: 0 for status in JobStatus}
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT status, COUNT(*) FROM job_time GROUP BY status") as cur:
                rows = await cur.fetchall()
        for status, count in rows:
            counts[status] = int(count)
        return counts

    async def claim_job_if_pending(self, job_id: int) -> Optional[Job]:
        """Atomically move a job from ``PENDING`` to ``RUNNING``.

        The conditional UPDATE is the only guard against double execution:
        it succeeds for exactly one caller, every other caller sees zero
        affected rows and gets ``None``. The claimed row is read back inside
        the same transaction.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE job_time SET status=? WHERE id=? AND status=?",
                (JobStatus.RUNNING.value, job_id, JobStatus.PENDING.value),
            )
            if cursor.rowcount == 0:
                await db.rollback()
                return None
            async with db.execute("SELECT * FROM job_time WHERE id=?", (job_id,)) as cur:
                row = await cur.fetchone()
                cols = [c[0] for c in cur.description]
            await db.commit()
        return self._decode_job_row(row, cols)

    async def update_job_status(
        self,
        job_id: int,
        status: JobStatus | str,
        executed_at: Optional[str] = None,
        *,
        expected: JobStatus | str = JobStatus.RUNNING,
    ) -> bool:
        """Apply a validated status transition conditioned on the current status.

        Returns ``False`` when the row is no longer in ``expected`` state.
        Raises :class:`InvalidTransitionError` for edges outside the state machine.
        """
        target = JobStatus(status)
        source = JobStatus(expected)
        if not JobStatus.can_transition(source, target):
            raise InvalidTransitionError(job_id, source.value, target.value)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE job_time
                SET status=?, executed_at=COALESCE(?, executed_at)
                WHERE id=? AND status=?
                """,
                (target.value, executed_at, job_id, source.value),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def update_recipient_sent_flags(self, job_id: int, updates: Iterable[Dict[str, Any]]) -> int:
        """Set the ``sent`` flag of embedded recipients.

        ``updates`` holds ``{"recipient_id": ..., "sent": ...}`` entries.
        Returns the number of recipients that were updated.
        """
        flags = {entry["recipient_id"]: bool(entry["sent"]) for entry in updates}
        if not flags:
            return 0
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT users FROM job_time WHERE id=?", (job_id,)) as cur:
                row = await cur.fetchone()
            if not row:
                return 0
            users = json.loads(row[0]) if row[0] else []
            changed = 0
            for user in users:
                if user.get("id") in flags:
                    user["sent"] = flags[user["id"]]
                    changed += 1
            await db.execute(
                "UPDATE job_time SET users=? WHERE id=?",
                (json.dumps(users, ensure_ascii=False), job_id),
            )
            await db.commit()
        return changed

    # Templates ----------------------------------------------------------------
    async def get_template(self, category: str) -> Optional[Dict[str, Any]]:
        """Return the stored template row for a category, if any."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT type, template, updated_at FROM message_templates WHERE type=?",
                (category,),
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def upsert_template(self, category: str, text: str) -> None:
        """Insert or replace the template for a category."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO message_templates (type, template) VALUES (?, ?)
                ON CONFLICT(type) DO UPDATE SET
                    template = excluded.template,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (category, text),
            )
            await db.commit()

    async def list_templates(self) -> List[Dict[str, Any]]:
        """Return every stored template."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT type, template, updated_at FROM message_templates ORDER BY type"
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    # Users --------------------------------------------------------------------
    @staticmethod
    def _decode_user_row(row: Tuple[Any, ...], columns: Sequence[str]) -> Dict[str, Any]:
        user = dict(zip(columns, row))
        for flag in _USER_FLAGS:
            if flag in user:
                user[flag] = bool(user[flag])
        return user

    async def upsert_vep_user(self, user: Dict[str, Any]) -> int:
        """Insert or update a directory entry for a recipient and return its id.

        ``last_execution`` is owned by the scheduler and never overwritten here.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO vep_users
                (id, real_name, alter_name, mobile_number, cuit, is_group,
                 need_papers, need_z, need_compra, need_auditoria)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    real_name = excluded.real_name,
                    alter_name = excluded.alter_name,
                    mobile_number = excluded.mobile_number,
                    cuit = excluded.cuit,
                    is_group = excluded.is_group,
                    need_papers = excluded.need_papers,
                    need_z = excluded.need_z,
                    need_compra = excluded.need_compra,
                    need_auditoria = excluded.need_auditoria
                """,
                (
                    user.get("id"),
                    user.get("real_name"),
                    user.get("alter_name"),
                    user.get("mobile_number"),
                    user.get("cuit"),
                    *(1 if user.get(flag) else 0 for flag in _USER_FLAGS),
                ),
            )
            await db.commit()
            return int(user["id"]) if user.get("id") is not None else int(cursor.lastrowid)

    async def get_vep_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM vep_users WHERE id=?", (user_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._decode_user_row(row, cols)

    async def list_vep_users(self) -> List[Dict[str, Any]]:
        """Return every directory entry ordered by id."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM vep_users ORDER BY id") as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_user_row(row, cols) for row in rows]

    async def delete_vep_user(self, user_id: int) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM vep_users WHERE id=?", (user_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def update_last_execution(self, user_id: int, timestamp: str) -> None:
        """Record when a recipient last received documents.

        Recipients missing from ``vep_users`` are left untouched.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE vep_users SET last_execution=? WHERE id=?",
                (timestamp, user_id),
            )
            await db.commit()
