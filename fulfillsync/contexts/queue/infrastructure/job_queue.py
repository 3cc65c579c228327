from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List

from flask import current_app

from fulfillsync.contexts.queue.domain.jobs import (
    JOB_STATE_ACTIVE,
    JOB_STATE_CANCELLED,
    JOB_STATE_CREATED,
    JOB_STATE_FAILED,
    EnqueueResult,
    JobOptions,
    SyncJob,
    compute_retry_delay,
)
from fulfillsync.core import EventBus, JobDeadLettered
from fulfillsync.core.clock import iso_utc, json_dumps, json_loads, parse_iso_utc, row_to_dict, utcnow
from fulfillsync.db import integrity_errors
from fulfillsync.errors import SystemError
from fulfillsync.observability import observe_job_enqueued, observe_job_outcome, observe_job_retry_backoff


_JOB_COLUMNS = """
    id, queue_name, client_id, payload, priority, state, retry_count, retry_limit, retry_delay,
    retry_backoff, start_after, expire_in_seconds, singleton_key, last_error, started_at, created_at
"""


def _row_to_job(row) -> SyncJob:
    data = row_to_dict(row)
    return SyncJob(
        id=int(data["id"]),
        queue_name=str(data["queue_name"]),
        payload=json_loads(data.get("payload")),
        client_id=data.get("client_id"),
        priority=int(data.get("priority") or 0),
        state=str(data.get("state") or JOB_STATE_CREATED),
        retry_count=int(data.get("retry_count") or 0),
        retry_limit=int(data.get("retry_limit") or 0),
        retry_delay=int(data.get("retry_delay") or 0),
        retry_backoff=bool(data.get("retry_backoff")),
        start_after=data.get("start_after"),
        expire_in_seconds=int(data.get("expire_in_seconds") or 0),
        singleton_key=data.get("singleton_key"),
        last_error=data.get("last_error"),
        started_at=data.get("started_at"),
        created_at=data.get("created_at"),
    )


class JobQueue:
    """Durable job queue stored in ``sync_jobs``.

    Every method takes the caller's ``db`` so an enqueue can share the
    transaction of the state change that produced it. Successful jobs are
    deleted; jobs that exhaust their retries stay in ``failed`` for operators.
    """

    def __init__(
        self,
        *,
        event_bus: EventBus | None = None,
        default_retry_limit: int = 3,
        default_retry_delay: int = 60,
        default_expire_seconds: int = 3600,
        max_retry_delay: int = 3600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.event_bus = event_bus
        self.default_retry_limit = max(0, int(default_retry_limit))
        self.default_retry_delay = max(0, int(default_retry_delay))
        self.default_expire_seconds = max(1, int(default_expire_seconds))
        self.max_retry_delay = max(1, int(max_retry_delay))
        self._clock = clock
        self._running = False

    @classmethod
    def from_config(cls, config, *, event_bus: EventBus | None = None) -> "JobQueue":
        return cls(
            event_bus=event_bus,
            default_retry_limit=int(config.get("JOB_DEFAULT_RETRY_LIMIT", 3)),
            default_retry_delay=int(config.get("JOB_DEFAULT_RETRY_DELAY_SECONDS", 60)),
            default_expire_seconds=int(config.get("JOB_DEFAULT_EXPIRE_SECONDS", 3600)),
            max_retry_delay=int(config.get("JOB_MAX_RETRY_DELAY_SECONDS", 3600)),
        )

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        self._running = True

    def stop(self) -> None:
        self._running = False

    def send(
        self,
        db,
        queue_name: str,
        payload: Dict[str, Any],
        options: JobOptions | None = None,
        *,
        client_id: str | None = None,
    ) -> EnqueueResult:
        if not self._running:
            raise SystemError(code="job_queue_stopped", details=f"queue={queue_name}")
        opts = options or JobOptions()
        now = self._clock()
        start_after = opts.start_after or now
        retry_limit = self.default_retry_limit if opts.retry_limit is None else max(0, int(opts.retry_limit))
        retry_delay = self.default_retry_delay if opts.retry_delay is None else max(0, int(opts.retry_delay))
        expire_in = self.default_expire_seconds if opts.expire_in_seconds is None else max(1, int(opts.expire_in_seconds))
        singleton_key = str(opts.singleton_key or "").strip() or None

        with db.transaction():
            if singleton_key:
                existing = self._pending_singleton(db, queue_name, singleton_key)
                if existing is not None:
                    observe_job_enqueued(queue_name, True)
                    return EnqueueResult(job_id=existing, queue_name=queue_name, deduplicated=True)

            cursor = db.execute(
                """
                INSERT INTO sync_jobs (
                    queue_name, client_id, payload, priority, state, retry_count, retry_limit, retry_delay,
                    retry_backoff, start_after, expire_in_seconds, singleton_key, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (queue_name, singleton_key)
                    WHERE singleton_key IS NOT NULL AND state IN ('created','active')
                DO NOTHING
                RETURNING id
                """,
                (
                    queue_name,
                    client_id,
                    json_dumps(payload or {}),
                    int(opts.priority),
                    JOB_STATE_CREATED,
                    retry_limit,
                    retry_delay,
                    1 if opts.retry_backoff else 0,
                    iso_utc(start_after),
                    expire_in,
                    singleton_key,
                    iso_utc(now),
                    iso_utc(now),
                ),
            )
            row = cursor.fetchone()
            if row is None:
                # Lost the race against a concurrent sender with the same key.
                existing = self._pending_singleton(db, queue_name, singleton_key or "")
                observe_job_enqueued(queue_name, True)
                return EnqueueResult(job_id=int(existing or 0), queue_name=queue_name, deduplicated=True)
            job_id = int(row["id"] if isinstance(row, dict) else row[0])

        observe_job_enqueued(queue_name, False)
        current_app.logger.info(
            "sync_job_enqueued",
            extra={
                "queue": queue_name,
                "job_id": job_id,
                "client_id": client_id,
                "singleton_key": singleton_key,
                "priority": int(opts.priority),
            },
        )
        return EnqueueResult(job_id=job_id, queue_name=queue_name, deduplicated=False)

    def _pending_singleton(self, db, queue_name: str, singleton_key: str) -> int | None:
        row = db.execute(
            """
            SELECT id
            FROM sync_jobs
            WHERE queue_name = ? AND singleton_key = ? AND state IN (?, ?)
            ORDER BY id ASC
            LIMIT 1
            """,
            (queue_name, singleton_key, JOB_STATE_CREATED, JOB_STATE_ACTIVE),
        ).fetchone()
        if not row:
            return None
        return int(row["id"])

    def fetch(self, db, queue_name: str, batch_size: int = 1) -> List[SyncJob]:
        """Claim up to ``batch_size`` due jobs, highest priority first."""
        now = self._clock()
        self._expire_stale(db, queue_name, now)
        rows = db.execute(
            f"""
            SELECT {_JOB_COLUMNS}
            FROM sync_jobs
            WHERE queue_name = ? AND state = ? AND start_after <= ?
            ORDER BY priority DESC, created_at ASC, id ASC
            LIMIT ?
            """,
            (queue_name, JOB_STATE_CREATED, iso_utc(now), max(1, int(batch_size))),
        ).fetchall()

        claimed: List[SyncJob] = []
        for row in rows:
            job = _row_to_job(row)
            started_at = iso_utc(now)
            cursor = db.execute(
                """
                UPDATE sync_jobs
                SET state = ?, started_at = ?, updated_at = ?
                WHERE id = ? AND state = ?
                """,
                (JOB_STATE_ACTIVE, started_at, started_at, job.id, JOB_STATE_CREATED),
            )
            if int(getattr(cursor, "rowcount", 0) or 0) <= 0:
                continue
            job.state = JOB_STATE_ACTIVE
            job.started_at = started_at
            claimed.append(job)
        db.commit()
        return claimed

    def _expire_stale(self, db, queue_name: str, now: datetime) -> None:
        rows = db.execute(
            f"""
            SELECT {_JOB_COLUMNS}
            FROM sync_jobs
            WHERE queue_name = ? AND state = ?
            """,
            (queue_name, JOB_STATE_ACTIVE),
        ).fetchall()
        for row in rows:
            job = _row_to_job(row)
            started_at = parse_iso_utc(job.started_at)
            if started_at is None or started_at + timedelta(seconds=job.expire_in_seconds) > now:
                continue
            self.fail(db, job, f"job expired after {job.expire_in_seconds}s in active state", expired=True)

    def complete(self, db, job: SyncJob, *, duration_ms: float | None = None) -> bool:
        finished_at = iso_utc(self._clock())
        with db.transaction():
            cursor = db.execute(
                "DELETE FROM sync_jobs WHERE id = ? AND state = ?",
                (job.id, JOB_STATE_ACTIVE),
            )
            deleted = int(getattr(cursor, "rowcount", 0) or 0) > 0
            self._record_attempt(db, job, "succeeded", None, None, finished_at)
        observe_job_outcome(job.queue_name, "succeeded", duration_ms)
        if not deleted:
            current_app.logger.warning(
                "sync_job_completed_after_reclaim",
                extra={"queue": job.queue_name, "job_id": job.id},
            )
        return deleted

    def fail(
        self,
        db,
        job: SyncJob,
        error: str,
        *,
        permanent: bool = False,
        expired: bool = False,
        duration_ms: float | None = None,
    ) -> str:
        """Record a failed attempt and either reschedule the job or dead-letter it.

        Returns ``"retried"``, ``"failed"``, or ``"stale"`` when the job is no
        longer active (completed, expired or reclaimed by another worker).
        """
        now = self._clock()
        error_text = str(error or "")[:1000]
        retries_left = (not permanent) and int(job.retry_count) < int(job.retry_limit)

        with db.transaction():
            if retries_left:
                delay = compute_retry_delay(
                    job.retry_delay,
                    job.retry_count,
                    backoff=job.retry_backoff,
                    max_delay=self.max_retry_delay,
                )
                cursor = db.execute(
                    """
                    UPDATE sync_jobs
                    SET state = ?, retry_count = retry_count + 1, start_after = ?, started_at = NULL,
                        last_error = ?, updated_at = ?
                    WHERE id = ? AND state = ?
                    """,
                    (
                        JOB_STATE_CREATED,
                        iso_utc(now + timedelta(seconds=delay)),
                        error_text,
                        iso_utc(now),
                        job.id,
                        JOB_STATE_ACTIVE,
                    ),
                )
                updated = int(getattr(cursor, "rowcount", 0) or 0) > 0
                if updated:
                    self._record_attempt(db, job, "expired" if expired else "retried", error_text, delay, iso_utc(now))
            else:
                cursor = db.execute(
                    """
                    UPDATE sync_jobs
                    SET state = ?, last_error = ?, updated_at = ?
                    WHERE id = ? AND state = ?
                    """,
                    (JOB_STATE_FAILED, error_text, iso_utc(now), job.id, JOB_STATE_ACTIVE),
                )
                updated = int(getattr(cursor, "rowcount", 0) or 0) > 0
                if updated:
                    self._record_attempt(db, job, "expired" if expired else "failed", error_text, None, iso_utc(now))

        if not updated:
            current_app.logger.warning(
                "sync_job_fail_after_reclaim",
                extra={"queue": job.queue_name, "job_id": job.id, "error": error_text[:200]},
            )
            return "stale"

        if retries_left:
            observe_job_outcome(job.queue_name, "retried", duration_ms)
            observe_job_retry_backoff(delay)
            current_app.logger.warning(
                "sync_job_retry_scheduled",
                extra={
                    "queue": job.queue_name,
                    "job_id": job.id,
                    "attempt": job.attempt,
                    "retry_limit": job.retry_limit,
                    "next_backoff_seconds": round(delay, 3),
                    "error": error_text[:200],
                },
            )
            return "retried"

        observe_job_outcome(job.queue_name, "failed", duration_ms)
        current_app.logger.error(
            "sync_job_dead_lettered",
            extra={
                "queue": job.queue_name,
                "job_id": job.id,
                "attempt": job.attempt,
                "permanent": bool(permanent),
                "error": error_text[:200],
            },
        )
        if self.event_bus is not None:
            self.event_bus.publish(
                JobDeadLettered(
                    client_id=job.client_id or "",
                    job_id=job.id,
                    queue_name=job.queue_name,
                    attempts=job.attempt,
                    error=error_text[:200],
                )
            )
        return "failed"

    def _record_attempt(
        self,
        db,
        job: SyncJob,
        outcome: str,
        error: str | None,
        delay_seconds: float | None,
        finished_at: str,
    ) -> None:
        db.execute(
            """
            INSERT INTO sync_job_attempts (
                job_id, queue_name, attempt, outcome, error, delay_seconds, started_at, finished_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (job.id, job.queue_name, job.attempt, outcome, error, delay_seconds, job.started_at, finished_at),
        )

    def cancel(self, db, job_id: int) -> bool:
        """Cancel a job that has not started yet. Active jobs run to completion."""
        cursor = db.execute(
            """
            UPDATE sync_jobs
            SET state = ?, updated_at = ?
            WHERE id = ? AND state = ?
            """,
            (JOB_STATE_CANCELLED, iso_utc(self._clock()), int(job_id), JOB_STATE_CREATED),
        )
        db.commit()
        cancelled = int(getattr(cursor, "rowcount", 0) or 0) > 0
        if cancelled:
            current_app.logger.info("sync_job_cancelled", extra={"job_id": int(job_id)})
        return cancelled

    def resume(self, db, job_id: int) -> bool:
        return self._requeue(db, job_id, from_state=JOB_STATE_CANCELLED, reset_retries=False)

    def retry_failed(self, db, job_id: int) -> bool:
        return self._requeue(db, job_id, from_state=JOB_STATE_FAILED, reset_retries=True)

    def _requeue(self, db, job_id: int, *, from_state: str, reset_retries: bool) -> bool:
        now = iso_utc(self._clock())
        retry_clause = "retry_count = 0," if reset_retries else ""
        try:
            with db.transaction():
                cursor = db.execute(
                    f"""
                    UPDATE sync_jobs
                    SET state = ?, {retry_clause} start_after = ?, started_at = NULL, updated_at = ?
                    WHERE id = ? AND state = ?
                    """,
                    (JOB_STATE_CREATED, now, now, int(job_id), from_state),
                )
        except integrity_errors():
            # An equivalent singleton job is already pending.
            return False
        requeued = int(getattr(cursor, "rowcount", 0) or 0) > 0
        if requeued:
            current_app.logger.info("sync_job_requeued", extra={"job_id": int(job_id), "from_state": from_state})
        return requeued

    def get(self, db, job_id: int) -> SyncJob | None:
        row = db.execute(
            f"SELECT {_JOB_COLUMNS} FROM sync_jobs WHERE id = ?",
            (int(job_id),),
        ).fetchone()
        return _row_to_job(row) if row else None

    def list_failed(self, db, queue_name: str | None = None, *, client_id: str | None = None, limit: int = 100) -> List[SyncJob]:
        clauses = ["state = ?"]
        params: List[object] = [JOB_STATE_FAILED]
        if queue_name:
            clauses.append("queue_name = ?")
            params.append(queue_name)
        if client_id:
            clauses.append("client_id = ?")
            params.append(client_id)
        rows = db.execute(
            f"""
            SELECT {_JOB_COLUMNS}
            FROM sync_jobs
            WHERE {' AND '.join(clauses)}
            ORDER BY updated_at DESC, id DESC
            LIMIT ?
            """,
            (*params, max(1, int(limit))),
        ).fetchall()
        return [_row_to_job(row) for row in rows]

    def attempts(self, db, job_id: int) -> List[Dict[str, Any]]:
        rows = db.execute(
            """
            SELECT attempt, outcome, error, delay_seconds, started_at, finished_at
            FROM sync_job_attempts
            WHERE job_id = ?
            ORDER BY attempt ASC, id ASC
            """,
            (int(job_id),),
        ).fetchall()
        return [row_to_dict(row) for row in rows]

    def counts(self, db) -> Dict[str, int]:
        rows = db.execute("SELECT state, COUNT(*) AS total FROM sync_jobs GROUP BY state").fetchall()
        counters = {JOB_STATE_CREATED: 0, JOB_STATE_ACTIVE: 0, JOB_STATE_FAILED: 0, JOB_STATE_CANCELLED: 0}
        for row in rows:
            counters[str(row["state"])] = int(row["total"])
        return counters
