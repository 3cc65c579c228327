from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Callable, Dict, List

from flask import Flask

from fulfillsync.contexts.queue.domain.jobs import SyncJob
from fulfillsync.contexts.queue.infrastructure.job_queue import JobQueue
from fulfillsync.db import close_db, get_db
from fulfillsync.errors import PermanentError
from fulfillsync.observability import bind_request_id


JobHandler = Callable[[object, SyncJob], None]


@dataclass(frozen=True)
class QueueRegistration:
    queue_name: str
    handler: JobHandler
    batch_size: int = 1
    concurrency: int = 1
    timeout_seconds: float = 120.0


def _empty_summary() -> Dict[str, int]:
    return {"processed": 0, "succeeded": 0, "retried": 0, "failed": 0}


def _merge(total: Dict[str, int], partial: Dict[str, int]) -> None:
    for key, value in partial.items():
        total[key] = int(total.get(key, 0)) + int(value)


class WorkerPool:
    """Pulls batches per queue and runs the registered handler for each job.

    A handler receives ``(db, job)`` with a connection bound to its own app
    context. Returning normally completes the job; raising fails the attempt.
    """

    def __init__(
        self,
        app: Flask,
        job_queue: JobQueue,
        *,
        poll_interval_seconds: float = 5.0,
        default_timeout_seconds: float = 120.0,
    ) -> None:
        self.app = app
        self.job_queue = job_queue
        self.poll_interval_seconds = max(0.05, float(poll_interval_seconds))
        self.default_timeout_seconds = max(0.01, float(default_timeout_seconds))
        self._registrations: Dict[str, QueueRegistration] = {}
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def queue_names(self) -> List[str]:
        return list(self._registrations)

    def registration(self, queue_name: str) -> QueueRegistration:
        return self._registrations[queue_name]

    def register(
        self,
        queue_name: str,
        handler: JobHandler,
        *,
        batch_size: int = 1,
        concurrency: int | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        batch = max(1, int(batch_size))
        self._registrations[queue_name] = QueueRegistration(
            queue_name=queue_name,
            handler=handler,
            batch_size=batch,
            concurrency=max(1, int(concurrency or batch)),
            timeout_seconds=float(timeout_seconds or self.default_timeout_seconds),
        )

    def start(self) -> None:
        if any(thread.is_alive() for thread in self._threads):
            return
        self._stop_event.clear()
        self._threads = []
        for registration in self._registrations.values():
            thread = threading.Thread(
                target=self._run_loop,
                args=(registration,),
                name=f"worker-{registration.queue_name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        self.app.logger.info(
            "worker_pool_started",
            extra={"queues": sorted(self._registrations), "poll_interval_seconds": self.poll_interval_seconds},
        )

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def _run_loop(self, registration: QueueRegistration) -> None:
        while not self._stop_event.is_set():
            try:
                summary = self._process_queue(registration)
            except Exception:  # noqa: BLE001
                self.app.logger.exception("worker_loop_failed", extra={"queue": registration.queue_name})
                summary = _empty_summary()
            # Drain without sleeping while there is work.
            if summary["processed"] == 0:
                self._stop_event.wait(self.poll_interval_seconds)

    def run_once(self, queue_name: str | None = None) -> Dict[str, int]:
        """Process one batch per queue (or only ``queue_name``) and return the counters."""
        total = _empty_summary()
        for name, registration in self._registrations.items():
            if queue_name and name != queue_name:
                continue
            _merge(total, self._process_queue(registration))
        return total

    def _process_queue(self, registration: QueueRegistration) -> Dict[str, int]:
        summary = _empty_summary()
        with self.app.app_context():
            db = get_db()
            try:
                jobs = self.job_queue.fetch(db, registration.queue_name, registration.batch_size)
                if not jobs:
                    return summary

                executor = ThreadPoolExecutor(
                    max_workers=min(registration.concurrency, len(jobs)),
                    thread_name_prefix=f"job-{registration.queue_name}",
                )
                try:
                    started = time.perf_counter()
                    futures = [(job, executor.submit(self._invoke, registration.handler, job)) for job in jobs]
                    deadline = started + registration.timeout_seconds
                    for job, future in futures:
                        summary["processed"] += 1
                        outcome = self._settle(db, registration, job, future, deadline, started)
                        if outcome in summary:
                            summary[outcome] += 1
                finally:
                    # A handler that overran keeps its thread; the external call is not interruptible.
                    executor.shutdown(wait=False)
            finally:
                close_db()

        self.app.logger.info(
            "worker_batch_completed",
            extra={"queue": registration.queue_name, **summary},
        )
        return summary

    def _settle(self, db, registration: QueueRegistration, job: SyncJob, future, deadline: float, started: float) -> str:
        try:
            future.result(timeout=max(0.0, deadline - time.perf_counter()))
        except FutureTimeoutError:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            return self.job_queue.fail(
                db,
                job,
                f"handler timed out after {registration.timeout_seconds:g}s",
                duration_ms=elapsed_ms,
            )
        except PermanentError as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            return self.job_queue.fail(db, job, f"{exc.code}: {exc}", permanent=True, duration_ms=elapsed_ms)
        except Exception as exc:  # noqa: BLE001
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            return self.job_queue.fail(db, job, str(exc) or type(exc).__name__, duration_ms=elapsed_ms)

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        self.job_queue.complete(db, job, duration_ms=elapsed_ms)
        return "succeeded"

    def _invoke(self, handler: JobHandler, job: SyncJob) -> None:
        with self.app.app_context(), bind_request_id(f"job-{job.queue_name}-{job.id}"):
            db = get_db()
            try:
                handler(db, job)
                db.commit()
            except BaseException:
                db.rollback()
                raise
            finally:
                close_db()
