from __future__ import annotations

import os
import threading
import time
from typing import Callable

from flask import Flask

from fulfillsync.contexts.fulfillment.application.adapter import FulfillmentSyncAdapter
from fulfillsync.contexts.sync.infrastructure.channel_repository import ChannelRepository
from fulfillsync.db import close_db, get_db
from fulfillsync.observability import bind_request_id


class PollScheduler:
    """Pulls fulfillment progress for every client on a fixed interval.

    A client whose poll fails is skipped until its backoff expires; the
    backoff doubles per consecutive failure up to ``max_backoff_seconds``.
    """

    def __init__(
        self,
        app: Flask,
        adapter: FulfillmentSyncAdapter,
        *,
        channels: ChannelRepository | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.app = app
        self.adapter = adapter
        self.channels = channels or ChannelRepository()
        self.interval_seconds = _int_config(app, "FFN_POLL_INTERVAL_SECONDS", 300, 10, 86_400)
        self.min_backoff_seconds = _int_config(app, "FFN_POLL_MIN_BACKOFF_SECONDS", 30, 5, 3600)
        self.max_backoff_seconds = _int_config(
            app,
            "FFN_POLL_MAX_BACKOFF_SECONDS",
            1800,
            self.min_backoff_seconds,
            86_400,
        )
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._failure_counts: dict[str, int] = {}
        self._next_run_at: dict[str, float] = {}
        self._shipping_methods_synced = False

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="ffn-poll-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                self.app.logger.exception("ffn_poll_cycle_failed")
            self._stop_event.wait(self.interval_seconds)

    def run_once(self) -> dict[str, dict]:
        summaries: dict[str, dict] = {}
        with self.app.app_context(), bind_request_id(f"poll-{int(time.time())}"):
            db = get_db()
            try:
                client_ids = self.channels.list_client_ids(db)
                if client_ids and not self._shipping_methods_synced:
                    self._sync_shipping_methods(db, client_ids[0])
                for client_id in client_ids:
                    summary = self._poll_client(db, client_id)
                    if summary is not None:
                        summaries[client_id] = summary
            finally:
                close_db()
        return summaries

    def _sync_shipping_methods(self, db, client_id: str) -> None:
        try:
            self.adapter.sync_shipping_methods(db, client_id)
            self._shipping_methods_synced = True
        except Exception as exc:  # noqa: BLE001
            self.app.logger.warning("ffn_shipping_method_sync_failed", extra={"client_id": client_id, "error": str(exc)[:200]})

    def _poll_client(self, db, client_id: str) -> dict | None:
        if not self._is_due(client_id):
            return None
        try:
            summary = self.adapter.poll_updates(db, client_id)
        except Exception as exc:  # noqa: BLE001
            backoff = self._register_failure(client_id)
            self.app.logger.warning(
                "ffn_poll_failed",
                extra={"client_id": client_id, "error": str(exc)[:200], "backoff_seconds": backoff},
            )
            return {"client_id": client_id, "error": str(exc)[:200], "backoff_seconds": backoff}
        self._clear_backoff(client_id)
        self.app.logger.info("ffn_poll_completed", extra=summary.to_dict())
        return summary.to_dict()

    def _is_due(self, client_id: str) -> bool:
        next_run_at = self._next_run_at.get(client_id)
        if next_run_at is None:
            return True
        return self._clock() >= next_run_at

    def _clear_backoff(self, client_id: str) -> None:
        self._failure_counts.pop(client_id, None)
        self._next_run_at.pop(client_id, None)

    def _register_failure(self, client_id: str) -> int:
        failure_count = self._failure_counts.get(client_id, 0) + 1
        self._failure_counts[client_id] = failure_count
        backoff_seconds = min(
            self.max_backoff_seconds,
            self.min_backoff_seconds * (2 ** (failure_count - 1)),
        )
        self._next_run_at[client_id] = self._clock() + backoff_seconds
        return backoff_seconds


def should_start_background(app: Flask, flag: str) -> bool:
    if not app.config.get(flag, False):
        return False
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True


def _int_config(app: Flask, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))
