from __future__ import annotations

import argparse
import time
import uuid

from fulfillsync import create_app
from fulfillsync.config import Config
from fulfillsync.contexts.queue.domain.jobs import QUEUE_NAMES
from fulfillsync.engine import get_engine


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync job worker.")
    parser.add_argument("--once", action="store_true", help="Process one batch per queue and exit.")
    parser.add_argument("--queue", default="", choices=("",) + QUEUE_NAMES, help="Process only this queue.")
    parser.add_argument("--limit", type=int, default=0, help="Maximum jobs per batch.")
    parser.add_argument("--interval", type=float, default=0, help="Seconds between batches.")
    return parser


class WorkerConfig(Config):
    # The worker drives the pool itself; no background threads from create_app.
    WORKER_POOL_ENABLED = False
    FFN_POLL_ENABLED = False
    DB_AUTO_INIT = False


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    app = create_app(WorkerConfig)
    engine = get_engine(app)
    pool = engine.worker_pool

    queue_name = str(args.queue or "").strip() or None
    if args.limit:
        for name in pool.queue_names:
            registration = pool.registration(name)
            pool.register(
                name,
                registration.handler,
                batch_size=max(1, int(args.limit)),
                timeout_seconds=registration.timeout_seconds,
            )
    interval_seconds = max(0.1, float(args.interval or app.config.get("WORKER_POLL_INTERVAL_SECONDS", 5.0)))

    try:
        while True:
            run_request_id = f"worker-{uuid.uuid4().hex[:12]}"
            summary = pool.run_once(queue_name)
            app.logger.info(
                "sync_worker_batch_completed",
                extra={"request_id": run_request_id, "queue": queue_name or "all", **summary},
            )
            if args.once:
                break
            if summary["processed"] == 0:
                time.sleep(interval_seconds)
    finally:
        engine.stop()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
