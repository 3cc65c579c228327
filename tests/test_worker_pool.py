import threading
import unittest

from fulfillsync.contexts.queue.application.worker_pool import WorkerPool
from fulfillsync.contexts.queue.domain.jobs import (
    ORDER_SYNC_TO_COMMERCE,
    ORDER_SYNC_TO_FFN,
    JobOptions,
    PermanentJobError,
)
from tests.helpers.app_case import CLIENT_ID, SyncAppTestCase


TEST_QUEUE = "test-queue"


class WorkerPoolTest(SyncAppTestCase):
    sandbox_prefix = "worker_pool"

    def setUp(self) -> None:
        super().setUp()
        self.pool = WorkerPool(self.app, self.engine.job_queue, default_timeout_seconds=5)
        self.release = threading.Event()

    def tearDown(self) -> None:
        self.release.set()
        super().tearDown()

    def _send(self, payload=None, **options):
        return self.engine.job_queue.send(
            self.db, TEST_QUEUE, payload or {"value": 1}, JobOptions(**options), client_id=CLIENT_ID
        )

    def test_successful_handler_completes_the_job(self) -> None:
        seen = []
        self.pool.register(TEST_QUEUE, lambda db, job: seen.append(job.payload["value"]), batch_size=3)
        sent = [self._send({"value": value}) for value in (1, 2)]

        summary = self.pool.run_once()

        self.assertEqual(summary, {"processed": 2, "succeeded": 2, "retried": 0, "failed": 0})
        self.assertEqual(sorted(seen), [1, 2])
        self.assertIsNone(self.engine.job_queue.get(self.db, sent[0].job_id))
        self.assertEqual(self.pool.run_once(), {"processed": 0, "succeeded": 0, "retried": 0, "failed": 0})

    def test_handler_writes_are_committed(self) -> None:
        def handler(db, job) -> None:
            db.execute("UPDATE clients SET name = ? WHERE id = ?", ("Renamed", job.client_id))

        self.pool.register(TEST_QUEUE, handler)
        self._send()

        self.pool.run_once()

        name = self.db.execute("SELECT name FROM clients WHERE id = ?", (CLIENT_ID,)).fetchone()["name"]
        self.assertEqual(name, "Renamed")

    def test_failing_handler_is_retried_and_rolled_back(self) -> None:
        def handler(db, job) -> None:
            db.execute("UPDATE clients SET name = ? WHERE id = ?", ("Broken", job.client_id))
            raise RuntimeError("FFN HTTP 503")

        self.pool.register(TEST_QUEUE, handler)
        sent = self._send(retry_limit=2)

        summary = self.pool.run_once()

        self.assertEqual(summary["retried"], 1)
        job = self.engine.job_queue.get(self.db, sent.job_id)
        self.assertEqual(job.state, "created")
        self.assertEqual(job.retry_count, 1)
        self.assertEqual(job.last_error, "FFN HTTP 503")
        name = self.db.execute("SELECT name FROM clients WHERE id = ?", (CLIENT_ID,)).fetchone()["name"]
        self.assertEqual(name, "Client A")

    def test_permanent_error_fails_without_retry(self) -> None:
        def handler(db, job) -> None:
            raise PermanentJobError(code="job_payload_invalid", details="missing order_id")

        self.pool.register(TEST_QUEUE, handler)
        sent = self._send(retry_limit=5)

        summary = self.pool.run_once()

        self.assertEqual(summary["failed"], 1)
        job = self.engine.job_queue.get(self.db, sent.job_id)
        self.assertEqual(job.state, "failed")
        self.assertTrue(job.last_error.startswith("job_payload_invalid"))

    def test_slow_handler_times_out(self) -> None:
        self.pool.register(TEST_QUEUE, lambda db, job: self.release.wait(5), timeout_seconds=0.2)
        sent = self._send(retry_limit=1)

        summary = self.pool.run_once()
        self.release.set()

        self.assertEqual(summary["retried"], 1)
        job = self.engine.job_queue.get(self.db, sent.job_id)
        self.assertEqual(job.last_error, "handler timed out after 0.2s")

    def test_registration_defaults(self) -> None:
        self.pool.register(TEST_QUEUE, lambda db, job: None, batch_size=4)

        registration = self.pool.registration(TEST_QUEUE)

        self.assertEqual(registration.concurrency, 4)
        self.assertEqual(registration.timeout_seconds, 5.0)
        self.assertEqual(self.pool.queue_names, [TEST_QUEUE])


class SyncJobHandlerTest(SyncAppTestCase):
    sandbox_prefix = "worker_handlers"

    def setUp(self) -> None:
        super().setUp()
        self.add_mapping("standard", self.dhl_id, client_id=CLIENT_ID)
        self.pool = self.engine.worker_pool

    def test_engine_registers_every_queue(self) -> None:
        self.assertEqual(len(self.pool.queue_names), 7)
        self.assertEqual(self.pool.registration(ORDER_SYNC_TO_FFN).batch_size, 3)

    def test_order_job_creates_outbound(self) -> None:
        result = self.engine.orchestrator.process(self.db, self.order_event())

        summary = self.pool.run_once(ORDER_SYNC_TO_FFN)

        self.assertEqual(summary["succeeded"], 1)
        order = self.order_row(result.entity_id)
        self.assertTrue(order["outbound_id"].startswith("SIM-OB-"))
        self.assertEqual(order["sync_status"], "synced")
        self.assertEqual(self.jobs(ORDER_SYNC_TO_FFN), [])

    def test_held_order_job_completes_without_sending(self) -> None:
        result = self.engine.orchestrator.process(self.db, self.order_event(payment_status="pending"))
        self.engine.job_queue.send(
            self.db, ORDER_SYNC_TO_FFN, {"client_id": CLIENT_ID, "order_id": int(result.entity_id)}, client_id=CLIENT_ID
        )

        summary = self.pool.run_once(ORDER_SYNC_TO_FFN)

        self.assertEqual(summary["succeeded"], 1)
        self.assertIsNone(self.order_row(result.entity_id)["outbound_id"])
        self.assertNotIn("create_outbound", self.engine.gateway_for(CLIENT_ID).calls)

    def test_unresolved_shipping_method_defers_until_assigned(self) -> None:
        result = self.engine.orchestrator.process(self.db, self.order_event(shipping_code="express"))
        order_id = int(result.entity_id)
        released = self.engine.orchestrator.update_operational_fields(
            self.db, CLIENT_ID, order_id, {"is_on_hold": False, "hold_reason": None}, actor="ops"
        )
        self.assertEqual(released.jobs, [])
        self.engine.job_queue.send(self.db, ORDER_SYNC_TO_FFN, {"client_id": CLIENT_ID, "order_id": order_id}, client_id=CLIENT_ID)

        summary = self.pool.run_once(ORDER_SYNC_TO_FFN)

        self.assertEqual(summary["succeeded"], 1)
        self.assertEqual(self.jobs(ORDER_SYNC_TO_FFN), [])
        self.assertIsNone(self.order_row(order_id)["outbound_id"])

        assigned = self.engine.orchestrator.update_operational_fields(
            self.db, CLIENT_ID, order_id, {"shipping_method_id": self.dhl_id}, actor="ops"
        )
        self.assertEqual(len(assigned.jobs), 1)
        self.assertEqual(self.pool.run_once(ORDER_SYNC_TO_FFN)["succeeded"], 1)
        self.assertTrue(self.order_row(order_id)["outbound_id"].startswith("SIM-OB-"))

    def test_transient_gateway_failure_is_retried(self) -> None:
        result = self.engine.orchestrator.process(self.db, self.order_event())
        self.engine.gateway_for(CLIENT_ID).fail_next(1)

        summary = self.pool.run_once(ORDER_SYNC_TO_FFN)

        self.assertEqual(summary["retried"], 1)
        job = self.jobs(ORDER_SYNC_TO_FFN)[0]
        self.assertEqual(job["state"], "created")
        self.assertIsNone(self.order_row(result.entity_id)["outbound_id"])

    def test_definitive_rejection_dead_letters_the_job(self) -> None:
        self.engine.orchestrator.process(self.db, self.order_event())
        self.engine.gateway_for(CLIENT_ID).fail_next(1, definitive=True, message="FFN HTTP 422: invalid")

        summary = self.pool.run_once(ORDER_SYNC_TO_FFN)

        self.assertEqual(summary["failed"], 1)
        self.assertEqual(self.jobs(ORDER_SYNC_TO_FFN)[0]["state"], "failed")

    def test_invalid_payload_fails_permanently(self) -> None:
        self.engine.job_queue.send(self.db, ORDER_SYNC_TO_FFN, {"order_id": "abc"}, client_id=CLIENT_ID)

        summary = self.pool.run_once(ORDER_SYNC_TO_FFN)

        self.assertEqual(summary["failed"], 1)
        job = self.jobs(ORDER_SYNC_TO_FFN)[0]
        self.assertIn("job_payload_invalid", job["last_error"])

    def test_commerce_push_for_unknown_order_fails_permanently(self) -> None:
        self.engine.job_queue.send(
            self.db, ORDER_SYNC_TO_COMMERCE, {"client_id": CLIENT_ID, "order_id": 404}, client_id=CLIENT_ID
        )

        summary = self.pool.run_once(ORDER_SYNC_TO_COMMERCE)

        self.assertEqual(summary["failed"], 1)
        self.assertIn("job_target_missing", self.jobs(ORDER_SYNC_TO_COMMERCE)[0]["last_error"])


if __name__ == "__main__":
    unittest.main()
