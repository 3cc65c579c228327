import unittest

from fulfillsync.contexts.fulfillment.domain.results import PollSummary
from fulfillsync.scheduler import PollScheduler, should_start_background
from tests.helpers.app_case import CLIENT_ID, SyncAppTestCase


class _FakeClock:
    def __init__(self) -> None:
        self.now = 500.0

    def __call__(self) -> float:
        return self.now


class _FlakyAdapter:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.polls = 0
        self.method_syncs = 0

    def sync_shipping_methods(self, db, client_id):
        self.method_syncs += 1
        return {"total": 0, "created": 0, "updated": 0}

    def poll_updates(self, db, client_id):
        self.polls += 1
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("FFN HTTP 503: unavailable")
        return PollSummary(client_id=client_id, since="a", until="b")


class PollSchedulerTest(SyncAppTestCase):
    sandbox_prefix = "poll_scheduler"

    def test_poll_applies_fulfillment_progress(self) -> None:
        self.add_mapping("standard", self.dhl_id, client_id=CLIENT_ID)
        order_id = int(self.engine.orchestrator.process(self.db, self.order_event()).entity_id)
        self.engine.adapter.sync_order(self.db, CLIENT_ID, order_id)
        self.engine.gateway_for(CLIENT_ID).advance(str(order_id), "SHIPPED", tracking_number="T-9")

        summaries = self.engine.scheduler.run_once()

        self.assertEqual(summaries[CLIENT_ID]["applied"], 1)
        self.assertEqual(self.order_row(order_id)["tracking_number"], "T-9")
        count = self.db.execute("SELECT COUNT(*) AS total FROM shipping_methods").fetchone()["total"]
        self.assertEqual(count, 4)

    def test_failing_client_backs_off_exponentially(self) -> None:
        clock = _FakeClock()
        adapter = _FlakyAdapter(failures=2)
        scheduler = PollScheduler(self.app, adapter, clock=clock)

        first = scheduler.run_once()
        self.assertEqual(first[CLIENT_ID]["backoff_seconds"], 30)

        self.assertEqual(scheduler.run_once(), {})
        clock.now += 30
        second = scheduler.run_once()
        self.assertEqual(second[CLIENT_ID]["backoff_seconds"], 60)

        clock.now += 60
        third = scheduler.run_once()
        self.assertEqual(third[CLIENT_ID]["received"], 0)
        self.assertNotIn("error", third[CLIENT_ID])
        self.assertEqual(adapter.polls, 3)
        self.assertEqual(adapter.method_syncs, 1)

    def test_backoff_is_capped(self) -> None:
        clock = _FakeClock()
        adapter = _FlakyAdapter(failures=10)
        self.app.config["FFN_POLL_MAX_BACKOFF_SECONDS"] = 100
        scheduler = PollScheduler(self.app, adapter, clock=clock)

        backoffs = []
        for _ in range(4):
            backoffs.append(scheduler.run_once()[CLIENT_ID]["backoff_seconds"])
            clock.now += 1000

        self.assertEqual(backoffs, [30, 60, 100, 100])

    def test_background_threads_stay_off_in_tests(self) -> None:
        self.assertFalse(should_start_background(self.app, "FFN_POLL_ENABLED"))
        self.app.config["FFN_POLL_ENABLED"] = False
        self.assertFalse(should_start_background(self.app, "FFN_POLL_ENABLED"))


if __name__ == "__main__":
    unittest.main()
