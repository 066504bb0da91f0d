"""Tests for core.logging.context module."""

import asyncio

from core.logging.context import clear_log_context, get_log_context, set_log_context


class TestLogContext:
    def setup_method(self):
        clear_log_context()

    def teardown_method(self):
        clear_log_context()

    def test_defaults_are_empty(self):
        assert get_log_context() == {
            "run_id": "",
            "stage": "",
            "worker_id": "",
            "subscription_id": "",
        }

    def test_set_all_fields(self):
        set_log_context(run_id="r1", stage="export", worker_id="w1", subscription_id="s1")
        ctx = get_log_context()
        assert ctx["run_id"] == "r1"
        assert ctx["stage"] == "export"
        assert ctx["worker_id"] == "w1"
        assert ctx["subscription_id"] == "s1"

    def test_partial_set_preserves_others(self):
        set_log_context(run_id="r1", stage="export")
        set_log_context(stage="flush")
        ctx = get_log_context()
        assert ctx["run_id"] == "r1"
        assert ctx["stage"] == "flush"

    def test_clear_resets_all(self):
        set_log_context(run_id="r1", stage="export", subscription_id="s1")
        clear_log_context()
        assert all(v == "" for v in get_log_context().values())

    def test_tasks_keep_their_own_subscription(self):
        """Each worker task sees the subscription it set, not a sibling's."""
        set_log_context(run_id="r1")

        async def worker(sid):
            set_log_context(subscription_id=sid)
            await asyncio.sleep(0)
            return get_log_context()

        async def main():
            return await asyncio.gather(worker("s1"), worker("s2"))

        first, second = asyncio.run(main())

        assert (first["run_id"], first["subscription_id"]) == ("r1", "s1")
        assert (second["run_id"], second["subscription_id"]) == ("r1", "s2")
        assert get_log_context()["subscription_id"] == ""
