"""Tests for the Controller work queue in controller/controller.py"""

import pytest

from conftest import make_record
from quorum_dns.controller.controller import Controller
from quorum_dns.controller.reconciler import ReconcileResult
from quorum_dns.store.record_store import InMemoryRecordStore


class Recorder:
    """Reconcile function recording its calls and replaying scripted results."""

    def __init__(self, *results):
        self.calls = []
        self.results = list(results)
        self.on_call = None

    async def __call__(self, *key):
        self.calls.append(key)
        if self.on_call is not None:
            self.on_call(key)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return ReconcileResult()


async def run_until_idle(controller):
    await controller.start()
    try:
        await controller.wait_idle()
    finally:
        await controller.stop()


class TestControllerQueue:
    """Tests for key handling in Controller."""

    @pytest.mark.asyncio
    async def test_duplicate_keys_are_merged(self):
        """Should reconcile a key once however often it was queued."""
        recorder = Recorder()
        controller = Controller(recorder)
        controller.enqueue(("default", "app"))
        controller.enqueue(("default", "app"))

        await run_until_idle(controller)

        assert recorder.calls == [("default", "app")]

    @pytest.mark.asyncio
    async def test_immediate_requeue(self):
        recorder = Recorder(ReconcileResult(requeue=True))
        controller = Controller(recorder)
        controller.enqueue(("default", "app"))

        await run_until_idle(controller)

        assert len(recorder.calls) == 2

    @pytest.mark.asyncio
    async def test_requeue_after_schedules_timer(self):
        recorder = Recorder(ReconcileResult(requeue_after=30))
        controller = Controller(recorder)
        controller.enqueue(("default", "app"))

        await controller.start()
        try:
            await controller.wait_idle()
            assert ("default", "app") in controller._timers
        finally:
            await controller.stop()

        assert controller._timers == {}
        assert len(recorder.calls) == 1

    @pytest.mark.asyncio
    async def test_key_queued_while_processing_runs_again(self):
        """Should run a key again when it changed during its own cycle."""
        recorder = Recorder()
        controller = Controller(recorder)
        recorder.on_call = lambda key: controller.enqueue(key) if len(recorder.calls) == 1 else None
        controller.enqueue(("default", "app"))

        await run_until_idle(controller)

        assert len(recorder.calls) == 2


class TestControllerFailures:
    """Tests for retrying failed reconciles."""

    @pytest.mark.asyncio
    async def test_failure_backs_off(self):
        """Should count failures and schedule a delayed retry."""
        recorder = Recorder(RuntimeError("boom"))
        controller = Controller(recorder, base_backoff=60)
        key = ("default", "app")
        controller.enqueue(key)

        await controller.start()
        try:
            await controller.wait_idle()
            assert controller._failures[key] == 1
            assert key in controller._timers
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_success_resets_failures(self):
        recorder = Recorder()
        controller = Controller(recorder)
        key = ("default", "app")
        controller._failures[key] = 3
        controller.enqueue(key)

        await run_until_idle(controller)

        assert key not in controller._failures


class TestControllerWatch:
    """Tests for Controller.watch."""

    @pytest.mark.asyncio
    async def test_existing_and_new_records_are_queued(self):
        store = InMemoryRecordStore()
        await store.create(make_record("existing", "app.example.com"))
        recorder = Recorder()
        controller = Controller(recorder)
        controller.watch(store)

        await store.create(make_record("new", "app.example.com"))
        await run_until_idle(controller)

        assert sorted(recorder.calls) == [("default", "existing"), ("default", "new")]

    @pytest.mark.asyncio
    async def test_custom_key(self):
        """Should pass the mapped key to the reconcile function."""
        store = InMemoryRecordStore(name="west")
        recorder = Recorder()
        controller = Controller(recorder)
        controller.watch(store, key_for=lambda record: ("west", record.namespace, record.name))

        await store.create(make_record("app", "app.example.com"))
        await run_until_idle(controller)

        assert recorder.calls == [("west", "default", "app")]
