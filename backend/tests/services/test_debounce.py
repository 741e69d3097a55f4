import asyncio
import uuid

from ridedispatch.services.debounce import TriggerDebouncer

QUIET_MS = 50


class Recorder:
    """Run callback that remembers which tenants ran and what they saw."""

    def __init__(self, fail_times: int = 0):
        self.calls: list[uuid.UUID] = []
        self.snapshots: list[int] = []
        self.version = 0
        self.fail_times = fail_times

    async def __call__(self, tenant_id: uuid.UUID) -> None:
        self.calls.append(tenant_id)
        self.snapshots.append(self.version)
        if self.fail_times:
            self.fail_times -= 1
            raise RuntimeError("optimization exploded")


class TestTriggerDebouncer:
    def test_burst_of_triggers_collapses_into_one_run(self) -> None:
        recorder = Recorder()
        tenant_id = uuid.uuid4()

        async def scenario() -> None:
            debouncer = TriggerDebouncer(recorder, quiet_period_ms=QUIET_MS)
            for version in range(1, 6):
                recorder.version = version
                debouncer.trigger(tenant_id)
                await asyncio.sleep(QUIET_MS / 1000 / 5)
            await asyncio.sleep(QUIET_MS / 1000 * 4)

        asyncio.run(scenario())

        assert recorder.calls == [tenant_id]
        # The run sees the state as of the last trigger, not the first
        assert recorder.snapshots == [5]

    def test_triggers_after_quiet_period_run_again(self) -> None:
        recorder = Recorder()
        tenant_id = uuid.uuid4()

        async def scenario() -> None:
            debouncer = TriggerDebouncer(recorder, quiet_period_ms=QUIET_MS)
            debouncer.trigger(tenant_id)
            await asyncio.sleep(QUIET_MS / 1000 * 3)
            debouncer.trigger(tenant_id)
            await asyncio.sleep(QUIET_MS / 1000 * 3)

        asyncio.run(scenario())
        assert recorder.calls == [tenant_id, tenant_id]

    def test_tenants_are_debounced_independently(self) -> None:
        recorder = Recorder()
        first, second = uuid.uuid4(), uuid.uuid4()

        async def scenario() -> None:
            debouncer = TriggerDebouncer(recorder, quiet_period_ms=QUIET_MS)
            debouncer.trigger(first)
            debouncer.trigger(second)
            debouncer.trigger(first)
            assert set(debouncer.pending_tenants()) == {first, second}
            await asyncio.sleep(QUIET_MS / 1000 * 3)
            assert debouncer.pending_tenants() == []

        asyncio.run(scenario())
        assert sorted(recorder.calls) == sorted([first, second])

    def test_failed_run_clears_slot_for_future_triggers(self) -> None:
        recorder = Recorder(fail_times=1)
        tenant_id = uuid.uuid4()

        async def scenario() -> None:
            debouncer = TriggerDebouncer(recorder, quiet_period_ms=QUIET_MS)
            debouncer.trigger(tenant_id)
            await asyncio.sleep(QUIET_MS / 1000 * 3)
            assert not debouncer.is_pending(tenant_id)
            debouncer.trigger(tenant_id)
            await asyncio.sleep(QUIET_MS / 1000 * 3)

        asyncio.run(scenario())
        assert recorder.calls == [tenant_id, tenant_id]

    def test_cancel_drops_pending_timer(self) -> None:
        recorder = Recorder()
        tenant_id = uuid.uuid4()

        async def scenario() -> bool:
            debouncer = TriggerDebouncer(recorder, quiet_period_ms=QUIET_MS)
            debouncer.trigger(tenant_id)
            cancelled = debouncer.cancel(tenant_id)
            await asyncio.sleep(QUIET_MS / 1000 * 3)
            return cancelled

        assert asyncio.run(scenario()) is True
        assert recorder.calls == []

    def test_cancel_stops_in_flight_run(self) -> None:
        finished = []
        tenant_id = uuid.uuid4()

        async def slow_run(tid: uuid.UUID) -> None:
            await asyncio.sleep(10)
            finished.append(tid)

        async def scenario() -> None:
            debouncer = TriggerDebouncer(slow_run, quiet_period_ms=QUIET_MS)
            task = debouncer.trigger(tenant_id)
            await asyncio.sleep(QUIET_MS / 1000 * 2)
            assert debouncer.cancel(tenant_id) is True
            await asyncio.gather(task, return_exceptions=True)
            assert task.cancelled()

        asyncio.run(scenario())
        assert finished == []

    def test_cancel_unknown_tenant(self) -> None:
        async def scenario() -> bool:
            return TriggerDebouncer(Recorder(), quiet_period_ms=QUIET_MS).cancel(uuid.uuid4())

        assert asyncio.run(scenario()) is False

    def test_shutdown_cancels_everything(self) -> None:
        recorder = Recorder()

        async def scenario() -> None:
            debouncer = TriggerDebouncer(recorder, quiet_period_ms=QUIET_MS)
            debouncer.trigger(uuid.uuid4())
            debouncer.trigger(uuid.uuid4())
            await debouncer.shutdown()
            assert debouncer.pending_tenants() == []
            await asyncio.sleep(QUIET_MS / 1000 * 3)

        asyncio.run(scenario())
        assert recorder.calls == []

    def test_trigger_from_another_thread(self) -> None:
        recorder = Recorder()
        tenant_id = uuid.uuid4()

        async def scenario() -> None:
            loop = asyncio.get_running_loop()
            debouncer = TriggerDebouncer(recorder, quiet_period_ms=QUIET_MS)
            await loop.run_in_executor(None, debouncer.trigger_threadsafe, tenant_id, loop)
            await asyncio.sleep(QUIET_MS / 1000 * 3)

        asyncio.run(scenario())
        assert recorder.calls == [tenant_id]
