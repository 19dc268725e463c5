import threading
import time
from datetime import timedelta

import pytest

from submitflow.application.config import AsyncExecutionConfig
from submitflow.application.dispatcher import Dispatcher
from submitflow.application.retry import RetryWorker
from submitflow.domain.errors import InvalidRequestIdError, StoreUnavailableError
from submitflow.domain.models.async_request import (
    AsyncRequestRecord,
    AsyncRequestStatus,
    ErrorKind,
    utcnow,
)
from submitflow.domain.models.unit import CallableUnit, PermanentUnitError, TransientUnitError
from submitflow.infrastructure.identity.hasher import IdentityHasher
from submitflow.infrastructure.repositories.memory import InMemoryAsyncRequestStore
from submitflow.infrastructure.schedulers.local import LocalRetryScheduler


class _Core:
    def __init__(self, store=None, **overrides) -> None:
        options = {
            "sync_threshold_ms": 25_000,
            "inline_margin_ms": 50,
            "max_attempts": 3,
            "base_delay_sec": 0.01,
            "max_delay_sec": 0.05,
            "poll_initial_interval_sec": 0.01,
            "poll_max_interval_sec": 0.05,
        }
        options.update(overrides)
        self.config = AsyncExecutionConfig(**options)
        self.store = store if store is not None else InMemoryAsyncRequestStore()
        self.scheduler = LocalRetryScheduler(max_workers=4)
        self.worker = RetryWorker(store=self.store, scheduler=self.scheduler, config=self.config)
        self.scheduler.attach(self.worker)
        self.hasher = IdentityHasher(salt="test-salt")
        self.dispatcher = Dispatcher(
            store=self.store, hasher=self.hasher, config=self.config, worker=self.worker
        )

    def record(self, request_id: str):
        return self.store.get(self.hasher.hash("alice"), request_id)

    def close(self) -> None:
        self.scheduler.shutdown(wait=False)
        self.dispatcher.shutdown(wait=False)


@pytest.fixture
def core():
    instance = _Core()
    yield instance
    instance.close()


class _Counter:
    def __init__(self, func=None, delay: float = 0.0) -> None:
        self.calls = 0
        self.delay = delay
        self.func = func
        self._lock = threading.Lock()

    def __call__(self, payload):
        with self._lock:
            self.calls += 1
            call = self.calls
        if self.delay:
            time.sleep(self.delay)
        if self.func is not None:
            return self.func(call)
        return {"call": call}


def test_inline_run_completes_directly(core):
    counter = _Counter(delay=0.1)
    result = core.dispatcher.run("alice", "r2", 30_000, CallableUnit(counter))

    assert result.status is AsyncRequestStatus.COMPLETED
    assert result.result == {"call": 1}
    assert result.attempt == 1
    assert core.record("r2").status is AsyncRequestStatus.COMPLETED


def test_replay_returns_terminal_result_without_reexecution(core):
    counter = _Counter()
    first = core.dispatcher.run("alice", "idem-1", 30_000, CallableUnit(counter))
    second = core.dispatcher.run("alice", "idem-1", 30_000, CallableUnit(counter))
    third = core.dispatcher.run("alice", "idem-1", 0, CallableUnit(counter))

    assert counter.calls == 1
    assert first.result == second.result == third.result == {"call": 1}
    assert third.status is AsyncRequestStatus.COMPLETED


def test_same_request_id_is_scoped_per_caller(core):
    counter = _Counter()
    core.dispatcher.run("alice", "shared", 30_000, CallableUnit(counter))
    core.dispatcher.run("bob", "shared", 30_000, CallableUnit(counter))
    assert counter.calls == 2


def test_small_budget_hands_off_without_blocking(core):
    counter = _Counter(delay=2.0)
    started = time.monotonic()
    result = core.dispatcher.run("alice", "r1", 50, CallableUnit(counter))
    elapsed = time.monotonic() - started

    assert elapsed < 0.5
    assert result.status in (AsyncRequestStatus.PENDING, AsyncRequestStatus.PROCESSING)
    assert not result.is_terminal

    assert core.scheduler.wait_idle(timeout=5)
    record = core.dispatcher.get_status("alice", "r1")
    assert record.status is AsyncRequestStatus.COMPLETED
    assert record.result == {"call": 1}


def test_duplicate_submission_while_in_flight_does_not_reexecute(core):
    counter = _Counter(delay=0.3)
    core.dispatcher.run("alice", "dup", 0, CallableUnit(counter))
    again = core.dispatcher.run("alice", "dup", 0, CallableUnit(counter))

    assert again.status is AsyncRequestStatus.PROCESSING
    assert core.scheduler.wait_idle(timeout=5)
    assert counter.calls == 1


def test_transient_failures_dead_letter_after_max_attempts(core):
    def always_busy(call):
        raise TransientUnitError("Upstream responded with status 503", status_code=503)

    counter = _Counter(func=always_busy)
    core.dispatcher.run("alice", "r3", 0, CallableUnit(counter))

    assert core.scheduler.wait_idle(timeout=5)
    record = core.dispatcher.get_status("alice", "r3")
    assert record.status is AsyncRequestStatus.FAILED
    assert record.attempt == 3
    assert record.error.kind is ErrorKind.EXHAUSTED_RETRIES
    assert record.error.last_error["status_code"] == 503
    assert counter.calls == 3


def test_transient_failure_recovers_on_retry(core):
    def second_time_lucky(call):
        if call == 1:
            raise RuntimeError("connection reset")
        return "accepted"

    counter = _Counter(func=second_time_lucky)
    result = core.dispatcher.run("alice", "flaky", 30_000, CallableUnit(counter))
    assert result.status is AsyncRequestStatus.PROCESSING

    assert core.scheduler.wait_idle(timeout=5)
    record = core.record("flaky")
    assert record.status is AsyncRequestStatus.COMPLETED
    assert record.result == "accepted"
    assert record.attempt == 2


def test_permanent_failure_is_recorded_on_first_attempt(core):
    def rejected(call):
        raise PermanentUnitError("INVALID_PERIODKEY", status_code=400)

    result = core.dispatcher.run("alice", "bad", 30_000, CallableUnit(_Counter(func=rejected)))

    assert result.status is AsyncRequestStatus.FAILED
    assert result.attempt == 1
    assert result.error.kind is ErrorKind.PERMANENT
    assert result.error.status_code == 400


def test_inline_budget_elapsing_degrades_to_polling():
    core = _Core(sync_threshold_ms=100, inline_margin_ms=0)
    try:
        counter = _Counter(delay=0.5)
        started = time.monotonic()
        result = core.dispatcher.run("alice", "slow", 200, CallableUnit(counter))

        assert time.monotonic() - started < 0.45
        assert result.status is AsyncRequestStatus.PROCESSING
        assert result.attempt == 1

        record = core.dispatcher.wait("alice", "slow", 3_000)
        assert record.status is AsyncRequestStatus.COMPLETED
        assert counter.calls == 1
    finally:
        core.close()


def test_wait_returns_last_seen_record_on_timeout(core):
    core.dispatcher.run("alice", "sleepy", 0, CallableUnit(_Counter(delay=1.0)))
    record = core.dispatcher.wait("alice", "sleepy", 50)
    assert record is not None
    assert not record.is_terminal
    assert core.dispatcher.wait("alice", "never-created", 20) is None


def test_enqueue_failure_marks_record_failed(core):
    core.scheduler.shutdown()
    counter = _Counter()
    result = core.dispatcher.run("alice", "no-broker", 0, CallableUnit(counter))

    assert result.status is AsyncRequestStatus.FAILED
    assert result.error.kind is ErrorKind.ENQUEUE_FAILED
    assert core.record("no-broker").status is AsyncRequestStatus.FAILED
    assert counter.calls == 0


def test_invalid_request_id_is_rejected_before_any_write(core):
    for bad in ("", "has space", "x" * 129, None):
        with pytest.raises(InvalidRequestIdError):
            core.dispatcher.run("alice", bad, 30_000, CallableUnit(_Counter()))
    assert len(core.store) == 0


def test_get_status_is_none_for_unknown_requests(core):
    assert core.dispatcher.get_status("alice", "unknown") is None


def test_without_store_runs_synchronously_regardless_of_budget():
    dispatcher = Dispatcher(
        store=None, hasher=IdentityHasher(), config=AsyncExecutionConfig()
    )
    counter = _Counter()
    try:
        result = dispatcher.run("alice", "fallback", 0, CallableUnit(counter))
        assert result.status is AsyncRequestStatus.COMPLETED
        assert result.result == {"call": 1}
        assert not result.persisted

        dispatcher.run("alice", "fallback", 0, CallableUnit(counter))
        assert counter.calls == 2
        assert dispatcher.get_status("alice", "fallback") is None
    finally:
        dispatcher.shutdown()


def test_store_outage_propagates_to_caller():
    class _BrokenStore(InMemoryAsyncRequestStore):
        def get(self, hashed_caller_id, request_id):
            raise StoreUnavailableError("table unreachable", operation="get")

    config = AsyncExecutionConfig()
    store = _BrokenStore()
    scheduler = LocalRetryScheduler(max_workers=1)
    worker = RetryWorker(store=store, scheduler=scheduler, config=config)
    dispatcher = Dispatcher(
        store=store, hasher=IdentityHasher(salt="s"), config=config, worker=worker
    )
    counter = _Counter()
    try:
        with pytest.raises(StoreUnavailableError):
            dispatcher.run("alice", "outage", 30_000, CallableUnit(counter))
        assert counter.calls == 0
    finally:
        scheduler.shutdown()
        dispatcher.shutdown()


def test_store_requires_a_worker():
    with pytest.raises(ValueError):
        Dispatcher(
            store=InMemoryAsyncRequestStore(),
            hasher=IdentityHasher(salt="s"),
            config=AsyncExecutionConfig(),
        )


class _TerminalWriteBlip(InMemoryAsyncRequestStore):
    """Refuses the first terminal write the way an unreachable table would."""

    def __init__(self) -> None:
        super().__init__()
        self.blipped = threading.Event()

    def conditional_update(self, record, *, expected_status, expected_attempt):
        if record.is_terminal and not self.blipped.is_set():
            self.blipped.set()
            raise StoreUnavailableError("table unreachable", operation="conditional_update")
        return super().conditional_update(
            record, expected_status=expected_status, expected_attempt=expected_attempt
        )


def test_lost_background_write_is_reclaimed_once_the_lease_expires(caplog):
    store = _TerminalWriteBlip()
    core = _Core(store=store, sync_threshold_ms=100, inline_margin_ms=0, lease_sec=0.2)
    try:
        counter = _Counter(delay=0.3)
        first = core.dispatcher.run("alice", "blip", 150, CallableUnit(counter))
        assert first.status is AsyncRequestStatus.PROCESSING

        assert store.blipped.wait(timeout=3)
        time.sleep(0.25)
        assert core.record("blip").status is AsyncRequestStatus.PROCESSING
        assert "Inline attempt raised" in caplog.text

        again = core.dispatcher.run("alice", "blip", 30_000, CallableUnit(counter))

        assert again.status is AsyncRequestStatus.COMPLETED
        assert again.attempt == 2
        assert counter.calls == 2
        assert core.record("blip").status is AsyncRequestStatus.COMPLETED
    finally:
        core.close()


def test_retry_dropped_by_scheduler_shutdown_is_reclaimed_after_lease():
    def busy_once(call):
        if call == 1:
            raise TransientUnitError("Upstream responded with status 503", status_code=503)
        return "accepted"

    core = _Core(base_delay_sec=0.5, max_delay_sec=0.5, lease_sec=0.8)
    try:
        counter = _Counter(func=busy_once)
        first = core.dispatcher.run("alice", "dropped", 30_000, CallableUnit(counter))
        assert first.status is AsyncRequestStatus.PROCESSING
        core.scheduler.shutdown()

        within_lease = core.dispatcher.run("alice", "dropped", 30_000, CallableUnit(counter))
        assert within_lease.status is AsyncRequestStatus.PROCESSING
        assert counter.calls == 1

        time.sleep(0.85)
        again = core.dispatcher.run("alice", "dropped", 30_000, CallableUnit(counter))

        assert again.status is AsyncRequestStatus.COMPLETED
        assert again.result == "accepted"
        assert again.attempt == 2
        assert counter.calls == 2
    finally:
        core.close()


def test_expired_lease_with_no_attempts_left_is_dead_lettered(core):
    record = AsyncRequestRecord.new(core.hasher.hash("alice"), "stuck", ttl_sec=3600)
    for _ in range(core.config.max_attempts):
        record.begin_attempt(ttl_sec=3600)
    record.updated_at = utcnow() - timedelta(minutes=10)
    core.store.create_if_absent(record)
    counter = _Counter()

    result = core.dispatcher.run("alice", "stuck", 0, CallableUnit(counter))

    assert result.status is AsyncRequestStatus.FAILED
    assert result.error.kind is ErrorKind.EXHAUSTED_RETRIES
    assert result.attempt == 3
    assert counter.calls == 0


def test_expired_lease_on_async_path_is_handed_off_again(core):
    record = AsyncRequestRecord.new(core.hasher.hash("alice"), "orphan", ttl_sec=3600)
    record.begin_attempt(ttl_sec=3600)
    record.updated_at = utcnow() - timedelta(minutes=10)
    core.store.create_if_absent(record)
    counter = _Counter()

    result = core.dispatcher.run("alice", "orphan", 0, CallableUnit(counter))
    assert result.status is AsyncRequestStatus.PROCESSING

    assert core.scheduler.wait_idle(timeout=5)
    stored = core.record("orphan")
    assert stored.status is AsyncRequestStatus.COMPLETED
    assert stored.attempt == 2
    assert counter.calls == 1
