import asyncio
import logging
from dataclasses import replace

from conftest import ALICE, BOB, FAST, FakeChain, registered_event, success_result

from registrar.core.engine import BackoffPolicy, EngineSettings, RegistrationEngine, run, run_many
from registrar.core.errors import ChainConnectionError
from registrar.core.models import (
    AbortReason,
    EngineState,
    EventKind,
    Granted,
    ModuleError,
    OutcomeKind,
    RawSubmissionResult,
)
from registrar.core.rate_limiter import RateLimiter
from registrar.utils.config import Config


def _module_error(name: str) -> RawSubmissionResult:
    return RawSubmissionResult.included_with("0xdead", 500, module_error=ModuleError(name=name))


def _run(chain, request, settings=FAST, **kwargs):
    engine = RegistrationEngine(chain, request, settings=settings, **kwargs)
    return engine, asyncio.run(engine.run())


def test_affordable_cost_submits_on_first_cycle(make_request) -> None:
    chain = FakeChain(costs=[4_000_000_000], results=[success_result(block_number=12345)])
    engine, result = _run(chain, make_request(max_cost=5_000_000_000))

    assert result.ok
    assert result.block_number == 12345
    assert result.block_hash == "0xfeed"
    assert result.uid == 7
    assert result.attempts_made == 1
    assert chain.calls == [("cost", 4_000_000_000), ("submit", ALICE)]
    assert engine.state == EngineState.DONE_SUCCESS


def test_expensive_cost_waits_without_submitting(make_request) -> None:
    chain = FakeChain(
        costs=[6_000_000_000, 6_000_000_000, 6_000_000_000, 5_000_000_000],
        results=[success_result()],
    )
    _, result = _run(chain, make_request(max_cost=5_000_000_000))

    assert result.ok
    assert chain.calls == [
        ("cost", 6_000_000_000),
        ("cost", 6_000_000_000),
        ("cost", 6_000_000_000),
        ("cost", 5_000_000_000),
        ("submit", ALICE),
    ]


def test_no_submission_follows_an_over_budget_snapshot(make_request) -> None:
    chain = FakeChain(
        costs=[7, 3, 9, 3],
        results=[_module_error("TooManyRegistrationsThisBlock"), success_result()],
    )
    _, result = _run(chain, make_request(max_cost=5))

    assert result.ok
    for previous, current in zip(chain.calls, chain.calls[1:]):
        if previous[0] == "cost" and previous[1] > 5:
            assert current[0] != "submit"


def test_already_registered_aborts_without_retry(make_request) -> None:
    chain = FakeChain(costs=[1], results=[_module_error("HotKeyAlreadyRegisteredInSubNet"), success_result()])
    engine, result = _run(chain, make_request())

    assert not result.ok
    assert result.reason == AbortReason.ALREADY_REGISTERED
    assert result.attempts_made == 1
    assert engine.failures == 0
    assert len(chain.submissions) == 1


def test_insufficient_balance_aborts_without_retry(make_request) -> None:
    chain = FakeChain(costs=[1], results=[_module_error("NotEnoughBalanceToStake"), success_result()])
    _, result = _run(chain, make_request())

    assert result.reason == AbortReason.INSUFFICIENT_BALANCE
    assert len(chain.submissions) == 1


def test_three_timeouts_exhaust_three_retries(make_request) -> None:
    chain = FakeChain(costs=[1], results=[RawSubmissionResult.timeout()])
    _, result = _run(chain, make_request(), settings=replace(FAST, max_retries=3))

    assert result.reason == AbortReason.MAX_RETRIES_EXCEEDED
    assert result.attempts_made == 3
    assert len(chain.submissions) == 3


def test_rejections_are_retried_until_the_cap(make_request) -> None:
    chain = FakeChain(costs=[1], results=[_module_error("SomethingNew")])
    _, result = _run(chain, make_request(), settings=replace(FAST, max_retries=2))

    assert result.reason == AbortReason.MAX_RETRIES_EXCEEDED
    assert len(chain.submissions) == 2


def test_retry_goes_back_to_checking_cost(make_request) -> None:
    chain = FakeChain(costs=[1], results=[RawSubmissionResult.unreachable("socket closed"), success_result()])
    _, result = _run(chain, make_request())

    assert result.ok
    assert result.attempts_made == 2
    assert [call[0] for call in chain.calls] == ["cost", "submit", "cost", "submit"]


def test_rate_limited_then_success(make_request) -> None:
    chain = FakeChain(costs=[1], results=[_module_error("TooManyRegistrationsThisBlock"), success_result()])
    outcomes = []

    def listener(event):
        if event.kind == EventKind.OUTCOME_CLASSIFIED:
            outcomes.append(event.data["outcome"].kind)

    _, result = _run(chain, make_request(), listeners=[listener])

    assert result.ok
    assert outcomes == [OutcomeKind.RATE_LIMITED, OutcomeKind.SUCCESS]


def test_cost_read_failure_counts_as_unreachable(make_request) -> None:
    chain = FakeChain(costs=[ChainConnectionError("refused"), 1], results=[success_result()])
    engine, result = _run(chain, make_request())

    assert result.ok
    assert engine.failures == 1
    assert chain.calls[0] == ("cost_error", "refused")


def test_cost_read_failures_are_bounded(make_request) -> None:
    chain = FakeChain(costs=[ChainConnectionError("refused")], results=[success_result()])
    _, result = _run(chain, make_request(), settings=replace(FAST, max_retries=4))

    assert result.reason == AbortReason.MAX_RETRIES_EXCEEDED
    assert result.attempts_made == 0
    assert chain.submissions == []


def test_slow_inclusion_becomes_a_timeout(make_request) -> None:
    chain = FakeChain(costs=[1], results=[success_result()], submit_delay=0.5)
    outcomes = []

    def listener(event):
        if event.kind == EventKind.OUTCOME_CLASSIFIED:
            outcomes.append(event.data["outcome"])

    settings = replace(FAST, inclusion_timeout=0.05, max_retries=1)
    _, result = _run(chain, make_request(), settings=settings, listeners=[listener])

    assert result.reason == AbortReason.MAX_RETRIES_EXCEEDED
    assert [outcome.kind for outcome in outcomes] == [OutcomeKind.TIMEOUT]
    assert outcomes[0].waited == 0.05


def test_event_stream_reports_each_step(make_request) -> None:
    chain = FakeChain(costs=[1], results=[success_result()])
    events = []
    engine = RegistrationEngine(chain, make_request(), settings=FAST)
    engine.subscribe(events.append)
    asyncio.run(engine.run())

    kinds = [event.kind for event in events]
    assert EventKind.COST_SNAPSHOT in kinds
    assert kinds.index(EventKind.ATTEMPT_SUBMITTED) < kinds.index(EventKind.OUTCOME_CLASSIFIED)
    assert kinds[-1] == EventKind.FINISHED
    assert events[-1].data["result"].ok
    assert all(event.hotkey == ALICE for event in events)


def test_failing_listener_does_not_break_the_run(make_request) -> None:
    chain = FakeChain(costs=[1], results=[success_result()])

    def broken(event):
        raise RuntimeError("display gone")

    _, result = _run(chain, make_request(), listeners=[broken])
    assert result.ok


def test_cancel_while_waiting_for_cost(make_request) -> None:
    chain = FakeChain(costs=[10], results=[success_result()])
    engine = RegistrationEngine(chain, make_request(max_cost=1), settings=replace(FAST, poll_interval=30))

    async def scenario():
        task = asyncio.create_task(engine.run())
        while engine.state != EngineState.WAITING:
            await asyncio.sleep(0.01)
        engine.cancel()
        return await asyncio.wait_for(task, timeout=5)

    result = asyncio.run(scenario())

    assert result.reason == AbortReason.CANCELLED
    assert chain.submissions == []


def test_cancel_before_start_never_submits(make_request) -> None:
    chain = FakeChain(costs=[1], results=[success_result()])
    engine = RegistrationEngine(chain, make_request(), settings=FAST)
    engine.cancel()

    result = asyncio.run(engine.run())

    assert result.reason == AbortReason.CANCELLED
    assert chain.calls == []


def _cancel_when(engine, state):
    async def scenario():
        task = asyncio.create_task(engine.run())
        while engine.state != state and not task.done():
            await asyncio.sleep(0.01)
        engine.cancel()
        return await asyncio.wait_for(task, timeout=5)

    return asyncio.run(scenario())


def test_cancel_at_the_rate_gate(make_request) -> None:
    chain = FakeChain(costs=[1], results=[success_result()])
    limiter = RateLimiter(min_interval=30)
    limiter.try_acquire()
    engine = RegistrationEngine(chain, make_request(), rate_limiter=limiter, settings=FAST)

    result = _cancel_when(engine, EngineState.RATE_GATE)

    assert result.reason == AbortReason.CANCELLED
    assert result.attempts_made == 0
    assert chain.submissions == []


def test_cancel_while_backing_off(make_request) -> None:
    chain = FakeChain(costs=[1], results=[RawSubmissionResult.timeout(), success_result()])
    engine = RegistrationEngine(chain, make_request(), settings=replace(FAST, base_delay=30, max_delay=60, max_retries=5))

    result = _cancel_when(engine, EngineState.RETRYING)

    assert result.reason == AbortReason.CANCELLED
    assert result.attempts_made == 1
    assert len(chain.submissions) == 1


def test_rate_gate_waits_for_the_shared_limiter(make_request) -> None:
    chain = FakeChain(costs=[1], results=[success_result()])
    limiter = RateLimiter(min_interval=0.2)
    first = limiter.try_acquire()
    assert isinstance(first, Granted)

    _, result = _run(chain, make_request(), rate_limiter=limiter)

    assert result.ok
    assert limiter.state.last_attempt_at - first.at >= 0.2
    assert chain.submissions[0].at >= limiter.state.last_attempt_at


def test_run_many_shares_one_rate_budget(make_request) -> None:
    grants = []

    class RecordingLimiter(RateLimiter):
        def try_acquire(self):
            decision = super().try_acquire()
            if isinstance(decision, Granted):
                grants.append(decision.at)
            return decision

    chain = FakeChain(costs=[1], results=[lambda hotkey: success_result(hotkey=hotkey)])
    limiter = RecordingLimiter(min_interval=0.05)

    results = asyncio.run(run_many([make_request(ALICE), make_request(BOB)], chain, rate_limiter=limiter, settings=FAST))

    assert all(result.ok for result in results)
    assert sorted(s.hotkey for s in chain.submissions) == sorted([ALICE, BOB])
    assert len(grants) == 2
    assert grants[1] - grants[0] >= 0.05


def test_run_uses_the_given_chain(make_request) -> None:
    chain = FakeChain(costs=[1], results=[success_result(block_number=99)])
    result = asyncio.run(run(make_request(), chain=chain, settings=FAST))
    assert result.block_number == 99


def test_success_for_another_hotkey_is_not_success(make_request) -> None:
    foreign = RawSubmissionResult.included_with("0x01", 10, events=[registered_event(hotkey=BOB)])
    chain = FakeChain(costs=[1], results=[foreign])
    _, result = _run(chain, make_request(), settings=replace(FAST, max_retries=1))

    assert result.reason == AbortReason.MAX_RETRIES_EXCEEDED


def test_backoff_is_exponential_and_capped() -> None:
    policy = BackoffPolicy(base=1.0, factor=2.0, max_delay=5.0)
    assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_backoff_jitter_is_reproducible_with_a_seed() -> None:
    first = BackoffPolicy(base=1.0, jitter=1.0, seed=42)
    second = BackoffPolicy(base=1.0, jitter=1.0, seed=42)
    assert [first.delay(n) for n in range(1, 4)] == [second.delay(n) for n in range(1, 4)]
    assert 1.0 <= BackoffPolicy(base=1.0, jitter=1.0, seed=1).delay(1) <= 2.0


def test_settings_from_config(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("registration:\n  poll_interval: 3\nretry:\n  max_retries: 5\n  max_delay: 9\n")

    settings = EngineSettings.from_config(Config(str(path)))

    assert settings.poll_interval == 3.0
    assert settings.max_retries == 5
    assert settings.max_delay == 9.0
    assert settings.min_submit_interval == EngineSettings().min_submit_interval


def test_over_budget_polls_stay_off_the_console(make_request, caplog) -> None:
    caplog.set_level(logging.INFO, logger="registrar.engine")
    chain = FakeChain(costs=[9, 9, 1], results=[success_result()])

    _, result = _run(chain, make_request(max_cost=5))

    assert result.ok
    skipped = [r for r in caplog.records if "exceeds threshold" in r.getMessage()]
    assert len(skipped) == 2
    assert all(r.levelno == logging.INFO for r in skipped)
