import asyncio
import random
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from .chain_client import ChainClient
from .cost_monitor import CostMonitor
from .errors import ChainError
from .interpreter import EventInterpreter
from .models import (
    AbortReason,
    Aborted,
    ChainUnreachable,
    CostExceeded,
    EngineEvent,
    EngineState,
    EventKind,
    Granted,
    OutcomeKind,
    RETRYABLE_OUTCOMES,
    RawSubmissionResult,
    Registered,
    RegistrationRequest,
    RegistrationResult,
    SubmissionOutcome,
    rao_to_tao,
)
from .rate_limiter import RateLimiter
from ..utils.logger import setup_logger

logger = setup_logger('registrar.engine', 'logs/registrar.log')

Listener = Callable[[EngineEvent], None]

@dataclass(frozen=True)
class EngineSettings:
    poll_interval: float = 12.0
    min_submit_interval: float = 1.0
    inclusion_timeout: float = 120.0
    block_time: float = 12.0
    max_retries: int = 10
    base_delay: float = 2.0
    factor: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.5
    rate_limit_cooldown_blocks: int = 1

    @classmethod
    def from_config(cls, config) -> "EngineSettings":
        defaults = cls()
        return cls(
            poll_interval=float(config.get('registration.poll_interval', defaults.poll_interval)),
            min_submit_interval=float(config.get('registration.min_submit_interval', defaults.min_submit_interval)),
            inclusion_timeout=float(config.get('registration.inclusion_timeout', defaults.inclusion_timeout)),
            block_time=float(config.get('chain.block_time', defaults.block_time)),
            max_retries=int(config.get('retry.max_retries', defaults.max_retries)),
            base_delay=float(config.get('retry.base_delay', defaults.base_delay)),
            factor=float(config.get('retry.factor', defaults.factor)),
            max_delay=float(config.get('retry.max_delay', defaults.max_delay)),
            jitter=float(config.get('retry.jitter', defaults.jitter)),
            rate_limit_cooldown_blocks=int(config.get('retry.rate_limit_cooldown_blocks', defaults.rate_limit_cooldown_blocks)),
        )

class BackoffPolicy:
    """Capped exponential backoff with optional seeded jitter."""

    def __init__(self, base: float = 2.0, factor: float = 2.0, max_delay: float = 60.0,
                 jitter: float = 0.0, seed: Optional[int] = None):
        self.base = base
        self.factor = factor
        self.max_delay = max_delay
        self.jitter = jitter
        self._rng = random.Random(seed)

    def delay(self, failures: int) -> float:
        exponent = max(failures - 1, 0)
        delay = min(self.max_delay, self.base * (self.factor ** exponent))
        if self.jitter > 0:
            delay += self.jitter * self._rng.random()
        return delay

class RegistrationEngine:
    """Drives one registration request until it succeeds or aborts.

    CHECKING_COST -> COST_OK -> RATE_GATE -> SUBMITTING -> INTERPRETING
    -> DONE_* or RETRYING, and CHECKING_COST -> COST_TOO_HIGH -> WAITING.
    RETRYING and WAITING always lead back to CHECKING_COST. The cost wait
    loop has no bound; only ``cancel()`` ends it.
    """

    def __init__(self, chain, request: RegistrationRequest, rate_limiter: Optional[RateLimiter] = None,
                 settings: Optional[EngineSettings] = None, listeners: Iterable[Listener] = ()):
        self.chain = chain
        self.request = request
        self.settings = settings or EngineSettings()
        self.cost_monitor = CostMonitor(chain)
        self.rate_limiter = rate_limiter or RateLimiter(self.settings.min_submit_interval)
        self.interpreter = EventInterpreter(
            request.netuid,
            request.hotkey_ss58,
            block_time=self.settings.block_time,
            default_cooldown_blocks=self.settings.rate_limit_cooldown_blocks,
        )
        self.backoff = BackoffPolicy(
            base=self.settings.base_delay,
            factor=self.settings.factor,
            max_delay=self.settings.max_delay,
            jitter=self.settings.jitter,
            seed=request.seed,
        )
        self.listeners: List[Listener] = list(listeners)
        self.state = EngineState.CHECKING_COST
        self.attempts = 0
        self.failures = 0
        self.loops = 0
        self.result: Optional[RegistrationResult] = None
        self._cancelled = asyncio.Event()

    def subscribe(self, listener: Listener):
        self.listeners.append(listener)

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _emit(self, kind: EventKind, message: str = "", **data):
        event = EngineEvent(kind=kind, state=self.state, hotkey=self.request.hotkey_ss58, message=message, data=data)
        for listener in self.listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed on {kind.value}: {e}")

    def _transition(self, state: EngineState, message: str = "", **data):
        self.state = state
        logger.debug(f"[{self.request.hotkey_ss58}] -> {state.value} {message}".rstrip())
        self._emit(EventKind.STATE_CHANGED, message, **data)

    async def _wait(self, seconds: float) -> bool:
        """Sleep for ``seconds``; returns True when cancelled meanwhile."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return self.cancelled
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    def _finish(self, result: RegistrationResult) -> RegistrationResult:
        self.result = result
        state = EngineState.DONE_SUCCESS if result.ok else EngineState.DONE_ABORTED
        self._transition(state, result.describe())
        if result.ok:
            logger.info(f"[{self.request.hotkey_ss58}] {result.describe()}")
        elif result.reason == AbortReason.ALREADY_REGISTERED:
            logger.info(f"[{self.request.hotkey_ss58}] {result.describe()}")
        else:
            logger.error(f"[{self.request.hotkey_ss58}] {result.describe()}")
        self._emit(EventKind.FINISHED, result.describe(), result=result)
        return result

    def _abort(self, reason: AbortReason, message: str = "") -> Aborted:
        return self._finish(Aborted(reason=reason, attempts_made=self.attempts, message=message))

    async def run(self) -> RegistrationResult:
        if self.result is not None:
            return self.result

        request = self.request
        logger.info(
            f"Starting registration of {request.hotkey_ss58} on netuid {request.netuid} "
            f"(max cost {request.max_cost} rao, TAO {rao_to_tao(request.max_cost):.9f})"
        )

        while True:
            if self.cancelled:
                return self._abort(AbortReason.CANCELLED, "Cancelled before submission")

            self.loops += 1
            self._transition(EngineState.CHECKING_COST, loop=self.loops)
            try:
                snapshot = await self.cost_monitor.poll(request.netuid)
            except ChainError as e:
                result = await self._handle(ChainUnreachable(reason=str(e)))
                if result is not None:
                    return result
                continue

            self._emit(EventKind.COST_SNAPSHOT, f"Recycle cost {snapshot.recycle_cost} rao at block {snapshot.observed_at_block}", snapshot=snapshot)
            logger.info(
                f"{self.loops} | Attempting registration of {request.hotkey_ss58} at block {snapshot.observed_at_block}"
            )

            if snapshot.recycle_cost > request.max_cost:
                outcome = CostExceeded(observed=snapshot.recycle_cost, max_cost=request.max_cost)
                self._transition(EngineState.COST_TOO_HIGH)
                self._emit(EventKind.OUTCOME_CLASSIFIED, "Recycle cost above budget", outcome=outcome)
                logger.info(
                    f"Recycle cost ({snapshot.recycle_cost}) exceeds threshold ({request.max_cost}). "
                    f"Skipping registration attempt."
                )
                self._transition(EngineState.WAITING, delay=self.settings.poll_interval)
                if await self._wait(self.settings.poll_interval):
                    return self._abort(AbortReason.CANCELLED, "Cancelled while waiting for a lower cost")
                continue

            self._transition(EngineState.COST_OK, snapshot=snapshot)
            if await self._rate_gate():
                return self._abort(AbortReason.CANCELLED, "Cancelled at the rate gate")
            if self.cancelled:
                return self._abort(AbortReason.CANCELLED, "Cancelled before submission")

            raw = await self._submit()

            self._transition(EngineState.INTERPRETING)
            outcome = self.interpreter.interpret(raw)
            result = await self._handle(outcome)
            if result is not None:
                return result

    async def _rate_gate(self) -> bool:
        self._transition(EngineState.RATE_GATE)
        while True:
            decision = self.rate_limiter.try_acquire()
            if isinstance(decision, Granted):
                return False
            logger.debug(f"Rate gate closed for {self.request.hotkey_ss58}, waiting {decision.retry_after:.3f}s")
            if await self._wait(decision.retry_after):
                return True

    async def _submit(self) -> RawSubmissionResult:
        request = self.request
        self.attempts += 1
        self._transition(EngineState.SUBMITTING, attempt=self.attempts)
        self._emit(EventKind.ATTEMPT_SUBMITTED, f"Submitting attempt {self.attempts}", attempt=self.attempts)

        started = time.monotonic()
        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(
                    self.chain.submit_registration,
                    request.coldkey,
                    request.hotkey_ss58,
                    request.netuid,
                    request.tip,
                ),
                timeout=self.settings.inclusion_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"No inclusion for {request.hotkey_ss58} within {self.settings.inclusion_timeout}s")
            raw = RawSubmissionResult.timeout(self.settings.inclusion_timeout)

        logger.info(f"Attempt {self.attempts} for {request.hotkey_ss58} finished in {time.monotonic() - started:.3f}s")
        return raw

    async def _handle(self, outcome: SubmissionOutcome) -> Optional[RegistrationResult]:
        self._emit(EventKind.OUTCOME_CLASSIFIED, outcome.kind.value, outcome=outcome)

        kind = outcome.kind
        if kind == OutcomeKind.SUCCESS:
            return self._finish(Registered(
                block_hash=outcome.block_hash,
                block_number=outcome.block_number,
                uid=outcome.uid,
                attempts_made=self.attempts,
            ))
        if kind == OutcomeKind.ALREADY_REGISTERED:
            return self._abort(AbortReason.ALREADY_REGISTERED, "Hotkey is already registered on this subnet")
        if kind == OutcomeKind.INSUFFICIENT_BALANCE:
            return self._abort(AbortReason.INSUFFICIENT_BALANCE, "Coldkey balance is too low to pay the recycle cost")
        if kind not in RETRYABLE_OUTCOMES:
            raise ValueError(f"Unroutable outcome: {outcome!r}")

        self.failures += 1
        if self.failures >= self.settings.max_retries:
            return self._abort(
                AbortReason.MAX_RETRIES_EXCEEDED,
                f"{self.failures} retryable failures, last: {kind.value}",
            )

        if kind == OutcomeKind.RATE_LIMITED:
            delay = outcome.retry_after
        else:
            delay = self.backoff.delay(self.failures)

        logger.warning(
            f"{kind.value} for {self.request.hotkey_ss58} "
            f"(failure {self.failures}/{self.settings.max_retries}), retrying in {delay:.2f}s"
        )
        self._transition(EngineState.RETRYING, delay=delay, failures=self.failures)
        if await self._wait(delay):
            return self._abort(AbortReason.CANCELLED, "Cancelled while backing off")
        return None

async def run(request: RegistrationRequest, chain=None, rate_limiter: Optional[RateLimiter] = None,
              settings: Optional[EngineSettings] = None, listeners: Iterable[Listener] = ()) -> RegistrationResult:
    owns_chain = chain is None
    if owns_chain:
        chain = ChainClient(request.chain_endpoint)
    engine = RegistrationEngine(chain, request, rate_limiter=rate_limiter, settings=settings, listeners=listeners)
    try:
        return await engine.run()
    finally:
        if owns_chain:
            chain.close()

def create_engines(requests: Iterable[RegistrationRequest], chain, rate_limiter: Optional[RateLimiter] = None,
                   settings: Optional[EngineSettings] = None, listeners: Iterable[Listener] = ()) -> List[RegistrationEngine]:
    # One limiter for all engines, so the endpoint sees a single submission budget.
    settings = settings or EngineSettings()
    rate_limiter = rate_limiter or RateLimiter(settings.min_submit_interval)
    listeners = list(listeners)
    return [
        RegistrationEngine(chain, request, rate_limiter=rate_limiter, settings=settings, listeners=listeners)
        for request in requests
    ]

async def run_many(requests: Iterable[RegistrationRequest], chain, rate_limiter: Optional[RateLimiter] = None,
                   settings: Optional[EngineSettings] = None, listeners: Iterable[Listener] = ()) -> List[RegistrationResult]:
    engines = create_engines(requests, chain, rate_limiter=rate_limiter, settings=settings, listeners=listeners)
    return list(await asyncio.gather(*(engine.run() for engine in engines)))
