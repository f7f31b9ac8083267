from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

RAO_PER_TAO = 1_000_000_000
DEFAULT_MAX_COST = 5_000_000_000
DEFAULT_CHAIN_ENDPOINT = "wss://entrypoint-finney.opentensor.ai:443"
MAX_NETUID = 0xFFFF


def tao_to_rao(amount: float) -> int:
    return int(round(float(amount) * RAO_PER_TAO))


def rao_to_tao(amount: int) -> float:
    return amount / RAO_PER_TAO


@dataclass(frozen=True)
class RegistrationRequest:
    """Everything needed to register one hotkey on one subnet.

    ``coldkey`` is the signing handle returned by the keypair provider. It is
    handed to the chain client when an extrinsic is signed and is never
    rendered in logs.
    """

    coldkey: Any = field(repr=False)
    hotkey_ss58: str
    netuid: int
    max_cost: int = DEFAULT_MAX_COST
    chain_endpoint: str = DEFAULT_CHAIN_ENDPOINT
    seed: Optional[int] = None
    tip: int = 0

    def __post_init__(self):
        if not self.hotkey_ss58:
            raise ValueError("hotkey_ss58 must not be empty")
        if not 0 <= self.netuid <= MAX_NETUID:
            raise ValueError(f"netuid must be between 0 and {MAX_NETUID}, got {self.netuid}")
        if self.max_cost < 0:
            raise ValueError(f"max_cost must be non-negative, got {self.max_cost}")
        if self.tip < 0:
            raise ValueError(f"tip must be non-negative, got {self.tip}")


@dataclass(frozen=True)
class CostSnapshot:
    netuid: int
    recycle_cost: int
    observed_at_block: int


@dataclass(frozen=True)
class RateLimitState:
    last_attempt_at: Optional[float]
    min_interval: float


@dataclass(frozen=True)
class Granted:
    at: float


@dataclass(frozen=True)
class Denied:
    retry_after: float


RateDecision = Union[Granted, Denied]


# Raw chain responses, as handed over by the chain client.

@dataclass(frozen=True)
class ChainEvent:
    pallet: str
    name: str
    attributes: Any = None


@dataclass(frozen=True)
class ModuleError:
    name: str
    pallet: Optional[str] = None
    docs: str = ""


@dataclass(frozen=True)
class PoolRejection:
    code: Optional[int]
    message: str = ""
    data: str = ""

    @property
    def text(self) -> str:
        return f"{self.message} {self.data}".strip()


@dataclass(frozen=True)
class RawSubmissionResult:
    timed_out: bool = False
    connection_error: Optional[str] = None
    included: bool = False
    block_hash: Optional[str] = None
    block_number: Optional[int] = None
    events: Tuple[ChainEvent, ...] = ()
    module_error: Optional[ModuleError] = None
    pool_error: Optional[PoolRejection] = None
    waited: Optional[float] = None

    @classmethod
    def timeout(cls, waited: Optional[float] = None) -> "RawSubmissionResult":
        return cls(timed_out=True, waited=waited)

    @classmethod
    def unreachable(cls, reason: str) -> "RawSubmissionResult":
        return cls(connection_error=reason or "connection lost")

    @classmethod
    def included_with(cls, block_hash: str, block_number: int, events=(), module_error: Optional[ModuleError] = None) -> "RawSubmissionResult":
        return cls(
            included=True,
            block_hash=block_hash,
            block_number=block_number,
            events=tuple(events),
            module_error=module_error,
        )

    @classmethod
    def rejected(cls, code: Optional[int], message: str = "", data: str = "") -> "RawSubmissionResult":
        return cls(pool_error=PoolRejection(code=code, message=message, data=data))


# Classified outcomes. The set is closed: the engine routes on ``kind``.

class OutcomeKind(Enum):
    SUCCESS = "success"
    COST_EXCEEDED = "cost_exceeded"
    RATE_LIMITED = "rate_limited"
    ALREADY_REGISTERED = "already_registered"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    CHAIN_UNREACHABLE = "chain_unreachable"
    EXTRINSIC_REJECTED = "extrinsic_rejected"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class Success:
    block_hash: str
    block_number: int
    uid: Optional[int] = None
    kind = OutcomeKind.SUCCESS


@dataclass(frozen=True)
class CostExceeded:
    observed: int
    max_cost: int
    kind = OutcomeKind.COST_EXCEEDED


@dataclass(frozen=True)
class RateLimited:
    retry_after: float
    code: str = ""
    kind = OutcomeKind.RATE_LIMITED


@dataclass(frozen=True)
class AlreadyRegistered:
    code: str = ""
    kind = OutcomeKind.ALREADY_REGISTERED


@dataclass(frozen=True)
class InsufficientBalance:
    code: str = ""
    kind = OutcomeKind.INSUFFICIENT_BALANCE


@dataclass(frozen=True)
class ChainUnreachable:
    reason: str = ""
    kind = OutcomeKind.CHAIN_UNREACHABLE


@dataclass(frozen=True)
class ExtrinsicRejected:
    module_error_code: str
    kind = OutcomeKind.EXTRINSIC_REJECTED


@dataclass(frozen=True)
class Timeout:
    waited: Optional[float] = None
    kind = OutcomeKind.TIMEOUT


SubmissionOutcome = Union[
    Success,
    CostExceeded,
    RateLimited,
    AlreadyRegistered,
    InsufficientBalance,
    ChainUnreachable,
    ExtrinsicRejected,
    Timeout,
]

RETRYABLE_OUTCOMES = frozenset({
    OutcomeKind.RATE_LIMITED,
    OutcomeKind.CHAIN_UNREACHABLE,
    OutcomeKind.EXTRINSIC_REJECTED,
    OutcomeKind.TIMEOUT,
})


# Terminal results of an engine run.

class AbortReason(Enum):
    ALREADY_REGISTERED = "already_registered"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INVALID_KEY_MATERIAL = "invalid_key_material"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Registered:
    block_hash: str
    block_number: int
    uid: Optional[int] = None
    attempts_made: int = 0
    ok = True

    def describe(self) -> str:
        uid_text = f" with UID {self.uid}" if self.uid is not None else ""
        return f"Registered{uid_text} in block {self.block_number} ({self.block_hash})"


@dataclass(frozen=True)
class Aborted:
    reason: AbortReason
    attempts_made: int = 0
    message: str = ""
    ok = False

    def describe(self) -> str:
        text = f"Aborted ({self.reason.value}) after {self.attempts_made} attempt(s)"
        return f"{text}: {self.message}" if self.message else text


RegistrationResult = Union[Registered, Aborted]


# Observable engine activity.

class EngineState(Enum):
    CHECKING_COST = "checking_cost"
    COST_OK = "cost_ok"
    COST_TOO_HIGH = "cost_too_high"
    WAITING = "waiting"
    RATE_GATE = "rate_gate"
    SUBMITTING = "submitting"
    INTERPRETING = "interpreting"
    RETRYING = "retrying"
    DONE_SUCCESS = "done_success"
    DONE_ABORTED = "done_aborted"


class EventKind(Enum):
    STATE_CHANGED = "state_changed"
    COST_SNAPSHOT = "cost_snapshot"
    ATTEMPT_SUBMITTED = "attempt_submitted"
    OUTCOME_CLASSIFIED = "outcome_classified"
    FINISHED = "finished"


@dataclass(frozen=True)
class EngineEvent:
    kind: EventKind
    state: EngineState
    hotkey: str
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
