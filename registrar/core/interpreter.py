from typing import Any, Optional

from .models import (
    AlreadyRegistered,
    ChainEvent,
    ChainUnreachable,
    ExtrinsicRejected,
    InsufficientBalance,
    RateLimited,
    RawSubmissionResult,
    SubmissionOutcome,
    Success,
    Timeout,
)

REGISTRATION_PALLET = "SubtensorModule"
REGISTRATION_EVENT = "NeuronRegistered"
MISSING_EVENT_CODE = "MissingRegistrationEvent"

ALREADY_REGISTERED_ERRORS = frozenset({
    "HotKeyAlreadyRegisteredInSubNet",
    "AlreadyRegistered",
})

INSUFFICIENT_BALANCE_ERRORS = frozenset({
    "NotEnoughBalanceToStake",
    "NotEnoughBalance",
    "BalanceWithdrawalError",
    "InsufficientBalance",
    "BalanceTooLow",
})

# Cooldown in blocks; None falls back to the configured default.
RATE_LIMIT_ERRORS = {
    "TooManyRegistrationsThisBlock": 1,
    "TooManyRegistrationsThisInterval": None,
    "TxRateLimitExceeded": None,
    "RateLimitExceeded": None,
}

BALANCE_TOO_LOW_TEXT = "balance too low"
ALREADY_REGISTERED_TEXTS = ("already registered", "hotkeyalreadyregisteredinsubnet")


class EventInterpreter:
    """Classifies a raw submission result into exactly one outcome.

    The mapping is pure: the same raw result and configuration always give
    the same outcome. Rules are checked in order:

    1. no inclusion within the wait window -> ``Timeout``
    2. transport failure during submission -> ``ChainUnreachable``
    3. "already registered" error -> ``AlreadyRegistered``
    4. "balance too low" error -> ``InsufficientBalance``
    5. protocol rate limiting -> ``RateLimited`` with the chain cooldown
    6. included with the expected ``NeuronRegistered`` event -> ``Success``
    7. anything else -> ``ExtrinsicRejected`` carrying an opaque code
    """

    def __init__(self, netuid: int, hotkey_ss58: str, block_time: float = 12.0, default_cooldown_blocks: int = 1):
        self.netuid = netuid
        self.hotkey_ss58 = hotkey_ss58
        self.block_time = block_time
        self.default_cooldown_blocks = default_cooldown_blocks

    def interpret(self, raw: RawSubmissionResult) -> SubmissionOutcome:
        if raw.timed_out:
            return Timeout(waited=raw.waited)

        if raw.connection_error is not None:
            return ChainUnreachable(reason=raw.connection_error)

        error_name = raw.module_error.name if raw.module_error else None

        if error_name in ALREADY_REGISTERED_ERRORS:
            return AlreadyRegistered(code=error_name)
        if raw.pool_error and any(text in raw.pool_error.text.lower() for text in ALREADY_REGISTERED_TEXTS):
            return AlreadyRegistered(code=self._pool_code(raw))

        if error_name in INSUFFICIENT_BALANCE_ERRORS:
            return InsufficientBalance(code=error_name)
        if raw.pool_error and BALANCE_TOO_LOW_TEXT in raw.pool_error.text.lower():
            return InsufficientBalance(code=self._pool_code(raw))

        if error_name in RATE_LIMIT_ERRORS:
            blocks = RATE_LIMIT_ERRORS[error_name] or self.default_cooldown_blocks
            return RateLimited(retry_after=blocks * self.block_time, code=error_name)

        if raw.included and raw.module_error is None:
            event = self._find_registration_event(raw.events)
            if event is not None:
                return Success(
                    block_hash=raw.block_hash,
                    block_number=raw.block_number,
                    uid=self._event_uid(event),
                )

        if error_name is not None:
            return ExtrinsicRejected(module_error_code=error_name)
        if raw.pool_error is not None:
            return ExtrinsicRejected(module_error_code=self._pool_code(raw))
        return ExtrinsicRejected(module_error_code=MISSING_EVENT_CODE)

    @staticmethod
    def _pool_code(raw: RawSubmissionResult) -> str:
        return f"pool:{raw.pool_error.code}"

    def _find_registration_event(self, events) -> Optional[ChainEvent]:
        for event in events:
            if event.pallet != REGISTRATION_PALLET or event.name != REGISTRATION_EVENT:
                continue
            netuid, hotkey = self._event_subject(event)
            if netuid == self.netuid and hotkey == self.hotkey_ss58:
                return event
        return None

    @staticmethod
    def _event_subject(event: ChainEvent):
        # NeuronRegistered(netuid, uid, hotkey)
        attrs = event.attributes
        if isinstance(attrs, dict):
            return _as_int(attrs.get("netuid")), attrs.get("hotkey")
        if isinstance(attrs, (list, tuple)) and len(attrs) >= 3:
            return _as_int(attrs[0]), attrs[2]
        return None, None

    @staticmethod
    def _event_uid(event: ChainEvent) -> Optional[int]:
        attrs = event.attributes
        if isinstance(attrs, dict):
            return _as_int(attrs.get("uid"))
        if isinstance(attrs, (list, tuple)) and len(attrs) >= 2:
            return _as_int(attrs[1])
        return None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
