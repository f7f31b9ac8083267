from types import SimpleNamespace

import pytest

from conftest import ALICE

from registrar.core.models import (
    AbortReason,
    Aborted,
    Registered,
    RegistrationRequest,
    rao_to_tao,
    tao_to_rao,
)


def test_request_defaults() -> None:
    request = RegistrationRequest(coldkey=SimpleNamespace(), hotkey_ss58=ALICE, netuid=1)
    assert request.max_cost == 5_000_000_000
    assert request.chain_endpoint == "wss://entrypoint-finney.opentensor.ai:443"
    assert request.tip == 0


def test_request_repr_hides_coldkey() -> None:
    request = RegistrationRequest(coldkey="very secret", hotkey_ss58=ALICE, netuid=1)
    assert "very secret" not in repr(request)


@pytest.mark.parametrize("kwargs", [
    {"netuid": -1},
    {"netuid": 65536},
    {"max_cost": -5},
    {"tip": -1},
    {"hotkey_ss58": ""},
])
def test_request_validation(kwargs) -> None:
    fields = {"coldkey": None, "hotkey_ss58": ALICE, "netuid": 1}
    fields.update(kwargs)
    with pytest.raises(ValueError):
        RegistrationRequest(**fields)


def test_tao_conversions() -> None:
    assert tao_to_rao(0.02) == 20_000_000
    assert tao_to_rao(5) == 5_000_000_000
    assert rao_to_tao(4_000_000_000) == 4.0


def test_results_describe_themselves() -> None:
    registered = Registered(block_hash="0xfeed", block_number=12345, uid=7, attempts_made=1)
    aborted = Aborted(reason=AbortReason.MAX_RETRIES_EXCEEDED, attempts_made=3, message="3 retryable failures")

    assert registered.ok
    assert "12345" in registered.describe()
    assert "UID 7" in registered.describe()
    assert not aborted.ok
    assert aborted.describe() == "Aborted (max_retries_exceeded) after 3 attempt(s): 3 retryable failures"
