import threading
import time
from typing import Any, Optional

import bittensor as bt
from bittensor.core.errors import SubstrateRequestException
from websockets.exceptions import ConnectionClosed

from .errors import ChainConnectionError, QueryError
from .keys import public_to_ss58
from .models import ChainEvent, DEFAULT_CHAIN_ENDPOINT, ModuleError, RawSubmissionResult
from ..utils.logger import setup_logger

logger = setup_logger('registrar.chain_client', 'logs/registrar.log')

TRANSPORT_ERRORS = (ConnectionError, OSError, ConnectionClosed)
NAMED_NETWORKS = ('finney', 'test', 'local', 'archive', 'latent-lite')

def normalize_endpoint(endpoint: Optional[str]) -> str:
    if not endpoint:
        return DEFAULT_CHAIN_ENDPOINT
    endpoint = endpoint.strip()
    if endpoint in NAMED_NETWORKS:
        return endpoint
    if endpoint.startswith('ws://') or endpoint.startswith('wss://'):
        return endpoint
    return f"ws://{endpoint}"

class ChainClient:
    """Thin adapter over a bittensor Subtensor connection.

    Queries are serialized under a lock so that one client can be shared by
    several concurrent registrations. A submission holds the lock only while
    composing and signing, not while waiting for inclusion. After a transport
    failure the connection is dropped and re-established on the next call.
    """

    def __init__(self, endpoint: str = DEFAULT_CHAIN_ENDPOINT, era_period: int = 64,
                 wait_for_finalization: bool = False, subtensor=None):
        self.endpoint = normalize_endpoint(endpoint)
        self.era_period = era_period
        self.wait_for_finalization = wait_for_finalization
        self.subtensor = subtensor
        self._lock = threading.RLock()

    def connect(self):
        with self._lock:
            if self.subtensor is not None:
                return self
            try:
                self.subtensor = bt.Subtensor(network=self.endpoint)
                logger.info(f"Connected to {self.endpoint}")
            except Exception as e:
                logger.error(f"Failed to connect to {self.endpoint}: {e}")
                raise ChainConnectionError(f"Failed to connect to {self.endpoint}: {e}") from e
            return self

    def close(self):
        with self._lock:
            if self.subtensor is None:
                return
            try:
                self.subtensor.close()
            except Exception as e:
                logger.warning(f"Error closing connection to {self.endpoint}: {e}")
            finally:
                self.subtensor = None

    def _drop_connection(self, error: Exception, subtensor=None):
        with self._lock:
            # A late failure on a connection that was already replaced must not close the new one.
            if subtensor is not None and subtensor is not self.subtensor:
                logger.info(f"Ignoring failure on a stale connection to {self.endpoint}: {error}")
                return
            logger.warning(f"Connection to {self.endpoint} lost: {error}")
            self.close()

    @property
    def substrate(self):
        return self.connect().subtensor.substrate

    def get_current_block(self) -> int:
        with self._lock:
            try:
                return int(self.substrate.get_block_number(None))
            except ChainConnectionError:
                raise
            except TRANSPORT_ERRORS as e:
                self._drop_connection(e)
                raise ChainConnectionError(f"Failed to read current block: {e}") from e
            except SubstrateRequestException as e:
                raise QueryError(f"Current block query rejected: {e}") from e

    def query_recycle_cost(self, netuid: int, block: Optional[int] = None) -> int:
        with self._lock:
            try:
                block_hash = self.substrate.get_block_hash(block) if block is not None else None
                result = self.substrate.query(
                    module="SubtensorModule",
                    storage_function="Burn",
                    params=[netuid],
                    block_hash=block_hash,
                )
            except ChainConnectionError:
                raise
            except TRANSPORT_ERRORS as e:
                self._drop_connection(e)
                raise ChainConnectionError(f"Failed to query recycle cost for netuid {netuid}: {e}") from e
            except SubstrateRequestException as e:
                raise QueryError(f"Recycle cost query rejected for netuid {netuid}: {e}") from e

        value = getattr(result, 'value', result)
        if value is None:
            raise QueryError(f"Burn value not found for netuid {netuid}")
        return int(value)

    def submit_registration(self, coldkey, hotkey_ss58: str, netuid: int, tip: int = 0) -> RawSubmissionResult:
        subtensor = None
        try:
            # Only composing and signing are serialized. The inclusion wait runs
            # unlocked so an abandoned submission cannot stall cost reads.
            with self._lock:
                subtensor = self.connect().subtensor
                substrate = subtensor.substrate
                call = substrate.compose_call(
                    call_module="SubtensorModule",
                    call_function="burned_register",
                    call_params={"netuid": netuid, "hotkey": hotkey_ss58},
                )
                extrinsic = substrate.create_signed_extrinsic(
                    call=call,
                    keypair=coldkey,
                    era={"period": self.era_period},
                    tip=tip,
                )

            started = time.monotonic()
            receipt = substrate.submit_extrinsic(
                extrinsic,
                wait_for_inclusion=True,
                wait_for_finalization=self.wait_for_finalization,
            )
            logger.info(f"sign_and_submit for {hotkey_ss58} took {time.monotonic() - started:.3f}s")

            return self._read_receipt(substrate, receipt)

        except ChainConnectionError as e:
            return RawSubmissionResult.unreachable(str(e))
        except TRANSPORT_ERRORS as e:
            self._drop_connection(e, subtensor)
            return RawSubmissionResult.unreachable(str(e))
        except SubstrateRequestException as e:
            code, message, data = parse_request_exception(e)
            logger.error(f"Transaction rejected for {hotkey_ss58}: {code} {message} {data}".strip())
            return RawSubmissionResult.rejected(code, message, data)

    def _read_receipt(self, substrate, receipt) -> RawSubmissionResult:
        block_hash = receipt.block_hash
        block_number = substrate.get_block_number(block_hash)
        events = tuple(decode_event(event) for event in receipt.triggered_events)

        module_error = None
        if not receipt.is_success:
            module_error = decode_module_error(receipt.error_message)
            logger.error(f"Extrinsic failed in block {block_number}: {module_error.name}")

        return RawSubmissionResult.included_with(
            block_hash=block_hash,
            block_number=int(block_number),
            events=events,
            module_error=module_error,
        )

def parse_request_exception(error: Exception):
    payload = error.args[0] if error.args else str(error)
    if isinstance(payload, dict):
        return payload.get('code'), str(payload.get('message', '')), str(payload.get('data', '') or '')
    return None, str(payload), ''

def decode_module_error(error_message: Any) -> ModuleError:
    if isinstance(error_message, dict):
        docs = error_message.get('docs') or ''
        if isinstance(docs, (list, tuple)):
            docs = ' '.join(str(line) for line in docs)
        kind = error_message.get('type')
        return ModuleError(
            name=str(error_message.get('name') or 'Unknown'),
            pallet=None if kind in (None, 'Module') else str(kind),
            docs=str(docs),
        )
    return ModuleError(name=str(error_message or 'Unknown'))

def decode_event(event: Any) -> ChainEvent:
    value = getattr(event, 'value', event)
    if isinstance(value, dict) and isinstance(value.get('event'), dict):
        value = value['event']
    if not isinstance(value, dict):
        return ChainEvent(pallet='', name=str(value))

    pallet = value.get('module_id') or ''
    name = value.get('event_id') or ''
    attributes = value.get('attributes')
    if pallet == 'SubtensorModule' and name == 'NeuronRegistered':
        attributes = _normalize_registration_attributes(attributes)
    return ChainEvent(pallet=pallet, name=name, attributes=attributes)

def _normalize_registration_attributes(attributes):
    if isinstance(attributes, dict):
        attributes = dict(attributes)
        if 'hotkey' in attributes:
            attributes['hotkey'] = normalize_account(attributes['hotkey'])
        return attributes
    if isinstance(attributes, (list, tuple)) and len(attributes) >= 3:
        attributes = list(attributes)
        attributes[2] = normalize_account(attributes[2])
        return tuple(attributes)
    return attributes

def normalize_account(account: Any) -> Any:
    # AccountId decodes to an SS58 string, a 0x hex string or nested byte tuples
    # depending on the substrate library in use.
    if isinstance(account, (list, tuple)) and len(account) == 1:
        account = account[0]
    if isinstance(account, (list, tuple)) and len(account) == 32:
        account = bytes(account)
    if isinstance(account, (bytes, bytearray)) or (isinstance(account, str) and account.startswith('0x')):
        try:
            return public_to_ss58(account)
        except Exception as e:
            logger.warning(f"Could not encode account {account!r} as SS58: {e}")
            return account
    return account
