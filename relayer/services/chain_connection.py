"""
Ledger access for the relayer.

``ChainConnection`` is what the scanner, registrar and poller rely on;
``SubstrateConnection`` implements it with substrate-interface. The library
is blocking, so every request runs in a worker thread and extrinsic status
notifications are handed back to the event loop through a queue.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Set

import structlog
from substrateinterface import Keypair, SubstrateInterface
from substrateinterface.contracts import ContractInstance
from substrateinterface.exceptions import SubstrateRequestException
from substrateinterface.utils.ss58 import is_valid_ss58_address, ss58_encode
from websocket import WebSocketConnectionClosedException

from relayer.core.exceptions import ChainError, ConfigurationError, ConnectionLostError
from relayer.core.types import DecodedExtrinsic, TransactionStatus


logger = structlog.get_logger(__name__)

_END = object()

CONNECTION_ERRORS = (WebSocketConnectionClosedException, ConnectionError, BrokenPipeError)


def load_account(secret_uri: str, ss58_format: int = 42) -> Keypair:
    """Derive the admin signing identity from its secret URI or mnemonic."""
    if not secret_uri:
        raise ConfigurationError("Admin seed not configured")
    try:
        return Keypair.create_from_uri(secret_uri, ss58_format=ss58_format)
    except ValueError as e:
        raise ConfigurationError(f"Invalid admin seed: {e}")


class StatusSubscription:
    """
    Async iterator over the status updates of one extrinsic.

    Producers call ``push``/``finish`` (``*_threadsafe`` from other threads);
    the consumer iterates and calls ``close`` once it has what it needs.
    """

    def __init__(self, tx_hash: Optional[str] = None):
        self.tx_hash = tx_hash
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._loop = asyncio.get_running_loop()

    def push(self, status: TransactionStatus) -> None:
        self._queue.put_nowait(status)

    def fail(self, error: BaseException) -> None:
        self._queue.put_nowait(error)

    def finish(self) -> None:
        self._queue.put_nowait(_END)

    def push_threadsafe(self, item: Any) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, item)

    def __aiter__(self):
        return self

    async def __anext__(self) -> TransactionStatus:
        if self.closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


class ChainConnection(ABC):
    """Ledger capabilities consumed by the relayer core."""

    def __init__(self):
        self._disconnect_listeners: List[Callable[[str], None]] = []
        self._lost = False

    def add_disconnect_listener(self, callback: Callable[[str], None]) -> None:
        self._disconnect_listeners.append(callback)

    def notify_disconnect(self, reason: str) -> None:
        """Tell listeners the transport is gone. Fires once per connection."""
        if self._lost:
            return
        self._lost = True
        for callback in self._disconnect_listeners:
            callback(reason)

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def connect(self) -> None:
        """Open the transport. No-op for connections that need none."""

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def get_finalized_head(self) -> int:
        ...

    @abstractmethod
    async def get_block(self, number: int) -> List[Any]:
        """Raw extrinsics of the block at ``number``."""

    @abstractmethod
    async def failed_extrinsics(self, number: int) -> Set[int]:
        """Indices of the extrinsics of block ``number`` that failed on-chain."""

    @abstractmethod
    def decode_extrinsic(self, raw: Any, index: int) -> DecodedExtrinsic:
        ...

    @abstractmethod
    def compose_call(self, module: str, function: str, params: Dict[str, Any]) -> Any:
        ...

    @abstractmethod
    def compose_contract_call(self, method: str, args: Dict[str, Any], gas_limit: int) -> Any:
        ...

    @abstractmethod
    async def watch_transaction(self, call: Any, signer: Keypair) -> StatusSubscription:
        """Sign and broadcast ``call``, returning its status stream."""

    @abstractmethod
    async def read_contract(self, method: str, args: Optional[Dict[str, Any]], signer: Keypair) -> Any:
        ...

    @abstractmethod
    def encode_address(self, public_key: Any) -> str:
        ...


def _normalize_account(value: Any) -> Any:
    # MultiAddress arguments decode as {"Id": "5F..."}
    if isinstance(value, dict) and len(value) == 1:
        (inner,) = value.values()
        return inner
    return value


class SubstrateConnection(ChainConnection):
    """ChainConnection backed by a substrate-interface websocket client."""

    def __init__(
        self,
        url: str,
        contract_address: str,
        metadata_file: str,
        ss58_format: int = 42,
        type_registry_preset: Optional[str] = None,
    ):
        super().__init__()
        self.url = url
        self.contract_address = contract_address
        self.metadata_file = metadata_file
        self.ss58_format = ss58_format
        self.type_registry_preset = type_registry_preset
        self.substrate: Optional[SubstrateInterface] = None
        self.contract: Optional[ContractInstance] = None
        self.logger = logger.bind(service="substrate_connection", url=url)

    async def connect(self) -> None:
        if not self.contract_address:
            raise ConfigurationError("Market contract address not configured")

        try:
            self.substrate = await asyncio.to_thread(
                SubstrateInterface,
                url=self.url,
                ss58_format=self.ss58_format,
                type_registry_preset=self.type_registry_preset,
            )
            self.contract = await asyncio.to_thread(
                ContractInstance.create_from_address,
                contract_address=self.contract_address,
                metadata_file=self.metadata_file,
                substrate=self.substrate,
            )
        except CONNECTION_ERRORS as e:
            raise ChainError(f"Failed to connect to {self.url}: {e}")
        except FileNotFoundError as e:
            raise ConfigurationError(f"Contract metadata not found: {e}")

        self.logger.info("Connected to ledger node", chain=self.substrate.chain)

    async def close(self) -> None:
        if self.substrate is not None:
            await asyncio.to_thread(self.substrate.close)
            self.substrate = None
            self.logger.info("Disconnected from ledger node")

    async def _request(self, fn: Callable, *args, **kwargs) -> Any:
        if self.substrate is None:
            raise ChainError("Ledger connection is not open")
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except CONNECTION_ERRORS as e:
            self.notify_disconnect(str(e))
            raise ConnectionLostError(str(e))
        except SubstrateRequestException as e:
            raise ChainError(f"RPC request failed: {e}")

    async def get_finalized_head(self) -> int:
        def finalized_number() -> int:
            head_hash = self.substrate.get_chain_finalised_head()
            return self.substrate.get_block_number(head_hash)

        return await self._request(finalized_number)

    async def get_block(self, number: int) -> List[Any]:
        block = await self._request(self.substrate.get_block, block_number=number)
        if block is None:
            raise ChainError(f"Block #{number} not found", {"block_number": number})
        return block["extrinsics"]

    async def failed_extrinsics(self, number: int) -> Set[int]:
        def failed_indices() -> Set[int]:
            block_hash = self.substrate.get_block_hash(number)
            indices = set()
            for record in self.substrate.get_events(block_hash=block_hash):
                value = record.value
                event = value.get("event", value)
                if (
                    event.get("module_id") == "System"
                    and event.get("event_id") == "ExtrinsicFailed"
                    and value.get("extrinsic_idx") is not None
                ):
                    indices.add(value["extrinsic_idx"])
            return indices

        return await self._request(failed_indices)

    def decode_extrinsic(self, raw: Any, index: int) -> DecodedExtrinsic:
        value = raw.value
        call = value["call"]
        args = {
            arg["name"]: _normalize_account(arg["value"])
            for arg in call.get("call_args", [])
        }
        signer = value.get("address")
        return DecodedExtrinsic(
            index=index,
            module=call["call_module"],
            call=call["call_function"],
            args=args,
            signer=_normalize_account(signer) if signer else None,
        )

    def compose_call(self, module: str, function: str, params: Dict[str, Any]) -> Any:
        return self.substrate.compose_call(
            call_module=module,
            call_function=function,
            call_params=params,
        )

    def compose_contract_call(self, method: str, args: Dict[str, Any], gas_limit: int) -> Any:
        data = self.contract.metadata.generate_message_data(name=method, args=args)
        return self.compose_call("Contracts", "call", {
            "dest": self.contract_address,
            "value": 0,
            "gas_limit": gas_limit,
            "storage_deposit_limit": None,
            "data": data.to_hex(),
        })

    async def watch_transaction(self, call: Any, signer: Keypair) -> StatusSubscription:
        extrinsic = await self._request(
            self.substrate.create_signed_extrinsic, call=call, keypair=signer
        )
        subscription = StatusSubscription(tx_hash=f"0x{extrinsic.extrinsic_hash.hex()}")

        def result_handler(message, update_nr, subscription_id):
            result = message.get("params", {}).get("result")
            if result is None:
                return None
            status = TransactionStatus.from_rpc(result)
            subscription.push_threadsafe(status)
            if status.is_final or subscription.closed:
                self.substrate.rpc_request("author_unwatchExtrinsic", [subscription_id])
                return status
            return None

        def on_done(task: asyncio.Future) -> None:
            if task.cancelled():
                subscription.finish()
                return
            error = task.exception()
            if error is None:
                subscription.finish()
            elif isinstance(error, CONNECTION_ERRORS):
                self.notify_disconnect(str(error))
                subscription.fail(ConnectionLostError(str(error)))
            else:
                subscription.fail(ChainError(f"Extrinsic subscription failed: {error}"))

        watcher = asyncio.ensure_future(asyncio.to_thread(
            self.substrate.rpc_request,
            "author_submitAndWatchExtrinsic",
            [str(extrinsic.data)],
            result_handler=result_handler,
        ))
        watcher.add_done_callback(on_done)
        return subscription

    async def read_contract(self, method: str, args: Optional[Dict[str, Any]], signer: Keypair) -> Any:
        result = await self._request(self.contract.read, signer, method, args=args)
        value = result.contract_result_data.value
        # Newer ink! wraps message results in Result<T, LangError>
        if isinstance(value, dict) and set(value) == {"Ok"}:
            value = value["Ok"]
        return value

    def encode_address(self, public_key: Any) -> str:
        if isinstance(public_key, str) and is_valid_ss58_address(public_key, valid_ss58_format=self.ss58_format):
            return public_key
        return ss58_encode(public_key, ss58_format=self.ss58_format)
