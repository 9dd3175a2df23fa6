"""
Shared fixtures: an in-memory ledger and temporary state files.
"""

import csv
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

import pytest

from relayer.core.exceptions import ChainError
from relayer.core.types import DecodedExtrinsic, TransactionStatus, TxStatusKind
from relayer.services.chain_connection import ChainConnection, StatusSubscription
from relayer.services.cursor_store import CursorStore, PendingQuoteWithdrawalFile, QueuedDepositStore
from relayer.services.operation_log import OperationLog


CUSTODIAL = "5CustodialAddress"
ALICE = "5AliceAddress"
BOB = "5BobAddress"


def status(kind: TxStatusKind, payload: Any = None) -> TransactionStatus:
    return TransactionStatus(kind, payload)


HAPPY_PATH = [
    status(TxStatusKind.READY),
    status(TxStatusKind.BROADCAST, ["peer"]),
    status(TxStatusKind.IN_BLOCK, "0xblock"),
    status(TxStatusKind.FINALIZED, "0xblock"),
]


def quote_transfer(signer: Optional[str], dest: str, amount: int, index: int = 0) -> DecodedExtrinsic:
    return DecodedExtrinsic(
        index=index,
        module="Balances",
        call="transfer_keep_alive",
        args={"dest": dest, "value": amount},
        signer=signer,
    )


def nft_transfer(signer: Optional[str], recipient: str, collection_id: int, token_id: int, index: int = 0) -> DecodedExtrinsic:
    return DecodedExtrinsic(
        index=index,
        module="Nft",
        call="transfer",
        args={"recipient": recipient, "collection_id": collection_id, "item_id": token_id, "value": 0},
        signer=signer,
    )


class FakeChain(ChainConnection):
    """Ledger and market contract kept in memory."""

    def __init__(self, finalized_head: int = 0):
        super().__init__()
        self.finalized_head = finalized_head
        self.blocks: Dict[int, List[DecodedExtrinsic]] = {}
        self.quote_withdrawals: List[tuple] = []
        self.nft_withdrawals: List[tuple] = []
        self.block_failures: Dict[int, int] = {}
        self.failed: Dict[int, Set[int]] = {}
        self.status_script: Callable[[Any], List[TransactionStatus]] = lambda call: list(HAPPY_PATH)

        self.connected = False
        self.closed = False
        self.requested_blocks: List[int] = []
        self.submitted: List[Any] = []
        self.subscriptions: List[StatusSubscription] = []
        self.contract_reads: List[tuple] = []

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.closed = True

    async def get_finalized_head(self) -> int:
        return self.finalized_head

    async def get_block(self, number: int) -> List[Any]:
        self.requested_blocks.append(number)
        if self.block_failures.get(number, 0) > 0:
            self.block_failures[number] -= 1
            raise ChainError(f"timeout fetching block {number}")
        return self.blocks.get(number, [])

    async def failed_extrinsics(self, number: int) -> Set[int]:
        return self.failed.get(number, set())

    def decode_extrinsic(self, raw: Any, index: int) -> DecodedExtrinsic:
        return replace(raw, index=index)

    def compose_call(self, module: str, function: str, params: Dict[str, Any]) -> Any:
        return ("call", module, function, params)

    def compose_contract_call(self, method: str, args: Dict[str, Any], gas_limit: int) -> Any:
        return ("contract", method, args, gas_limit)

    async def watch_transaction(self, call: Any, signer: Any) -> StatusSubscription:
        self.submitted.append(call)
        subscription = StatusSubscription(tx_hash=f"0x{len(self.submitted):064x}")
        for item in self.status_script(call):
            subscription.push(item)
        subscription.finish()
        self.subscriptions.append(subscription)
        return subscription

    async def read_contract(self, method: str, args: Optional[Dict[str, Any]], signer: Any) -> Any:
        self.contract_reads.append((method, args))
        if method == "get_last_withdraw_id":
            return len(self.quote_withdrawals)
        if method == "get_last_nft_withdraw_id":
            return len(self.nft_withdrawals)
        if method == "get_withdraw_by_id":
            return self.quote_withdrawals[args["id"] - 1]
        if method == "get_nft_withdraw_by_id":
            return self.nft_withdrawals[args["id"] - 1]
        raise ChainError(f"unknown message {method}")

    def encode_address(self, public_key: Any) -> str:
        return public_key

    # helpers

    def contract_calls(self, method: str) -> List[tuple]:
        return [call for call in self.submitted if call[0] == "contract" and call[1] == method]

    def transfers(self, module: str) -> List[tuple]:
        return [call for call in self.submitted if call[0] == "call" and call[1] == module]


class FakeAccount:
    ss58_address = CUSTODIAL


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def account() -> FakeAccount:
    return FakeAccount()


@pytest.fixture
def cursor_store(tmp_path) -> CursorStore:
    store = CursorStore(tmp_path / "block.json", tmp_path / "withdrawal_id.json")
    store.load()
    return store


@pytest.fixture
def operation_log(tmp_path) -> OperationLog:
    return OperationLog(tmp_path, clock=lambda: datetime(2021, 3, 14, 9, 5, 7))


@pytest.fixture
def queued_deposits(tmp_path) -> QueuedDepositStore:
    return QueuedDepositStore(tmp_path / "quoteDeposits.json")


@pytest.fixture
def pending_quote_withdrawals(tmp_path) -> PendingQuoteWithdrawalFile:
    return PendingQuoteWithdrawalFile(tmp_path / "quoteWithdrawals.json")


def audit_rows(operation_log: OperationLog) -> List[List[str]]:
    path = operation_log.path_for(datetime(2021, 3, 14))
    if not path.exists():
        return []
    with path.open(newline="") as handle:
        return list(csv.reader(handle))
