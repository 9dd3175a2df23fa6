"""
Drains the market contract's withdrawal queues.

Ids are handled strictly in order, one at a time, and the cursor is saved
after each one so a restart continues at the first unhandled id.
"""

from decimal import Decimal
from typing import Any, Callable, Optional

import structlog
from substrateinterface import Keypair

from relayer.core.config import settings
from relayer.core.types import AssetClass, WithdrawalRequest
from relayer.services.chain_connection import ChainConnection
from relayer.services.cursor_store import CursorStore, PendingQuoteWithdrawalFile
from relayer.services.fee_calculator import FeeCalculator
from relayer.services.operation_log import END, OK, START, OperationLog, error_status
from relayer.services.transaction_submitter import TransactionSubmitter


logger = structlog.get_logger(__name__)

LAST_ID_MESSAGES = {
    AssetClass.QUOTE: "get_last_withdraw_id",
    AssetClass.NFT: "get_last_nft_withdraw_id",
}
BY_ID_MESSAGES = {
    AssetClass.QUOTE: "get_withdraw_by_id",
    AssetClass.NFT: "get_nft_withdraw_by_id",
}


class WithdrawalPoller:
    """Processes contract withdrawals past the local cursor."""

    def __init__(
        self,
        connection: ChainConnection,
        submitter: TransactionSubmitter,
        cursor_store: CursorStore,
        operation_log: OperationLog,
        account: Keypair,
        fee_calculator: Optional[FeeCalculator] = None,
        pending_quote_withdrawals: Optional[PendingQuoteWithdrawalFile] = None,
        quote_payout_enabled: Optional[bool] = None,
        checkpoint: Optional[Callable[[], None]] = None,
    ):
        self.connection = connection
        self.submitter = submitter
        self.cursor_store = cursor_store
        self.operation_log = operation_log
        self.account = account
        self.fee_calculator = fee_calculator or FeeCalculator.from_settings()
        self.pending_quote_withdrawals = pending_quote_withdrawals
        self.quote_payout_enabled = (
            settings.quote_payout_enabled if quote_payout_enabled is None else quote_payout_enabled
        )
        self.checkpoint = checkpoint
        self.logger = logger.bind(service="withdrawal_poller")

    async def last_withdraw_id(self, asset_class: AssetClass) -> int:
        value = await self.connection.read_contract(LAST_ID_MESSAGES[asset_class], None, self.account)
        return int(value)

    async def fetch_withdrawal(self, asset_class: AssetClass, withdraw_id: int) -> WithdrawalRequest:
        value = await self.connection.read_contract(
            BY_ID_MESSAGES[asset_class], {"id": withdraw_id}, self.account
        )
        address = self.connection.encode_address(value[0])
        if asset_class is AssetClass.QUOTE:
            return WithdrawalRequest(
                id=withdraw_id,
                payout_address=address,
                asset_class=asset_class,
                amount=Decimal(int(value[1])),
            )
        return WithdrawalRequest(
            id=withdraw_id,
            payout_address=address,
            asset_class=asset_class,
            collection_id=int(value[1]),
            token_id=int(value[2]),
        )

    async def run(self) -> None:
        """Drain the quote queue, then the NFT queue."""
        cursor = self.cursor_store.current
        last_quote = await self.last_withdraw_id(AssetClass.QUOTE)
        last_nft = await self.last_withdraw_id(AssetClass.NFT)
        self.operation_log.record(
            f"Checking withdrawals. Last/handled quote withdraw id: "
            f"{last_quote}/{cursor.last_quote_withdraw_id} "
            f"last/handled nft withdraw id: {last_nft}/{cursor.last_nft_withdraw_id}",
            OK,
        )

        await self.drain(AssetClass.QUOTE, last_quote)
        await self.drain(AssetClass.NFT, last_nft)

    async def drain(self, asset_class: AssetClass, contract_last_id: Optional[int] = None) -> int:
        """
        Process ids ``cursor + 1 .. contract_last_id`` in order.

        The contract is asked again once the known backlog is done so
        withdrawals queued meanwhile are handled in the same run.

        Returns:
            Number of withdrawals processed
        """
        processed = 0
        if contract_last_id is None:
            contract_last_id = await self.last_withdraw_id(asset_class)

        while contract_last_id > self.cursor_store.current.last_withdraw_id(asset_class):
            while contract_last_id > self.cursor_store.current.last_withdraw_id(asset_class):
                if self.checkpoint:
                    self.checkpoint()
                next_id = self.cursor_store.current.last_withdraw_id(asset_class) + 1
                request = await self.fetch_withdrawal(asset_class, next_id)

                if asset_class is AssetClass.QUOTE:
                    await self.process_quote_withdrawal(request)
                else:
                    await self.process_nft_withdrawal(request)

                self.cursor_store.save(self.cursor_store.current.advance_withdraw(asset_class, next_id))
                processed += 1

            contract_last_id = await self.last_withdraw_id(asset_class)

        if processed:
            self.logger.info("Withdrawal queue drained", asset_class=asset_class.value, processed=processed)
        return processed

    async def process_quote_withdrawal(self, request: WithdrawalRequest) -> None:
        label = f"Quote withdraw #{request.id}"
        self.logger.info("Quote withdrawal", id=request.id, address=request.payout_address, amount=str(request.amount))
        self.operation_log.record(
            f"{label}: {request.payout_address} withdrawing amount {request.amount}", START
        )

        payout = self.fee_calculator.apply_fee(request.amount)
        self.operation_log.record(f"{label}: sending {payout}", START)

        if payout < 0:
            self.operation_log.record(f"{label}: amount does not cover the fee, nothing to send", OK)
            return

        recorded = True
        if self.pending_quote_withdrawals is not None:
            recorded = self.pending_quote_withdrawals.append(request.id, request.payout_address, payout)

        if not self.quote_payout_enabled or payout == 0:
            return

        if not recorded:
            # A previous run stopped after recording; the transfer may already be out
            self.operation_log.record(
                f"{label}: already recorded, payout left for manual check",
                error_status("possible duplicate payout"),
            )
            return

        await self._payout(
            label,
            settings.quote_transfer_module,
            "transfer_keep_alive",
            {"dest": request.payout_address, "value": int(payout)},
        )

    async def process_nft_withdrawal(self, request: WithdrawalRequest) -> None:
        label = (
            f"NFT withdraw #{request.id}: {request.payout_address} withdrawing "
            f"{request.collection_id}, {request.token_id}"
        )
        self.logger.info(
            "NFT withdrawal",
            id=request.id,
            address=request.payout_address,
            collection_id=request.collection_id,
            token_id=request.token_id,
        )
        self.operation_log.record(label, START)
        await self._payout(
            label,
            settings.nft_transfer_module,
            "transfer",
            {
                "recipient": request.payout_address,
                "collection_id": request.collection_id,
                "item_id": request.token_id,
                "value": 0,
            },
        )

    async def _payout(self, label: str, module: str, function: str, params: dict) -> None:
        try:
            call: Any = self.connection.compose_call(module, function, params)
            await self.submitter.submit(call, label)
        except Exception as e:
            self.operation_log.record(label, error_status(e))
            raise
        self.operation_log.record(label, END)
