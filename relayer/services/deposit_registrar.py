"""
Registers deposits in the market contract's internal accounting.
"""

from decimal import Decimal
from typing import Any, Optional

import structlog

from relayer.core.config import settings
from relayer.core.types import AssetClass, DepositEvent
from relayer.services.chain_connection import ChainConnection
from relayer.services.cursor_store import QueuedDepositStore
from relayer.services.operation_log import OperationLog, REGISTERED, error_status
from relayer.services.transaction_submitter import TransactionSubmitter


logger = structlog.get_logger(__name__)


def _balance(amount: Decimal) -> int:
    if amount != amount.to_integral_value():
        raise ValueError(f"Deposit amount {amount} is not a whole number of base units")
    return int(amount)


class DepositRegistrar:
    """Builds ``register_deposit`` / ``register_nft_deposit`` contract calls."""

    def __init__(
        self,
        connection: ChainConnection,
        submitter: TransactionSubmitter,
        operation_log: OperationLog,
        queued_deposits: Optional[QueuedDepositStore] = None,
        quote_id: Optional[int] = None,
        gas_limit: Optional[int] = None,
    ):
        self.connection = connection
        self.submitter = submitter
        self.operation_log = operation_log
        self.queued_deposits = queued_deposits
        self.quote_id = settings.quote_id if quote_id is None else quote_id
        self.gas_limit = gas_limit or settings.contract_gas_limit
        self.logger = logger.bind(service="deposit_registrar")

    async def register(self, deposit: DepositEvent) -> None:
        if deposit.asset_class is AssetClass.QUOTE:
            await self.register_quote_deposit(deposit.source_address, deposit.amount)
        else:
            await self.register_nft_deposit(deposit.source_address, deposit.collection_id, deposit.token_id)

    async def register_quote_deposit(self, address: str, amount: Decimal) -> None:
        self.logger.info("Registering quote deposit", address=address, amount=str(amount), quote_id=self.quote_id)
        description = f"Quote deposit from {address} amount {amount}"
        try:
            balance = _balance(Decimal(amount))
        except ValueError as e:
            self.operation_log.record(description, error_status(e))
            raise
        await self._submit(
            description,
            "register_deposit",
            {"quote_id": self.quote_id, "deposit_balance": balance, "user": address},
        )

    async def register_nft_deposit(self, address: str, collection_id: int, token_id: int) -> None:
        self.logger.info("Registering NFT deposit", address=address, collection_id=collection_id, token_id=token_id)
        description = f"NFT deposit from {address} id ({collection_id}, {token_id})"
        await self._submit(
            description,
            "register_nft_deposit",
            {"collection_id": collection_id, "token_id": token_id, "user": address},
        )

    async def _submit(self, description: str, message: str, args: dict) -> None:
        try:
            call: Any = self.connection.compose_contract_call(message, args, self.gas_limit)
            await self.submitter.submit(call, description)
        except Exception as e:
            self.operation_log.record(description, error_status(e))
            raise
        self.operation_log.record(description, REGISTERED)

    async def flush_queued_deposits(self) -> int:
        """
        Register every queued quote deposit in file order.

        Each entry leaves the queue file right after its registration
        succeeds; a failure stops the flush with the remaining entries kept.
        """
        if self.queued_deposits is None:
            return 0

        deposits = self.queued_deposits.load()
        if not deposits:
            self.logger.debug("No queued deposits")
            return 0

        self.logger.info("Flushing queued deposits", count=len(deposits))
        for deposit in deposits:
            await self.register_quote_deposit(deposit.address, deposit.amount)
            self.queued_deposits.remove_first(1)

        return len(deposits)
