"""
Signs, broadcasts and follows one transaction until it is included or fails.
"""

import asyncio
from typing import Any, Optional

import structlog
from substrateinterface import Keypair

from relayer.core.exceptions import (
    ConnectionLostError,
    TransactionFailedError,
    TransactionTimeoutError,
    TransactionUnknownError,
)
from relayer.core.types import PendingTransaction, TxState
from relayer.services.chain_connection import ChainConnection, StatusSubscription


logger = structlog.get_logger(__name__)


class TransactionSubmitter:
    """
    Turns a status subscription into a single awaited result.

    State machine:
    - ``future``/``ready``/``broadcast``/``retracted`` keep the transaction pending
    - the first ``inBlock`` or ``finalized`` resolves it as included
    - ``usurped``/``dropped``/``invalid``/``finalityTimeout`` resolve it as failed

    The subscription is closed as soon as the transaction resolves. Nothing is
    retried here: resubmitting after a failure signal could double-spend if
    the original transaction still lands.
    """

    def __init__(
        self,
        connection: ChainConnection,
        account: Keypair,
        timeout: Optional[float] = None,
    ):
        self.connection = connection
        self.account = account
        self.timeout = timeout
        self.logger = logger.bind(service="transaction_submitter")

    async def submit(self, call: Any, description: str) -> PendingTransaction:
        """
        Broadcast ``call`` signed by the admin account and wait for inclusion.

        Raises:
            TransactionFailedError: a failure status was observed
            TransactionTimeoutError: nothing resolved within ``timeout``
            TransactionUnknownError: the status stream broke after broadcast
        """
        pending = PendingTransaction(description=description)
        subscription = await self.connection.watch_transaction(call, self.account)
        pending.tx_hash = subscription.tx_hash
        self.logger.info("Transaction broadcast", description=description, tx_hash=pending.tx_hash)

        try:
            if self.timeout:
                await asyncio.wait_for(self._follow(pending, subscription), self.timeout)
            else:
                await self._follow(pending, subscription)
        except asyncio.TimeoutError:
            pending.state = TxState.FAILED
            self.logger.error(
                "Transaction timed out",
                description=description,
                tx_hash=pending.tx_hash,
                last_status=str(pending.last_status),
            )
            raise TransactionTimeoutError(description, self.timeout)
        except (TransactionFailedError, ConnectionLostError):
            raise
        except Exception as e:
            # Already broadcast: it may still land, so it must not be resent
            pending.state = TxState.FAILED
            self.logger.error(
                "Transaction status stream broke",
                description=description,
                tx_hash=pending.tx_hash,
                last_status=str(pending.last_status),
                error=str(e),
            )
            raise TransactionUnknownError(description, str(e))
        finally:
            await subscription.close()

        return pending

    async def _follow(self, pending: PendingTransaction, subscription: StatusSubscription) -> None:
        async for status in subscription:
            pending.last_status = status
            self.logger.debug("Transaction status", tx_hash=pending.tx_hash, status=str(status))

            if status.is_included:
                pending.state = TxState.INCLUDED
                pending.block_hash = status.payload
                self.logger.info(
                    "Transaction included",
                    description=pending.description,
                    tx_hash=pending.tx_hash,
                    status=status.kind.value,
                    block_hash=status.payload,
                )
                return

            if status.is_failure:
                pending.state = TxState.FAILED
                self.logger.error(
                    "Something went wrong with transaction",
                    description=pending.description,
                    tx_hash=pending.tx_hash,
                    status=str(status),
                )
                raise TransactionFailedError(pending.description, status)

            pending.state = TxState.PENDING

        pending.state = TxState.FAILED
        raise TransactionFailedError(
            pending.description,
            f"status stream ended after {pending.last_status}",
        )
