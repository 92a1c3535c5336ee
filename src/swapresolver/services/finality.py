"""Waiting for transactions to become final."""

import logging
from datetime import datetime

from swapresolver.errors import ChainQueryError, FinalityTimeoutError, TransactionFailedError
from swapresolver.resolvers.base import ChainResolver, TxStatus
from swapresolver.utils.clock import Clock
from swapresolver.utils.retry import backoff_delay, with_deadline

logger = logging.getLogger(__name__)


async def wait_for_finality(
    resolver: ChainResolver,
    tx_hash: str,
    deadline: datetime,
    clock: Clock,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    call_timeout: float = 30.0,
) -> TxStatus:
    """Poll until ``tx_hash`` has the resolver's required confirmations.

    Transient query errors are tolerated until the deadline.

    Raises:
        TransactionFailedError: If the transaction reverted
        FinalityTimeoutError: If the deadline passes first
    """
    required = resolver.required_confirmations
    attempt = 0
    last_status = TxStatus(found=False)

    while True:
        try:
            last_status = await with_deadline(
                resolver.get_transaction_status(tx_hash), call_timeout, f"status of {tx_hash}"
            )
        except ChainQueryError as e:
            logger.warning(f"Finality check for {tx_hash} failed: {e}")
        else:
            if last_status.found and not last_status.success:
                raise TransactionFailedError(f"Transaction {tx_hash} failed on-chain")
            if last_status.is_final(required):
                logger.info(
                    f"Transaction {tx_hash} final with {last_status.confirmations} confirmations"
                )
                return last_status

        remaining = (deadline - clock.now()).total_seconds()
        if remaining <= 0:
            raise FinalityTimeoutError(
                f"Transaction {tx_hash} not final before deadline "
                f"({last_status.confirmations}/{required} confirmations)"
            )

        await clock.sleep(min(backoff_delay(attempt, base_delay, max_delay), remaining))
        attempt += 1
