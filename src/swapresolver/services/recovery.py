"""Escrow recovery for failed orders.

When a flow fails after chain work, any escrow that still holds funds is
cancelled as soon as its cancellation window opens, returning the funds
to the depositor. A source escrow whose destination counterpart was
already withdrawn is never cancelled: the secret is public, so it is
withdrawn instead, or escalated to an operator.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from swapresolver.config import Settings
from swapresolver.errors import FlowInProgressError, SwapError, TransactionFailedError
from swapresolver.ledger.database import OrderStore
from swapresolver.ledger.models import EscrowRecord, EscrowStatus, Order
from swapresolver.notifications.telegram import OperatorNotifier
from swapresolver.resolvers.base import ChainResolver
from swapresolver.resolvers.factory import ResolverFactory
from swapresolver.timelocks import (
    EscrowAction,
    EscrowSide,
    TimelockStage,
    can_cancel,
    can_withdraw,
    ensure_utc,
    evaluate_stage,
    next_boundary,
    settle_safety_deposit,
    window_start,
)
from swapresolver.utils.clock import Clock
from swapresolver.utils.locks import FlowLockRegistry
from swapresolver.utils.retry import backoff_delay, call_with_retry, with_deadline

logger = logging.getLogger(__name__)


class EscrowRecovery:
    """Cancels or settles the escrows of failed orders."""

    def __init__(
        self,
        store: OrderStore,
        resolvers: ResolverFactory,
        settings: Settings,
        clock: Clock,
        notifier: OperatorNotifier,
        locks: FlowLockRegistry,
    ):
        self.store = store
        self.resolvers = resolvers
        self.settings = settings
        self.clock = clock
        self.notifier = notifier
        self.locks = locks
        self.attempts: dict[tuple[str, EscrowSide], int] = {}
        self.escalated: set[tuple[str, EscrowSide]] = set()
        self._timers: dict[str, asyncio.Task] = {}

    async def recover(self, order_id: str) -> Optional[datetime]:
        """Run one recovery pass. The caller must hold the order's lock.

        Returns:
            When the next pass should run, or None if nothing is left
        """
        wake_at: Optional[datetime] = None
        # Destination first: its window closes earlier. Each side fails on its own.
        for side in (EscrowSide.DST, EscrowSide.SRC):
            key = (order_id, side)
            if key in self.escalated:
                continue
            # Reloaded per side so the source pass sees a reconciled destination.
            async with self.store.transaction() as repo:
                order = await repo.get_order_or_raise(order_id)
            escrow = order.escrow(side)
            if escrow is None or escrow.is_settled:
                continue

            try:
                when = await self._recover_escrow(order, escrow)
            except SwapError as e:
                attempts = self.attempts.get(key, 0) + 1
                self.attempts[key] = attempts
                logger.error(
                    f"Order {order_id}: {side.value} recovery attempt {attempts} failed: {e}"
                )
                if attempts >= self.settings.recovery_max_attempts:
                    await self._escalate(
                        order_id,
                        side,
                        f"{side.value} escrow recovery gave up after {attempts} attempts: {e}",
                    )
                    continue
                delay = backoff_delay(
                    attempts, self.settings.retry_base_delay, self.settings.retry_max_delay
                )
                when = self.clock.now() + timedelta(seconds=delay)
            else:
                self.attempts.pop(key, None)

            if when is not None and (wake_at is None or when < wake_at):
                wake_at = when

        if wake_at is None:
            for side in EscrowSide:
                self.attempts.pop((order_id, side), None)
                self.escalated.discard((order_id, side))
            logger.info(f"Order {order_id}: recovery finished")
        else:
            self.schedule(order_id, wake_at)
        return wake_at

    async def _recover_escrow(self, order: Order, escrow: EscrowRecord) -> Optional[datetime]:
        side = escrow.escrow_side
        config = self.resolvers.resolve(escrow.chain_id)
        resolver = self.resolvers.get_resolver(config)
        await self._call(resolver.initialize, f"initialize {config.key}")

        if escrow.address is None:
            # The deployment may have landed without its receipt reaching us.
            deployment = await self._call(
                lambda: resolver.find_escrow(escrow.salt),
                f"look up {side.value} escrow for {order.id}",
            )
            if deployment is None:
                return await self._abandon_deployment(order, escrow)
            escrow = await self._update(
                order.id,
                side,
                address=deployment.address,
                tx_hash=deployment.tx_hash,
                block_number=deployment.block_number,
                hashlock=deployment.hashlock.lower(),
                deployed_at=deployment.deployed_at,
                status=EscrowStatus.DEPLOYED,
            )
            logger.warning(f"Order {order.id}: found {side.value} escrow {escrow.address} on-chain")
        elif await self._reconcile(order, escrow, resolver):
            return None

        if escrow.escrow_status in (EscrowStatus.DEPLOYING, EscrowStatus.DEPLOYED):
            balance = await self._call(
                lambda: resolver.get_contract_balance(escrow.address, escrow.asset),
                f"{side.value} escrow balance for {order.id}",
            )
            if balance <= 0:
                logger.info(f"Order {order.id}: {side.value} escrow {escrow.address} is empty")
                await self._set_status(order.id, side, EscrowStatus.CANCELLED)
                return None
            await self._set_status(order.id, side, EscrowStatus.FUNDED)

        stage = evaluate_stage(escrow.deployed_at, order.timelocks, self.clock.now(), side)

        if side == EscrowSide.SRC:
            dst = order.escrow(EscrowSide.DST)
            if dst is not None and dst.escrow_status == EscrowStatus.WITHDRAWN:
                return await self._claim_source(order, escrow, resolver, stage)

        if can_cancel(stage):
            await self._cancel(order, escrow, resolver, stage)
            return None
        return window_start(escrow.deployed_at, order.timelocks, side, TimelockStage.CANCELLABLE)

    async def _abandon_deployment(self, order: Order, escrow: EscrowRecord) -> Optional[datetime]:
        """Settle a deployment that left nothing on-chain.

        A transaction still in flight can land until the finality timeout
        has passed, so the lookup is repeated once after it.
        """
        recheck_at = ensure_utc(escrow.updated_at) + timedelta(seconds=self.settings.finality_timeout)
        if self.clock.now() < recheck_at:
            logger.info(
                f"Order {order.id}: no {escrow.side} escrow yet, looking again at {recheck_at.isoformat()}"
            )
            return recheck_at
        logger.info(f"Order {order.id}: {escrow.side} escrow was never deployed")
        await self._set_status(order.id, escrow.escrow_side, EscrowStatus.CANCELLED)
        return None

    async def _reconcile(self, order: Order, escrow: EscrowRecord, resolver: ChainResolver) -> bool:
        """Adopt a settlement that happened on-chain but was never recorded.

        Returns:
            True if the escrow is settled and needs nothing more
        """
        side = escrow.escrow_side
        state = await self._call(
            lambda: resolver.get_escrow_state(escrow.address),
            f"{side.value} escrow state for {order.id}",
        )
        if state.status == "active":
            return False
        if state.status == "missing":
            raise TransactionFailedError(
                f"{side.value} escrow {escrow.address} is recorded but not on-chain",
                order_id=order.id,
            )

        if state.status == "withdrawn":
            await self._update(
                order.id,
                side,
                status=EscrowStatus.WITHDRAWN,
                withdraw_tx_hash=state.tx_hash,
                withdrawn_at=self.clock.now(),
            )
        else:
            await self._update(
                order.id,
                side,
                status=EscrowStatus.CANCELLED,
                cancel_tx_hash=state.tx_hash,
                cancelled_at=self.clock.now(),
            )
        logger.warning(f"Order {order.id}: {side.value} escrow {escrow.address} was already {state.status}")
        return True

    async def _claim_source(
        self,
        order: Order,
        escrow: EscrowRecord,
        resolver: ChainResolver,
        stage: TimelockStage,
    ) -> Optional[datetime]:
        """Withdraw a source escrow whose destination was already paid out."""
        if stage == TimelockStage.TOO_EARLY:
            return next_boundary(escrow.deployed_at, order.timelocks, self.clock.now(), EscrowSide.SRC)
        if not can_withdraw(stage) or not order.revealed_secret:
            await self._escalate(
                order.id,
                EscrowSide.SRC,
                f"Source escrow {escrow.address} is {stage.value} after the destination "
                f"payout; withdraw it manually",
            )
            return None

        tx_hash = await with_deadline(
            resolver.withdraw(escrow.address, order.revealed_secret, EscrowSide.SRC),
            self.settings.chain_tx_timeout,
            f"withdraw src escrow for {order.id}",
        )
        executor = resolver.get_address()
        await self._update(
            order.id,
            EscrowSide.SRC,
            status=EscrowStatus.WITHDRAWN,
            withdraw_tx_hash=tx_hash,
            withdrawn_at=self.clock.now(),
            safety_deposit_recipient=settle_safety_deposit(
                stage, EscrowAction.WITHDRAW, executor, executor
            ),
        )
        logger.info(f"Order {order.id}: recovered src escrow by withdrawal {tx_hash}")
        return None

    async def _cancel(
        self,
        order: Order,
        escrow: EscrowRecord,
        resolver: ChainResolver,
        stage: TimelockStage,
    ) -> None:
        side = escrow.escrow_side
        executor = resolver.get_address()
        recipient = settle_safety_deposit(stage, EscrowAction.CANCEL, executor, executor)

        tx_hash = await with_deadline(
            resolver.cancel(escrow.address, side),
            self.settings.chain_tx_timeout,
            f"cancel {side.value} escrow for {order.id}",
        )
        await self._update(
            order.id,
            side,
            status=EscrowStatus.CANCELLED,
            cancel_tx_hash=tx_hash,
            cancelled_at=self.clock.now(),
            safety_deposit_recipient=recipient,
        )
        logger.info(f"Order {order.id}: cancelled {side.value} escrow {escrow.address}: {tx_hash}")

    async def _call(self, func, operation: str):
        return await call_with_retry(
            func,
            operation,
            attempts=self.settings.chain_retry_attempts,
            timeout=self.settings.chain_call_timeout,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
            clock=self.clock,
        )

    async def _set_status(self, order_id: str, side: EscrowSide, status: EscrowStatus) -> None:
        await self._update(order_id, side, status=status)

    async def _update(self, order_id: str, side: EscrowSide, **fields) -> EscrowRecord:
        async with self.store.transaction() as repo:
            escrow = await repo.get_escrow(order_id, side)
            return await repo.update_escrow(escrow, self.clock.now(), **fields)

    async def _escalate(self, order_id: str, side: EscrowSide, reason: str) -> None:
        """Hand one side to an operator; later passes leave it alone."""
        self.escalated.add((order_id, side))
        async with self.store.transaction() as repo:
            order = await repo.get_order_or_raise(order_id)
            await repo.flag_attention(order, reason, self.clock.now())
        await self.notifier.alert(order_id, "Escrow recovery needs an operator", reason)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(self, order_id: str, when: datetime) -> asyncio.Task:
        """Run a recovery pass for ``order_id`` at ``when``."""
        existing = self._timers.get(order_id)
        if existing is not None and not existing.done() and existing is not asyncio.current_task():
            existing.cancel()

        task = asyncio.create_task(self._run_at(order_id, when), name=f"recovery:{order_id}")
        self._timers[order_id] = task
        task.add_done_callback(lambda t: self._on_timer_done(order_id, t))
        logger.info(f"Order {order_id}: recovery scheduled for {when.isoformat()}")
        return task

    async def _run_at(self, order_id: str, when: datetime) -> None:
        await self.clock.sleep_until(when)
        try:
            async with self.locks.hold(order_id, "recovery", timeout=self.settings.finality_timeout):
                await self.recover(order_id)
        except FlowInProgressError as e:
            logger.warning(f"Order {order_id}: recovery postponed: {e}")
            self.schedule(order_id, self.clock.now())

    def _on_timer_done(self, order_id: str, task: asyncio.Task) -> None:
        if self._timers.get(order_id) is task:
            del self._timers[order_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Order {order_id}: recovery task crashed: {error!r}")

    @property
    def pending(self) -> list[str]:
        return [order_id for order_id, task in self._timers.items() if not task.done()]

    async def wait_idle(self) -> None:
        """Wait until no recovery is scheduled."""
        while self._timers:
            await asyncio.gather(*list(self._timers.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel scheduled passes; they resume from the ledger on restart."""
        timers = list(self._timers.values())
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        self._timers.clear()
