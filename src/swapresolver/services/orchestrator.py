"""Atomic swap orchestrator.

Drives an order through the two HTLC phases:

Phase 1 (start_flow), CREATED -> ESCROWS_READY:
1. Resolve both chains to resolvers
2. Initialize both resolvers concurrently
3. Deploy the source escrow (maker's funds) and wait for finality
4. Deploy the destination escrow from the confirmed source proof
5. Verify both escrow balances concurrently

Phase 2 (complete_flow), ESCROWS_READY -> COMPLETED, once the maker
reveals the secret:
1. Withdraw the destination escrow (pays the maker, publishes the secret)
2. Wait for destination finality
3. Withdraw the source escrow (pays the resolver)

Every step is persisted before moving on, so an interrupted flow can be
resumed from the stored order and escrow statuses without redeploying.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Coroutine, Optional, TypeVar

from swapresolver.chains import ChainConfig
from swapresolver.config import Settings, get_settings
from swapresolver.crypto import escrow_salt, verify_secret
from swapresolver.errors import (
    FundingVerificationError,
    InvalidSecretError,
    InvalidStateError,
    NotYetWithdrawableError,
    SwapError,
    TransactionFailedError,
    WindowClosedError,
)
from swapresolver.ledger.database import OrderStore
from swapresolver.ledger.models import (
    ORDER_SEQUENCE,
    EscrowRecord,
    EscrowStatus,
    Order,
    OrderStatus,
)
from swapresolver.notifications.telegram import OperatorNotifier
from swapresolver.resolvers.base import ChainResolver, EscrowParams, TxStatus
from swapresolver.resolvers.factory import ResolverFactory
from swapresolver.services.finality import wait_for_finality
from swapresolver.services.recovery import EscrowRecovery
from swapresolver.timelocks import (
    EscrowAction,
    EscrowSide,
    TimelockStage,
    cancellation_deadline,
    check_action,
    evaluate_stage,
    settle_safety_deposit,
    window_start,
)
from swapresolver.utils.clock import Clock
from swapresolver.utils.locks import FlowLockRegistry
from swapresolver.utils.retry import call_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

PHASE_ONE = (
    OrderStatus.CREATED,
    OrderStatus.SRC_ESCROW_DEPLOYED,
    OrderStatus.DST_ESCROW_DEPLOYED,
)
PHASE_TWO = (
    OrderStatus.SECRET_REVEALED,
    OrderStatus.DST_WITHDRAWN,
    OrderStatus.SRC_WITHDRAWN,
)


def reached(order: Order, status: OrderStatus) -> bool:
    """Whether the order has already passed ``status`` on the happy path."""
    if order.is_terminal and order.order_status != OrderStatus.COMPLETED:
        return False
    return ORDER_SEQUENCE.index(order.order_status) >= ORDER_SEQUENCE.index(status)


class SwapOrchestrator:
    """Owns orders and escrows for the duration of their flows."""

    def __init__(
        self,
        store: OrderStore,
        resolvers: ResolverFactory,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        notifier: Optional[OperatorNotifier] = None,
        locks: Optional[FlowLockRegistry] = None,
    ):
        self.store = store
        self.resolvers = resolvers
        self.settings = settings or get_settings()
        self.clock = clock or Clock()
        self.notifier = notifier or OperatorNotifier(self.settings)
        self.locks = locks or FlowLockRegistry(default_timeout=self.settings.flow_lock_timeout)
        self.recovery = EscrowRecovery(
            store=store,
            resolvers=resolvers,
            settings=self.settings,
            clock=self.clock,
            notifier=self.notifier,
            locks=self.locks,
        )
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Persistence helpers (one short transaction each)
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> Order:
        async with self.store.transaction() as repo:
            return await repo.get_order_or_raise(order_id)

    async def _advance(self, order_id: str, target: OrderStatus, note: Optional[str] = None) -> Order:
        async with self.store.transaction() as repo:
            order = await repo.get_order_or_raise(order_id)
            if not reached(order, target):
                await repo.transition(order, target, self.clock.now(), note)
            return order

    async def _abort(
        self,
        order_id: str,
        target: OrderStatus,
        reason: str,
        attention: bool = False,
    ) -> Order:
        async with self.store.transaction() as repo:
            order = await repo.get_order_or_raise(order_id)
            if not order.is_terminal:
                await repo.transition(order, target, self.clock.now(), reason)
            if attention:
                await repo.flag_attention(order, reason, self.clock.now())
            return order

    async def _update_escrow(self, order_id: str, side: EscrowSide, **fields) -> EscrowRecord:
        async with self.store.transaction() as repo:
            escrow = await repo.get_escrow(order_id, side)
            return await repo.update_escrow(escrow, self.clock.now(), **fields)

    # ------------------------------------------------------------------
    # Chain call helpers
    # ------------------------------------------------------------------

    async def _read(self, func: Callable[[], Awaitable[T]], operation: str) -> T:
        """Read-only chain call with deadline and retries."""
        return await call_with_retry(
            func,
            operation,
            attempts=self.settings.chain_retry_attempts,
            timeout=self.settings.chain_call_timeout,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
            clock=self.clock,
        )

    async def _submit(self, func: Callable[[], Awaitable[T]], operation: str, attempts: int = 1) -> T:
        """State-changing chain call with the transaction deadline."""
        return await call_with_retry(
            func,
            operation,
            attempts=attempts,
            timeout=self.settings.chain_tx_timeout,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
            clock=self.clock,
        )

    def _resolve_pair(self, order: Order) -> tuple[ChainConfig, ChainConfig]:
        return self.resolvers.resolve(order.src_chain_id), self.resolvers.resolve(order.dst_chain_id)

    async def _initialize(self, *resolvers: ChainResolver) -> None:
        results = await asyncio.gather(
            *(self._read(r.initialize, f"initialize {r.family} resolver") for r in resolvers),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    # ------------------------------------------------------------------
    # Phase 1
    # ------------------------------------------------------------------

    async def start_flow(self, order_id: str) -> Order:
        """Deploy and verify both escrows.

        Raises:
            FlowInProgressError: If another flow holds the order
            SwapError: The classified cause when the order was aborted
        """
        async with self.locks.hold(order_id, "start_flow"):
            return await self._start_flow(order_id)

    async def _start_flow(self, order_id: str) -> Order:
        order = await self.get_order(order_id)
        if order.is_terminal or reached(order, OrderStatus.ESCROWS_READY):
            logger.info(f"Order {order_id}: phase 1 already finished ({order.status})")
            return order

        # Steps 1-2: nothing is on-chain yet, so failures cancel the order.
        try:
            src_config, dst_config = self._resolve_pair(order)
            src_resolver = self.resolvers.get_resolver(src_config)
            dst_resolver = self.resolvers.get_resolver(dst_config)
            await self._initialize(src_resolver, dst_resolver)
        except SwapError as e:
            logger.error(f"Order {order_id}: resolver setup failed: {e}")
            await self._abort(order_id, OrderStatus.CANCELLED, str(e))
            raise

        try:
            await self._deploy_source(order_id, src_resolver)
            await self._deploy_destination(order_id, src_resolver, dst_resolver)
            return await self._verify_funding(order_id, src_resolver, dst_resolver)
        except Exception as e:
            logger.error(f"Order {order_id}: phase 1 failed: {e}")
            await self._abort(order_id, OrderStatus.FAILED, str(e))
            await self.recovery.recover(order_id)
            raise

    async def _deploy_escrow(
        self,
        order: Order,
        side: EscrowSide,
        resolver: ChainResolver,
        params: EscrowParams,
    ) -> EscrowRecord:
        escrow = order.escrow(side)
        if escrow is not None and escrow.escrow_status != EscrowStatus.DEPLOYING:
            return escrow

        async with self.store.transaction() as repo:
            fresh = await repo.get_order_or_raise(order.id)
            await repo.get_or_create_escrow(
                fresh,
                side,
                chain_id=order.src_chain_id if side == EscrowSide.SRC else order.dst_chain_id,
                salt=params.salt,
                asset=params.asset,
                amount=params.amount,
                safety_deposit=params.safety_deposit,
                now=self.clock.now(),
            )

        try:
            deployment = await self._submit(
                lambda: resolver.deploy_escrow(params),
                f"deploy {side.value} escrow for {order.id}",
                # Deployment is keyed by salt, so resubmitting is safe.
                attempts=self.settings.chain_retry_attempts,
            )
        except SwapError as e:
            # The deployment may have landed even though its receipt was lost.
            deployment = await self._read(
                lambda: resolver.find_escrow(params.salt),
                f"look up {side.value} escrow for {order.id}",
            )
            if deployment is None:
                raise
            logger.warning(
                f"Order {order.id}: {side.value} deployment reported {e}, "
                f"but escrow {deployment.address} exists"
            )
        return await self._update_escrow(
            order.id,
            side,
            address=deployment.address,
            tx_hash=deployment.tx_hash,
            block_number=deployment.block_number,
            hashlock=deployment.hashlock.lower(),
            deployed_at=deployment.deployed_at,
            status=EscrowStatus.DEPLOYED,
        )

    async def _wait_final(self, resolver: ChainResolver, tx_hash: str, deadline: datetime) -> TxStatus:
        return await wait_for_finality(
            resolver,
            tx_hash,
            deadline=deadline,
            clock=self.clock,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
            call_timeout=self.settings.chain_call_timeout,
        )

    async def _deploy_source(self, order_id: str, resolver: ChainResolver) -> None:
        order = await self.get_order(order_id)
        if reached(order, OrderStatus.SRC_ESCROW_DEPLOYED):
            return

        params = EscrowParams(
            order_id=order.id,
            side=EscrowSide.SRC,
            salt=escrow_salt(order.id, EscrowSide.SRC.value),
            secret_hash=order.secret_hash,
            asset=order.maker_asset,
            amount=order.maker_amount,
            safety_deposit=order.src_safety_deposit,
            depositor=order.maker,
            recipient=resolver.get_address(),
            time_locks=order.timelocks,
        )
        escrow = await self._deploy_escrow(order, EscrowSide.SRC, resolver, params)
        await self._advance(order_id, OrderStatus.SRC_ESCROW_DEPLOYED, f"src escrow {escrow.address}")

    async def _deploy_destination(
        self,
        order_id: str,
        src_resolver: ChainResolver,
        dst_resolver: ChainResolver,
    ) -> None:
        order = await self.get_order(order_id)
        if reached(order, OrderStatus.DST_ESCROW_DEPLOYED):
            return

        time_locks = order.timelocks
        src = order.escrow(EscrowSide.SRC)
        src_deadline = cancellation_deadline(src.deployed_at, time_locks, EscrowSide.SRC)
        margin = timedelta(seconds=self.settings.timelock_safety_margin)

        dst = order.escrow(EscrowSide.DST)
        if dst is None or dst.escrow_status == EscrowStatus.DEPLOYING:
            # The destination lock must only exist once the source lock is final.
            await self._wait_final(
                src_resolver,
                src.tx_hash,
                min(self.clock.now() + timedelta(seconds=self.settings.finality_timeout), src_deadline),
            )
            if (src.hashlock or "").lower() != order.secret_hash.lower():
                raise FundingVerificationError(
                    f"Source escrow hashlock {src.hashlock} does not match order", order_id=order_id
                )

            projected = self.clock.now() + timedelta(seconds=time_locks.dst_cancellation)
            if projected + margin > src_deadline:
                raise WindowClosedError(
                    "Not enough time left to lock the destination side safely", order_id=order_id
                )

        params = EscrowParams(
            order_id=order.id,
            side=EscrowSide.DST,
            salt=escrow_salt(order.id, EscrowSide.DST.value),
            secret_hash=src.hashlock,
            asset=order.taker_asset,
            amount=order.taker_amount,
            safety_deposit=order.dst_safety_deposit,
            depositor=dst_resolver.get_address(),
            recipient=order.receiver,
            time_locks=time_locks,
        )
        escrow = await self._deploy_escrow(order, EscrowSide.DST, dst_resolver, params)
        await self._advance(order_id, OrderStatus.DST_ESCROW_DEPLOYED, f"dst escrow {escrow.address}")

        dst_deadline = cancellation_deadline(escrow.deployed_at, time_locks, EscrowSide.DST)
        if dst_deadline + margin > src_deadline:
            raise WindowClosedError(
                f"Destination cancellation {dst_deadline.isoformat()} is too close to "
                f"source cancellation {src_deadline.isoformat()}",
                order_id=order_id,
            )

    async def _verify_funding(
        self,
        order_id: str,
        src_resolver: ChainResolver,
        dst_resolver: ChainResolver,
    ) -> Order:
        order = await self.get_order(order_id)
        src = order.escrow(EscrowSide.SRC)
        dst = order.escrow(EscrowSide.DST)
        src_deadline = cancellation_deadline(src.deployed_at, order.timelocks, EscrowSide.SRC)

        await self._wait_final(
            dst_resolver,
            dst.tx_hash,
            min(self.clock.now() + timedelta(seconds=self.settings.finality_timeout), src_deadline),
        )

        src_balance, dst_balance = await asyncio.gather(
            self._read(
                lambda: src_resolver.get_contract_balance(src.address, src.asset),
                f"src escrow balance for {order_id}",
            ),
            self._read(
                lambda: dst_resolver.get_contract_balance(dst.address, dst.asset),
                f"dst escrow balance for {order_id}",
            ),
        )

        for escrow, balance in ((src, src_balance), (dst, dst_balance)):
            if balance <= 0 or balance < escrow.amount:
                raise FundingVerificationError(
                    f"{escrow.side} escrow {escrow.address} holds {balance}, expected {escrow.amount}",
                    order_id=order_id,
                )

        for side in (EscrowSide.SRC, EscrowSide.DST):
            await self._update_escrow(order_id, side, status=EscrowStatus.FUNDED)
        order = await self._advance(order_id, OrderStatus.ESCROWS_READY, "both escrows funded")
        logger.info(f"Order {order_id}: escrows ready")
        return order

    # ------------------------------------------------------------------
    # Phase 2
    # ------------------------------------------------------------------

    async def complete_flow(self, order_id: str, secret: str) -> Order:
        """Settle an order with the maker's secret.

        Raises:
            FlowInProgressError: If another flow holds the order
            InvalidStateError: If the order is not ESCROWS_READY
            InvalidSecretError: If the secret does not match the hashlock
            SwapError: The classified cause when settlement failed
        """
        async with self.locks.hold(order_id, "complete_flow"):
            order = await self.get_order(order_id)
            self.check_revealable(order, secret)

            async with self.store.transaction() as repo:
                fresh = await repo.get_order_or_raise(order_id)
                await repo.set_revealed_secret(fresh, secret, self.clock.now())
                await repo.transition(fresh, OrderStatus.SECRET_REVEALED, self.clock.now())

            return await self._settle(order_id)

    @staticmethod
    def check_revealable(order: Order, secret: str) -> None:
        """Validate a reveal without touching any chain."""
        if order.order_status != OrderStatus.ESCROWS_READY:
            raise InvalidStateError(
                f"Order {order.id} is {order.status}, expected {OrderStatus.ESCROWS_READY.value}",
                order_id=order.id,
            )
        if not verify_secret(secret, order.secret_hash):
            raise InvalidSecretError("Secret does not match the order's hashlock", order_id=order.id)

    async def _settle(self, order_id: str) -> Order:
        order = await self.get_order(order_id)
        secret = order.revealed_secret
        src_config, dst_config = self._resolve_pair(order)
        src_resolver = self.resolvers.get_resolver(src_config)
        dst_resolver = self.resolvers.get_resolver(dst_config)

        # Step 1: destination first, which also publishes the secret.
        if order.order_status == OrderStatus.SECRET_REVEALED:
            try:
                await self._initialize(src_resolver, dst_resolver)
                await self._withdraw(order, EscrowSide.DST, dst_resolver, secret)
            except Exception as e:
                logger.error(f"Order {order_id}: destination withdrawal failed: {e}")
                await self._abort(order_id, OrderStatus.FAILED, f"dst withdrawal failed: {e}")
                await self.recovery.recover(order_id)
                raise
            order = await self._advance(order_id, OrderStatus.DST_WITHDRAWN)

        # Steps 2-3: the secret is public now; failures need an operator.
        if order.order_status == OrderStatus.DST_WITHDRAWN:
            try:
                await self._initialize(src_resolver, dst_resolver)
                dst = order.escrow(EscrowSide.DST)
                src = order.escrow(EscrowSide.SRC)
                src_deadline = cancellation_deadline(src.deployed_at, order.timelocks, EscrowSide.SRC)
                deadline = min(
                    self.clock.now() + timedelta(seconds=self.settings.finality_timeout),
                    src_deadline,
                )
                if dst.withdraw_tx_hash:
                    status = await self._wait_final(dst_resolver, dst.withdraw_tx_hash, deadline)
                    await self._update_escrow(
                        order_id, EscrowSide.DST, withdraw_block_number=status.block_number
                    )
                tx_hash = await self._withdraw(order, EscrowSide.SRC, src_resolver, secret)
                if tx_hash:
                    status = await self._wait_final(
                        src_resolver,
                        tx_hash,
                        self.clock.now() + timedelta(seconds=self.settings.finality_timeout),
                    )
                    await self._update_escrow(
                        order_id, EscrowSide.SRC, withdraw_block_number=status.block_number
                    )
            except Exception as e:
                reason = f"src withdrawal failed after dst payout: {e}"
                logger.critical(f"Order {order_id}: {reason}")
                await self._abort(order_id, OrderStatus.FAILED, reason, attention=True)
                await self.notifier.alert(
                    order_id,
                    "Source withdrawal failed after destination payout",
                    f"{e}\nThe secret is public; withdraw the source escrow manually "
                    f"before its cancellation window opens.",
                )
                await self.recovery.recover(order_id)
                raise
            order = await self._advance(order_id, OrderStatus.SRC_WITHDRAWN)

        if order.order_status == OrderStatus.SRC_WITHDRAWN:
            order = await self._advance(order_id, OrderStatus.COMPLETED)
            logger.info(f"Order {order_id}: swap completed")
        return order

    async def _withdraw(
        self,
        order: Order,
        side: EscrowSide,
        resolver: ChainResolver,
        secret: str,
    ) -> Optional[str]:
        """Withdraw one escrow, checking the timelock right before the call.

        The chain is consulted first, so a withdrawal that landed without
        being recorded (crash, lost receipt) is adopted instead of resent.
        """
        escrow = order.escrow(side)
        if escrow.escrow_status == EscrowStatus.WITHDRAWN:
            return escrow.withdraw_tx_hash

        state = await self._read(
            lambda: resolver.get_escrow_state(escrow.address),
            f"{side.value} escrow state for {order.id}",
        )
        if state.status == "withdrawn":
            logger.warning(f"Order {order.id}: {side.value} escrow {escrow.address} already withdrawn")
            return await self._record_withdrawal(order, escrow, state.tx_hash)
        if state.status != "active":
            raise TransactionFailedError(
                f"{side.value} escrow {escrow.address} is {state.status}", order_id=order.id
            )

        time_locks = order.timelocks
        while True:
            now = self.clock.now()
            stage = evaluate_stage(escrow.deployed_at, time_locks, now, side)
            if stage != TimelockStage.TOO_EARLY:
                break
            opens_at = window_start(escrow.deployed_at, time_locks, side, TimelockStage.WITHDRAWABLE)
            wait = (opens_at - now).total_seconds()
            if wait > self.settings.max_window_wait:
                raise NotYetWithdrawableError(
                    f"{side.value} withdrawal opens in {wait:.0f}s", order_id=order.id
                )
            logger.info(f"Order {order.id}: waiting {wait:.0f}s for {side.value} withdrawal window")
            await self.clock.sleep_until(opens_at)

        check_action(stage, EscrowAction.WITHDRAW)
        executor = resolver.get_address()
        recipient = settle_safety_deposit(stage, EscrowAction.WITHDRAW, executor, executor)

        try:
            tx_hash = await self._submit(
                lambda: resolver.withdraw(escrow.address, secret, side),
                f"withdraw {side.value} escrow for {order.id}",
            )
        except SwapError:
            state = await self._read(
                lambda: resolver.get_escrow_state(escrow.address),
                f"{side.value} escrow state for {order.id}",
            )
            if state.status != "withdrawn":
                raise
            logger.warning(f"Order {order.id}: {side.value} withdrawal landed despite the error")
            tx_hash = state.tx_hash
        return await self._record_withdrawal(order, escrow, tx_hash, recipient)

    async def _record_withdrawal(
        self,
        order: Order,
        escrow: EscrowRecord,
        tx_hash: Optional[str],
        recipient: Optional[str] = None,
    ) -> Optional[str]:
        await self._update_escrow(
            order.id,
            escrow.escrow_side,
            status=EscrowStatus.WITHDRAWN,
            withdraw_tx_hash=tx_hash,
            withdrawn_at=self.clock.now(),
            safety_deposit_recipient=recipient,
        )
        escrow.withdraw_tx_hash = tx_hash
        escrow.status = EscrowStatus.WITHDRAWN.value
        return tx_hash

    # ------------------------------------------------------------------
    # Background execution and resumption
    # ------------------------------------------------------------------

    def spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        """Run a flow in the background, logging its outcome."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, SwapError):
            logger.warning(f"{task.get_name()} ended with {type(error).__name__}: {error}")
        elif error is not None:
            logger.error(f"{task.get_name()} crashed: {error!r}")

    async def resume_settlement(self, order_id: str) -> Order:
        """Continue phase 2 of an order interrupted mid-settlement."""
        async with self.locks.hold(order_id, "complete_flow"):
            order = await self.get_order(order_id)
            if order.order_status not in PHASE_TWO:
                return order
            return await self._settle(order_id)

    async def resume_pending(self) -> int:
        """Resume interrupted flows and recoveries after a restart.

        Returns:
            Number of orders picked up
        """
        async with self.store.transaction() as repo:
            active = await repo.list_active_orders()
            failed = await repo.list_orders_needing_recovery()

        count = 0
        for order in active:
            status = order.order_status
            if status in PHASE_ONE:
                self.spawn(self.start_flow(order.id), f"start_flow:{order.id}")
            elif status in PHASE_TWO:
                self.spawn(self.resume_settlement(order.id), f"complete_flow:{order.id}")
            else:
                continue
            count += 1

        for order in failed:
            self.recovery.schedule(order.id, self.clock.now())
            count += 1

        if count:
            logger.info(f"Resumed {count} orders")
        return count

    async def wait_idle(self) -> None:
        """Wait until background flows and scheduled recoveries finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.recovery.wait_idle()

    async def shutdown(self) -> None:
        """Cancel background work; orders keep their last persisted status."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.recovery.shutdown()

