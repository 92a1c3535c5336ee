"""Simulated chain resolver for dry-run mode.

Keeps escrows in memory but enforces the same hashlock and timelock rules
as the on-chain contracts, against an injectable clock. Failures can be
injected per operation to exercise the orchestrator's recovery paths.
"""

import hashlib
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from eth_utils import keccak, to_checksum_address

from swapresolver.chains import ChainConfig
from swapresolver.crypto import verify_secret
from swapresolver.errors import InvalidSecretError, TransactionFailedError
from swapresolver.resolvers.base import (
    ChainResolver,
    EscrowDeployment,
    EscrowParams,
    EscrowState,
    ResolverCredentials,
    TxStatus,
)
from swapresolver.timelocks import (
    EscrowAction,
    EscrowSide,
    evaluate_stage,
    settle_safety_deposit,
)
from swapresolver.utils.clock import Clock

logger = logging.getLogger(__name__)

NATIVE = "native"


@dataclass
class SimulatedTx:
    tx_hash: str
    kind: str                      # deploy, withdraw, cancel
    escrow_address: str
    block_number: int
    timestamp: datetime
    sender: str
    success: bool = True


@dataclass
class SimulatedEscrow:
    address: str
    params: EscrowParams
    deployed_at: datetime
    deploy_tx: SimulatedTx
    balances: dict[str, int] = field(default_factory=dict)
    state: str = "active"          # active, withdrawn, cancelled
    revealed_secret: Optional[str] = None
    deposit_recipient: Optional[str] = None


class SimulatedChain:
    """In-memory chain shared by the resolvers of one family."""

    def __init__(
        self,
        name: str,
        clock: Optional[Clock] = None,
        block_time: float = 12.0,
        wallet_balance: int = 10**30,
    ):
        self.name = name
        self.clock = clock or Clock()
        self.block_time = block_time
        self.wallet_balance = wallet_balance
        self.genesis = self.clock.now()
        self.escrows: dict[str, SimulatedEscrow] = {}
        self.transactions: dict[str, SimulatedTx] = {}
        self.unfunded_sides: set[EscrowSide] = set()
        self._failures: dict[str, list[Exception]] = {}
        self._counter = itertools.count(1)
        self._mined = 0

    @property
    def block_number(self) -> int:
        elapsed = (self.clock.now() - self.genesis).total_seconds()
        return int(elapsed // self.block_time) + self._mined

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        self._failures.setdefault(operation, []).extend([error] * times)

    def maybe_fail(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def escrow_address(self, salt: str) -> str:
        digest = keccak(text=f"{self.name}:{salt}")
        return to_checksum_address(digest[-20:])

    def mine(self, kind: str, escrow_address: str, sender: str) -> SimulatedTx:
        self._mined += 1
        raw = f"{self.name}:{kind}:{escrow_address}:{next(self._counter)}".encode()
        tx = SimulatedTx(
            tx_hash="0x" + hashlib.sha256(raw).hexdigest(),
            kind=kind,
            escrow_address=escrow_address,
            block_number=self.block_number,
            timestamp=self.clock.now(),
            sender=sender,
        )
        self.transactions[tx.tx_hash] = tx
        return tx

    def txs_of_kind(self, kind: str) -> list[SimulatedTx]:
        return [tx for tx in self.transactions.values() if tx.kind == kind]

    @property
    def withdrawals(self) -> list[SimulatedTx]:
        return self.txs_of_kind("withdraw")

    @property
    def cancellations(self) -> list[SimulatedTx]:
        return self.txs_of_kind("cancel")


class SimulatedResolver(ChainResolver):
    """Resolver backed by a SimulatedChain."""

    def __init__(
        self,
        config: ChainConfig,
        credentials: ResolverCredentials,
        chain: SimulatedChain,
    ):
        super().__init__(config, credentials)
        self.chain = chain
        self._address: Optional[str] = None

    async def _setup_signer(self) -> None:
        self.chain.maybe_fail("initialize")
        material = self.credentials.private_key or self.credentials.mnemonic or ""
        self._address = to_checksum_address(keccak(text=material)[-20:])

    def get_address(self) -> str:
        if self._address is None:
            self._require_initialized()
        return self._address

    async def get_balance(self) -> int:
        self.chain.maybe_fail("get_balance")
        return self.chain.wallet_balance

    async def get_token_balance(self, asset: str) -> int:
        self.chain.maybe_fail("get_token_balance")
        return self.chain.wallet_balance

    async def deploy_escrow(self, params: EscrowParams) -> EscrowDeployment:
        self._require_initialized()
        self.chain.maybe_fail(f"deploy_{EscrowSide(params.side).value}")
        self.chain.maybe_fail("deploy")

        address = self.chain.escrow_address(params.salt)
        existing = self.chain.escrows.get(address)
        if existing is not None:
            logger.info(f"[SIMULATED] Escrow {address} already deployed, reusing")
            return self._deployment(existing, created=False)

        tx = self.chain.mine("deploy", address, self.get_address())
        escrow = SimulatedEscrow(
            address=address,
            params=params,
            deployed_at=tx.timestamp,
            deploy_tx=tx,
        )
        if EscrowSide(params.side) not in self.chain.unfunded_sides:
            escrow.balances[params.asset] = params.amount
            escrow.balances[NATIVE] = escrow.balances.get(NATIVE, 0) + params.safety_deposit
        self.chain.escrows[address] = escrow

        logger.info(
            f"[SIMULATED] Deployed {params.side.value} escrow {address} on {self.chain.name} "
            f"for {params.amount} {params.asset}"
        )
        return self._deployment(escrow, created=True)

    @staticmethod
    def _deployment(escrow: SimulatedEscrow, created: bool) -> EscrowDeployment:
        return EscrowDeployment(
            address=escrow.address,
            tx_hash=escrow.deploy_tx.tx_hash,
            block_number=escrow.deploy_tx.block_number,
            deployed_at=escrow.deployed_at,
            hashlock=escrow.params.secret_hash,
            created=created,
        )

    async def find_escrow(self, salt: str) -> Optional[EscrowDeployment]:
        self.chain.maybe_fail("find_escrow")
        escrow = self.chain.escrows.get(self.chain.escrow_address(salt))
        if escrow is None:
            return None
        return self._deployment(escrow, created=False)

    async def get_escrow_state(self, address: str) -> EscrowState:
        self.chain.maybe_fail("get_escrow_state")
        escrow = self.chain.escrows.get(address)
        if escrow is None:
            return EscrowState(status="missing")
        if escrow.state == "active":
            return EscrowState(status="active")
        kind = "withdraw" if escrow.state == "withdrawn" else "cancel"
        settling = [tx for tx in self.chain.txs_of_kind(kind) if tx.escrow_address == address]
        return EscrowState(
            status=escrow.state,
            tx_hash=settling[-1].tx_hash if settling else None,
        )

    async def get_contract_balance(self, address: str, asset: Optional[str] = None) -> int:
        self.chain.maybe_fail("get_contract_balance")
        escrow = self.chain.escrows.get(address)
        if escrow is None:
            return 0
        return escrow.balances.get(asset or NATIVE, 0)

    def _active_escrow(self, address: str) -> SimulatedEscrow:
        escrow = self.chain.escrows.get(address)
        if escrow is None:
            raise TransactionFailedError(f"No escrow at {address}")
        if escrow.state != "active":
            raise TransactionFailedError(f"Escrow {address} already {escrow.state}")
        return escrow

    async def withdraw(self, escrow_address: str, secret: str, side: EscrowSide) -> str:
        self._require_initialized()
        self.chain.maybe_fail(f"withdraw_{EscrowSide(side).value}")
        self.chain.maybe_fail("withdraw")

        escrow = self._active_escrow(escrow_address)
        if not verify_secret(secret, escrow.params.secret_hash):
            raise InvalidSecretError(f"Secret does not match hashlock of {escrow_address}")

        stage = evaluate_stage(
            escrow.deployed_at, escrow.params.time_locks, self.chain.clock.now(), side
        )
        recipient = settle_safety_deposit(
            stage, EscrowAction.WITHDRAW, self.get_address(), self.get_address()
        )

        tx = self.chain.mine("withdraw", escrow_address, self.get_address())
        escrow.state = "withdrawn"
        escrow.revealed_secret = secret
        escrow.deposit_recipient = recipient
        escrow.balances.clear()
        logger.info(f"[SIMULATED] Withdrew {side.value} escrow {escrow_address}: {tx.tx_hash}")
        return tx.tx_hash

    async def cancel(self, escrow_address: str, side: EscrowSide) -> str:
        self._require_initialized()
        self.chain.maybe_fail(f"cancel_{EscrowSide(side).value}")
        self.chain.maybe_fail("cancel")

        escrow = self._active_escrow(escrow_address)
        stage = evaluate_stage(
            escrow.deployed_at, escrow.params.time_locks, self.chain.clock.now(), side
        )
        recipient = settle_safety_deposit(
            stage, EscrowAction.CANCEL, self.get_address(), self.get_address()
        )

        tx = self.chain.mine("cancel", escrow_address, self.get_address())
        escrow.state = "cancelled"
        escrow.deposit_recipient = recipient
        escrow.balances.clear()
        logger.info(f"[SIMULATED] Cancelled {side.value} escrow {escrow_address}: {tx.tx_hash}")
        return tx.tx_hash

    async def get_transaction_status(self, tx_hash: str) -> TxStatus:
        self.chain.maybe_fail("get_transaction_status")
        tx = self.chain.transactions.get(tx_hash)
        if tx is None:
            return TxStatus(found=False)
        return TxStatus(
            found=True,
            success=tx.success,
            block_number=tx.block_number,
            confirmations=self.chain.block_number - tx.block_number + 1,
        )

