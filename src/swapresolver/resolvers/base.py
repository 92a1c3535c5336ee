"""Chain resolver capability interface.

Every chain family implements the same operations so the orchestrator
never branches on chain type:

1. initialize() establishes the signing context
2. deploy_escrow() locks funds under a hashlock and timelock schedule
3. get_contract_balance() verifies funding
4. withdraw() reveals the secret and releases funds
5. cancel() refunds the depositor once cancellation opens
6. get_transaction_status() reports inclusion and depth
7. find_escrow() and get_escrow_state() read an escrow back from the chain,
   so a submission whose outcome was lost can be reconciled
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from swapresolver.chains import ChainConfig
from swapresolver.errors import CredentialError
from swapresolver.timelocks import EscrowSide, TimeLockConfig

logger = logging.getLogger(__name__)


@dataclass
class ResolverCredentials:
    """Signing material; the private key wins over the mnemonic."""
    private_key: Optional[str] = None
    mnemonic: Optional[str] = None

    @property
    def configured(self) -> bool:
        return bool(self.private_key or (self.mnemonic and len(self.mnemonic.split()) >= 12))


@dataclass
class EscrowParams:
    """Immutable parameters of one escrow."""
    order_id: str
    side: EscrowSide
    salt: str                      # 0x-prefixed 32 bytes, fixes the escrow address
    secret_hash: str
    asset: str
    amount: int
    safety_deposit: int
    depositor: str                 # Refunded on cancel
    recipient: str                 # Paid on withdraw
    time_locks: TimeLockConfig


@dataclass
class EscrowDeployment:
    """Proof that an escrow exists on-chain."""
    address: str
    tx_hash: str
    block_number: int
    deployed_at: datetime
    hashlock: str
    created: bool = True           # False when an existing escrow was found


@dataclass
class TxStatus:
    """Inclusion state of a transaction."""
    found: bool
    success: bool = False
    block_number: Optional[int] = None
    confirmations: int = 0

    def is_final(self, required: int) -> bool:
        return self.found and self.success and self.confirmations >= required


@dataclass
class EscrowState:
    """Settlement state of an escrow as seen on-chain."""
    status: str                    # active, withdrawn, cancelled, missing
    tx_hash: Optional[str] = None  # Settling transaction, when known

    @property
    def settled(self) -> bool:
        return self.status in ("withdrawn", "cancelled")


class ChainResolver(ABC):
    """Abstract base class for chain resolvers.

    Each chain family has its own implementation.
    """

    def __init__(self, config: ChainConfig, credentials: ResolverCredentials):
        self.config = config
        self.credentials = credentials
        self._initialized = False

    @property
    def family(self) -> str:
        return self.config.family.value

    @property
    def required_confirmations(self) -> int:
        return max(self.config.confirmations, 1)

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Establish the signing context. Safe to call repeatedly.

        Raises:
            CredentialError: If no signing material is configured
        """
        if self._initialized:
            return
        if not self.credentials.configured:
            raise CredentialError(f"No signing key or mnemonic configured for {self.family}")
        await self._setup_signer()
        self._initialized = True
        logger.info(f"{self.family} resolver initialized as {self.get_address()}")

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise CredentialError(f"{self.family} resolver used before initialize()")

    @abstractmethod
    async def _setup_signer(self) -> None:
        """Derive keys and the resolver's on-chain address."""
        pass

    @abstractmethod
    def get_address(self) -> str:
        """Resolver's own address on this chain."""
        pass

    @abstractmethod
    async def get_balance(self) -> int:
        """Native balance of the resolver, in base units."""
        pass

    @abstractmethod
    async def get_token_balance(self, asset: str) -> int:
        """Token balance of the resolver, in base units."""
        pass

    @abstractmethod
    async def deploy_escrow(self, params: EscrowParams) -> EscrowDeployment:
        """Deploy and fund an escrow.

        Idempotent: if an escrow already exists for ``params.salt`` its
        on-chain data is returned and nothing is submitted.
        """
        pass

    @abstractmethod
    async def find_escrow(self, salt: str) -> Optional[EscrowDeployment]:
        """Look up the escrow for ``salt`` without submitting anything.

        Returns None when nothing is deployed at its deterministic address.
        """
        pass

    @abstractmethod
    async def get_escrow_state(self, address: str) -> EscrowState:
        """Whether an escrow is active, withdrawn, cancelled or missing."""
        pass

    @abstractmethod
    async def get_contract_balance(self, address: str, asset: Optional[str] = None) -> int:
        """Amount of ``asset`` (native if None) held by an escrow."""
        pass

    @abstractmethod
    async def withdraw(self, escrow_address: str, secret: str, side: EscrowSide) -> str:
        """Reveal the secret and release funds to the recipient.

        Returns:
            Transaction hash
        """
        pass

    @abstractmethod
    async def cancel(self, escrow_address: str, side: EscrowSide) -> str:
        """Refund the depositor.

        Returns:
            Transaction hash
        """
        pass

    @abstractmethod
    async def get_transaction_status(self, tx_hash: str) -> TxStatus:
        """Inclusion and confirmation depth of a transaction."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass
