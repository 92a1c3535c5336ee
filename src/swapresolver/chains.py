"""Chain identification and per-family configuration.

Orders name chains by id. An id may carry an explicit family tag
(``evm:11155111``, ``ton:-3``) or be a bare signed integer: TON global ids
are negative (-239 mainnet, -3 testnet), EVM chain ids are positive.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from swapresolver.config import Settings, get_settings
from swapresolver.errors import UnsupportedChainError

ChainId = Union[int, str]

TON_MAINNET = -239
TON_TESTNET = -3
TON_GLOBAL_IDS = {TON_MAINNET, TON_TESTNET}


class ChainFamily(str, Enum):
    """Chain families with a resolver implementation."""

    EVM = "evm"
    TON = "ton"


@dataclass(frozen=True)
class ChainConfig:
    """Resolved configuration for one side of a swap."""

    family: ChainFamily
    chain_id: int
    rpc_url: str
    escrow_factory: str
    confirmations: int

    @property
    def key(self) -> str:
        """Canonical tagged id, e.g. ``evm:1``."""
        return f"{self.family.value}:{self.chain_id}"


def parse_chain_id(chain_id: ChainId) -> tuple[Optional[ChainFamily], int]:
    """Split a chain id into (explicit family or None, numeric id)."""
    if isinstance(chain_id, bool):
        raise UnsupportedChainError(f"Invalid chain id: {chain_id!r}")
    if isinstance(chain_id, int):
        return None, chain_id

    text = str(chain_id).strip().lower()
    family: Optional[ChainFamily] = None
    if ":" in text:
        tag, text = text.split(":", 1)
        try:
            family = ChainFamily(tag)
        except ValueError:
            raise UnsupportedChainError(f"Unknown chain family tag: {tag}")
    try:
        return family, int(text)
    except ValueError:
        raise UnsupportedChainError(f"Invalid chain id: {chain_id!r}")


def chain_family(chain_id: ChainId, settings: Optional[Settings] = None) -> ChainFamily:
    """Map a chain id to exactly one supported family."""
    settings = settings or get_settings()
    family, numeric = parse_chain_id(chain_id)

    if family is None:
        family = ChainFamily.TON if numeric < 0 else ChainFamily.EVM

    if family == ChainFamily.TON and numeric in TON_GLOBAL_IDS:
        return family
    if family == ChainFamily.EVM and numeric > 0 and numeric in settings.evm_chain_id_set:
        return family

    raise UnsupportedChainError(f"Unsupported chain: {chain_id}")


def resolve_chain(chain_id: ChainId, settings: Optional[Settings] = None) -> ChainConfig:
    """Resolve a chain id to its family configuration.

    Raises:
        UnsupportedChainError: If the id maps to no supported family
    """
    settings = settings or get_settings()
    family = chain_family(chain_id, settings)
    _, numeric = parse_chain_id(chain_id)

    if family == ChainFamily.EVM:
        return ChainConfig(
            family=family,
            chain_id=numeric,
            rpc_url=settings.evm_rpc_url,
            escrow_factory=settings.evm_escrow_factory,
            confirmations=settings.evm_confirmations,
        )
    return ChainConfig(
        family=family,
        chain_id=numeric,
        rpc_url=settings.ton_api_url,
        escrow_factory=settings.ton_escrow_factory,
        confirmations=settings.ton_confirmations,
    )
