"""Chain resolvers: one capability set per chain family."""

from swapresolver.resolvers.base import (
    ChainResolver,
    EscrowDeployment,
    EscrowParams,
    ResolverCredentials,
    TxStatus,
)
from swapresolver.resolvers.factory import ResolverFactory

__all__ = [
    "ChainResolver",
    "EscrowDeployment",
    "EscrowParams",
    "ResolverCredentials",
    "TxStatus",
    "ResolverFactory",
]
