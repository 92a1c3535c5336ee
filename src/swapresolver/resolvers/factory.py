"""Factory for creating chain resolvers.

One resolver is built per chain key (``evm:1``, ``ton:-3``) and cached.
In dry-run mode every family is backed by an in-memory SimulatedChain.
"""

import logging
from typing import Optional

from swapresolver.chains import ChainConfig, ChainFamily, ChainId, resolve_chain
from swapresolver.config import Settings, get_settings
from swapresolver.resolvers.base import ChainResolver, ResolverCredentials
from swapresolver.resolvers.evm import EVMResolver
from swapresolver.resolvers.simulated import SimulatedChain, SimulatedResolver
from swapresolver.resolvers.ton import TonResolver
from swapresolver.utils.clock import Clock

logger = logging.getLogger(__name__)


class ResolverFactory:
    """Builds and caches a resolver per chain."""

    def __init__(self, settings: Optional[Settings] = None, clock: Optional[Clock] = None):
        self.settings = settings or get_settings()
        self.clock = clock or Clock()
        self._cache: dict[str, ChainResolver] = {}
        self._simulated: dict[str, SimulatedChain] = {}

    def resolve(self, chain_id: ChainId) -> ChainConfig:
        """Resolve a chain id (raises UnsupportedChainError)."""
        return resolve_chain(chain_id, self.settings)

    def credentials_for(self, family: ChainFamily) -> ResolverCredentials:
        if family == ChainFamily.EVM:
            return ResolverCredentials(
                private_key=self.settings.evm_private_key,
                mnemonic=self.settings.evm_mnemonic,
            )
        return ResolverCredentials(
            private_key=self.settings.ton_private_key,
            mnemonic=self.settings.ton_mnemonic,
        )

    def simulated_chain(self, config: ChainConfig) -> SimulatedChain:
        """Get the in-memory chain backing a dry-run resolver."""
        if config.key not in self._simulated:
            self._simulated[config.key] = SimulatedChain(config.key, clock=self.clock)
        return self._simulated[config.key]

    def get_resolver(self, config: ChainConfig) -> ChainResolver:
        """Get a resolver for a resolved chain config."""
        if config.key in self._cache:
            return self._cache[config.key]

        credentials = self.credentials_for(config.family)
        resolver: ChainResolver
        if self.settings.dry_run:
            resolver = SimulatedResolver(config, credentials, self.simulated_chain(config))
        elif config.family == ChainFamily.EVM:
            resolver = EVMResolver(
                config,
                credentials,
                gas_limit=self.settings.evm_gas_limit,
                clock=self.clock,
            )
        else:
            resolver = TonResolver(
                config,
                credentials,
                index_url=self.settings.ton_index_url,
                api_key=self.settings.ton_api_key,
                clock=self.clock,
            )

        logger.info(f"Created {type(resolver).__name__} for {config.key}")
        self._cache[config.key] = resolver
        return resolver

    async def close(self) -> None:
        """Close all cached resolvers."""
        for resolver in self._cache.values():
            await resolver.close()
        self._cache.clear()

    def reset(self) -> None:
        """Clear resolver cache (useful for testing)."""
        self._cache.clear()
        self._simulated.clear()
