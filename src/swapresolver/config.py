"""Application configuration using pydantic-settings.

Credentials for each chain family may be given either as a raw private key
or as a BIP-39 mnemonic; the mnemonic is only used when no key is set.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/swapresolver.db",
        description="Database connection URL",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug mode")
    dry_run: bool = Field(
        default=True, description="Use simulated chains instead of real RPC endpoints"
    )

    # ======================
    # EVM
    # ======================
    evm_rpc_url: str = Field(
        default="https://ethereum-sepolia-rpc.publicnode.com", description="EVM JSON-RPC URL"
    )
    evm_chain_ids: str = Field(
        default="1,11155111", description="Comma-separated EVM chain ids this resolver serves"
    )
    evm_escrow_factory: str = Field(default="", description="Escrow factory contract address")
    evm_private_key: Optional[str] = Field(default=None, description="Hex private key")
    evm_mnemonic: Optional[str] = Field(default=None, description="BIP-39 mnemonic")
    evm_confirmations: int = Field(default=3, description="Blocks required for finality")
    evm_gas_limit: int = Field(default=500_000, description="Gas limit for escrow calls")

    # ======================
    # TON
    # ======================
    ton_api_url: str = Field(
        default="https://testnet.toncenter.com/api/v2", description="toncenter v2 API URL"
    )
    ton_index_url: str = Field(
        default="https://testnet.toncenter.com/api/v3", description="toncenter v3 index URL"
    )
    ton_api_key: str = Field(default="", description="toncenter API key")
    ton_escrow_factory: str = Field(default="", description="Escrow factory contract address")
    ton_private_key: Optional[str] = Field(default=None, description="Hex ed25519 seed")
    ton_mnemonic: Optional[str] = Field(default=None, description="BIP-39 mnemonic")
    ton_confirmations: int = Field(
        default=1, description="Masterchain blocks required for finality"
    )

    # ======================
    # Chain calls
    # ======================
    chain_call_timeout: float = Field(default=30.0, description="Deadline per chain read (s)")
    chain_tx_timeout: float = Field(
        default=300.0, description="Deadline per transaction incl. inclusion (s)"
    )
    chain_retry_attempts: int = Field(default=3, description="Attempts per chain call")
    retry_base_delay: float = Field(default=1.0, description="Initial backoff delay (s)")
    retry_max_delay: float = Field(default=30.0, description="Maximum backoff delay (s)")
    finality_timeout: float = Field(
        default=600.0, description="Upper bound for waiting on finality (s)"
    )

    # ======================
    # Protocol safety
    # ======================
    timelock_safety_margin: int = Field(
        default=300,
        description="Seconds the dst cancellation must precede the src cancellation",
    )
    max_window_wait: float = Field(
        default=120.0, description="Longest wait for a withdrawal window to open (s)"
    )
    flow_lock_timeout: float = Field(
        default=0.0, description="Wait for a busy order lock (0 = reject immediately)"
    )
    recovery_max_attempts: int = Field(
        default=5, description="Cancellation attempts before operator escalation"
    )

    # ======================
    # Operator alerts
    # ======================
    telegram_bot_token: str = Field(default="", description="Telegram bot token from BotFather")
    operator_chat_ids: str = Field(
        default="", description="Comma-separated Telegram chat ids for alerts"
    )

    @property
    def operator_ids(self) -> list[int]:
        """Parse operator chat IDs into a list of integers."""
        if not self.operator_chat_ids:
            return []
        return [int(cid.strip()) for cid in self.operator_chat_ids.split(",") if cid.strip()]

    @property
    def evm_chain_id_set(self) -> set[int]:
        """EVM chain ids accepted in orders."""
        return {int(cid.strip()) for cid in self.evm_chain_ids.split(",") if cid.strip()}

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "database_url": self._redact_url(self.database_url),
            "telegram_bot_token": "***" if self.telegram_bot_token else "(not set)",
            "operators": len(self.operator_ids),
            "chains": {
                "EVM": {
                    "rpc": self.evm_rpc_url,
                    "chain_ids": sorted(self.evm_chain_id_set),
                    "factory": self.evm_escrow_factory or "(not set)",
                    "credentials": self._credential_state(self.evm_private_key, self.evm_mnemonic),
                    "confirmations": self.evm_confirmations,
                },
                "TON": {
                    "rpc": self.ton_api_url,
                    "api_key": "***" if self.ton_api_key else "(not set)",
                    "factory": self.ton_escrow_factory or "(not set)",
                    "credentials": self._credential_state(self.ton_private_key, self.ton_mnemonic),
                    "confirmations": self.ton_confirmations,
                },
            },
            "safety": {
                "timelock_safety_margin": self.timelock_safety_margin,
                "finality_timeout": self.finality_timeout,
                "chain_call_timeout": self.chain_call_timeout,
                "chain_retry_attempts": self.chain_retry_attempts,
            },
        }

    @staticmethod
    def _credential_state(private_key: Optional[str], mnemonic: Optional[str]) -> str:
        if private_key:
            return "private_key"
        if mnemonic:
            return "mnemonic"
        return "(not set)"

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            creds, host = rest.rsplit("@", 1)
            if ":" in creds:
                user, _ = creds.split(":", 1)
                return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
