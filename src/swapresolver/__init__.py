"""Cross-chain HTLC atomic swap resolver."""

__version__ = "0.1.0"
