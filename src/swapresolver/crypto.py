"""Hashlock helpers.

Secrets are 32 random bytes; the hashlock is their keccak-256 digest, which
matches what the EVM escrow contracts check on withdrawal.
"""

import re
import secrets

from eth_utils import keccak

from swapresolver.errors import ValidationError

HEX32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def generate_secret() -> str:
    """Generate a fresh 32-byte secret as 0x-prefixed hex."""
    return "0x" + secrets.token_hex(32)


def _to_bytes32(value: str, what: str) -> bytes:
    if not isinstance(value, str) or not HEX32_RE.match(value):
        raise ValidationError(f"{what} must be 0x-prefixed 32-byte hex")
    return bytes.fromhex(value[2:])


def hash_secret(secret: str) -> str:
    """Return the 0x-prefixed keccak-256 hashlock for a secret."""
    return "0x" + keccak(_to_bytes32(secret, "secret")).hex()


def verify_secret(secret: str, secret_hash: str) -> bool:
    """Check that a secret unlocks the given hashlock."""
    try:
        return secrets.compare_digest(hash_secret(secret), normalize_hash(secret_hash))
    except ValidationError:
        return False


def normalize_hash(secret_hash: str) -> str:
    """Validate a hashlock and return it lowercased."""
    return "0x" + _to_bytes32(secret_hash, "secret_hash").hex()


def escrow_salt(order_id: str, side: str) -> str:
    """Deterministic per-escrow salt.

    Re-submitting a deployment with the same salt targets the same escrow
    address, so retries cannot lock funds twice.
    """
    return "0x" + keccak(text=f"{order_id}:{side}").hex()
