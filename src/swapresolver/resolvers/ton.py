"""TON chain resolver.

Uses the toncenter HTTP API (v2 for state, get-methods and sendBoc, v3
index for jetton wallets and transaction lookup) and signs wallet v4r2
transfers with ed25519 via PyNaCl.

Escrow factory and escrow contracts expose:

    factory  get_escrow_address_hash(salt) -> int   (workchain 0 account id)
    escrow   get_escrow_data() -> (hashlock, deployed_at, withdrawal,
                                   public_withdrawal, cancellation,
                                   public_cancellation)
             get_escrow_state() -> int          (0 active, 1 withdrawn, 2 cancelled)

and accept internal messages with the op codes below. A zero public
cancellation offset means none (dst escrows).

Message serialization is simplified (flat byte layout instead of a full
BOC encoder), matching the wallet builder this service has always used.
"""

import asyncio
import base64
import hashlib
import logging
import struct
import time
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from nacl.signing import SigningKey

from swapresolver.chains import TON_TESTNET, ChainConfig
from swapresolver.crypto import hash_secret
from swapresolver.errors import (
    ChainQueryError,
    CredentialError,
    InvalidSecretError,
    TransactionFailedError,
)
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
    SideTimelocks,
    check_action,
    evaluate_side_stage,
)
from swapresolver.utils.clock import Clock

logger = logging.getLogger(__name__)

# TON Wallet V4R2 code hash
WALLET_V4R2_CODE_HASH = bytes.fromhex(
    "feb5ff6820e2ff0d9483e7e0d62c817d846789fb4ae580c878866d959dabd5c0"
)
WALLET_V4R2_SUBWALLET_ID = 698983191

# TON uses coin type 607
TON_DERIVATION_PATH = "44'/607'/0'/0'/0'"

OP_CREATE_ESCROW = 0x1D5A73E1
OP_WITHDRAW = 0x6B4A2C10
OP_CANCEL = 0x3F7C19A2

# Gas attached to contract calls, in nanotons
CALL_GAS = 100_000_000
DEPLOY_GAS = 300_000_000

INCLUSION_POLL_INTERVAL = 3.0

ESCROW_STATES = {0: "active", 1: "withdrawn", 2: "cancelled"}


def is_native_asset(asset: Optional[str]) -> bool:
    return asset is None or asset.lower() in ("native", "ton")


def crc16(data: bytes) -> int:
    """CRC16-CCITT checksum used in user-friendly addresses."""
    crc = 0
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = (crc << 1) ^ 0x1021
            else:
                crc <<= 1
            crc &= 0xFFFF
    return crc


def friendly_address(raw_address: bytes, bounceable: bool = True, testnet: bool = False) -> str:
    """Encode workchain + account id as a user-friendly base64url address."""
    tag = 0x11 if bounceable else 0x51
    if testnet:
        tag |= 0x80
    address_bytes = bytes([tag]) + raw_address
    address_with_crc = address_bytes + crc16(address_bytes).to_bytes(2, "big")
    return base64.urlsafe_b64encode(address_with_crc).decode()


def wallet_address_from_pubkey(
    pubkey_bytes: bytes, workchain: int = 0, testnet: bool = False
) -> tuple[bytes, str]:
    """Calculate the wallet v4r2 address for a public key.

    Returns:
        Tuple of (raw_address_bytes, user_friendly_address)
    """
    # State init hash = SHA256(code_hash + data), data = pubkey for v4r2
    state_hash = hashlib.sha256(WALLET_V4R2_CODE_HASH + pubkey_bytes).digest()
    raw_address = bytes([workchain & 0xFF]) + state_hash
    return raw_address, friendly_address(raw_address, testnet=testnet)


def parse_address(address: str) -> bytes:
    """Parse a raw (``0:hex``) or user-friendly address to workchain + hash."""
    if ":" in address:
        workchain, hex_part = address.split(":", 1)
        return bytes([int(workchain) & 0xFF]) + bytes.fromhex(hex_part)

    padded = address + "=" * (-len(address) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded)
    except ValueError:
        decoded = b""
    if len(decoded) != 36:
        raise TransactionFailedError(f"Invalid TON address: {address}")
    if crc16(decoded[:34]) != int.from_bytes(decoded[34:], "big"):
        raise TransactionFailedError(f"Bad checksum in TON address: {address}")
    # Skip tag (1 byte), take workchain (1 byte) + hash (32 bytes)
    return decoded[1:34]


def raw_address_string(raw: bytes) -> str:
    workchain = raw[0] if raw[0] < 128 else raw[0] - 256
    return f"{workchain}:{raw[1:].hex()}"


def derive_signing_key(mnemonic: str) -> bytes:
    """Derive the ed25519 seed from a BIP-39 mnemonic."""
    from bip_utils import Bip32Slip10Ed25519, Bip39SeedGenerator

    seed = Bip39SeedGenerator(mnemonic).Generate()
    derived = Bip32Slip10Ed25519.FromSeed(seed).DerivePath(TON_DERIVATION_PATH)
    return derived.PrivateKey().Raw().ToBytes()


def build_internal_message(dest: str, amount: int, body: bytes = b"", bounce: bool = True) -> bytes:
    """Build a simplified internal message."""
    flags = 0b01100000 if bounce else 0b01000000
    msg = bytes([flags])
    msg += parse_address(dest)  # 33 bytes (workchain + hash)
    msg += struct.pack(">Q", amount)  # Amount in nanotons
    msg += body
    return msg


def build_wallet_transfer(seqno: int, messages: list[dict], valid_until: int) -> bytes:
    """Build a wallet v4r2 transfer body for signing.

    Layout: subwallet_id, valid_until, seqno (32 bits each), op (8 bits),
    then mode + internal message per entry (up to 4).
    """
    body = struct.pack(">III", WALLET_V4R2_SUBWALLET_ID, valid_until, seqno)
    body += bytes([0])  # Simple send
    for msg in messages[:4]:
        body += bytes([msg.get("mode", 3)])  # Pay gas separately + ignore errors
        body += build_internal_message(msg["dest"], msg["amount"], msg.get("body", b""))
    return body


def encode_escrow_body(params: EscrowParams, query_id: int) -> bytes:
    """Body of the factory's create-escrow message."""
    locks = params.time_locks.for_side(params.side)
    body = struct.pack(">IQ", OP_CREATE_ESCROW, query_id)
    body += bytes.fromhex(params.salt[2:])
    body += bytes.fromhex(params.secret_hash[2:])
    body += parse_address(params.depositor)
    body += parse_address(params.recipient)
    body += b"\x00" * 33 if is_native_asset(params.asset) else parse_address(params.asset)
    body += params.amount.to_bytes(32, "big")
    body += params.safety_deposit.to_bytes(32, "big")
    body += struct.pack(
        ">IIII",
        locks.withdrawal,
        locks.public_withdrawal,
        locks.cancellation,
        locks.public_cancellation or 0,
    )
    return body


def _stack_int(entry: list) -> int:
    # Stack format: [["num", "0x..."]]
    if entry[0] != "num":
        raise ChainQueryError(f"Unexpected stack entry type: {entry[0]}")
    value = entry[1]
    return int(value, 16) if value.startswith(("0x", "-0x")) else int(value)


class TonResolver(ChainResolver):
    """Resolver for TON (the non-EVM chain family)."""

    def __init__(
        self,
        config: ChainConfig,
        credentials: ResolverCredentials,
        index_url: str = "",
        api_key: str = "",
        clock: Optional[Clock] = None,
        inclusion_timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(config, credentials)
        self.api_url = config.rpc_url.rstrip("/")
        self.index_url = index_url.rstrip("/")
        self.api_key = api_key
        self.clock = clock or Clock()
        self.inclusion_timeout = inclusion_timeout
        self.testnet = config.chain_id == TON_TESTNET
        self._client = client
        self._signing_key: Optional[SigningKey] = None
        self._address: Optional[str] = None

    # ----------------------------------------------------------------------
    # HTTP plumbing
    # ----------------------------------------------------------------------

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"X-API-Key": self.api_key} if self.api_key else {}
            self._client = httpx.AsyncClient(timeout=30.0, headers=headers)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = await self.client.request(method, url, **kwargs)
            if response.status_code == 429:
                raise ChainQueryError(f"toncenter rate limited: {url}")
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise ChainQueryError(f"toncenter request failed: {e}")
        except ValueError as e:
            raise ChainQueryError(f"toncenter returned invalid JSON: {e}")

    async def _v2(self, method: str, endpoint: str, **kwargs) -> Any:
        data = await self._request(method, f"{self.api_url}/{endpoint}", **kwargs)
        if not data.get("ok"):
            raise ChainQueryError(f"{endpoint} failed: {data.get('error')}")
        return data.get("result")

    async def _v3(self, endpoint: str, params: dict) -> Any:
        if not self.index_url:
            raise ChainQueryError("TON index URL is not configured")
        return await self._request("GET", f"{self.index_url}/{endpoint}", params=params)

    async def _run_get_method(self, address: str, method: str, stack: list) -> list:
        result = await self._v2(
            "POST",
            "runGetMethod",
            json={"address": address, "method": method, "stack": stack},
        )
        exit_code = result.get("exit_code", 0)
        if exit_code not in (0, 1):
            raise TransactionFailedError(f"{method} on {address} exited with {exit_code}")
        return result.get("stack", [])

    async def _masterchain_seqno(self) -> int:
        result = await self._v2("GET", "getMasterchainInfo")
        return int(result["last"]["seqno"])

    # ----------------------------------------------------------------------
    # Signing
    # ----------------------------------------------------------------------

    async def _setup_signer(self) -> None:
        try:
            if self.credentials.private_key:
                seed = bytes.fromhex(self.credentials.private_key.removeprefix("0x"))
            else:
                seed = derive_signing_key(self.credentials.mnemonic)
            self._signing_key = SigningKey(seed[:32])
        except Exception as e:
            raise CredentialError(f"Invalid TON signing material: {e}")

        pubkey = self._signing_key.verify_key.encode()
        _, self._address = wallet_address_from_pubkey(pubkey, testnet=self.testnet)

    def get_address(self) -> str:
        if self._address is None:
            raise CredentialError("TON resolver used before initialize()")
        return self._address

    async def _wallet_seqno(self) -> int:
        stack = await self._run_get_method(self.get_address(), "seqno", [])
        return _stack_int(stack[0]) if stack else 0

    async def _send(self, messages: list[dict]) -> str:
        """Sign and broadcast a wallet transfer; returns the message hash."""
        self._require_initialized()
        seqno = await self._wallet_seqno()
        body = build_wallet_transfer(seqno, messages, valid_until=int(time.time()) + 60)
        signature = self._signing_key.sign(hashlib.sha256(body).digest()).signature

        ext_msg = bytes([0x88])  # External message flag
        ext_msg += parse_address(self.get_address())
        ext_msg += signature + body

        await self._v2("POST", "sendBoc", json={"boc": base64.b64encode(ext_msg).decode()})
        # TON doesn't return tx hash directly, we compute it
        msg_hash = hashlib.sha256(ext_msg).hexdigest()
        logger.info(f"TON message sent (seqno {seqno}): {msg_hash}")
        return msg_hash

    async def _find_transaction(self, msg_hash: str) -> Optional[dict]:
        data = await self._v3("transactionsByMessage", {"msg_hash": msg_hash, "direction": "in"})
        transactions = data.get("transactions") or []
        return transactions[0] if transactions else None

    @staticmethod
    def _tx_succeeded(tx: dict) -> bool:
        description = tx.get("description") or {}
        if description.get("aborted"):
            return False
        compute = description.get("compute_ph") or {}
        return compute.get("success", True)

    async def _wait_for_inclusion(self, msg_hash: str) -> dict:
        waited = 0.0
        while waited < self.inclusion_timeout:
            tx = await self._find_transaction(msg_hash)
            if tx is not None:
                if not self._tx_succeeded(tx):
                    raise TransactionFailedError(f"TON transaction for {msg_hash} failed")
                return tx
            await self.clock.sleep(INCLUSION_POLL_INTERVAL)
            waited += INCLUSION_POLL_INTERVAL
        raise ChainQueryError(f"TON message {msg_hash} not included after {self.inclusion_timeout}s")

    # ----------------------------------------------------------------------
    # Balances
    # ----------------------------------------------------------------------

    async def _native_balance(self, address: str) -> int:
        return int(await self._v2("GET", "getAddressBalance", params={"address": address}))

    async def _jetton_balance(self, jetton_master: str, owner: str) -> int:
        data = await self._v3(
            "jetton/wallets",
            {"owner_address": owner, "jetton_address": jetton_master, "limit": 1},
        )
        wallets = data.get("jetton_wallets") or []
        return int(wallets[0]["balance"]) if wallets else 0

    async def _jetton_wallet(self, jetton_master: str, owner: str) -> str:
        data = await self._v3(
            "jetton/wallets",
            {"owner_address": owner, "jetton_address": jetton_master, "limit": 1},
        )
        wallets = data.get("jetton_wallets") or []
        if not wallets:
            raise TransactionFailedError(f"No {jetton_master} jetton wallet for {owner}")
        return wallets[0]["address"]

    async def get_balance(self) -> int:
        return await self._native_balance(self.get_address())

    async def get_token_balance(self, asset: str) -> int:
        if is_native_asset(asset):
            return await self.get_balance()
        return await self._jetton_balance(asset, self.get_address())

    async def get_contract_balance(self, address: str, asset: Optional[str] = None) -> int:
        if is_native_asset(asset):
            return await self._native_balance(address)
        return await self._jetton_balance(asset, address)

    # ----------------------------------------------------------------------
    # Escrows
    # ----------------------------------------------------------------------

    async def _escrow_address(self, salt: str) -> str:
        stack = await self._run_get_method(
            self.config.escrow_factory,
            "get_escrow_address_hash",
            [["num", salt]],
        )
        account_id = _stack_int(stack[0])
        return friendly_address(bytes([0]) + account_id.to_bytes(32, "big"), testnet=self.testnet)

    async def _is_deployed(self, address: str) -> bool:
        state = await self._v2("GET", "getAddressState", params={"address": address})
        return state == "active"

    async def _read_escrow(self, address: str) -> tuple[str, datetime, SideTimelocks]:
        stack = await self._run_get_method(address, "get_escrow_data", [])
        if len(stack) < 6:
            raise ChainQueryError(f"Unexpected escrow data from {address}")
        values = [_stack_int(entry) for entry in stack[:6]]
        locks = SideTimelocks(
            withdrawal=values[2],
            public_withdrawal=values[3],
            cancellation=values[4],
            public_cancellation=values[5] or None,
        )
        return (
            "0x" + values[0].to_bytes(32, "big").hex(),
            datetime.fromtimestamp(values[1], tz=timezone.utc),
            locks,
        )

    async def _chain_time(self) -> datetime:
        result = await self._v2("GET", "getMasterchainInfo")
        utime = result.get("last", {}).get("utime")
        if utime:
            return datetime.fromtimestamp(int(utime), tz=timezone.utc)
        return self.clock.now()

    async def find_escrow(self, salt: str) -> Optional[EscrowDeployment]:
        address = await self._escrow_address(salt)
        if not await self._is_deployed(address):
            return None
        hashlock, deployed_at, _ = await self._read_escrow(address)
        # The original message hash is not recoverable; use the account's first transaction.
        data = await self._v3("transactions", {"account": address, "limit": 1, "sort": "asc"})
        first = (data.get("transactions") or [{}])[0]
        return EscrowDeployment(
            address=address,
            tx_hash=first.get("hash", ""),
            block_number=int(first.get("mc_block_seqno") or 0),
            deployed_at=deployed_at,
            hashlock=hashlock,
            created=False,
        )

    async def get_escrow_state(self, address: str) -> EscrowState:
        if not await self._is_deployed(address):
            return EscrowState(status="missing")
        stack = await self._run_get_method(address, "get_escrow_state", [])
        if not stack:
            raise ChainQueryError(f"Unexpected escrow state from {address}")
        code = _stack_int(stack[0])
        status = ESCROW_STATES.get(code)
        if status is None:
            raise ChainQueryError(f"Unknown state {code} for escrow {address}")
        if status == "active":
            return EscrowState(status=status)

        # Settling is the last message the escrow accepted.
        data = await self._v3("transactions", {"account": address, "limit": 1, "sort": "desc"})
        last = (data.get("transactions") or [{}])[0]
        in_msg = last.get("in_msg") or {}
        return EscrowState(status=status, tx_hash=in_msg.get("hash"))

    async def deploy_escrow(self, params: EscrowParams) -> EscrowDeployment:
        self._require_initialized()
        if not self.config.escrow_factory:
            raise CredentialError("TON escrow factory address is not configured")

        existing = await self.find_escrow(params.salt)
        if existing is not None:
            logger.info(f"Escrow {existing.address} already deployed for order {params.order_id}")
            return existing

        address = await self._escrow_address(params.salt)
        query_id = int(params.salt[2:18], 16)
        body = encode_escrow_body(params, query_id)
        native = is_native_asset(params.asset)
        if native:
            msg = {
                "dest": self.config.escrow_factory,
                "amount": params.amount + params.safety_deposit + DEPLOY_GAS,
                "body": body,
            }
        else:
            # Jetton transfer to the factory with the create-escrow body as forward payload
            wallet = await self._jetton_wallet(params.asset, self.get_address())
            transfer = struct.pack(">IQ", 0x0F8A7EA5, query_id)
            transfer += params.amount.to_bytes(16, "big")
            transfer += parse_address(self.config.escrow_factory)
            transfer += struct.pack(">Q", params.safety_deposit + CALL_GAS)
            transfer += body
            msg = {
                "dest": wallet,
                "amount": params.safety_deposit + DEPLOY_GAS,
                "body": transfer,
            }

        msg_hash = await self._send([msg])
        tx = await self._wait_for_inclusion(msg_hash)
        hashlock, deployed_at, _ = await self._read_escrow(address)
        logger.info(f"Deployed {params.side.value} escrow {address} (msg {msg_hash})")
        return EscrowDeployment(
            address=address,
            tx_hash=msg_hash,
            block_number=int(tx.get("mc_block_seqno") or 0),
            deployed_at=deployed_at,
            hashlock=hashlock,
            created=True,
        )

    async def withdraw(self, escrow_address: str, secret: str, side: EscrowSide) -> str:
        self._require_initialized()
        hashlock, deployed_at, locks = await self._read_escrow(escrow_address)
        if hash_secret(secret) != hashlock:
            raise InvalidSecretError(f"Secret does not match hashlock of {escrow_address}")

        stage = evaluate_side_stage(deployed_at, locks, await self._chain_time())
        check_action(stage, EscrowAction.WITHDRAW)

        body = struct.pack(">IQ", OP_WITHDRAW, int(time.time())) + bytes.fromhex(secret[2:])
        msg_hash = await self._send([{"dest": escrow_address, "amount": CALL_GAS, "body": body}])
        await self._wait_for_inclusion(msg_hash)
        logger.info(f"Withdrew {EscrowSide(side).value} escrow {escrow_address}: {msg_hash}")
        return msg_hash

    async def cancel(self, escrow_address: str, side: EscrowSide) -> str:
        self._require_initialized()
        _, deployed_at, locks = await self._read_escrow(escrow_address)

        stage = evaluate_side_stage(deployed_at, locks, await self._chain_time())
        check_action(stage, EscrowAction.CANCEL)

        body = struct.pack(">IQ", OP_CANCEL, int(time.time()))
        msg_hash = await self._send([{"dest": escrow_address, "amount": CALL_GAS, "body": body}])
        await self._wait_for_inclusion(msg_hash)
        logger.info(f"Cancelled {EscrowSide(side).value} escrow {escrow_address}: {msg_hash}")
        return msg_hash

    async def get_transaction_status(self, tx_hash: str) -> TxStatus:
        tx, latest = await asyncio.gather(
            self._find_transaction(tx_hash),
            self._masterchain_seqno(),
        )
        if tx is None or tx.get("mc_block_seqno") is None:
            return TxStatus(found=False)
        seqno = int(tx["mc_block_seqno"])
        return TxStatus(
            found=True,
            success=self._tx_succeeded(tx),
            block_number=seqno,
            confirmations=max(latest - seqno + 1, 0),
        )
