"""EVM chain resolver.

Talks JSON-RPC over httpx and signs locally with eth_account. Escrows are
created through an escrow factory at a salt-derived address:

    factory.createEscrow(bytes32 salt, bytes32 hashlock, address depositor,
                         address recipient, address token, uint256 amount,
                         uint256 safetyDeposit, uint32[4] timelocks) payable
    factory.addressOfEscrow(bytes32 salt) -> address
    event EscrowCreated(address indexed escrow, bytes32 indexed salt)

    escrow.hashlock() -> bytes32
    escrow.deployedAt() -> uint256
    escrow.timelocks() -> uint32[4]
    escrow.state() -> uint8 (0 active, 1 withdrawn, 2 cancelled)
    escrow.withdraw(bytes32 secret)
    escrow.cancel()
    event Withdrawn(bytes32 secret)
    event Cancelled()

Timelocks are (withdrawal, publicWithdrawal, cancellation,
publicCancellation) offsets; a zero public cancellation means none (dst).
The factory pulls ERC-20 amounts from the depositor with transferFrom and
takes the safety deposit (and native amounts) as msg.value.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from eth_abi import decode, encode
from eth_account import Account
from eth_utils import keccak, to_hex
from web3 import Web3

from swapresolver.chains import ChainConfig
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

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
NATIVE_TOKEN = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"

# EVM derivation path (coin type 60), same for every EVM chain
EVM_DERIVATION_PATH = "44'/60'/0'/0/0"

ESCROW_CREATED_TOPIC = to_hex(keccak(text="EscrowCreated(address,bytes32)"))
WITHDRAWN_TOPIC = to_hex(keccak(text="Withdrawn(bytes32)"))
CANCELLED_TOPIC = to_hex(keccak(text="Cancelled()"))

ESCROW_STATES = {0: "active", 1: "withdrawn", 2: "cancelled"}

RECEIPT_POLL_INTERVAL = 2.0


def is_native_asset(asset: Optional[str]) -> bool:
    return asset is None or asset.lower() in ("native", ZERO_ADDRESS, NATIVE_TOKEN.lower())


def encode_call(signature: str, types: list[str], args: list[Any]) -> str:
    """ABI-encode a contract call as 0x-prefixed calldata."""
    selector = keccak(text=signature)[:4]
    return to_hex(selector + encode(types, args))


def derive_private_key(mnemonic: str) -> bytes:
    """Derive the EVM private key from a BIP-39 mnemonic."""
    from bip_utils import Bip32Secp256k1, Bip39SeedGenerator

    seed = Bip39SeedGenerator(mnemonic).Generate()
    account_ctx = Bip32Secp256k1.FromSeed(seed).DerivePath(EVM_DERIVATION_PATH)
    return account_ctx.PrivateKey().Raw().ToBytes()


class EVMResolver(ChainResolver):
    """Resolver for EVM chains."""

    def __init__(
        self,
        config: ChainConfig,
        credentials: ResolverCredentials,
        gas_limit: int = 500_000,
        clock: Optional[Clock] = None,
        receipt_timeout: float = 180.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(config, credentials)
        self.gas_limit = gas_limit
        self.clock = clock or Clock()
        self.receipt_timeout = receipt_timeout
        self._client = client
        self._account = None
        self._rpc_id = 0

    # ----------------------------------------------------------------------
    # JSON-RPC plumbing
    # ----------------------------------------------------------------------

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _rpc(self, method: str, params: list) -> Any:
        self._rpc_id += 1
        try:
            response = await self.client.post(
                self.config.rpc_url,
                json={"jsonrpc": "2.0", "method": method, "params": params, "id": self._rpc_id},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise ChainQueryError(f"{method} failed: {e}")
        except ValueError as e:
            raise ChainQueryError(f"{method} returned invalid JSON: {e}")

        if "error" in data:
            error = data["error"] or {}
            message = error.get("message", str(error))
            if "revert" in message.lower():
                raise TransactionFailedError(f"{method} reverted: {message}")
            raise ChainQueryError(f"{method} error: {message}")
        return data.get("result")

    async def _call(self, to: str, data: str) -> bytes:
        result = await self._rpc("eth_call", [{"to": to, "data": data}, "latest"])
        if not result or result == "0x":
            raise TransactionFailedError(f"eth_call to {to} returned no data")
        return bytes.fromhex(result[2:])

    async def _latest_block(self) -> dict:
        block = await self._rpc("eth_getBlockByNumber", ["latest", False])
        if not block:
            raise ChainQueryError("Latest block unavailable")
        return block

    async def _chain_time(self) -> datetime:
        block = await self._latest_block()
        return datetime.fromtimestamp(int(block["timestamp"], 16), tz=timezone.utc)

    # ----------------------------------------------------------------------
    # Signing
    # ----------------------------------------------------------------------

    async def _setup_signer(self) -> None:
        try:
            if self.credentials.private_key:
                self._account = Account.from_key(self.credentials.private_key)
            else:
                self._account = Account.from_key(derive_private_key(self.credentials.mnemonic))
        except Exception as e:
            raise CredentialError(f"Invalid EVM signing material: {e}")

    def get_address(self) -> str:
        if self._account is None:
            raise CredentialError("EVM resolver used before initialize()")
        return self._account.address

    async def _send_transaction(self, to: str, data: str, value: int = 0) -> str:
        """Sign, broadcast and wait for a successful receipt."""
        self._require_initialized()
        nonce = int(await self._rpc("eth_getTransactionCount", [self.get_address(), "pending"]), 16)
        gas_price = int(await self._rpc("eth_gasPrice", []), 16)

        tx = {
            "nonce": nonce,
            "gasPrice": gas_price,
            "gas": self.gas_limit,
            "to": Web3.to_checksum_address(to),
            "value": value,
            "data": data,
            "chainId": self.config.chain_id,
        }
        signed = self._account.sign_transaction(tx)
        tx_hash = await self._rpc("eth_sendRawTransaction", [to_hex(signed.raw_transaction)])
        logger.info(f"EVM tx broadcast: {tx_hash}")

        receipt = await self._wait_for_receipt(tx_hash)
        if int(receipt.get("status", "0x0"), 16) != 1:
            raise TransactionFailedError(f"Transaction {tx_hash} reverted")
        return tx_hash

    async def _wait_for_receipt(self, tx_hash: str) -> dict:
        waited = 0.0
        while waited < self.receipt_timeout:
            receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
            if receipt is not None:
                return receipt
            await self.clock.sleep(RECEIPT_POLL_INTERVAL)
            waited += RECEIPT_POLL_INTERVAL
        raise ChainQueryError(f"No receipt for {tx_hash} after {self.receipt_timeout}s")

    # ----------------------------------------------------------------------
    # Balances
    # ----------------------------------------------------------------------

    async def get_balance(self) -> int:
        result = await self._rpc("eth_getBalance", [self.get_address(), "latest"])
        return int(result, 16)

    async def _erc20_balance(self, token: str, owner: str) -> int:
        data = encode_call("balanceOf(address)", ["address"], [Web3.to_checksum_address(owner)])
        raw = await self._call(Web3.to_checksum_address(token), data)
        return decode(["uint256"], raw)[0]

    async def get_token_balance(self, asset: str) -> int:
        if is_native_asset(asset):
            return await self.get_balance()
        return await self._erc20_balance(asset, self.get_address())

    async def get_contract_balance(self, address: str, asset: Optional[str] = None) -> int:
        if is_native_asset(asset):
            result = await self._rpc("eth_getBalance", [Web3.to_checksum_address(address), "latest"])
            return int(result, 16)
        return await self._erc20_balance(asset, address)

    async def _ensure_allowance(self, token: str, amount: int) -> None:
        """Approve the factory to pull ``amount`` of the resolver's token."""
        owner = self.get_address()
        spender = Web3.to_checksum_address(self.config.escrow_factory)
        data = encode_call(
            "allowance(address,address)", ["address", "address"], [owner, spender]
        )
        allowance = decode(["uint256"], await self._call(Web3.to_checksum_address(token), data))[0]
        if allowance >= amount:
            logger.info(f"Token already approved: allowance={allowance}")
            return

        logger.info(f"Approving token: {token} for {spender}")
        approve = encode_call("approve(address,uint256)", ["address", "uint256"], [spender, 2**256 - 1])
        await self._send_transaction(token, approve)

    # ----------------------------------------------------------------------
    # Escrows
    # ----------------------------------------------------------------------

    async def _escrow_address(self, salt: str) -> str:
        data = encode_call("addressOfEscrow(bytes32)", ["bytes32"], [bytes.fromhex(salt[2:])])
        raw = await self._call(self.config.escrow_factory, data)
        return Web3.to_checksum_address(decode(["address"], raw)[0])

    async def _is_deployed(self, address: str) -> bool:
        code = await self._rpc("eth_getCode", [address, "latest"])
        return bool(code) and code != "0x"

    async def _read_escrow(self, address: str) -> tuple[str, datetime, SideTimelocks]:
        hashlock = decode(["bytes32"], await self._call(address, encode_call("hashlock()", [], [])))[0]
        deployed = decode(["uint256"], await self._call(address, encode_call("deployedAt()", [], [])))[0]
        offsets = decode(["uint32[4]"], await self._call(address, encode_call("timelocks()", [], [])))[0]
        locks = SideTimelocks(
            withdrawal=offsets[0],
            public_withdrawal=offsets[1],
            cancellation=offsets[2],
            public_cancellation=offsets[3] or None,
        )
        return (
            "0x" + hashlock.hex(),
            datetime.fromtimestamp(deployed, tz=timezone.utc),
            locks,
        )

    async def _find_creation(self, address: str, salt: str) -> tuple[str, int]:
        logs = await self._rpc(
            "eth_getLogs",
            [{
                "address": self.config.escrow_factory,
                "fromBlock": "earliest",
                "toBlock": "latest",
                "topics": [
                    ESCROW_CREATED_TOPIC,
                    "0x" + address[2:].lower().rjust(64, "0"),
                    salt,
                ],
            }],
        )
        if not logs:
            raise ChainQueryError(f"Creation event for escrow {address} not found")
        return logs[0]["transactionHash"], int(logs[0]["blockNumber"], 16)

    async def find_escrow(self, salt: str) -> Optional[EscrowDeployment]:
        address = await self._escrow_address(salt)
        if not await self._is_deployed(address):
            return None
        tx_hash, block_number = await self._find_creation(address, salt)
        hashlock, deployed_at, _ = await self._read_escrow(address)
        return EscrowDeployment(
            address=address,
            tx_hash=tx_hash,
            block_number=block_number,
            deployed_at=deployed_at,
            hashlock=hashlock,
            created=False,
        )

    async def get_escrow_state(self, address: str) -> EscrowState:
        address = Web3.to_checksum_address(address)
        if not await self._is_deployed(address):
            return EscrowState(status="missing")
        raw = await self._call(address, encode_call("state()", [], []))
        code = decode(["uint8"], raw)[0]
        status = ESCROW_STATES.get(code)
        if status is None:
            raise ChainQueryError(f"Unknown state {code} for escrow {address}")
        if status == "active":
            return EscrowState(status=status)

        topic = WITHDRAWN_TOPIC if status == "withdrawn" else CANCELLED_TOPIC
        logs = await self._rpc(
            "eth_getLogs",
            [{"address": address, "fromBlock": "earliest", "toBlock": "latest", "topics": [topic]}],
        )
        return EscrowState(
            status=status,
            tx_hash=logs[-1]["transactionHash"] if logs else None,
        )

    async def deploy_escrow(self, params: EscrowParams) -> EscrowDeployment:
        self._require_initialized()
        if not self.config.escrow_factory:
            raise CredentialError("EVM escrow factory address is not configured")

        address = await self._escrow_address(params.salt)
        created = False
        if await self._is_deployed(address):
            logger.info(f"Escrow {address} already deployed for order {params.order_id}")
            tx_hash, block_number = await self._find_creation(address, params.salt)
        else:
            locks = params.time_locks.for_side(params.side)
            native = is_native_asset(params.asset)
            token = ZERO_ADDRESS if native else Web3.to_checksum_address(params.asset)
            if not native and params.depositor.lower() == self.get_address().lower():
                await self._ensure_allowance(token, params.amount)

            data = encode_call(
                "createEscrow(bytes32,bytes32,address,address,address,uint256,uint256,uint32[4])",
                ["bytes32", "bytes32", "address", "address", "address", "uint256", "uint256", "uint32[4]"],
                [
                    bytes.fromhex(params.salt[2:]),
                    bytes.fromhex(params.secret_hash[2:]),
                    Web3.to_checksum_address(params.depositor),
                    Web3.to_checksum_address(params.recipient),
                    token,
                    params.amount,
                    params.safety_deposit,
                    [
                        locks.withdrawal,
                        locks.public_withdrawal,
                        locks.cancellation,
                        locks.public_cancellation or 0,
                    ],
                ],
            )
            value = params.safety_deposit + (params.amount if native else 0)
            tx_hash = await self._send_transaction(self.config.escrow_factory, data, value=value)
            receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
            block_number = int(receipt["blockNumber"], 16)
            created = True
            logger.info(f"Deployed {params.side.value} escrow {address} in tx {tx_hash}")

        hashlock, deployed_at, _ = await self._read_escrow(address)
        return EscrowDeployment(
            address=address,
            tx_hash=tx_hash,
            block_number=block_number,
            deployed_at=deployed_at,
            hashlock=hashlock,
            created=created,
        )

    async def withdraw(self, escrow_address: str, secret: str, side: EscrowSide) -> str:
        self._require_initialized()
        address = Web3.to_checksum_address(escrow_address)
        hashlock, deployed_at, locks = await self._read_escrow(address)
        if hash_secret(secret) != hashlock.lower():
            raise InvalidSecretError(f"Secret does not match hashlock of {address}")

        stage = evaluate_side_stage(deployed_at, locks, await self._chain_time())
        check_action(stage, EscrowAction.WITHDRAW)

        data = encode_call("withdraw(bytes32)", ["bytes32"], [bytes.fromhex(secret[2:])])
        tx_hash = await self._send_transaction(address, data)
        logger.info(f"Withdrew {EscrowSide(side).value} escrow {address}: {tx_hash}")
        return tx_hash

    async def cancel(self, escrow_address: str, side: EscrowSide) -> str:
        self._require_initialized()
        address = Web3.to_checksum_address(escrow_address)
        _, deployed_at, locks = await self._read_escrow(address)

        stage = evaluate_side_stage(deployed_at, locks, await self._chain_time())
        check_action(stage, EscrowAction.CANCEL)

        tx_hash = await self._send_transaction(address, encode_call("cancel()", [], []))
        logger.info(f"Cancelled {EscrowSide(side).value} escrow {address}: {tx_hash}")
        return tx_hash

    async def get_transaction_status(self, tx_hash: str) -> TxStatus:
        receipt, latest = await asyncio.gather(
            self._rpc("eth_getTransactionReceipt", [tx_hash]),
            self._rpc("eth_blockNumber", []),
        )
        if receipt is None or receipt.get("blockNumber") is None:
            return TxStatus(found=False)
        block_number = int(receipt["blockNumber"], 16)
        return TxStatus(
            found=True,
            success=int(receipt.get("status", "0x0"), 16) == 1,
            block_number=block_number,
            confirmations=max(int(latest, 16) - block_number + 1, 0),
        )
