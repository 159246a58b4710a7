"""
Chain Executor - Vault Contract Ledger Layer

Bridges engine decisions (Python) and the custodial vault contract.
Every disbursement the engines decide on is signed and submitted here.

Design:
- Sync Web3 calls wrapped in asyncio.run_in_executor() (web3.py async is fragile)
- Embedded minimal ABI: only the vault functions we call
- Gas estimation + 20% buffer, nonce from chain
- Non-raising: transfer failure → ChainTxResult(success=False), the caller decides
- Receipt timeout → ambiguous=True (the tx may still land; re-check history by ref)
- Custodial: one key per custodied account, transfers are signed as the source account

Designed for: custodial vault disbursement service
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Protocol

from web3 import Web3

from .errors import ApprovalDeclined, LedgerFailure

logger = logging.getLogger("chainvault.chain")


# ============================================================
# MINIMAL ABI - only functions we call at runtime
# ============================================================

VAULT_ABI = [
    # deposit(bytes32 ref) payable
    {
        "inputs": [{"name": "ref", "type": "bytes32"}],
        "name": "deposit",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function",
    },
    # withdraw(uint256 amount, address to, bytes32 ref)
    {
        "inputs": [
            {"name": "amount", "type": "uint256"},
            {"name": "to", "type": "address"},
            {"name": "ref", "type": "bytes32"},
        ],
        "name": "withdraw",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    # pay(address to, uint256 amount, bytes32 ref): vault-to-wallet disbursement
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "ref", "type": "bytes32"},
        ],
        "name": "pay",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    # balanceOf(address user) → uint256
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    # recentHistory(address user) → ring buffer of records
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "recentHistory",
        "outputs": [
            {
                "name": "out",
                "type": "tuple[]",
                "components": [
                    {"name": "timestamp", "type": "uint64"},
                    {"name": "from", "type": "address"},
                    {"name": "to", "type": "address"},
                    {"name": "action", "type": "uint8"},
                    {"name": "amount", "type": "uint256"},
                    {"name": "balanceAfter", "type": "uint256"},
                    {"name": "ref", "type": "bytes32"},
                ],
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


# ============================================================
# RESULT TYPES
# ============================================================

class HistoryAction(Enum):
    """Mirrors the contract's Action enum (uint8)."""
    DEPOSIT = 0
    WITHDRAW = 1
    PAY = 2


@dataclass
class ChainTxResult:
    """Result of a ledger transaction attempt."""
    success: bool
    tx_hash: str = ""
    ref: str = ""
    error: str = ""
    ambiguous: bool = False      # sent but receipt not confirmed in time
    gas_used: int = 0


@dataclass(frozen=True)
class HistoryEntry:
    timestamp: datetime
    sender: str
    recipient: str
    action: HistoryAction
    amount: Decimal
    balance_after: Decimal
    ref: str

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "from": self.sender,
            "to": self.recipient,
            "action": self.action.name.lower(),
            "amount": str(self.amount),
            "balance_after": str(self.balance_after),
            "ref": self.ref,
        }


# ============================================================
# PROTOCOLS - what the engines depend on
# ============================================================

class Ledger(Protocol):
    async def balance(self, account: str) -> Decimal: ...

    async def transfer(self, source: str, to: str, amount: Decimal, ref: str) -> ChainTxResult: ...

    async def deposit(self, account: str, amount: Decimal, ref: str) -> ChainTxResult: ...

    async def withdraw(self, account: str, amount: Decimal, to: str, ref: str) -> ChainTxResult: ...

    async def recent_history(self, account: str) -> list[HistoryEntry]: ...

    async def find_by_ref(self, account: str, ref: str) -> Optional[HistoryEntry]: ...


class Signer(Protocol):
    async def sign(self, account: str, message: str) -> str:
        """Return a signature, or raise ApprovalDeclined."""
        ...


# ============================================================
# HELPERS
# ============================================================

def make_ref(*parts) -> str:
    """Deterministic bytes32 correlation id. Same parts → same ref, so retries reuse it."""
    return Web3.to_hex(Web3.keccak(text=":".join(str(p) for p in parts)))


def normalize_ref(ref: str) -> str:
    ref = ref.lower()
    return ref if ref.startswith("0x") else "0x" + ref


def is_address(value: str) -> bool:
    return isinstance(value, str) and Web3.is_address(value)


def to_wei(amount: Decimal) -> int:
    return int(Web3.to_wei(Decimal(amount), "ether"))


def from_wei(amount_wei: int) -> Decimal:
    return Decimal(Web3.from_wei(amount_wei, "ether"))


def verify_signature(message: str, signature: str) -> Optional[str]:
    """
    Recover the signer address from an EIP-191 personal_sign signature.

    Returns the checksummed address of the signer, or None if invalid.
    """
    try:
        from eth_account.messages import encode_defunct
        from eth_account import Account

        msg = encode_defunct(text=message)
        return Account.recover_message(msg, signature=signature)
    except Exception as e:
        logger.warning(f"Signature verification failed: {e}")
        return None


class PresignedSigner:
    """
    Signer for the HTTP flow: the owner signed in their own wallet and sent the
    signature along. Declines when nothing was supplied, or when `verify` is
    set and the signature does not recover to the account for this message.
    """

    def __init__(self, signature: Optional[str], verify: bool = True):
        self._signature = signature
        self._verify = verify

    async def sign(self, account: str, message: str) -> str:
        if not self._signature:
            raise ApprovalDeclined(f"No approval signature supplied by {account}")
        if self._verify:
            recovered = verify_signature(message, self._signature)
            if recovered is None or recovered.lower() != account.lower():
                raise ApprovalDeclined(f"Approval signature was not made by {account}")
        return self._signature


# ============================================================
# CHAIN EXECUTOR
# ============================================================

class ChainExecutor:
    """
    Ledger + Signer backed by the vault contract.

    Usage:
        executor = ChainExecutor()
        if executor.initialize(rpc_url, vault_address, custodian_keys):
            balance = await executor.balance(account)
            result = await executor.transfer(account, recipient, Decimal("0.5"), ref)
    """

    def __init__(self, receipt_timeout: int = 120):
        self._initialized: bool = False
        self._w3 = None
        self._vault = None
        self._vault_address: str = ""
        self._chain_id_int: int = 0
        self._keys: dict[str, str] = {}      # lowercase address → private key
        self._receipt_timeout = receipt_timeout

        self._last_error: str = ""
        self._tx_count: int = 0

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self, rpc_url: str, vault_address: str, custodian_keys: tuple[str, ...] | list[str]) -> bool:
        """
        Connect to the RPC and bind the vault contract.

        Args:
            rpc_url: JSON-RPC endpoint
            vault_address: deployed vault contract
            custodian_keys: private keys of the custodied accounts
        """
        from eth_account import Account

        if not vault_address:
            logger.warning("No VAULT_ADDRESS: chain executor disabled")
            return False

        for key in custodian_keys:
            try:
                account = Account.from_key(key)
                self._keys[account.address.lower()] = key
            except Exception as e:
                logger.error(f"Invalid custodian key skipped: {e}")

        if not self._keys:
            logger.warning("No CUSTODIAN_KEYS: transfers will be rejected (read-only ledger)")

        try:
            w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
            if not w3.is_connected():
                logger.warning(f"Cannot connect to RPC ({rpc_url}): chain executor disabled")
                return False
            self._w3 = w3
            self._vault_address = Web3.to_checksum_address(vault_address)
            self._vault = w3.eth.contract(address=self._vault_address, abi=VAULT_ABI)
            self._chain_id_int = w3.eth.chain_id
        except Exception as e:
            logger.warning(f"Failed to initialize chain executor: {e}")
            return False

        self._initialized = True
        logger.info(
            f"Chain executor connected: chain_id={self._chain_id_int} | "
            f"vault={self._vault_address[:10]}... | custodied={len(self._keys)}"
        )
        return True

    # ============================================================
    # READS
    # ============================================================

    async def _call(self, fn):
        self._require_initialized()
        try:
            return await asyncio.get_running_loop().run_in_executor(None, fn.call)
        except Exception as e:
            self._last_error = f"{type(e).__name__}: {e}"
            raise LedgerFailure(f"ledger read failed: {self._last_error}") from e

    async def balance(self, account: str) -> Decimal:
        raw = await self._call(self._vault.functions.balanceOf(Web3.to_checksum_address(account)))
        return from_wei(raw)

    async def recent_history(self, account: str) -> list[HistoryEntry]:
        rows = await self._call(self._vault.functions.recentHistory(Web3.to_checksum_address(account)))
        entries = []
        for ts, sender, recipient, action, amount, balance_after, ref in rows:
            if ts == 0:
                continue  # unused ring-buffer slot
            entries.append(HistoryEntry(
                timestamp=datetime.fromtimestamp(ts, tz=timezone.utc),
                sender=sender,
                recipient=recipient,
                action=HistoryAction(action),
                amount=from_wei(amount),
                balance_after=from_wei(balance_after),
                ref=normalize_ref(Web3.to_hex(ref)),
            ))
        return entries

    async def find_by_ref(self, account: str, ref: str) -> Optional[HistoryEntry]:
        wanted = normalize_ref(ref)
        for entry in await self.recent_history(account):
            if entry.ref == wanted:
                return entry
        return None

    # ============================================================
    # WRITES
    # ============================================================

    async def transfer(self, source: str, to: str, amount: Decimal, ref: str) -> ChainTxResult:
        if not self._initialized:
            return ChainTxResult(success=False, ref=ref, error="chain executor not initialized")
        amount_wei = to_wei(amount)
        if amount_wei <= 0:
            return ChainTxResult(success=False, ref=ref, error="amount too small")
        tx_fn = self._vault.functions.pay(Web3.to_checksum_address(to), amount_wei, Web3.to_bytes(hexstr=ref))
        return await self._send_tx(source, tx_fn, ref)

    async def withdraw(self, account: str, amount: Decimal, to: str, ref: str) -> ChainTxResult:
        if not self._initialized:
            return ChainTxResult(success=False, ref=ref, error="chain executor not initialized")
        amount_wei = to_wei(amount)
        if amount_wei <= 0:
            return ChainTxResult(success=False, ref=ref, error="amount too small")
        tx_fn = self._vault.functions.withdraw(amount_wei, Web3.to_checksum_address(to), Web3.to_bytes(hexstr=ref))
        return await self._send_tx(account, tx_fn, ref)

    async def deposit(self, account: str, amount: Decimal, ref: str) -> ChainTxResult:
        if not self._initialized:
            return ChainTxResult(success=False, ref=ref, error="chain executor not initialized")
        amount_wei = to_wei(amount)
        if amount_wei <= 0:
            return ChainTxResult(success=False, ref=ref, error="amount too small")
        tx_fn = self._vault.functions.deposit(Web3.to_bytes(hexstr=ref))
        return await self._send_tx(account, tx_fn, ref, value=amount_wei)

    async def _send_tx(self, source: str, tx_fn, ref: str, value: int = 0) -> ChainTxResult:
        """
        Build, sign, and send a transaction as `source`. Handles gas estimation + nonce.

        Returns:
            ChainTxResult with tx_hash on success, error on failure
        """
        from web3.exceptions import TimeExhausted

        key = self._keys.get(source.lower())
        if not key:
            return ChainTxResult(success=False, ref=ref, error=f"account {source[:10]}... is not custodied")

        w3 = self._w3
        sender = Web3.to_checksum_address(source)
        sent_hash: list[str] = []

        def _execute():
            nonce = w3.eth.get_transaction_count(sender)
            tx = tx_fn.build_transaction({
                "from": sender,
                "nonce": nonce,
                "value": value,
                "gasPrice": w3.eth.gas_price,
                "chainId": self._chain_id_int,
            })

            # Gas estimation + 20% buffer
            try:
                tx["gas"] = int(w3.eth.estimate_gas(tx) * 1.2)
            except Exception as gas_err:
                logger.warning(f"Gas estimation failed, using default 200k: {gas_err}")
                tx["gas"] = 200_000

            signed = w3.eth.account.sign_transaction(tx, key)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            sent_hash.append(tx_hash.hex())

            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)
            return receipt, tx_hash.hex()

        try:
            receipt, tx_hash_hex = await asyncio.get_running_loop().run_in_executor(None, _execute)
        except TimeExhausted as e:
            error = f"receipt timeout: {e}"
            logger.warning(f"TX AMBIGUOUS ref={ref[:12]}...: {error}")
            self._last_error = error
            return ChainTxResult(
                success=False, ref=ref, error=error, ambiguous=True,
                tx_hash=sent_hash[0] if sent_hash else "",
            )
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(f"TX ERROR ref={ref[:12]}...: {error}")
            self._last_error = error
            # Broadcast but not confirmed → unknown outcome
            return ChainTxResult(
                success=False, ref=ref, error=error, ambiguous=bool(sent_hash),
                tx_hash=sent_hash[0] if sent_hash else "",
            )

        if receipt["status"] == 1:
            self._tx_count += 1
            gas_used = receipt.get("gasUsed", 0)
            logger.info(f"TX SUCCESS: {tx_hash_hex[:16]}... | ref={ref[:12]}... | gas={gas_used}")
            return ChainTxResult(success=True, tx_hash=tx_hash_hex, ref=ref, gas_used=gas_used)

        error = f"TX reverted: {tx_hash_hex}"
        logger.warning(f"TX FAILED: {error}")
        self._last_error = error
        return ChainTxResult(success=False, tx_hash=tx_hash_hex, ref=ref, error=error)

    # ============================================================
    # SIGNING
    # ============================================================

    async def sign(self, account: str, message: str) -> str:
        """EIP-191 personal_sign as a custodied account."""
        from eth_account import Account
        from eth_account.messages import encode_defunct

        key = self._keys.get(account.lower())
        if not key:
            raise ApprovalDeclined(f"account {account[:10]}... cannot sign (not custodied)")
        signed = Account.sign_message(encode_defunct(text=message), private_key=key)
        return "0x" + signed.signature.hex().removeprefix("0x")

    # ============================================================
    # STATUS
    # ============================================================

    def _require_initialized(self):
        if not self._initialized:
            raise LedgerFailure("chain executor not initialized")

    def get_status(self) -> dict:
        """Status for dashboard / debugging."""
        return {
            "initialized": self._initialized,
            "vault_address": self._vault_address,
            "chain_id": self._chain_id_int,
            "custodied_accounts": len(self._keys),
            "tx_count": self._tx_count,
            "last_error": self._last_error,
        }
