"""
FlowB — USDC Payment Verification (Base)
© 2026 FlowB Project
Licensed under the Apache License, Version 2.0

Confirms that a transaction hash moved at least the claimed amount of USDC
to the FlowB custodial wallet:

1. eth_getTransactionReceipt
2. receipt.status must be 0x1
3. find a log from the USDC contract whose topics are
   [Transfer(address,address,uint256), from, to == our wallet (32-byte padded)]
4. decode log.data as uint256, divide by 10**6
5. amount must be >= claimed minimum

The on-chain amount is authoritative and may exceed the claim.

Outcomes:
- receipt not available yet / RPC timeout / connection error -> TRANSIENT
- failed receipt, no matching transfer, amount too low       -> INVALID
"""

import asyncio
import re
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import TransactionNotFound, Web3Exception

from logger import chain_logger, short
from trust_config import TrustConfig
from verification_types import VerificationResult

# keccak("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

ReceiptFetcher = Callable[[str], Awaitable[Optional[Dict[str, Any]]]]


def is_tx_hash(value: Any) -> bool:
    return isinstance(value, str) and bool(TX_HASH_RE.match(value))


def pad_address_topic(address: str) -> str:
    """0xAbC... -> 0x000...abc (32 bytes, lowercase)"""
    return "0x" + address[2:].lower().rjust(64, "0")


def _to_hex(value: Any) -> str:
    if value is None:
        return "0x"
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, int):
        return hex(value)
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def _status_ok(status: Any) -> bool:
    try:
        return (int(status, 16) if isinstance(status, str) else int(status)) == 1
    except (TypeError, ValueError):
        return False


def normalize_receipt(receipt: Dict[str, Any]) -> Dict[str, Any]:
    """
    Bring a web3 AttributeDict receipt (HexBytes, ints, checksum addresses)
    into JSON-RPC hex-string form
    """
    return {
        "status": "0x1" if _status_ok(receipt.get("status")) else "0x0",
        "blockNumber": receipt.get("blockNumber"),
        "logs": [
            {
                "address": str(log.get("address") or "").lower(),
                "topics": [_to_hex(t) for t in (log.get("topics") or [])],
                "data": _to_hex(log.get("data")),
            }
            for log in (receipt.get("logs") or [])
        ],
    }


def find_transfer_amount(
    receipt: Dict[str, Any],
    token_contract: str,
    recipient: str,
    decimals: int = 6,
) -> Optional[Decimal]:
    """Return the token amount sent to recipient in this receipt, or None"""
    contract = token_contract.lower()
    recipient_topic = pad_address_topic(recipient)

    for log in receipt.get("logs") or []:
        topics = [str(t).lower() for t in (log.get("topics") or [])]
        if str(log.get("address") or "").lower() != contract:
            continue
        if len(topics) < 3 or topics[0] != TRANSFER_TOPIC or topics[2] != recipient_topic:
            continue

        data = _to_hex(log.get("data"))
        raw = int(data, 16) if len(data) > 2 else 0
        return Decimal(raw) / (Decimal(10) ** decimals)

    return None


class PaymentVerifier:
    """Verify USDC transfers against the Base JSON-RPC endpoint"""

    def __init__(self, config: TrustConfig, fetch_receipt: Optional[ReceiptFetcher] = None):
        self.config = config
        self.timeout = config.rpc_timeout_seconds
        self._fetch_receipt = fetch_receipt or self._web3_receipt
        self._w3 = None

    def _web3(self) -> AsyncWeb3:
        if self._w3 is None:
            self._w3 = AsyncWeb3(AsyncHTTPProvider(
                self.config.base_rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=self.timeout)},
            ))
            chain_logger.info(f"🌐 Base RPC: {self.config.base_rpc_url}")
        return self._w3

    async def _web3_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        try:
            receipt = await self._web3().eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        return normalize_receipt(dict(receipt))

    async def verify_transfer(
        self,
        tx_hash: str,
        expected_recipient: str,
        min_amount: Decimal,
    ) -> VerificationResult:
        """
        Returns VERIFIED with data["amount"] (Decimal, on-chain) on success
        """
        if not is_tx_hash(tx_hash):
            return VerificationResult.malformed("bad_tx_hash")
        if not isinstance(expected_recipient, str) or not ADDRESS_RE.match(expected_recipient):
            return VerificationResult.malformed("bad_recipient")

        try:
            receipt = await asyncio.wait_for(self._fetch_receipt(tx_hash), timeout=self.timeout)
        except asyncio.TimeoutError:
            chain_logger.warning(f"⏳ RPC timeout for {short(tx_hash)}")
            return VerificationResult.transient("rpc_timeout")
        except (aiohttp.ClientError, Web3Exception, OSError) as e:
            chain_logger.error(f"❌ RPC error for {short(tx_hash)}: {e}")
            return VerificationResult.transient("rpc_unreachable")

        if receipt is None:
            chain_logger.info(f"⏳ No receipt yet for {short(tx_hash)}")
            return VerificationResult.transient("not_confirmed")

        if not _status_ok(receipt.get("status")):
            chain_logger.warning(f"❌ Transaction failed on-chain: {short(tx_hash)}")
            return VerificationResult.invalid("tx_failed")

        amount = find_transfer_amount(
            receipt,
            self.config.usdc_contract,
            expected_recipient,
            self.config.usdc_decimals,
        )
        if amount is None:
            chain_logger.warning(f"❌ No USDC transfer to FlowB wallet in {short(tx_hash)}")
            return VerificationResult.invalid("no_transfer")

        minimum = Decimal(str(min_amount))
        if amount < minimum:
            chain_logger.warning(f"❌ {short(tx_hash)}: {amount} USDC below minimum {minimum}")
            return VerificationResult.invalid("below_minimum", amount=amount)

        chain_logger.info(f"✅ USDC transfer verified: {short(tx_hash)} → {amount} USDC")
        return VerificationResult.verified(amount=amount, tx_hash=tx_hash)
