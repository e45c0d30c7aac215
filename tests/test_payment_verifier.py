"""USDC-on-Base transfer verification against faked receipts"""

import asyncio
from decimal import Decimal

import aiohttp
import pytest
from web3.exceptions import Web3RPCError

from conftest import SENDER, SPONSOR_WALLET
from payment_verifier import (
    TRANSFER_TOPIC,
    PaymentVerifier,
    find_transfer_amount,
    normalize_receipt,
    pad_address_topic,
)
from trust_config import BASE_USDC_CONTRACT, TrustConfig
from verification_types import Outcome

TX_HASH = "0x" + "ab" * 32
OTHER_WALLET = "0x3333333333333333333333333333333333333333"


def transfer_log(amount_usdc, to=SPONSOR_WALLET, contract=BASE_USDC_CONTRACT, topic=TRANSFER_TOPIC):
    units = int(Decimal(amount_usdc) * 10 ** 6)
    return {
        "address": contract,
        "topics": [topic, pad_address_topic(SENDER), pad_address_topic(to)],
        "data": "0x" + format(units, "064x"),
    }


def receipt(*logs, status="0x1"):
    return {"status": status, "blockNumber": "0x10", "logs": list(logs)}


def verify(fetched, min_amount="5.00", **config_overrides):
    async def fetch(tx_hash):
        if isinstance(fetched, Exception):
            raise fetched
        return fetched

    verifier = PaymentVerifier(TrustConfig(**config_overrides), fetch_receipt=fetch)
    return asyncio.run(verifier.verify_transfer(TX_HASH, SPONSOR_WALLET, Decimal(min_amount)))


class TestVerifyTransfer:

    def test_on_chain_amount_below_claim_rejected(self):
        result = verify(receipt(transfer_log("3.00")), min_amount="5.00")

        assert result.outcome is Outcome.INVALID
        assert result.reason == "below_minimum"
        assert result.data["amount"] == Decimal("3")

    def test_on_chain_amount_above_claim_is_authoritative(self):
        result = verify(receipt(transfer_log("10.00")), min_amount="5.00")

        assert result.ok
        assert result.data["amount"] == Decimal("10")
        assert result.data["tx_hash"] == TX_HASH

    def test_exact_amount_accepted(self):
        assert verify(receipt(transfer_log("5.00")), min_amount="5.00").ok

    def test_transfer_found_among_other_logs(self):
        noise = {"address": "0x4200000000000000000000000000000000000006", "topics": [TRANSFER_TOPIC], "data": "0x"}
        result = verify(receipt(noise, transfer_log("1.50", to=OTHER_WALLET), transfer_log("7.25")), min_amount="5.00")
        assert result.data["amount"] == Decimal("7.25")

    def test_failed_transaction_rejected(self):
        result = verify(receipt(transfer_log("10.00"), status="0x0"))
        assert result.outcome is Outcome.INVALID
        assert result.reason == "tx_failed"

    @pytest.mark.parametrize("log", [
        transfer_log("10.00", to=OTHER_WALLET),
        transfer_log("10.00", contract="0x4200000000000000000000000000000000000006"),
        transfer_log("10.00", topic="0x8c5be1e5ebec7d5bd14f71427d1e84f3dd0314c0f7b2291e5b200ac8c7c3b925"),
    ])
    def test_no_matching_transfer_rejected(self, log):
        assert verify(receipt(log)).reason == "no_transfer"

    def test_receipt_not_available_is_transient(self):
        result = verify(None)
        assert result.outcome is Outcome.TRANSIENT
        assert result.reason == "not_confirmed"

    def test_connection_error_is_transient(self):
        result = verify(aiohttp.ClientConnectionError("refused"))
        assert result.outcome is Outcome.TRANSIENT
        assert result.reason == "rpc_unreachable"

    def test_rpc_error_response_is_transient(self):
        result = verify(Web3RPCError("rate limited"))
        assert result.outcome is Outcome.TRANSIENT
        assert result.reason == "rpc_unreachable"

    def test_rpc_timeout_is_transient(self):
        async def slow(tx_hash):
            await asyncio.sleep(1)

        verifier = PaymentVerifier(TrustConfig(rpc_timeout_seconds=0.05), fetch_receipt=slow)
        result = asyncio.run(verifier.verify_transfer(TX_HASH, SPONSOR_WALLET, Decimal("1")))
        assert result.outcome is Outcome.TRANSIENT
        assert result.reason == "rpc_timeout"

    @pytest.mark.parametrize("tx_hash", ["", "0x1234", "ab" * 32, "0x" + "zz" * 32])
    def test_bad_tx_hash_is_malformed(self, tx_hash):
        verifier = PaymentVerifier(TrustConfig(), fetch_receipt=None)
        result = asyncio.run(verifier.verify_transfer(tx_hash, SPONSOR_WALLET, Decimal("1")))
        assert result.outcome is Outcome.MALFORMED


class TestReceiptDecoding:

    def test_amount_uses_six_decimals(self):
        log = {**transfer_log("0"), "data": "0x" + format(1, "064x")}
        assert find_transfer_amount(receipt(log), BASE_USDC_CONTRACT, SPONSOR_WALLET) == Decimal("0.000001")

    def test_recipient_match_is_case_insensitive(self):
        checksummed = "0xAbCdEf0123456789aBcDeF0123456789AbCdEf01"
        log = transfer_log("2.00", to=checksummed.lower())
        assert find_transfer_amount(receipt(log), BASE_USDC_CONTRACT, checksummed) == Decimal("2")

    def test_normalize_web3_receipt(self):
        raw = {
            "status": 1,
            "blockNumber": 123,
            "logs": [{
                "address": BASE_USDC_CONTRACT,
                "topics": [
                    bytes.fromhex(TRANSFER_TOPIC[2:]),
                    bytes.fromhex(pad_address_topic(SENDER)[2:]),
                    bytes.fromhex(pad_address_topic(SPONSOR_WALLET)[2:]),
                ],
                "data": (4_000_000).to_bytes(32, "big"),
            }],
        }
        normalized = normalize_receipt(raw)

        assert normalized["status"] == "0x1"
        assert normalized["logs"][0]["topics"][0] == TRANSFER_TOPIC
        assert find_transfer_amount(normalized, BASE_USDC_CONTRACT, SPONSOR_WALLET) == Decimal("4")

    def test_normalize_failed_status(self):
        assert normalize_receipt({"status": 0, "logs": []})["status"] == "0x0"
