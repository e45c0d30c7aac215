"""
Shared fixtures for the FlowB trust test suite.

Log files go to a throwaway directory; it has to be set before the
first `import logger`, which happens when the test modules are collected.
"""

import asyncio
import hashlib
import hmac
import json
import os
import tempfile
from urllib.parse import urlencode

os.environ.setdefault("FLOWB_LOG_DIR", tempfile.mkdtemp(prefix="flowb-logs-"))

import pytest  # noqa: E402

from record_store import RecordStore  # noqa: E402
from telegram_auth import build_data_check_string, webapp_secret_key  # noqa: E402
from trust_config import TrustConfig  # noqa: E402

BOT_TOKEN = "123456:TEST-bot-token"
JWT_SECRET = "flowb-test-secret-0123456789abcdef0123456789"
SPONSOR_WALLET = "0x1111111111111111111111111111111111111111"
SENDER = "0x2222222222222222222222222222222222222222"


def sign_init_data(fields, bot_token=BOT_TOKEN):
    """Build a Mini App initData query string signed like Telegram does"""
    data_check_string = build_data_check_string(fields.items())
    digest = hmac.new(webapp_secret_key(bot_token), data_check_string.encode(), hashlib.sha256).hexdigest()
    return urlencode({**fields, "hash": digest})


def telegram_fields(auth_date, user_id=42, first_name="Ada"):
    return {
        "query_id": "AAHdF6IQAAAAAN0XohDhrOrc",
        "user": json.dumps({"id": user_id, "first_name": first_name, "username": "ada"}, separators=(",", ":")),
        "auth_date": str(int(auth_date)),
    }


@pytest.fixture
def config(tmp_path):
    return TrustConfig(
        jwt_secret=JWT_SECRET,
        telegram_bot_token=BOT_TOKEN,
        sponsor_wallet=SPONSOR_WALLET,
        neynar_api_key="neynar-test-key",
        db_path=str(tmp_path / "flowb.db"),
        sponsor_max_attempts=3,
        sponsor_retry_delay_seconds=0,
    )


@pytest.fixture
def store(config):
    return RecordStore(config.db_path)


VENUE_LAT, VENUE_LON = 25.2048, 55.2708
NEAR_LAT = VENUE_LAT + 80 / 111194.93   # 80 m north of the venue


def add_venue(store, **overrides):
    store.insert("locations", {
        "id": "loc-1",
        "code": "MARINA",
        "name": "Marina Stage",
        "latitude": VENUE_LAT,
        "longitude": VENUE_LON,
        "proximity_radius_m": 100,
        "sponsor_amount": 0,
        "active": 1,
        **overrides,
    })


class ScriptedPayments:
    """Stands in for PaymentVerifier; yields once so concurrent callers interleave"""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    async def verify_transfer(self, tx_hash, expected_recipient, min_amount):
        self.calls.append((tx_hash, expected_recipient, min_amount))
        await asyncio.sleep(0)
        return self.results.pop(0) if len(self.results) > 1 else self.results[0]


class RecordingNotifier:

    def __init__(self):
        self.sent = []

    def notify(self, kind, subject, payload=None):
        self.sent.append((kind, subject, payload or {}))

    async def drain(self):
        pass
