"""
Pytest configuration and shared fixtures for Userbase tests.
"""

import hashlib
import os
from datetime import timedelta

import base58
import pytest

# Set test environment before importing the package
os.environ["FLASK_ENV"] = "testing"
os.environ["FLASK_SECRET_KEY"] = "test-secret-key-for-testing-only"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ.pop("REDIS_URL", None)
os.environ.pop("REDIS_HOST", None)

# Import package after setting environment
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from Crypto.Hash import RIPEMD160
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys.datatypes import PrivateKey

from userbase.errors import HiveAccountNotFound, UpstreamUnavailable
from userbase.hive import HiveAccount
from userbase.storage import build_memory_repositories
from userbase.tokens import generate_refresh_token, hash_token
from userbase.utils import utc_now

# Fixed keys so failures are reproducible
ALICE_KEY = "0x" + "11" * 32
BOB_KEY = "0x" + "22" * 32
MALLORY_KEY = "0x" + "33" * 32
HIVE_ALICE_KEY = bytes.fromhex("44" * 32)
HIVE_BOB_KEY = bytes.fromhex("55" * 32)


def sign_text(account, message: str) -> str:
    """personal_sign ``message`` with ``account`` and return 0x-prefixed hex."""
    signed = Account.sign_message(encode_defunct(text=message), private_key=account.key)
    return "0x" + bytes(signed.signature).hex()


class HiveKey:
    """Posting key pair that signs the way Hive Keychain does."""

    def __init__(self, secret: bytes):
        self.private_key = PrivateKey(secret)
        compressed = self.private_key.public_key.to_compressed_bytes()
        checksum = RIPEMD160.new(compressed).digest()[:4]
        self.public_key = "STM" + base58.b58encode(compressed + checksum).decode()

    def sign(self, message: str) -> str:
        digest = hashlib.sha256(message.encode("utf-8")).digest()
        signature = self.private_key.sign_msg_hash(digest)
        # compact form: recovery byte (27 + 4 for compressed keys) then r and s
        raw = bytes([signature.v + 31]) + signature.r.to_bytes(32, "big") + signature.s.to_bytes(32, "big")
        return raw.hex()


class FakeHive:
    """In-memory stand-in for ``HiveClient`` keyed by account name."""

    def __init__(self):
        self.accounts = {}
        self.unavailable = False

    def add(self, name, *keys, metadata=None):
        self.accounts[name] = HiveAccount(name=name, posting_keys=[key.public_key for key in keys], metadata=metadata or {})

    def fetch_account(self, handle):
        if self.unavailable:
            raise UpstreamUnavailable(operation="condenser_api.get_accounts")
        if handle not in self.accounts:
            raise HiveAccountNotFound()
        return self.accounts[handle]


@pytest.fixture
def repositories():
    """Fresh in-memory repositories for each test."""
    return build_memory_repositories()


@pytest.fixture
def app(repositories):
    """Create and configure a test Flask application instance."""
    from userbase.factory import create_app

    flask_app = create_app(
        {
            "STORAGE_BACKEND": "memory",
            "RATE_LIMIT_ENABLED": False,
            "FORCE_HTTPS": False,
            "APP_NAME": "Userbase",
        },
        repositories=repositories,
    )
    flask_app.config.update({"TESTING": True})

    with flask_app.app_context():
        yield flask_app


@pytest.fixture
def client(app):
    """Create a test client for the Flask application."""
    return app.test_client()


@pytest.fixture
def services(app):
    """Service container wired into the test app."""
    return app.extensions["userbase"]


@pytest.fixture
def make_user(repositories):
    """Factory creating users directly in the repository."""

    def _make_user(handle=None, display_name=None, **fields):
        return repositories.users.create(handle=handle, display_name=display_name, **fields)

    return _make_user


@pytest.fixture
def make_session(repositories):
    """Factory creating a session and returning its raw refresh token."""

    def _make_session(user_id, expires_in=timedelta(hours=1)):
        token = generate_refresh_token()
        repositories.sessions.insert(user_id=user_id, refresh_token_hash=hash_token(token), expires_at=utc_now() + expires_in)
        return token

    return _make_session


@pytest.fixture
def auth_headers():
    """Build Bearer headers for a raw session token."""

    def _auth_headers(token):
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    return _auth_headers


@pytest.fixture
def sign():
    """Signing helper: ``sign(account, message)``."""
    return sign_text


@pytest.fixture
def alice_wallet():
    return Account.from_key(ALICE_KEY)


@pytest.fixture
def bob_wallet():
    return Account.from_key(BOB_KEY)


@pytest.fixture
def mallory_wallet():
    return Account.from_key(MALLORY_KEY)


@pytest.fixture
def hive_alice_key():
    return HiveKey(HIVE_ALICE_KEY)


@pytest.fixture
def hive_bob_key():
    return HiveKey(HIVE_BOB_KEY)


@pytest.fixture
def fake_hive():
    return FakeHive()


# Pytest configuration hooks
def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line("markers", "unit: fast tests without the HTTP layer")
    config.addinivalue_line("markers", "slow: tests that take a long time to run")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers automatically."""
    for item in items:
        # Add 'unit' marker to tests in unit/ directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Add 'integration' marker to tests in integration/ directory
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
