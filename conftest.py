import pytest
from argon2 import PasswordHasher

import settings
from accounts import AccountManager, JSONStorage, SimpleHasher
from crypto.primitives import generate_keypair
from storage import BlobStore, JSONVaultStore


@pytest.fixture(autouse=True)
def fast_crypto(monkeypatch):
    """Cheap KDF and RSA parameters; the code paths are the same."""
    monkeypatch.setattr(settings, "KDF_ITERATIONS", 1_000)
    monkeypatch.setattr(settings, "RSA_KEY_SIZE", 1024)


@pytest.fixture(scope="session")
def rsa_keys():
    """One RSA keypair shared by the tests that need raw PEMs: (private, public)."""
    return generate_keypair(2048)


@pytest.fixture
def store(tmp_path):
    return JSONVaultStore(tmp_path / "vault.json")


@pytest.fixture
def blobs(tmp_path):
    return BlobStore(tmp_path / "blobs")


@pytest.fixture
def accounts(tmp_path):
    hasher = SimpleHasher(PasswordHasher(time_cost=1, memory_cost=8, parallelism=1))
    return AccountManager(JSONStorage(tmp_path / "users.json"), hasher)


@pytest.fixture
def login(accounts):
    """login(name) registers the principal on first use and returns (principal, open session)."""
    sessions = []

    def _login(username, password="correct horse battery"):
        user = accounts.get_user_by_username(username) or accounts.register(username, password)
        session = accounts.unlock(user, password)
        sessions.append(session)
        return user, session

    yield _login
    for session in sessions:
        session.close()
