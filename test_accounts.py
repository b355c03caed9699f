"""
Tests for principals: registration, login, private key wrapping and password change.
"""
import pytest

from crypto.primitives import new_key, unwrap_with_private_key, wrap_for_public_key
from errors import IntegrityError, NotFound
from storage.file_manager import create_node, open_key, read_node


def test_register_and_authenticate(accounts):
    user = accounts.register("Alice", "correct horse battery")
    assert user.username == "alice"
    assert user.pwd_hash.startswith("$argon2")
    assert accounts.authenticate("ALICE", "correct horse battery") == user
    assert accounts.authenticate("alice", "wrong") is None
    assert accounts.authenticate("nobody", "correct horse battery") is None


def test_register_rejects_duplicates_and_blank_names(accounts):
    accounts.register("alice", "pw-123456")
    with pytest.raises(ValueError):
        accounts.register("Alice ", "pw-123456")
    with pytest.raises(ValueError):
        accounts.register("   ", "pw-123456")


def test_private_key_is_stored_wrapped(accounts, tmp_path):
    user = accounts.register("alice", "pw-123456")
    raw = (tmp_path / "users.json").read_text()
    assert "PRIVATE KEY" not in raw
    assert user.enc_private_key_salt != user.enc_private_key_nonce

    private_pem = accounts.decrypt_private_key(user, "pw-123456")
    node_key = new_key()
    wrapped = wrap_for_public_key(node_key, accounts.public_key_pem(user))
    assert unwrap_with_private_key(wrapped, private_pem) == node_key


def test_wrong_password_cannot_unlock(accounts):
    user = accounts.register("alice", "pw-123456")
    with pytest.raises(IntegrityError):
        accounts.unlock(user, "pw-654321")


def test_each_principal_gets_its_own_salt(accounts):
    alice = accounts.register("alice", "same password")
    bob = accounts.register("bob", "same password")
    assert alice.enc_private_key_salt != bob.enc_private_key_salt
    assert alice.public_key != bob.public_key


def test_change_password_keeps_access(store, blobs, accounts):
    user = accounts.register("alice", "old-password")
    with accounts.unlock(user, "old-password") as session:
        node, _ = create_node(store, blobs, session, "diary.txt", content=b"dear diary")

    updated = accounts.change_password(user, "old-password", "new-password")

    assert updated.public_key == user.public_key
    assert updated.enc_private_key_salt != user.enc_private_key_salt
    assert updated.enc_private_key_nonce != user.enc_private_key_nonce
    assert accounts.authenticate("alice", "old-password") is None
    assert accounts.authenticate("alice", "new-password") == updated
    with pytest.raises(IntegrityError):
        accounts.unlock(updated, "old-password")

    with accounts.unlock(updated, "new-password") as session:
        node_key = open_key(store, session, node.node_id)
        assert read_node(store, blobs, session, node.node_id, node_key).content == b"dear diary"


def test_change_password_needs_the_current_one(accounts):
    user = accounts.register("alice", "old-password")
    with pytest.raises(IntegrityError):
        accounts.change_password(user, "guess", "new-password")
    assert accounts.authenticate("alice", "old-password") is not None


def test_user_lookup(accounts):
    alice = accounts.register("alice", "pw-123456")
    bob = accounts.register("bob", "pw-123456")
    assert accounts.get_user(alice.user_id) == alice
    assert accounts.get_user_by_username("BOB") == bob
    assert [u.username for u in accounts.get_other_users("alice")] == ["bob"]
    with pytest.raises(NotFound):
        accounts.get_user("missing")
