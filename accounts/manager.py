import logging
from typing import Optional, List, Dict

import settings
from crypto.keys import KeySession
from crypto.primitives import (
    b64d,
    b64e,
    decrypt,
    derive_key,
    encrypt,
    generate_keypair,
    new_nonce,
    new_salt,
)
from errors import IntegrityError, NotFound

from .hashing import SimpleHasher
from .models import Principal
from .storage import IStorage

logger = logging.getLogger(__name__)


class AccountManager:
    def __init__(self, storage: IStorage, hasher: SimpleHasher):
        self.storage = storage
        self.hasher = hasher

    @staticmethod
    def _canon(username: str) -> str:
        return username.strip().lower()

    @staticmethod
    def _wrap_private_key(private_pem: bytes, password: str) -> Dict[str, object]:
        """Wrap a private key under a fresh password-derived key. Salt and nonce are new every time."""
        salt = new_salt()
        nonce = new_nonce()
        iterations = settings.KDF_ITERATIONS
        master_key = derive_key(password, salt, iterations)
        enc_private_key = encrypt(private_pem, master_key, nonce)
        return {
            "enc_private_key": b64e(enc_private_key),
            "enc_private_key_nonce": b64e(nonce),
            "enc_private_key_salt": b64e(salt),
            "kdf_iterations": iterations,
        }

    def register(self, username: str, password: str) -> Principal:
        username_c = self._canon(username)
        if not username_c:
            raise ValueError("Username cannot be empty.")
        if self.storage.get_user_by_username(username_c):
            raise ValueError("Username already taken.")
        pwd_hash = self.hasher.hash(password)
        private_pem, public_pem = generate_keypair()

        user = Principal.new(
            username=username_c,
            pwd_hash=pwd_hash,
            public_key=b64e(public_pem),
            **self._wrap_private_key(private_pem, password),
        )
        self.storage.save_user(user)
        logger.info("registered principal %s", user.user_id)
        return user

    def authenticate(self, username: str, password: str) -> Optional[Principal]:
        username_c = self._canon(username)
        user = self.storage.get_user_by_username(username_c)
        if not user:
            return None
        if not self.hasher.verify(user.pwd_hash, password):
            logger.warning("failed login for %s", username_c)
            return None
        return user

    def public_key_pem(self, user: Principal) -> bytes:
        """Decode a user's stored public key PEM bytes."""
        return b64d(user.public_key)

    def decrypt_private_key(self, user: Principal, password: str) -> bytes:
        """
        Decrypt and return the user's RSA private key PEM bytes using their password.
        Raises IntegrityError on wrong password or tampered data.
        """
        salt = b64d(user.enc_private_key_salt)
        nonce = b64d(user.enc_private_key_nonce)
        enc_priv = b64d(user.enc_private_key)

        master_key = derive_key(password, salt, user.kdf_iterations)
        return decrypt(enc_priv, master_key, nonce)

    def unlock(self, user: Principal, password: str) -> KeySession:
        """Open a key session holding the user's unwrapped private key."""
        private_pem = self.decrypt_private_key(user, password)
        return KeySession(user.user_id, private_pem, self.public_key_pem(user))

    def change_password(self, user: Principal, old_password: str, new_password: str) -> Principal:
        """
        Re-wrap the private key under the new password.

        The keypair itself is unchanged, so every node and grant wrapped for
        this principal stays readable. Salt and nonce rotate.
        """
        if not self.hasher.verify(user.pwd_hash, old_password):
            raise IntegrityError("current password is incorrect")
        private_pem = self.decrypt_private_key(user, old_password)
        updated = user.with_wrapped_private_key(
            pwd_hash=self.hasher.hash(new_password),
            **self._wrap_private_key(private_pem, new_password),
        )
        self.storage.update_user(updated)
        logger.info("re-wrapped private key for principal %s", user.user_id)
        return updated

    def get_all_users(self) -> List[Principal]:
        """Get all registered users."""
        return self.storage.get_all_users()

    def get_other_users(self, exclude_username: str) -> List[Principal]:
        """Get all users except the specified one."""
        exclude_c = self._canon(exclude_username)
        return [u for u in self.get_all_users() if u.username != exclude_c]

    def get_user_by_username(self, username: str) -> Optional[Principal]:
        """Get a user by their username."""
        return self.storage.get_user_by_username(self._canon(username))

    def get_user(self, user_id: str) -> Principal:
        user = self.storage.get_user_by_id(user_id)
        if user is None:
            raise NotFound(f"no principal {user_id}")
        return user
