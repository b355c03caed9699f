from dataclasses import dataclass, replace
from datetime import datetime, timezone
import uuid

import settings


@dataclass(frozen=True)
class Principal:
    # basic account information
    user_id: str
    username: str   # canonical (lowercased)
    pwd_hash: str   # argon2 encoded hash, carries its own verification salt
    created_at: str   # ISO8601 "YYYY-MM-DDTHH:MM:SSZ"

    # key material: public key in the clear, private key wrapped under
    # PBKDF2(password, enc_private_key_salt) with AES-256-GCM
    public_key: str
    enc_private_key: str
    enc_private_key_nonce: str
    enc_private_key_salt: str
    kdf_iterations: int = 200_000

    # space accounting
    total_space: int = settings.DEFAULT_TOTAL_SPACE

    # constructor
    @staticmethod
    def new(
        username: str,
        pwd_hash: str,
        public_key: str,
        enc_private_key: str,
        enc_private_key_nonce: str,
        enc_private_key_salt: str,
        kdf_iterations: int,
        total_space: int = settings.DEFAULT_TOTAL_SPACE,
    ) -> "Principal":
        now = datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")

        return Principal(
            user_id=str(uuid.uuid4()),
            username=username.lower(),
            pwd_hash=pwd_hash,
            created_at=now,
            public_key=public_key,
            enc_private_key=enc_private_key,
            enc_private_key_nonce=enc_private_key_nonce,
            enc_private_key_salt=enc_private_key_salt,
            kdf_iterations=kdf_iterations,
            total_space=total_space,
        )

    def with_wrapped_private_key(
        self,
        pwd_hash: str,
        enc_private_key: str,
        enc_private_key_nonce: str,
        enc_private_key_salt: str,
        kdf_iterations: int,
    ) -> "Principal":
        return replace(
            self,
            pwd_hash=pwd_hash,
            enc_private_key=enc_private_key,
            enc_private_key_nonce=enc_private_key_nonce,
            enc_private_key_salt=enc_private_key_salt,
            kdf_iterations=kdf_iterations,
        )
