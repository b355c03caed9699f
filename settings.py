"""Runtime configuration for the vault. Every value can be overridden from the environment."""

import os
from pathlib import Path

VAULT_ROOT = Path(os.getenv("VAULT_ROOT", "vault"))
USERS_FILE = os.getenv("VAULT_USERS_FILE", "users.json")

# Key derivation (PBKDF2-HMAC-SHA256)
KDF_ITERATIONS = int(os.getenv("VAULT_KDF_ITERATIONS", 200_000))
SALT_SIZE = 16

# AES-256-GCM
KEY_SIZE = 32
NONCE_SIZE = 12

RSA_KEY_SIZE = int(os.getenv("VAULT_RSA_KEY_SIZE", 2048))

LINK_SECRET_SIZE = 32

# Guard against runaway ancestor walks on corrupted parent pointers
MAX_TREE_DEPTH = int(os.getenv("VAULT_MAX_TREE_DEPTH", 64))

DEFAULT_TOTAL_SPACE = int(os.getenv("VAULT_DEFAULT_TOTAL_SPACE", 1_000_000_000))  # 1GB

COMMIT_RETRIES = int(os.getenv("VAULT_COMMIT_RETRIES", 3))

LOG_LEVEL = os.getenv("VAULT_LOG_LEVEL", "WARNING")
