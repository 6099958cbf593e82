# dotformer/crypto.py
import hashlib
import secrets

KEY_PREFIX = "dfk_"


def hash_api_key(key: str) -> str:
    """Hash an API key for storage (one-way)."""
    return hashlib.sha256(key.encode()).hexdigest()


def generate_api_key() -> str:
    """Generate a new API key with dfk_ prefix."""
    random_part = secrets.token_hex(16)
    return f"{KEY_PREFIX}{random_part}"


def get_key_prefix(key: str) -> str:
    """Get the prefix of an API key for identification."""
    return key[:12]
