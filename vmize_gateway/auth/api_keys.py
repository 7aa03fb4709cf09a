"""
API key format, generation and hashing.

Keys look like ``vmize_pk_live_<32 hex>`` / ``vmize_pk_test_<32 hex>``. The raw
key is returned to the caller once; only the HMAC-SHA256 digest (keyed with
VMIZE_API_KEY_PEPPER) is stored, together with a short display prefix.
"""

import hashlib
import hmac
import re
import secrets
from typing import Optional

from vmize_gateway.config import settings

API_KEY_PREFIX = "vmize_pk_"
API_KEY_RE = re.compile(r"^vmize_pk_(live|test)_[A-Za-z0-9]{16,64}$")
DISPLAY_PREFIX_LEN = 18


def generate_api_key(environment: Optional[str] = None) -> str:
    env = environment or settings.api_key_environment
    return f"{API_KEY_PREFIX}{env}_{secrets.token_hex(16)}"


def is_well_formed(raw_key: Optional[str]) -> bool:
    return bool(raw_key) and API_KEY_RE.match(raw_key) is not None


def hash_api_key(raw_key: str, pepper: Optional[str] = None) -> str:
    secret = (pepper or settings.api_key_pepper).encode()
    return hmac.new(secret, raw_key.encode(), hashlib.sha256).hexdigest()


def display_prefix(raw_key: str) -> str:
    return raw_key[:DISPLAY_PREFIX_LEN]
