"""PKCE helpers (RFC 7636, S256 only).

The verifier is kept in the credential store until the code exchange. Only
its challenge goes through the browser.
"""

import base64
import hashlib
import hmac
import secrets
import string
from dataclasses import dataclass

MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128
DEFAULT_VERIFIER_LENGTH = 64

# RFC 7636 section 4.1 "unreserved" set
VERIFIER_CHARS = string.ascii_uppercase + string.ascii_lowercase + string.digits + "-._~"

CHALLENGE_METHOD = "S256"

STATE_BYTES = 16


@dataclass
class PKCEPair:
    verifier: str
    challenge: str
    method: str = CHALLENGE_METHOD


def _is_valid_verifier(verifier: str) -> bool:
    return MIN_VERIFIER_LENGTH <= len(verifier) <= MAX_VERIFIER_LENGTH and all(
        char in VERIFIER_CHARS for char in verifier
    )


def generate_code_verifier(length: int = DEFAULT_VERIFIER_LENGTH) -> str:
    """Random verifier of ``length`` unreserved characters.

    Raises:
        ValueError: If length is outside 43..128
    """
    if not MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH:
        raise ValueError(
            f"Code verifier length must be between {MIN_VERIFIER_LENGTH} "
            f"and {MAX_VERIFIER_LENGTH}, got {length}"
        )
    return "".join(secrets.choice(VERIFIER_CHARS) for _ in range(length))


def generate_code_challenge(verifier: str) -> str:
    """BASE64URL(SHA256(verifier)) with the padding stripped."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce_pair(length: int = DEFAULT_VERIFIER_LENGTH) -> PKCEPair:
    verifier = generate_code_verifier(length)
    return PKCEPair(verifier, generate_code_challenge(verifier))


def verify_code_challenge(
    verifier: str, challenge: str, method: str = CHALLENGE_METHOD
) -> bool:
    """Check a verifier against a challenge as an authorization server would.

    Only S256 is accepted; the comparison is constant-time.
    """
    if method != CHALLENGE_METHOD or not _is_valid_verifier(verifier):
        return False
    return hmac.compare_digest(generate_code_challenge(verifier), challenge)


def generate_state() -> str:
    """Random hex ``state`` for the authorization request."""
    return secrets.token_hex(STATE_BYTES)
