"""
Cryptographically secure generation of session tokens and message ids.
"""
import secrets
import uuid

TOKEN_BYTES = 24


def generate_session_token() -> str:
    """
    Generate an opaque, URL-safe session token.

    Uses the `secrets` module so tokens cannot be predicted from earlier ones.

    Returns:
        str: 32 characters of URL-safe base64
    """
    return secrets.token_urlsafe(TOKEN_BYTES)


def generate_message_id() -> str:
    """Generate a unique message id."""
    return uuid.uuid4().hex


def tokens_match(expected, supplied) -> bool:
    """
    Compare two secrets in constant time.

    Missing values never match, including two missing values.
    """
    if not expected or not supplied:
        return False
    return secrets.compare_digest(str(expected).encode("utf-8"), str(supplied).encode("utf-8"))
