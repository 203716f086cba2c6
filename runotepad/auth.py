import hmac
from typing import Mapping, Optional

from .errors import AuthRejected


def verify_token(expected: str, token: Optional[str]) -> bool:
    """Constant-time comparison against the shared access token."""
    if not expected or not token:
        return False
    return hmac.compare_digest(token.encode(), expected.encode())


def extract_token(query: Mapping[str, str], headers: Mapping[str, str]) -> Optional[str]:
    """Pull the token from `?token=` first, then `Authorization: Bearer`."""
    token = query.get("token")
    if token:
        return token
    authorization = headers.get("authorization") or ""
    if authorization.startswith("Bearer "):
        return authorization[7:] or None
    return None


def require_token(expected: str, query: Mapping[str, str], headers: Mapping[str, str]) -> None:
    token = extract_token(query, headers)
    if token is None:
        raise AuthRejected("Authentication required")
    if not verify_token(expected, token):
        raise AuthRejected("Invalid token")
