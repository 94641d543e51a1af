"""
Bearer token authentication for the chat API.
"""

import hashlib
from typing import Dict, Optional

from guarded_chat.core.errors import AuthError

BEARER_PREFIX = "Bearer "


def hash_user(user: str) -> str:
    """Stable pseudonymous id for a user, used as the ledger key."""
    return hashlib.sha256(user.encode("utf-8")).hexdigest()


class ApiKeyAuthenticator:
    """Resolves ``Authorization: Bearer <token>`` headers to user ids."""

    def __init__(self, api_keys: Dict[str, str]):
        self.api_keys = dict(api_keys)

    def authenticate(self, authorization: Optional[str]) -> str:
        """Return the hashed user id for a valid token.

        Raises:
            AuthError: If the header is missing, malformed, or the token is unknown
        """
        if not authorization or not authorization.startswith(BEARER_PREFIX):
            raise AuthError("Unauthorized")
        token = authorization[len(BEARER_PREFIX):].strip()
        user = self.api_keys.get(token)
        if user is None:
            raise AuthError("Unauthorized")
        return hash_user(user)
