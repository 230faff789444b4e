"""
Auth Token Gate: bearer-token check for preview reads and admin routes.

Signature/key validation belongs to the host; the monitor only needs a
pass/fail answer and the user it belongs to. StaticTokenGate is the bundled
implementation, fed from PREVIEW_AUTH_TOKENS.
"""
import hmac
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass(frozen=True)
class TokenVerification:
    valid: bool
    user_id: Optional[str] = None


class AuthTokenGate:
    """Interface: verify(bearer_token) -> TokenVerification."""

    def verify(self, bearer_token: Optional[str]) -> TokenVerification:
        raise NotImplementedError


class StaticTokenGate(AuthTokenGate):
    """Accepts a fixed set of tokens, each mapped to a user id."""

    def __init__(self, tokens: Dict[str, str]):
        self._tokens = dict(tokens)

    @classmethod
    def from_string(cls, value: Optional[str]) -> "StaticTokenGate":
        """Parse 'token:user_id,token2:user_id2'. A token without ':' maps to no user."""
        tokens = {}
        for item in (value or "").split(","):
            item = item.strip()
            if not item:
                continue
            token, _, user_id = item.partition(":")
            tokens[token.strip()] = user_id.strip() or None
        return cls(tokens)

    def verify(self, bearer_token: Optional[str]) -> TokenVerification:
        if not bearer_token:
            return TokenVerification(valid=False)
        for token, user_id in self._tokens.items():
            if hmac.compare_digest(token.encode("utf-8"), bearer_token.encode("utf-8")):
                return TokenVerification(valid=True, user_id=user_id)
        return TokenVerification(valid=False)


class CallableTokenGate(AuthTokenGate):
    """Adapts a host-provided verifier: fn(token) -> (valid, user_id)."""

    def __init__(self, verifier: Callable[[str], tuple]):
        self._verifier = verifier

    def verify(self, bearer_token: Optional[str]) -> TokenVerification:
        if not bearer_token:
            return TokenVerification(valid=False)
        valid, user_id = self._verifier(bearer_token)
        return TokenVerification(valid=bool(valid), user_id=user_id if valid else None)


def bearer_token_from_header(header_value: Optional[str]) -> Optional[str]:
    """Extract the token from an 'Authorization: Bearer <token>' header."""
    if not header_value:
        return None
    scheme, _, token = header_value.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
