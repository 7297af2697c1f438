# clinic_cashier/core/security.py - Access token decoding for the cashier surface
from typing import Dict, Any, Optional

import jwt

from clinic_cashier.core.config import settings


class SecurityError(Exception):
    """Custom exception for security-related errors"""
    pass


class TokenManager:
    """Validates access tokens issued by the clinic backend"""

    def __init__(self, secret_key: Optional[str] = None, algorithm: Optional[str] = None, audience: Optional[str] = None):
        self.secret_key = secret_key or settings.JWT_SECRET
        self.algorithm = algorithm or settings.JWT_ALGORITHM
        self.audience = audience if audience is not None else settings.JWT_AUDIENCE

    def decode_token(self, token: str) -> Dict[str, Any]:
        """
        Decode and validate a JWT access token.

        Args:
            token: JWT token string

        Returns:
            Dictionary containing token claims

        Raises:
            SecurityError: If token is invalid, expired or lacks a subject
        """
        options = {"verify_aud": self.audience is not None}
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                audience=self.audience,
                options=options,
            )
        except jwt.ExpiredSignatureError:
            raise SecurityError("Token has expired")
        except jwt.InvalidTokenError as e:
            raise SecurityError(f"Invalid token: {e}")

        subject = payload.get("sub") or payload.get("id") or payload.get("userId")
        if not subject:
            raise SecurityError("Token missing user ID")
        payload["sub"] = str(subject)
        return payload

    def create_access_token(self, subject: str, role: str, additional_claims: Optional[Dict[str, Any]] = None) -> str:
        """Create a token the way the clinic backend does (used by local tooling and tests)"""
        payload = {"sub": str(subject), "role": role}
        if self.audience:
            payload["aud"] = self.audience
        if additional_claims:
            payload.update(additional_claims)
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)


token_manager = TokenManager()


def decode_token(token: str) -> Dict[str, Any]:
    """Decode token with the default manager"""
    return token_manager.decode_token(token)
