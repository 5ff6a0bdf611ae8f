"""
Bearer token verification.

Tokens are issued elsewhere. With ``jwk_url`` set, tokens are verified
against the identity provider's published keys (RS256/ES256); otherwise a
shared ``jwt_secret`` (HS256) is used.
"""

import logging
from typing import Any, Dict, Optional

import jwt
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class AuthClientConfig(BaseModel):
    jwk_url: Optional[str] = None
    audience: Optional[str] = None
    issuer: Optional[str] = None
    jwt_secret: Optional[str] = None


class AuthClient:
    def __init__(self, config: AuthClientConfig):
        if not config.jwk_url and not config.jwt_secret:
            raise ValueError("Either AUTH_OIDC_JWK_URL or AUTH_JWT_SECRET must be set")
        self.config = config
        self.jwk_client = jwt.PyJWKClient(config.jwk_url) if config.jwk_url else None

    def decode_jwt(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the verified claims, or None when the token is not acceptable."""
        options = {"verify_aud": bool(self.config.audience)}
        try:
            if self.jwk_client:
                key = self.jwk_client.get_signing_key_from_jwt(token).key
                algorithms = ["RS256", "ES256"]
            else:
                key = self.config.jwt_secret
                algorithms = ["HS256"]
            return jwt.decode(
                token,
                key,
                algorithms=algorithms,
                audience=self.config.audience,
                issuer=self.config.issuer,
                options=options,
            )
        except jwt.PyJWTError as e:
            logger.info(f"Rejected bearer token: {e}")
            return None
