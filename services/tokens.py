"""Session tokens issued after a successful login-code verification.

RS256 when a key pair is configured, otherwise HS256 with JWT_SECRET.
Keys supplied through env vars may carry literal ``\\n`` sequences.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import jwt

from config import JWTSettings
from errors import TokenConfigurationError
from schemas.dto.otp import SessionTokens
from shared.datetime_utils import utcnow


class SessionTokenIssuer:
    def __init__(
        self,
        settings: JWTSettings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._clock = clock
        if settings.use_rs256:
            self._algorithm = "RS256"
            self._signing_key: Any = settings.jwt_private_key.replace("\\n", "\n").encode("utf-8")
            self._verify_key: Any = settings.jwt_public_key.replace("\\n", "\n").encode("utf-8")
        elif settings.jwt_secret:
            self._algorithm = "HS256"
            self._signing_key = self._verify_key = settings.jwt_secret
        else:
            raise TokenConfigurationError(
                "JWT_SECRET must be set when RS256 keys are not provided"
            )

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def _encode(
        self, subject_id: str, tenant: str, ttl: int, token_type: Optional[str]
    ) -> str:
        now = self._clock()
        claims = {
            "iss": self._settings.jwt_issuer,
            "aud": self._settings.jwt_audience,
            "sub": str(subject_id),
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=ttl)).timestamp()),
            "tenant": tenant,
            "amr": ["otp"],  # Authentication Methods References
        }
        if token_type:
            claims["type"] = token_type
        return jwt.encode(claims, self._signing_key, algorithm=self._algorithm)

    def issue(self, subject_id: str, tenant: str) -> SessionTokens:
        access_ttl = self._settings.access_token_ttl_seconds
        return SessionTokens(
            access_token=self._encode(subject_id, tenant, access_ttl, None),
            refresh_token=self._encode(
                subject_id, tenant, self._settings.refresh_token_ttl_seconds, "refresh"
            ),
            expires_in=access_ttl,
        )

    def decode(self, token: str) -> dict:
        return jwt.decode(
            token,
            self._verify_key,
            algorithms=[self._algorithm],
            audience=self._settings.jwt_audience,
            issuer=self._settings.jwt_issuer,
        )

    def decode_refresh(self, token: str) -> dict:
        claims = self.decode(token)
        if claims.get("type") != "refresh":
            raise jwt.InvalidTokenError("Not a refresh token")
        return claims
