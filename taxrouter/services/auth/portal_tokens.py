from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable
from uuid import uuid4

import jwt

from taxrouter.core.errors import ConfigError, InvalidOrExpiredToken


logger = logging.getLogger(__name__)

TOKEN_TYPE_MAGIC_LINK = "magic_link"
TOKEN_TYPE_SESSION = "session"
_ALGORITHM = "HS256"


@dataclass(frozen=True)
class PortalClaims:
    client_id: str
    tenant_id: str
    email: str
    token_type: str
    expires_at: datetime
    jti: str | None = None


@dataclass(frozen=True)
class IssuedPortalToken:
    token: str
    expires_at: datetime
    jti: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PortalTokenService:
    """HS256 tokens for the client portal: single-use magic links and short sessions."""

    def __init__(
        self,
        *,
        secret: str | None,
        issuer: str = "welltaxpro",
        magic_link_ttl_s: int = 24 * 3600,
        session_ttl_s: int = 2 * 3600,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._secret = secret
        self._issuer = issuer
        self._magic_link_ttl = timedelta(seconds=magic_link_ttl_s)
        self._session_ttl = timedelta(seconds=session_ttl_s)
        self._now = now

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    def now(self) -> datetime:
        return self._now()

    def _require_secret(self) -> str:
        if not self._secret:
            raise ConfigError("portal jwtSecret is not configured")
        return self._secret

    def issue_magic_link(self, *, client_id: str, tenant_id: str, email: str) -> IssuedPortalToken:
        jti = str(uuid4())
        token, expires_at = self._encode(
            client_id=client_id,
            tenant_id=tenant_id,
            email=email,
            token_type=TOKEN_TYPE_MAGIC_LINK,
            ttl=self._magic_link_ttl,
            subject=f"magic:{tenant_id}:{client_id}",
            jti=jti,
        )
        logger.info("portal_magic_link_issued tenant_id=%s client_id=%s jti=%s", tenant_id, client_id, jti)
        return IssuedPortalToken(token=token, expires_at=expires_at, jti=jti)

    def issue_session(self, *, client_id: str, tenant_id: str, email: str) -> IssuedPortalToken:
        token, expires_at = self._encode(
            client_id=client_id,
            tenant_id=tenant_id,
            email=email,
            token_type=TOKEN_TYPE_SESSION,
            ttl=self._session_ttl,
            subject=f"session:{tenant_id}:{client_id}",
        )
        logger.info("portal_session_issued tenant_id=%s client_id=%s", tenant_id, client_id)
        return IssuedPortalToken(token=token, expires_at=expires_at)

    def verify(self, token: str | None, *, expected_type: str) -> PortalClaims:
        if not token:
            raise InvalidOrExpiredToken("missing portal token")
        try:
            claims = jwt.decode(
                token,
                self._require_secret(),
                algorithms=[_ALGORITHM],
                issuer=self._issuer,
                options={"require": ["exp", "iat", "iss", "sub"]},
            )
        except jwt.PyJWTError as exc:
            logger.info("portal_token_rejected reason=%s", type(exc).__name__)
            raise InvalidOrExpiredToken("invalid portal token") from exc
        if claims.get("token_type") != expected_type:
            raise InvalidOrExpiredToken(f"portal token is not a {expected_type} token")
        for name in ("client_id", "tenant_id", "email"):
            if not claims.get(name):
                raise InvalidOrExpiredToken(f"portal token missing {name}")
        return PortalClaims(
            client_id=str(claims["client_id"]),
            tenant_id=str(claims["tenant_id"]),
            email=str(claims["email"]),
            token_type=str(claims["token_type"]),
            expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
            jti=claims.get("jti"),
        )

    def _encode(
        self,
        *,
        client_id: str,
        tenant_id: str,
        email: str,
        token_type: str,
        ttl: timedelta,
        subject: str,
        jti: str | None = None,
    ) -> tuple[str, datetime]:
        issued_at = self._now()
        expires_at = issued_at + ttl
        payload = {
            "client_id": client_id,
            "tenant_id": tenant_id,
            "email": email,
            "token_type": token_type,
            "iss": self._issuer,
            "sub": subject,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        if jti is not None:
            payload["jti"] = jti
        return jwt.encode(payload, self._require_secret(), algorithm=_ALGORITHM), expires_at
