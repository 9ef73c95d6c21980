from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
import time
from typing import Any, Awaitable, Callable

import httpx
import jwt

from taxrouter.core.errors import ConfigError, NotAuthenticated


logger = logging.getLogger(__name__)

_ALLOWED_ALGS = {"RS256"}
_ISSUER_PREFIX = "https://securetoken.google.com/"

JwksFetcher = Callable[[str], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class FirebaseClaims:
    uid: str
    email: str | None
    email_verified: bool
    name: str | None
    raw: dict[str, Any]


async def fetch_jwks(jwks_url: str, *, timeout: float = 10.0) -> dict[str, Any]:
    # Fetch the signing keys Google publishes for Firebase ID tokens.
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(jwks_url)
    response.raise_for_status()
    return response.json()


def _select_jwk(jwks: dict[str, Any], kid: str | None) -> dict[str, Any]:
    keys = jwks.get("keys") or []
    if kid:
        for key in keys:
            if key.get("kid") == kid:
                return key
    elif len(keys) == 1:
        return keys[0]
    raise NotAuthenticated("no matching signing key for token")


class FirebaseTokenVerifier:
    """Verify Firebase ID tokens against Google's JWKS.

    The key set is cached for ``cache_ttl_s``. An unknown ``kid`` forces a
    refresh so key rotation does not lock users out until the TTL expires;
    forced refreshes happen at most once per ``min_refresh_interval_s``.
    """

    def __init__(
        self,
        *,
        project_id: str | None,
        jwks_url: str,
        cache_ttl_s: int = 3600,
        clock_skew_s: int = 60,
        min_refresh_interval_s: int = 60,
        fetcher: JwksFetcher | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._project_id = project_id
        self._jwks_url = jwks_url
        self._cache_ttl_s = cache_ttl_s
        self._clock_skew_s = clock_skew_s
        self._min_refresh_interval_s = min_refresh_interval_s
        self._fetcher = fetcher or fetch_jwks
        self._clock = clock
        self._jwks: dict[str, Any] | None = None
        self._jwks_expires_at = 0.0
        self._last_forced_refresh: float | None = None
        self._lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return bool(self._project_id)

    async def verify(self, token: str) -> FirebaseClaims:
        if not self._project_id:
            raise ConfigError("firebase project id is not configured")
        if not token:
            raise NotAuthenticated("missing id token")
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise NotAuthenticated("malformed id token") from exc
        alg = header.get("alg")
        if alg not in _ALLOWED_ALGS:
            raise NotAuthenticated("unsupported token algorithm")
        jwk = await self._key_for(header.get("kid"))
        key = jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(jwk))
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=[alg],
                audience=self._project_id,
                issuer=f"{_ISSUER_PREFIX}{self._project_id}",
                leeway=self._clock_skew_s,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.PyJWTError as exc:
            logger.info("firebase_token_rejected reason=%s", type(exc).__name__)
            raise NotAuthenticated("invalid id token") from exc
        uid = claims.get("sub") or claims.get("user_id")
        if not uid:
            raise NotAuthenticated("id token missing subject")
        return FirebaseClaims(
            uid=str(uid),
            email=claims.get("email"),
            email_verified=bool(claims.get("email_verified")),
            name=claims.get("name"),
            raw=claims,
        )

    async def _key_for(self, kid: str | None) -> dict[str, Any]:
        jwks = await self._load_jwks(force=False)
        try:
            return _select_jwk(jwks, kid)
        except NotAuthenticated:
            if not await self._claim_forced_refresh():
                logger.info("firebase_jwks_refresh_throttled kid=%s", kid)
                raise
            jwks = await self._load_jwks(force=True)
            return _select_jwk(jwks, kid)

    async def _claim_forced_refresh(self) -> bool:
        # Unknown kids come from unauthenticated callers; bound how often they reach Google.
        async with self._lock:
            now = self._clock()
            last = self._last_forced_refresh
            if last is not None and now - last < self._min_refresh_interval_s:
                return False
            self._last_forced_refresh = now
            return True

    async def _load_jwks(self, *, force: bool) -> dict[str, Any]:
        async with self._lock:
            if not force and self._jwks is not None and self._jwks_expires_at > self._clock():
                return self._jwks
        try:
            jwks = await self._fetcher(self._jwks_url)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("firebase_jwks_fetch_failed url=%s error=%s", self._jwks_url, type(exc).__name__)
            raise NotAuthenticated("signing keys unavailable") from exc
        async with self._lock:
            self._jwks = jwks
            self._jwks_expires_at = self._clock() + self._cache_ttl_s
        return jwks
