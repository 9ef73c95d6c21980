"""Bearer tokens that let an affiliate read their own dashboard.

Only the SHA-256 digest of a token is stored, in the tenant's own
``<prefix>.affiliate_tokens`` table. The plaintext exists once, in the
return value of :meth:`AffiliateTokenAuthenticator.generate`.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
import secrets
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from taxrouter.adapters.base import column_list, fetch_all, write, write_returning
from taxrouter.core.errors import InvalidOrExpiredToken, MalformedInput, TokenNotFound
from taxrouter.domain.entities import AffiliateToken
from taxrouter.persistence.guards import qualify, require_uuid
from taxrouter.services.crypto.utils import sha256_hex


logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
TOKEN_METADATA_COLUMNS = (
    "id", "affiliate_id", "expires_at", "last_used_at", "is_active", "notes", "created_at", "updated_at",
)


def hash_token(plaintext: str) -> str:
    return sha256_hex(plaintext)


def _token_from_row(row: dict[str, Any]) -> AffiliateToken:
    return AffiliateToken(
        id=str(row["id"]),
        affiliate_id=str(row["affiliate_id"]),
        is_active=bool(row.get("is_active")),
        expires_at=row.get("expires_at"),
        last_used_at=row.get("last_used_at"),
        notes=row.get("notes"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


class AffiliateTokenAuthenticator:
    async def generate(
        self,
        handle: AsyncEngine,
        schema_prefix: str,
        *,
        affiliate_id: str,
        expires_at: datetime | None = None,
        notes: str | None = None,
    ) -> tuple[str, AffiliateToken]:
        affiliate_id = require_uuid(affiliate_id, field="affiliateId")
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        plaintext = secrets.token_bytes(TOKEN_BYTES).hex()
        row = await write_returning(
            handle,
            f"INSERT INTO {qualify(schema_prefix, 'affiliate_tokens')} "
            "(affiliate_id, token_hash, expires_at, notes, is_active) "
            "VALUES (:affiliate_id, :token_hash, :expires_at, :notes, true) "
            f"RETURNING {column_list(TOKEN_METADATA_COLUMNS)}",
            {
                "affiliate_id": affiliate_id,
                "token_hash": hash_token(plaintext),
                "expires_at": expires_at,
                "notes": notes,
            },
        )
        if row is None:
            raise MalformedInput("token could not be created")
        token = _token_from_row(row)
        logger.info("affiliate_token_generated token_id=%s affiliate_id=%s", token.id, affiliate_id)
        return plaintext, token

    async def validate(self, handle: AsyncEngine, schema_prefix: str, plaintext: str | None) -> str:
        """Return the affiliate id for an active, unexpired token and stamp its last use."""
        if not plaintext:
            raise InvalidOrExpiredToken("empty token")
        # Match and touch in one statement so a concurrent revoke cannot interleave.
        row = await write_returning(
            handle,
            f"UPDATE {qualify(schema_prefix, 'affiliate_tokens')} SET last_used_at = NOW() "
            "WHERE token_hash = :token_hash AND is_active = true "
            "AND (expires_at IS NULL OR expires_at > NOW()) "
            "RETURNING affiliate_id",
            {"token_hash": hash_token(plaintext)},
        )
        if row is None:
            raise InvalidOrExpiredToken("token unknown, revoked, or expired")
        return str(row["affiliate_id"])

    async def list_for_affiliate(
        self, handle: AsyncEngine, schema_prefix: str, affiliate_id: str, *, active_only: bool = False
    ) -> list[AffiliateToken]:
        affiliate_id = require_uuid(affiliate_id, field="affiliateId")
        active = " AND is_active = true" if active_only else ""
        rows = await fetch_all(
            handle,
            f"SELECT {column_list(TOKEN_METADATA_COLUMNS)} FROM {qualify(schema_prefix, 'affiliate_tokens')} "
            f"WHERE affiliate_id = :affiliate_id{active} ORDER BY created_at DESC",
            {"affiliate_id": affiliate_id},
        )
        return [_token_from_row(row) for row in rows]

    async def revoke(
        self, handle: AsyncEngine, schema_prefix: str, token_id: str, *, affiliate_id: str | None = None
    ) -> None:
        token_id = require_uuid(token_id, field="tokenId")
        params: dict[str, Any] = {"id": token_id}
        scope = ""
        if affiliate_id is not None:
            params["affiliate_id"] = require_uuid(affiliate_id, field="affiliateId")
            scope = " AND affiliate_id = :affiliate_id"
        # Revoking an already revoked token still matches its row.
        updated = await write(
            handle,
            f"UPDATE {qualify(schema_prefix, 'affiliate_tokens')} SET is_active = false, updated_at = NOW() "
            f"WHERE id = :id{scope}",
            params,
        )
        if updated == 0:
            raise TokenNotFound(f"affiliate token not found: {token_id}")
        logger.info("affiliate_token_revoked token_id=%s", token_id)

    async def sweep_expired(self, handle: AsyncEngine, schema_prefix: str) -> int:
        deleted = await write(
            handle,
            f"DELETE FROM {qualify(schema_prefix, 'affiliate_tokens')} "
            "WHERE expires_at IS NOT NULL AND expires_at < NOW()",
        )
        logger.info("affiliate_tokens_swept schema=%s deleted=%s", schema_prefix, deleted)
        return deleted
