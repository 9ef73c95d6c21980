from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

import pytest

from taxrouter.core.errors import InvalidOrExpiredToken, MalformedInput, TokenNotFound
from taxrouter.services.affiliate_tokens import AffiliateTokenAuthenticator, hash_token
from taxrouter.tests.utils.fakes import FakeEngine, FakeResult


def _token_row(affiliate_id: str, **overrides) -> dict:
    row = {
        "id": str(uuid4()),
        "affiliate_id": affiliate_id,
        "expires_at": None,
        "last_used_at": None,
        "is_active": True,
        "notes": None,
        "created_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "updated_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
    }
    row.update(overrides)
    return row


@pytest.mark.asyncio
async def test_generate_stores_only_the_hash() -> None:
    affiliate_id = str(uuid4())
    engine = FakeEngine([FakeResult([_token_row(affiliate_id, notes="partner portal")])])

    plaintext, token = await AffiliateTokenAuthenticator().generate(
        engine, "taxes", affiliate_id=affiliate_id, notes="partner portal"
    )

    assert len(plaintext) == 64
    int(plaintext, 16)
    sql, params = engine.statements[0]
    assert "INSERT INTO taxes.affiliate_tokens" in sql
    assert params["token_hash"] == hash_token(plaintext)
    assert plaintext not in params.values()
    assert token.affiliate_id == affiliate_id
    assert token.notes == "partner portal"


@pytest.mark.asyncio
async def test_generate_treats_naive_expiry_as_utc() -> None:
    affiliate_id = str(uuid4())
    engine = FakeEngine([FakeResult([_token_row(affiliate_id)])])

    await AffiliateTokenAuthenticator().generate(
        engine, "taxes", affiliate_id=affiliate_id, expires_at=datetime(2030, 1, 1)
    )

    assert engine.statements[0][1]["expires_at"] == datetime(2030, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_validate_matches_and_touches_in_one_statement() -> None:
    affiliate_id = str(uuid4())
    engine = FakeEngine([FakeResult([{"affiliate_id": affiliate_id}])])

    resolved = await AffiliateTokenAuthenticator().validate(engine, "taxes", "abc123")

    assert resolved == affiliate_id
    sql, params = engine.statements[0]
    assert sql.startswith("UPDATE taxes.affiliate_tokens SET last_used_at = NOW()")
    assert "is_active = true" in sql
    assert "expires_at > NOW()" in sql
    assert params == {"token_hash": hash_token("abc123")}


@pytest.mark.asyncio
async def test_validate_rejects_unknown_and_empty_tokens() -> None:
    authenticator = AffiliateTokenAuthenticator()
    with pytest.raises(InvalidOrExpiredToken):
        await authenticator.validate(FakeEngine([FakeResult([])]), "taxes", "revoked-or-expired")

    engine = FakeEngine()
    with pytest.raises(InvalidOrExpiredToken):
        await authenticator.validate(engine, "taxes", "")
    assert engine.statements == []


@pytest.mark.asyncio
async def test_revoke_scopes_to_affiliate_and_reports_missing() -> None:
    token_id, affiliate_id = str(uuid4()), str(uuid4())
    engine = FakeEngine([FakeResult(rowcount=1), FakeResult(rowcount=0)])
    authenticator = AffiliateTokenAuthenticator()

    await authenticator.revoke(engine, "taxes", token_id, affiliate_id=affiliate_id)
    sql, params = engine.statements[0]
    assert "AND affiliate_id = :affiliate_id" in sql
    assert params == {"id": token_id, "affiliate_id": affiliate_id}

    with pytest.raises(TokenNotFound):
        await authenticator.revoke(engine, "taxes", token_id)
    with pytest.raises(MalformedInput):
        await authenticator.revoke(engine, "taxes", "token-1")


@pytest.mark.asyncio
async def test_list_and_sweep() -> None:
    affiliate_id = str(uuid4())
    engine = FakeEngine([FakeResult([_token_row(affiliate_id), _token_row(affiliate_id)]), FakeResult(rowcount=4)])
    authenticator = AffiliateTokenAuthenticator()

    tokens = await authenticator.list_for_affiliate(engine, "taxes", affiliate_id, active_only=True)
    swept = await authenticator.sweep_expired(engine, "taxes")

    assert [token.affiliate_id for token in tokens] == [affiliate_id, affiliate_id]
    assert "AND is_active = true" in engine.statements[0][0]
    assert "token_hash" not in engine.statements[0][0]
    assert swept == 4
    assert engine.statements[1][0].startswith("DELETE FROM taxes.affiliate_tokens")


@pytest.mark.asyncio
async def test_invalid_schema_prefix_never_reaches_the_database() -> None:
    engine = FakeEngine()
    with pytest.raises(MalformedInput):
        await AffiliateTokenAuthenticator().validate(engine, "taxes; drop", "abc")
    assert engine.statements == []
