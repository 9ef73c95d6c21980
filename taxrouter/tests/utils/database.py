from __future__ import annotations

import os

import pytest


TEST_DATABASE_URL = os.getenv("DATABASE_URL")

requires_database = pytest.mark.skipif(
    not TEST_DATABASE_URL, reason="DATABASE_URL is not set; tenant-schema integration tests need Postgres"
)

# Tenant-side tables as the mywelltax schema defines them, trimmed to the columns the core reads and writes.
TENANT_TABLES = (
    """
    CREATE TABLE {schema}.affiliate_tokens (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        affiliate_id UUID NOT NULL,
        token_hash VARCHAR(64) NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ,
        last_used_at TIMESTAMPTZ,
        is_active BOOLEAN NOT NULL DEFAULT true,
        notes TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE {schema}.commissions (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        affiliate_id UUID NOT NULL,
        filing_id UUID NOT NULL,
        user_id UUID NOT NULL,
        discount_code_id UUID,
        payment_id UUID,
        order_amount NUMERIC(10, 2) NOT NULL DEFAULT 0,
        discount_amount NUMERIC(10, 2) NOT NULL DEFAULT 0,
        net_amount NUMERIC(10, 2) NOT NULL DEFAULT 0,
        commission_rate NUMERIC(5, 2) NOT NULL DEFAULT 0,
        commission_amount NUMERIC(10, 2) NOT NULL DEFAULT 0,
        status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
        approved_at TIMESTAMPTZ,
        paid_at TIMESTAMPTZ,
        notes TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
)
