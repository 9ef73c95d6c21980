from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from taxrouter.adapters.base import column_list, fetch_all, fetch_one, write
from taxrouter.adapters.money import cents_to_decimal
from taxrouter.core.errors import MalformedInput, NotFound
from taxrouter.domain.entities import Client, ClientComprehensive
from taxrouter.persistence.guards import qualify, require_uuid
from taxrouter.services.crypto.secret_box import SecretBox, mask_stored_ssn


logger = logging.getLogger(__name__)

CLIENT_LIST_COLUMNS = (
    "id", "first_name", "last_name", "email", "phone", "address1", "city", "state", "zipcode", "role", "created_at",
)
CLIENT_DETAIL_COLUMNS = (
    "id", "first_name", "middle_name", "last_name", "email", "phone", "dob", "ssn",
    "address1", "address2", "city", "state", "zipcode", "role", "created_at",
)
SPOUSE_COLUMNS = (
    "id", "user_id", "first_name", "middle_name", "last_name", "email", "phone", "dob", "ssn",
    "is_death", "death_date", "created_at",
)
DEPENDENT_COLUMNS = (
    "id", "user_id", "first_name", "middle_name", "last_name", "dob", "ssn", "relationship",
    "time_with_applicant", "exclusive_claim", "created_at", "updated_at",
)
FILING_COLUMNS = (
    "id", "year", "user_id", "marital_status", "spouse", "source_of_income", "deductions", "income",
    "marketplace_insurance", "created_at", "updated_at",
)
MAX_PAGE_SIZE = 500


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def _id(value: Any) -> str | None:
    return str(value) if value is not None else None


def _client_from_row(row: dict[str, Any], *, ssn: str | None = None) -> Client:
    return Client(
        id=str(row["id"]),
        email=row.get("email") or "",
        role=row.get("role") or "user",
        created_at=row.get("created_at"),
        first_name=row.get("first_name"),
        middle_name=row.get("middle_name"),
        last_name=row.get("last_name"),
        phone=row.get("phone"),
        dob=_text(row.get("dob")),
        ssn=ssn,
        address1=row.get("address1"),
        address2=row.get("address2"),
        city=row.get("city"),
        state=row.get("state"),
        zipcode=row.get("zipcode"),
    )


class ClientQueries:
    _secret_box: SecretBox

    async def list_clients(self, handle: AsyncEngine, schema_prefix: str) -> list[Client]:
        rows = await fetch_all(
            handle,
            f"SELECT {column_list(CLIENT_LIST_COLUMNS)} FROM {qualify(schema_prefix, 'user')} "
            "WHERE role = 'user' ORDER BY created_at DESC",
        )
        logger.info("adapter_clients_listed schema=%s count=%s", schema_prefix, len(rows))
        return [_client_from_row(row) for row in rows]

    async def get_client(self, handle: AsyncEngine, schema_prefix: str, client_id: str) -> Client:
        client_id = require_uuid(client_id, field="clientId")
        row = await fetch_one(
            handle,
            f"SELECT {column_list(CLIENT_DETAIL_COLUMNS)} FROM {qualify(schema_prefix, 'user')} WHERE id = :id",
            {"id": client_id},
        )
        if row is None:
            raise NotFound("client", client_id)
        return _client_from_row(row, ssn=mask_stored_ssn(self._secret_box, row.get("ssn")))

    async def find_client_by_email(self, handle: AsyncEngine, schema_prefix: str, email: str) -> Client | None:
        if not email:
            raise MalformedInput("email is required")
        row = await fetch_one(
            handle,
            f"SELECT {column_list(CLIENT_LIST_COLUMNS)} FROM {qualify(schema_prefix, 'user')} "
            "WHERE LOWER(email) = LOWER(:email) AND role = 'user' LIMIT 1",
            {"email": email},
        )
        return _client_from_row(row) if row is not None else None

    async def get_client_stored_ssn(self, handle: AsyncEngine, schema_prefix: str, client_id: str) -> str | None:
        # Returns the value as stored (possibly sealed); callers unseal and never serialize it.
        client_id = require_uuid(client_id, field="clientId")
        row = await fetch_one(
            handle,
            f"SELECT ssn FROM {qualify(schema_prefix, 'user')} WHERE id = :id",
            {"id": client_id},
        )
        if row is None:
            raise NotFound("client", client_id)
        return row.get("ssn")

    async def complete_filing(self, handle: AsyncEngine, schema_prefix: str, filing_id: str) -> None:
        filing_id = require_uuid(filing_id, field="filingId")
        updated = await write(
            handle,
            f"UPDATE {qualify(schema_prefix, 'filing_status')} SET is_completed = true, status = 'COMPLETED' "
            "WHERE filing_id = :filing_id",
            {"filing_id": filing_id},
        )
        if updated == 0:
            raise NotFound("filing status", filing_id)
        logger.info("adapter_filing_completed filing_id=%s", filing_id)

    async def get_client_comprehensive(
        self, handle: AsyncEngine, schema_prefix: str, client_id: str
    ) -> ClientComprehensive:
        client = await self.get_client(handle, schema_prefix, client_id)
        spouse = await self._optional("spouse", client.id, self._spouse(handle, schema_prefix, client.id))
        dependents = await self._optional(
            "dependents", client.id, self._dependents(handle, schema_prefix, client.id)
        )
        filings = await self._optional("filings", client.id, self._filings(handle, schema_prefix, client.id))
        logger.info(
            "adapter_client_comprehensive client_id=%s filings=%s", client.id, len(filings or [])
        )
        return ClientComprehensive(
            client=client,
            spouse=spouse,
            dependents=dependents or [],
            filings=filings or [],
        )

    async def get_clients_by_filings(
        self, handle: AsyncEngine, schema_prefix: str, *, limit: int, offset: int
    ) -> list[ClientComprehensive]:
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise MalformedInput(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise MalformedInput("offset must be non-negative")
        filing = qualify(schema_prefix, "filing")
        rows = await fetch_all(
            handle,
            f"SELECT DISTINCT ON (f.user_id) f.user_id FROM {filing} f "
            "ORDER BY f.user_id, f.created_at DESC LIMIT :limit OFFSET :offset",
            {"limit": limit, "offset": offset},
        )
        results: list[ClientComprehensive] = []
        for row in rows:
            user_id = str(row["user_id"])
            try:
                results.append(await self.get_client_comprehensive(handle, schema_prefix, user_id))
            except (NotFound, SQLAlchemyError) as exc:
                logger.warning("adapter_client_by_filing_skipped client_id=%s error=%s", user_id, type(exc).__name__)
        return results

    async def _optional(self, what: str, client_id: str, pending: Any) -> Any:
        # Related collections are best-effort: a failed sub-query leaves that section empty.
        try:
            return await pending
        except SQLAlchemyError as exc:
            logger.warning("adapter_subquery_failed section=%s client_id=%s", what, client_id, exc_info=exc)
            return None

    async def _spouse(self, handle: AsyncEngine, schema_prefix: str, client_id: str) -> dict[str, Any] | None:
        row = await fetch_one(
            handle,
            f"SELECT {column_list(SPOUSE_COLUMNS)} FROM {qualify(schema_prefix, 'spouse')} "
            "WHERE user_id = :user_id LIMIT 1",
            {"user_id": client_id},
        )
        if row is None:
            return None
        row["ssn"] = mask_stored_ssn(self._secret_box, row.get("ssn"))
        return row

    async def _dependents(self, handle: AsyncEngine, schema_prefix: str, client_id: str) -> list[dict[str, Any]]:
        rows = await fetch_all(
            handle,
            f"SELECT {column_list(DEPENDENT_COLUMNS)} FROM {qualify(schema_prefix, 'dependent')} "
            "WHERE user_id = :user_id",
            {"user_id": client_id},
        )
        for row in rows:
            row["ssn"] = mask_stored_ssn(self._secret_box, row.get("ssn"))
            try:
                documents = await fetch_all(
                    handle,
                    f"SELECT record_name FROM {qualify(schema_prefix, 'dependent_document_map')} "
                    "WHERE dependent_id = :dependent_id ORDER BY created_at",
                    {"dependent_id": row["id"]},
                )
                row["documents"] = [doc["record_name"] for doc in documents]
            except SQLAlchemyError as exc:
                logger.warning("adapter_dependent_documents_failed dependent_id=%s", row["id"], exc_info=exc)
                row["documents"] = []
        return rows

    async def _filings(self, handle: AsyncEngine, schema_prefix: str, client_id: str) -> list[dict[str, Any]]:
        rows = await fetch_all(
            handle,
            f"SELECT {column_list(FILING_COLUMNS)} FROM {qualify(schema_prefix, 'filing')} "
            "WHERE user_id = :user_id ORDER BY year DESC",
            {"user_id": client_id},
        )
        for filing in rows:
            filing["spouse_id"] = _id(filing.pop("spouse", None))
            filing_id = filing["id"]
            sections = (
                ("status", self._filing_status),
                ("documents", self._filing_documents),
                ("properties", self._filing_properties),
                ("ira_contributions", self._filing_ira_contributions),
                ("charities", self._filing_charities),
                ("childcares", self._filing_childcares),
                ("payments", self._filing_payments),
                ("discounts", self._filing_discounts),
            )
            for key, loader in sections:
                try:
                    filing[key] = await loader(handle, schema_prefix, filing_id)
                except SQLAlchemyError as exc:
                    logger.warning(
                        "adapter_filing_section_failed section=%s filing_id=%s", key, filing_id, exc_info=exc
                    )
                    filing[key] = None if key == "status" else []
        return rows

    async def _filing_status(self, handle: AsyncEngine, schema_prefix: str, filing_id: Any) -> dict[str, Any] | None:
        return await fetch_one(
            handle,
            f"SELECT id, filing_id, latest_step, is_completed, status FROM {qualify(schema_prefix, 'filing_status')} "
            "WHERE filing_id = :filing_id",
            {"filing_id": filing_id},
        )

    async def _filing_documents(self, handle: AsyncEngine, schema_prefix: str, filing_id: Any) -> list[dict[str, Any]]:
        return await fetch_all(
            handle,
            "SELECT id, user_id, filing_id, name, file_path, type, created_at, updated_at "
            f"FROM {qualify(schema_prefix, 'document')} WHERE filing_id = :filing_id",
            {"filing_id": filing_id},
        )

    async def _filing_properties(
        self, handle: AsyncEngine, schema_prefix: str, filing_id: Any
    ) -> list[dict[str, Any]]:
        properties = await fetch_all(
            handle,
            "SELECT p.id, p.user_id, p.address1, p.address2, p.state, p.city, p.zipcode, p.purchase_price, "
            "p.closing_cost, p.purchase_date, p.rents, p.royalties, p.updated_at, p.created_at "
            f"FROM {qualify(schema_prefix, 'property')} p "
            f"JOIN {qualify(schema_prefix, 'filing_property_map')} fpm ON fpm.property_id = p.id "
            "WHERE fpm.filing_id = :filing_id",
            {"filing_id": filing_id},
        )
        for prop in properties:
            try:
                prop["expenses"] = await fetch_all(
                    handle,
                    f"SELECT id, property_id, name, amount, created_at FROM {qualify(schema_prefix, 'expense')} "
                    "WHERE property_id = :property_id",
                    {"property_id": prop["id"]},
                )
            except SQLAlchemyError as exc:
                logger.warning("adapter_property_expenses_failed property_id=%s", prop["id"], exc_info=exc)
                prop["expenses"] = []
        return properties

    async def _filing_ira_contributions(
        self, handle: AsyncEngine, schema_prefix: str, filing_id: Any
    ) -> list[dict[str, Any]]:
        return await fetch_all(
            handle,
            f"SELECT id, filing_id, account_type, amount FROM {qualify(schema_prefix, 'ira_contribution')} "
            "WHERE filing_id = :filing_id",
            {"filing_id": filing_id},
        )

    async def _filing_charities(self, handle: AsyncEngine, schema_prefix: str, filing_id: Any) -> list[dict[str, Any]]:
        return await fetch_all(
            handle,
            f"SELECT id, user_id, filing_id, name, contribution FROM {qualify(schema_prefix, 'charity')} "
            "WHERE filing_id = :filing_id",
            {"filing_id": filing_id},
        )

    async def _filing_childcares(
        self, handle: AsyncEngine, schema_prefix: str, filing_id: Any
    ) -> list[dict[str, Any]]:
        return await fetch_all(
            handle,
            "SELECT c.id, c.user_id, c.name, c.amount, c.tax_id, c.address1, c.address2, c.city, c.state, c.zipcode "
            f"FROM {qualify(schema_prefix, 'childcare')} c "
            f"JOIN {qualify(schema_prefix, 'filing_childcare_map')} fcm ON fcm.childcare_id = c.id "
            "WHERE fcm.filing_id = :filing_id",
            {"filing_id": filing_id},
        )

    async def _filing_payments(self, handle: AsyncEngine, schema_prefix: str, filing_id: Any) -> list[dict[str, Any]]:
        payments = await fetch_all(
            handle,
            "SELECT id, filing_id, stripe_session_id, amount, original_amount, discount_amount, discount_code, "
            f"status, created_at, updated_at FROM {qualify(schema_prefix, 'payment')} "
            "WHERE filing_id = :filing_id ORDER BY created_at DESC",
            {"filing_id": filing_id},
        )
        for payment in payments:
            # Payment amounts are stored in cents.
            for key in ("amount", "original_amount", "discount_amount"):
                payment[key] = cents_to_decimal(payment.get(key))
            try:
                items = await fetch_all(
                    handle,
                    "SELECT id, payment_id, price_id, name, quantity, unit_amount "
                    f"FROM {qualify(schema_prefix, 'payment_item')} WHERE payment_id = :payment_id",
                    {"payment_id": payment["id"]},
                )
            except SQLAlchemyError as exc:
                logger.warning("adapter_payment_items_failed payment_id=%s", payment["id"], exc_info=exc)
                items = []
            for item in items:
                item["unit_amount"] = cents_to_decimal(item.get("unit_amount"))
            payment["items"] = items
        return payments

    async def _filing_discounts(self, handle: AsyncEngine, schema_prefix: str, filing_id: Any) -> list[dict[str, Any]]:
        discounts = await fetch_all(
            handle,
            "SELECT fd.id, fd.filing_id, fd.discount_code_id, fd.original_amount, fd.discount_amount, "
            "fd.final_amount, fd.applied_at, dc.code "
            f"FROM {qualify(schema_prefix, 'filing_discounts')} fd "
            f"LEFT JOIN {qualify(schema_prefix, 'discount_codes')} dc ON dc.id = fd.discount_code_id "
            "WHERE fd.filing_id = :filing_id",
            {"filing_id": filing_id},
        )
        for discount in discounts:
            for key in ("original_amount", "discount_amount", "final_amount"):
                discount[key] = cents_to_decimal(discount.get(key))
        return discounts
