from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncEngine

from taxrouter.adapters.base import column_list, fetch_all, fetch_one, write, write_returning
from taxrouter.core.errors import MalformedInput, NotFound
from taxrouter.domain.entities import Document
from taxrouter.persistence.guards import qualify, require_uuid


logger = logging.getLogger(__name__)

DOCUMENT_COLUMNS = ("id", "user_id", "name", "file_path", "type", "filing_id", "created_at", "updated_at")


def _document_from_row(row: dict[str, Any]) -> Document:
    return Document(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        name=row["name"],
        file_path=row["file_path"],
        type=row["type"],
        filing_id=str(row["filing_id"]) if row.get("filing_id") is not None else None,
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


class DocumentQueries:
    async def create_document(self, handle: AsyncEngine, schema_prefix: str, values: dict[str, Any]) -> Document:
        for name in ("user_id", "name", "file_path", "type"):
            if not values.get(name):
                raise MalformedInput(f"{name} is required")
        params = {
            "id": str(uuid4()),
            "user_id": require_uuid(values["user_id"], field="user_id"),
            "name": values["name"],
            "file_path": values["file_path"],
            "type": values["type"],
            "filing_id": require_uuid(values["filing_id"], field="filing_id") if values.get("filing_id") else None,
        }
        row = await write_returning(
            handle,
            f"INSERT INTO {qualify(schema_prefix, 'document')} "
            "(id, user_id, name, file_path, type, filing_id, created_at, updated_at) "
            "VALUES (:id, :user_id, :name, :file_path, :type, :filing_id, NOW(), NOW()) "
            f"RETURNING {column_list(DOCUMENT_COLUMNS)}",
            params,
        )
        if row is None:
            raise NotFound("document")
        logger.info("adapter_document_created document_id=%s filing_id=%s", row["id"], params["filing_id"])
        return _document_from_row(row)

    async def get_document(self, handle: AsyncEngine, schema_prefix: str, document_id: str) -> Document:
        document_id = require_uuid(document_id, field="documentId")
        row = await fetch_one(
            handle,
            f"SELECT {column_list(DOCUMENT_COLUMNS)} FROM {qualify(schema_prefix, 'document')} WHERE id = :id",
            {"id": document_id},
        )
        if row is None:
            raise NotFound("document", document_id)
        return _document_from_row(row)

    async def list_documents_by_filing(
        self, handle: AsyncEngine, schema_prefix: str, filing_id: str
    ) -> list[Document]:
        filing_id = require_uuid(filing_id, field="filingId")
        rows = await fetch_all(
            handle,
            f"SELECT {column_list(DOCUMENT_COLUMNS)} FROM {qualify(schema_prefix, 'document')} "
            "WHERE filing_id = :filing_id ORDER BY created_at DESC",
            {"filing_id": filing_id},
        )
        return [_document_from_row(row) for row in rows]

    async def delete_document(self, handle: AsyncEngine, schema_prefix: str, document_id: str) -> None:
        document_id = require_uuid(document_id, field="documentId")
        deleted = await write(
            handle,
            f"DELETE FROM {qualify(schema_prefix, 'document')} WHERE id = :id",
            {"id": document_id},
        )
        if deleted == 0:
            raise NotFound("document", document_id)
        logger.info("adapter_document_deleted document_id=%s", document_id)
