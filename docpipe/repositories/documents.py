from __future__ import annotations

import json
import threading
from dataclasses import replace
from typing import Any

from docpipe.db.postgres import PostgresTxRunner, _validate_identifier
from docpipe.models import Document


class InMemoryDocumentsRepository:
    """Document records owned by the host application."""

    def __init__(self, documents: dict[str, Document] | None = None) -> None:
        self._documents = {} if documents is None else documents
        self._lock = threading.RLock()

    def upsert(self, *, document: Document) -> Document:
        with self._lock:
            self._documents[document.id] = replace(document)
        return document

    def get(self, *, firm_id: str, document_id: str) -> Document | None:
        with self._lock:
            row = self._documents.get(document_id)
        if row is None or row.firm_id != firm_id:
            return None
        return replace(row)

    def update_extracted_text(self, *, firm_id: str, document_id: str, text: str) -> Document | None:
        with self._lock:
            row = self._documents.get(document_id)
            if row is None or row.firm_id != firm_id:
                return None
            row.extracted_text = text
            return replace(row)


class PostgresDocumentsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "pipeline_documents") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def _write(self, cur: Any, document: Document) -> None:
        cur.execute(
            f"""
            INSERT INTO {self._table_name} (
                document_id, firm_id, matter_id, mime_type, payload
            ) VALUES (%s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(document_id) DO UPDATE
            SET matter_id = EXCLUDED.matter_id,
                mime_type = EXCLUDED.mime_type,
                updated_at = now(),
                payload = EXCLUDED.payload
            """,
            (
                document.id,
                document.firm_id,
                document.matter_id,
                document.mime_type,
                json.dumps(document.to_dict(), ensure_ascii=True, sort_keys=True),
            ),
        )

    def _fetch(self, cur: Any, *, firm_id: str, document_id: str, lock: bool = False) -> Document | None:
        cur.execute(
            f"""
            SELECT payload
            FROM {self._table_name}
            WHERE firm_id = %s AND document_id = %s
            LIMIT 1{" FOR UPDATE" if lock else ""}
            """,
            (firm_id, document_id),
        )
        row = cur.fetchone()
        if row is None or not isinstance(row[0], dict):
            return None
        return Document.from_dict(row[0])

    def upsert(self, *, document: Document) -> Document:
        def _op(conn: Any) -> Document:
            with conn.cursor() as cur:
                self._write(cur, document)
            return document

        return self._tx_runner.run_in_tx(tenant_id=document.firm_id, fn=_op)

    def get(self, *, firm_id: str, document_id: str) -> Document | None:
        def _op(conn: Any) -> Document | None:
            with conn.cursor() as cur:
                return self._fetch(cur, firm_id=firm_id, document_id=document_id)

        return self._tx_runner.run_in_tx(tenant_id=firm_id, fn=_op)

    def update_extracted_text(self, *, firm_id: str, document_id: str, text: str) -> Document | None:
        def _op(conn: Any) -> Document | None:
            with conn.cursor() as cur:
                row = self._fetch(cur, firm_id=firm_id, document_id=document_id, lock=True)
                if row is None:
                    return None
                row.extracted_text = text
                self._write(cur, row)
            return row

        return self._tx_runner.run_in_tx(tenant_id=firm_id, fn=_op)
