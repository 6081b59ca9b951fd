"""NF-e lookups with the local database as a write-through cache."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select

from ..config import Settings
from ..db.database import PersistenceGateway
from ..db.models.nfe_document import NfeDocument
from ..errors import (
    ConnectivityError,
    InvalidKeyError,
    InvalidPaginationError,
    NfeMonitorError,
    NotFoundError,
    ParseError,
    QueryError,
    UpstreamError,
)
from .nfe_parser import DocumentRecord, DocumentStatus, extract_from_json, parse_nfe_xml
from .status_monitor import StatusMonitor

logger = logging.getLogger(__name__)

KEY_PATTERN = re.compile(r"[0-9]{44}")
QUERY_ENDPOINT = "nfeConsultaProtocolo"

documents = NfeDocument.__table__

LISTING_COLUMNS = [
    documents.c.access_key,
    documents.c.number,
    documents.c.series,
    documents.c.issue_date,
    documents.c.total_value,
    documents.c.issuer_id,
    documents.c.issuer_name,
    documents.c.recipient_id,
    documents.c.recipient_name,
    documents.c.status,
    documents.c.queried_at,
]

# added to the table later; older databases may not have them
REJECTION_COLUMNS = [
    documents.c.rejection_reason,
    documents.c.rejection_code,
    documents.c.rejection_date,
]


def validate_key(key: Any) -> bool:
    return isinstance(key, str) and KEY_PATTERN.fullmatch(key) is not None


def record_from_row(row: Dict[str, Any]) -> DocumentRecord:
    return DocumentRecord(
        key=row["access_key"],
        number=row.get("number") or "",
        series=row.get("series") or "",
        issue_date=row.get("issue_date"),
        total_value=row.get("total_value"),
        issuer_id=row.get("issuer_id") or "",
        issuer_name=row.get("issuer_name") or "",
        recipient_id=row.get("recipient_id") or "",
        recipient_name=row.get("recipient_name") or "",
        status=row.get("status") or "",
        rejection_reason=row.get("rejection_reason"),
        rejection_code=row.get("rejection_code"),
        rejection_date=row.get("rejection_date"),
        queried_at=row.get("queried_at"),
    )


def check_page_bounds(limit: int, offset: int):
    if limit < 1 or offset < 0:
        raise InvalidPaginationError(f"Invalid page bounds: limit={limit}, offset={offset}")


@dataclass
class LookupResult:
    record: DocumentRecord
    from_cache: bool
    raw_content: Optional[str] = None


@dataclass
class DocumentPage:
    records: List[DocumentRecord]
    total: int
    limit: int
    offset: int

    @property
    def page(self) -> int:
        if self.limit < 1:
            return 1
        return self.offset // self.limit + 1

    @property
    def pages(self) -> int:
        if self.limit < 1 or not self.total:
            return 0
        return math.ceil(self.total / self.limit)


@dataclass
class RejectedPage(DocumentPage):
    degraded: bool = False
    message: Optional[str] = None


class DocumentLookupService:

    def __init__(self, settings: Settings, gateway: PersistenceGateway, monitor: StatusMonitor):
        self.settings = settings
        self.gateway = gateway
        self.monitor = monitor

    validate_key = staticmethod(validate_key)

    def _require_valid(self, key: Any):
        if not validate_key(key):
            raise InvalidKeyError(
                "Invalid access key. It must contain exactly 44 numeric digits.",
                details=key if isinstance(key, str) else None,
            )

    def _read_cached(self, key: str) -> Optional[Dict[str, Any]]:
        rows = self.gateway.execute(select(documents).where(documents.c.access_key == key))
        return rows[0] if rows else None

    # -- lookups ---------------------------------------------------------

    def lookup(self, key: str) -> LookupResult:
        self._require_valid(key)

        cached = self._read_cached(key)
        if cached is not None:
            return LookupResult(record_from_row(cached), from_cache=True, raw_content=cached.get("raw_content"))

        return self._lookup_remote(key)

    def _lookup_remote(self, key: str) -> LookupResult:
        response = self.monitor.request(QUERY_ENDPOINT, {"chaveAcesso": key}, "post")
        if not response.success:
            raise UpstreamError(response.error or "SEFAZ query failed", details=response.data)

        data = response.data
        xml_content = ""
        if isinstance(data, dict) and isinstance(data.get("xml"), str):
            xml_content = data["xml"].strip()
        elif isinstance(data, str) and data.lstrip().startswith("<"):
            xml_content = data.strip()

        if xml_content:
            record = parse_nfe_xml(xml_content)
        else:
            record = extract_from_json(data)

        if not record.key:
            record.key = key
        elif record.key != key:
            raise ParseError(f"SEFAZ answered for document {record.key}, expected {key}")

        record.queried_at = datetime.now(timezone.utc)
        self._upsert(record, xml_content or None)
        logger.info(f"NF-e {key} fetched from SEFAZ and cached (status {record.status})")
        return LookupResult(record, from_cache=False, raw_content=xml_content or None)

    def _upsert(self, record: DocumentRecord, raw_content: Optional[str]):
        values = {
            "access_key": record.key,
            "number": record.number,
            "series": record.series,
            "issue_date": record.issue_date,
            "total_value": record.total_value,
            "issuer_id": record.issuer_id,
            "issuer_name": record.issuer_name,
            "recipient_id": record.recipient_id,
            "recipient_name": record.recipient_name,
            "status": record.status,
            "rejection_reason": record.rejection_reason,
            "rejection_code": record.rejection_code,
            "rejection_date": record.rejection_date,
            "raw_content": raw_content,
            "queried_at": record.queried_at or datetime.now(timezone.utc),
        }
        self.gateway.execute(self.upsert_statement(values))

    def upsert_statement(self, values: Dict[str, Any]):
        dialect = self.gateway.dialect_name
        updated = [name for name in values if name != "access_key"]

        if dialect in ("sqlite", "postgresql"):
            if dialect == "sqlite":
                from sqlalchemy.dialects.sqlite import insert as dialect_insert
            else:
                from sqlalchemy.dialects.postgresql import insert as dialect_insert
            statement = dialect_insert(documents).values(**values)
            return statement.on_conflict_do_update(
                index_elements=[documents.c.access_key],
                set_={name: statement.excluded[name] for name in updated},
            )

        if dialect in ("mysql", "mariadb"):
            from sqlalchemy.dialects.mysql import insert as dialect_insert

            statement = dialect_insert(documents).values(**values)
            return statement.on_duplicate_key_update(
                {name: statement.inserted[name] for name in updated}
            )

        raise QueryError(f"Upsert is not supported for database dialect '{dialect}'")

    def get_cached(self, key: str) -> DocumentRecord:
        self._require_valid(key)
        cached = self._read_cached(key)
        if cached is None:
            raise NotFoundError("NF-e not found in the database", details=key)
        return record_from_row(cached)

    def fetch_raw_document(self, key: str) -> str:
        self._require_valid(key)
        cached = self._read_cached(key)
        if cached is not None and cached.get("raw_content"):
            return cached["raw_content"]

        if cached is not None:
            # cached without XML: ask SEFAZ again
            result = self._lookup_remote(key)
        else:
            result = self.lookup(key)

        if not result.raw_content:
            raise NotFoundError("NF-e XML not available", details=key)
        return result.raw_content

    def save_raw_document(self, key: str, directory: Optional[str] = None) -> Path:
        root = Path(self.settings.xml_export_dir).resolve()
        target = (root / directory).resolve() if directory else root
        if target != root and root not in target.parents:
            raise ValueError(f"Directory must be inside {root}")

        raw_content = self.fetch_raw_document(key)
        target.mkdir(parents=True, exist_ok=True)
        file_path = target / f"nfe-{key}.xml"
        file_path.write_text(raw_content, encoding="utf-8")
        logger.info(f"NF-e {key} XML saved to {file_path}")
        return file_path

    # -- listings --------------------------------------------------------

    def _count(self, *criteria) -> int:
        statement = select(func.count().label("total")).select_from(documents)
        if criteria:
            statement = statement.where(*criteria)
        rows = self.gateway.execute(statement)
        return int(rows[0]["total"]) if rows else 0

    def list_documents(self, limit: int = 10, offset: int = 0) -> DocumentPage:
        check_page_bounds(limit, offset)
        statement = (
            select(*LISTING_COLUMNS, *REJECTION_COLUMNS)
            .order_by(documents.c.queried_at.desc(), documents.c.id.desc())
            .limit(limit)
            .offset(offset)
        )
        rows = self.gateway.execute(statement)
        return DocumentPage([record_from_row(row) for row in rows], self._count(), limit, offset)

    def list_rejected(self, limit: int = 10, offset: int = 0) -> RejectedPage:
        """Rejected documents, most recently queried first.

        Never raises for store trouble. If the rejection columns are missing
        they come back as None; if the table can not be read at all the page
        is empty. Both cases set ``degraded``.
        """
        check_page_bounds(limit, offset)
        is_rejected = documents.c.status == DocumentStatus.REJECTED.value

        def page_of(columns):
            statement = (
                select(*columns)
                .where(is_rejected)
                .order_by(documents.c.queried_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return [record_from_row(row) for row in self.gateway.execute(statement)]

        try:
            total = self._count(is_rejected)
        except NfeMonitorError as e:
            logger.error(f"Error counting rejected NF-es: {e.message} ({e.details})")
            return RejectedPage([], 0, limit, offset, degraded=True, message="Rejected documents could not be loaded")

        try:
            return RejectedPage(page_of(LISTING_COLUMNS + REJECTION_COLUMNS), total, limit, offset)
        except ConnectivityError as e:
            logger.error(f"Error listing rejected NF-es: {e.message}")
            return RejectedPage([], total, limit, offset, degraded=True, message="Rejected documents could not be loaded")
        except QueryError as e:
            logger.warning(f"Rejection details unavailable, listing without them: {e.details}")

        try:
            records = page_of(LISTING_COLUMNS)
        except NfeMonitorError as e:
            logger.error(f"Error listing rejected NF-es: {e.message} ({e.details})")
            return RejectedPage([], total, limit, offset, degraded=True, message="Rejected documents could not be loaded")
        return RejectedPage(records, total, limit, offset, degraded=True, message="Rejection details unavailable")
