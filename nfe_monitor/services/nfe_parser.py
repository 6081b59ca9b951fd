"""Best-effort extraction of NF-e fields from SEFAZ payloads.

Two shapes are accepted: the NF-e XML (``nfeProc`` or bare ``NFe``, with or
without the portalfiscal namespace) and JSON answers from the query API,
whose field names have changed over time. JSON fields are looked up through
``FIELD_ALIASES``; the first alias present wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from xml.etree import ElementTree as ET

from dateutil import parser as date_parser

from ..errors import ParseError


class DocumentStatus(str, Enum):
    PROCESSED = "PROCESSED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    DENIED = "DENIED"


# cStat codes returned in protNFe/infProt
AUTHORIZED_CODES = {"100", "150"}
CANCELLED_CODES = {"101", "151", "155"}
DENIED_CODES = {"110", "301", "302", "303"}

STATUS_ALIASES = {
    "PROCESSADA": DocumentStatus.PROCESSED,
    "AUTORIZADA": DocumentStatus.PROCESSED,
    "REJEITADA": DocumentStatus.REJECTED,
    "CANCELADA": DocumentStatus.CANCELLED,
    "DENEGADA": DocumentStatus.DENIED,
}

FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "key": ("chaveAcesso", "chave", "chNFe", "accessKey", "key"),
    "number": ("numero", "nNF", "number"),
    "series": ("serie", "series"),
    "issue_date": ("dataEmissao", "dhEmi", "issueDate"),
    "total_value": ("valorTotal", "vNF", "totalValue", "valor"),
    "issuer_id": ("emitenteCnpj", "cnpjEmitente", "emitenteCpf", "issuerId"),
    "issuer_name": ("emitenteNome", "nomeEmitente", "razaoSocialEmitente", "issuerName"),
    "recipient_id": ("destinatarioCnpj", "cnpjDestinatario", "destinatarioCpf", "cpfDestinatario", "recipientId"),
    "recipient_name": ("destinatarioNome", "nomeDestinatario", "recipientName"),
    "status": ("status", "situacao"),
    "rejection_reason": ("motivoRejeicao", "xMotivo", "rejectionReason"),
    "rejection_code": ("codigoRejeicao", "cStat", "rejectionCode"),
    "rejection_date": ("dataRejeicao", "dhRecbto", "rejectionDate"),
}


# wrappers the query API has used around the document fields
JSON_CONTAINERS = ("nfe", "dados", "document")


@dataclass
class DocumentRecord:
    key: str
    number: str
    series: str
    issue_date: Optional[datetime]
    total_value: Decimal
    issuer_id: str
    issuer_name: str
    recipient_id: str
    recipient_name: str
    status: str
    rejection_reason: Optional[str] = None
    rejection_code: Optional[str] = None
    rejection_date: Optional[datetime] = None
    queried_at: Optional[datetime] = None

    def __post_init__(self):
        if self.status != DocumentStatus.REJECTED.value:
            self.rejection_reason = None
            self.rejection_code = None
            self.rejection_date = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "number": self.number,
            "series": self.series,
            "issueDate": self.issue_date,
            "totalValue": self.total_value,
            "issuerId": self.issuer_id,
            "issuerName": self.issuer_name,
            "recipientId": self.recipient_id,
            "recipientName": self.recipient_name,
            "status": self.status,
            "rejectionReason": self.rejection_reason,
            "rejectionCode": self.rejection_code,
            "rejectionDate": self.rejection_date,
            "queriedAt": self.queried_at,
        }


def normalize_status(value: Any) -> str:
    if value is None or str(value).strip() == "":
        return DocumentStatus.PROCESSED.value
    text = str(value).strip().upper()
    if text in STATUS_ALIASES:
        return STATUS_ALIASES[text].value
    return text


def parse_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        # str() first so floats keep their printed digits
        return Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ParseError(f"Invalid monetary value: {value!r}") from e


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return date_parser.isoparse(str(value).strip())
    except (ValueError, OverflowError) as e:
        raise ParseError(f"Invalid date: {value!r}") from e


def parse_loose_datetime(value: Any) -> Optional[datetime]:
    """Like parse_datetime, but also takes dd/mm/yyyy dates; unreadable ones become None."""
    try:
        return parse_datetime(value)
    except ParseError:
        pass
    try:
        return date_parser.parse(str(value).strip(), dayfirst=True)
    except (ValueError, OverflowError):
        return None


def status_from_code(code: str) -> str:
    if code in AUTHORIZED_CODES or not code:
        return DocumentStatus.PROCESSED.value
    if code in CANCELLED_CODES:
        return DocumentStatus.CANCELLED.value
    if code in DENIED_CODES:
        return DocumentStatus.DENIED.value
    return DocumentStatus.REJECTED.value


# -- XML ---------------------------------------------------------------------

def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child(element: Optional[ET.Element], name: str) -> Optional[ET.Element]:
    if element is None:
        return None
    for child in element:
        if _local(child.tag) == name:
            return child
    return None


def _path(element: Optional[ET.Element], *names: str) -> Optional[ET.Element]:
    for name in names:
        element = _child(element, name)
    return element


def _text(element: Optional[ET.Element], *names: str) -> str:
    found = _path(element, *names)
    if found is None or found.text is None:
        return ""
    return found.text.strip()


def _first_text(element: Optional[ET.Element], *names: str) -> str:
    for name in names:
        value = _text(element, name)
        if value:
            return value
    return ""


def parse_nfe_xml(xml_content: str) -> DocumentRecord:
    try:
        root = ET.fromstring(xml_content)
    except ET.ParseError as e:
        raise ParseError(f"Failed to parse NF-e XML: {e}") from e

    if _local(root.tag) == "nfeProc":
        nfe = _child(root, "NFe")
        protocol = _path(root, "protNFe", "infProt")
    elif _local(root.tag) == "NFe":
        nfe = root
        protocol = None
    else:
        nfe = None
        protocol = None

    inf_nfe = _child(nfe, "infNFe")
    if inf_nfe is None:
        raise ParseError("Invalid XML structure: infNFe element not found")

    ide = _child(inf_nfe, "ide")
    emit = _child(inf_nfe, "emit")
    if ide is None or emit is None:
        raise ParseError("Invalid XML structure: ide/emit elements not found")
    dest = _child(inf_nfe, "dest")

    key = (inf_nfe.get("Id") or "").strip()
    if key.startswith("NFe"):
        key = key[3:]
    if not key:
        key = _text(protocol, "chNFe")

    status = DocumentStatus.PROCESSED.value
    rejection = {}
    if protocol is not None:
        code = _text(protocol, "cStat")
        status = status_from_code(code)
        if status == DocumentStatus.REJECTED.value:
            rejection = {
                "rejection_reason": _text(protocol, "xMotivo") or None,
                "rejection_code": code,
                "rejection_date": parse_datetime(_text(protocol, "dhRecbto")),
            }

    return DocumentRecord(
        key=key,
        number=_text(ide, "nNF"),
        series=_text(ide, "serie"),
        issue_date=parse_datetime(_first_text(ide, "dhEmi", "dEmi")),
        total_value=parse_decimal(_text(inf_nfe, "total", "ICMSTot", "vNF")),
        issuer_id=_first_text(emit, "CNPJ", "CPF"),
        issuer_name=_text(emit, "xNome"),
        recipient_id=_first_text(dest, "CNPJ", "CPF", "idEstrangeiro"),
        recipient_name=_text(dest, "xNome"),
        status=status,
        **rejection,
    )


# -- JSON --------------------------------------------------------------------

def first_match(data: Dict[str, Any], field: str) -> Any:
    for alias in FIELD_ALIASES[field]:
        value = data.get(alias)
        if value is not None and value != "":
            return value
    return None


def _as_text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def extract_from_json(payload: Any) -> DocumentRecord:
    if not isinstance(payload, dict):
        raise ParseError("Unexpected SEFAZ payload: neither XML nor a JSON object", details=str(payload)[:500])

    data = payload
    for container in JSON_CONTAINERS:
        if isinstance(payload.get(container), dict):
            data = payload[container]
            break

    status = first_match(data, "status")
    if status is None and data.get("cStat") is not None:
        status = status_from_code(_as_text(data["cStat"]))

    return DocumentRecord(
        key=_as_text(first_match(data, "key")),
        number=_as_text(first_match(data, "number")),
        series=_as_text(first_match(data, "series")),
        issue_date=parse_loose_datetime(first_match(data, "issue_date")),
        total_value=parse_decimal(first_match(data, "total_value")),
        issuer_id=_as_text(first_match(data, "issuer_id")),
        issuer_name=_as_text(first_match(data, "issuer_name")),
        recipient_id=_as_text(first_match(data, "recipient_id")),
        recipient_name=_as_text(first_match(data, "recipient_name")),
        status=normalize_status(status),
        rejection_reason=first_match(data, "rejection_reason"),
        rejection_code=_as_text(first_match(data, "rejection_code")) or None,
        rejection_date=parse_loose_datetime(first_match(data, "rejection_date")),
    )
