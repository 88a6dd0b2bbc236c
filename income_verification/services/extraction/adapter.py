"""Normalize analyzer responses into typed candidate fields."""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from income_verification.exceptions import ExtractionFailure
from income_verification.rules.loader import get_document_policy
from income_verification.services.extraction.analyzer_client import DocumentAnalyzer

logger = logging.getLogger(__name__)

_AMOUNT_PATTERN = re.compile(r"-?\$?\s*[\d,]+(?:\.\d+)?")


@dataclass
class ExtractedField:
    """One candidate value with the analyzer's confidence in it."""

    name: str
    kind: str  # currency, number, date, string
    value: Any
    confidence: float

    def as_decimal(self) -> Optional[Decimal]:
        """Value as a Decimal amount, parsing currency strings like "$1,234.50"."""
        if isinstance(self.value, Decimal):
            return self.value
        if isinstance(self.value, (int, float)):
            return Decimal(str(self.value))
        if isinstance(self.value, str):
            return parse_amount(self.value)
        return None

    def as_date(self) -> Optional[date]:
        if isinstance(self.value, datetime):
            return self.value.date()
        if isinstance(self.value, date):
            return self.value
        if isinstance(self.value, str):
            return parse_date(self.value)
        return None

    def as_text(self) -> Optional[str]:
        if self.value is None:
            return None
        text = str(self.value).strip()
        return text or None


@dataclass
class Extraction:
    """Normalized result of analyzing one document."""

    model_id: str
    fields: Dict[str, ExtractedField] = field(default_factory=dict)
    confidence: float = 0.0
    doc_type: Optional[str] = None
    is_layout: bool = False
    content: Optional[str] = None

    @property
    def has_fields(self) -> bool:
        return bool(self.fields)

    def first(self, aliases: Iterable[str]) -> Optional[ExtractedField]:
        """First field present under any of the aliases, in alias order."""
        for alias in aliases:
            candidate = self.fields.get(alias) or self.fields.get(_normalize_key(alias))
            if candidate is not None and candidate.value is not None:
                return candidate
        return None

    def all_of(self, aliases: Iterable[str]) -> List[ExtractedField]:
        """Every field present under the aliases."""
        found = []
        for alias in aliases:
            candidate = self.fields.get(alias) or self.fields.get(_normalize_key(alias))
            if candidate is not None and candidate.value is not None:
                found.append(candidate)
        return found

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "doc_type": self.doc_type,
            "confidence": self.confidence,
            "is_layout": self.is_layout,
            "fields": {
                name: {"kind": f.kind, "value": _jsonable(f.value), "confidence": f.confidence}
                for name, f in self.fields.items()
            },
        }


def parse_amount(text: str) -> Optional[Decimal]:
    """Parse the first amount in a string such as "$1,234.50"."""
    match = _AMOUNT_PATTERN.search(text)
    if not match:
        return None
    cleaned = match.group(0).replace("$", "").replace(",", "").replace(" ", "")
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def parse_date(text: str) -> Optional[date]:
    """Parse ISO and US-style dates."""
    text = text.strip()
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%B %d, %Y", "%b %d, %Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def _normalize_key(key: str) -> str:
    return re.sub(r"\s+", " ", key.strip().rstrip(":").lower())


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _normalize_field(name: str, raw: Dict[str, Any], out: Dict[str, ExtractedField]) -> None:
    """Flatten one analyzer field (either response style) into ``out``."""
    confidence = float(raw.get("confidence") or 0.0)
    kind = raw.get("kind") or raw.get("type") or "string"

    if kind == "object":
        properties = raw.get("properties") or raw.get("valueObject") or raw.get("value") or {}
        for child_name, child in properties.items():
            if isinstance(child, dict):
                _normalize_field(f"{name}.{child_name}", child, out)
        return
    if kind == "array":
        return

    # SDK style: {kind, value}; REST style: {type, valueX}
    if "value" in raw:
        value = raw["value"]
    else:
        value = next(
            (
                raw[key]
                for key in (
                    "valueCurrency",
                    "valueNumber",
                    "valueInteger",
                    "valueDate",
                    "valueString",
                    "content",
                )
                if key in raw
            ),
            None,
        )

    if kind == "currency":
        amount = value.get("amount") if isinstance(value, dict) else value
        value = Decimal(str(amount)) if amount is not None else None
    elif kind in ("number", "integer"):
        value = Decimal(str(value)) if isinstance(value, (int, float)) else value
        kind = "number"
    elif kind == "date":
        value = parse_date(value) if isinstance(value, str) else value

    out[name] = ExtractedField(name=name, kind=kind, value=value, confidence=confidence)


def normalize_result(result: Dict[str, Any], model_id: str) -> Extraction:
    """Convert a raw analyzer result into an ``Extraction``."""
    documents = result.get("documents") or []
    if documents and documents[0].get("fields"):
        document = documents[0]
        fields: Dict[str, ExtractedField] = {}
        for name, raw in document["fields"].items():
            if isinstance(raw, dict):
                _normalize_field(name, raw, fields)
        return Extraction(
            model_id=model_id,
            fields=fields,
            confidence=float(document.get("confidence") or 0.0),
            doc_type=document.get("docType"),
            content=result.get("content"),
        )

    # Layout result: key/value pairs become string fields keyed by their label
    fields = {}
    for pair in result.get("keyValuePairs") or []:
        key = (pair.get("key") or {}).get("content")
        value = (pair.get("value") or {}).get("content")
        if not key or value is None:
            continue
        normalized = _normalize_key(key)
        fields[normalized] = ExtractedField(
            name=normalized,
            kind="string",
            value=value,
            confidence=float(pair.get("confidence") or 0.0),
        )
    confidences = [f.confidence for f in fields.values()]
    return Extraction(
        model_id=model_id,
        fields=fields,
        confidence=min(confidences) if confidences else 0.0,
        is_layout=True,
        content=result.get("content"),
    )


class ExtractionAdapter:
    """Select the extraction model for a document type and normalize the result."""

    def __init__(self, analyzer: DocumentAnalyzer):
        self.analyzer = analyzer

    async def extract(self, content: bytes, document_type: str) -> Extraction:
        """
        Analyze a document and return normalized fields.

        Raises:
            ExtractionFailure: If the analyzer call throws or times out
        """
        policy = get_document_policy(document_type)
        extraction = await self._run(content, policy.model_id)

        # Forms the typed model cannot match fall back to the layout model
        if not extraction.has_fields and policy.fallback_model_id:
            logger.info(
                f"No typed fields from {policy.model_id}; retrying with {policy.fallback_model_id}"
            )
            extraction = await self._run(content, policy.fallback_model_id)

        logger.info(
            f"Extracted {len(extraction.fields)} fields for {policy.document_type} "
            f"with {extraction.model_id} (confidence {extraction.confidence:.2f})"
        )
        return extraction

    async def _run(self, content: bytes, model_id: str) -> Extraction:
        try:
            result = await self.analyzer.analyze(content, model_id)
        except ExtractionFailure:
            raise
        except Exception as e:
            logger.error(f"Document analyzer error with {model_id}: {e}")
            raise ExtractionFailure(f"Document analyzer failed: {e}", model_id) from e
        return normalize_result(result or {}, model_id)
