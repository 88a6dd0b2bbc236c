"""YAML loader for the per-document-type policy table."""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

# Cache for loaded policies
_policies_cache: Dict[str, Any] = {}


def get_rules_path() -> Path:
    """Get the path to the rules directory."""
    return Path(__file__).parent


def load_document_policies(force_reload: bool = False) -> Dict[str, Any]:
    """
    Load the document policy table from YAML.

    Args:
        force_reload: Force reload from disk even if cached

    Returns:
        Dictionary containing the raw policy table
    """
    global _policies_cache

    if _policies_cache and not force_reload:
        return _policies_cache

    policies_path = get_rules_path() / "document_policies.yaml"

    with open(policies_path, "r", encoding="utf-8") as f:
        _policies_cache = yaml.safe_load(f)
    logger.info(f"Loaded document policies from {policies_path}")
    return _policies_cache


@dataclass(frozen=True)
class DocumentPolicy:
    """Defaults and field aliases for one document type."""

    document_type: str
    label: str
    model_id: str
    manual_review: bool = False
    fallback_model_id: Optional[str] = None
    default_pay_frequency: Optional[str] = None
    field_aliases: Dict[str, List[str]] = field(default_factory=dict)

    def aliases_for(self, canonical_name: str) -> List[str]:
        """Analyzer field names that feed a canonical field, in priority order."""
        return self.field_aliases.get(canonical_name, [])


def get_document_policy(document_type: str) -> DocumentPolicy:
    """
    Get the policy for a document type.

    Raises:
        KeyError: If the policy table has no entry for the type
    """
    document_type = getattr(document_type, "value", document_type)
    entry = load_document_policies()["document_types"][document_type]
    return DocumentPolicy(
        document_type=document_type,
        label=entry["label"],
        model_id=entry["model_id"],
        manual_review=bool(entry.get("manual_review", False)),
        fallback_model_id=entry.get("fallback_model_id"),
        default_pay_frequency=entry.get("default_pay_frequency"),
        field_aliases=entry.get("field_aliases", {}),
    )


def get_pay_frequency_multiplier(pay_frequency: Optional[str]) -> Decimal:
    """Annualization multiplier for a pay frequency, falling back to the paystub default."""
    multipliers = load_document_policies()["pay_frequency_multipliers"]
    if pay_frequency in multipliers:
        return Decimal(multipliers[pay_frequency])
    default_frequency = get_document_policy("PAYSTUB").default_pay_frequency
    return Decimal(multipliers[default_frequency])


def derive_pay_frequency(period_days: int) -> str:
    """Pay frequency implied by the length of a pay period in days."""
    bounds = load_document_policies()["pay_period_days"]
    for frequency, max_days in sorted(bounds.items(), key=lambda item: item[1]):
        if period_days <= max_days:
            return frequency
    return get_document_policy("PAYSTUB").default_pay_frequency
