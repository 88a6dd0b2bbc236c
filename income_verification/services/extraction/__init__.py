"""Document analyzer client and response normalization."""
from income_verification.services.extraction.adapter import (
    ExtractedField,
    Extraction,
    ExtractionAdapter,
    normalize_result,
)
from income_verification.services.extraction.analyzer_client import (
    AzureDocumentAnalyzer,
    DocumentAnalyzer,
)

__all__ = [
    "AzureDocumentAnalyzer",
    "DocumentAnalyzer",
    "ExtractedField",
    "Extraction",
    "ExtractionAdapter",
    "normalize_result",
]
