"""Text normalization and attribute extraction for catalog products.

Key Components:
    - normalize_text / tokenize: Accent-stripping normalization and tokens
    - detect_format / detect_ruling / detect_pack_count: Token detectors
    - extract_attributes: Rule + completion-service attribute merge
    - AttributeExtraction: Extraction result value
"""
from src.services.extraction.text import (
    normalize_text,
    tokenize,
    has_term,
    fnv1a_32,
    detect_format,
    detect_ruling,
    detect_pack_count,
)
from src.services.extraction.attributes import (
    AttributeExtraction,
    attribute_detected,
    empty_extraction,
    extract_attributes,
    infer_attribute,
)

__all__: list[str] = [
    "normalize_text",
    "tokenize",
    "has_term",
    "fnv1a_32",
    "detect_format",
    "detect_ruling",
    "detect_pack_count",
    "AttributeExtraction",
    "attribute_detected",
    "empty_extraction",
    "extract_attributes",
    "infer_attribute",
]
