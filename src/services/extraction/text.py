"""Text normalization and token-level detectors for Portuguese product titles."""
import re
import unicodedata
from typing import List, Optional

STOP_WORDS = frozenset({
    "de", "da", "do", "dos", "das", "e", "a", "o", "as", "os", "para", "com",
    "sem", "um", "uma", "na", "no", "em", "por", "kit", "escolar",
})

_NON_WORD = re.compile(r"[^\w\s./-]", re.UNICODE)
_SPACES = re.compile(r"\s+")

PACK_CONTEXT_PATTERN = re.compile(r"(pack|caixa|conjunto|kit|unid|unidades|pcs|pecas|x\s*\d+)")
SHEET_CONTEXT_PATTERN = re.compile(r"(folhas|fls|resma|caderno|bloco|recarga)")


def normalize_text(value: Optional[str]) -> str:
    """Strip accents and punctuation, collapse whitespace, lowercase."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFD", value)
    without_accents = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    cleaned = _NON_WORD.sub(" ", without_accents).replace("_", " ")
    return _SPACES.sub(" ", cleaned).strip().lower()


def tokenize(text: str) -> List[str]:
    """Content tokens: normalized, length > 1, stop words removed."""
    return [
        token
        for token in normalize_text(text).split(" ")
        if len(token) > 1 and token not in STOP_WORDS
    ]


def fnv1a_32(value: str) -> int:
    """Stable 32-bit FNV-1a hash (process independent, unlike ``hash``)."""
    result = 0x811C9DC5
    for byte in value.encode("utf-8"):
        result ^= byte
        result = (result * 0x01000193) & 0xFFFFFFFF
    return result


def has_term(normalized_text: str, term: str, allow_plural: bool = False) -> bool:
    """Word-boundary match of a (possibly multi-word) term.

    With ``allow_plural`` each word may also carry a plural ``s`` or ``es``.
    """
    normalized_term = normalize_text(term)
    if not normalized_term:
        return False
    suffix = r"(?:e?s)?" if allow_plural else ""
    pattern = r"\s+".join(re.escape(part) + suffix for part in normalized_term.split(" ") if part)
    return re.search(rf"(?:^|\b){pattern}(?:\b|$)", normalized_text) is not None


def detect_format(text: str) -> Optional[str]:
    normalized = normalize_text(text)
    if re.search(r"\ba4\b", normalized):
        return "A4"
    if re.search(r"\ba5\b", normalized):
        return "A5"
    return None


def detect_ruling(text: str) -> Optional[str]:
    normalized = normalize_text(text)
    if re.search(r"(quadriculado|quadriculada|grid|milimetrado)", normalized):
        return "quadriculado"
    if re.search(r"(pautado|pautada|linhado|linhada|ruled)", normalized):
        return "pautado"
    if re.search(r"(liso|sem pauta|blank)", normalized):
        return "liso"
    return None


def detect_pack_count(text: str) -> Optional[int]:
    normalized = normalize_text(text)
    match = re.search(r"(?:pack|caixa|conjunto|kit)\s*(?:de\s*)?(\d{1,3})", normalized)
    if match:
        return int(match.group(1))
    match = re.search(r"\b(\d{1,3})\s*(?:un|unid|unidades|pcs|pecas)\b", normalized)
    if match:
        return int(match.group(1))
    return None


def parse_number(text: str, pattern: str) -> Optional[float]:
    """First capture group of ``pattern`` as a float (comma decimals accepted)."""
    match = re.search(pattern, text)
    if not match:
        return None
    try:
        return float(match.group(1).replace(",", "."))
    except ValueError:
        return None
