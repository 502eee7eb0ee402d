"""Load the seed taxonomy from its JSON files."""
from pathlib import Path
from typing import Any, Dict, Optional
import json
import structlog

from pydantic import ValidationError as PydanticValidationError

from src.errors.exceptions import TaxonomyIntegrityError
from src.taxonomy.document import TaxonomyDocument

logger = structlog.get_logger(__name__)

SEED_DIR = Path(__file__).parent / "data"
CATEGORIES_FILE = "categories.pt.json"
MATCH_RULES_FILE = "category_match_rules.pt.json"
ATTRIBUTE_POLICIES_FILE = "attribute_policies.pt.json"


def _read_json(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except FileNotFoundError:
        raise TaxonomyIntegrityError(f"Taxonomy file not found: {path}")
    except json.JSONDecodeError as e:
        raise TaxonomyIntegrityError(f"Taxonomy file is not valid JSON: {path} ({e})") from e


def load_seed_document(directory: Optional[Path] = None) -> TaxonomyDocument:
    """Build and integrity-check a taxonomy document from the seed files.

    Args:
        directory: Directory holding the three seed files (defaults to the
            packaged ``data`` directory)

    Returns:
        Validated TaxonomyDocument

    Raises:
        TaxonomyIntegrityError: Missing/invalid files or broken references
    """
    base = directory or SEED_DIR
    categories_file = _read_json(base / CATEGORIES_FILE)
    rules_file = _read_json(base / MATCH_RULES_FILE)
    policies_file = _read_json(base / ATTRIBUTE_POLICIES_FILE)

    if not isinstance(rules_file.get("categories"), list):
        raise TaxonomyIntegrityError(f"Invalid {MATCH_RULES_FILE}: categories array is missing")

    try:
        document = TaxonomyDocument.model_validate({
            "schema_version": categories_file.get("schema_version", "1.0"),
            "categories": categories_file.get("categories", []),
            "rules": rules_file["categories"],
            "attribute_policies": policies_file,
        })
    except PydanticValidationError as e:
        raise TaxonomyIntegrityError(f"Taxonomy seed failed validation: {e}") from e

    document.check_integrity()
    logger.info(
        "taxonomy_seed_loaded",
        directory=str(base),
        categories=len(document.categories),
        rules=len(document.rules),
    )
    return document
