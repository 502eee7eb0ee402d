"""Completion capability.

``Completer`` is the narrow interface the pipeline depends on. The Ollama
implementation prompts a local model; ``NullCompleter`` returns empty
results and is used offline, in tests and as the degraded mode.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import json
import structlog

from src.models.catalog import NormalizedProduct
from src.services.llm.client import OllamaClient
from src.services.llm.retry import RetryPolicy
from src.taxonomy.document import CategoryDefinition

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CategoryProfile:
    """Profile generated for a candidate category name."""
    name: str
    description: str
    synonyms: List[str] = field(default_factory=list)
    attributes: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class CategoryChoice:
    """Model pick among close candidate categories."""
    category_slug: Optional[str]
    confidence: float
    reason: str = "llm_disambiguation"


def _product_payload(product: NormalizedProduct) -> Dict[str, str]:
    return {"title": product.title, "description": product.description, "brand": product.brand}


class Completer(ABC):
    """Completion service contract."""

    @abstractmethod
    async def generate_category_profile(
        self,
        candidate_name: str,
        sample_products: Sequence[NormalizedProduct],
    ) -> CategoryProfile:
        """Describe a candidate category from sample products."""

    @abstractmethod
    async def extract_attributes_batch(
        self,
        category: CategoryDefinition,
        products: Sequence[NormalizedProduct],
    ) -> Dict[str, Dict[str, Any]]:
        """Map sku -> {"values": {...}, "confidence": {...}}.

        Implementations may omit SKUs; callers treat a missing SKU as
        all-null values at zero confidence.
        """

    async def disambiguate_category(
        self,
        product: NormalizedProduct,
        candidates: Sequence[CategoryDefinition],
    ) -> CategoryChoice:
        """Pick one of ``candidates``; default implementation abstains."""
        return CategoryChoice(category_slug=None, confidence=0.0)

    async def close(self) -> None:
        return None


class NullCompleter(Completer):
    """Offline completer: no attributes, no picks, profile echoes the name."""

    async def generate_category_profile(
        self,
        candidate_name: str,
        sample_products: Sequence[NormalizedProduct],
    ) -> CategoryProfile:
        name = candidate_name.strip() or "Material Escolar"
        return CategoryProfile(
            name=name,
            description=f"{name} para material escolar.",
            synonyms=[name],
        )

    async def extract_attributes_batch(
        self,
        category: CategoryDefinition,
        products: Sequence[NormalizedProduct],
    ) -> Dict[str, Dict[str, Any]]:
        return {}


class OllamaCompleter(Completer):
    """Completer backed by a local Ollama model."""

    def __init__(self, client: Optional[OllamaClient] = None):
        self._client = client or OllamaClient()
        self._log = logger.bind(component="OllamaCompleter")

    async def generate_category_profile(
        self,
        candidate_name: str,
        sample_products: Sequence[NormalizedProduct],
    ) -> CategoryProfile:
        prompt = "\n".join([
            "Crie um perfil de categoria para material escolar.",
            "Responda APENAS com JSON {name, description, synonyms, attributes}.",
            f"candidate_name: {candidate_name}",
            f"sample_products: {json.dumps([_product_payload(p) for p in sample_products], ensure_ascii=False)}",
        ])
        data = await self._client.complete_json(prompt)
        synonyms = data.get("synonyms")
        attributes = data.get("attributes")
        return CategoryProfile(
            name=str(data.get("name") or candidate_name),
            description=str(data.get("description") or ""),
            synonyms=[str(s) for s in synonyms] if isinstance(synonyms, list) else [],
            attributes=[a for a in attributes if isinstance(a, dict)] if isinstance(attributes, list) else [],
        )

    async def extract_attributes_batch(
        self,
        category: CategoryDefinition,
        products: Sequence[NormalizedProduct],
    ) -> Dict[str, Dict[str, Any]]:
        if not products:
            return {}
        schema = [attribute.model_dump() for attribute in category.default_attributes]
        prompt = "\n".join([
            "Extraia atributos para multiplos produtos com base no schema da categoria.",
            "Nao invente valores; se nao encontrar, use null com baixa confianca.",
            "Retorne JSON {results:[{source_sku, values:{key:valor|null}, confidence:{key:0..1}}]}.",
            f"category_name: {category.name_pt}",
            f"category_description: {category.description_pt}",
            f"schema: {json.dumps(schema, ensure_ascii=False)}",
            "products: " + json.dumps(
                [{"source_sku": p.sku, **_product_payload(p)} for p in products],
                ensure_ascii=False,
            ),
        ])
        data = await self._client.complete_json(prompt)
        results = data.get("results")
        if not isinstance(results, list):
            self._log.warning("attribute_batch_malformed", category=category.slug)
            return {}

        requested = {product.sku for product in products}
        output: Dict[str, Dict[str, Any]] = {}
        for entry in results:
            if not isinstance(entry, dict):
                continue
            sku = str(entry.get("source_sku", ""))
            if sku in requested:
                output[sku] = {"values": entry.get("values"), "confidence": entry.get("confidence")}
        return output

    async def disambiguate_category(
        self,
        product: NormalizedProduct,
        candidates: Sequence[CategoryDefinition],
    ) -> CategoryChoice:
        prompt = "\n".join([
            "Escolha a categoria correta para o produto entre as candidatas.",
            "Retorne JSON {category_slug, confidence, reason}.",
            f"product: {json.dumps(_product_payload(product), ensure_ascii=False)}",
            "candidates: " + json.dumps(
                [{"slug": c.slug, "name_pt": c.name_pt, "description_pt": c.description_pt} for c in candidates],
                ensure_ascii=False,
            ),
        ])
        data = await self._client.complete_json(prompt)
        slug = data.get("category_slug")
        valid = {candidate.slug for candidate in candidates}
        try:
            confidence = float(data.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0
        if not isinstance(slug, str) or slug not in valid:
            return CategoryChoice(category_slug=None, confidence=0.0)
        return CategoryChoice(
            category_slug=slug,
            confidence=max(0.0, min(1.0, confidence)),
            reason="llm_disambiguation",
        )

    async def close(self) -> None:
        await self._client.close()


async def extract_attributes_with_degrade(
    completer: Completer,
    category: CategoryDefinition,
    products: Sequence[NormalizedProduct],
    retry_policy: RetryPolicy,
) -> Dict[str, Dict[str, Any]]:
    """Batch attribute extraction that never raises.

    Every requested SKU gets an entry. SKUs the service dropped, returned
    malformed, or that failed after retries get all-null values at zero
    confidence.
    """
    empty = {
        "values": {attribute.key: None for attribute in category.default_attributes},
        "confidence": {attribute.key: 0.0 for attribute in category.default_attributes},
    }
    try:
        raw = await retry_policy.run(
            completer.extract_attributes_batch,
            category,
            products,
            call_kind="attribute_batch",
        )
    except Exception as e:
        logger.warning(
            "attribute_batch_degraded",
            category=category.slug,
            products=len(products),
            error=str(e),
        )
        raw = {}

    output: Dict[str, Dict[str, Any]] = {}
    for product in products:
        entry = raw.get(product.sku) if isinstance(raw, dict) else None
        if (
            isinstance(entry, dict)
            and isinstance(entry.get("values"), dict)
            and isinstance(entry.get("confidence"), dict)
        ):
            output[product.sku] = entry
        else:
            output[product.sku] = {"values": dict(empty["values"]), "confidence": dict(empty["confidence"])}
    return output
