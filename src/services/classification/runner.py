"""Bounded-concurrency classification of a product set.

Products have no ordering dependency, so they are classified through an
``asyncio.Semaphore``-bounded pool. Results come back in input order; the
caller reduces them only after every product has finished.
"""
import asyncio
from dataclasses import dataclass, field
from typing import List, Optional, Sequence
import structlog

from src.config import classifier_settings
from src.models.assignment import CategoryAssignment
from src.models.catalog import NormalizedProduct
from src.services.classification.engine import DecisionEngine
from src.services.llm.completer import CategoryChoice, Completer
from src.services.llm.embedder import Embedder
from src.services.llm.retry import RetryPolicy

logger = structlog.get_logger(__name__)

DISAMBIGUATION_CANDIDATES = 3


@dataclass
class ClassificationBatch:
    """Assignments for a product set plus capability bookkeeping."""
    assignments: List[CategoryAssignment] = field(default_factory=list)
    embedding_degraded: bool = False
    disambiguation_calls: int = 0
    disambiguation_failures: int = 0


async def _embed_products(
    products: Sequence[NormalizedProduct],
    embedder: Embedder,
    retry_policy: RetryPolicy,
) -> tuple:
    texts = [f"{product.title} {product.description}".strip() for product in products]
    try:
        vectors = await retry_policy.run(embedder.embed_many, texts, call_kind="product_embedding")
    except Exception as e:
        logger.warning("product_embedding_degraded", products=len(products), error=str(e))
        return [None] * len(products), True
    if len(vectors) != len(products):
        logger.warning("product_embedding_size_mismatch", expected=len(products), got=len(vectors))
        return [None] * len(products), True
    return vectors, False


async def assign_categories(
    products: Sequence[NormalizedProduct],
    engine: DecisionEngine,
    embedder: Embedder,
    completer: Optional[Completer] = None,
    concurrency: Optional[int] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> ClassificationBatch:
    """Classify ``products`` against ``engine``'s taxonomy snapshot.

    Args:
        products: Normalized products
        engine: Decision engine bound to one taxonomy version
        embedder: Embedding capability for product vectors
        completer: Optional completion capability used to break close calls
        concurrency: Pool size (defaults to ``CLASSIFIER_CONCURRENCY``)
        retry_policy: Shared capability retry policy

    Returns:
        ClassificationBatch with one assignment per product, in input order
    """
    policy = retry_policy or RetryPolicy.from_settings()
    batch = ClassificationBatch()
    if not products:
        return batch

    vectors, batch.embedding_degraded = await _embed_products(products, embedder, policy)
    semaphore = asyncio.Semaphore(concurrency or classifier_settings.concurrency)

    async def classify(product: NormalizedProduct, vector) -> CategoryAssignment:
        async with semaphore:
            candidates = engine.score_candidates(product, vector)
            choice: Optional[CategoryChoice] = None
            if completer is not None:
                ranked = engine.rank(candidates)
                if engine.needs_disambiguation(ranked):
                    batch.disambiguation_calls += 1
                    try:
                        choice = await policy.run(
                            completer.disambiguate_category,
                            product,
                            [candidate.category for candidate in ranked[:DISAMBIGUATION_CANDIDATES]],
                            call_kind="category_disambiguation",
                        )
                    except Exception as e:
                        batch.disambiguation_failures += 1
                        logger.warning("disambiguation_degraded", sku=product.sku, error=str(e))
            return engine.decide(product, vector, choice=choice, candidates=candidates)

    batch.assignments = list(
        await asyncio.gather(*(classify(product, vector) for product, vector in zip(products, vectors)))
    )
    logger.info(
        "products_classified",
        products=len(products),
        taxonomy_version=engine.snapshot.version_id,
        embedding_degraded=batch.embedding_degraded,
        disambiguation_calls=batch.disambiguation_calls,
    )
    return batch
