"""Taxonomy document: categories, match rules and attribute policies.

The document is an immutable value. Mutations go through
``src.taxonomy.rule_patch`` which returns a new document; the store persists
each document as canonical JSON so identical content always serializes to
identical bytes.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Literal, Optional
import hashlib
import json

from src.errors.exceptions import TaxonomyIntegrityError


AttributeType = Literal["enum", "number", "boolean", "text"]


class AttributeDefinition(BaseModel):
    """One attribute a category exposes."""

    model_config = ConfigDict(frozen=True)

    key: str
    label_pt: str
    type: AttributeType
    allowed_values: List[str] = Field(default_factory=list)
    required: bool = False


class CategoryDefinition(BaseModel):
    """Category schema entry."""

    model_config = ConfigDict(frozen=True)

    slug: str = Field(..., min_length=1)
    name_pt: str
    description_pt: str = ""
    family: str = Field(..., description="Product family used for fallback rescue")
    synonyms: List[str] = Field(default_factory=list)
    prototype_terms: List[str] = Field(default_factory=list)
    default_attributes: List[AttributeDefinition] = Field(default_factory=list)
    is_fallback: bool = False

    def prototype_text(self) -> str:
        """Text embedded as the category's semantic prototype."""
        return " ".join([self.name_pt, self.description_pt, *self.synonyms, *self.prototype_terms]).strip()


class CategoryRule(BaseModel):
    """Per-category matching rule.

    Term sets are the only fields the learning loop mutates besides the two
    threshold overrides.
    """

    model_config = ConfigDict(frozen=True)

    slug: str
    include_any: List[str] = Field(default_factory=list)
    include_all: List[str] = Field(default_factory=list)
    exclude_any: List[str] = Field(default_factory=list)
    strong_exclude_any: List[str] = Field(default_factory=list)
    high_risk: bool = False
    auto_min_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    auto_min_margin: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    contradiction_terms: List[str] = Field(
        default_factory=list,
        description="Each term present in the text counts as one contradiction",
    )
    requires_any: List[str] = Field(
        default_factory=list,
        description="One contradiction when none of these terms is present",
    )
    mixed_signal_terms: List[str] = Field(
        default_factory=list,
        description="Variant terms; hits for both top candidates block auto",
    )
    subtype_lock: Dict[str, str] = Field(
        default_factory=dict,
        description="Attribute values that pin this exact subtype (e.g. format + ruling)",
    )


class AttributePolicy(BaseModel):
    """Numeric validation policy for one attribute."""

    model_config = ConfigDict(frozen=True)

    min: Optional[float] = None
    max: Optional[float] = None
    allow_negative: bool = True
    pack_context_required: bool = False


class AttributePolicies(BaseModel):
    """Global attribute policies plus per-category overrides."""

    model_config = ConfigDict(frozen=True)

    attribute_policies: Dict[str, AttributePolicy] = Field(default_factory=dict)
    category_attribute_overrides: Dict[str, Dict[str, AttributePolicy]] = Field(default_factory=dict)

    def policy_for(self, category_slug: str, attribute_key: str) -> Optional[AttributePolicy]:
        overrides = self.category_attribute_overrides.get(category_slug, {})
        if attribute_key in overrides:
            return overrides[attribute_key]
        return self.attribute_policies.get(attribute_key)


class TaxonomyDocument(BaseModel):
    """Complete taxonomy content for one store."""

    model_config = ConfigDict(frozen=True)

    schema_version: str = "1.0"
    categories: List[CategoryDefinition]
    rules: List[CategoryRule] = Field(default_factory=list)
    attribute_policies: AttributePolicies = Field(default_factory=AttributePolicies)

    # -------------------------------------------------------------------------
    # Integrity
    # -------------------------------------------------------------------------

    def check_integrity(self) -> "TaxonomyDocument":
        """Verify referential integrity.

        Raises:
            TaxonomyIntegrityError: Empty schema, duplicate slugs, rules or
                overrides referencing unknown slugs, or no fallback category.
        """
        if not self.categories:
            raise TaxonomyIntegrityError("Taxonomy categories are empty")

        slugs = set()
        for category in self.categories:
            if category.slug in slugs:
                raise TaxonomyIntegrityError(f"Duplicate category slug: {category.slug}")
            slugs.add(category.slug)

        rule_slugs = set()
        for rule in self.rules:
            if rule.slug not in slugs:
                raise TaxonomyIntegrityError(f"Taxonomy rule references unknown category slug: {rule.slug}")
            if rule.slug in rule_slugs:
                raise TaxonomyIntegrityError(f"Duplicate rule for category slug: {rule.slug}")
            rule_slugs.add(rule.slug)

        for slug in self.attribute_policies.category_attribute_overrides:
            if slug not in slugs:
                raise TaxonomyIntegrityError(f"Attribute policy override references unknown category slug: {slug}")

        fallbacks = [category for category in self.categories if category.is_fallback]
        if len(fallbacks) != 1:
            raise TaxonomyIntegrityError(
                f"Taxonomy must declare exactly one fallback category, found {len(fallbacks)}"
            )
        return self

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    @property
    def fallback_category(self) -> CategoryDefinition:
        for category in self.categories:
            if category.is_fallback:
                return category
        raise TaxonomyIntegrityError("Taxonomy is missing a fallback category")

    def has_category(self, slug: str) -> bool:
        return any(category.slug == slug for category in self.categories)

    def category(self, slug: str) -> CategoryDefinition:
        for category in self.categories:
            if category.slug == slug:
                return category
        raise KeyError(slug)

    def rule_for(self, slug: str) -> CategoryRule:
        """Rule for a slug; categories without an explicit rule get an empty one."""
        for rule in self.rules:
            if rule.slug == slug:
                return rule
        return CategoryRule(slug=slug)

    def replace_rule(self, rule: CategoryRule) -> "TaxonomyDocument":
        """Return a copy with ``rule`` replacing (or appending) the rule for its slug."""
        rules = list(self.rules)
        for index, existing in enumerate(rules):
            if existing.slug == rule.slug:
                rules[index] = rule
                break
        else:
            rules.append(rule)
        return self.model_copy(update={"rules": rules})

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def canonical_json(self) -> str:
        """Deterministic JSON serialization (sorted keys, fixed indent)."""
        return json.dumps(self.model_dump(mode="json"), sort_keys=True, indent=2, ensure_ascii=False)

    def content_hash(self) -> str:
        return hashlib.sha256(self.canonical_json().encode("utf-8")).hexdigest()

    @classmethod
    def from_json(cls, content: str) -> "TaxonomyDocument":
        return cls.model_validate_json(content)
