"""
Catalog Pydantic Models

Input rows read from catalog files and their normalized form consumed by
the decision engine.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.services.extraction.text import normalize_text


class CatalogRow(BaseModel):
    """One raw catalog row after column aliasing."""

    model_config = ConfigDict(frozen=True)

    sku: str = Field(min_length=1, description="Source SKU, unique within a catalog")
    title: str = Field(min_length=1, description="Product title")
    description: str = Field(default="", description="Free-text description")
    brand: str = Field(default="", description="Brand name")
    category_hint: Optional[str] = Field(
        default=None,
        description="Supplier category label, if the source provides one",
    )

    @field_validator("sku", "title", "description", "brand", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        if value is None:
            return ""
        return str(value).strip()


class NormalizedProduct(BaseModel):
    """Catalog row plus the normalized text fields the engine matches against."""

    model_config = ConfigDict(frozen=True)

    sku: str
    title: str
    description: str = ""
    brand: str = ""
    category_hint: Optional[str] = None
    normalized_title: str = ""
    normalized_description: str = ""
    normalized_brand: str = ""

    @property
    def normalized_text(self) -> str:
        """Title, description and brand joined for term matching."""
        return " ".join(
            part for part in (self.normalized_title, self.normalized_description, self.normalized_brand) if part
        )

    @property
    def attribute_text(self) -> str:
        """Title and description only (brand excluded) for attribute detectors."""
        return " ".join(part for part in (self.normalized_title, self.normalized_description) if part)

    @classmethod
    def from_row(cls, row: CatalogRow) -> "NormalizedProduct":
        return cls(
            sku=row.sku,
            title=row.title,
            description=row.description,
            brand=row.brand,
            category_hint=row.category_hint,
            normalized_title=normalize_text(row.title),
            normalized_description=normalize_text(row.description),
            normalized_brand=normalize_text(row.brand),
        )
