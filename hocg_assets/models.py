"""Pydantic data models for card records, the canonical catalog and image assets."""

import hashlib
import json
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from hocg_assets.config import DEFAULT_PER_ORIGIN_LIMIT, DEFAULT_WORKERS

Locale = Literal["native", "proxy"]
ImageFormat = Literal["webp", "png"]
AssetState = Literal["missing", "cached", "stale", "verified"]
ChangeFlag = Literal["unchanged", "metadata-changed", "newly-created"]
WorkAction = Literal["skip", "fetch", "refetch", "convert-only"]

# Fields folded field-by-field during reconciliation, in serialization order
MERGED_FIELDS = (
    "expansion_code",
    "name",
    "translated_name",
    "rarity",
    "card_type",
    "max_amount",
    "image_reference",
    "price_reference",
)


def expansion_of(card_number: str) -> str:
    """Expansion code of a card number, e.g. 'hSD01' for 'hSD01-001'."""
    return card_number.split("-", 1)[0]


def is_empty(value) -> bool:
    """True for values that never overwrite a field (None, blank strings)."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


class CardRecord(BaseModel):
    """A normalized record emitted by one source adapter for one run."""

    source_id: str
    card_number: str
    illustration_variant: int | None = Field(
        default=0, description="Alternate art ordinal; None applies to every variant"
    )
    expansion_code: str | None = None
    name: str | None = None
    translated_name: str | None = None
    rarity: str | None = None
    card_type: str | None = None
    max_amount: int | None = None
    image_reference: str | None = Field(default=None, description="URL or local path")
    price_reference: str | None = None
    source_priority: int = Field(default=0, description="Lower is more authoritative")

    @model_validator(mode="after")
    def _derive_expansion(self) -> "CardRecord":
        self.card_number = self.card_number.strip()
        if is_empty(self.expansion_code):
            self.expansion_code = expansion_of(self.card_number)
        return self


class FieldOrigin(BaseModel):
    """The source that currently owns a canonical field."""

    source_id: str
    priority: int


class CanonicalCard(BaseModel):
    """The merged, authoritative record for one (card number, variant)."""

    card_number: str
    illustration_variant: int = 0
    expansion_code: str | None = None
    name: str | None = None
    translated_name: str | None = None
    rarity: str | None = None
    card_type: str | None = None
    max_amount: int | None = None
    image_reference: str | None = None
    price_reference: str | None = None
    provenance: dict[str, FieldOrigin] = Field(default_factory=dict)

    @property
    def key(self) -> tuple[str, int]:
        return (self.card_number, self.illustration_variant)

    @property
    def catalog_key(self) -> str:
        return card_key(self.card_number, self.illustration_variant)

    def content(self) -> dict:
        """Merged field values, without provenance."""
        return {
            "card_number": self.card_number,
            "illustration_variant": self.illustration_variant,
            **{name: getattr(self, name) for name in MERGED_FIELDS},
        }

    def content_digest(self) -> str:
        """Stable digest of the merged fields, used to tell when assets go stale."""
        payload = json.dumps(self.content(), sort_keys=True, ensure_ascii=False)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ImageAsset(BaseModel):
    """One image in the local asset store."""

    card_number: str
    illustration_variant: int = 0
    locale: Locale = "native"
    format: ImageFormat = "webp"
    local_path: str = Field(description="Posix path relative to the images root")
    content_hash: str | None = None
    image_hash: str | None = Field(default=None, description="Perceptual dHash")
    etag: str | None = None
    last_modified: str | None = None
    card_digest: str | None = None
    source_reference: str | None = None
    state: AssetState = "missing"

    @property
    def asset_key(self) -> str:
        return asset_key(self.card_number, self.illustration_variant, self.locale, self.format)

    def path_in(self, images_root: Path) -> Path:
        return images_root / self.local_path


def card_key(card_number: str, illustration_variant: int) -> str:
    """Catalog key for a card, e.g. 'hSD01-001#0'."""
    return f"{card_number}#{illustration_variant}"


def asset_key(card_number: str, illustration_variant: int, locale: str, fmt: str) -> str:
    """Inventory key for an asset, e.g. 'native/hSD01-001#0.webp'."""
    return f"{locale}/{card_key(card_number, illustration_variant)}.{fmt}"


class RunDirectives(BaseModel):
    """Options that steer one run, independent of how they were parsed."""

    number_filter: str | None = None
    expansion: str | None = None
    download_images: bool = False
    force: bool = False
    png_output: bool = Field(default=False, description="Optimized PNG instead of WebP")
    webp_lossless: bool = False
    package: bool = False
    clean: bool = False
    skip_update: bool = False
    revalidate: bool = False
    assets_path: Path = Path("assets")
    proxy_paths: list[Path] = Field(default_factory=list)
    workers: int = Field(default=DEFAULT_WORKERS, ge=1)
    per_origin_limit: int = Field(default=DEFAULT_PER_ORIGIN_LIMIT, ge=1)

    @property
    def image_format(self) -> ImageFormat:
        return "png" if self.png_output else "webp"

    @model_validator(mode="after")
    def _check_clean_with_skip_update(self) -> "RunDirectives":
        # a clean run discards the stored catalog, skip_update would save it back empty
        if self.clean and self.skip_update:
            raise ValueError("clean and skip_update cannot be combined")
        return self
