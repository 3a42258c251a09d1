"""Catalog file read/write and asset inventory utilities."""

import hashlib
import json
import os
import tempfile
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from hocg_assets.models import (
    CanonicalCard,
    ChangeFlag,
    ImageAsset,
    asset_key,
    card_key,
    expansion_of,
)

CATALOG_VERSION = 1


class CatalogCorrupt(Exception):
    """Previous catalog file could not be read."""

    pass


class CardCatalog:
    """Insertion-ordered mapping of card key -> CanonicalCard, plus the asset inventory.

    Order is part of the contract: plans, archives and the persisted file all
    follow it, so two runs over the same data serialize identically.
    """

    def __init__(
        self,
        cards: list[CanonicalCard] | None = None,
        assets: list[ImageAsset] | None = None,
    ):
        self.cards: dict[str, CanonicalCard] = {}
        self.assets: dict[str, ImageAsset] = {}
        for card in cards or []:
            self.add(card)
        for asset in assets or []:
            self.assets[asset.asset_key] = asset

    def __len__(self) -> int:
        return len(self.cards)

    def __iter__(self) -> Iterator[CanonicalCard]:
        return iter(self.cards.values())

    def __contains__(self, key: str) -> bool:
        return key in self.cards

    def add(self, card: CanonicalCard) -> None:
        """Insert or replace a card; replacing keeps its position."""
        self.cards[card.catalog_key] = card

    def get(self, card_number: str, illustration_variant: int = 0) -> CanonicalCard | None:
        return self.cards.get(card_key(card_number, illustration_variant))

    def variants_of(self, card_number: str) -> list[int]:
        """Known illustration variants of a card number, ascending."""
        return sorted(
            c.illustration_variant for c in self.cards.values() if c.card_number == card_number
        )

    def filtered(
        self, number_filter: str | None = None, expansion: str | None = None
    ) -> list[CanonicalCard]:
        """Cards matching the run filters, in catalog order."""
        return [
            c
            for c in self.cards.values()
            if matches_filter(c.card_number, c.expansion_code, number_filter, expansion)
        ]

    def expansions(self) -> list[str]:
        """Expansion codes in order of first appearance."""
        seen: dict[str, None] = {}
        for card in self.cards.values():
            seen.setdefault(card.expansion_code or expansion_of(card.card_number), None)
        return list(seen)

    def copy(self) -> "CardCatalog":
        return CardCatalog(
            cards=[c.model_copy(deep=True) for c in self.cards.values()],
            assets=[a.model_copy() for a in self.assets.values()],
        )

    def to_dict(self) -> dict:
        return {
            "version": CATALOG_VERSION,
            "cards": {
                key: card.model_dump(mode="json") for key, card in self.cards.items()
            },
            "assets": {
                key: asset.model_dump(mode="json") for key, asset in self.assets.items()
            },
        }


def matches_filter(
    card_number: str,
    expansion_code: str | None,
    number_filter: str | None,
    expansion: str | None,
) -> bool:
    """Number filter is a case-insensitive substring, expansion an exact code."""
    if number_filter and number_filter.lower() not in card_number.lower():
        return False
    if expansion:
        code = expansion_code or expansion_of(card_number)
        if code.lower() != expansion.lower():
            return False
    return True


def load_catalog(path: Path) -> CardCatalog:
    """Read a catalog file.

    Args:
        path: Path to the catalog JSON file

    Returns:
        Parsed catalog (empty if the file does not exist)

    Raises:
        CatalogCorrupt: File exists but is not a valid catalog
    """
    if not path.exists():
        return CardCatalog()

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CatalogCorrupt(f"Cannot read catalog {path}: {e}")

    if not isinstance(data, dict) or not isinstance(data.get("cards", {}), dict):
        raise CatalogCorrupt(f"Unexpected catalog layout in {path}")

    try:
        cards = [CanonicalCard.model_validate(c) for c in data.get("cards", {}).values()]
        assets = [ImageAsset.model_validate(a) for a in data.get("assets", {}).values()]
    except (ValidationError, AttributeError) as e:
        raise CatalogCorrupt(f"Invalid catalog entry in {path}: {e}")

    return CardCatalog(cards=cards, assets=assets)


def dump_catalog(catalog: CardCatalog) -> bytes:
    """Serialize a catalog to the on-disk byte representation."""
    text = json.dumps(catalog.to_dict(), indent=2, ensure_ascii=False)
    return (text + "\n").encode("utf-8")


def save_catalog(catalog: CardCatalog, path: Path) -> None:
    """Write the catalog atomically (temp file in the same folder, then rename).

    Args:
        catalog: Catalog to persist
        path: Destination catalog file
    """
    atomic_write_bytes(path, dump_catalog(catalog))


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write bytes to path so readers never observe a truncated file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def file_sha256(path: Path) -> str:
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def asset_relpath(card_number: str, illustration_variant: int, locale: str, fmt: str) -> str:
    """Deterministic store path, e.g. 'native/hSD01/hSD01-001_0.webp'."""
    return f"{locale}/{expansion_of(card_number)}/{card_number}_{illustration_variant}.{fmt}"


def new_asset(card: CanonicalCard, locale: str, fmt: str) -> ImageAsset:
    """Inventory entry for an asset that has not been written yet."""
    return ImageAsset(
        card_number=card.card_number,
        illustration_variant=card.illustration_variant,
        locale=locale,
        format=fmt,
        local_path=asset_relpath(card.card_number, card.illustration_variant, locale, fmt),
        state="missing",
    )


def scan_inventory(catalog: CardCatalog, images_root: Path) -> dict[str, ImageAsset]:
    """Derive the current state of every recorded asset from what is on disk.

    Args:
        catalog: Catalog whose inventory records are checked
        images_root: Root of the image store

    Returns:
        Asset key -> copy of the record with `state` recomputed
    """
    inventory = {}
    for key, asset in catalog.assets.items():
        path = asset.path_in(images_root)
        if not path.is_file():
            state = "missing"
        elif asset.content_hash and file_sha256(path) == asset.content_hash:
            state = "verified"
        else:
            state = "cached"
        inventory[key] = asset.model_copy(update={"state": state})
    return inventory


def inventory_key(card: CanonicalCard, locale: str, fmt: str) -> str:
    return asset_key(card.card_number, card.illustration_variant, locale, fmt)


def diff_catalogs(previous: CardCatalog, catalog: CardCatalog) -> dict[str, ChangeFlag]:
    """Change flag for every card of `catalog` relative to `previous`."""
    changes: dict[str, ChangeFlag] = {}
    for key, card in catalog.cards.items():
        before = previous.cards.get(key)
        if before is None:
            changes[key] = "newly-created"
        elif before.content() != card.content():
            changes[key] = "metadata-changed"
        else:
            changes[key] = "unchanged"
    return changes
