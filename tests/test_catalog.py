"""Tests for catalog persistence and inventory scanning."""

import json
from pathlib import Path

import pytest

from hocg_assets.catalog import (
    CardCatalog,
    CatalogCorrupt,
    asset_relpath,
    diff_catalogs,
    file_sha256,
    load_catalog,
    matches_filter,
    new_asset,
    save_catalog,
    scan_inventory,
)
from hocg_assets.models import CanonicalCard


def card(number: str = "hSD01-001", variant: int = 0, **fields) -> CanonicalCard:
    return CanonicalCard(
        card_number=number,
        illustration_variant=variant,
        expansion_code=number.split("-")[0],
        **fields,
    )


class TestLoadSave:
    """Tests for reading and writing the catalog file."""

    def test_missing_file_is_empty_catalog(self, tmp_path: Path) -> None:
        """No catalog yet means a first run."""
        catalog = load_catalog(tmp_path / "hocg_cards.json")
        assert len(catalog) == 0

    def test_round_trip_keeps_order(self, tmp_path: Path) -> None:
        """Cards come back in insertion order."""
        path = tmp_path / "hocg_cards.json"
        catalog = CardCatalog([card("hSD01-002"), card("hSD01-001"), card("hSD01-001", 1)])

        save_catalog(catalog, path)
        loaded = load_catalog(path)

        assert list(loaded.cards) == ["hSD01-002#0", "hSD01-001#0", "hSD01-001#1"]

    def test_file_is_readable_json(self, tmp_path: Path) -> None:
        """Catalog is indented UTF-8 JSON ending with a newline."""
        path = tmp_path / "hocg_cards.json"
        save_catalog(CardCatalog([card(name="ときのそら")]), path)

        text = path.read_text(encoding="utf-8")
        assert "ときのそら" in text
        assert text.endswith("}\n")
        assert json.loads(text)["cards"]["hSD01-001#0"]["name"] == "ときのそら"

    def test_no_temp_files_left(self, tmp_path: Path) -> None:
        """Atomic write leaves only the catalog."""
        save_catalog(CardCatalog([card()]), tmp_path / "hocg_cards.json")
        assert [p.name for p in tmp_path.iterdir()] == ["hocg_cards.json"]

    def test_invalid_json_is_corrupt(self, tmp_path: Path) -> None:
        """Truncated file raises CatalogCorrupt."""
        path = tmp_path / "hocg_cards.json"
        path.write_text('{"cards": {', encoding="utf-8")

        with pytest.raises(CatalogCorrupt):
            load_catalog(path)

    def test_invalid_entry_is_corrupt(self, tmp_path: Path) -> None:
        """Entries that fail validation raise CatalogCorrupt."""
        path = tmp_path / "hocg_cards.json"
        path.write_text('{"cards": {"x": {"illustration_variant": "a"}}}', encoding="utf-8")

        with pytest.raises(CatalogCorrupt):
            load_catalog(path)


class TestFilters:
    """Tests for number / expansion filters."""

    def test_number_filter_is_substring(self) -> None:
        assert matches_filter("hSD01-001", "hSD01", "sd01-00", None)
        assert not matches_filter("hSD01-001", "hSD01", "hBP01", None)

    def test_expansion_is_exact(self) -> None:
        assert matches_filter("hSD01-001", "hSD01", None, "hsd01")
        assert not matches_filter("hSD01-001", "hSD01", None, "hSD0")

    def test_filtered_keeps_catalog_order(self) -> None:
        catalog = CardCatalog([card("hBP01-002"), card("hSD01-001"), card("hBP01-001")])
        assert [c.card_number for c in catalog.filtered(expansion="hBP01")] == [
            "hBP01-002",
            "hBP01-001",
        ]


class TestDiff:
    """Tests for change flags."""

    def test_flags(self) -> None:
        """New, changed and unchanged cards are told apart."""
        previous = CardCatalog([card("hSD01-001", name="A"), card("hSD01-002", name="B")])
        current = CardCatalog(
            [card("hSD01-001", name="A"), card("hSD01-002", name="B2"), card("hSD01-003")]
        )

        assert diff_catalogs(previous, current) == {
            "hSD01-001#0": "unchanged",
            "hSD01-002#0": "metadata-changed",
            "hSD01-003#0": "newly-created",
        }

    def test_provenance_is_not_a_change(self) -> None:
        """Only merged values count."""
        before = card(name="A")
        after = card(name="A", provenance={"name": {"source_id": "x", "priority": 3}})

        assert diff_catalogs(CardCatalog([before]), CardCatalog([after])) == {
            "hSD01-001#0": "unchanged"
        }


class TestInventory:
    """Tests for deriving asset state from disk."""

    def test_paths_are_deterministic(self) -> None:
        assert asset_relpath("hBP01-104", 2, "native", "webp") == "native/hBP01/hBP01-104_2.webp"

    def test_states(self, tmp_path: Path) -> None:
        """verified when the hash matches, cached when it does not, else missing."""
        c = card()
        good = new_asset(c, "native", "webp")
        bad = new_asset(c, "native", "png")
        gone = new_asset(c, "proxy", "webp")

        for asset, data in ((good, b"good"), (bad, b"changed on disk")):
            path = asset.path_in(tmp_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        good.content_hash = file_sha256(good.path_in(tmp_path))
        bad.content_hash = "0" * 64
        gone.content_hash = "0" * 64

        catalog = CardCatalog([c], [good, bad, gone])
        inventory = scan_inventory(catalog, tmp_path)

        assert inventory[good.asset_key].state == "verified"
        assert inventory[bad.asset_key].state == "cached"
        assert inventory[gone.asset_key].state == "missing"
