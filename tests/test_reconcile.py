"""Tests for merging source records into the canonical catalog."""

import json

from conftest import StaticSource, record

from hocg_assets.catalog import CardCatalog, dump_catalog
from hocg_assets.reconcile import ReconciliationEngine, SourceBatch
from hocg_assets.sources import PartialData, SourceUnavailable, TranslationSheetSource


def merge(*batches, previous=None):
    engine = ReconciliationEngine()
    sources = [StaticSource(b[0], b[1], b[2]) for b in batches]
    return engine.run(previous or CardCatalog(), sources)


class TestFieldPrecedence:
    """Tests for field-by-field folding."""

    def test_higher_priority_value_kept(self) -> None:
        """A lower-priority source never overrides a non-empty authoritative value."""
        a = [record("a", 1, name="Alpha", rarity="R")]
        b = [record("b", 2, name="Alpha (EN)", rarity=None)]

        card = merge(("a", 1, a), ("b", 2, b)).catalog.get("hSD01-001")

        assert card.name == "Alpha"
        assert card.rarity == "R"
        assert card.provenance["name"].source_id == "a"

    def test_lower_priority_backfills_empty_field(self) -> None:
        """An absent value is adopted from whichever source has one."""
        a = [record("a", 1, name="Alpha")]
        b = [record("b", 2, rarity="SR")]

        card = merge(("a", 1, a), ("b", 2, b)).catalog.get("hSD01-001")

        assert card.rarity == "SR"
        assert card.provenance["rarity"].source_id == "b"

    def test_higher_priority_takes_over_prior_value(self) -> None:
        """A more authoritative source replaces a value owned by a weaker one."""
        first = merge(("b", 2, [record("b", 2, name="Beta")]))
        second = merge(("a", 1, [record("a", 1, name="Alpha")]), previous=first.catalog)

        card = second.catalog.get("hSD01-001")
        assert card.name == "Alpha"
        assert second.changes["hSD01-001#0"] == "metadata-changed"

    def test_owner_can_update_its_field(self) -> None:
        """The source that owns a field may change it on a later run."""
        first = merge(("a", 1, [record("a", 1, rarity="R")]))
        second = merge(("a", 1, [record("a", 1, rarity="RR")]), previous=first.catalog)

        assert second.catalog.get("hSD01-001").rarity == "RR"

    def test_weaker_source_cannot_override_prior_value(self) -> None:
        """Prior values owned by a stronger source survive a run without it."""
        first = merge(("a", 1, [record("a", 1, name="Alpha")]))
        second = merge(("b", 2, [record("b", 2, name="Other")]), previous=first.catalog)

        assert second.catalog.get("hSD01-001").name == "Alpha"
        assert second.changes["hSD01-001#0"] == "unchanged"

    def test_arrival_order_does_not_matter(self) -> None:
        """Only priority decides provenance, not which batch comes first."""
        a = SourceBatch("a", 1, 0, [record("a", 1, name="Alpha")])
        b = SourceBatch("b", 2, 1, [record("b", 2, name="Beta", rarity="C")])
        engine = ReconciliationEngine()

        forward = engine.merge(CardCatalog(), [a, b])
        backward = engine.merge(CardCatalog(), [b, a])

        assert dump_catalog(forward.catalog) == dump_catalog(backward.catalog)


class TestConflicts:
    """Tests for equal-priority disagreements."""

    def test_first_listed_source_wins(self) -> None:
        """On equal priority the first configured source keeps the field."""
        result = merge(
            ("a", 5, [record("a", 5, name="Alpha")]),
            ("b", 5, [record("b", 5, name="Beta")]),
        )

        assert result.catalog.get("hSD01-001").name == "Alpha"
        assert len(result.conflicts) == 1
        conflict = result.conflicts[0]
        assert conflict.kept_source == "a"
        assert conflict.rejected_source == "b"
        assert conflict.rejected_value == "Beta"

    def test_agreeing_sources_record_no_conflict(self) -> None:
        """Equal values from equal-priority sources are not a conflict."""
        result = merge(
            ("a", 5, [record("a", 5, name="Alpha")]),
            ("b", 5, [record("b", 5, name="Alpha")]),
        )

        assert result.conflicts == []

    def test_equal_priority_replaces_absent_owner(self) -> None:
        """A field owned by a source that is silent this run goes to its equal."""
        first = merge(("a", 5, [record("a", 5, name="Alpha")]))
        second = merge(("b", 5, [record("b", 5, name="Beta")]), previous=first.catalog)

        assert second.catalog.get("hSD01-001").name == "Beta"
        assert second.conflicts == []


class TestVariants:
    """Tests for illustration variant handling."""

    def test_variants_stay_distinct(self) -> None:
        """Same number with different variants yields two cards."""
        records = [
            record("a", 0, illustration_variant=0, name="Alpha"),
            record("a", 0, illustration_variant=1, name="Alpha"),
        ]

        catalog = merge(("a", 0, records)).catalog

        assert len(catalog) == 2
        assert catalog.variants_of("hSD01-001") == [0, 1]

    def test_card_level_record_applies_to_every_variant(self) -> None:
        """Records without a variant fill in all known variants."""
        primary = [
            record("a", 0, illustration_variant=0, name="アルファ"),
            record("a", 0, illustration_variant=1, name="アルファ"),
        ]
        sheet = [record("sheet", 20, illustration_variant=None, translated_name="Alpha")]

        catalog = merge(("a", 0, primary), ("sheet", 20, sheet)).catalog

        assert catalog.get("hSD01-001", 0).translated_name == "Alpha"
        assert catalog.get("hSD01-001", 1).translated_name == "Alpha"

    def test_card_level_record_alone_creates_variant_zero(self) -> None:
        """A card only a supplementary source knows is still admitted."""
        sheet = [record("sheet", 20, card_number="hBP09-001", illustration_variant=None, name="X")]

        catalog = merge(("sheet", 20, sheet)).catalog

        assert list(catalog.cards) == ["hBP09-001#0"]


class TestOrderingAndIdempotence:
    """Tests for deterministic output."""

    def test_new_cards_sorted_after_existing(self) -> None:
        """Prior keys keep their place, new ones are appended in key order."""
        first = merge(("a", 0, [record("a", 0, card_number="hSD01-005")]))
        second = merge(
            (
                "a",
                0,
                [
                    record("a", 0, card_number="hSD01-003"),
                    record("a", 0, card_number="hSD01-001"),
                    record("a", 0, card_number="hSD01-005"),
                ],
            ),
            previous=first.catalog,
        )

        assert list(second.catalog.cards) == ["hSD01-005#0", "hSD01-001#0", "hSD01-003#0"]

    def test_rerun_is_byte_identical(self) -> None:
        """Same records twice produce the same file and no changes."""
        records = [record("a", 0, name="Alpha", rarity="R"), record("a", 0, card_number="hSD01-002")]
        first = merge(("a", 0, records))
        second = merge(("a", 0, records), previous=first.catalog)

        assert dump_catalog(first.catalog) == dump_catalog(second.catalog)
        assert set(second.changes.values()) == {"unchanged"}

    def test_previous_catalog_not_modified(self) -> None:
        """Merging works on a copy of the prior state."""
        first = merge(("a", 0, [record("a", 0, name="Alpha")]))
        before = json.loads(dump_catalog(first.catalog))

        merge(("a", 0, [record("a", 0, name="Changed")]), previous=first.catalog)

        assert json.loads(dump_catalog(first.catalog)) == before


class TestSourceFailures:
    """Tests for partial-source tolerance."""

    def test_unavailable_source_is_skipped(self) -> None:
        """One broken adapter does not block the others."""
        good = StaticSource("a", 0, [record("a", 0, name="Alpha")])
        broken = StaticSource("b", 1, error=SourceUnavailable("timeout"))

        result = ReconciliationEngine().run(CardCatalog(), [broken, good])

        assert len(result.catalog) == 1
        assert [f.source_id for f in result.failed_sources] == ["b"]

    def test_outage_keeps_known_cards(self) -> None:
        """Cards from a previous run survive a source that returns nothing."""
        first = merge(("a", 0, [record("a", 0, card_number="hSD01-001")]))
        broken = StaticSource("a", 0, error=SourceUnavailable("down"))

        result = ReconciliationEngine().run(first.catalog, [broken])

        assert "hSD01-001#0" in result.catalog
        assert result.changes["hSD01-001#0"] == "unchanged"

    def test_partial_data_records_are_kept(self) -> None:
        """Records read before a failure are still merged."""
        partial = StaticSource(
            "a", 0, error=PartialData("page 2 failed", [record("a", 0, name="Alpha")])
        )

        result = ReconciliationEngine().run(CardCatalog(), [partial])

        assert result.catalog.get("hSD01-001").name == "Alpha"
        assert result.failed_sources[0].partial is True

    def test_unexpected_adapter_error_is_contained(self) -> None:
        good = StaticSource("a", 0, [record("a", 0, name="Alpha")])
        buggy = StaticSource("b", 1, error=KeyError("card_number"))

        result = ReconciliationEngine().run(CardCatalog(), [good, buggy])

        assert result.catalog.get("hSD01-001").name == "Alpha"
        assert [f.source_id for f in result.failed_sources] == ["b"]

    def test_badly_encoded_sheet_is_skipped(self, tmp_path) -> None:
        """A sheet that is not UTF-8 only removes that source."""
        sheet = tmp_path / "sheet.csv"
        sheet.write_bytes(b'Setcode,Card Name "JP (EN)"\nhSD01-001,\xff\xfe\n')
        good = StaticSource("a", 0, [record("a", 0, name="Alpha")])

        result = ReconciliationEngine().run(
            CardCatalog(), [good, TranslationSheetSource(str(sheet))]
        )

        assert len(result.catalog) == 1
        assert [f.source_id for f in result.failed_sources] == ["translation_sheet"]
