"""Reconciliation of source records into the canonical catalog.

Records are grouped by (card number, illustration variant) and folded into
the previous catalog entry field by field, most authoritative source first:
- a non-empty value replaces an empty one
- a source may always update the fields it already owns
- a higher-priority source (lower number) takes over a field
- on equal priority the source folded first in this run keeps the field and
  the disagreement is recorded as ConflictingData
"""

import logging
from dataclasses import dataclass, field
from typing import Sequence

from hocg_assets.catalog import CardCatalog, diff_catalogs
from hocg_assets.models import (
    MERGED_FIELDS,
    CanonicalCard,
    CardRecord,
    ChangeFlag,
    FieldOrigin,
    card_key,
    is_empty,
)
from hocg_assets.sources import PartialData, SourceAdapter, SourceFilter, SourceUnavailable

logger = logging.getLogger(__name__)


class ConflictingData(Exception):
    """Two equal-priority sources disagree on a field (recorded, never raised)."""

    def __init__(
        self, key: str, field_name: str, kept: FieldOrigin, kept_value, rejected: CardRecord
    ):
        self.key = key
        self.field_name = field_name
        self.kept_source = kept.source_id
        self.kept_value = kept_value
        self.rejected_source = rejected.source_id
        self.rejected_value = getattr(rejected, field_name)
        super().__init__(
            f"{key} {field_name}: kept {self.kept_value!r} from {self.kept_source}, "
            f"ignored {self.rejected_value!r} from {self.rejected_source}"
        )


@dataclass
class SourceBatch:
    """All records one adapter produced in this run."""

    source_id: str
    priority: int
    position: int
    records: list[CardRecord]


@dataclass
class SourceFailure:
    """An adapter that failed (partial=True if some of its records were kept)."""

    source_id: str
    reason: str
    partial: bool = False


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation."""

    catalog: CardCatalog
    changes: dict[str, ChangeFlag] = field(default_factory=dict)
    conflicts: list[ConflictingData] = field(default_factory=list)
    failed_sources: list[SourceFailure] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        counts = {"unchanged": 0, "metadata-changed": 0, "newly-created": 0}
        for flag in self.changes.values():
            counts[flag] += 1
        return counts


class ReconciliationEngine:
    """Collects from every adapter and merges the results into a new catalog."""

    def collect(
        self,
        sources: Sequence[SourceAdapter],
        source_filter: SourceFilter,
        progress_callback=None,
    ) -> tuple[list[SourceBatch], list[SourceFailure]]:
        """Run every adapter; a failing adapter is logged and skipped.

        Args:
            sources: Adapters in configured order
            source_filter: Filter handed to each adapter
            progress_callback: Optional callback(status_msg)

        Returns:
            (batches, failures)
        """
        batches = []
        failures = []
        for position, source in enumerate(sources):
            if progress_callback:
                progress_callback(f"Collecting from {source.source_id}...")
            try:
                records = source.collect(source_filter)
            except PartialData as e:
                logger.warning("Source %s returned partial data: %s", source.source_id, e)
                failures.append(SourceFailure(source.source_id, str(e), partial=True))
                records = e.records
            except SourceUnavailable as e:
                logger.warning("Source %s unavailable, skipping: %s", source.source_id, e)
                failures.append(SourceFailure(source.source_id, str(e)))
                continue
            except Exception as e:
                logger.exception("Source %s failed unexpectedly, skipping", source.source_id)
                failures.append(SourceFailure(source.source_id, f"Unexpected error: {e}"))
                continue

            if progress_callback:
                progress_callback(f"  {source.source_id}: {len(records)} records")
            batches.append(SourceBatch(source.source_id, source.priority, position, list(records)))
        return batches, failures

    def merge(self, previous: CardCatalog, batches: Sequence[SourceBatch]) -> ReconcileResult:
        """Fold source batches into a copy of the previous catalog.

        Args:
            previous: Prior catalog (empty on a first or clean run); not modified
            batches: Records per source, in any order

        Returns:
            ReconcileResult with the new catalog and a change flag per card
        """
        catalog = previous.copy()
        ordered = sorted(batches, key=lambda b: (b.priority, b.position))

        known_variants: dict[str, set[int]] = {}
        for card in catalog:
            known_variants.setdefault(card.card_number, set()).add(card.illustration_variant)
        for batch in ordered:
            for record in batch.records:
                if record.illustration_variant is not None:
                    known_variants.setdefault(record.card_number, set()).add(
                        record.illustration_variant
                    )

        new_cards: dict[str, CanonicalCard] = {}
        folded: dict[tuple[str, str], str] = {}  # (card key, field) -> source that set it this run
        conflicts: list[ConflictingData] = []

        for batch in ordered:
            for record in batch.records:
                if record.illustration_variant is None:
                    variants = sorted(known_variants.get(record.card_number) or {0})
                else:
                    variants = [record.illustration_variant]

                for variant in variants:
                    key = card_key(record.card_number, variant)
                    card = catalog.cards.get(key) or new_cards.get(key)
                    if card is None:
                        card = CanonicalCard(
                            card_number=record.card_number, illustration_variant=variant
                        )
                        new_cards[key] = card
                    self._fold(card, record, folded, conflicts)

        for key in sorted(new_cards, key=lambda k: new_cards[k].key):
            catalog.add(new_cards[key])

        for conflict in conflicts:
            logger.warning("Conflicting data: %s", conflict)

        return ReconcileResult(
            catalog=catalog, changes=diff_catalogs(previous, catalog), conflicts=conflicts
        )

    def run(
        self,
        previous: CardCatalog,
        sources: Sequence[SourceAdapter],
        source_filter: SourceFilter | None = None,
        progress_callback=None,
    ) -> ReconcileResult:
        """Collect from all sources, then merge."""
        batches, failures = self.collect(sources, source_filter or SourceFilter(), progress_callback)
        result = self.merge(previous, batches)
        result.failed_sources = failures

        if progress_callback:
            counts = result.counts()
            progress_callback(
                f"Catalog: {len(result.catalog)} cards "
                f"({counts['newly-created']} new, {counts['metadata-changed']} changed)"
            )
        return result

    @staticmethod
    def _fold(
        card: CanonicalCard,
        record: CardRecord,
        folded: dict[tuple[str, str], str],
        conflicts: list[ConflictingData],
    ) -> None:
        origin = FieldOrigin(source_id=record.source_id, priority=record.source_priority)
        for name in MERGED_FIELDS:
            value = getattr(record, name)
            if is_empty(value):
                continue

            current = getattr(card, name)
            owner = card.provenance.get(name)
            slot = (card.catalog_key, name)

            if is_empty(current) or owner is None or owner.source_id == record.source_id:
                adopt = True
            elif record.source_priority < owner.priority:
                adopt = True
            elif record.source_priority > owner.priority or current == value:
                adopt = False
            elif slot in folded:
                conflicts.append(ConflictingData(card.catalog_key, name, owner, current, record))
                adopt = False
            else:
                # owner did not report this field in this run
                adopt = True

            if adopt:
                setattr(card, name, value)
                card.provenance[name] = origin
                folded[slot] = record.source_id
