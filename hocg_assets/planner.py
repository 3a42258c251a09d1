"""Change detection: decide what the image pipeline has to do.

The plan is computed before any network activity, so it can be printed as a
dry run and re-running it after a partial failure only touches what is still
stale.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path

from hocg_assets.catalog import CardCatalog, diff_catalogs, inventory_key, new_asset
from hocg_assets.config import NATIVE_DIR, PROXY_DIR
from hocg_assets.images import is_remote, proxy_candidates
from hocg_assets.models import (
    CanonicalCard,
    ChangeFlag,
    ImageAsset,
    ImageFormat,
    RunDirectives,
    WorkAction,
)

logger = logging.getLogger(__name__)

ACTIONS: tuple[WorkAction, ...] = ("skip", "fetch", "refetch", "convert-only")


@dataclass
class WorkItem:
    """A planned action over one asset.

    `asset` is the inventory entry as it is now (or a fresh `missing` one);
    the pipeline writes to `asset.local_path`.
    """

    action: WorkAction
    asset: ImageAsset
    card_digest: str
    source_reference: str | None = None
    convert_from: str | None = None  # local_path of the verified sibling
    reason: str = ""

    @property
    def key(self) -> str:
        return self.asset.asset_key


@dataclass
class WorkPlan:
    """Work items in catalog order."""

    items: list[WorkItem] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.items)

    def pending(self) -> list[WorkItem]:
        """Items the pipeline has to execute."""
        return [item for item in self.items if item.action != "skip"]

    def counts(self) -> dict[str, int]:
        counter = Counter(item.action for item in self.items)
        return {action: counter.get(action, 0) for action in ACTIONS}


def other_format(fmt: ImageFormat) -> ImageFormat:
    return "png" if fmt == "webp" else "webp"


def find_proxy(card: CanonicalCard, proxy_index: dict[str, Path]) -> Path | None:
    """Proxy image for a card, or None when the proxy folders have none."""
    for stem in proxy_candidates(card.card_number, card.illustration_variant, card.image_reference):
        if stem in proxy_index:
            return proxy_index[stem]
    return None


def plan_work(
    previous: CardCatalog,
    catalog: CardCatalog,
    inventory: dict[str, ImageAsset],
    directives: RunDirectives,
    proxy_index: dict[str, Path] | None = None,
    changes: dict[str, ChangeFlag] | None = None,
) -> WorkPlan:
    """Classify every required asset of the in-filter cards.

    Args:
        previous: Catalog as it was at the start of the run
        catalog: Reconciled catalog
        inventory: Asset key -> asset with state derived from disk
        directives: Run directives (filters, force, clean, revalidate, format)
        proxy_index: File stem -> proxy image (None = no proxy assets)
        changes: Precomputed change flags (derived from the catalogs if None)

    Returns:
        WorkPlan in catalog order, native before proxy for each card
    """
    if directives.clean:
        previous = CardCatalog()
        inventory = {}
    if changes is None or directives.clean:
        changes = diff_catalogs(previous, catalog)

    fmt = directives.image_format
    plan = WorkPlan()
    for card in catalog.filtered(directives.number_filter, directives.expansion):
        targets: list[tuple[str, str]] = []
        if directives.download_images and card.image_reference:
            targets.append((NATIVE_DIR, card.image_reference))
        if proxy_index:
            proxy_path = find_proxy(card, proxy_index)
            if proxy_path is not None:
                targets.append((PROXY_DIR, str(proxy_path)))

        digest = card.content_digest()
        flag = changes.get(card.catalog_key, "newly-created")
        for locale, reference in targets:
            plan.items.append(
                classify_asset(card, locale, fmt, reference, digest, flag, inventory, directives)
            )

    logger.debug("Planned %d items: %s", len(plan), plan.counts())
    return plan


def classify_asset(
    card: CanonicalCard,
    locale: str,
    fmt: ImageFormat,
    reference: str,
    digest: str,
    flag: ChangeFlag,
    inventory: dict[str, ImageAsset],
    directives: RunDirectives,
) -> WorkItem:
    """Decide the action for one asset of one card."""
    asset = inventory.get(inventory_key(card, locale, fmt)) or new_asset(card, locale, fmt)
    up_to_date = (
        asset.state == "verified"
        and flag == "unchanged"
        and asset.card_digest == digest
        and asset.source_reference == reference
    )

    def item(action: WorkAction, reason: str, **kwargs) -> WorkItem:
        return WorkItem(
            action=action,
            asset=asset,
            card_digest=digest,
            source_reference=reference,
            reason=reason,
            **kwargs,
        )

    if directives.force:
        return item("refetch", "forced")

    if up_to_date:
        if directives.revalidate and locale == NATIVE_DIR and is_remote(reference):
            return item("fetch", "revalidate")
        return item("skip", "up to date")

    sibling = inventory.get(inventory_key(card, locale, other_format(fmt)))
    if (
        flag == "unchanged"
        and asset.state != "verified"
        and sibling is not None
        and sibling.state == "verified"
        and sibling.card_digest == digest
        and sibling.source_reference == reference
    ):
        return item("convert-only", f"from {sibling.format}", convert_from=sibling.local_path)

    if asset.state == "verified":
        # on disk and intact, but written for an older version of the card
        asset = asset.model_copy(update={"state": "stale"})
        return item("refetch", f"card {flag}" if flag != "unchanged" else "stale")

    return item("refetch", asset.state)
