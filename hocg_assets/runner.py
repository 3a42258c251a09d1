"""One complete run: load, reconcile, plan, sync images, persist, package."""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

import httpx

from hocg_assets.catalog import (
    CardCatalog,
    diff_catalogs,
    load_catalog,
    save_catalog,
    scan_inventory,
)
from hocg_assets.config import CATALOG_FILENAME, IMAGES_DIRNAME
from hocg_assets.images import AssetWriteFailed, build_proxy_index
from hocg_assets.models import RunDirectives
from hocg_assets.packager import package_images
from hocg_assets.planner import WorkPlan, plan_work
from hocg_assets.reconcile import ReconcileResult, ReconciliationEngine
from hocg_assets.sources import (
    DeckLogSource,
    HoloDeltaSource,
    OfficialSiteSource,
    SourceAdapter,
    SourceFilter,
    TranslationSheetSource,
    YuyuteiSource,
)
from hocg_assets.sync import ImageSyncPipeline, SyncReport

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Everything a run produced."""

    catalog: CardCatalog
    catalog_path: Path
    reconcile: ReconcileResult | None = None
    plan: WorkPlan | None = None
    sync: SyncReport | None = None
    archives: list[Path] = field(default_factory=list)

    @property
    def failed_items(self) -> list[tuple[str, str]]:
        return self.sync.failed if self.sync else []

    @property
    def exit_code(self) -> int:
        return 1 if self.failed_items else 0


def catalog_path_for(assets_path: Path) -> Path:
    return assets_path / CATALOG_FILENAME


def images_root_for(assets_path: Path) -> Path:
    return assets_path / IMAGES_DIRNAME


def build_sources(
    translations: str | None = None,
    holodelta: Path | None = None,
    official: bool = False,
    yuyutei_catalog: Path | None = None,
    client: httpx.Client | None = None,
) -> list[SourceAdapter]:
    """Primary Deck Log source plus the optional ones that were asked for.

    Args:
        translations: Translation sheet CSV (URL or path)
        holodelta: holoDelta database export
        official: Include the official card list
        yuyutei_catalog: Stored catalog to match Yuyu-tei listings against (None = off)
        client: HTTP client shared by the web sources
    """
    sources: list[SourceAdapter] = [DeckLogSource(client=client)]
    if official:
        sources.append(OfficialSiteSource(client=client))
    if translations:
        sources.append(TranslationSheetSource(translations, client=client))
    if holodelta:
        sources.append(HoloDeltaSource(holodelta))
    if yuyutei_catalog:
        sources.append(YuyuteiSource(yuyutei_catalog, client=client))
    return sources


def run_sync(
    directives: RunDirectives,
    sources: Sequence[SourceAdapter],
    progress_callback=None,
    client: httpx.Client | None = None,
    cancel_event: threading.Event | None = None,
) -> RunResult:
    """Run the whole pipeline once.

    Args:
        directives: Run directives
        sources: Source adapters in configured order
        progress_callback: Optional callback(status_msg)
        client: HTTP client for image downloads (one is created if None)
        cancel_event: Set to stop the image pipeline from enqueueing work

    Returns:
        RunResult; exit_code is 1 when any planned item failed (packaging is
        then skipped)

    Raises:
        CatalogCorrupt: Previous catalog unreadable and `clean` not set
        ValueError: Invalid proxy path
        AssetWriteFailed: Every image write failed (raised after persisting)
        PackagingError: Selection holds non-verified assets
    """
    catalog_path = catalog_path_for(directives.assets_path)
    images_root = images_root_for(directives.assets_path)

    # configuration errors stop the run before anything is fetched
    proxy_index = build_proxy_index(directives.proxy_paths) if directives.proxy_paths else None

    if directives.clean:
        logger.info("Clean run, ignoring previous catalog and images")
        previous = CardCatalog()
    else:
        previous = load_catalog(catalog_path)
    if progress_callback:
        progress_callback(f"Previous catalog: {len(previous)} cards")

    reconcile = None
    if directives.skip_update:
        catalog = previous.copy()
        changes = diff_catalogs(previous, catalog)
    else:
        source_filter = SourceFilter(directives.number_filter, directives.expansion)
        reconcile = ReconciliationEngine().run(previous, sources, source_filter, progress_callback)
        catalog = reconcile.catalog
        changes = reconcile.changes

    result = RunResult(catalog=catalog, catalog_path=catalog_path, reconcile=reconcile)

    if directives.download_images or proxy_index:
        inventory = {} if directives.clean else scan_inventory(catalog, images_root)
        result.plan = plan_work(previous, catalog, inventory, directives, proxy_index, changes)
        counts = result.plan.counts()
        if progress_callback:
            progress_callback(
                f"Plan: {counts['refetch']} refetch, {counts['convert-only']} convert, "
                f"{counts['fetch']} revalidate, {counts['skip']} up to date"
            )

        pipeline = ImageSyncPipeline(
            images_root,
            workers=directives.workers,
            per_origin_limit=directives.per_origin_limit,
            lossless=directives.webp_lossless,
            client=client,
            cancel_event=cancel_event,
        )
        result.sync = pipeline.run(result.plan, inventory, progress_callback)
        catalog.assets = inventory

    save_catalog(catalog, catalog_path)
    logger.info("Saved %d cards to %s", len(catalog), catalog_path)

    if result.sync and result.sync.escalated:
        raise AssetWriteFailed(f"No image could be written under {images_root}")

    if directives.package and result.failed_items:
        logger.warning("Not packaging, %d images failed to sync", len(result.failed_items))
        if progress_callback:
            progress_callback("Skipping packaging, some images failed")
    elif directives.package:
        if progress_callback:
            progress_callback("Packaging images...")
        expansions = [directives.expansion] if directives.expansion else None
        result.archives = package_images(
            catalog,
            images_root,
            directives.assets_path,
            image_format=directives.image_format,
            expansions=expansions,
            number_filter=directives.number_filter,
            include_proxies=bool(directives.proxy_paths),
            progress_callback=progress_callback,
        )

    return result
