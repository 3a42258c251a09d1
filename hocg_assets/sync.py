"""Concurrent execution of a work plan.

Workers only fetch, convert and write their own item and hand back an
ItemOutcome. The inventory is updated by the coordinating thread after the
pool has drained, in plan order, so the persisted catalog never depends on
completion order.
"""

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

import httpx

from hocg_assets.config import (
    ARTWORK_CHANGE_DISTANCE,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_PER_ORIGIN_LIMIT,
    DEFAULT_WEBP_QUALITY,
    DEFAULT_WORKERS,
    DEFAULT_WRITE_FAILURE_LIMIT,
    get_http_referer,
)
from hocg_assets.images import (
    AssetFetchFailed,
    AssetWriteFailed,
    FetchResult,
    content_hash,
    convert_image,
    fetch_reference,
    hash_distance,
    origin_of,
    perceptual_hash,
    verify_image,
    write_image,
)
from hocg_assets.models import ImageAsset
from hocg_assets.planner import WorkItem, WorkPlan

logger = logging.getLogger(__name__)


class OriginLimiter:
    """Caps concurrent in-flight requests per origin host."""

    def __init__(self, limit: int = DEFAULT_PER_ORIGIN_LIMIT):
        self.limit = limit
        self._lock = threading.Lock()
        self._semaphores: dict[str, threading.BoundedSemaphore] = {}

    def _semaphore(self, origin: str) -> threading.BoundedSemaphore:
        with self._lock:
            if origin not in self._semaphores:
                self._semaphores[origin] = threading.BoundedSemaphore(self.limit)
            return self._semaphores[origin]

    @contextmanager
    def slot(self, origin: str) -> Iterator[None]:
        with self._semaphore(origin):
            yield


@dataclass
class ItemOutcome:
    """What a worker did with one item; `asset` is set on success."""

    item: WorkItem
    asset: ImageAsset | None = None
    error: str | None = None
    write_error: bool = False
    not_modified: bool = False
    artwork_changed: bool = False

    @property
    def ok(self) -> bool:
        return self.asset is not None


@dataclass
class SyncReport:
    """Summary of a pipeline run."""

    completed: int = 0
    not_modified: int = 0
    failed: list[tuple[str, str]] = field(default_factory=list)
    artwork_changed: list[str] = field(default_factory=list)
    cancelled: bool = False
    escalated: bool = False

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)


class ImageSyncPipeline:
    """Executes the non-skip items of a WorkPlan on a bounded thread pool."""

    def __init__(
        self,
        images_root: Path,
        workers: int = DEFAULT_WORKERS,
        per_origin_limit: int = DEFAULT_PER_ORIGIN_LIMIT,
        quality: int = DEFAULT_WEBP_QUALITY,
        lossless: bool = False,
        write_failure_limit: int = DEFAULT_WRITE_FAILURE_LIMIT,
        client: httpx.Client | None = None,
        cancel_event: threading.Event | None = None,
    ):
        """
        Initialize pipeline.

        Args:
            images_root: Root of the image store
            workers: Thread pool size
            per_origin_limit: Concurrent requests per host
            quality: WebP quality for lossy output
            lossless: Lossless WebP output
            write_failure_limit: Leading write failures (with no success) before giving up
            client: HTTP client to share between workers (one is created if None)
            cancel_event: Set to stop enqueueing new items
        """
        self.images_root = images_root
        self.workers = max(1, workers)
        self.limiter = OriginLimiter(per_origin_limit)
        self.quality = quality
        self.lossless = lossless
        self.write_failure_limit = write_failure_limit
        self.client = client
        self.cancel_event = cancel_event or threading.Event()

    def run(
        self,
        plan: WorkPlan,
        inventory: dict[str, ImageAsset],
        progress_callback=None,
    ) -> SyncReport:
        """Execute a plan and commit the results into `inventory`.

        Args:
            plan: Work plan from plan_work()
            inventory: Asset key -> asset; updated in place, in plan order
            progress_callback: Optional callback(status_msg)

        Returns:
            SyncReport
        """
        pending = plan.pending()
        report = SyncReport()
        if not pending:
            return report

        if progress_callback:
            progress_callback(f"Syncing {len(pending)} images with {self.workers} workers...")

        client = self.client or httpx.Client(
            timeout=DEFAULT_HTTP_TIMEOUT,
            headers={"Referer": get_http_referer()},
            follow_redirects=True,
        )
        try:
            outcomes = self._execute(pending, client, report, progress_callback)
        finally:
            if self.client is None:
                client.close()

        self._commit(pending, outcomes, inventory, report)

        if progress_callback:
            progress_callback(
                f"Images: {report.completed} written, {report.not_modified} not modified, "
                f"{len(report.failed)} failed"
            )
        return report

    def _execute(
        self,
        pending: list[WorkItem],
        client: httpx.Client,
        report: SyncReport,
        progress_callback,
    ) -> dict[int, ItemOutcome]:
        outcomes: dict[int, ItemOutcome] = {}
        queue = iter(enumerate(pending))
        escalate_after = min(self.write_failure_limit, len(pending))
        in_flight: dict[Future, int] = {}
        successes = 0
        write_failures = 0

        with ThreadPoolExecutor(max_workers=self.workers) as executor:

            def submit_next() -> bool:
                if self.cancel_event.is_set():
                    return False
                try:
                    index, item = next(queue)
                except StopIteration:
                    return False
                in_flight[executor.submit(self.process, item, client)] = index
                return True

            for _ in range(self.workers * 2):
                if not submit_next():
                    break

            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    index = in_flight.pop(future)
                    try:
                        outcome = future.result()
                    except Exception as e:
                        logger.exception("%s: unexpected error", pending[index].key)
                        outcome = ItemOutcome(pending[index], error=f"Unexpected error: {e}")
                    outcomes[index] = outcome

                    if outcome.ok:
                        successes += 1
                        logger.debug("%s: %s", outcome.item.key, outcome.item.action)
                    else:
                        logger.warning("%s: %s", outcome.item.key, outcome.error)
                        if outcome.write_error:
                            write_failures += 1
                            if successes == 0 and write_failures >= escalate_after:
                                logger.error(
                                    "%d writes failed and none succeeded, stopping", write_failures
                                )
                                report.escalated = True
                                self.cancel_event.set()

                    if progress_callback and len(outcomes) % 10 == 0:
                        progress_callback(f"  {len(outcomes)}/{len(pending)} images processed")
                    submit_next()

        return outcomes

    def _commit(
        self,
        pending: list[WorkItem],
        outcomes: dict[int, ItemOutcome],
        inventory: dict[str, ImageAsset],
        report: SyncReport,
    ) -> None:
        for index, item in enumerate(pending):
            outcome = outcomes.get(index)
            if outcome is None:
                report.cancelled = True
                report.failed.append((item.key, "cancelled"))
                continue
            if not outcome.ok:
                report.failed.append((item.key, outcome.error or "failed"))
                continue

            inventory[item.key] = outcome.asset
            if outcome.not_modified:
                report.not_modified += 1
            else:
                report.completed += 1
            if outcome.artwork_changed:
                report.artwork_changed.append(item.key)

    def process(self, item: WorkItem, client: httpx.Client) -> ItemOutcome:
        """Fetch (or read the sibling), verify, convert and write one asset."""
        try:
            if item.action == "convert-only":
                sibling = self.images_root / item.convert_from
                try:
                    result = FetchResult(sibling.read_bytes())
                except OSError as e:
                    raise AssetFetchFailed(f"Cannot read {sibling}: {e}")
            else:
                etag = last_modified = None
                if item.action == "fetch":
                    etag, last_modified = item.asset.etag, item.asset.last_modified
                with self.limiter.slot(origin_of(item.source_reference)):
                    result = fetch_reference(item.source_reference, client, etag, last_modified)
                if result.content is None:
                    kept = item.asset.model_copy(update={"state": "verified"})
                    return ItemOutcome(item, asset=kept, not_modified=True)

            verify_image(result.content)
            encoded = convert_image(result.content, item.asset.format, self.quality, self.lossless)
            image_hash = perceptual_hash(result.content)
            write_image(item.asset.path_in(self.images_root), encoded)
        except AssetFetchFailed as e:
            return ItemOutcome(item, error=str(e))
        except AssetWriteFailed as e:
            return ItemOutcome(item, error=str(e), write_error=True)

        previous_hash = item.asset.image_hash
        asset = item.asset.model_copy(
            update={
                "content_hash": content_hash(encoded),
                "image_hash": image_hash,
                "etag": result.etag,
                "last_modified": result.last_modified,
                "card_digest": item.card_digest,
                "source_reference": item.source_reference,
                "state": "verified",
            }
        )
        return ItemOutcome(
            item,
            asset=asset,
            artwork_changed=bool(previous_hash)
            and hash_distance(previous_hash, image_hash) >= ARTWORK_CHANGE_DISTANCE,
        )
