"""Source adapters: each turns one provider's data into normalized CardRecords.

Only the contract matters to the rest of the pipeline: `collect(filter)`
returns records or raises SourceUnavailable / PartialData.
"""

import csv
import io
import logging
import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import httpx
from bs4 import BeautifulSoup
from pydantic import ValidationError

from hocg_assets.catalog import CardCatalog, CatalogCorrupt, load_catalog, matches_filter
from hocg_assets.config import (
    DECKLOG_DECK_TYPES,
    DECKLOG_MAX_PAGES,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_PRIORITY_DECKLOG,
    DEFAULT_PRIORITY_HOLODELTA,
    DEFAULT_PRIORITY_OFFICIAL,
    DEFAULT_PRIORITY_TRANSLATION,
    DEFAULT_PRIORITY_YUYUTEI,
    SCRAPE_MAX_PAGES,
    get_decklog_api_url,
    get_decklog_image_base_url,
    get_http_referer,
    get_official_search_url,
    get_yuyutei_search_url,
)
from hocg_assets.models import CardRecord

logger = logging.getLogger(__name__)


class SourceUnavailable(Exception):
    """A source produced no usable records."""

    pass


class PartialData(Exception):
    """A source failed part-way; `records` holds what was read before the failure."""

    def __init__(self, message: str, records: list[CardRecord]):
        super().__init__(message)
        self.records = records


@dataclass(frozen=True)
class SourceFilter:
    """Number / expansion restriction passed to every adapter."""

    number_filter: str | None = None
    expansion: str | None = None

    def matches(self, record: CardRecord) -> bool:
        return matches_filter(
            record.card_number, record.expansion_code, self.number_filter, self.expansion
        )

    @property
    def is_empty(self) -> bool:
        return not self.number_filter and not self.expansion


class SourceAdapter(Protocol):
    """Protocol for source adapters."""

    source_id: str
    priority: int

    def collect(self, source_filter: SourceFilter) -> list[CardRecord]:
        """
        Collect records from the source.

        Raises:
            SourceUnavailable: Nothing could be read
            PartialData: Some records were read before a failure
        """
        ...


# Deck Log card kinds (Japanese) -> normalized card type
CARD_KINDS = [
    ("推し", "oshi_holomem"),
    ("ホロメン", "holomem"),
    ("スタッフ", "support_staff"),
    ("アイテム", "support_item"),
    ("イベント", "support_event"),
    ("ツール", "support_tool"),
    ("マスコット", "support_mascot"),
    ("ファン", "support_fan"),
    ("エール", "cheer"),
]


def normalize_card_kind(card_kind: str | None) -> str | None:
    if not card_kind:
        return None
    kind = card_kind.strip().lower()
    for marker, card_type in CARD_KINDS:
        if marker in kind:
            return card_type
    return "other"


def _parse_int(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _manage_id_order(entry: dict) -> tuple[bool, int]:
    manage_id = _parse_int(entry.get("manage_id"))
    return (manage_id is None, manage_id or 0)


class DeckLogSource:
    """Primary source: the Deck Log card search API."""

    def __init__(
        self,
        priority: int = DEFAULT_PRIORITY_DECKLOG,
        api_url: str | None = None,
        image_base_url: str | None = None,
        client: httpx.Client | None = None,
    ):
        """
        Initialize adapter.

        Args:
            priority: Source priority (lower wins)
            api_url: Search endpoint (default from env)
            image_base_url: Base URL for image paths (default from env)
            client: HTTP client to reuse (creates one per collect if None)
        """
        self.source_id = "decklog"
        self.priority = priority
        self.api_url = api_url or get_decklog_api_url()
        self.image_base_url = image_base_url or get_decklog_image_base_url()
        self.client = client

    def collect(self, source_filter: SourceFilter) -> list[CardRecord]:
        client = self.client or httpx.Client(
            timeout=DEFAULT_HTTP_TIMEOUT, headers={"Referer": get_http_referer()}
        )
        raw: list = []
        try:
            for deck_type in DECKLOG_DECK_TYPES:
                raw.extend(self._search_deck_type(client, deck_type, source_filter, raw))
        finally:
            if self.client is None:
                client.close()

        logger.debug("Deck Log returned %d entries", len(raw))
        records, problems = self._to_records(raw, source_filter)
        if problems:
            message = f"Deck Log returned {len(problems)} malformed entries: {problems[0]}"
            if not records:
                raise SourceUnavailable(message)
            raise PartialData(message, records)
        return records

    def _search_deck_type(
        self,
        client: httpx.Client,
        deck_type: str,
        source_filter: SourceFilter,
        collected: list,
    ) -> list:
        cards = []
        for page in range(1, DECKLOG_MAX_PAGES + 1):
            payload = {
                "page": page,
                "param": {
                    "deck_param1": "S",
                    "deck_type": deck_type,
                    "keyword": source_filter.number_filter or "",
                    "keyword_type": ["no"],
                    "expansion": source_filter.expansion or "",
                },
            }
            try:
                response = client.post(self.api_url, json=payload)
                response.raise_for_status()
                page_cards = response.json()
            except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
                read_so_far, _ = self._to_records(collected + cards, source_filter)
                if not read_so_far:
                    raise SourceUnavailable(f"Deck Log search failed: {e}")
                raise PartialData(
                    f"Deck Log search failed at {deck_type} page {page}: {e}", read_so_far
                )

            if not isinstance(page_cards, list) or not page_cards:
                break
            cards.extend(page_cards)
        return cards

    def _to_records(
        self, raw: list, source_filter: SourceFilter
    ) -> tuple[list[CardRecord], list[str]]:
        """Map API entries to records, numbering alternate arts per card number.

        Entries of one card number are ordered by manage_id (the provider's
        stable id, oldest first); that position becomes the illustration variant.

        Returns:
            (records matching the filter, descriptions of malformed entries)
        """
        problems = []
        by_number: dict[str, list[dict]] = {}
        for entry in raw:
            if not isinstance(entry, dict):
                problems.append(f"not an object: {entry!r}")
                continue
            number = str(entry.get("card_number") or "").strip()
            if number:
                by_number.setdefault(number, []).append(entry)

        records = []
        for number in sorted(by_number):
            entries = sorted(by_number[number], key=_manage_id_order)
            # the same entry can show up under several deck types
            seen_ids = set()
            variant = 0
            for entry in entries:
                manage_id = _parse_int(entry.get("manage_id"))
                if manage_id is not None and manage_id in seen_ids:
                    continue
                seen_ids.add(manage_id)
                try:
                    record = self._to_record(number, variant, entry)
                except (ValidationError, TypeError, AttributeError) as e:
                    problems.append(f"{number}: {e}")
                    continue
                variant += 1
                if source_filter.matches(record):
                    records.append(record)
        return records, problems

    def _to_record(self, number: str, variant: int, entry: dict) -> CardRecord:
        card_type = normalize_card_kind(entry.get("card_kind"))
        max_amount = _parse_int(entry.get("max"))
        if card_type == "oshi_holomem" and max_amount is not None:
            max_amount = min(max_amount, 1)

        image_reference = None
        img = (entry.get("img") or "").strip()
        if img:
            image_reference = self.image_base_url.rstrip("/") + "/" + img.lstrip("/")

        return CardRecord(
            source_id=self.source_id,
            card_number=number,
            illustration_variant=variant,
            name=entry.get("name"),
            rarity=entry.get("rare"),
            card_type=card_type,
            max_amount=max_amount,
            image_reference=image_reference,
            source_priority=self.priority,
        )


class TranslationSheetSource:
    """Community translation sheet exported as CSV (URL or local file)."""

    NUMBER_COLUMN = "Setcode"
    NAME_COLUMN = 'Card Name "JP (EN)"'
    NAME_RE = re.compile(r"^(?P<jp>.*?)\s*\((?P<en>[^()]*)\)\s*$", re.DOTALL)

    def __init__(
        self,
        location: str,
        priority: int = DEFAULT_PRIORITY_TRANSLATION,
        client: httpx.Client | None = None,
    ):
        self.source_id = "translation_sheet"
        self.location = location
        self.priority = priority
        self.client = client

    def collect(self, source_filter: SourceFilter) -> list[CardRecord]:
        text = self._read()
        reader = csv.DictReader(io.StringIO(text))
        try:
            fieldnames = reader.fieldnames
        except csv.Error as e:
            raise SourceUnavailable(f"Translation sheet header unreadable: {e}")
        if not fieldnames or self.NUMBER_COLUMN not in fieldnames:
            raise SourceUnavailable(
                f"Translation sheet has no '{self.NUMBER_COLUMN}' column: {self.location}"
            )

        records = []
        try:
            for row in reader:
                number = (row.get(self.NUMBER_COLUMN) or "").strip()
                if not number:
                    continue
                name, translated = self.split_name(row.get(self.NAME_COLUMN))
                record = CardRecord(
                    source_id=self.source_id,
                    card_number=number,
                    illustration_variant=None,
                    name=name,
                    translated_name=translated,
                    source_priority=self.priority,
                )
                if source_filter.matches(record):
                    records.append(record)
        except csv.Error as e:
            message = f"Translation sheet unreadable at line {reader.line_num}: {e}"
            if not records:
                raise SourceUnavailable(message)
            raise PartialData(message, records)
        return records

    @classmethod
    def split_name(cls, value: str | None) -> tuple[str | None, str | None]:
        """Split 'JP (EN)' into its parts; names split over lines are joined."""
        if not value or not value.strip():
            return None, None
        match = cls.NAME_RE.match(value.strip())
        if not match:
            return " ".join(value.split()), None
        jp = " ".join(match.group("jp").split()) or None
        en = " ".join(match.group("en").split()) or None
        return jp, en

    def _read(self) -> str:
        if self.location.startswith(("http://", "https://")):
            try:
                if self.client is not None:
                    response = self.client.get(self.location, follow_redirects=True)
                else:
                    response = httpx.get(
                        self.location, timeout=DEFAULT_HTTP_TIMEOUT, follow_redirects=True
                    )
                response.raise_for_status()
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                raise SourceUnavailable(f"Failed to download translation sheet: {e}")
            data = response.content
        else:
            try:
                data = Path(self.location).read_bytes()
            except OSError as e:
                raise SourceUnavailable(f"Failed to read translation sheet: {e}")

        try:
            return data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise SourceUnavailable(f"Translation sheet is not UTF-8: {e}")


class HoloDeltaSource:
    """holoDelta card database export; admits unreleased cards and arts."""

    QUERY = (
        "SELECT cardID, art_index FROM cardHasArt WHERE lang = 'ja' "
        "ORDER BY cardID, art_index"
    )

    def __init__(self, db_path: Path, priority: int = DEFAULT_PRIORITY_HOLODELTA):
        self.source_id = "holodelta"
        self.db_path = Path(db_path)
        self.priority = priority

    def collect(self, source_filter: SourceFilter) -> list[CardRecord]:
        if not self.db_path.is_file():
            raise SourceUnavailable(f"holoDelta database not found: {self.db_path}")

        try:
            conn = sqlite3.connect(f"file:{self.db_path}?mode=ro", uri=True)
            try:
                rows = conn.execute(self.QUERY).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise SourceUnavailable(f"Cannot read holoDelta database: {e}")

        records = []
        skipped = 0
        for card_id, art_index in rows:
            if not card_id:
                continue
            variant = _parse_int(art_index or 0)
            if variant is None or variant < 0:
                skipped += 1
                logger.debug("holoDelta %s has a bad art index %r", card_id, art_index)
                continue
            record = CardRecord(
                source_id=self.source_id,
                card_number=str(card_id),
                illustration_variant=variant,
                source_priority=self.priority,
            )
            if source_filter.matches(record):
                records.append(record)

        if skipped:
            message = f"holoDelta has {skipped} rows with a bad art index"
            if not records:
                raise SourceUnavailable(message)
            raise PartialData(message, records)
        return records


def _text(element) -> str:
    return element.get_text(strip=True) if element is not None else ""


class OfficialSiteSource:
    """Official card list (text view); admits cards Deck Log does not list yet.

    Emits card-level records (name and card type) so every known variant of a
    number picks them up.
    """

    def __init__(
        self,
        priority: int = DEFAULT_PRIORITY_OFFICIAL,
        search_url: str | None = None,
        client: httpx.Client | None = None,
    ):
        self.source_id = "official_site"
        self.priority = priority
        self.search_url = search_url or get_official_search_url()
        self.client = client

    def collect(self, source_filter: SourceFilter) -> list[CardRecord]:
        client = self.client or httpx.Client(
            timeout=DEFAULT_HTTP_TIMEOUT, headers={"Referer": get_http_referer()}
        )
        records: dict[str, CardRecord] = {}
        try:
            for page in range(1, SCRAPE_MAX_PAGES + 1):
                try:
                    response = client.get(
                        self.search_url,
                        params={"view": "text", "page": page},
                        follow_redirects=True,
                    )
                    response.raise_for_status()
                except (httpx.HTTPError, httpx.InvalidURL) as e:
                    if page == 1:
                        raise SourceUnavailable(f"Official card list failed: {e}")
                    raise PartialData(
                        f"Official card list failed at page {page}: {e}", list(records.values())
                    )

                page_records = self.parse_page(response.content)
                # past the last page the site answers with its front page
                if not page_records:
                    break
                for record in page_records:
                    if source_filter.matches(record):
                        records.setdefault(record.card_number, record)
        finally:
            if self.client is None:
                client.close()

        logger.debug("Official card list returned %d cards", len(records))
        return list(records.values())

    def parse_page(self, html: bytes) -> list[CardRecord]:
        soup = BeautifulSoup(html, "html.parser")
        records = []
        for link in soup.select("li a"):
            number = _text(link.select_one(".number"))
            if not number:
                continue
            info = self._info(link)
            records.append(
                CardRecord(
                    source_id=self.source_id,
                    card_number=number,
                    illustration_variant=None,
                    name=_text(link.select_one(".name")) or None,
                    card_type=normalize_card_kind(info.get("カードタイプ")),
                    source_priority=self.priority,
                )
            )
        return records

    @staticmethod
    def _info(link) -> dict[str, str]:
        """`.info dl` term -> value; icon values use their alt text."""
        info = {}
        for dl in link.select(".info dl"):
            for dt, dd in zip(dl.find_all("dt"), dl.find_all("dd")):
                alts = " ".join(img.get("alt", "") for img in dd.find_all("img")).strip()
                info[_text(dt).lower()] = alts or _text(dd)
        return info


class YuyuteiSource:
    """Yuyu-tei sell listings; fills `price_reference` per card variant.

    Listings are keyed by card number and rarity. They are matched against
    the variants of the stored catalog with the same number and rarity, in
    catalog order, so a card gets its price reference on the run after it
    first appears in the catalog.
    """

    ERRATA_MARKER = "エラッタ前"

    def __init__(
        self,
        catalog_path: Path,
        priority: int = DEFAULT_PRIORITY_YUYUTEI,
        search_url: str | None = None,
        client: httpx.Client | None = None,
    ):
        """
        Initialize adapter.

        Args:
            catalog_path: Stored catalog whose variants listings are matched to
            priority: Source priority (lower wins)
            search_url: Search page (default from env)
            client: HTTP client to reuse (creates one per collect if None)
        """
        self.source_id = "yuyutei"
        self.catalog_path = Path(catalog_path)
        self.priority = priority
        self.search_url = search_url or get_yuyutei_search_url()
        self.client = client

    def collect(self, source_filter: SourceFilter) -> list[CardRecord]:
        try:
            catalog = load_catalog(self.catalog_path)
        except CatalogCorrupt as e:
            raise SourceUnavailable(f"No catalog to match Yuyu-tei listings against: {e}")

        client = self.client or httpx.Client(timeout=DEFAULT_HTTP_TIMEOUT)
        listings: dict[tuple[str, str], list[str]] = {}
        failure = None
        try:
            page = max_page = 1
            while page <= min(max_page, SCRAPE_MAX_PAGES):
                try:
                    response = client.get(
                        self.search_url,
                        params={"search_word": "", "page": page},
                        follow_redirects=True,
                    )
                    response.raise_for_status()
                except (httpx.HTTPError, httpx.InvalidURL) as e:
                    if page == 1:
                        raise SourceUnavailable(f"Yuyu-tei search failed: {e}")
                    failure = f"Yuyu-tei search failed at page {page}: {e}"
                    break
                max_page = max(max_page, self.parse_page(response.content, listings))
                page += 1
        finally:
            if self.client is None:
                client.close()

        records = self.match(catalog, listings, source_filter)
        if failure:
            raise PartialData(failure, records)
        return records

    def parse_page(self, html: bytes, listings: dict[tuple[str, str], list[str]]) -> int:
        """Add the listings of one result page; returns the last page number shown."""
        soup = BeautifulSoup(html, "html.parser")
        for card_list in soup.select("#card-list3"):
            rarity = _text(card_list.select_one("h3 span"))
            for product in card_list.select(".card-product"):
                number = _text(product.select_one("span"))
                link = product.select_one("a[href]")
                if not number or link is None:
                    continue
                if self.ERRATA_MARKER in _text(product.select_one("h4")):
                    continue
                try:
                    url = str(httpx.URL(self.search_url).join(link["href"]))
                except httpx.InvalidURL:
                    logger.debug("Yuyu-tei listing %s has a bad link %r", number, link["href"])
                    continue
                urls = listings.setdefault((number, rarity), [])
                if url not in urls:
                    urls.append(url)

        last = soup.select_one(".pagination li:nth-last-child(2) a")
        return (_parse_int(_text(last)) or 1) if last is not None else 1

    def match(
        self,
        catalog: CardCatalog,
        listings: dict[tuple[str, str], list[str]],
        source_filter: SourceFilter,
    ) -> list[CardRecord]:
        remaining = {key: list(urls) for key, urls in listings.items()}
        records = []
        for card in catalog.filtered(source_filter.number_filter, source_filter.expansion):
            urls = remaining.get((card.card_number, card.rarity or ""))
            if not urls:
                continue
            records.append(
                CardRecord(
                    source_id=self.source_id,
                    card_number=card.card_number,
                    illustration_variant=card.illustration_variant,
                    price_reference=urls.pop(0),
                    source_priority=self.priority,
                )
            )

        unmatched = sum(len(urls) for urls in remaining.values())
        if unmatched:
            logger.info("%d Yuyu-tei listings matched no catalog card", unmatched)
        return records
