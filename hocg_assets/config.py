"""Configuration from environment variables and defaults."""

import os
from pathlib import Path


def get_assets_dir() -> Path:
    """Get the folder that holds the catalog, images and archives."""
    return Path(os.environ.get("HOCG_ASSETS_DIR", "./assets"))


def get_decklog_api_url() -> str:
    """Get Deck Log card search endpoint."""
    return os.environ.get(
        "DECKLOG_API_URL", "https://decklog.bushiroad.com/system/app/api/search/9"
    )


def get_decklog_image_base_url() -> str:
    """Get base URL that Deck Log image paths are relative to."""
    return os.environ.get(
        "DECKLOG_IMAGE_BASE_URL",
        "https://hololive-official-cardgame.com/wp-content/images/cardlist/",
    )


def get_http_referer() -> str:
    """Get Referer header sent with every request (the card list CDN requires it)."""
    return os.environ.get("HOCG_HTTP_REFERER", "https://decklog.bushiroad.com/")


def get_translation_sheet_url() -> str | None:
    """Get CSV export URL of the translation sheet (None = not configured)."""
    return os.environ.get("HOCG_TRANSLATION_SHEET_URL")


def get_official_search_url() -> str:
    """Get the official card list search page (text view)."""
    return os.environ.get(
        "HOCG_OFFICIAL_SEARCH_URL",
        "https://hololive-official-cardgame.com/cardlist/cardsearch_ex",
    )


def get_yuyutei_search_url() -> str:
    """Get the Yuyu-tei sell search page for hololive OCG."""
    return os.environ.get("HOCG_YUYUTEI_SEARCH_URL", "https://yuyu-tei.jp/sell/hocg/s/search")


def get_workers() -> int:
    """Get image worker pool size."""
    try:
        return int(os.environ.get("HOCG_WORKERS", DEFAULT_WORKERS))
    except ValueError:
        return DEFAULT_WORKERS


def get_log_level() -> str:
    """Log level (DEBUG, INFO, WARNING, ERROR)."""
    return os.environ.get("HOCG_LOG_LEVEL", "INFO").upper()


# Asset store layout
CATALOG_FILENAME = "hocg_cards.json"
IMAGES_DIRNAME = "img"
NATIVE_DIR = "native"
PROXY_DIR = "proxy"
PROXY_IGNORED_DIRS = ("blank", "blanks")

# Image pipeline
DEFAULT_WORKERS = 8
DEFAULT_PER_ORIGIN_LIMIT = 4  # In-flight requests per host
DEFAULT_WEBP_QUALITY = 80
DEFAULT_HTTP_TIMEOUT = 30.0  # Seconds
DEFAULT_WRITE_FAILURE_LIMIT = 5  # Consecutive write failures before giving up
ARTWORK_CHANGE_DISTANCE = 6  # dHash bits that differ before a refetch counts as new artwork

# Source priorities (lower wins)
DEFAULT_PRIORITY_DECKLOG = 0
DEFAULT_PRIORITY_OFFICIAL = 10
DEFAULT_PRIORITY_TRANSLATION = 20
DEFAULT_PRIORITY_HOLODELTA = 30
DEFAULT_PRIORITY_YUYUTEI = 40

# Deck Log search
DECKLOG_DECK_TYPES = ("N", "OSHI", "YELL")
DECKLOG_MAX_PAGES = 200

# HTML card lists (official site, Yuyu-tei)
SCRAPE_MAX_PAGES = 100
