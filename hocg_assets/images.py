"""Image fetch, verification, conversion and storage."""

import hashlib
import io
import os
from dataclasses import dataclass
from pathlib import Path

import httpx
import numpy as np
from PIL import Image, UnidentifiedImageError

from hocg_assets.catalog import atomic_write_bytes
from hocg_assets.config import DEFAULT_WEBP_QUALITY, PROXY_IGNORED_DIRS
from hocg_assets.models import ImageFormat

PROXY_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".gif", ".tif", ".tiff"}


class AssetFetchFailed(Exception):
    """Image could not be retrieved or decoded."""

    pass


class AssetWriteFailed(Exception):
    """Image could not be written to the asset store."""

    pass


@dataclass
class FetchResult:
    """Fetched bytes plus cache validators (content is None on 304)."""

    content: bytes | None
    etag: str | None = None
    last_modified: str | None = None


def is_remote(reference: str) -> bool:
    return reference.startswith(("http://", "https://"))


def origin_of(reference: str) -> str:
    """Host used to cap concurrent requests ('local' for files)."""
    if is_remote(reference):
        try:
            return httpx.URL(reference).host
        except httpx.InvalidURL as e:
            raise AssetFetchFailed(f"Invalid URL {reference}: {e}")
    return "local"


def fetch_reference(
    reference: str,
    client: httpx.Client | None = None,
    etag: str | None = None,
    last_modified: str | None = None,
) -> FetchResult:
    """Read image bytes from a URL or a local path.

    Args:
        reference: http(s) URL, file:// URL or filesystem path
        client: HTTP client (required for remote references)
        etag: Stored ETag, sent as If-None-Match
        last_modified: Stored Last-Modified, sent as If-Modified-Since

    Returns:
        FetchResult; content is None when the server answered 304

    Raises:
        AssetFetchFailed: Network or filesystem error
    """
    if is_remote(reference):
        if client is None:
            raise AssetFetchFailed(f"No HTTP client for {reference}")
        headers = {}
        if etag:
            headers["If-None-Match"] = etag
        if last_modified:
            headers["If-Modified-Since"] = last_modified
        try:
            response = client.get(reference, headers=headers)
            if response.status_code == 304:
                return FetchResult(None, etag, last_modified)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise AssetFetchFailed(f"Download failed: {e}")
        return FetchResult(
            response.content,
            response.headers.get("etag"),
            response.headers.get("last-modified"),
        )

    path = Path(reference.removeprefix("file://"))
    try:
        return FetchResult(path.read_bytes())
    except OSError as e:
        raise AssetFetchFailed(f"Cannot read {path}: {e}")


def verify_image(data: bytes) -> tuple[int, int]:
    """Check that bytes are a non-empty, decodable image.

    Returns:
        (width, height)

    Raises:
        AssetFetchFailed: Empty or undecodable data
    """
    if not data:
        raise AssetFetchFailed("Empty image")
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
        # verify() leaves the image unusable, decode fully from a fresh handle
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            return img.size
    except (
        UnidentifiedImageError,
        Image.DecompressionBombError,
        OSError,
        SyntaxError,
        ValueError,
    ) as e:
        raise AssetFetchFailed(f"Cannot decode image: {e}")


def _normalize_mode(img: Image.Image) -> Image.Image:
    if img.mode in ("RGB", "RGBA"):
        return img
    if "A" in img.getbands() or "transparency" in img.info:
        return img.convert("RGBA")
    return img.convert("RGB")


def convert_image(
    data: bytes,
    fmt: ImageFormat,
    quality: int = DEFAULT_WEBP_QUALITY,
    lossless: bool = False,
) -> bytes:
    """Encode image bytes as WebP or optimized PNG.

    Args:
        data: Source image bytes (any Pillow-readable format)
        fmt: Target format
        quality: WebP quality 0-100 (ignored for lossless and PNG)
        lossless: Lossless WebP

    Returns:
        Encoded bytes
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = _normalize_mode(img)
            buffer = io.BytesIO()
            if fmt == "webp":
                if lossless:
                    img.save(buffer, "WEBP", lossless=True, quality=100, method=6)
                else:
                    img.save(buffer, "WEBP", quality=quality, method=6)
            else:
                img.save(buffer, "PNG", optimize=True)
            return buffer.getvalue()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise AssetFetchFailed(f"Cannot convert image to {fmt}: {e}")


def perceptual_hash(data: bytes, hash_size: int = 8) -> str:
    """Difference hash (dHash) of an image as a hex string.

    Survives re-encoding (PNG vs WebP), so the same artwork keeps the same
    hash across output formats.

    Raises:
        AssetFetchFailed: Undecodable data
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            gray = img.convert("L").resize((hash_size + 1, hash_size), Image.Resampling.LANCZOS)
            pixels = np.asarray(gray, dtype=np.int16)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise AssetFetchFailed(f"Cannot hash image: {e}")
    diff = pixels[:, 1:] > pixels[:, :-1]
    return np.packbits(diff.flatten()).tobytes().hex()


def hash_distance(a: str, b: str) -> int:
    """Hamming distance between two perceptual hashes."""
    bits_a = np.unpackbits(np.frombuffer(bytes.fromhex(a), dtype=np.uint8))
    bits_b = np.unpackbits(np.frombuffer(bytes.fromhex(b), dtype=np.uint8))
    return int(np.count_nonzero(bits_a != bits_b))


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def write_image(path: Path, data: bytes) -> None:
    """Write encoded image bytes atomically.

    Raises:
        AssetWriteFailed: Disk error
    """
    try:
        atomic_write_bytes(path, data)
    except OSError as e:
        raise AssetWriteFailed(f"Cannot write {path}: {e}")


def build_proxy_index(proxy_paths: list[Path]) -> dict[str, Path]:
    """Map file stem -> proxy image path for every image under the proxy folders.

    Files anywhere below a 'blank'/'blanks' folder are ignored. The first
    file found for a stem wins (folders in the given order, then sorted paths).

    Raises:
        ValueError: A proxy path is not a directory
    """
    index: dict[str, Path] = {}
    for root in proxy_paths:
        if not root.is_dir():
            raise ValueError(f"Proxy path should be a directory: {root}")
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d.lower() not in PROXY_IGNORED_DIRS)
            for filename in sorted(filenames):
                path = Path(dirpath) / filename
                if path.suffix.lower() not in PROXY_EXTENSIONS:
                    continue
                index.setdefault(path.stem, path)
    return index


def proxy_candidates(
    card_number: str, illustration_variant: int, image_reference: str | None
) -> list[str]:
    """File stems to look up in the proxy index, most specific first."""
    candidates = []
    if image_reference:
        stem = Path(image_reference.split("?", 1)[0]).stem
        if stem:
            candidates.append(stem)
    candidates.append(f"{card_number}_{illustration_variant}")
    if illustration_variant == 0:
        candidates.append(card_number)
    return list(dict.fromkeys(candidates))
