"""Bundle verified images into one zip archive per expansion."""

import logging
import os
import tempfile
import zipfile
from pathlib import Path

from hocg_assets.catalog import CardCatalog, inventory_key, scan_inventory
from hocg_assets.config import NATIVE_DIR, PROXY_DIR
from hocg_assets.models import ImageAsset, ImageFormat, expansion_of

logger = logging.getLogger(__name__)

# Fixed entry timestamp so archives are byte-identical across runs
ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)


class PackagingError(Exception):
    """Selection references assets that are not verified."""

    pass


def archive_name(expansion: str) -> str:
    return f"{expansion.lower()}-images.zip"


def select_assets(
    catalog: CardCatalog,
    inventory: dict[str, ImageAsset],
    expansion: str,
    image_format: ImageFormat,
    number_filter: str | None = None,
    include_proxies: bool = False,
) -> tuple[list[ImageAsset], list[str]]:
    """Assets of one expansion in catalog order.

    Returns:
        (verified assets, keys of required assets that are not verified)
    """
    selected = []
    missing = []
    for card in catalog.filtered(number_filter, expansion):
        if card.image_reference:
            key = inventory_key(card, NATIVE_DIR, image_format)
            asset = inventory.get(key)
            if asset is not None and asset.state == "verified":
                selected.append(asset)
            else:
                missing.append(key)
        if include_proxies:
            # proxies are optional per card, only bundle the ones that exist
            proxy = inventory.get(inventory_key(card, PROXY_DIR, image_format))
            if proxy is not None and proxy.state == "verified":
                selected.append(proxy)
    return selected, missing


def package_images(
    catalog: CardCatalog,
    images_root: Path,
    output_dir: Path,
    image_format: ImageFormat = "webp",
    expansions: list[str] | None = None,
    number_filter: str | None = None,
    include_proxies: bool = False,
    progress_callback=None,
) -> list[Path]:
    """Write `<expansion>-images.zip` for each selected expansion.

    Nothing is written unless every selected asset is verified on disk.

    Args:
        catalog: Catalog with the asset inventory
        images_root: Root of the image store
        output_dir: Folder that receives the archives
        image_format: Which format to bundle
        expansions: Expansion codes (default: every expansion of the filtered catalog)
        number_filter: Optional card number filter
        include_proxies: Also bundle verified proxy images
        progress_callback: Optional callback(status_msg)

    Returns:
        Archive paths, one per expansion

    Raises:
        PackagingError: Unknown expansion or non-verified assets in the selection
    """
    inventory = scan_inventory(catalog, images_root)
    if expansions is None:
        expansions = list(
            dict.fromkeys(
                card.expansion_code or expansion_of(card.card_number)
                for card in catalog.filtered(number_filter)
            )
        )

    selections = []
    missing_all = []
    for expansion in expansions:
        if not catalog.filtered(number_filter, expansion):
            raise PackagingError(f"No cards in expansion {expansion}")
        selected, missing = select_assets(
            catalog, inventory, expansion, image_format, number_filter, include_proxies
        )
        selections.append((expansion, selected))
        missing_all.extend(missing)

    if missing_all:
        raise PackagingError(
            f"{len(missing_all)} assets are not verified: " + ", ".join(missing_all)
        )

    archives = []
    for expansion, selected in selections:
        path = output_dir / archive_name(expansion)
        write_archive(path, images_root, selected)
        logger.info("Packaged %d images into %s", len(selected), path)
        if progress_callback:
            progress_callback(f"  {path.name}: {len(selected)} images")
        archives.append(path)
    return archives


def write_archive(path: Path, images_root: Path, assets: list[ImageAsset]) -> None:
    """Write a deterministic zip (temp file, then rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    os.close(fd)
    try:
        with zipfile.ZipFile(tmp_name, "w") as archive:
            for asset in assets:
                info = zipfile.ZipInfo(asset.local_path, date_time=ZIP_DATE_TIME)
                info.external_attr = 0o644 << 16
                # images are already compressed
                info.compress_type = zipfile.ZIP_STORED
                archive.writestr(info, asset.path_in(images_root).read_bytes())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
