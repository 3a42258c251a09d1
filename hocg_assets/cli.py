"""Typer CLI for hocg-assets commands."""

import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from hocg_assets.config import (
    DEFAULT_PER_ORIGIN_LIMIT,
    get_assets_dir,
    get_log_level,
    get_translation_sheet_url,
    get_workers,
)
from hocg_assets.models import RunDirectives

app = typer.Typer(
    name="hocg-assets",
    help="hololive OCG card catalog and image asset tool",
    no_args_is_help=True,
)
console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Route library logging through rich."""
    logging.basicConfig(
        level="DEBUG" if verbose else get_log_level(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    # per-request lines from httpx are too noisy below WARNING
    logging.getLogger("httpx").setLevel(logging.WARNING)


def fail(message: str, code: int = 2) -> None:
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(code)


def print_failures(failed: list[tuple[str, str]]) -> None:
    table = Table(title=f"Failed items ({len(failed)})")
    table.add_column("Asset", style="cyan")
    table.add_column("Reason", style="red")
    for key, reason in failed:
        table.add_row(key, reason)
    console.print(table)


def print_plan_counts(counts: dict[str, int]) -> None:
    table = Table(title="Work plan")
    table.add_column("Action", style="cyan")
    table.add_column("Items", justify="right")
    for action, count in counts.items():
        table.add_row(action, str(count))
    console.print(table)


@app.command("sync")
def sync_cmd(
    number_filter: Annotated[
        Optional[str],
        typer.Option("--number-filter", "-n", help="Only cards whose number contains this"),
    ] = None,
    expansion: Annotated[
        Optional[str], typer.Option("--expansion", "-x", help="Only cards of this expansion")
    ] = None,
    download_images: Annotated[
        bool, typer.Option("--download-images", "-i", help="Download and convert card images")
    ] = False,
    force: Annotated[bool, typer.Option("--force", "-f", help="Refetch every image")] = False,
    png: Annotated[
        bool,
        typer.Option("--optimized-original-images", "-o", help="Optimized PNG instead of WebP"),
    ] = False,
    package: Annotated[bool, typer.Option("--package", "-z", help="Zip images per expansion")] = False,
    clean: Annotated[
        bool, typer.Option("--clean", "-c", help="Ignore previous catalog and images")
    ] = False,
    proxy: Annotated[
        Optional[list[Path]],
        typer.Option("--proxy", "-p", help="Folder of proxy images (repeatable)"),
    ] = None,
    assets_path: Annotated[
        Optional[Path], typer.Option(help="Folder for the catalog, images and archives")
    ] = None,
    skip_update: Annotated[
        bool, typer.Option(help="Use the stored catalog, do not query the sources")
    ] = False,
    translations: Annotated[
        bool, typer.Option(help="Merge names from the translation sheet")
    ] = False,
    translation_sheet: Annotated[
        Optional[str], typer.Option(help="Translation sheet CSV (URL or path)")
    ] = None,
    holodelta: Annotated[
        Optional[Path], typer.Option(help="holoDelta database export to admit unreleased cards")
    ] = None,
    official: Annotated[
        bool, typer.Option(help="Merge the official card list (unreleased cards, names)")
    ] = False,
    yuyutei: Annotated[
        bool, typer.Option(help="Add Yuyu-tei price references to known cards")
    ] = False,
    workers: Annotated[Optional[int], typer.Option(help="Image worker threads")] = None,
    per_origin: Annotated[
        int, typer.Option(help="Concurrent requests per host")
    ] = DEFAULT_PER_ORIGIN_LIMIT,
    revalidate: Annotated[
        bool, typer.Option(help="Check up-to-date images with conditional requests")
    ] = False,
    lossless: Annotated[bool, typer.Option(help="Lossless WebP output")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
):
    """Update the card catalog and synchronize images."""
    from hocg_assets.catalog import CatalogCorrupt
    from hocg_assets.images import AssetWriteFailed
    from hocg_assets.packager import PackagingError
    from hocg_assets.runner import build_sources, catalog_path_for, run_sync

    setup_logging(verbose)

    sheet = None
    if translations:
        sheet = translation_sheet or get_translation_sheet_url()
        if not sheet:
            fail("--translations needs --translation-sheet or HOCG_TRANSLATION_SHEET_URL")

    try:
        directives = RunDirectives(
            number_filter=number_filter,
            expansion=expansion,
            download_images=download_images,
            force=force,
            png_output=png,
            webp_lossless=lossless,
            package=package,
            clean=clean,
            skip_update=skip_update,
            revalidate=revalidate,
            assets_path=assets_path or get_assets_dir(),
            proxy_paths=proxy or [],
            workers=workers or get_workers(),
            per_origin_limit=per_origin,
        )
    except ValueError as e:
        fail(f"Invalid options: {e}")

    console.print(f"Syncing into [cyan]{directives.assets_path}[/cyan]...")

    try:
        result = run_sync(
            directives,
            build_sources(
                sheet,
                holodelta,
                official=official,
                yuyutei_catalog=catalog_path_for(directives.assets_path) if yuyutei else None,
            ),
            progress_callback=lambda msg: console.print(f"  {msg}"),
        )
    except (CatalogCorrupt, AssetWriteFailed, PackagingError, ValueError) as e:
        fail(str(e))

    if result.reconcile:
        for failure in result.reconcile.failed_sources:
            kind = "partial data" if failure.partial else "skipped"
            console.print(f"[yellow]Source {failure.source_id} {kind}:[/yellow] {failure.reason}")
        if result.reconcile.conflicts:
            console.print(f"[yellow]{len(result.reconcile.conflicts)} conflicting fields[/yellow]")
    if result.sync and result.sync.artwork_changed:
        console.print(f"Artwork changed: {', '.join(result.sync.artwork_changed)}")
    for archive in result.archives:
        console.print(f"[green]Archive:[/green] {archive}")

    console.print(
        f"[green]Catalog saved:[/green] {result.catalog_path} ({len(result.catalog)} cards)"
    )

    if result.failed_items:
        print_failures(result.failed_items)
        raise typer.Exit(result.exit_code)


@app.command("plan")
def plan_cmd(
    number_filter: Annotated[Optional[str], typer.Option("--number-filter", "-n")] = None,
    expansion: Annotated[Optional[str], typer.Option("--expansion", "-x")] = None,
    force: Annotated[bool, typer.Option("--force", "-f")] = False,
    png: Annotated[bool, typer.Option("--optimized-original-images", "-o")] = False,
    proxy: Annotated[Optional[list[Path]], typer.Option("--proxy", "-p")] = None,
    assets_path: Annotated[Optional[Path], typer.Option()] = None,
    revalidate: Annotated[bool, typer.Option()] = False,
    show_all: Annotated[bool, typer.Option("--all", help="Also list up-to-date items")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
):
    """Show what an image sync would do against the stored catalog (dry run)."""
    from hocg_assets.catalog import CatalogCorrupt, load_catalog, scan_inventory
    from hocg_assets.images import build_proxy_index
    from hocg_assets.planner import plan_work
    from hocg_assets.runner import catalog_path_for, images_root_for

    setup_logging(verbose)
    directives = RunDirectives(
        number_filter=number_filter,
        expansion=expansion,
        download_images=True,
        force=force,
        png_output=png,
        revalidate=revalidate,
        assets_path=assets_path or get_assets_dir(),
        proxy_paths=proxy or [],
    )

    try:
        catalog = load_catalog(catalog_path_for(directives.assets_path))
        proxy_index = build_proxy_index(directives.proxy_paths) if directives.proxy_paths else None
    except (CatalogCorrupt, ValueError) as e:
        fail(str(e))

    inventory = scan_inventory(catalog, images_root_for(directives.assets_path))
    plan = plan_work(catalog, catalog, inventory, directives, proxy_index)

    items = plan.items if show_all else plan.pending()
    if items:
        table = Table(title="Planned items")
        table.add_column("Asset", style="cyan")
        table.add_column("Action", style="green")
        table.add_column("Reason")
        for item in items:
            table.add_row(item.key, item.action, item.reason)
        console.print(table)
    print_plan_counts(plan.counts())


@app.command("package")
def package_cmd(
    expansion: Annotated[
        Optional[list[str]], typer.Option("--expansion", "-x", help="Expansion code (repeatable)")
    ] = None,
    number_filter: Annotated[Optional[str], typer.Option("--number-filter", "-n")] = None,
    png: Annotated[bool, typer.Option("--optimized-original-images", "-o")] = False,
    proxies: Annotated[bool, typer.Option(help="Include verified proxy images")] = False,
    assets_path: Annotated[Optional[Path], typer.Option()] = None,
    out: Annotated[Optional[Path], typer.Option(help="Archive folder (default: assets path)")] = None,
):
    """Zip verified images, one archive per expansion."""
    from hocg_assets.catalog import CatalogCorrupt, load_catalog
    from hocg_assets.packager import PackagingError, package_images
    from hocg_assets.runner import catalog_path_for, images_root_for

    setup_logging()
    root = assets_path or get_assets_dir()

    try:
        catalog = load_catalog(catalog_path_for(root))
        archives = package_images(
            catalog,
            images_root_for(root),
            out or root,
            image_format="png" if png else "webp",
            expansions=expansion or None,
            number_filter=number_filter,
            include_proxies=proxies,
            progress_callback=lambda msg: console.print(f"  {msg}"),
        )
    except (CatalogCorrupt, PackagingError) as e:
        fail(str(e))

    for archive in archives:
        console.print(f"[green]Archive:[/green] {archive}")


@app.command("status")
def status_cmd(
    assets_path: Annotated[Optional[Path], typer.Option()] = None,
    png: Annotated[bool, typer.Option("--optimized-original-images", "-o")] = False,
):
    """Card and image counts per expansion."""
    from hocg_assets.catalog import CatalogCorrupt, inventory_key, load_catalog, scan_inventory
    from hocg_assets.config import NATIVE_DIR, PROXY_DIR
    from hocg_assets.runner import catalog_path_for, images_root_for

    root = assets_path or get_assets_dir()
    try:
        catalog = load_catalog(catalog_path_for(root))
    except CatalogCorrupt as e:
        fail(str(e))

    if not len(catalog):
        console.print(f"[yellow]No cards in {catalog_path_for(root)}[/yellow]")
        raise typer.Exit(0)

    fmt = "png" if png else "webp"
    inventory = scan_inventory(catalog, images_root_for(root))

    table = Table(title=f"Catalog {catalog_path_for(root)}")
    table.add_column("Expansion", style="cyan")
    table.add_column("Cards", justify="right")
    table.add_column("With image", justify="right")
    table.add_column(f"Native {fmt}", justify="right", style="green")
    table.add_column(f"Proxy {fmt}", justify="right")

    for code in catalog.expansions():
        cards = catalog.filtered(expansion=code)
        verified = {NATIVE_DIR: 0, PROXY_DIR: 0}
        for card in cards:
            for locale in verified:
                asset = inventory.get(inventory_key(card, locale, fmt))
                if asset is not None and asset.state == "verified":
                    verified[locale] += 1
        table.add_row(
            code,
            str(len(cards)),
            str(sum(1 for c in cards if c.image_reference)),
            str(verified[NATIVE_DIR]),
            str(verified[PROXY_DIR]),
        )
    console.print(table)


if __name__ == "__main__":
    app()
