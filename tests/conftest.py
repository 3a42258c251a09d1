import io
from pathlib import Path

import pytest
from PIL import Image

from hocg_assets.models import CardRecord, RunDirectives
from hocg_assets.sources import SourceFilter, SourceUnavailable


def make_png(color=(200, 30, 30), size=(24, 32), pattern: bool = False) -> bytes:
    """Small PNG; `pattern` draws a gradient so perceptual hashes differ."""
    img = Image.new("RGB", size, color)
    if pattern:
        for x in range(size[0]):
            for y in range(size[1]):
                img.putpixel((x, y), (x * 10 % 256, y * 8 % 256, 90))
    buffer = io.BytesIO()
    img.save(buffer, "PNG")
    return buffer.getvalue()


def record(source_id: str = "a", priority: int = 0, **fields) -> CardRecord:
    fields.setdefault("card_number", "hSD01-001")
    return CardRecord(source_id=source_id, source_priority=priority, **fields)


class StaticSource:
    """In-memory adapter; `error` is raised instead of returning records."""

    def __init__(self, source_id: str, priority: int, records=None, error: Exception | None = None):
        self.source_id = source_id
        self.priority = priority
        self.records = records or []
        self.error = error
        self.calls = 0

    def collect(self, source_filter: SourceFilter) -> list[CardRecord]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return [r for r in self.records if source_filter.matches(r)]


@pytest.fixture
def png_bytes() -> bytes:
    """A valid red PNG."""
    return make_png()


@pytest.fixture
def assets_path(tmp_path: Path) -> Path:
    """Empty assets folder."""
    path = tmp_path / "assets"
    path.mkdir()
    return path


@pytest.fixture
def image_files(tmp_path: Path) -> dict[str, Path]:
    """Local source images for two cards."""
    folder = tmp_path / "source_images"
    folder.mkdir()
    files = {}
    for number, color in (("hSD01-001", (200, 30, 30)), ("hSD01-002", (30, 30, 200))):
        path = folder / f"{number}.png"
        path.write_bytes(make_png(color))
        files[number] = path
    return files


@pytest.fixture
def local_source(image_files: dict[str, Path]) -> StaticSource:
    """Primary source whose image references are local files."""
    return StaticSource(
        "primary",
        0,
        [
            record(
                "primary",
                0,
                card_number=number,
                name=f"Card {number}",
                rarity="C",
                image_reference=str(path),
            )
            for number, path in image_files.items()
        ],
    )


@pytest.fixture
def offline_source() -> StaticSource:
    return StaticSource("offline", 10, error=SourceUnavailable("connection refused"))


@pytest.fixture
def directives(assets_path: Path) -> RunDirectives:
    """Image sync into the temporary assets folder."""
    return RunDirectives(assets_path=assets_path, download_images=True, workers=2)
