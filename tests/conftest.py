"""Pytest configuration and shared fixtures for Sketchmap tests."""

import sys
from datetime import UTC, datetime
from pathlib import Path

import pytest

# Add src directory to path for imports
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

from domain.models import CanvasCreate  # noqa: E402
from services.canvas_service import CanvasService, LayerService  # noqa: E402
from services.tile_store import TileStore  # noqa: E402
from settings import AppConfig, ServiceEnv  # noqa: E402
from storage.blobs import FileSystemBlobStore  # noqa: E402
from storage.database import Database  # noqa: E402

TOKYO = (35.6812, 139.7671)


class FrozenClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def db():
    """In-memory metadata database with the schema applied."""
    database = Database()
    yield database
    database.close()


@pytest.fixture
def blobs(tmp_path):
    return FileSystemBlobStore(tmp_path / 'blobs')


@pytest.fixture
def config(tmp_path):
    return AppConfig.model_validate(
        {
            'storage': {
                'database_path': str(tmp_path / 'sketchmap.db'),
                'blob_root': str(tmp_path / 'blobs'),
            }
        }
    )


@pytest.fixture
def env(db, blobs, config):
    return ServiceEnv(db=db, blobs=blobs, config=config)


@pytest.fixture
def canvases(db, blobs, clock):
    return CanvasService(db, blobs, clock=clock)


@pytest.fixture
def tiles(db, blobs, clock):
    return TileStore(db, blobs, clock=clock)


@pytest.fixture
def layers(db, tiles, clock):
    return LayerService(db, tiles, clock=clock)


@pytest.fixture
def canvas(canvases):
    """A fresh canvas centred on Tokyo Station at z15."""
    return canvases.create(CanvasCreate(center_lat=TOKYO[0], center_lng=TOKYO[1], zoom=15))
