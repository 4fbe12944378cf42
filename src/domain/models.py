from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from shared.constants import (
    MAX_LAYER_NAME_LENGTH,
    MAX_TILES_PER_CANVAS,
    MAX_ZOOM,
    MIN_ZOOM,
    StrokeMode,
)


class ApiModel(BaseModel):
    """Базовая модель: snake_case в Python, camelCase в JSON API."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class TileCoordinate(ApiModel):
    z: int
    x: int
    y: int

    def key(self) -> tuple[int, int, int]:
        return self.z, self.x, self.y


class TileInfo(TileCoordinate):
    """Tile coordinate with its last update time for cache versioning."""

    updated_at: datetime | None = None


class Canvas(ApiModel):
    """Shareable drawing surface."""

    id: str
    center_lat: float = Field(ge=-90.0, le=90.0)
    center_lng: float = Field(ge=-180.0, le=180.0)
    zoom: int = Field(ge=MIN_ZOOM, le=MAX_ZOOM)
    share_lat: float | None = Field(default=None, ge=-90.0, le=90.0)
    share_lng: float | None = Field(default=None, ge=-180.0, le=180.0)
    share_zoom: int | None = Field(default=None, ge=MIN_ZOOM, le=MAX_ZOOM)
    tile_count: int = Field(default=0, ge=0, le=MAX_TILES_PER_CANVAS)
    created_at: datetime
    updated_at: datetime
    ogp_image_key: str | None = None
    ogp_place_name: str | None = Field(default=None, max_length=100)
    ogp_generated_at: datetime | None = None

    @model_validator(mode='after')
    def _share_triple_together(self) -> Canvas:
        values = (self.share_lat, self.share_lng, self.share_zoom)
        if any(v is None for v in values) and not all(v is None for v in values):
            msg = 'share_lat, share_lng and share_zoom must be set together'
            raise ValueError(msg)
        return self

    @property
    def is_shared(self) -> bool:
        return self.share_zoom is not None


class Layer(ApiModel):
    id: str
    canvas_id: str
    name: str = Field(max_length=MAX_LAYER_NAME_LENGTH)
    order: int = Field(ge=0)
    visible: bool = True
    created_at: datetime
    updated_at: datetime


class DrawingTile(ApiModel):
    """Metadata row of one persisted tile."""

    id: str
    canvas_id: str
    layer_id: str | None = None
    z: int = Field(ge=MIN_ZOOM, le=MAX_ZOOM)
    x: int = Field(ge=0)
    y: int = Field(ge=0)
    storage_key: str
    created_at: datetime
    updated_at: datetime


class TileUpload(BaseModel):
    """One encoded tile submitted to TileStore.save_tiles."""

    z: int
    x: int
    y: int
    data: bytes
    layer_id: str | None = None


class SaveTilesResult(ApiModel):
    saved: list[TileCoordinate]
    new_count: int


class GeoPoint(BaseModel):
    lat: float
    lng: float


class StrokeData(BaseModel):
    """One pen gesture kept client-side for redraw and undo."""

    points: list[GeoPoint]
    color: str = '#000000'
    thickness: float = Field(default=4.0, gt=0)
    mode: StrokeMode = StrokeMode.DRAW
    layer_id: str | None = None
    zoom: int = Field(ge=MIN_ZOOM, le=MAX_ZOOM)

    @field_validator('color')
    @classmethod
    def validate_color(cls, v: str) -> str:
        v = v.strip()
        if not (v.startswith('#') and len(v) in (4, 7, 9)):
            msg = f'Цвет должен быть в формате #RGB, #RRGGBB или #RRGGBBAA: {v}'
            raise ValueError(msg)
        int(v[1:], 16)
        return v


class CleanupStats(BaseModel):
    canvases_deleted: int = 0
    tiles_deleted: int = 0
    layers_deleted: int = 0
    ogp_images_deleted: int = 0
    orphaned_tiles_deleted: int = 0
    orphaned_ogp_deleted: int = 0
    storage_reclaimed_bytes: int = 0
    total_tiles_before: int = 0
    total_tiles_after: int = 0


class DeletionRecord(CleanupStats):
    """Permanent audit row written once per cleanup run."""

    id: str
    executed_at: datetime
    errors_encountered: list[str] | None = None
    duration_ms: int = Field(ge=0)


class CleanupLock(BaseModel):
    id: int = 1
    locked_at: datetime
    locked_by: str


class CleanupResult(BaseModel):
    success: bool
    deletion_record_id: str | None
    canvases_processed: int
    errors: list[str] = Field(default_factory=list)


class CanvasCreate(ApiModel):
    center_lat: float = Field(ge=-90.0, le=90.0)
    center_lng: float = Field(ge=-180.0, le=180.0)
    zoom: int = Field(ge=MIN_ZOOM, le=MAX_ZOOM)


class CanvasUpdate(ApiModel):
    """Partial canvas update; only fields explicitly set are applied.

    Setting all three share fields to null clears the share state.
    """

    center_lat: float | None = Field(default=None, ge=-90.0, le=90.0)
    center_lng: float | None = Field(default=None, ge=-180.0, le=180.0)
    zoom: int | None = Field(default=None, ge=MIN_ZOOM, le=MAX_ZOOM)
    share_lat: float | None = Field(default=None, ge=-90.0, le=90.0)
    share_lng: float | None = Field(default=None, ge=-180.0, le=180.0)
    share_zoom: int | None = Field(default=None, ge=MIN_ZOOM, le=MAX_ZOOM)


class LayerCreate(ApiModel):
    name: str | None = None


class LayerUpdate(ApiModel):
    name: str | None = None
    order: int | None = Field(default=None, ge=0)
    visible: bool | None = None
