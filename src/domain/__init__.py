"""Domain layer - models, validation and typed errors."""
from domain.errors import (
    LayerLimitError,
    LockAcquisitionError,
    NotFoundError,
    QuotaExceededError,
    SketchmapError,
    StorageError,
    TileEncodingWarning,
    TileTooLargeError,
    ValidationError,
)
from domain.models import (
    Canvas,
    CanvasCreate,
    CanvasUpdate,
    CleanupResult,
    CleanupStats,
    DeletionRecord,
    DrawingTile,
    GeoPoint,
    Layer,
    LayerCreate,
    LayerUpdate,
    SaveTilesResult,
    StrokeData,
    TileCoordinate,
    TileInfo,
    TileUpload,
)

__all__ = [
    'Canvas',
    'CanvasCreate',
    'CanvasUpdate',
    'CleanupResult',
    'CleanupStats',
    'DeletionRecord',
    'DrawingTile',
    'GeoPoint',
    'Layer',
    'LayerCreate',
    'LayerUpdate',
    'LayerLimitError',
    'LockAcquisitionError',
    'NotFoundError',
    'QuotaExceededError',
    'SaveTilesResult',
    'SketchmapError',
    'StorageError',
    'StrokeData',
    'TileCoordinate',
    'TileEncodingWarning',
    'TileInfo',
    'TileTooLargeError',
    'TileUpload',
    'ValidationError',
]
