from enum import Enum

# Размер тайла Web Mercator по одной стороне (пикселей)
TILE_SIZE = 256

# Допустимые уровни приближения для тайлов рисунка
MIN_ZOOM = 1
MAX_ZOOM = 19

# Полный охват долготы (градусы)
WORLD_LNG_SPAN_DEG = 360.0
WORLD_LNG_HALF_SPAN_DEG = 180.0

# Максимальная широта Web Mercator (градусы)
WORLD_LAT_MAX_DEG = 85.0511287798066

# --- Canvas / layer limits

# Canvas and layer ids are url-safe tokens; 20 chars accepted for older ids
CANVAS_ID_LENGTH = 21
CANVAS_ID_MIN_LENGTH = 20
ID_ALPHABET = '0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz_-'

# Hard per-canvas quota of persisted tiles
MAX_TILES_PER_CANVAS = 1000

MAX_LAYERS_PER_CANVAS = 10
MAX_LAYER_NAME_LENGTH = 50
DEFAULT_LAYER_NAME = 'Layer 1'

# --- Tile encoding

# Size budget for one encoded tile (bytes)
MAX_TILE_BYTES = 100 * 1024

# WebP quality factors (0.0 to 1.0)
TILE_QUALITY_INITIAL = 0.85
TILE_QUALITY_STEP = 0.1
TILE_QUALITY_FLOOR = 0.3

# WebP encoder effort (0 = fast, 6 = slowest/smallest)
TILE_WEBP_METHOD = 4

TILE_FORMAT = 'WEBP'
TILE_EXTENSION = 'webp'
TILE_CONTENT_TYPE = 'image/webp'

OGP_EXTENSION = 'png'
OGP_KEY_PREFIX = 'ogp/'

# --- Client side

# In-memory decoded tile cache capacity (entries)
TILE_CACHE_MAX_ENTRIES = 150

# Debounce window before extraction + save (seconds)
SAVE_DEBOUNCE_S = 0.5

# Undo history depth (strokes)
MAX_HISTORY_SIZE = 50

# Max concurrent tile image downloads
DOWNLOAD_CONCURRENCY = 8

# HTTP settings for the drawing API client
HTTP_TIMEOUT_DEFAULT = 20.0
HTTP_RETRIES_DEFAULT = 3
HTTP_BACKOFF_INITIAL_S = 0.5
HTTP_BACKOFF_FACTOR = 2.0

# HTTP диапазоны ошибок сервера
HTTP_5XX_MIN = 500
HTTP_5XX_MAX = 600

# --- Cleanup job

# Canvases younger than this are never collected
CLEANUP_RETENTION_DAYS = 30

CLEANUP_BATCH_SIZE = 100

# Hard ceiling of canvases deleted per run
CLEANUP_SAFETY_LIMIT = 1000

# A lock older than this is considered abandoned by a crashed holder
CLEANUP_STALE_LOCK_MINUTES = 30

# Interval between scheduled runs (seconds)
CLEANUP_INTERVAL_S = 24 * 60 * 60

CLEANUP_LOCK_ID = 1

# --- Server

SERVER_HOST_DEFAULT = '127.0.0.1'
SERVER_PORT_DEFAULT = 8787

# Max accepted request body (bytes); a full save batch of 100 KiB tiles
SERVER_MAX_REQUEST_BYTES = 64 * 1024 * 1024

TILE_CACHE_CONTROL = 'public, max-age=31536000'

# Путь к файлу конфигурации по умолчанию
CONFIG_ENV_VAR = 'SKETCHMAP_CONFIG'
CONFIG_PATH_DEFAULT = 'configs/sketchmap.toml'


class Environment(str, Enum):
    DEVELOPMENT = 'development'
    PRODUCTION = 'production'
    TEST = 'test'


class StrokeMode(str, Enum):
    """Режим пера: рисование или стирание."""

    DRAW = 'draw'
    ERASE = 'erase'


class CleanupState(str, Enum):
    """Этапы одного запуска очистки."""

    IDLE = 'idle'
    LOCKED = 'locked'
    SCANNING_CANVASES = 'scanning-canvases'
    SCANNING_ORPHANS = 'scanning-orphans'
    RECORDING = 'recording'
    UNLOCKED = 'unlocked'
