"""Tests for domain models, validation helpers and error types."""

from datetime import UTC, datetime

import pydantic
import pytest

from domain.errors import QuotaExceededError, TileTooLargeError, ValidationError
from domain.models import Canvas, SaveTilesResult, StrokeData, TileCoordinate
from domain.validation import (
    generate_id,
    validate_id,
    validate_layer_name,
    validate_lat_lng,
    validate_tile_coordinate,
    validate_tile_range,
)
from shared.constants import ID_ALPHABET

NOW = datetime(2026, 3, 1, tzinfo=UTC)


class TestCanvasModel:
    """Tests for Canvas."""

    def test_camel_case_round_trip(self):
        """JSON uses camelCase; Python uses snake_case."""
        canvas = Canvas(
            id='a' * 21, center_lat=1.0, center_lng=2.0, zoom=3, created_at=NOW, updated_at=NOW
        )
        data = canvas.model_dump(mode='json', by_alias=True)
        assert data['centerLat'] == 1.0
        assert data['tileCount'] == 0
        assert Canvas.model_validate(data) == canvas

    def test_partial_share_triple_rejected(self):
        """The share triple is all-set or all-null."""
        with pytest.raises(pydantic.ValidationError, match='together'):
            Canvas(
                id='a' * 21,
                center_lat=0,
                center_lng=0,
                zoom=3,
                share_lat=1.0,
                created_at=NOW,
                updated_at=NOW,
            )

    def test_tile_count_bounded(self):
        """tile_count may not exceed the quota."""
        with pytest.raises(pydantic.ValidationError):
            Canvas(
                id='a' * 21,
                center_lat=0,
                center_lng=0,
                zoom=3,
                tile_count=1001,
                created_at=NOW,
                updated_at=NOW,
            )

    def test_save_result_aliases(self):
        """newCount is accepted from API payloads."""
        result = SaveTilesResult.model_validate({'saved': [{'z': 1, 'x': 0, 'y': 1}], 'newCount': 4})
        assert result.new_count == 4
        assert result.saved[0] == TileCoordinate(z=1, x=0, y=1)


class TestStrokeData:
    """Tests for StrokeData."""

    @pytest.mark.parametrize('color', ['#fff', '#A0B1C2', '#00000080'])
    def test_valid_colors(self, color):
        """Short, long and alpha hex colours are accepted."""
        assert StrokeData(points=[], color=color, zoom=10).color == color

    @pytest.mark.parametrize('color', ['red', '#12', '#GGGGGG'])
    def test_invalid_colors(self, color):
        """Anything else is rejected."""
        with pytest.raises(pydantic.ValidationError):
            StrokeData(points=[], color=color, zoom=10)


class TestValidation:
    """Tests for domain.validation."""

    def test_generate_id(self):
        """Ids are 21 url-safe characters and unique."""
        ids = {generate_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(len(i) == 21 and set(i) <= set(ID_ALPHABET) for i in ids)

    @pytest.mark.parametrize('value', ['a' * 19, 'a' * 22, 'a' * 20 + '!', 123])
    def test_invalid_ids(self, value):
        """Wrong length, characters or type fail."""
        with pytest.raises(ValidationError):
            validate_id(value)

    def test_valid_ids(self):
        """20 and 21 character ids pass."""
        assert validate_id('a' * 20) == 'a' * 20
        assert validate_id('Ab_-' * 5 + 'x') == 'Ab_-' * 5 + 'x'

    def test_tile_coordinate_bounds(self):
        """x and y must lie in [0, 2**z - 1]."""
        assert validate_tile_coordinate(1, 1, 1) == (1, 1, 1)
        assert validate_tile_coordinate(19, 2**19 - 1, 0) == (19, 2**19 - 1, 0)
        for z, x, y in [(0, 0, 0), (20, 0, 0), (1, 2, 0), (3, 0, 8), (3, True, 0)]:
            with pytest.raises(ValidationError):
                validate_tile_coordinate(z, x, y)

    def test_lat_lng(self):
        """Latitude and longitude ranges are enforced."""
        assert validate_lat_lng(90, -180) == (90, -180)
        with pytest.raises(ValidationError):
            validate_lat_lng(90.1, 0)
        with pytest.raises(ValidationError):
            validate_lat_lng(0, 181)

    def test_layer_name(self):
        """Names are stripped and limited to 50 characters."""
        assert validate_layer_name('  Roads  ') == 'Roads'
        assert validate_layer_name('x' * 50) == 'x' * 50
        with pytest.raises(ValidationError):
            validate_layer_name('x' * 51)

    def test_tile_range(self):
        """Inverted or negative ranges fail."""
        validate_tile_range(0, 0, 0, 0)
        with pytest.raises(ValidationError):
            validate_tile_range(-1, 0, 0, 0)
        with pytest.raises(ValidationError):
            validate_tile_range(0, 0, 2, 1)


class TestErrors:
    """Tests for error types."""

    def test_quota_fields(self):
        """QuotaExceededError carries its counts and code."""
        err = QuotaExceededError('c', 1000, 1000)
        assert (err.canvas_id, err.current_count, err.limit) == ('c', 1000, 1000)
        assert err.code == 'LIMIT_EXCEEDED'
        assert '1000/1000' in str(err)

    def test_too_large_is_validation(self):
        """Strict-mode oversize errors are validation errors."""
        assert issubclass(TileTooLargeError, ValidationError)
