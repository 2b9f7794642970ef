"""Tests for duration parsing."""

import pytest

from qsync import parse_duration
from qsync.duration import parse_optional_duration, to_seconds


class TestParseDuration:
    """Tests for parse_duration function."""

    def test_milliseconds(self) -> None:
        """Test parsing milliseconds."""
        assert parse_duration("100ms") == 100
        assert parse_duration("1ms") == 1
        assert parse_duration("0ms") == 0

    def test_seconds(self) -> None:
        """Test parsing seconds."""
        assert parse_duration("1s") == 1000
        assert parse_duration("30s") == 30000
        assert parse_duration("0s") == 0

    def test_minutes(self) -> None:
        """Test parsing minutes."""
        assert parse_duration("1m") == 60_000
        assert parse_duration("5m") == 300_000
        assert parse_duration("0m") == 0

    def test_hours(self) -> None:
        """Test parsing hours."""
        assert parse_duration("1h") == 3_600_000
        assert parse_duration("2h") == 7_200_000
        assert parse_duration("0h") == 0

    def test_days(self) -> None:
        """Test parsing days."""
        assert parse_duration("1d") == 86_400_000
        assert parse_duration("7d") == 604_800_000
        assert parse_duration("0d") == 0

    def test_integer_passthrough(self) -> None:
        """Test that integers pass through unchanged."""
        assert parse_duration(1000) == 1000
        assert parse_duration(0) == 0
        assert parse_duration(999999) == 999999

    def test_invalid_format(self) -> None:
        """Test that invalid formats raise ValueError."""
        with pytest.raises(ValueError, match="Invalid duration"):
            parse_duration("invalid")

        with pytest.raises(ValueError, match="Invalid duration"):
            parse_duration("10x")

        with pytest.raises(ValueError, match="Invalid duration"):
            parse_duration("s10")

        with pytest.raises(ValueError, match="Invalid duration"):
            parse_duration("")

        with pytest.raises(ValueError, match="Invalid duration"):
            parse_duration("10")

    def test_negative_integer_rejected(self) -> None:
        """Negative millisecond counts are not durations."""
        with pytest.raises(ValueError, match="negative"):
            parse_duration(-1)

    def test_bool_rejected(self) -> None:
        """True is an int in Python but never a duration."""
        with pytest.raises(ValueError, match="Invalid duration"):
            parse_duration(True)


class TestOptionalDuration:
    """Tests for the None-preserving variant and unit conversion."""

    def test_none_stays_none(self) -> None:
        assert parse_optional_duration(None) is None

    def test_parses_like_parse_duration(self) -> None:
        assert parse_optional_duration("30s") == 30_000
        assert parse_optional_duration(250) == 250

    def test_to_seconds(self) -> None:
        assert to_seconds(30_000) == 30.0
        assert to_seconds(5) == 0.005
