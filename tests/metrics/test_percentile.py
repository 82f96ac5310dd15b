"""
Tests for nearest-rank percentiles.
"""

import pytest

from surge.metrics import MetricsCollector, RequestSample, percentile


class TestPercentile:
    """Test the nearest-rank percentile function."""

    LATENCIES = [100, 200, 300, 400, 500, 600, 700, 800, 900, 1000]

    @pytest.mark.parametrize(
        "p, expected",
        [(50, 500), (90, 900), (95, 1000), (99, 1000), (100, 1000), (10, 100), (1, 100)],
    )
    def test_exact_values(self, p: float, expected: int) -> None:
        """Test selection by ceil(p/100 * n) - 1."""
        assert percentile(self.LATENCIES, p) == expected

    def test_order_independent(self) -> None:
        """Test input order does not matter."""
        shuffled = [700, 100, 1000, 300, 900, 200, 500, 800, 400, 600]
        assert percentile(shuffled, 50) == 500

    def test_empty_is_zero(self) -> None:
        """Test empty input returns 0."""
        assert percentile([], 50) == 0
        assert percentile([], 99) == 0

    def test_single_value(self) -> None:
        """Test a single sample is every percentile."""
        for p in (1, 50, 99, 100):
            assert percentile([42], p) == 42

    def test_no_interpolation(self) -> None:
        """Test the result is always one of the inputs."""
        assert percentile([100, 200], 50) == 100
        assert percentile([100, 200], 75) == 200

    @pytest.mark.parametrize("p", [0, -5, 100.5, 150])
    def test_out_of_range(self, p: float) -> None:
        """Test invalid percentiles are rejected."""
        with pytest.raises(ValueError):
            percentile([1, 2, 3], p)

    def test_collector_static_helper(self) -> None:
        """Test percentile over sample objects."""
        samples = [
            RequestSample("Phase", "/x", "GET", 200, latency, True)
            for latency in self.LATENCIES
        ]
        assert MetricsCollector.percentile(samples, 90) == 900
        assert MetricsCollector.percentile([], 90) == 0
