import pytest

from analysis.anomaly_detector import PriceAnomalyDetector

PAIR = "polygon:USDC/WETH"


@pytest.fixture
def detector():
    return PriceAnomalyDetector()


def _seed(detector, prices, start=1_000.0):
    for offset, price in enumerate(prices):
        detector.add_price(PAIR, price, timestamp=start + offset)


def test_insufficient_history_is_valid(detector):
    _seed(detector, [100.0, 101.0])
    check = detector.check_price(PAIR, 500.0)
    assert check.is_valid is True
    assert check.reason == "insufficient history"


def test_critical_deviation_wins(detector):
    _seed(detector, [99.0, 100.0, 101.0, 100.0, 99.5, 100.5])
    check = detector.check_price(PAIR, 130.0)
    assert check.is_valid is False
    assert check.severity == "critical"


def test_sudden_move_against_recent_window(detector):
    _seed(detector, [100.0] * 6)
    check = detector.check_price(PAIR, 112.0)
    assert check.is_valid is False
    assert check.severity == "medium"


def test_z_score_outlier(detector):
    _seed(detector, [99.0, 101.0, 99.0, 101.0, 99.0, 101.0])
    check = detector.check_price(PAIR, 104.0)
    assert check.is_valid is False
    assert check.severity == "high"
    assert "z-score" in check.reason


def test_normal_price_is_valid(detector):
    _seed(detector, [99.0, 101.0, 100.0, 100.5, 99.5])
    assert detector.check_price(PAIR, 100.2).is_valid is True


def test_history_is_bounded():
    detector = PriceAnomalyDetector(max_entries=3)
    _seed(detector, [1.0, 2.0, 3.0, 4.0, 5.0])
    stats = detector.get_stats(PAIR)
    assert stats["count"] == 3
    assert stats["min"] == 3.0


def test_clean_old_history_drops_stale_pairs():
    detector = PriceAnomalyDetector(max_age_seconds=60)
    detector.add_price(PAIR, 100.0, timestamp=0.0)
    detector.add_price("polygon:USDC/DAI", 1.0, timestamp=1_000.0)

    removed = detector.clean_old_history(now=1_010.0)

    assert removed == 1
    assert PAIR not in detector
    assert "polygon:USDC/DAI" in detector
    assert detector.get_stats(PAIR) is None
