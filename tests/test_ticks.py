import numpy as np
import pytest

from deriv_gateway.options import TickOptions
from deriv_gateway.ticks import TickDigitAggregator, decimals_from_pip, last_digit, percentages


@pytest.mark.parametrize("value,decimals,expected", [
    (1234.57, 2, 7),
    (100.1, 2, 0),
    (1.005, 3, 5),
    (9876.543, 3, 3),
    (42, 0, 2),
    (0.1 + 0.2, 1, 3),
])
def test_last_digit(value, decimals, expected):
    assert last_digit(value, decimals) == expected


def test_last_digit_rejects_non_prices():
    with pytest.raises(ValueError):
        last_digit("abc", 2)


@pytest.mark.parametrize("pip,expected", [
    (2, 2),
    (3, 3),
    ("0.01", 2),
    (0.001, 3),
    (None, None),
    (0, None),
    ("n/a", None),
])
def test_decimals_from_pip(pip, expected):
    assert decimals_from_pip(pip) == expected


def test_percentages_round_half_up():
    counts = np.array([1, 1, 0, 0, 0, 0, 0, 0, 0, 0])
    assert percentages(counts) == [50, 50, 0, 0, 0, 0, 0, 0, 0, 0]
    counts = np.array([1, 7, 0, 0, 0, 0, 0, 0, 0, 0])
    # 12.5 rounds up, 87.5 rounds up
    assert percentages(counts)[:2] == [13, 88]
    assert percentages(np.zeros(10, dtype=int)) == [0] * 10


def test_percentages_sum_to_about_one_hundred():
    rng = np.random.default_rng(7)
    for _ in range(200):
        counts = rng.integers(0, 60, size=10)
        if counts.sum() == 0:
            continue
        assert abs(sum(percentages(counts)) - 100) <= 5


def test_add_tick_updates_stats_and_notifies():
    agg = TickDigitAggregator()
    seen = []
    agg.subscribe(lambda record, stats: seen.append((record, stats)))

    record = agg.add_tick("R_100", 1234.57, 1.0, decimals=2)
    assert record.digit == 7
    assert not record.duplicate
    stats = agg.get_digit_stats("R_100")
    assert stats[7].count == 1 and stats[7].percentage == 100
    assert [s.digit for s in stats] == list(range(10))
    assert seen[0][0] is record
    assert seen[0][1][7].count == 1


def test_listener_errors_do_not_stop_ingestion():
    agg = TickDigitAggregator()
    received = []

    def broken(record, stats):
        raise RuntimeError("boom")

    agg.subscribe(broken)
    agg.subscribe(lambda record, stats: received.append(record.value))
    agg.add_tick("R_100", 1.23, 1.0)
    assert received == [1.23]


def test_unsubscribed_listener_is_not_called():
    agg = TickDigitAggregator()
    calls = []
    unsubscribe = agg.subscribe(lambda record, stats: calls.append(record))
    unsubscribe()
    agg.add_tick("R_100", 1.23, 1.0)
    assert calls == []


def test_buffer_is_bounded_fifo():
    agg = TickDigitAggregator(TickOptions(buffer_size=5))
    for i in range(8):
        agg.add_tick("R_100", 100 + i / 100, float(i), decimals=2)

    assert agg.tick_count("R_100") == 5
    assert agg.get_last_digits("R_100") == [3, 4, 5, 6, 7]
    stats = agg.get_digit_stats("R_100")
    assert sum(s.count for s in stats) == 5
    assert stats[0].count == 0 and stats[7].count == 1


def test_duplicate_delivery_is_logged_but_not_counted():
    agg = TickDigitAggregator()
    agg.add_tick("R_100", 1.23, 10.0)
    duplicate = agg.add_tick("R_100", 1.23, 10.1)

    assert duplicate.duplicate
    assert agg.tick_count("R_100") == 1
    assert len(agg.get_last_ticks("R_100")) == 2
    assert len(agg.get_last_ticks("R_100", include_duplicates=False)) == 1
    assert agg.metrics.get("duplicate_ticks") == 1


def test_duplicate_window_runs_from_last_counted_tick():
    agg = TickDigitAggregator()
    agg.add_tick("R_100", 1234.57, 0.0, decimals=2)
    assert agg.add_tick("R_100", 1234.57, 0.25).duplicate
    assert not agg.add_tick("R_100", 1234.57, 0.5).duplicate
    assert agg.get_digit_stats("R_100")[7].count == 2


def test_repeated_price_after_window_is_counted():
    agg = TickDigitAggregator()
    agg.add_tick("R_100", 1.23, 10.0)
    repeat = agg.add_tick("R_100", 1.23, 10.6)
    assert not repeat.duplicate
    assert agg.get_digit_stats("R_100")[3].count == 2


def test_repeated_price_in_ambiguous_zone_is_counted():
    agg = TickDigitAggregator()
    agg.add_tick("R_100", 1.23, 10.0)
    record = agg.add_tick("R_100", 1.23, 10.4)
    assert not record.duplicate
    assert agg.tick_count("R_100") == 2


def test_different_price_close_together_is_counted():
    agg = TickDigitAggregator()
    agg.add_tick("R_100", 1.23, 10.0)
    record = agg.add_tick("R_100", 1.24, 10.05)
    assert not record.duplicate
    assert agg.tick_count("R_100") == 2


def test_duplicate_window_is_configurable():
    agg = TickDigitAggregator(TickOptions(duplicate_window_ms=50, repeat_window_ms=100))
    agg.add_tick("R_100", 1.23, 10.0)
    assert not agg.add_tick("R_100", 1.23, 10.1).duplicate


def test_windowed_stats():
    agg = TickDigitAggregator()
    for i, value in enumerate([1.11, 1.12, 1.13, 1.13]):
        agg.add_tick("R_100", value, float(i))
    stats = agg.get_digit_stats("R_100", window=2)
    assert stats[3].count == 2 and stats[3].percentage == 100
    assert sum(s.count for s in agg.get_digit_stats("R_100", window=0)) == 0
    assert agg.get_digit_stats("R_100", window=100)[1].count == 1


def test_stats_for_unknown_symbol_are_empty():
    agg = TickDigitAggregator()
    assert all(s.count == 0 and s.percentage == 0 for s in agg.get_digit_stats("R_50"))
    assert agg.get_last_ticks("R_50") == []


def test_symbols_are_independent():
    agg = TickDigitAggregator()
    agg.add_tick("R_100", 1.23, 1.0)
    agg.add_tick("R_50", 1.23, 1.0)
    assert agg.tick_count("R_100") == 1 and agg.tick_count("R_50") == 1
    assert set(agg.symbols()) == {"R_50", "R_100"}


def test_precision_is_remembered_per_symbol():
    agg = TickDigitAggregator()
    agg.set_precision("R_10", 3)
    assert agg.add_tick("R_10", 5432.101, 1.0).digit == 1
    assert agg.add_tick("R_100", 1234.57, 1.0).digit == 7
    with pytest.raises(ValueError):
        agg.set_precision("R_10", -1)


def test_load_history_replaces_buffer_and_keeps_newer_live_ticks():
    agg = TickDigitAggregator()
    notified = []
    agg.add_tick("R_100", 9.99, 50.0)
    agg.add_tick("R_100", 2.22, 500.0)
    agg.subscribe(lambda record, stats: notified.append(record))

    counted = agg.load_history("R_100", [1.01, 1.02, 1.03], [100, 101, 102], decimals=2)

    assert counted == 3
    assert [r.value for r in agg.get_last_ticks("R_100")] == [1.01, 1.02, 1.03, 2.22]
    assert len(notified) == 1
    assert notified[0].value == 2.22


def test_snapshot_and_restore():
    agg = TickDigitAggregator()
    for i in range(4):
        agg.add_tick("R_100", 1 + i / 100, float(i))
    snapshot = agg.snapshot("R_100")

    other = TickDigitAggregator()
    assert other.restore("R_100", snapshot) == 4
    assert other.get_last_digits("R_100") == agg.get_last_digits("R_100")


def test_clear():
    agg = TickDigitAggregator()
    agg.add_tick("R_100", 1.23, 1.0)
    agg.add_tick("R_50", 1.23, 1.0)
    agg.clear("R_100")
    assert agg.symbols() == ["R_50"]
    agg.clear()
    assert agg.symbols() == []
