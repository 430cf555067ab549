#!/usr/bin/env python3
"""
DerivDesk Trading Dashboard
Tick/Digit Aggregator

Keeps a bounded rolling buffer of ticks per symbol, extracts the last
decimal digit of each price and maintains the 0-9 frequency table used by
strategy evaluation and display.
"""

from collections import deque
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

import numpy as np

from common.constants import DIGITS
from common.logger import get_logger
from common.metrics import MetricsCollector

from .models import DigitStat, TickRecord
from .options import TickOptions

TickListener = Callable[[TickRecord, List[DigitStat]], None]


def last_digit(value: float, decimals: int) -> int:
    """
    Last decimal digit of `value` quoted with `decimals` places.

    Computed on the decimal representation so that 1234.57 yields 7 and
    not the 6 binary floating point would produce.
    """
    try:
        scaled = abs(Decimal(str(value))) * (Decimal(10) ** decimals)
    except InvalidOperation:
        raise ValueError(f"Not a price: {value!r}")
    return int(scaled.to_integral_value(rounding=ROUND_FLOOR)) % 10


def percentages(counts: np.ndarray) -> List[int]:
    """Round count/total*100 half up, as the dashboard always displayed it."""
    total = int(counts.sum())
    if total == 0:
        return [0] * len(counts)
    # floor(x + 0.5) in integer arithmetic
    return [int((int(c) * 200 + total) // (2 * total)) for c in counts]


def decimals_from_pip(pip_size: Any) -> Optional[int]:
    """Decimal places from a tick's `pip_size`, given as places or as 0.01."""
    if pip_size is None:
        return None
    try:
        pip = Decimal(str(pip_size))
    except InvalidOperation:
        return None
    if pip >= 1 and pip == pip.to_integral_value():
        return int(pip)
    if 0 < pip < 1:
        return max(0, -pip.normalize().as_tuple().exponent)
    return None


class _SymbolBuffer:
    __slots__ = ("raw", "counted", "counts")

    def __init__(self, capacity: int):
        self.raw: Deque[TickRecord] = deque(maxlen=capacity)
        self.counted: Deque[TickRecord] = deque(maxlen=capacity)
        self.counts = np.zeros(10, dtype=np.int64)


class TickDigitAggregator:
    """
    Per-symbol tick buffers with digit statistics.

    Two consecutive identical prices closer than `duplicate_window_ms` are
    a redelivery: the second is kept in the raw log but not counted.
    Identical prices `repeat_window_ms` or more apart are genuine repeats.
    Prices in between are counted and logged.
    """

    def __init__(self, options: Optional[TickOptions] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.options = options or TickOptions()
        self.metrics = metrics or MetricsCollector("derivdesk", "ticks")
        self.logger = get_logger("deriv_gateway.ticks")

        self._buffers: Dict[str, _SymbolBuffer] = {}
        self._precision: Dict[str, int] = {}
        self._listeners: List[TickListener] = []

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_precision(self, symbol: str, decimals: int) -> None:
        if decimals < 0:
            raise ValueError("decimals must be >= 0")
        self._precision[symbol] = decimals

    def precision(self, symbol: str) -> int:
        return self._precision.get(symbol, self.options.default_pip_decimals)

    def subscribe(self, listener: TickListener) -> Callable[[], None]:
        """Register a listener called for every counted tick."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def _buffer(self, symbol: str) -> _SymbolBuffer:
        buffer = self._buffers.get(symbol)
        if buffer is None:
            buffer = self._buffers[symbol] = _SymbolBuffer(self.options.buffer_size)
        return buffer

    def add_tick(self, symbol: str, value: float, time: float,
                 decimals: Optional[int] = None, notify: bool = True) -> TickRecord:
        """
        Record one tick.

        Args:
            symbol: Instrument symbol
            value: Quoted price
            time: Epoch seconds
            decimals: Quoted precision, remembered for the symbol when given

        Returns:
            The stored record; `duplicate` is set if it was not counted
        """
        if decimals is not None:
            self.set_precision(symbol, decimals)
        value = float(value)
        record = TickRecord(
            symbol=symbol,
            value=value,
            digit=last_digit(value, self.precision(symbol)),
            time=float(time),
        )

        buffer = self._buffer(symbol)
        previous = buffer.counted[-1] if buffer.counted else None
        if previous is not None and previous.value == value:
            gap_ms = (record.time - previous.time) * 1000
            if gap_ms < self.options.duplicate_window_ms:
                record.duplicate = True
            elif gap_ms < self.options.repeat_window_ms:
                self.logger.debug(f"{symbol}: repeated price {value} after {gap_ms:.0f}ms, counting it")

        buffer.raw.append(record)
        if record.duplicate:
            self.metrics.increment("duplicate_ticks")
            self.logger.debug(f"{symbol}: duplicate delivery of {value} ignored for statistics")
            return record

        if len(buffer.counted) == buffer.counted.maxlen:
            buffer.counts[buffer.counted[0].digit] -= 1
        buffer.counted.append(record)
        buffer.counts[record.digit] += 1
        self.metrics.increment("ticks")

        if notify and self._listeners:
            self._notify(record)
        return record

    def _notify(self, record: TickRecord) -> None:
        stats = self.get_digit_stats(record.symbol)
        for listener in list(self._listeners):
            try:
                listener(record, stats)
            except Exception as e:
                self.logger.error(f"Error in tick listener: {e}")

    def load_history(self, symbol: str, prices: Iterable[float], times: Iterable[float],
                     decimals: Optional[int] = None, replace: bool = True) -> int:
        """
        Bulk-load historical ticks, oldest first.

        Listeners are notified once with the newest tick.

        Returns:
            Number of ticks counted
        """
        prices, times = list(prices), list(times)
        carried: List[TickRecord] = []
        if replace:
            # Live ticks newer than the history survive the reload
            newest = max(times) if times else float("inf")
            buffer = self._buffers.get(symbol)
            if buffer is not None:
                carried = [r for r in buffer.raw if r.time > newest]
            self.clear(symbol)
        if decimals is not None:
            self.set_precision(symbol, decimals)
        counted = 0
        for price, epoch in zip(prices, times):
            if not self.add_tick(symbol, price, epoch, notify=False).duplicate:
                counted += 1
        for record in carried:
            self.add_tick(symbol, record.value, record.time, notify=False)
        buffer = self._buffers.get(symbol)
        if buffer is not None and buffer.counted and self._listeners:
            self._notify(buffer.counted[-1])
        self.logger.info(f"Loaded {counted} historical tick(s) for {symbol}")
        return counted

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def symbols(self) -> List[str]:
        return list(self._buffers)

    def get_last_ticks(self, symbol: str, count: Optional[int] = None,
                       include_duplicates: bool = True) -> List[TickRecord]:
        """Newest `count` ticks in arrival order (oldest first)."""
        buffer = self._buffers.get(symbol)
        if buffer is None:
            return []
        records = list(buffer.raw if include_duplicates else buffer.counted)
        if count is None:
            return records
        return records[-count:] if count > 0 else []

    def get_last_digits(self, symbol: str, count: Optional[int] = None) -> List[int]:
        return [r.digit for r in self.get_last_ticks(symbol, count, include_duplicates=False)]

    def get_digit_stats(self, symbol: str, window: Optional[int] = None) -> List[DigitStat]:
        """
        Frequency of each digit over the counted ticks.

        Args:
            window: Only consider the newest `window` counted ticks

        Returns:
            Ten DigitStat entries, digit 0 first
        """
        buffer = self._buffers.get(symbol)
        if buffer is None:
            counts = np.zeros(10, dtype=np.int64)
        elif window is None or window >= len(buffer.counted):
            counts = buffer.counts.copy()
        else:
            digits = [r.digit for r in list(buffer.counted)[-window:]] if window > 0 else []
            counts = np.bincount(np.asarray(digits, dtype=np.int64), minlength=10)
        pct = percentages(counts)
        return [DigitStat(digit=d, count=int(counts[d]), percentage=pct[d]) for d in DIGITS]

    def tick_count(self, symbol: str) -> int:
        buffer = self._buffers.get(symbol)
        return len(buffer.counted) if buffer else 0

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clear(self, symbol: Optional[str] = None) -> None:
        if symbol is None:
            self._buffers.clear()
        else:
            self._buffers.pop(symbol, None)

    def snapshot(self, symbol: str) -> List[Dict[str, Any]]:
        """Counted ticks of a symbol as plain dicts for persistence."""
        return [{"value": r.value, "time": r.time} for r in self.get_last_ticks(symbol, include_duplicates=False)]

    def restore(self, symbol: str, ticks: List[Dict[str, Any]]) -> int:
        return self.load_history(
            symbol,
            [t["value"] for t in ticks],
            [t["time"] for t in ticks],
        )
