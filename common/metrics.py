#!/usr/bin/env python3
"""
DerivDesk Trading Dashboard
Metrics Collection Module

In-process counters, gauges and timers describing the health of a client
session: frames received, request latency, reconnects and subscriptions.
"""

import time
import json
from collections import defaultdict
from typing import Any, Dict, Optional

import numpy as np

from common.logger import get_logger

MAX_TIMER_SAMPLES = 1000


class Timer:
    """Utility for timing operations."""

    def __init__(self, metrics_collector, metric_name):
        self.metrics_collector = metrics_collector
        self.metric_name = metric_name
        self.start_time = None

    def __enter__(self):
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            elapsed_time = time.monotonic() - self.start_time
            self.metrics_collector.record_timer(self.metric_name, elapsed_time)

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.__exit__(exc_type, exc_val, exc_tb)


class MetricsCollector:
    """Collects and manages client metrics."""

    def __init__(self, namespace, subsystem=None):
        """
        Initialize metrics collector.

        Args:
            namespace: Namespace for metrics
            subsystem: Optional subsystem name appended to the namespace
        """
        self.namespace = namespace if subsystem is None else f"{namespace}.{subsystem}"

        self.counters = {}
        self.gauges = {}
        self.timers = defaultdict(list)
        self.start_time = time.time()
        self.logger = get_logger(f"Metrics.{namespace}")

    def _full_name(self, metric_name):
        return f"{self.namespace}.{metric_name}"

    def increment(self, metric_name, value=1):
        """
        Increment a counter metric.

        Args:
            metric_name: Metric name
            value: Increment value (default: 1)

        Returns:
            New counter value
        """
        full_name = self._full_name(metric_name)
        self.counters[full_name] = self.counters.get(full_name, 0) + value
        return self.counters[full_name]

    def set(self, metric_name, value):
        """
        Set a gauge metric to a specific value.

        Returns:
            Set value
        """
        self.gauges[self._full_name(metric_name)] = value
        return value

    def record_timer(self, metric_name, value):
        """
        Record a timer value (in seconds).
        """
        samples = self.timers[self._full_name(metric_name)]
        samples.append(value)
        # Keep only the last samples to limit memory usage
        if len(samples) > MAX_TIMER_SAMPLES:
            del samples[:-MAX_TIMER_SAMPLES]

    def timer(self, metric_name):
        """Create a timer context manager."""
        return Timer(self, metric_name)

    def get(self, metric_name, default=None):
        """
        Get the current value of a counter or gauge.
        """
        full_name = self._full_name(metric_name)
        if full_name in self.counters:
            return self.counters[full_name]
        if full_name in self.gauges:
            return self.gauges[full_name]
        return default

    def get_timer_stats(self, metric_name) -> Dict[str, float]:
        """
        Get statistics for a timer metric.

        Returns:
            Dictionary of timer statistics (count, min, max, mean, median, p95)
        """
        values = self.timers.get(self._full_name(metric_name))
        if not values:
            return {}

        samples = np.asarray(values, dtype=float)
        return {
            "count": int(samples.size),
            "min": float(samples.min()),
            "max": float(samples.max()),
            "mean": float(samples.mean()),
            "median": float(np.median(samples)),
            "p95": float(np.percentile(samples, 95)),
        }

    def get_all_metrics(self) -> Dict[str, Any]:
        """
        Get all metrics.
        """
        prefix = f"{self.namespace}."
        return {
            "counters": dict(self.counters),
            "gauges": dict(self.gauges),
            "timers": {
                name[len(prefix):]: self.get_timer_stats(name[len(prefix):])
                for name in self.timers
            },
            "uptime": time.time() - self.start_time,
        }

    def reset(self):
        self.counters.clear()
        self.gauges.clear()
        self.timers.clear()

    def export_json(self, file_path: Optional[str] = None) -> str:
        """Serialize all metrics, optionally writing them to `file_path`."""
        payload = json.dumps(self.get_all_metrics(), indent=2, default=str)
        if file_path:
            with open(file_path, "w") as f:
                f.write(payload)
        return payload
