"""Engine self-observability via DogStatsD custom metrics.

When ``DEDUP_STATSD_ENABLED=true`` this module emits operational metrics to
a local Datadog Agent (or DogStatsD sidecar). When disabled, or if the
client cannot be created, all calls become no-ops.

Metrics emitted (under ``DEDUP_METRICS_PREFIX``, default ``dedup``):
  - dedup.duplicates.detected        (count)
  - dedup.duplicates.merged          (count)
  - dedup.merge.errors               (count)
  - dedup.batch.records_processed    (count)
  - dedup.batch.errors               (count)
  - dedup.batch.duration             (timing, ms)
  - dedup.duplicates.total           (gauge)
  - dedup.duplicates.pending         (gauge)
  - dedup.detection.false_positive_rate (gauge, percent)
  - dedup.detection.average_time     (gauge, ms)
"""

from __future__ import annotations

import atexit
from typing import Dict, List, Optional

from datadog import DogStatsd

from dedup_engine.utils.logger import log_debug, log_info, log_warning


class _NoOpStatsd:
    """Stand-in client used while metrics are disabled."""

    def increment(self, *a, **kw):
        pass

    def gauge(self, *a, **kw):
        pass

    def timing(self, *a, **kw):
        pass

    def close(self):
        pass


_client = None  # _NoOpStatsd or DogStatsd


def configure(config=None) -> None:
    """(Re)build the client from ``config``, or from ``get_config()``."""
    global _client

    if config is None:
        from dedup_engine.config import get_config

        config = get_config()

    if not config.statsd_enabled:
        log_debug("DogStatsD metrics disabled (DEDUP_STATSD_ENABLED=false)")
        _client = _NoOpStatsd()
        return

    try:
        client = DogStatsd(
            host=config.statsd_host,
            port=config.statsd_port,
            namespace=config.metrics_prefix,
            constant_tags=["service:crm-dedup-engine"],
        )
    except (OSError, ValueError) as exc:
        log_warning("DogStatsD unavailable, metrics disabled", error=str(exc))
        _client = _NoOpStatsd()
        return

    atexit.register(client.close)
    _client = client
    log_info(
        "DogStatsD client initialized",
        host=config.statsd_host,
        port=config.statsd_port,
        prefix=config.metrics_prefix,
    )


def reset() -> None:
    """Forget the client; the next call rebuilds it."""
    global _client
    _client = None


def _get_client():
    if _client is None:
        configure()
    return _client


def _tags(extra: Optional[Dict[str, str]] = None) -> List[str]:
    """Build tag list from key-value pairs, filtering out None values."""
    tags: List[str] = []
    if extra:
        tags.extend(f"{k}:{v}" for k, v in extra.items() if v)
    return tags


# --- Public API ---


def incr(metric: str, value: int = 1, **extra_tags) -> None:
    """Increment a counter metric."""
    tags = _tags(extra_tags)
    _get_client().increment(metric, value=value, tags=tags or None)


def gauge(metric: str, value: float, **extra_tags) -> None:
    """Set a gauge metric."""
    tags = _tags(extra_tags)
    _get_client().gauge(metric, value=value, tags=tags or None)


def timing(metric: str, value_ms: float, **extra_tags) -> None:
    """Record a timing metric in milliseconds."""
    tags = _tags(extra_tags)
    _get_client().timing(metric, value=value_ms, tags=tags or None)
