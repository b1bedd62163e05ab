"""CloudWatch custom metrics emitter with background batching.

Publishes operational metrics for the assistant:

* ``Provider/*``: one count + latency per LLM round-trip, split by
  provider and outcome.
* ``Tool/ExecutionCount``: one per executed tool call, split by tool
  name and outcome.
* ``Conversation/GuardrailTrips``: runs stopped by the turn bound.
* ``Persistence/FailureCount``: non-fatal store write/read failures
  (durability gaps).

Design
------
* Metrics are collected in a thread-safe in-memory buffer.
* A daemon thread flushes the buffer to CloudWatch every
  ``FLUSH_INTERVAL_SECONDS`` (default 60 s).
* When running locally (``METRICS_ENABLED != "true"``), metrics are
  logged at DEBUG level but **not** pushed to CloudWatch.

Usage
-----
>>> from crm_assistant.services.metrics import metrics
>>> metrics.record_provider_call("anthropic", success=True, latency_ms=812.0)
>>> metrics.record_tool_execution("add_client", success=False)
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from datetime import UTC, datetime
from typing import Any

from crm_assistant.config import METRICS_NAMESPACE

logger = logging.getLogger(__name__)

FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


def _dims(**pairs: str) -> list[dict[str, str]]:
    return [{"Name": name, "Value": value} for name, value in pairs.items()]


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self, namespace: str = METRICS_NAMESPACE) -> None:
        self._namespace = namespace
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None  # lazy-init

        if self._enabled:
            self._start_flush_thread()

    # ── Lazy CloudWatch client ────────────────────────────────────────

    def _get_cw_client(self):
        """Create the boto3 CloudWatch client on first use."""
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Public API ────────────────────────────────────────────────────

    def record_provider_call(
        self,
        provider: str,
        *,
        success: bool,
        latency_ms: float,
        error_type: str | None = None,
    ) -> None:
        """Record one LLM round-trip."""
        status = "success" if success else "failure"
        self._put("Provider/RequestCount", 1, "Count", _dims(Provider=provider, Status=status))
        self._put("Provider/Latency", latency_ms, "Milliseconds", _dims(Provider=provider))
        if not success:
            self._put(
                "Provider/ErrorCount", 1, "Count",
                _dims(Provider=provider, ErrorType=error_type or "unknown"),
            )
        logger.debug(
            "Metric: provider %s %s latency=%.1fms", provider, status, latency_ms,
        )

    def record_tool_execution(
        self, tool_name: str, *, success: bool, latency_ms: float = 0,
    ) -> None:
        """Record one executed tool call."""
        status = "success" if success else "failure"
        self._put("Tool/ExecutionCount", 1, "Count", _dims(Tool=tool_name, Status=status))
        if latency_ms > 0:
            self._put("Tool/Latency", latency_ms, "Milliseconds", _dims(Tool=tool_name))
        logger.debug("Metric: tool %s %s", tool_name, status)

    def record_guardrail_trip(self, turn_count: int) -> None:
        self._put("Conversation/GuardrailTrips", 1, "Count", [])
        logger.debug("Metric: guardrail tripped after %d turns", turn_count)

    def record_persistence_failure(self, operation: str) -> None:
        self._put("Persistence/FailureCount", 1, "Count", _dims(Operation=operation))
        logger.debug("Metric: persistence failure in %s", operation)

    def flush(self) -> int:
        """Send buffered metrics to CloudWatch.  Returns count sent."""
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer[:]
            self._buffer.clear()

        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=self._namespace, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    # ── Internal ──────────────────────────────────────────────────────

    def _put(
        self, name: str, value: float, unit: str, dimensions: list[dict[str, str]],
    ) -> None:
        datum = {
            "MetricName": name,
            "Dimensions": dimensions,
            "Timestamp": datetime.now(UTC),
            "Value": value,
            "Unit": unit,
        }
        with self._lock:
            self._buffer.append(datum)

    def _start_flush_thread(self) -> None:
        """Start a daemon thread that flushes metrics periodically."""

        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        t = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        t.start()
        atexit.register(self.flush)  # flush on process exit
        logger.info(
            "Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS,
        )


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
