# FILE: relgate/exporter.py
# Prometheus counters for release-gate decisions.
#
# - Label sets are small and controlled: outcome and error kind only, never
#   package URIs, digests or policy ids.
# - The exporter registers on a caller-supplied CollectorRegistry (one per
#   test, or the process-wide default) and can be disabled to a no-op.
# - This module does NOT expose an HTTP endpoint; the embedding process
#   serves its registry however it serves the rest of its metrics.

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional, Set

from prometheus_client import REGISTRY, CollectorRegistry, Counter

from .errors import error_kind

logger = logging.getLogger(__name__)

OUTCOME_ACCEPTED = "accepted"
OUTCOME_REJECTED = "rejected"
OUTCOME_OK = "ok"
OUTCOME_FAILED = "failed"


def _safe_str(value: Any) -> str:
    """
    Convert values to short strings for labels.

    - None -> ""
    - Long strings are truncated to 32 characters to limit label explosion.
    """
    if value is None:
        return ""
    s = str(value)
    if len(s) > 32:
        s = s[:29] + "..."
    return s


# metric_name -> allowed label keys.
_METRIC_LABEL_WHITELIST: Dict[str, Set[str]] = {
    "relgate_evaluations_total": {"outcome", "error_kind"},
    "relgate_attestations_total": {"outcome"},
    "relgate_verifications_total": {"outcome"},
}


class RelgateExporter:
    """
    Counters for evaluations, attestation creation and attestation verification.

        exporter = RelgateExporter(registry=CollectorRegistry())
        exporter.record_evaluation(result)
        exporter.record_attestation(OUTCOME_OK)
    """

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        *,
        enabled: bool = True,
    ) -> None:
        self.enabled = bool(enabled)
        self.registry = registry if registry is not None else REGISTRY

        # Local lock for lazy metric initialization.
        self._lock = threading.Lock()
        self._initialized = False

        self._evaluation_counter: Optional[Counter] = None
        self._attestation_counter: Optional[Counter] = None
        self._verification_counter: Optional[Counter] = None

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    def _metric_labels(self, metric_name: str, label_values: Dict[str, Any]) -> Dict[str, str]:
        """Apply label whitelist + value cleaning for a given metric_name."""
        allowed = _METRIC_LABEL_WHITELIST[metric_name]
        return {k: _safe_str(v) for k, v in label_values.items() if k in allowed}

    def _init_metrics_if_needed(self) -> None:
        """
        Lazily create metric objects.

        Idempotent and guarded by a lock. A name clash on the registry is
        logged and leaves that metric unset.
        """
        if not self.enabled or self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            try:
                self._evaluation_counter = Counter(
                    "relgate_evaluations_total",
                    "Release policy evaluations by outcome",
                    ["outcome", "error_kind"],
                    registry=self.registry,
                )
            except ValueError as e:
                logger.warning("Failed to register relgate_evaluations_total: %s", e)

            try:
                self._attestation_counter = Counter(
                    "relgate_attestations_total",
                    "Deployment attestations created by outcome",
                    ["outcome"],
                    registry=self.registry,
                )
            except ValueError as e:
                logger.warning("Failed to register relgate_attestations_total: %s", e)

            try:
                self._verification_counter = Counter(
                    "relgate_verifications_total",
                    "Deployment attestation verifications by outcome",
                    ["outcome"],
                    registry=self.registry,
                )
            except ValueError as e:
                logger.warning("Failed to register relgate_verifications_total: %s", e)

            self._initialized = True

    # -----------------------------------------------------------------------
    # Recording
    # -----------------------------------------------------------------------

    def record_evaluation(self, result: Any) -> None:
        """Count one evaluation result (accepted, or rejected by error kind)."""
        if not self.enabled:
            return
        self._init_metrics_if_needed()
        if self._evaluation_counter is None:
            return

        if getattr(result, "accepted", False):
            values = {"outcome": OUTCOME_ACCEPTED, "error_kind": "none"}
        else:
            values = {
                "outcome": OUTCOME_REJECTED,
                "error_kind": error_kind(getattr(result, "error", None)),
            }
        labels = self._metric_labels("relgate_evaluations_total", values)
        self._evaluation_counter.labels(**labels).inc()

    def record_attestation(self, outcome: str) -> None:
        if not self.enabled:
            return
        self._init_metrics_if_needed()
        if self._attestation_counter is None:
            return
        labels = self._metric_labels("relgate_attestations_total", {"outcome": outcome})
        self._attestation_counter.labels(**labels).inc()

    def record_verification(self, outcome: str) -> None:
        if not self.enabled:
            return
        self._init_metrics_if_needed()
        if self._verification_counter is None:
            return
        labels = self._metric_labels("relgate_verifications_total", {"outcome": outcome})
        self._verification_counter.labels(**labels).inc()


__all__ = [
    "RelgateExporter",
    "OUTCOME_ACCEPTED",
    "OUTCOME_REJECTED",
    "OUTCOME_OK",
    "OUTCOME_FAILED",
]
