# relgate/tests/test_exporter.py
from prometheus_client import CollectorRegistry

from relgate.engine import EvaluationRejected
from relgate.errors import InternalError, VerificationError
from relgate.exporter import OUTCOME_FAILED, OUTCOME_OK, RelgateExporter


def _value(registry, name, **labels):
    return registry.get_sample_value(name, labels) or 0.0


def test_counts_evaluations(accepted):
    registry = CollectorRegistry()
    exp = RelgateExporter(registry)
    exp.record_evaluation(accepted)
    exp.record_evaluation(EvaluationRejected(error=VerificationError("no")))
    exp.record_evaluation(EvaluationRejected(error=VerificationError("no")))
    exp.record_evaluation(EvaluationRejected(error=InternalError("bug")))

    name = "relgate_evaluations_total"
    assert _value(registry, name, outcome="accepted", error_kind="none") == 1
    assert _value(registry, name, outcome="rejected", error_kind="verification") == 2
    assert _value(registry, name, outcome="rejected", error_kind="internal") == 1


def test_counts_attestations_and_verifications():
    registry = CollectorRegistry()
    exp = RelgateExporter(registry)
    exp.record_attestation(OUTCOME_OK)
    exp.record_verification(OUTCOME_FAILED)
    assert _value(registry, "relgate_attestations_total", outcome="ok") == 1
    assert _value(registry, "relgate_verifications_total", outcome="failed") == 1


def test_disabled_is_noop(accepted):
    registry = CollectorRegistry()
    exp = RelgateExporter(registry, enabled=False)
    exp.record_evaluation(accepted)
    exp.record_attestation(OUTCOME_OK)
    assert registry.get_sample_value("relgate_attestations_total", {"outcome": "ok"}) is None
