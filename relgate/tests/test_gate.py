# relgate/tests/test_gate.py
import json
import logging

import pytest
from prometheus_client import CollectorRegistry

from conftest import DIGESTS, ORG_POLICY, PACKAGE_URI, PRINCIPAL_URI, FakeReleaseVerifier
from relgate.config import Settings
from relgate.engine import Policy, ReleaseVerificationOptions
from relgate.errors import InternalError, InvalidInputError, NotFoundError, VerificationError
from relgate.exporter import RelgateExporter
from relgate.gate import ReleaseGate
from relgate.logging import JSONFormatter
from relgate.verification import has_policy, is_creator_version


@pytest.fixture
def policy_files(tmp_path, org_bytes, project_bytes):
    org = tmp_path / "org.json"
    org.write_bytes(org_bytes)
    projects = tmp_path / "projects"
    projects.mkdir()
    (projects / "policy_id1.json").write_bytes(project_bytes)
    return org, projects


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def gate(policy_files, registry):
    org, projects = policy_files
    settings = Settings(
        creator_id="deployer",
        creator_version="1.2.3",
        org_policy_path=str(org),
        project_policy_dir=str(projects),
        log_json=False,
    )
    return ReleaseGate.from_settings(settings, exporter=RelgateExporter(registry))


def test_evaluate_attest_verify(gate, registry, policy_files):
    verifier = FakeReleaseVerifier("releaser_id2", environment="prod")
    result = gate.evaluate(DIGESTS, PACKAGE_URI, "policy_id1", verifier)
    assert result.accepted

    att = gate.attest(result)
    pred = att.predicate
    assert pred.creator.id == "deployer"
    assert pred.creator.version == "1.2.3"
    assert set(pred.policy) == {"org", "project"}
    assert pred.policy["org"].uri == policy_files[0].resolve().as_uri()

    org_excerpt = gate.policy.policy_excerpts("policy_id1")["org"]
    gate.verify(
        att.to_bytes(),
        DIGESTS,
        PRINCIPAL_URI,
        is_creator_version("1.2.3"),
        has_policy("org", org_excerpt.uri, org_excerpt.digests),
    )

    assert registry.get_sample_value(
        "relgate_evaluations_total", {"outcome": "accepted", "error_kind": "none"}
    ) == 1
    assert registry.get_sample_value("relgate_attestations_total", {"outcome": "ok"}) == 1
    assert registry.get_sample_value("relgate_verifications_total", {"outcome": "ok"}) == 1


def test_rejection_is_logged_and_counted(gate, registry, caplog):
    verifier = FakeReleaseVerifier("releaser_id2", environment="mismatch")
    with caplog.at_level(logging.INFO, logger="relgate.gate"):
        result = gate.evaluate(DIGESTS, PACKAGE_URI, "policy_id1", verifier)
    assert isinstance(result.error, VerificationError)

    rec = [r for r in caplog.records if r.getMessage() == "release rejected"][0]
    assert rec.verdict is False
    assert rec.error_kind == "verification"
    assert registry.get_sample_value(
        "relgate_evaluations_total", {"outcome": "rejected", "error_kind": "verification"}
    ) == 1

    with pytest.raises(InternalError):
        gate.attest(result)
    assert registry.get_sample_value("relgate_attestations_total", {"outcome": "failed"}) == 1


def test_verify_failure_is_counted(gate, registry):
    result = gate.evaluate(DIGESTS, PACKAGE_URI, "policy_id1", FakeReleaseVerifier("releaser_id2", environment="dev"))
    blob = gate.attest(result).to_bytes()
    with pytest.raises(VerificationError):
        gate.verify(blob, DIGESTS, "principal_uri9")
    assert registry.get_sample_value("relgate_verifications_total", {"outcome": "failed"}) == 1


def test_policy_excerpts_can_be_disabled(policy_files):
    org, projects = policy_files
    settings = Settings(
        org_policy_path=str(org),
        project_policy_dir=str(projects),
        attach_policy_excerpts=False,
        log_json=False,
    )
    gate = ReleaseGate.from_settings(settings, exporter=RelgateExporter(enabled=False))
    result = gate.evaluate(DIGESTS, PACKAGE_URI, "policy_id1", FakeReleaseVerifier("releaser_id2", environment="prod"))
    doc = json.loads(gate.attest(result).to_bytes())
    assert "policy" not in doc["predicate"]
    assert doc["predicate"]["creator"]["id"] == "relgate"


def test_unattainable_project_warns(tmp_path, caplog):
    org = tmp_path / "org.json"
    org.write_text(json.dumps(ORG_POLICY))
    projects = tmp_path / "projects"
    projects.mkdir()
    (projects / "strict.json").write_text(
        '{"format": 1, "principal": {"uri": "p"}, "build": {"require_slsa_level": 4}}'
    )
    settings = Settings(org_policy_path=str(org), project_policy_dir=str(projects), log_json=False)
    with caplog.at_level(logging.WARNING, logger="relgate.gate"):
        ReleaseGate.from_settings(settings, exporter=RelgateExporter(enabled=False))
    assert any(getattr(r, "policy_id", None) == "strict" for r in caplog.records)


@pytest.mark.parametrize(
    "overrides",
    [
        {},
        {"org_policy_path": "/nonexistent/org.json", "project_policy_dir": "/tmp"},
    ],
)
def test_from_settings_requires_sources(overrides):
    with pytest.raises(InvalidInputError):
        ReleaseGate.from_settings(Settings(log_json=False, **overrides))


def test_non_mapping_digests_are_rejected(gate, registry):
    verifier = FakeReleaseVerifier("releaser_id2", environment="prod")
    result = gate.evaluate([("sha256", "val256")], PACKAGE_URI, "policy_id1", verifier)
    assert isinstance(result.error, InternalError)
    assert registry.get_sample_value(
        "relgate_evaluations_total", {"outcome": "rejected", "error_kind": "internal"}
    ) == 1


def test_result_from_another_policy_is_internal(gate, registry, org_bytes, project_bytes):
    other = Policy.from_sources(org_bytes, [("other_id", project_bytes)])
    result = other.evaluate(
        DIGESTS,
        PACKAGE_URI,
        "other_id",
        ReleaseVerificationOptions(verifier=FakeReleaseVerifier("releaser_id2", environment="prod")),
    )
    assert result.accepted

    with pytest.raises(InternalError) as ei:
        gate.attest(result)
    assert isinstance(ei.value.__cause__, NotFoundError)
    assert registry.get_sample_value("relgate_attestations_total", {"outcome": "failed"}) == 1


def test_from_settings_configures_json_logging(policy_files):
    org, projects = policy_files
    root = logging.getLogger()
    saved = (list(root.handlers), root.level)
    try:
        ReleaseGate.from_settings(
            Settings(org_policy_path=str(org), project_policy_dir=str(projects), log_level="DEBUG"),
            exporter=RelgateExporter(enabled=False),
        )
        assert root.level == logging.DEBUG
        assert any(isinstance(h.formatter, JSONFormatter) for h in root.handlers)
    finally:
        root.handlers = saved[0]
        root.setLevel(saved[1])


def test_plain_logging_only_sets_level(policy_files):
    org, projects = policy_files
    logger = logging.getLogger("relgate")
    saved = logger.level
    try:
        ReleaseGate.from_settings(
            Settings(
                org_policy_path=str(org),
                project_policy_dir=str(projects),
                log_json=False,
                log_level="WARNING",
            ),
            exporter=RelgateExporter(enabled=False),
        )
        assert logger.level == logging.WARNING
    finally:
        logger.setLevel(saved)
