# relgate/tests/conftest.py
import json
import logging

import pytest

from relgate.engine import Policy, ReleaseVerificationOptions
from relgate.errors import VerificationError

DIGESTS = {"sha256": "val256", "sha512": "val512"}
PACKAGE_URI = "package_uri1"
UNCONSTRAINED_PACKAGE_URI = "package_uri2"
PRINCIPAL_URI = "principal_uri2"

ORG_POLICY = {
    "format": 1,
    "roots": {
        "release": [
            {"id": "releaser_id1", "build": {"max_slsa_level": 2}},
            {"id": "releaser_id2", "build": {"max_slsa_level": 3}},
        ]
    },
}

PROJECT_POLICY = {
    "format": 1,
    "principal": {"uri": PRINCIPAL_URI},
    "build": {"require_slsa_level": 3},
    "packages": [
        {"uri": PACKAGE_URI, "environment": {"any_of": ["dev", "prod"]}},
        {"uri": UNCONSTRAINED_PACKAGE_URI},
    ],
}


class FakeReleaseVerifier:
    """Confirms exactly one (releaser, package, digests) release into `environment`."""

    def __init__(self, releaser_id, package_uri=PACKAGE_URI, digests=None, environment=None):
        self.releaser_id = releaser_id
        self.package_uri = package_uri
        self.digests = dict(digests or DIGESTS)
        self.environment = environment
        self.calls = []

    def verify_release_attestation(self, digests, package_uri, environments, releaser_id):
        self.calls.append((dict(digests), package_uri, list(environments), releaser_id))
        if releaser_id != self.releaser_id:
            raise VerificationError(f"no release by {releaser_id!r}")
        if package_uri != self.package_uri:
            raise VerificationError(f"no release of {package_uri!r}")
        if dict(digests) != self.digests:
            raise VerificationError("digests do not match the release")
        return self.environment


def _dump(doc):
    return json.dumps(doc).encode("utf-8")


@pytest.fixture
def org_bytes():
    return _dump(ORG_POLICY)


@pytest.fixture
def project_bytes():
    return _dump(PROJECT_POLICY)


@pytest.fixture
def policy(org_bytes, project_bytes):
    return Policy.from_sources(org_bytes, [("policy_id1", project_bytes)])


@pytest.fixture
def make_options():
    def _make(releaser_id="releaser_id2", **kw):
        return ReleaseVerificationOptions(verifier=FakeReleaseVerifier(releaser_id, **kw))

    return _make


@pytest.fixture
def accepted(policy, make_options):
    result = policy.evaluate(DIGESTS, PACKAGE_URI, "policy_id1", make_options(environment="prod"))
    assert result.accepted
    return result


@pytest.fixture(autouse=True)
def _restore_relgate_logger_level():
    # ReleaseGate.from_settings sets the "relgate" logger level; keep it from leaking between tests.
    logger = logging.getLogger("relgate")
    saved = logger.level
    yield
    logger.setLevel(saved)
