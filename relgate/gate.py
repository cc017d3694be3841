# FILE: relgate/gate.py
from __future__ import annotations

"""
ReleaseGate: the policy engine wired to settings, logging and metrics.

    gate = ReleaseGate.from_settings(make_reloadable_settings().get())
    result = gate.evaluate(digests, package_uri, policy_id, verifier)
    if result.accepted:
        blob = gate.attest(result).to_bytes()

The core modules (engine, attestation, verification) stay free of logging
and metrics; this facade adds both around each call.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .attestation import (
    CONTEXT_PRINCIPAL,
    CONTEXT_TYPE_PRINCIPAL,
    Attestation,
    AttestationCreationOptions,
    attestation_new,
    set_creator_version,
    set_policy,
)
from .config import Settings
from .engine import (
    Policy,
    PolicyEvaluationResult,
    ReleaseAttestationVerifier,
    ReleaseVerificationOptions,
)
from .errors import (
    InternalError,
    InvalidInputError,
    NotFoundError,
    RelgateError,
    error_kind,
)
from .exporter import OUTCOME_FAILED, OUTCOME_OK, RelgateExporter
from .kv import digest_set_ref
from .logging import bind, configure_json_logging, log_decision, unbind
from .sources import DirectorySource, read_document
from .verification import AttestationVerificationOptions, verification_new

_log = logging.getLogger(__name__)

__all__ = ["ReleaseGate"]


class ReleaseGate:
    def __init__(
        self,
        policy: Policy,
        settings: Optional[Settings] = None,
        exporter: Optional[RelgateExporter] = None,
    ) -> None:
        self.policy = policy
        self.settings = settings or Settings()
        self.exporter = exporter or RelgateExporter(enabled=False)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        exporter: Optional[RelgateExporter] = None,
    ) -> "ReleaseGate":
        """
        Load the organization policy file and the project policy directory
        named by `settings`, and apply its logging settings. Raises
        InvalidInputError if either source is missing or unparsable.
        """
        if settings.log_json:
            configure_json_logging(settings.log_level)
        else:
            logging.getLogger("relgate").setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

        if not settings.org_policy_path:
            raise InvalidInputError("org_policy_path is not configured")
        if not settings.project_policy_dir:
            raise InvalidInputError("project_policy_dir is not configured")

        org_path = Path(settings.org_policy_path)
        try:
            with org_path.open("rb") as f:
                org_bytes = read_document(f)
        except OSError as exc:
            raise InvalidInputError(f"cannot read organization policy {str(org_path)!r}: {exc}") from exc

        policy = Policy.from_sources(
            org_bytes,
            DirectorySource(settings.project_policy_dir),
            org_uri=org_path.resolve().as_uri(),
        )
        for policy_id in policy.unattainable_projects():
            _log.warning(
                "project policy %r requires a SLSA level no release root can attain",
                policy_id,
                extra={"policy_id": policy_id},
            )
        _log.info(
            "loaded %d project policies",
            len(policy.project_ids()),
            extra={"policyset_ref": policy.policyset_ref(), "config_hash": settings.config_hash()},
        )
        if exporter is None:
            exporter = RelgateExporter(enabled=settings.metrics_enabled)
        return cls(policy, settings, exporter)

    # ---------- evaluation ----------

    def evaluate(
        self,
        digests: Mapping[str, str],
        package_uri: str,
        policy_id: str,
        verifier: Optional[ReleaseAttestationVerifier],
    ) -> PolicyEvaluationResult:
        bind(policy_id=policy_id, package_uri=package_uri)
        try:
            result = self.policy.evaluate(
                digests,
                package_uri,
                policy_id,
                ReleaseVerificationOptions(verifier=verifier),
            )
            extra: Dict[str, Any] = {}
            if result.accepted:
                extra["digest_ref"] = digest_set_ref(result.digests)
                extra["releaser_id"] = result.releaser_id
                extra["environment"] = result.environment
                log_decision(_log, verdict=True, message="release accepted", extra=extra)
            else:
                extra["reason"] = str(result.error)
                log_decision(
                    _log,
                    verdict=False,
                    error_kind=error_kind(result.error),
                    message="release rejected",
                    extra=extra,
                    level=logging.WARNING,
                )
            self.exporter.record_evaluation(result)
            return result
        finally:
            unbind("policy_id", "package_uri")

    # ---------- attestation ----------

    def attest(
        self,
        result: PolicyEvaluationResult,
        *options: AttestationCreationOptions,
    ) -> Attestation:
        """
        Build the deployment attestation for an accepted result, recording the
        configured creator and, when enabled, the governing policy excerpts.
        Caller options are applied last.
        """
        s = self.settings
        base = [set_creator_version(s.creator_version)]
        try:
            if s.attach_policy_excerpts and result is not None and result.accepted:
                try:
                    excerpts = self.policy.policy_excerpts(result.policy_id)
                except NotFoundError as exc:
                    # result was evaluated against a different Policy
                    raise InternalError(
                        f"evaluation result for {result.policy_id!r} does not belong to this gate"
                    ) from exc
                base.append(set_policy(excerpts))
            att = attestation_new(result, s.creator_id, *base, *options)
        except RelgateError as exc:
            self.exporter.record_attestation(OUTCOME_FAILED)
            _log.error("attestation failed: %s", exc, extra={"error_kind": error_kind(exc)})
            raise
        self.exporter.record_attestation(OUTCOME_OK)
        _log.info(
            "attestation created",
            extra={"digest_ref": digest_set_ref(result.digests), "creator_id": s.creator_id},
        )
        return att

    # ---------- verification ----------

    def verify(
        self,
        data: Any,
        digests: Mapping[str, str],
        principal_uri: str,
        *options: AttestationVerificationOptions,
        creator_id: Optional[str] = None,
    ) -> None:
        """
        Re-verify an attestation produced by this gate (or one with the same
        creator id) against the expected digests and principal URI.
        Raises the underlying RelgateError on mismatch or malformed input.
        """
        want_creator = creator_id or self.settings.creator_id
        try:
            verification_new(data).verify(
                want_creator,
                digests,
                CONTEXT_TYPE_PRINCIPAL,
                {CONTEXT_PRINCIPAL: principal_uri},
                *options,
            )
        except RelgateError as exc:
            self.exporter.record_verification(OUTCOME_FAILED)
            log_decision(
                _log,
                verdict=False,
                error_kind=error_kind(exc),
                message="attestation verification failed",
                extra={"reason": str(exc)},
                level=logging.WARNING,
            )
            raise
        self.exporter.record_verification(OUTCOME_OK)
        log_decision(
            _log,
            verdict=True,
            message="attestation verified",
            extra={"digest_ref": digest_set_ref(dict(digests))},
        )
