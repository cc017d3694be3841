# FILE: relgate/engine.py
from __future__ import annotations

"""
Release policy evaluation.

Given a candidate release (digest set, package URI, selected project policy)
and a release-verifier capability, decide whether the organization and
project policies authorize it.

Evaluation order:
  1. select the project policy by id (unknown id -> InternalError);
  2. select the first package entry with a matching URI (none -> VerificationError);
  3. ask the release verifier, root by root in declaration order, to confirm
     the release; the first confirmed root is the releaser;
  4. enforce the package's environment allow-list against the environment
     reported by the verifier;
  5. enforce the project's minimum SLSA level against the releaser's maximum.

`Policy.evaluate` never raises for policy outcomes or caller mistakes; it
returns an EvaluationAccepted or an EvaluationRejected carrying the error.
"""

from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    Iterable,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

from .errors import (
    InternalError,
    InvalidInputError,
    NotFoundError,
    RelgateError,
    VerificationError,
)
from .intoto import PolicyExcerpt, validate_digest_set
from .kv import compute_digest_set, policyset_hash
from .policies import (
    OrganizationPolicy,
    Package,
    Principal,
    ProjectPolicy,
    ReleaseRoot,
)
from .sources import named_documents, read_document

if TYPE_CHECKING:
    from .attestation import Attestation, AttestationCreationOptions

__all__ = [
    "ReleaseAttestationVerifier",
    "ReleaseVerificationOptions",
    "PolicyEvaluationResult",
    "EvaluationAccepted",
    "EvaluationRejected",
    "PolicyDocument",
    "Policy",
]

# Names of the policy excerpts recorded in attestations.
EXCERPT_ORG = "org"
EXCERPT_PROJECT = "project"

_DOCUMENT_DIGEST_ALGS = ("sha256",)


# ---------------------------------------------------------------------------
# Release verifier capability
# ---------------------------------------------------------------------------


class ReleaseAttestationVerifier(Protocol):
    """
    Trust boundary to real release evidence.

    Implementations locate and authenticate a release attestation for the
    given digests and package, released by `releaser_id`, into one of
    `environments` (empty means unconstrained). They return the environment
    the release was made for, or None when the evidence names none, and raise
    VerificationError when no such release exists.

    Implementations that perform I/O must impose their own deadline and
    report a timeout as VerificationError.
    """

    def verify_release_attestation(
        self,
        digests: Mapping[str, str],
        package_uri: str,
        environments: Sequence[str],
        releaser_id: str,
    ) -> Optional[str]:
        ...


@dataclass(frozen=True)
class ReleaseVerificationOptions:
    verifier: Optional[ReleaseAttestationVerifier] = None


# ---------------------------------------------------------------------------
# Evaluation result (two variants)
# ---------------------------------------------------------------------------


class PolicyEvaluationResult:
    """
    Outcome of one evaluation: either EvaluationAccepted or EvaluationRejected.

    Only an accepted result can be turned into an attestation.
    """

    __slots__ = ()

    @property
    def accepted(self) -> bool:
        return False

    def attestation_new(
        self,
        creator_id: str,
        *options: "AttestationCreationOptions",
    ) -> "Attestation":
        from .attestation import attestation_new

        return attestation_new(self, creator_id, *options)


@dataclass(frozen=True)
class EvaluationAccepted(PolicyEvaluationResult):
    digests: Mapping[str, str]
    principal: Principal
    policy_id: str = ""
    package_uri: str = ""
    releaser_id: str = ""
    environment: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return True

    @property
    def error(self) -> None:
        return None


@dataclass(frozen=True)
class EvaluationRejected(PolicyEvaluationResult):
    error: RelgateError
    policy_id: str = ""
    package_uri: str = ""


# ---------------------------------------------------------------------------
# Loaded policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PolicyDocument:
    """Where a policy document came from and what its bytes digest to."""

    uri: str
    digests: Mapping[str, str] = field(default_factory=dict)

    def excerpt(self) -> PolicyExcerpt:
        return PolicyExcerpt(uri=self.uri, digests=dict(self.digests))


def _document_for(uri: str, content: bytes) -> PolicyDocument:
    return PolicyDocument(uri=uri, digests=compute_digest_set(content, _DOCUMENT_DIGEST_ALGS))


class Policy:
    """
    An organization policy plus the project policies it governs.

    Instances are immutable after construction and may be shared across
    threads; reloading means building a new Policy.
    """

    def __init__(
        self,
        org: OrganizationPolicy,
        projects: Mapping[str, ProjectPolicy],
        *,
        org_document: Optional[PolicyDocument] = None,
        project_documents: Optional[Mapping[str, PolicyDocument]] = None,
    ) -> None:
        self._org = org
        self._projects: Dict[str, ProjectPolicy] = dict(projects)

        self._org_document = org_document or _document_for(
            "organization", org.model_dump_json().encode("utf-8")
        )
        docs = dict(project_documents or {})
        for policy_id, project in self._projects.items():
            if policy_id not in docs:
                docs[policy_id] = _document_for(policy_id, project.model_dump_json().encode("utf-8"))
        self._project_documents: Dict[str, PolicyDocument] = docs

    # ---------- construction ----------

    @classmethod
    def from_sources(
        cls,
        org: Any,
        projects: Iterable[Any],
        *,
        org_uri: str = "organization",
    ) -> "Policy":
        """
        Load one organization document and a forward-only sequence of
        project documents (see relgate.sources.named_documents).

        Raises InvalidInputError on unparsable or inconsistent documents and
        on duplicate project policy ids.
        """
        org_bytes = read_document(org)
        org_policy = OrganizationPolicy.from_bytes(org_bytes)

        parsed: Dict[str, ProjectPolicy] = {}
        documents: Dict[str, PolicyDocument] = {}
        for doc in named_documents(projects):
            if doc.policy_id in parsed:
                raise InvalidInputError(f"duplicate project policy id {doc.policy_id!r}")
            try:
                project = ProjectPolicy.from_bytes(doc.content)
            except InvalidInputError as exc:
                raise InvalidInputError(f"project policy {doc.policy_id!r}: {exc}") from exc
            parsed[doc.policy_id] = project
            documents[doc.policy_id] = _document_for(doc.uri or doc.policy_id, doc.content)

        return cls(
            org_policy,
            parsed,
            org_document=_document_for(org_uri, org_bytes),
            project_documents=documents,
        )

    # ---------- read ----------

    @property
    def organization(self) -> OrganizationPolicy:
        return self._org

    def project_ids(self) -> Tuple[str, ...]:
        return tuple(self._projects)

    def project(self, policy_id: str) -> ProjectPolicy:
        try:
            return self._projects[policy_id]
        except (KeyError, TypeError):
            raise NotFoundError(f"project policy {policy_id!r} not found") from None

    def policy_excerpts(self, policy_id: str) -> Dict[str, PolicyExcerpt]:
        """
        Policy excerpts describing the documents that govern `policy_id`,
        keyed "org" and "project", for embedding in an attestation.
        """
        if policy_id not in self._projects:
            raise NotFoundError(f"project policy {policy_id!r} not found")
        return {
            EXCERPT_ORG: self._org_document.excerpt(),
            EXCERPT_PROJECT: self._project_documents[policy_id].excerpt(),
        }

    def policyset_ref(self) -> str:
        """Stable short reference for the whole loaded policy set."""
        docs = {"org": dict(self._org_document.digests)}
        for policy_id, doc in self._project_documents.items():
            docs[f"project:{policy_id}"] = dict(doc.digests)
        return f"set@1#{policyset_hash(docs)[:12]}"

    def unattainable_projects(self) -> Tuple[str, ...]:
        """
        Ids of project policies whose required SLSA level exceeds what every
        release root can attain; evaluations against them always fail.
        """
        ceiling = self._org.max_slsa_level()
        out = []
        for policy_id, project in self._projects.items():
            required = project.build.require_slsa_level
            if required is None:
                continue
            if ceiling is None or required > ceiling:
                out.append(policy_id)
        return tuple(out)

    # ---------- evaluation ----------

    def evaluate(
        self,
        digests: Mapping[str, str],
        package_uri: str,
        policy_id: str,
        options: Optional[ReleaseVerificationOptions],
    ) -> PolicyEvaluationResult:
        """
        Evaluate one release candidate against the project policy `policy_id`.

        Returns EvaluationAccepted on success. Policy rejections are returned
        as EvaluationRejected holding a VerificationError; caller-contract
        violations (invalid digests, empty package URI, unknown policy id,
        missing verifier) as EvaluationRejected holding an InternalError.
        """
        try:
            return self._evaluate(digests, package_uri, policy_id, options)
        except (InternalError, VerificationError) as exc:
            return EvaluationRejected(error=exc, policy_id=policy_id, package_uri=package_uri)

    def _evaluate(
        self,
        digests: Mapping[str, str],
        package_uri: str,
        policy_id: str,
        options: Optional[ReleaseVerificationOptions],
    ) -> EvaluationAccepted:
        try:
            validate_digest_set(digests)
        except InvalidInputError as exc:
            raise InternalError(f"invalid digests: {exc}") from exc
        if not package_uri:
            raise InternalError("package URI is empty")
        if options is None or options.verifier is None:
            raise InternalError("release verifier is not set")

        try:
            project = self.project(policy_id)
        except NotFoundError as exc:
            raise InternalError(str(exc)) from exc

        package = project.package(package_uri)
        if package is None:
            raise VerificationError(
                f"package {package_uri!r} is not governed by project policy {policy_id!r}"
            )

        root, environment = self._confirm_release(
            options.verifier, dict(digests), package
        )
        _check_environment(package, environment)
        _check_level(project, root)

        return EvaluationAccepted(
            digests=dict(digests),
            principal=project.principal,
            policy_id=policy_id,
            package_uri=package_uri,
            releaser_id=root.id,
            environment=environment,
        )

    def _confirm_release(
        self,
        verifier: ReleaseAttestationVerifier,
        digests: Dict[str, str],
        package: Package,
    ) -> Tuple[ReleaseRoot, Optional[str]]:
        environments = list(package.allowed_environments())
        rejected = []
        for root in self._org.roots.release:
            try:
                environment = verifier.verify_release_attestation(
                    dict(digests), package.uri, list(environments), root.id
                )
            except VerificationError as exc:
                rejected.append(f"{root.id}: {exc}")
                continue
            except Exception as exc:
                raise VerificationError(
                    f"release verifier failed for releaser {root.id!r}: {exc}"
                ) from exc
            try:
                return self._org.release_root(root.id), environment
            except NotFoundError as exc:
                raise VerificationError(str(exc)) from exc
        detail = "; ".join(rejected) if rejected else "no release roots"
        raise VerificationError(
            f"no trusted releaser confirmed package {package.uri!r} ({detail})"
        )


def _check_environment(package: Package, environment: Optional[str]) -> None:
    if not package.constrains_environment():
        return
    allowed = package.allowed_environments()
    if environment is None:
        raise VerificationError(
            f"package {package.uri!r} requires an environment in {list(allowed)}, none reported"
        )
    if environment not in allowed:
        raise VerificationError(
            f"environment {environment!r} not allowed for package {package.uri!r} "
            f"(allowed: {list(allowed)})"
        )


def _check_level(project: ProjectPolicy, root: ReleaseRoot) -> None:
    required = project.build.require_slsa_level
    if required is None:
        return
    if required > root.build.max_slsa_level:
        raise VerificationError(
            f"releaser {root.id!r} max SLSA level {root.build.max_slsa_level} "
            f"is below the required level {required}"
        )
