# FILE: relgate/policies.py
from __future__ import annotations

from typing import Any, Optional, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidInputError, NotFoundError

__all__ = [
    "FORMAT_VERSION",
    "RootBuild",
    "ReleaseRoot",
    "Roots",
    "OrganizationPolicy",
    "Principal",
    "BuildRequirements",
    "Environment",
    "Package",
    "ProjectPolicy",
    "parse_document",
]

# Only one document format exists so far; both policy kinds carry it.
FORMAT_VERSION = 1

# SLSA build levels.
_MIN_LEVEL = 0
_MAX_LEVEL = 4

_M = TypeVar("_M", bound=BaseModel)


# ---------------------------------------------------------------------------
# Organization policy (Pydantic v2; extra=forbid to catch typos in policy files)
# ---------------------------------------------------------------------------


class RootBuild(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, strict=True)

    # Highest assurance level a release through this root can attest to.
    max_slsa_level: int = Field(ge=_MIN_LEVEL, le=_MAX_LEVEL)


class ReleaseRoot(BaseModel):
    """
    A trusted releaser recognised by the organization.

    `id` is matched verbatim against the releaser identity the release
    verifier is asked to confirm.
    """
    model_config = ConfigDict(extra="forbid", frozen=True, strict=True)

    id: str = Field(min_length=1)
    build: RootBuild


class Roots(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, strict=True)

    release: Tuple[ReleaseRoot, ...] = ()


class OrganizationPolicy(BaseModel):
    """
    Organization-wide policy: the set of trusted release roots and the
    maximum assurance level each one can attain.
    """
    model_config = ConfigDict(extra="forbid", frozen=True, strict=True)

    format: int
    roots: Roots = Field(default_factory=Roots)

    @field_validator("format")
    @classmethod
    def _check_format(cls, v: int) -> int:
        if v != FORMAT_VERSION:
            raise ValueError(f"unsupported format version {v}")
        return v

    @field_validator("roots")
    @classmethod
    def _check_unique_roots(cls, v: Roots) -> Roots:
        seen = set()
        for root in v.release:
            if root.id in seen:
                raise ValueError(f"duplicate release root id {root.id!r}")
            seen.add(root.id)
        return v

    def release_root(self, releaser_id: str) -> ReleaseRoot:
        for root in self.roots.release:
            if root.id == releaser_id:
                return root
        raise NotFoundError(f"release root {releaser_id!r} not found")

    def max_slsa_level(self) -> Optional[int]:
        """Highest level any root can attain; None when there are no roots."""
        levels = [r.build.max_slsa_level for r in self.roots.release]
        return max(levels) if levels else None

    @classmethod
    def from_bytes(cls, data: Union[bytes, str]) -> "OrganizationPolicy":
        return parse_document(cls, data, kind="organization policy")


# ---------------------------------------------------------------------------
# Project policy
# ---------------------------------------------------------------------------


class Principal(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, strict=True)

    # Authority that owns the project policy; recorded in attestations.
    uri: str = Field(min_length=1)


class BuildRequirements(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, strict=True)

    # None means "no minimum".
    require_slsa_level: Optional[int] = Field(default=None, ge=_MIN_LEVEL, le=_MAX_LEVEL)


class Environment(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, strict=True)

    any_of: Tuple[str, ...] = ()

    @field_validator("any_of")
    @classmethod
    def _check_names(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        for name in v:
            if not name:
                raise ValueError("environment name is empty")
        return v


class Package(BaseModel):
    """
    Binds a package identity to the environments it may be released into.

    A missing `environment` (or an empty `any_of`) leaves the package
    unconstrained: any environment, including none, is acceptable.
    """
    model_config = ConfigDict(extra="forbid", frozen=True, strict=True)

    uri: str = Field(min_length=1)
    environment: Optional[Environment] = None

    def allowed_environments(self) -> Tuple[str, ...]:
        if self.environment is None:
            return ()
        return self.environment.any_of

    def constrains_environment(self) -> bool:
        return bool(self.allowed_environments())


class ProjectPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, strict=True)

    format: int
    principal: Principal
    build: BuildRequirements = Field(default_factory=BuildRequirements)
    packages: Tuple[Package, ...] = ()

    @field_validator("format")
    @classmethod
    def _check_format(cls, v: int) -> int:
        if v != FORMAT_VERSION:
            raise ValueError(f"unsupported format version {v}")
        return v

    @field_validator("packages")
    @classmethod
    def _check_unique_packages(cls, v: Tuple[Package, ...]) -> Tuple[Package, ...]:
        seen = set()
        for pkg in v:
            if pkg.uri in seen:
                raise ValueError(f"duplicate package uri {pkg.uri!r}")
            seen.add(pkg.uri)
        return v

    def package(self, uri: str) -> Optional[Package]:
        """First package entry whose URI equals `uri`, or None."""
        for pkg in self.packages:
            if pkg.uri == uri:
                return pkg
        return None

    @classmethod
    def from_bytes(cls, data: Union[bytes, str]) -> "ProjectPolicy":
        return parse_document(cls, data, kind="project policy")


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_document(model: Type[_M], data: Any, *, kind: str) -> _M:
    """
    Parse a JSON policy document into `model`.

    Accepts bytes, str or a binary/text file-like object. Every failure is
    reported as InvalidInputError with the original exception chained.
    """
    if hasattr(data, "read"):
        data = data.read()
    if isinstance(data, (bytes, bytearray)):
        try:
            data = bytes(data).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidInputError(f"{kind}: not valid UTF-8") from exc
    if not isinstance(data, str):
        raise InvalidInputError(f"{kind}: unsupported input type {type(data).__name__}")
    # JSON mode: strict models still take arrays for tuple fields
    try:
        return model.model_validate_json(data)
    except ValidationError as exc:
        raise InvalidInputError(f"{kind}: {exc}") from exc

