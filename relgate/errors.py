# FILE: relgate/errors.py
from __future__ import annotations

"""
Error taxonomy shared by the evaluation engine, attestation assembly and
attestation verification.

Kinds (callers are expected to branch on the class, not on messages):

  - InternalError:      caller-contract violation or malformed input
                        (assembling from a rejected evaluation, unparsable
                        attestation bytes, missing verifier capability).
  - InvalidInputError:  structurally invalid data reaching validation
                        (empty digest set, empty URI, bad policy document).
  - VerificationError:  policy legitimately rejected the candidate, or a
                        re-verified attestation does not match expectations.
  - NotFoundError:      a referenced entity does not exist.

Messages carry the offending field and value so the caller can audit-log
them. The core modules never log on the error path; relgate.gate does.
"""

from typing import Optional

__all__ = [
    "RelgateError",
    "InternalError",
    "InvalidInputError",
    "VerificationError",
    "NotFoundError",
    "PolicyExcerptNotFoundError",
    "error_kind",
]


class RelgateError(Exception):
    """Base error for relgate."""

    kind = "error"


class InternalError(RelgateError):
    kind = "internal"


class InvalidInputError(RelgateError):
    kind = "invalid_input"


class VerificationError(RelgateError):
    kind = "verification"


class NotFoundError(RelgateError):
    kind = "not_found"


class PolicyExcerptNotFoundError(VerificationError, NotFoundError):
    """A named policy excerpt expected by a verifier is absent from the attestation."""

    kind = "verification"


def error_kind(err: Optional[BaseException]) -> str:
    """
    Low-cardinality label for an error, suitable for metrics and logs.

    Unknown exception types map to "unknown"; None maps to "none".
    """
    if err is None:
        return "none"
    if isinstance(err, RelgateError):
        return err.kind
    return "unknown"
