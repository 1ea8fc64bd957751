"""Error taxonomy shared by the election engine.

Each error carries a stable ``code`` so callers can tell "not eligible yet"
from "already done" from "window closed" without parsing messages.
"""

from __future__ import annotations

import functools
from collections.abc import Callable
from typing import ParamSpec, TypeVar

from django.db import DatabaseError


class ElectionError(Exception):
    code = "election_error"


class NotFoundError(ElectionError):
    code = "not_found"


class InvalidStateError(ElectionError):
    code = "invalid_state"


class ResultsNotReadyError(InvalidStateError):
    code = "results_not_ready"


class IdentityMismatchError(ElectionError):
    code = "identity_mismatch"


class AlreadyVotedError(ElectionError):
    code = "already_voted"


class VotingClosedError(ElectionError):
    code = "voting_closed"


class VotingNotStartedError(VotingClosedError):
    code = "voting_not_started"


class InvalidCandidateError(ElectionError):
    code = "invalid_candidate"


class CredentialNotFoundError(ElectionError):
    code = "credential_not_found"


class CredentialMismatchError(ElectionError):
    code = "credential_mismatch"


class ViewLimitExceededError(ElectionError):
    code = "view_limit_exceeded"


class UnavailableError(ElectionError):
    code = "unavailable"


P = ParamSpec("P")
R = TypeVar("R")


def translate_storage_errors(func: Callable[P, R]) -> Callable[P, R]:
    """Surface storage failures as UnavailableError, keeping the cause chained."""

    @functools.wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return func(*args, **kwargs)
        except ElectionError:
            raise
        except DatabaseError as exc:
            raise UnavailableError("election storage is unavailable") from exc

    return wrapper
