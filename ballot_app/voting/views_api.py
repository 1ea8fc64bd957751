"""Thin JSON surface over the election services.

Voters authenticate with an emailed challenge code, which puts their voter id
in the session. Operator endpoints require a staff Django user.
"""

from __future__ import annotations

import functools
import json
import logging

from django.http import HttpRequest, JsonResponse
from django.middleware.csrf import get_token
from django.views.decorators.csrf import ensure_csrf_cookie
from django.views.decorators.http import require_GET, require_POST

from voting import ballots, elections_lifecycle, results
from voting.apps import credential_broker
from voting.challenges import ChallengeIssuer
from voting.elections_eligibility import available_elections_for, published_elections_for
from voting.errors import (
    AlreadyVotedError,
    CredentialMismatchError,
    CredentialNotFoundError,
    ElectionError,
    IdentityMismatchError,
    InvalidCandidateError,
    InvalidStateError,
    NotFoundError,
    ResultsNotReadyError,
    UnavailableError,
    ViewLimitExceededError,
    VotingClosedError,
    VotingNotStartedError,
)
from voting.forms import (
    CandidateAssignForm,
    CastVoteForm,
    ChallengeRequestForm,
    ChallengeVerifyForm,
    CredentialRequestForm,
    CredentialVerifyForm,
    ElectionCreateForm,
    ElectionUpdateForm,
)
from voting.models import ChallengeCode, Election, ElectionCandidate, Voter

logger = logging.getLogger(__name__)

VOTER_SESSION_KEY = "voting_voter_id"

_ERROR_STATUS: dict[type[ElectionError], int] = {
    NotFoundError: 404,
    ResultsNotReadyError: 409,
    InvalidStateError: 409,
    IdentityMismatchError: 403,
    AlreadyVotedError: 409,
    VotingNotStartedError: 403,
    VotingClosedError: 403,
    InvalidCandidateError: 400,
    CredentialNotFoundError: 400,
    CredentialMismatchError: 401,
    ViewLimitExceededError: 403,
    UnavailableError: 503,
}


def status_for_error(exc: ElectionError) -> int:
    for cls in type(exc).__mro__:
        if cls in _ERROR_STATUS:
            return _ERROR_STATUS[cls]
    return 400


def _error(message: str, *, code: str, status: int, **extra: object) -> JsonResponse:
    return JsonResponse({"ok": False, "error": message, "code": code, **extra}, status=status)


def _request_data(request: HttpRequest) -> dict[str, object]:
    if request.content_type and request.content_type.startswith("application/json"):
        raw = request.body.decode("utf-8") if request.body else "{}"
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Request body must be a JSON object.")
        return data
    return request.POST.dict()


def _bound_form(form_class, request: HttpRequest):
    return form_class(_request_data(request))


def _form_error(form) -> JsonResponse:
    return _error(
        "Invalid request.",
        code="invalid_request",
        status=400,
        fields={name: [str(e) for e in errors] for name, errors in form.errors.items()},
    )


def json_api(view):
    """Translate engine errors and malformed bodies into JSON error responses."""

    @functools.wraps(view)
    def wrapper(request: HttpRequest, *args, **kwargs):
        try:
            return view(request, *args, **kwargs)
        except ElectionError as exc:
            return _error(str(exc), code=exc.code, status=status_for_error(exc))
        except (ValueError, json.JSONDecodeError) as exc:
            return _error(str(exc) or "Malformed request.", code="invalid_request", status=400)

    return wrapper


def voter_required(view):
    @functools.wraps(view)
    def wrapper(request: HttpRequest, *args, **kwargs):
        voter_id = request.session.get(VOTER_SESSION_KEY)
        voter = Voter.objects.filter(pk=voter_id, is_active=True).first() if voter_id else None
        if voter is None:
            return _error("Authentication required.", code="authentication_required", status=403)
        request.voter = voter
        return view(request, *args, **kwargs)

    return wrapper


def staff_required(view):
    @functools.wraps(view)
    def wrapper(request: HttpRequest, *args, **kwargs):
        user = getattr(request, "user", None)
        if user is None or not user.is_authenticated or not user.is_staff:
            return _error("Staff access required.", code="permission_denied", status=403)
        return view(request, *args, **kwargs)

    return wrapper


def _actor(request: HttpRequest) -> str:
    return str(request.user.get_username())


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _election_payload(election: Election) -> dict[str, object]:
    return {
        "id": election.pk,
        "title": election.title,
        "description": election.description,
        "level": election.level,
        "state": election.state,
        "district": election.district,
        "city": election.city,
        "status": election.status,
        "archived": election.archived,
        "is_secret_ballot": election.is_secret_ballot,
        "voting_start": _iso(election.voting_start),
        "voting_end": _iso(election.voting_end),
        "result_declaration_at": _iso(election.result_declaration_at),
        "total_voters": election.total_voters,
        "total_votes_cast": election.total_votes_cast,
        "turnout_percentage": str(election.turnout_percentage),
    }


def _candidate_payload(entry: ElectionCandidate) -> dict[str, object]:
    return {
        "candidate_id": entry.candidate_id,
        "name": entry.candidate.name,
        "party_name": entry.candidate.party_name,
        "party_symbol": entry.candidate.party_symbol,
    }


# Voter session


@require_GET
@ensure_csrf_cookie
def auth_csrf(request: HttpRequest) -> JsonResponse:
    """Set the CSRF cookie. Clients echo its value in the X-CSRFToken header on every POST."""
    return JsonResponse({"ok": True, "csrf_token": get_token(request)})


@require_POST
@json_api
def auth_challenge(request: HttpRequest) -> JsonResponse:
    form = _bound_form(ChallengeRequestForm, request)
    if not form.is_valid():
        return _form_error(form)

    email = form.cleaned_data["email"]
    # Same response whether or not the address is registered.
    if Voter.objects.filter(email__iexact=email, is_active=True).exists():
        ChallengeIssuer().issue(identity=email, purpose=ChallengeCode.Purpose.login)
    else:
        logger.info("Sign-in challenge requested for unknown address")
    return JsonResponse({"ok": True})


@require_POST
@json_api
def auth_verify(request: HttpRequest) -> JsonResponse:
    form = _bound_form(ChallengeVerifyForm, request)
    if not form.is_valid():
        return _form_error(form)

    email = form.cleaned_data["email"]
    result = ChallengeIssuer().verify(
        identity=email,
        code=form.cleaned_data["code"],
        purpose=ChallengeCode.Purpose.login,
    )
    if not result.valid:
        return _error("Invalid or expired code.", code=result.reason, status=401)

    voter = Voter.objects.filter(email__iexact=email, is_active=True).first()
    if voter is None:
        return _error("Invalid or expired code.", code="not_found", status=401)

    request.session.cycle_key()
    request.session[VOTER_SESSION_KEY] = voter.pk
    return JsonResponse({"ok": True, "voter": {"id": voter.pk, "username": voter.username}})


# Voting


@require_POST
@json_api
@voter_required
def request_credential(request: HttpRequest) -> JsonResponse:
    form = _bound_form(CredentialRequestForm, request)
    if not form.is_valid():
        return _form_error(form)

    issued = credential_broker().request_credential(
        voter=request.voter,
        election_id=form.cleaned_data["election_id"],
        claimed_email=form.cleaned_data["email"],
        claimed_card_number=form.cleaned_data["card_number"],
    )
    return JsonResponse({"ok": True, "expires_at": _iso(issued.expires_at), "delivered": issued.delivered})


@require_POST
@json_api
@voter_required
def verify_credential(request: HttpRequest) -> JsonResponse:
    form = _bound_form(CredentialVerifyForm, request)
    if not form.is_valid():
        return _form_error(form)

    candidates = credential_broker().verify_credential(
        voter=request.voter,
        election_id=form.cleaned_data["election_id"],
        claimed_email=form.cleaned_data["email"],
        claimed_card_number=form.cleaned_data["card_number"],
        supplied_secret=form.cleaned_data["voting_password"],
    )
    return JsonResponse({"ok": True, "candidates": [_candidate_payload(entry) for entry in candidates]})


@require_POST
@json_api
@voter_required
def cast_vote(request: HttpRequest) -> JsonResponse:
    form = _bound_form(CastVoteForm, request)
    if not form.is_valid():
        return _form_error(form)

    receipt = ballots.cast_vote(
        voter=request.voter,
        election_id=form.cleaned_data["election_id"],
        candidate_id=form.cleaned_data["candidate_id"],
        ip_address=request.META.get("REMOTE_ADDR"),
    )
    return JsonResponse(
        {
            "ok": True,
            "vote_id": receipt.vote_id,
            "election_id": receipt.election_id,
            "cast_at": _iso(receipt.cast_at),
            "total_votes_cast": receipt.total_votes_cast,
            "turnout_percentage": str(receipt.turnout_percentage),
        },
        status=201,
    )


@require_GET
@json_api
@voter_required
def vote_status(request: HttpRequest, election_id: int) -> JsonResponse:
    status = ballots.vote_status(voter=request.voter, election_id=election_id)
    return JsonResponse(
        {
            "ok": True,
            "has_voted": status.has_voted,
            "cast_at": _iso(status.cast_at),
            "view_count": status.view_count,
            "can_view": status.can_view,
        }
    )


@require_POST
@json_api
@voter_required
def view_vote(request: HttpRequest, election_id: int) -> JsonResponse:
    view = ballots.view_vote(voter=request.voter, election_id=election_id)
    return JsonResponse(
        {
            "ok": True,
            "candidate": {
                "candidate_id": view.candidate.pk,
                "name": view.candidate.name,
                "party_name": view.candidate.party_name,
            },
            "cast_at": _iso(view.vote.cast_at),
            "view_count": view.vote.view_count,
            "remaining_views": view.remaining_views,
        }
    )


# Elections (voter)


@require_GET
@json_api
@voter_required
def available_elections(request: HttpRequest) -> JsonResponse:
    elections = list(available_elections_for(request.voter))
    voted = set(
        request.voter.votes.filter(election__in=elections).values_list("election_id", flat=True)
    )
    return JsonResponse(
        {
            "ok": True,
            "elections": [{**_election_payload(e), "has_voted": e.pk in voted} for e in elections],
        }
    )


@require_GET
@json_api
@voter_required
def published_elections(request: HttpRequest) -> JsonResponse:
    return JsonResponse(
        {
            "ok": True,
            "elections": [
                {**_election_payload(e), "results": e.results.as_dict()}
                for e in published_elections_for(request.voter)
            ],
        }
    )


@require_GET
@json_api
def public_results(request: HttpRequest, election_id: int) -> JsonResponse:
    return JsonResponse({"ok": True, **results.public_results(election_id)})


# Elections (operator)


@require_GET
@json_api
@staff_required
def election_list(request: HttpRequest) -> JsonResponse:
    return JsonResponse(
        {"ok": True, "elections": [_election_payload(e) for e in elections_lifecycle.visible_elections()]}
    )


@require_GET
@json_api
@staff_required
def archived_election_list(request: HttpRequest) -> JsonResponse:
    return JsonResponse(
        {"ok": True, "elections": [_election_payload(e) for e in elections_lifecycle.archived_elections()]}
    )


@require_POST
@json_api
@staff_required
def election_create(request: HttpRequest) -> JsonResponse:
    form = _bound_form(ElectionCreateForm, request)
    if not form.is_valid():
        return _form_error(form)

    election = elections_lifecycle.create_election(**form.service_kwargs(), actor=_actor(request))
    return JsonResponse({"ok": True, "election": _election_payload(election)}, status=201)


@require_POST
@json_api
@staff_required
def election_update(request: HttpRequest, election_id: int) -> JsonResponse:
    form = _bound_form(ElectionUpdateForm, request)
    if not form.is_valid():
        return _form_error(form)

    election = elections_lifecycle.update_election(
        election_id=election_id,
        changes=form.changes(),
        actor=_actor(request),
    )
    return JsonResponse({"ok": True, "election": _election_payload(election)})


_LIFECYCLE_ACTIONS = {
    "schedule": elections_lifecycle.schedule_election,
    "start": elections_lifecycle.start_election,
    "end": elections_lifecycle.end_election,
    "cancel": elections_lifecycle.cancel_election,
    "postpone": elections_lifecycle.postpone_election,
    "archive": elections_lifecycle.archive_election,
    "restore": elections_lifecycle.restore_election,
}


@require_POST
@json_api
@staff_required
def election_action(request: HttpRequest, election_id: int, action: str) -> JsonResponse:
    operation = _LIFECYCLE_ACTIONS.get(action)
    if operation is None:
        return _error(f"Unknown action: {action}", code="not_found", status=404)

    election = operation(election_id=election_id, actor=_actor(request))
    return JsonResponse({"ok": True, "election": _election_payload(election)})


@require_POST
@json_api
@staff_required
def election_delete(request: HttpRequest, election_id: int) -> JsonResponse:
    elections_lifecycle.permanently_delete_election(election_id=election_id, actor=_actor(request))
    return JsonResponse({"ok": True})


@require_POST
@json_api
@staff_required
def candidate_assign(request: HttpRequest, election_id: int) -> JsonResponse:
    form = _bound_form(CandidateAssignForm, request)
    if not form.is_valid():
        return _form_error(form)

    entry = elections_lifecycle.assign_candidate(
        election_id=election_id,
        candidate_id=form.cleaned_data["candidate_id"],
        actor=_actor(request),
    )
    return JsonResponse({"ok": True, "candidate_id": entry.candidate_id, "position": entry.position}, status=201)


@require_POST
@json_api
@staff_required
def candidate_remove(request: HttpRequest, election_id: int, candidate_id: int) -> JsonResponse:
    elections_lifecycle.remove_candidate(election_id=election_id, candidate_id=candidate_id, actor=_actor(request))
    return JsonResponse({"ok": True})


@require_GET
@json_api
@staff_required
def election_results(request: HttpRequest, election_id: int) -> JsonResponse:
    election = Election.objects.filter(pk=election_id).first()
    if election is None:
        raise NotFoundError(f"Election {election_id} not found.")
    return JsonResponse({"ok": True, **results.election_results(election)})


@require_POST
@json_api
@staff_required
def publish_results(request: HttpRequest, election_id: int) -> JsonResponse:
    declared = results.declare_results(election_id=election_id, actor=_actor(request))
    return JsonResponse({"ok": True, "results": declared.as_dict()})


@require_POST
@json_api
@staff_required
def reconcile_tally(request: HttpRequest, election_id: int) -> JsonResponse:
    report = ballots.reconcile_election_tally(election_id=election_id, actor=_actor(request))
    return JsonResponse(
        {
            "ok": True,
            "previous_total": report.previous_total,
            "recounted_total": report.recounted_total,
            "repaired": report.repaired,
            "drift": {str(k): list(v) for k, v in report.drift.items()},
        }
    )
