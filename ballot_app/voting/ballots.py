from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Count, F
from django.utils import timezone

from voting import notifications
from voting.audit import record_audit
from voting.errors import (
    AlreadyVotedError,
    InvalidCandidateError,
    NotFoundError,
    ViewLimitExceededError,
    translate_storage_errors,
)
from voting.models import Candidate, Election, ElectionCandidate, Vote, Voter
from voting.notifications import Notifier
from voting.voting_credentials import ensure_voting_open

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
_HUNDRED = Decimal("100")


def percentage(part: int, whole: int) -> Decimal:
    """``part / whole * 100`` rounded half-up to two places; 0 when ``whole`` is 0."""
    if whole <= 0:
        return Decimal("0.00")
    return (Decimal(part) * _HUNDRED / Decimal(whole)).quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class VoteReceipt:
    vote_id: int
    election_id: int
    candidate_id: int
    cast_at: datetime.datetime
    total_votes_cast: int
    turnout_percentage: Decimal


@dataclass(frozen=True)
class VoteStatus:
    has_voted: bool
    candidate: Candidate | None
    cast_at: datetime.datetime | None
    view_count: int
    can_view: bool


@dataclass(frozen=True)
class VoteView:
    vote: Vote
    candidate: Candidate
    remaining_views: int


@dataclass(frozen=True)
class ReconciliationReport:
    election_id: int
    previous_total: int
    recounted_total: int
    # candidate_id -> (stored count, ledger count), only where they differ.
    drift: dict[int, tuple[int, int]]

    @property
    def repaired(self) -> bool:
        return bool(self.drift) or self.previous_total != self.recounted_total


def has_voted(*, election_id: int, voter_id: int) -> bool:
    return Vote.objects.filter(election_id=election_id, voter_id=voter_id).exists()


def _lock_election(election_id: int) -> Election:
    try:
        return Election.objects.select_for_update().get(pk=election_id)
    except Election.DoesNotExist as exc:
        raise NotFoundError(f"Election {election_id} not found.") from exc


def recompute_tally(election: Election) -> Election:
    """Recompute turnout and every candidate's share from the stored counts."""
    election.refresh_from_db(fields=["total_voters", "total_votes_cast"])
    total_cast = int(election.total_votes_cast or 0)

    turnout = percentage(total_cast, int(election.total_voters or 0))
    # The electorate is snapshotted at activation and can lag late registrations.
    election.turnout_percentage = min(turnout, _HUNDRED)
    election.save(update_fields=["turnout_percentage", "updated_at"])

    entries = list(ElectionCandidate.objects.filter(election=election))
    for entry in entries:
        entry.vote_percentage = percentage(int(entry.vote_count), total_cast)
    ElectionCandidate.objects.bulk_update(entries, ["vote_percentage"])
    return election


def reconcile_locked_election(election: Election, *, actor: str | None = None) -> ReconciliationReport:
    ledger = dict(
        Vote.objects.filter(election=election)
        .values("candidate_id")
        .annotate(n=Count("id"))
        .values_list("candidate_id", "n")
    )

    drift: dict[int, tuple[int, int]] = {}
    for entry in ElectionCandidate.objects.filter(election=election):
        counted = int(ledger.get(entry.candidate_id, 0))
        if entry.vote_count != counted:
            drift[entry.candidate_id] = (int(entry.vote_count), counted)
            ElectionCandidate.objects.filter(pk=entry.pk).update(vote_count=counted)

    previous_total = int(election.total_votes_cast or 0)
    recounted_total = sum(int(n) for n in ledger.values())
    if previous_total != recounted_total:
        Election.objects.filter(pk=election.pk).update(total_votes_cast=recounted_total)

    report = ReconciliationReport(
        election_id=election.pk,
        previous_total=previous_total,
        recounted_total=recounted_total,
        drift=drift,
    )
    if report.repaired:
        logger.warning(
            "Tally drift repaired for election %s: total %d -> %d, candidates=%s",
            election.pk,
            previous_total,
            recounted_total,
            drift,
        )
        record_audit(
            election_id=election.pk,
            event_type="tally_reconciled",
            payload={
                "previous_total": previous_total,
                "recounted_total": recounted_total,
                "drift": {str(k): list(v) for k, v in drift.items()},
            },
            actor=actor,
            is_public=False,
        )

    recompute_tally(election)
    return report


@translate_storage_errors
@transaction.atomic
def reconcile_election_tally(*, election_id: int, actor: str | None = None) -> ReconciliationReport:
    """Recount votes per candidate from the ledger and rewrite the counters."""
    election = _lock_election(election_id)
    return reconcile_locked_election(election, actor=actor)


def _send_vote_confirmation(*, notifier: Notifier, voter: Voter, election: Election, candidate: Candidate, cast_at) -> None:
    context: dict[str, object] = {
        "username": voter.username,
        "full_name": voter.full_name,
        "election_id": election.pk,
        "election_title": election.title,
        "cast_at": cast_at,
    }
    if not election.is_secret_ballot:
        context["candidate_name"] = candidate.name
    notifier.send(recipient=voter.email, kind=notifications.VOTE_CONFIRMATION, context=context)


@translate_storage_errors
def cast_vote(
    *,
    voter: Voter,
    election_id: int,
    candidate_id: int,
    ip_address: str | None = None,
    now: datetime.datetime | None = None,
    notifier: Notifier | None = None,
) -> VoteReceipt:
    now = now or timezone.now()

    if has_voted(election_id=election_id, voter_id=voter.pk):
        raise AlreadyVotedError("You have already voted in this election.")

    with transaction.atomic():
        # Serializes counter updates for the election and blocks a concurrent
        # end/sweep from closing the window mid-cast.
        election = _lock_election(election_id)
        ensure_voting_open(election=election, now=now)

        entry = (
            ElectionCandidate.objects.select_related("candidate")
            .filter(election=election, candidate_id=candidate_id)
            .first()
        )
        if entry is None:
            raise InvalidCandidateError("That candidate is not standing in this election.")

        try:
            with transaction.atomic():
                vote = Vote.objects.create(
                    election=election,
                    voter=voter,
                    candidate_id=candidate_id,
                    cast_at=now,
                    ip_address=ip_address or None,
                )
        except IntegrityError as exc:
            if Vote.objects.filter(election=election, voter=voter).exists():
                logger.info("Concurrent duplicate vote rejected voter=%s election=%s", voter.pk, election.pk)
                raise AlreadyVotedError("You have already voted in this election.") from exc
            raise

        ElectionCandidate.objects.filter(pk=entry.pk).update(vote_count=F("vote_count") + 1)
        Election.objects.filter(pk=election.pk).update(total_votes_cast=F("total_votes_cast") + 1)
        recompute_tally(election)

        record_audit(
            election_id=election.pk,
            event_type="vote_cast",
            payload={"vote_id": vote.pk},
            is_public=False,
        )

        candidate = entry.candidate
        notifier = notifier or Notifier()
        transaction.on_commit(
            lambda: _send_vote_confirmation(
                notifier=notifier,
                voter=voter,
                election=election,
                candidate=candidate,
                cast_at=now,
            )
        )

    logger.info("Vote cast voter=%s election=%s", voter.pk, election.pk)
    return VoteReceipt(
        vote_id=vote.pk,
        election_id=election.pk,
        candidate_id=candidate_id,
        cast_at=vote.cast_at,
        total_votes_cast=int(election.total_votes_cast),
        turnout_percentage=election.turnout_percentage,
    )


@translate_storage_errors
def vote_status(*, voter: Voter, election_id: int) -> VoteStatus:
    if not Election.objects.filter(pk=election_id).exists():
        raise NotFoundError(f"Election {election_id} not found.")

    vote = Vote.objects.select_related("candidate").filter(election_id=election_id, voter=voter).first()
    if vote is None:
        return VoteStatus(has_voted=False, candidate=None, cast_at=None, view_count=0, can_view=False)

    return VoteStatus(
        has_voted=True,
        candidate=vote.candidate,
        cast_at=vote.cast_at,
        view_count=int(vote.view_count),
        can_view=vote.view_count < settings.VOTE_VIEW_LIMIT,
    )


@translate_storage_errors
def view_vote(*, voter: Voter, election_id: int, now: datetime.datetime | None = None) -> VoteView:
    now = now or timezone.now()
    vote = Vote.objects.filter(election_id=election_id, voter=voter).first()
    if vote is None:
        raise NotFoundError("No vote found for this election.")

    limit = settings.VOTE_VIEW_LIMIT
    updated = Vote.objects.filter(pk=vote.pk, view_count__lt=limit).update(
        view_count=F("view_count") + 1,
        last_viewed_at=now,
    )
    if updated != 1:
        raise ViewLimitExceededError(f"Your vote can only be viewed {limit} times.")

    vote.refresh_from_db()
    return VoteView(
        vote=vote,
        candidate=vote.candidate,
        remaining_views=max(0, limit - int(vote.view_count)),
    )
