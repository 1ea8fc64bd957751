from __future__ import annotations

import datetime
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from django.db import transaction
from django.utils import timezone

from voting import notifications
from voting.audit import record_audit
from voting.ballots import percentage, reconcile_locked_election
from voting.elections_eligibility import voters_in_jurisdiction
from voting.errors import (
    InvalidStateError,
    NotFoundError,
    ResultsNotReadyError,
    translate_storage_errors,
)
from voting.models import Election, ElectionCandidate, ElectionResults, Vote
from voting.notifications import Notifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WinnerSelection:
    entry: ElectionCandidate | None
    is_tie: bool


@dataclass(frozen=True)
class PublishSweepResult:
    declared: int
    failed: int


def pick_winner(entries: Sequence[ElectionCandidate]) -> WinnerSelection:
    """Strictly greatest vote count wins; on a tie the first in list order is kept."""
    best: ElectionCandidate | None = None
    for entry in entries:
        if entry.vote_count > (best.vote_count if best is not None else 0):
            best = entry

    if best is None:
        return WinnerSelection(entry=None, is_tie=False)

    leaders = sum(1 for entry in entries if entry.vote_count == best.vote_count)
    return WinnerSelection(entry=best, is_tie=leaders > 1)


def _broadcast_results(*, election: Election, notifier: Notifier) -> None:
    try:
        recipients = list(voters_in_jurisdiction(election).values_list("email", flat=True))
    except Exception:
        logger.exception("Could not load result broadcast recipients for election %s", election.pk)
        return

    context: dict[str, object] = {
        "election_id": election.pk,
        "election_title": election.title,
        "winner_name": election.winner.name if election.winner_id else "",
        "winner_party": election.winner.party_name if election.winner_id else "",
        "winner_votes": election.winner_votes,
        "winner_percentage": election.winner_percentage,
        "winner_is_tie": election.winner_is_tie,
        "total_votes_cast": election.total_votes_cast,
        "turnout_percentage": election.turnout_percentage,
    }

    failures = 0
    for recipient in recipients:
        if not notifier.send(recipient=recipient, kind=notifications.RESULTS_DECLARED, context=context).success:
            failures += 1

    logger.info(
        "Results broadcast for election %s: recipients=%d failures=%d",
        election.pk,
        len(recipients),
        failures,
    )


@translate_storage_errors
def declare_results(
    *,
    election_id: int,
    actor: str | None = None,
    now: datetime.datetime | None = None,
    notifier: Notifier | None = None,
) -> ElectionResults:
    now = now or timezone.now()

    with transaction.atomic():
        try:
            election = Election.objects.select_for_update().get(pk=election_id)
        except Election.DoesNotExist as exc:
            raise NotFoundError(f"Election {election_id} not found.") from exc

        if election.results_declared:
            return election.results

        if now <= election.voting_end:
            raise ResultsNotReadyError("Results cannot be declared before voting has ended.")
        if election.status not in {Election.Status.active, Election.Status.completed}:
            raise InvalidStateError(f"Results cannot be declared for a {election.status} election.")

        reconcile_locked_election(election, actor=actor)
        election.refresh_from_db()

        entries = list(
            ElectionCandidate.objects.filter(election=election)
            .select_related("candidate")
            .order_by("position", "id")
        )
        selection = pick_winner(entries)
        previous_status = election.status

        election.status = Election.Status.completed
        election.results_declared = True
        election.results_declared_at = now
        election.winner_is_tie = selection.is_tie
        if selection.entry is not None:
            election.winner_id = selection.entry.candidate_id
            election.winner_votes = int(selection.entry.vote_count)
            election.winner_percentage = percentage(int(selection.entry.vote_count), int(election.total_votes_cast))
        else:
            election.winner_id = None
            election.winner_votes = 0
            election.winner_percentage = percentage(0, 0)
        election.save(
            update_fields=[
                "status",
                "results_declared",
                "results_declared_at",
                "winner",
                "winner_votes",
                "winner_percentage",
                "winner_is_tie",
                "updated_at",
            ]
        )

        if previous_status != Election.Status.completed:
            record_audit(
                election_id=election.pk,
                event_type="election_status_advanced",
                payload={"from_status": previous_status, "to_status": Election.Status.completed},
                actor=actor,
            )
        record_audit(
            election_id=election.pk,
            event_type="results_declared",
            payload={
                "winner_candidate_id": election.winner_id,
                "winner_votes": election.winner_votes,
                "winner_percentage": str(election.winner_percentage),
                "winner_is_tie": election.winner_is_tie,
                "total_votes_cast": election.total_votes_cast,
                "turnout_percentage": str(election.turnout_percentage),
            },
            actor=actor,
        )

    if selection.is_tie:
        logger.warning("Election %s declared with a tie for first place", election.pk)
    logger.info(
        "Results declared for election %s winner=%s votes=%d actor=%s",
        election.pk,
        election.winner_id,
        election.winner_votes,
        actor or "-",
    )

    _broadcast_results(election=election, notifier=notifier or Notifier())
    return election.results


def publish_due_results(*, now: datetime.datetime | None = None, notifier: Notifier | None = None) -> PublishSweepResult:
    now = now or timezone.now()
    declared = 0
    failed = 0

    due_ids = list(Election.objects.due_for_publication(now=now).order_by("id").values_list("pk", flat=True))
    for election_id in due_ids:
        try:
            declare_results(election_id=election_id, now=now, notifier=notifier)
        except Exception:
            failed += 1
            logger.exception("Automatic result publication failed for election %s", election_id)
            continue
        declared += 1

    return PublishSweepResult(declared=declared, failed=failed)


def jurisdiction_stats(election: Election) -> dict[str, int]:
    """Current electorate of the election's jurisdiction and how many of them voted."""
    electorate = voters_in_jurisdiction(election)
    return {
        "total_voters": electorate.count(),
        "total_voted": Vote.objects.filter(election=election, voter__in=electorate).count(),
    }


def election_results(election: Election) -> dict[str, object]:
    entries = (
        ElectionCandidate.objects.filter(election=election)
        .select_related("candidate")
        .order_by("-vote_count", "position", "id")
    )
    return {
        "election_id": election.pk,
        "title": election.title,
        "status": election.status,
        "total_voters": election.total_voters,
        "total_votes_cast": election.total_votes_cast,
        "turnout_percentage": str(election.turnout_percentage),
        "candidates": [
            {
                "candidate_id": entry.candidate_id,
                "name": entry.candidate.name,
                "party_name": entry.candidate.party_name,
                "vote_count": entry.vote_count,
                "vote_percentage": str(entry.vote_percentage),
            }
            for entry in entries
        ],
        "results": election.results.as_dict(),
        "jurisdiction_stats": jurisdiction_stats(election),
    }


def public_results(election_id: int) -> dict[str, object]:
    election = Election.objects.visible().filter(pk=election_id).first()
    if election is None or not election.results_declared:
        raise NotFoundError("Results for this election have not been declared.")
    return election_results(election)
