"""Election status state machine.

The legal-transition table is expressed as pure functions over an
``ElectionSnapshot`` so it can be tested without the database. The service
functions below load a snapshot, run the transition, and apply the result with
a conditional update ("move X to Y only if the row is still X"), which keeps
operator calls and the background sweep from double-applying a transition.
"""

from __future__ import annotations

import dataclasses
import datetime
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from django.db import transaction
from django.db.models import Max, ProtectedError, QuerySet
from django.utils import timezone

from voting.audit import record_audit
from voting.elections_eligibility import voters_in_jurisdiction
from voting.errors import (
    ElectionError,
    InvalidCandidateError,
    InvalidStateError,
    NotFoundError,
    translate_storage_errors,
)
from voting.models import Candidate, Election, ElectionCandidate, Vote

logger = logging.getLogger(__name__)

Status = Election.Status

# Elections in these states only move through explicit transitions.
FROZEN_STATUSES = frozenset({Status.active, Status.completed, Status.cancelled, Status.postponed})
DELETABLE_STATUSES = frozenset({Status.completed, Status.upcoming, Status.draft})
CANDIDATE_EDIT_STATUSES = frozenset({Status.draft, Status.upcoming})

EDITABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "level",
        "state",
        "district",
        "city",
        "voting_start",
        "voting_end",
        "result_declaration_at",
        "is_secret_ballot",
        "total_voters",
    }
)
DATE_FIELDS = ("voting_start", "voting_end", "result_declaration_at")


@dataclass(frozen=True)
class ElectionSnapshot:
    status: str
    archived: bool
    voting_start: datetime.datetime
    voting_end: datetime.datetime
    result_declaration_at: datetime.datetime

    @classmethod
    def of(cls, election: Election) -> ElectionSnapshot:
        return cls(
            status=str(election.status),
            archived=bool(election.archived),
            voting_start=election.voting_start,
            voting_end=election.voting_end,
            result_declaration_at=election.result_declaration_at,
        )


@dataclass(frozen=True)
class Rejection:
    error: type[ElectionError]
    message: str

    def exception(self) -> ElectionError:
        return self.error(self.message)


TransitionResult = ElectionSnapshot | Rejection


def validate_schedule(
    *,
    voting_start: datetime.datetime,
    voting_end: datetime.datetime,
    result_declaration_at: datetime.datetime,
) -> Rejection | None:
    if voting_start >= voting_end:
        return Rejection(ElectionError, "Voting end must be after voting start.")
    if result_declaration_at < voting_end:
        return Rejection(ElectionError, "Result declaration must not be before voting end.")
    return None


def sweep_transition(snapshot: ElectionSnapshot, now: datetime.datetime) -> ElectionSnapshot:
    """Time-driven advancement. Returns the snapshot unchanged when nothing is due.

    Archived elections are never activated; an operator restores them first.
    """
    result = snapshot
    if result.status in {Status.draft, Status.upcoming} and not result.archived and now >= result.voting_start:
        result = dataclasses.replace(result, status=Status.active)
    if result.status == Status.active and now > result.voting_end:
        result = dataclasses.replace(result, status=Status.completed)
    return result


def start_transition(snapshot: ElectionSnapshot, now: datetime.datetime) -> TransitionResult:
    if snapshot.status != Status.upcoming:
        return Rejection(InvalidStateError, f"Only upcoming elections can be started (status is {snapshot.status}).")
    if now < snapshot.voting_start:
        return Rejection(InvalidStateError, "Voting start time has not been reached yet.")
    return dataclasses.replace(snapshot, status=Status.active)


def end_transition(snapshot: ElectionSnapshot, now: datetime.datetime) -> TransitionResult:
    if snapshot.status != Status.active:
        return Rejection(InvalidStateError, f"Only active elections can be ended (status is {snapshot.status}).")
    if now < snapshot.voting_end:
        return Rejection(InvalidStateError, "Voting end time has not been reached yet.")
    return dataclasses.replace(snapshot, status=Status.completed)


def schedule_transition(snapshot: ElectionSnapshot) -> TransitionResult:
    if snapshot.status != Status.draft:
        return Rejection(InvalidStateError, f"Only draft elections can be scheduled (status is {snapshot.status}).")
    return dataclasses.replace(snapshot, status=Status.upcoming)


def cancel_transition(snapshot: ElectionSnapshot) -> TransitionResult:
    if snapshot.status not in {Status.draft, Status.upcoming}:
        return Rejection(InvalidStateError, f"A {snapshot.status} election cannot be cancelled.")
    return dataclasses.replace(snapshot, status=Status.cancelled)


def postpone_transition(snapshot: ElectionSnapshot) -> TransitionResult:
    if snapshot.status != Status.upcoming:
        return Rejection(InvalidStateError, f"Only upcoming elections can be postponed (status is {snapshot.status}).")
    return dataclasses.replace(snapshot, status=Status.postponed)


def archive_transition(snapshot: ElectionSnapshot) -> TransitionResult:
    if snapshot.status == Status.active:
        return Rejection(InvalidStateError, "Active elections cannot be archived.")
    return dataclasses.replace(snapshot, archived=True)


def restore_transition(snapshot: ElectionSnapshot) -> TransitionResult:
    return dataclasses.replace(snapshot, archived=False)


def can_permanently_delete(snapshot: ElectionSnapshot) -> Rejection | None:
    if snapshot.status not in DELETABLE_STATUSES:
        return Rejection(InvalidStateError, f"A {snapshot.status} election cannot be deleted.")
    return None


def edit_rejection(
    snapshot: ElectionSnapshot,
    changes: Mapping[str, object],
    now: datetime.datetime,
) -> Rejection | None:
    """Decide whether a field edit is legal for the election's current state."""
    unknown = sorted(set(changes) - EDITABLE_FIELDS - {"status"})
    if unknown:
        return Rejection(ElectionError, f"Unknown or read-only fields: {', '.join(unknown)}.")

    if snapshot.status in FROZEN_STATUSES:
        return Rejection(InvalidStateError, f"A {snapshot.status} election cannot be edited.")

    if "status" in changes and changes["status"] != snapshot.status:
        return Rejection(InvalidStateError, "Status changes must use the dedicated lifecycle actions.")

    if any(field in changes for field in DATE_FIELDS):
        new_start = changes.get("voting_start", snapshot.voting_start)
        new_end = changes.get("voting_end", snapshot.voting_end)
        new_declaration = changes.get("result_declaration_at", snapshot.result_declaration_at)
        if "voting_start" in changes and new_start <= now:
            return Rejection(ElectionError, "Voting start must be in the future.")
        return validate_schedule(
            voting_start=new_start,
            voting_end=new_end,
            result_declaration_at=new_declaration,
        )

    return None


def _get_election(election_id: int) -> Election:
    try:
        return Election.objects.get(pk=election_id)
    except Election.DoesNotExist as exc:
        raise NotFoundError(f"Election {election_id} not found.") from exc


def _activation_updates(election: Election) -> dict[str, object]:
    # Freeze the electorate size when voting opens so turnout has a stable base.
    if int(election.total_voters or 0) > 0:
        return {}
    return {"total_voters": voters_in_jurisdiction(election).count()}


def _apply(
    *,
    election: Election,
    before: ElectionSnapshot,
    after: ElectionSnapshot,
    now: datetime.datetime,
) -> bool:
    updates: dict[str, object] = {"updated_at": now}
    if after.status != before.status:
        updates["status"] = after.status
        if after.status == Status.active:
            updates.update(_activation_updates(election))
    if after.archived != before.archived:
        updates["archived"] = after.archived

    updated = Election.objects.filter(
        pk=election.pk,
        status=before.status,
        archived=before.archived,
    ).update(**updates)
    return updated == 1


def _operator_transition(
    *,
    election_id: int,
    transition,
    event_type: str,
    actor: str | None,
    now: datetime.datetime | None,
    takes_time: bool = False,
) -> Election:
    now = now or timezone.now()
    election = _get_election(election_id)
    before = ElectionSnapshot.of(election)
    result = transition(before, now) if takes_time else transition(before)
    if isinstance(result, Rejection):
        raise result.exception()

    if result == before:
        return election

    if not _apply(election=election, before=before, after=result, now=now):
        raise InvalidStateError("Election was modified concurrently; reload and retry.")

    record_audit(
        election_id=election.pk,
        event_type=event_type,
        payload={
            "from_status": before.status,
            "to_status": result.status,
            "archived": result.archived,
        },
        actor=actor,
    )
    logger.info(
        "Election %s: %s (%s -> %s, archived=%s) actor=%s",
        election.pk,
        event_type,
        before.status,
        result.status,
        result.archived,
        actor or "-",
    )
    election.refresh_from_db()
    return election


@translate_storage_errors
@transaction.atomic
def create_election(
    *,
    title: str,
    voting_start: datetime.datetime,
    voting_end: datetime.datetime,
    result_declaration_at: datetime.datetime,
    description: str = "",
    level: str = Election.Level.national,
    state: str = "",
    district: str = "",
    city: str = "",
    is_secret_ballot: bool = True,
    total_voters: int = 0,
    candidate_ids: Iterable[int] = (),
    actor: str | None = None,
    now: datetime.datetime | None = None,
) -> Election:
    now = now or timezone.now()
    if not str(title or "").strip():
        raise ElectionError("Title is required.")
    if voting_start <= now:
        raise ElectionError("Voting start must be in the future.")
    rejection = validate_schedule(
        voting_start=voting_start,
        voting_end=voting_end,
        result_declaration_at=result_declaration_at,
    )
    if rejection is not None:
        raise rejection.exception()

    election = Election.objects.create(
        title=title.strip(),
        description=description,
        level=level,
        state=state,
        district=district,
        city=city,
        voting_start=voting_start,
        voting_end=voting_end,
        result_declaration_at=result_declaration_at,
        is_secret_ballot=is_secret_ballot,
        total_voters=total_voters,
        status=Status.draft,
        created_by=actor or "",
    )

    for candidate_id in candidate_ids:
        assign_candidate(election_id=election.pk, candidate_id=candidate_id, actor=actor)

    record_audit(
        election_id=election.pk,
        event_type="election_created",
        payload={"title": election.title, "level": election.level},
        actor=actor,
    )
    logger.info("Election %s created by %s", election.pk, actor or "-")
    return election


@translate_storage_errors
@transaction.atomic
def update_election(
    *,
    election_id: int,
    changes: Mapping[str, object],
    actor: str | None = None,
    now: datetime.datetime | None = None,
) -> Election:
    now = now or timezone.now()
    try:
        election = Election.objects.select_for_update().get(pk=election_id)
    except Election.DoesNotExist as exc:
        raise NotFoundError(f"Election {election_id} not found.") from exc

    snapshot = ElectionSnapshot.of(election)

    # The one edit a running election accepts is closing it.
    if set(changes) == {"status"} and snapshot.status == Status.active and changes["status"] == Status.completed:
        return end_election(election_id=election_id, actor=actor, now=now)

    rejection = edit_rejection(snapshot, changes, now)
    if rejection is not None:
        raise rejection.exception()

    changed: list[str] = []
    for field, value in changes.items():
        if field == "status":
            continue
        if getattr(election, field) != value:
            setattr(election, field, value)
            changed.append(field)

    if not changed:
        return election

    election.save(update_fields=[*changed, "updated_at"])
    record_audit(
        election_id=election.pk,
        event_type="election_updated",
        payload={"fields": sorted(changed)},
        actor=actor,
        is_public=False,
    )
    logger.info("Election %s updated fields=%s actor=%s", election.pk, ",".join(sorted(changed)), actor or "-")
    return election


@translate_storage_errors
@transaction.atomic
def schedule_election(*, election_id: int, actor: str | None = None, now: datetime.datetime | None = None) -> Election:
    return _operator_transition(
        election_id=election_id,
        transition=schedule_transition,
        event_type="election_scheduled",
        actor=actor,
        now=now,
    )


@translate_storage_errors
@transaction.atomic
def start_election(*, election_id: int, actor: str | None = None, now: datetime.datetime | None = None) -> Election:
    return _operator_transition(
        election_id=election_id,
        transition=start_transition,
        event_type="election_started",
        actor=actor,
        now=now,
        takes_time=True,
    )


@translate_storage_errors
@transaction.atomic
def end_election(*, election_id: int, actor: str | None = None, now: datetime.datetime | None = None) -> Election:
    return _operator_transition(
        election_id=election_id,
        transition=end_transition,
        event_type="election_ended",
        actor=actor,
        now=now,
        takes_time=True,
    )


@translate_storage_errors
@transaction.atomic
def cancel_election(*, election_id: int, actor: str | None = None, now: datetime.datetime | None = None) -> Election:
    return _operator_transition(
        election_id=election_id,
        transition=cancel_transition,
        event_type="election_cancelled",
        actor=actor,
        now=now,
    )


@translate_storage_errors
@transaction.atomic
def postpone_election(*, election_id: int, actor: str | None = None, now: datetime.datetime | None = None) -> Election:
    return _operator_transition(
        election_id=election_id,
        transition=postpone_transition,
        event_type="election_postponed",
        actor=actor,
        now=now,
    )


@translate_storage_errors
@transaction.atomic
def archive_election(*, election_id: int, actor: str | None = None, now: datetime.datetime | None = None) -> Election:
    return _operator_transition(
        election_id=election_id,
        transition=archive_transition,
        event_type="election_archived",
        actor=actor,
        now=now,
    )


@translate_storage_errors
@transaction.atomic
def restore_election(*, election_id: int, actor: str | None = None, now: datetime.datetime | None = None) -> Election:
    return _operator_transition(
        election_id=election_id,
        transition=restore_transition,
        event_type="election_restored",
        actor=actor,
        now=now,
    )


@translate_storage_errors
@transaction.atomic
def permanently_delete_election(*, election_id: int, actor: str | None = None) -> None:
    try:
        election = Election.objects.select_for_update().get(pk=election_id)
    except Election.DoesNotExist as exc:
        raise NotFoundError(f"Election {election_id} not found.") from exc

    rejection = can_permanently_delete(ElectionSnapshot.of(election))
    if rejection is not None:
        raise rejection.exception()

    if Vote.objects.filter(election_id=election.pk).exists():
        raise InvalidStateError("Elections that hold votes cannot be deleted.")

    try:
        election.delete()
    except ProtectedError as exc:
        raise InvalidStateError("Elections that hold votes cannot be deleted.") from exc

    logger.warning("Election %s (%s) permanently deleted by %s", election_id, election.title, actor or "-")


@translate_storage_errors
@transaction.atomic
def assign_candidate(*, election_id: int, candidate_id: int, actor: str | None = None) -> ElectionCandidate:
    try:
        election = Election.objects.select_for_update().get(pk=election_id)
    except Election.DoesNotExist as exc:
        raise NotFoundError(f"Election {election_id} not found.") from exc

    if election.status not in CANDIDATE_EDIT_STATUSES:
        raise InvalidStateError(f"Candidates cannot be assigned to a {election.status} election.")

    if not Candidate.objects.filter(pk=candidate_id).exists():
        raise NotFoundError(f"Candidate {candidate_id} not found.")

    entries = ElectionCandidate.objects.filter(election=election)
    if entries.filter(candidate_id=candidate_id).exists():
        raise InvalidCandidateError("Candidate is already assigned to this election.")

    last_position = entries.aggregate(last=Max("position"))["last"]
    entry = ElectionCandidate.objects.create(
        election=election,
        candidate_id=candidate_id,
        position=0 if last_position is None else last_position + 1,
    )
    record_audit(
        election_id=election.pk,
        event_type="candidate_assigned",
        payload={"candidate_id": candidate_id},
        actor=actor,
        is_public=False,
    )
    return entry


@translate_storage_errors
@transaction.atomic
def remove_candidate(*, election_id: int, candidate_id: int, actor: str | None = None) -> None:
    try:
        election = Election.objects.select_for_update().get(pk=election_id)
    except Election.DoesNotExist as exc:
        raise NotFoundError(f"Election {election_id} not found.") from exc

    if election.status == Status.active:
        raise InvalidStateError("Candidates cannot be removed from an active election.")

    entry = ElectionCandidate.objects.filter(election=election, candidate_id=candidate_id).first()
    if entry is None:
        raise NotFoundError("Candidate is not assigned to this election.")

    if Vote.objects.filter(election=election, candidate_id=candidate_id).exists():
        raise InvalidStateError("A candidate who has received votes cannot be removed.")

    entry.delete()
    record_audit(
        election_id=election.pk,
        event_type="candidate_removed",
        payload={"candidate_id": candidate_id},
        actor=actor,
        is_public=False,
    )


@dataclass(frozen=True)
class PlannedTransition:
    election_id: int
    title: str
    from_status: str
    to_status: str


@dataclass(frozen=True)
class StatusSweepResult:
    activated: int
    completed: int
    skipped: int
    failed: int


def plan_status_sweep(*, now: datetime.datetime | None = None) -> list[PlannedTransition]:
    now = now or timezone.now()
    due = (Election.objects.due_for_activation(now=now) | Election.objects.due_for_completion(now=now)).order_by("id")

    planned: list[PlannedTransition] = []
    for election in due:
        before = ElectionSnapshot.of(election)
        after = sweep_transition(before, now)
        if after != before:
            planned.append(
                PlannedTransition(
                    election_id=election.pk,
                    title=election.title,
                    from_status=before.status,
                    to_status=after.status,
                )
            )
    return planned


def sweep_election_statuses(*, now: datetime.datetime | None = None) -> StatusSweepResult:
    """Advance every election whose time-based transition is due.

    Each election is applied in its own transaction; a failure is logged and
    the sweep moves on. Running it again with nothing due is a no-op.
    """
    now = now or timezone.now()
    activated = 0
    completed = 0
    skipped = 0
    failed = 0

    for planned in plan_status_sweep(now=now):
        try:
            with transaction.atomic():
                election = Election.objects.get(pk=planned.election_id)
                before = ElectionSnapshot.of(election)
                after = sweep_transition(before, now)
                if after == before or not _apply(election=election, before=before, after=after, now=now):
                    # Another sweep or an operator got there first.
                    skipped += 1
                    continue

                record_audit(
                    election_id=election.pk,
                    event_type="election_status_advanced",
                    payload={"from_status": before.status, "to_status": after.status, "automatic": True},
                )
        except Election.DoesNotExist:
            skipped += 1
            continue
        except Exception:
            failed += 1
            logger.exception("Status sweep failed for election %s", planned.election_id)
            continue

        if before.status != Status.active:
            activated += 1
        if after.status == Status.completed:
            completed += 1
        logger.info("Election %s advanced %s -> %s", planned.election_id, before.status, after.status)

    return StatusSweepResult(activated=activated, completed=completed, skipped=skipped, failed=failed)


def visible_elections() -> QuerySet[Election]:
    return Election.objects.visible().order_by("-voting_start", "id")


def archived_elections() -> QuerySet[Election]:
    return Election.objects.filter(archived=True).order_by("-updated_at", "id")
