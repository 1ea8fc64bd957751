from __future__ import annotations

import datetime
from unittest.mock import patch

from django.test import SimpleTestCase, TestCase
from django.utils import timezone

from voting import elections_lifecycle
from voting.elections_lifecycle import (
    ElectionSnapshot,
    Rejection,
    archive_transition,
    can_permanently_delete,
    cancel_transition,
    edit_rejection,
    end_transition,
    postpone_transition,
    restore_transition,
    schedule_transition,
    start_transition,
    sweep_transition,
)
from voting.errors import ElectionError, InvalidCandidateError, InvalidStateError, NotFoundError
from voting.models import AuditLogEntry, Election, ElectionCandidate, Vote
from voting.tests.utils_test_data import make_candidate, make_election, make_voter

Status = Election.Status

NOW = datetime.datetime(2026, 5, 1, 12, 0, tzinfo=datetime.UTC)
HOUR = datetime.timedelta(hours=1)


def snapshot(status: str, *, archived: bool = False, start=NOW - HOUR, end=NOW + HOUR, declare=None) -> ElectionSnapshot:
    return ElectionSnapshot(
        status=status,
        archived=archived,
        voting_start=start,
        voting_end=end,
        result_declaration_at=declare or end,
    )


class SweepTransitionTests(SimpleTestCase):
    def test_draft_and_upcoming_activate_once_start_reached(self) -> None:
        for status in (Status.draft, Status.upcoming):
            with self.subTest(status=status):
                self.assertEqual(sweep_transition(snapshot(status), NOW).status, Status.active)

    def test_activation_at_exact_start(self) -> None:
        self.assertEqual(sweep_transition(snapshot(Status.upcoming, start=NOW), NOW).status, Status.active)

    def test_nothing_due_returns_same_snapshot(self) -> None:
        before = snapshot(Status.upcoming, start=NOW + HOUR, end=NOW + 2 * HOUR)
        self.assertEqual(sweep_transition(before, NOW), before)

    def test_active_completes_only_strictly_after_end(self) -> None:
        self.assertEqual(sweep_transition(snapshot(Status.active, end=NOW), NOW).status, Status.active)
        after = sweep_transition(snapshot(Status.active, start=NOW - 2 * HOUR, end=NOW - HOUR), NOW)
        self.assertEqual(after.status, Status.completed)

    def test_missed_window_chains_to_completed(self) -> None:
        before = snapshot(Status.draft, start=NOW - 2 * HOUR, end=NOW - HOUR)
        self.assertEqual(sweep_transition(before, NOW).status, Status.completed)

    def test_sweep_is_idempotent(self) -> None:
        for status in Status.values:
            with self.subTest(status=status):
                once = sweep_transition(snapshot(status, start=NOW - 2 * HOUR, end=NOW - HOUR), NOW)
                self.assertEqual(sweep_transition(once, NOW), once)

    def test_archived_elections_are_not_activated(self) -> None:
        before = snapshot(Status.upcoming, archived=True)
        self.assertEqual(sweep_transition(before, NOW), before)

    def test_terminal_and_paused_states_never_move(self) -> None:
        for status in (Status.completed, Status.cancelled, Status.postponed):
            with self.subTest(status=status):
                before = snapshot(status, start=NOW - 2 * HOUR, end=NOW - HOUR)
                self.assertEqual(sweep_transition(before, NOW), before)


class OperatorTransitionTests(SimpleTestCase):
    def test_start_requires_upcoming_and_start_reached(self) -> None:
        self.assertEqual(start_transition(snapshot(Status.upcoming), NOW).status, Status.active)

        rejected = start_transition(snapshot(Status.draft), NOW)
        self.assertIsInstance(rejected, Rejection)
        self.assertIs(rejected.error, InvalidStateError)

        early = start_transition(snapshot(Status.upcoming, start=NOW + HOUR, end=NOW + 2 * HOUR), NOW)
        self.assertIsInstance(early, Rejection)

    def test_end_allowed_at_or_after_voting_end(self) -> None:
        self.assertIsInstance(end_transition(snapshot(Status.active), NOW), Rejection)
        self.assertEqual(end_transition(snapshot(Status.active, end=NOW), NOW).status, Status.completed)
        self.assertIsInstance(end_transition(snapshot(Status.upcoming, end=NOW), NOW), Rejection)

    def test_schedule_cancel_postpone(self) -> None:
        self.assertEqual(schedule_transition(snapshot(Status.draft)).status, Status.upcoming)
        self.assertIsInstance(schedule_transition(snapshot(Status.upcoming)), Rejection)

        self.assertEqual(cancel_transition(snapshot(Status.upcoming)).status, Status.cancelled)
        self.assertIsInstance(cancel_transition(snapshot(Status.active)), Rejection)

        self.assertEqual(postpone_transition(snapshot(Status.upcoming)).status, Status.postponed)
        self.assertIsInstance(postpone_transition(snapshot(Status.draft)), Rejection)

    def test_archive_refuses_active_and_keeps_status(self) -> None:
        self.assertIsInstance(archive_transition(snapshot(Status.active)), Rejection)

        archived = archive_transition(snapshot(Status.completed))
        self.assertTrue(archived.archived)
        self.assertEqual(archived.status, Status.completed)

    def test_restore_clears_flag_and_is_idempotent(self) -> None:
        restored = restore_transition(snapshot(Status.completed, archived=True))
        self.assertFalse(restored.archived)
        self.assertEqual(restore_transition(restored), restored)

    def test_permanent_delete_only_for_completed_upcoming_draft(self) -> None:
        for status in (Status.completed, Status.upcoming, Status.draft):
            self.assertIsNone(can_permanently_delete(snapshot(status)))
        for status in (Status.active, Status.cancelled, Status.postponed):
            self.assertIsInstance(can_permanently_delete(snapshot(status)), Rejection)


class EditRejectionTests(SimpleTestCase):
    def test_frozen_states_reject_any_edit(self) -> None:
        for status in (Status.active, Status.completed, Status.cancelled, Status.postponed):
            with self.subTest(status=status):
                rejection = edit_rejection(snapshot(status), {"title": "New"}, NOW)
                self.assertIsNotNone(rejection)
                self.assertIs(rejection.error, InvalidStateError)

    def test_dates_cannot_move_start_into_the_past(self) -> None:
        future = snapshot(Status.upcoming, start=NOW + HOUR, end=NOW + 2 * HOUR)
        rejection = edit_rejection(future, {"voting_start": NOW - HOUR}, NOW)
        self.assertIsNotNone(rejection)
        self.assertIn("future", rejection.message)

    def test_dates_must_keep_order(self) -> None:
        future = snapshot(Status.draft, start=NOW + HOUR, end=NOW + 2 * HOUR)
        self.assertIsNotNone(edit_rejection(future, {"voting_end": NOW + HOUR}, NOW))
        self.assertIsNotNone(edit_rejection(future, {"result_declaration_at": NOW + datetime.timedelta(minutes=90)}, NOW))
        self.assertIsNone(edit_rejection(future, {"voting_end": NOW + 3 * HOUR, "result_declaration_at": NOW + 4 * HOUR}, NOW))

    def test_status_changes_are_not_field_edits(self) -> None:
        rejection = edit_rejection(snapshot(Status.draft), {"status": Status.active}, NOW)
        self.assertIs(rejection.error, InvalidStateError)

    def test_unknown_fields_rejected(self) -> None:
        rejection = edit_rejection(snapshot(Status.draft), {"total_votes_cast": 5}, NOW)
        self.assertIs(rejection.error, ElectionError)


class ElectionLifecycleServiceTests(TestCase):
    def test_create_election_starts_as_draft_with_ordered_candidates(self) -> None:
        now = timezone.now()
        alice = make_candidate("Alice")
        bob = make_candidate("Bob")

        election = elections_lifecycle.create_election(
            title="Board",
            voting_start=now + HOUR,
            voting_end=now + 2 * HOUR,
            result_declaration_at=now + 3 * HOUR,
            candidate_ids=[bob.pk, alice.pk],
            actor="admin",
            now=now,
        )

        self.assertEqual(election.status, Status.draft)
        self.assertEqual(election.created_by, "admin")
        self.assertEqual(
            list(ElectionCandidate.objects.filter(election=election).values_list("candidate_id", flat=True)),
            [bob.pk, alice.pk],
        )
        self.assertTrue(AuditLogEntry.objects.filter(election=election, event_type="election_created").exists())

    def test_create_election_rejects_past_start_and_bad_order(self) -> None:
        now = timezone.now()
        with self.assertRaises(ElectionError):
            elections_lifecycle.create_election(
                title="Past",
                voting_start=now - HOUR,
                voting_end=now + HOUR,
                result_declaration_at=now + HOUR,
                now=now,
            )
        with self.assertRaises(ElectionError):
            elections_lifecycle.create_election(
                title="Backwards",
                voting_start=now + 2 * HOUR,
                voting_end=now + HOUR,
                result_declaration_at=now + 3 * HOUR,
                now=now,
            )
        self.assertFalse(Election.objects.exists())

    def test_update_rejected_for_active_election(self) -> None:
        election = make_election(status=Status.active)

        with self.assertRaises(InvalidStateError):
            elections_lifecycle.update_election(election_id=election.pk, changes={"voting_end": timezone.now()})

    def test_update_active_to_completed_after_end(self) -> None:
        now = timezone.now()
        election = make_election(status=Status.active, now=now, start_offset=-2 * HOUR, end_offset=-HOUR)

        updated = elections_lifecycle.update_election(
            election_id=election.pk,
            changes={"status": Status.completed},
            actor="admin",
            now=now,
        )

        self.assertEqual(updated.status, Status.completed)

    def test_update_active_to_completed_before_end_is_rejected(self) -> None:
        election = make_election(status=Status.active)

        with self.assertRaises(InvalidStateError):
            elections_lifecycle.update_election(election_id=election.pk, changes={"status": Status.completed})

    def test_update_upcoming_fields(self) -> None:
        now = timezone.now()
        election = make_election(status=Status.upcoming, now=now, start_offset=HOUR, end_offset=2 * HOUR)

        updated = elections_lifecycle.update_election(
            election_id=election.pk,
            changes={"title": "Renamed", "voting_end": now + 5 * HOUR, "result_declaration_at": now + 6 * HOUR},
            now=now,
        )

        self.assertEqual(updated.title, "Renamed")
        self.assertEqual(updated.voting_end, now + 5 * HOUR)

    def test_start_and_end_apply_conditionally(self) -> None:
        now = timezone.now()
        make_voter()
        election = make_election(status=Status.upcoming, now=now, start_offset=-HOUR, end_offset=HOUR)

        started = elections_lifecycle.start_election(election_id=election.pk, actor="admin", now=now)
        self.assertEqual(started.status, Status.active)
        # The electorate is snapshotted at activation.
        self.assertEqual(started.total_voters, 1)

        with self.assertRaises(InvalidStateError):
            elections_lifecycle.start_election(election_id=election.pk, now=now)

        with self.assertRaises(InvalidStateError):
            elections_lifecycle.end_election(election_id=election.pk, now=now)

        ended = elections_lifecycle.end_election(election_id=election.pk, now=now + 2 * HOUR)
        self.assertEqual(ended.status, Status.completed)

    def test_stale_snapshot_does_not_double_apply(self) -> None:
        now = timezone.now()
        election = make_election(status=Status.upcoming, now=now)
        stale = ElectionSnapshot.of(election)

        Election.objects.filter(pk=election.pk).update(status=Status.cancelled)

        applied = elections_lifecycle._apply(
            election=election,
            before=stale,
            after=sweep_transition(stale, now),
            now=now,
        )
        self.assertFalse(applied)
        election.refresh_from_db()
        self.assertEqual(election.status, Status.cancelled)

    def test_archive_and_restore(self) -> None:
        election = make_election(status=Status.completed, start_offset=-2 * HOUR, end_offset=-HOUR)

        elections_lifecycle.archive_election(election_id=election.pk, actor="admin")
        self.assertNotIn(election, elections_lifecycle.visible_elections())
        self.assertIn(election, elections_lifecycle.archived_elections())

        restored = elections_lifecycle.restore_election(election_id=election.pk, actor="admin")
        self.assertFalse(restored.archived)
        self.assertEqual(restored.status, Status.completed)

    def test_archive_active_is_refused(self) -> None:
        election = make_election(status=Status.active)
        with self.assertRaises(InvalidStateError):
            elections_lifecycle.archive_election(election_id=election.pk)

    def test_unknown_election(self) -> None:
        with self.assertRaises(NotFoundError):
            elections_lifecycle.start_election(election_id=999999)

    def test_permanent_delete(self) -> None:
        election = make_election(status=Status.draft, start_offset=HOUR, end_offset=2 * HOUR)
        elections_lifecycle.permanently_delete_election(election_id=election.pk, actor="admin")
        self.assertFalse(Election.objects.filter(pk=election.pk).exists())

    def test_permanent_delete_refused_when_votes_exist(self) -> None:
        alice = make_candidate("Alice")
        election = make_election(status=Status.completed, candidates=[alice], start_offset=-2 * HOUR, end_offset=-HOUR)
        Vote.objects.create(election=election, voter=make_voter(), candidate=alice)

        with self.assertRaises(InvalidStateError):
            elections_lifecycle.permanently_delete_election(election_id=election.pk)
        self.assertTrue(Election.objects.filter(pk=election.pk).exists())

    def test_permanent_delete_refused_for_active(self) -> None:
        election = make_election(status=Status.active)
        with self.assertRaises(InvalidStateError):
            elections_lifecycle.permanently_delete_election(election_id=election.pk)

    def test_assign_and_remove_candidates(self) -> None:
        alice = make_candidate("Alice")
        bob = make_candidate("Bob")
        election = make_election(status=Status.upcoming, start_offset=HOUR, end_offset=2 * HOUR, candidates=[alice])

        entry = elections_lifecycle.assign_candidate(election_id=election.pk, candidate_id=bob.pk)
        self.assertEqual(entry.position, 1)

        with self.assertRaises(InvalidCandidateError):
            elections_lifecycle.assign_candidate(election_id=election.pk, candidate_id=bob.pk)
        with self.assertRaises(NotFoundError):
            elections_lifecycle.assign_candidate(election_id=election.pk, candidate_id=999999)

        elections_lifecycle.remove_candidate(election_id=election.pk, candidate_id=alice.pk)
        self.assertEqual(
            list(ElectionCandidate.objects.filter(election=election).values_list("candidate_id", flat=True)),
            [bob.pk],
        )

    def test_candidates_locked_while_active(self) -> None:
        alice = make_candidate("Alice")
        bob = make_candidate("Bob")
        election = make_election(status=Status.active, candidates=[alice])

        with self.assertRaises(InvalidStateError):
            elections_lifecycle.assign_candidate(election_id=election.pk, candidate_id=bob.pk)
        with self.assertRaises(InvalidStateError):
            elections_lifecycle.remove_candidate(election_id=election.pk, candidate_id=alice.pk)


class StatusSweepTests(TestCase):
    def test_sweep_activates_and_completes(self) -> None:
        now = timezone.now()
        make_voter()
        make_voter()
        due_start = make_election(status=Status.upcoming, now=now, start_offset=-HOUR, end_offset=HOUR)
        due_end = make_election(status=Status.active, now=now, start_offset=-2 * HOUR, end_offset=-HOUR)
        not_due = make_election(status=Status.upcoming, now=now, start_offset=HOUR, end_offset=2 * HOUR)

        result = elections_lifecycle.sweep_election_statuses(now=now)

        self.assertEqual((result.activated, result.completed, result.failed), (1, 1, 0))
        due_start.refresh_from_db()
        due_end.refresh_from_db()
        not_due.refresh_from_db()
        self.assertEqual(due_start.status, Status.active)
        self.assertEqual(due_start.total_voters, 2)
        self.assertEqual(due_end.status, Status.completed)
        self.assertEqual(not_due.status, Status.upcoming)

    def test_sweep_skips_archived_elections(self) -> None:
        now = timezone.now()
        archived = make_election(status=Status.upcoming, now=now, start_offset=-HOUR, end_offset=HOUR, archived=True)

        self.assertEqual(elections_lifecycle.plan_status_sweep(now=now), [])
        result = elections_lifecycle.sweep_election_statuses(now=now)

        archived.refresh_from_db()
        self.assertEqual(archived.status, Status.upcoming)
        self.assertEqual(result.activated, 0)

    def test_sweep_twice_is_a_noop(self) -> None:
        now = timezone.now()
        election = make_election(status=Status.draft, now=now, start_offset=-HOUR, end_offset=HOUR)

        elections_lifecycle.sweep_election_statuses(now=now)
        second = elections_lifecycle.sweep_election_statuses(now=now)

        election.refresh_from_db()
        self.assertEqual(election.status, Status.active)
        self.assertEqual((second.activated, second.completed, second.failed), (0, 0, 0))
        self.assertEqual(
            AuditLogEntry.objects.filter(election=election, event_type="election_status_advanced").count(),
            1,
        )

    def test_sweep_isolates_per_election_failures(self) -> None:
        now = timezone.now()
        broken = make_election(status=Status.upcoming, now=now, title="Broken")
        healthy = make_election(status=Status.upcoming, now=now, title="Healthy")

        real_apply = elections_lifecycle._apply

        def flaky_apply(*, election, before, after, now):
            if election.pk == broken.pk:
                raise RuntimeError("storage hiccup")
            return real_apply(election=election, before=before, after=after, now=now)

        with patch("voting.elections_lifecycle._apply", side_effect=flaky_apply):
            with self.assertLogs("voting.elections_lifecycle", level="ERROR"):
                result = elections_lifecycle.sweep_election_statuses(now=now)

        self.assertEqual(result.failed, 1)
        self.assertEqual(result.activated, 1)
        broken.refresh_from_db()
        healthy.refresh_from_db()
        self.assertEqual(broken.status, Status.upcoming)
        self.assertEqual(healthy.status, Status.active)

    def test_plan_lists_due_transitions_without_applying(self) -> None:
        now = timezone.now()
        election = make_election(status=Status.upcoming, now=now)

        planned = elections_lifecycle.plan_status_sweep(now=now)

        self.assertEqual([(p.election_id, p.to_status) for p in planned], [(election.pk, Status.active)])
        election.refresh_from_db()
        self.assertEqual(election.status, Status.upcoming)
