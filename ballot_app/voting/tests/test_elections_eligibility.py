from __future__ import annotations

import datetime

from django.test import TestCase
from django.utils import timezone

from voting.elections_eligibility import (
    available_elections_for,
    is_in_jurisdiction,
    published_elections_for,
    voters_in_jurisdiction,
)
from voting.models import Election
from voting.tests.utils_test_data import make_election, make_voter

Level = Election.Level
Status = Election.Status
HOUR = datetime.timedelta(hours=1)


class JurisdictionTests(TestCase):
    def setUp(self) -> None:
        self.kochi = make_voter(state="Kerala", district="Ernakulam", city="Kochi")
        self.aluva = make_voter(state="kerala", district="ernakulam", city="Aluva")
        self.goa = make_voter(state="Goa", district="North Goa", city="Panaji")
        self.inactive = make_voter(state="Kerala", district="Ernakulam", city="Kochi", is_active=False)

    def test_national_covers_every_active_voter(self) -> None:
        election = make_election(level=Level.national)
        self.assertEqual(set(voters_in_jurisdiction(election)), {self.kochi, self.aluva, self.goa})

    def test_state_matches_case_insensitively(self) -> None:
        election = make_election(level=Level.state, state="KERALA")
        self.assertEqual(set(voters_in_jurisdiction(election)), {self.kochi, self.aluva})

    def test_local_levels_narrow_by_district_and_city(self) -> None:
        district = make_election(level=Level.district, state="Kerala", district="Ernakulam")
        municipal = make_election(level=Level.municipal, state="Kerala", district="Ernakulam", city="Kochi")

        self.assertEqual(set(voters_in_jurisdiction(district)), {self.kochi, self.aluva})
        self.assertEqual(set(voters_in_jurisdiction(municipal)), {self.kochi})
        self.assertTrue(is_in_jurisdiction(voter=self.kochi, election=municipal))
        self.assertFalse(is_in_jurisdiction(voter=self.aluva, election=municipal))
        self.assertFalse(is_in_jurisdiction(voter=self.inactive, election=municipal))


class VoterListingTests(TestCase):
    def test_available_lists_active_first_within_jurisdiction(self) -> None:
        now = timezone.now()
        voter = make_voter(state="Kerala", district="Ernakulam", city="Kochi")
        upcoming = make_election(status=Status.upcoming, now=now, start_offset=HOUR, end_offset=2 * HOUR)
        active = make_election(status=Status.active, now=now, level=Level.state, state="Kerala")
        make_election(status=Status.active, now=now, level=Level.state, state="Goa")
        make_election(status=Status.active, now=now, archived=True)
        make_election(status=Status.draft, now=now, start_offset=HOUR, end_offset=2 * HOUR)
        make_election(status=Status.completed, now=now, start_offset=-2 * HOUR, end_offset=-HOUR)

        self.assertEqual(list(available_elections_for(voter, now=now)), [active, upcoming])

    def test_available_excludes_active_elections_past_their_end(self) -> None:
        now = timezone.now()
        voter = make_voter()
        make_election(status=Status.active, now=now, start_offset=-2 * HOUR, end_offset=-HOUR)

        self.assertEqual(list(available_elections_for(voter, now=now)), [])

    def test_published_lists_declared_results_newest_first(self) -> None:
        now = timezone.now()
        voter = make_voter(state="Kerala")
        older = make_election(status=Status.completed, now=now, start_offset=-3 * HOUR, end_offset=-2 * HOUR)
        newer = make_election(status=Status.completed, now=now, start_offset=-3 * HOUR, end_offset=-2 * HOUR)
        undeclared = make_election(status=Status.completed, now=now, start_offset=-3 * HOUR, end_offset=-2 * HOUR)
        Election.objects.filter(pk=older.pk).update(results_declared=True, results_declared_at=now - HOUR)
        Election.objects.filter(pk=newer.pk).update(results_declared=True, results_declared_at=now)

        published = list(published_elections_for(voter))

        self.assertEqual(published, [newer, older])
        self.assertNotIn(undeclared, published)
