from __future__ import annotations

import datetime
import threading
import time
from unittest.mock import Mock, patch

from django.core.cache.backends.locmem import LocMemCache
from django.db import connections
from django.test import TestCase, TransactionTestCase

from voting.errors import (
    AlreadyVotedError,
    CredentialMismatchError,
    CredentialNotFoundError,
    IdentityMismatchError,
    NotFoundError,
    VotingClosedError,
    VotingNotStartedError,
)
from voting.models import Election, Vote
from voting.notifications import NotificationResult
from voting.tests.utils_test_data import FakeClock, make_candidate, make_election, make_voter
from voting.voting_credentials import (
    CREDENTIAL_ALPHABET,
    VotingCredentialBroker,
    credential_cache_key,
    identity_matches,
)


class VotingCredentialBrokerTests(TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.cache = LocMemCache(f"test-credentials-{id(self)}", {"TIMEOUT": None})
        self.notifier = Mock()
        self.notifier.send.return_value = NotificationResult(success=True)
        self.broker = VotingCredentialBroker(
            cache=self.cache,
            notifier=self.notifier,
            clock=self.clock,
            ttl=datetime.timedelta(hours=24),
        )
        self.alice = make_candidate("Alice")
        self.bob = make_candidate("Bob")
        self.election = make_election(now=self.clock.now, candidates=[self.alice, self.bob])
        self.voter = make_voter(email="Asha@Example.com", card_number="ABC1234567")

    def tearDown(self) -> None:
        self.cache.clear()

    def _request(self, **overrides):
        kwargs = {
            "voter": self.voter,
            "election_id": self.election.pk,
            "claimed_email": "asha@example.com",
            "claimed_card_number": "ABC1234567",
        }
        kwargs.update(overrides)
        return self.broker.request_credential(**kwargs)

    def _verify(self, secret: str, **overrides):
        kwargs = {
            "voter": self.voter,
            "election_id": self.election.pk,
            "claimed_email": "asha@example.com",
            "claimed_card_number": "ABC1234567",
            "supplied_secret": secret,
        }
        kwargs.update(overrides)
        return self.broker.verify_credential(**kwargs)

    def _last_secret(self) -> str:
        return self.notifier.send.call_args.kwargs["context"]["voting_password"]

    def test_request_issues_and_delivers_secret(self) -> None:
        issued = self._request()

        self.assertTrue(issued.delivered)
        self.assertEqual(issued.expires_at, self.clock.now + datetime.timedelta(hours=24))

        call = self.notifier.send.call_args.kwargs
        self.assertEqual(call["recipient"], "Asha@Example.com")
        self.assertEqual(call["kind"], "voting_credential")
        self.assertEqual(call["context"]["election_title"], self.election.title)

        secret = self._last_secret()
        self.assertEqual(len(secret), 8)
        self.assertTrue(set(secret) <= set(CREDENTIAL_ALPHABET))

    def test_request_reports_undelivered_credential(self) -> None:
        self.notifier.send.return_value = NotificationResult(success=False, error="smtp down")

        with self.assertLogs("voting.voting_credentials", level="WARNING"):
            issued = self._request()

        self.assertFalse(issued.delivered)
        self.assertIsNotNone(self.cache.get(credential_cache_key(voter_id=self.voter.pk, election_id=self.election.pk)))

    def test_verify_returns_ballot_in_order_and_consumes(self) -> None:
        self._request()
        secret = self._last_secret()

        ballot = self._verify(secret)

        self.assertEqual([entry.candidate.name for entry in ballot], ["Alice", "Bob"])
        with self.assertRaises(CredentialNotFoundError):
            self._verify(secret)

    def test_new_request_replaces_previous_secret(self) -> None:
        self._request()
        first = self._last_secret()
        self._request()
        second = self._last_secret()

        with self.assertRaises(CredentialMismatchError):
            self._verify(first)
        self.assertEqual(len(self._verify(second)), 2)

    def test_identity_mismatch(self) -> None:
        with self.assertRaises(IdentityMismatchError):
            self._request(claimed_email="someone@example.com")
        with self.assertRaises(IdentityMismatchError):
            self._request(claimed_card_number="abc1234567")
        self.notifier.send.assert_not_called()

    def test_window_checks(self) -> None:
        upcoming = make_election(
            status=Election.Status.upcoming,
            now=self.clock.now,
            start_offset=datetime.timedelta(hours=1),
            end_offset=datetime.timedelta(hours=2),
        )
        completed = make_election(
            status=Election.Status.completed,
            now=self.clock.now,
            start_offset=datetime.timedelta(hours=-2),
            end_offset=datetime.timedelta(hours=-1),
        )

        with self.assertRaises(VotingNotStartedError):
            self._request(election_id=upcoming.pk)
        with self.assertRaises(VotingClosedError):
            self._request(election_id=completed.pk)
        with self.assertRaises(NotFoundError):
            self._request(election_id=999999)

    def test_active_election_past_its_end_is_closed(self) -> None:
        self.clock.advance(hours=2)
        with self.assertRaises(VotingClosedError):
            self._request()

    def test_expired_credential_is_not_found(self) -> None:
        self.broker.ttl = datetime.timedelta(minutes=10)
        self._request()
        secret = self._last_secret()

        self.clock.advance(minutes=10)

        # The entry is still in the cache; the broker's clock decides.
        key = credential_cache_key(voter_id=self.voter.pk, election_id=self.election.pk)
        self.assertIsNotNone(self.cache.get(key))
        with self.assertRaises(CredentialNotFoundError):
            self._verify(secret)
        self.assertIsNone(self.cache.get(key))

    def test_verify_without_request(self) -> None:
        with self.assertRaises(CredentialNotFoundError):
            self._verify("whatever")

    def test_mismatch_is_retried_until_expiry_by_default(self) -> None:
        self._request()
        secret = self._last_secret()

        for _ in range(10):
            with self.assertRaises(CredentialMismatchError):
                self._verify("wrong")

        self.assertEqual(len(self._verify(secret)), 2)

    def test_configured_cap_discards_credential(self) -> None:
        self.broker.max_attempts = 3
        self._request()
        secret = self._last_secret()

        for _ in range(2):
            with self.assertRaises(CredentialMismatchError):
                self._verify("wrong")

        # The right secret still works before the cap is hit.
        self.assertEqual(len(self._verify(secret)), 2)

        self._request()
        secret = self._last_secret()
        for _ in range(3):
            with self.assertRaises(CredentialMismatchError):
                self._verify("wrong")
        with self.assertRaises(CredentialNotFoundError):
            self._verify(secret)

    def test_already_voted_fails_before_consuming(self) -> None:
        self._request()
        secret = self._last_secret()
        Vote.objects.create(election=self.election, voter=self.voter, candidate=self.alice)

        with self.assertRaises(AlreadyVotedError):
            self._verify(secret)
        key = credential_cache_key(voter_id=self.voter.pk, election_id=self.election.pk)
        self.assertIsNotNone(self.cache.get(key))

    def test_purge_expired(self) -> None:
        self._request()
        other = make_voter()
        self.broker.request_credential(
            voter=other,
            election_id=self.election.pk,
            claimed_email=other.email,
            claimed_card_number=other.card_number,
        )

        self.assertEqual(self.broker.purge_expired(), 0)
        self.clock.advance(hours=25)
        self.assertEqual(self.broker.purge_expired(), 2)
        self.assertIsNone(self.cache.get(credential_cache_key(voter_id=other.pk, election_id=self.election.pk)))


class IdentityMatchTests(TestCase):
    def test_email_case_insensitive_card_exact(self) -> None:
        voter = make_voter(email="Ravi@Example.com", card_number="XYZ7654321")

        self.assertTrue(identity_matches(voter=voter, claimed_email=" ravi@example.COM ", claimed_card_number="XYZ7654321"))
        self.assertFalse(identity_matches(voter=voter, claimed_email="ravi@example.com", claimed_card_number="xyz7654321"))


class ConcurrentVerificationTests(TransactionTestCase):
    def test_secret_is_consumed_once_under_concurrent_verification(self) -> None:
        clock = FakeClock()
        cache = LocMemCache(f"test-credentials-race-{id(self)}", {"TIMEOUT": None})
        self.addCleanup(cache.clear)
        notifier = Mock()
        notifier.send.return_value = NotificationResult(success=True)
        broker = VotingCredentialBroker(cache=cache, notifier=notifier, clock=clock)
        election = make_election(now=clock.now, candidates=[make_candidate("Alice"), make_candidate("Bob")])
        voter = make_voter(email="ravi@example.com", card_number="RAV0000001")
        identity = {
            "voter": voter,
            "election_id": election.pk,
            "claimed_email": "ravi@example.com",
            "claimed_card_number": "RAV0000001",
        }
        broker.request_credential(**identity)
        secret = notifier.send.call_args.kwargs["context"]["voting_password"]

        # Widen the window between reading the entry and deleting it.
        original_get = cache.get

        def slow_get(*args, **kwargs):
            value = original_get(*args, **kwargs)
            time.sleep(0.05)
            return value

        barrier = threading.Barrier(2)
        outcomes: list[object] = []
        outcomes_lock = threading.Lock()

        def verify() -> None:
            try:
                barrier.wait(timeout=5)
                try:
                    result: object = broker.verify_credential(**identity, supplied_secret=secret)
                except CredentialNotFoundError as exc:
                    result = exc
                with outcomes_lock:
                    outcomes.append(result)
            finally:
                connections.close_all()

        with patch.object(cache, "get", side_effect=slow_get):
            threads = [threading.Thread(target=verify) for _ in range(2)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=10)

        self.assertEqual(len(outcomes), 2)
        ballots = [o for o in outcomes if isinstance(o, list)]
        rejections = [o for o in outcomes if isinstance(o, CredentialNotFoundError)]
        self.assertEqual(len(ballots), 1)
        self.assertEqual([entry.candidate.name for entry in ballots[0]], ["Alice", "Bob"])
        self.assertEqual(len(rejections), 1)
