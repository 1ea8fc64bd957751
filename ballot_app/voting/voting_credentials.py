"""Short-lived, single-use voting passwords.

A credential is bound to a (voter, election) pair and lives only in the
broker's cache; losing it on restart just means the voter asks for a new one.
The vote-integrity boundary is the unique constraint on ``Vote``, not this.
"""

from __future__ import annotations

import datetime
import hmac
import logging
import secrets
import string
import threading
from collections.abc import Callable
from dataclasses import dataclass

from django.core.cache.backends.base import BaseCache
from django.utils import timezone

from voting import notifications
from voting.errors import (
    AlreadyVotedError,
    CredentialMismatchError,
    CredentialNotFoundError,
    IdentityMismatchError,
    NotFoundError,
    VotingClosedError,
    VotingNotStartedError,
    translate_storage_errors,
)
from voting.models import Election, ElectionCandidate, Vote, Voter
from voting.notifications import Notifier

logger = logging.getLogger(__name__)

CREDENTIAL_ALPHABET = string.ascii_letters + string.digits


@dataclass(frozen=True)
class CredentialIssued:
    expires_at: datetime.datetime
    delivered: bool


def credential_cache_key(*, voter_id: int, election_id: int) -> str:
    return f"voting-credential:{voter_id}:{election_id}"


def identity_matches(*, voter: Voter, claimed_email: str, claimed_card_number: str) -> bool:
    email_ok = str(claimed_email or "").strip().lower() == str(voter.email or "").strip().lower()
    card_ok = str(claimed_card_number or "").strip() == str(voter.card_number or "")
    return email_ok and card_ok


def open_election_or_raise(*, election_id: int, now: datetime.datetime) -> Election:
    """Load an election and require that its voting window is open at ``now``."""
    try:
        election = Election.objects.get(pk=election_id)
    except Election.DoesNotExist as exc:
        raise NotFoundError(f"Election {election_id} not found.") from exc

    ensure_voting_open(election=election, now=now)
    return election


def ensure_voting_open(*, election: Election, now: datetime.datetime) -> None:
    if election.status in {Election.Status.draft, Election.Status.upcoming}:
        raise VotingNotStartedError("Voting has not started yet for this election.")
    if election.status != Election.Status.active:
        raise VotingClosedError(f"Voting is not open for this election (status is {election.status}).")
    if now < election.voting_start:
        raise VotingNotStartedError("Voting has not started yet for this election.")
    if now > election.voting_end:
        raise VotingClosedError("Voting has ended for this election.")


class VotingCredentialBroker:
    def __init__(
        self,
        *,
        cache: BaseCache,
        notifier: Notifier,
        clock: Callable[[], datetime.datetime] = timezone.now,
        ttl: datetime.timedelta = datetime.timedelta(hours=24),
        length: int = 8,
        max_attempts: int = 0,
    ) -> None:
        self.cache = cache
        self.notifier = notifier
        self.clock = clock
        self.ttl = ttl
        self.length = length
        self.max_attempts = max_attempts
        self._lock = threading.Lock()
        # Keys this broker has written, with their expiry, so purge_expired does
        # not need to enumerate the cache backend.
        self._expiries: dict[str, datetime.datetime] = {}

    def _generate_secret(self) -> str:
        return "".join(secrets.choice(CREDENTIAL_ALPHABET) for _ in range(self.length))

    def _timeout_seconds(self, expires_at: datetime.datetime, now: datetime.datetime) -> int:
        return max(1, int((expires_at - now).total_seconds()))

    def _check_preconditions(
        self,
        *,
        voter: Voter,
        election_id: int,
        claimed_email: str,
        claimed_card_number: str,
        now: datetime.datetime,
    ) -> Election:
        if not identity_matches(voter=voter, claimed_email=claimed_email, claimed_card_number=claimed_card_number):
            logger.warning("Credential identity mismatch voter=%s election=%s", voter.pk, election_id)
            raise IdentityMismatchError("Email or election card number does not match your profile.")
        return open_election_or_raise(election_id=election_id, now=now)

    @translate_storage_errors
    def request_credential(
        self,
        *,
        voter: Voter,
        election_id: int,
        claimed_email: str,
        claimed_card_number: str,
    ) -> CredentialIssued:
        now = self.clock()
        election = self._check_preconditions(
            voter=voter,
            election_id=election_id,
            claimed_email=claimed_email,
            claimed_card_number=claimed_card_number,
            now=now,
        )

        secret = self._generate_secret()
        expires_at = now + self.ttl
        key = credential_cache_key(voter_id=voter.pk, election_id=election.pk)

        with self._lock:
            self.cache.set(key, (secret, expires_at, 0), timeout=self._timeout_seconds(expires_at, now))
            self._expiries[key] = expires_at

        self.purge_expired()

        result = self.notifier.send(
            recipient=voter.email,
            kind=notifications.VOTING_CREDENTIAL,
            context={
                "username": voter.username,
                "full_name": voter.full_name,
                "election_id": election.pk,
                "election_title": election.title,
                "voting_password": secret,
                "expires_at": expires_at,
            },
        )
        if not result.success:
            logger.warning(
                "Voting credential for voter=%s election=%s was issued but not delivered: %s",
                voter.pk,
                election.pk,
                result.error,
            )

        logger.info("Voting credential issued voter=%s election=%s", voter.pk, election.pk)
        return CredentialIssued(expires_at=expires_at, delivered=result.success)

    @translate_storage_errors
    def verify_credential(
        self,
        *,
        voter: Voter,
        election_id: int,
        claimed_email: str,
        claimed_card_number: str,
        supplied_secret: str,
    ) -> list[ElectionCandidate]:
        now = self.clock()
        election = self._check_preconditions(
            voter=voter,
            election_id=election_id,
            claimed_email=claimed_email,
            claimed_card_number=claimed_card_number,
            now=now,
        )

        # Fail before consuming the credential.
        if Vote.objects.filter(election=election, voter=voter).exists():
            raise AlreadyVotedError("You have already voted in this election.")

        key = credential_cache_key(voter_id=voter.pk, election_id=election.pk)
        with self._lock:
            entry = self.cache.get(key)
            if entry is None:
                self._expiries.pop(key, None)
                raise CredentialNotFoundError("No voting password has been issued, or it was already used.")

            secret, expires_at, attempts = entry
            # Expired entries count as absent whether or not the backend has evicted them yet.
            if expires_at <= now:
                self.cache.delete(key)
                self._expiries.pop(key, None)
                raise CredentialNotFoundError("Your voting password has expired or was never issued; request a new one.")

            if not hmac.compare_digest(str(secret).encode(), str(supplied_secret or "").encode()):
                attempts += 1
                if self.max_attempts and attempts >= self.max_attempts:
                    self.cache.delete(key)
                    self._expiries.pop(key, None)
                    logger.warning(
                        "Voting credential discarded after %d failed attempts voter=%s election=%s",
                        attempts,
                        voter.pk,
                        election.pk,
                    )
                else:
                    self.cache.set(key, (secret, expires_at, attempts), timeout=self._timeout_seconds(expires_at, now))
                raise CredentialMismatchError("Invalid voting password.")

            self.cache.delete(key)
            self._expiries.pop(key, None)

        logger.info("Voting credential consumed voter=%s election=%s", voter.pk, election.pk)
        return list(
            ElectionCandidate.objects.filter(election=election)
            .select_related("candidate")
            .order_by("position", "id")
        )

    def purge_expired(self) -> int:
        now = self.clock()
        purged = 0
        with self._lock:
            for key, expires_at in list(self._expiries.items()):
                if expires_at <= now:
                    self.cache.delete(key)
                    del self._expiries[key]
                    purged += 1
        if purged:
            logger.debug("Purged %d expired voting credentials", purged)
        return purged
