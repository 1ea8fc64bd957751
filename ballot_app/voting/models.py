from __future__ import annotations

import datetime
from dataclasses import dataclass
from decimal import Decimal

from django.conf import settings
from django.core.validators import MaxValueValidator, RegexValidator
from django.db import models
from django.db.models import F, Q
from django.utils import timezone


CARD_NUMBER_PATTERN = r"^[A-Z]{3}\d{7}$"


class Voter(models.Model):
    """A registered voter's profile.

    Registration and password management live elsewhere; the engine only needs
    the identity attributes a voter must re-confirm and their jurisdiction.
    """

    username = models.CharField(max_length=150, unique=True)
    full_name = models.CharField(max_length=255, blank=True, default="")
    email = models.EmailField(unique=True)
    card_number = models.CharField(
        max_length=10,
        unique=True,
        validators=[RegexValidator(CARD_NUMBER_PATTERN, "Election card number must be 3 uppercase letters followed by 7 digits.")],
    )
    state = models.CharField(max_length=50, blank=True, default="")
    district = models.CharField(max_length=50, blank=True, default="")
    city = models.CharField(max_length=100, blank=True, default="")
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("username", "id")
        indexes = [
            models.Index(fields=["state", "district"], name="voter_state_district"),
        ]

    def __str__(self) -> str:
        return self.username


class Candidate(models.Model):
    name = models.CharField(max_length=255)
    party_name = models.CharField(max_length=100, blank=True, default="")
    party_symbol = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("name", "id")

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class ElectionResults:
    winner_candidate_id: int | None
    winner_votes: int
    winner_percentage: Decimal
    winner_is_tie: bool
    is_declared: bool
    declared_at: datetime.datetime | None

    def as_dict(self) -> dict[str, object]:
        return {
            "winner_candidate_id": self.winner_candidate_id,
            "winner_votes": self.winner_votes,
            "winner_percentage": str(self.winner_percentage),
            "winner_is_tie": self.winner_is_tie,
            "is_declared": self.is_declared,
            "declared_at": self.declared_at.isoformat() if self.declared_at else None,
        }


class ElectionQuerySet(models.QuerySet):
    def visible(self) -> ElectionQuerySet:
        """Exclude archived elections from listings."""
        return self.filter(archived=False)

    def due_for_activation(self, *, now: datetime.datetime) -> ElectionQuerySet:
        return self.filter(status__in=["draft", "upcoming"], archived=False, voting_start__lte=now)

    def due_for_completion(self, *, now: datetime.datetime) -> ElectionQuerySet:
        return self.filter(status="active", voting_end__lt=now)

    def due_for_publication(self, *, now: datetime.datetime) -> ElectionQuerySet:
        return self.filter(
            status="completed",
            archived=False,
            results_declared=False,
            result_declaration_at__lte=now,
            voting_end__lt=now,
        )


class Election(models.Model):
    class Status(models.TextChoices):
        draft = "draft", "Draft"
        upcoming = "upcoming", "Upcoming"
        active = "active", "Active"
        completed = "completed", "Completed"
        cancelled = "cancelled", "Cancelled"
        postponed = "postponed", "Postponed"

    class Level(models.TextChoices):
        national = "national", "National"
        state = "state", "State"
        district = "district", "District"
        municipal = "municipal", "Municipal"
        village = "village", "Village"
        block = "block", "Block"

    title = models.CharField(max_length=200)
    description = models.TextField(blank=True, default="", max_length=1000)
    level = models.CharField(max_length=16, choices=Level.choices, default=Level.national)
    state = models.CharField(max_length=50, blank=True, default="")
    district = models.CharField(max_length=50, blank=True, default="")
    city = models.CharField(max_length=100, blank=True, default="")

    voting_start = models.DateTimeField()
    voting_end = models.DateTimeField()
    result_declaration_at = models.DateTimeField()

    status = models.CharField(max_length=16, choices=Status.choices, default=Status.draft, db_index=True)
    archived = models.BooleanField(default=False)

    # "Secret ballot" is a display policy, not a cryptographic guarantee.
    is_secret_ballot = models.BooleanField(default=True)

    total_voters = models.PositiveIntegerField(default=0)
    total_votes_cast = models.PositiveIntegerField(default=0)
    turnout_percentage = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal("0.00"))

    results_declared = models.BooleanField(default=False)
    results_declared_at = models.DateTimeField(blank=True, null=True)
    winner = models.ForeignKey(
        "Candidate",
        on_delete=models.PROTECT,
        blank=True,
        null=True,
        related_name="won_elections",
    )
    winner_votes = models.PositiveIntegerField(default=0)
    winner_percentage = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal("0.00"))
    winner_is_tie = models.BooleanField(default=False)

    created_by = models.CharField(max_length=150, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = ElectionQuerySet.as_manager()

    class Meta:
        ordering = ("-voting_start", "id")
        constraints = [
            models.CheckConstraint(
                condition=Q(voting_start__lt=F("voting_end")),
                name="chk_election_start_before_end",
            ),
            models.CheckConstraint(
                condition=Q(result_declaration_at__gte=F("voting_end")),
                name="chk_election_declaration_after_end",
            ),
        ]
        indexes = [
            models.Index(fields=["status", "voting_start"], name="election_status_start"),
            models.Index(fields=["status", "voting_end"], name="election_status_end"),
        ]

    def __str__(self) -> str:
        return self.title

    def is_voting_open(self, *, now: datetime.datetime | None = None) -> bool:
        now = now or timezone.now()
        return self.status == self.Status.active and self.voting_start <= now <= self.voting_end

    @property
    def results(self) -> ElectionResults:
        return ElectionResults(
            winner_candidate_id=self.winner_id,
            winner_votes=int(self.winner_votes or 0),
            winner_percentage=self.winner_percentage or Decimal("0.00"),
            winner_is_tie=bool(self.winner_is_tie),
            is_declared=bool(self.results_declared),
            declared_at=self.results_declared_at,
        )


class ElectionCandidate(models.Model):
    """One entry of an election's ordered candidate list, with its tally."""

    election = models.ForeignKey(Election, on_delete=models.CASCADE, related_name="candidate_entries")
    candidate = models.ForeignKey(Candidate, on_delete=models.PROTECT, related_name="election_entries")
    position = models.PositiveSmallIntegerField(default=0)
    vote_count = models.PositiveIntegerField(default=0)
    vote_percentage = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal("0.00"))

    class Meta:
        ordering = ("position", "id")
        constraints = [
            models.UniqueConstraint(
                fields=["election", "candidate"],
                name="uniq_electioncandidate_election_candidate",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.election_id}:{self.candidate_id}"


class Vote(models.Model):
    election = models.ForeignKey(Election, on_delete=models.PROTECT, related_name="votes")
    voter = models.ForeignKey(Voter, on_delete=models.PROTECT, related_name="votes")
    candidate = models.ForeignKey(Candidate, on_delete=models.PROTECT, related_name="votes")
    cast_at = models.DateTimeField(default=timezone.now)

    # Post-hoc views of one's own vote are capped; after that the vote is locked.
    view_count = models.PositiveSmallIntegerField(
        default=0,
        validators=[MaxValueValidator(settings.VOTE_VIEW_LIMIT)],
    )
    last_viewed_at = models.DateTimeField(blank=True, null=True)
    ip_address = models.GenericIPAddressField(blank=True, null=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["election", "voter"],
                name="uniq_vote_election_voter",
            ),
            models.CheckConstraint(
                condition=Q(view_count__lte=2),
                name="chk_vote_view_count_max",
            ),
        ]
        indexes = [
            models.Index(fields=["election", "candidate"], name="vote_el_cand"),
        ]

    def __str__(self) -> str:
        return f"vote:{self.election_id}:{self.voter_id}"


class ChallengeCode(models.Model):
    class Purpose(models.TextChoices):
        registration = "registration", "Registration"
        login = "login", "Login"
        password_reset = "password_reset", "Password reset"

    identity = models.CharField(max_length=254)
    purpose = models.CharField(max_length=32, choices=Purpose.choices)
    code = models.CharField(max_length=6)
    attempts = models.PositiveSmallIntegerField(default=0)
    is_used = models.BooleanField(default=False)
    expires_at = models.DateTimeField(db_index=True)
    last_attempt_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-created_at", "-id")
        indexes = [
            models.Index(fields=["identity", "purpose"], name="challenge_identity_purpose"),
        ]

    def __str__(self) -> str:
        return f"{self.purpose}:{self.identity}"


class AuditLogEntry(models.Model):
    election = models.ForeignKey(Election, on_delete=models.CASCADE, related_name="audit_log")
    timestamp = models.DateTimeField(auto_now_add=True)
    event_type = models.CharField(max_length=64)
    payload = models.JSONField(blank=True, default=dict)
    is_public = models.BooleanField(default=False)

    class Meta:
        verbose_name_plural = "Audit log entries"
        ordering = ("timestamp", "id")
        indexes = [
            models.Index(fields=["election", "timestamp"], name="audit_el_ts"),
        ]

    def __str__(self) -> str:
        return f"{self.election_id}:{self.event_type}"
