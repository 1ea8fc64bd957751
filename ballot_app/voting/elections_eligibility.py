from __future__ import annotations

import datetime

from django.db.models import Case, IntegerField, Q, QuerySet, Value, When
from django.utils import timezone

from voting.models import Election, Voter

_LOCAL_LEVELS = frozenset(
    {
        Election.Level.district,
        Election.Level.municipal,
        Election.Level.village,
        Election.Level.block,
    }
)


def voters_in_jurisdiction(election: Election) -> QuerySet[Voter]:
    """Active voters covered by the election's level and location."""
    qs = Voter.objects.filter(is_active=True)

    level = election.level
    if level == Election.Level.national:
        return qs

    qs = qs.filter(state__iexact=election.state)
    if level == Election.Level.state:
        return qs

    if level in _LOCAL_LEVELS:
        qs = qs.filter(district__iexact=election.district)
        if election.city:
            qs = qs.filter(city__iexact=election.city)
        return qs

    return qs.none()


def _jurisdiction_filter(voter: Voter) -> Q:
    state_match = Q(state__iexact=voter.state)
    district_match = state_match & Q(district__iexact=voter.district)
    city_match = Q(city="") | Q(city__iexact=voter.city)
    return (
        Q(level=Election.Level.national)
        | (Q(level=Election.Level.state) & state_match)
        | (Q(level__in=_LOCAL_LEVELS) & district_match & city_match)
    )


def is_in_jurisdiction(*, voter: Voter, election: Election) -> bool:
    return voters_in_jurisdiction(election).filter(pk=voter.pk).exists()


def available_elections_for(voter: Voter, *, now: datetime.datetime | None = None) -> QuerySet[Election]:
    """Upcoming and active elections the voter can take part in, active first."""
    now = now or timezone.now()
    status_rank = Case(
        When(status=Election.Status.active, then=Value(0)),
        default=Value(1),
        output_field=IntegerField(),
    )
    return (
        Election.objects.visible()
        .filter(status__in=[Election.Status.upcoming, Election.Status.active], voting_end__gte=now)
        .filter(_jurisdiction_filter(voter))
        .annotate(status_rank=status_rank)
        .order_by("status_rank", "voting_start", "id")
    )


def published_elections_for(voter: Voter) -> QuerySet[Election]:
    return (
        Election.objects.visible()
        .filter(status=Election.Status.completed, results_declared=True)
        .filter(_jurisdiction_filter(voter))
        .select_related("winner")
        .order_by("-results_declared_at", "-id")
    )
