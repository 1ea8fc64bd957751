"""Periodic background pass over all elections.

One tick runs the status sweep, the result auto-publish sweep and the expiry
purges, each isolated from the others. Ticks are sequential: the next wait only
starts once the current tick has returned.
"""

from __future__ import annotations

import datetime
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from django.conf import settings
from django.db import close_old_connections
from django.utils import timezone

from voting.challenges import ChallengeIssuer
from voting.elections_lifecycle import StatusSweepResult, sweep_election_statuses
from voting.results import PublishSweepResult, publish_due_results
from voting.voting_credentials import VotingCredentialBroker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepReport:
    started_at: datetime.datetime
    statuses: StatusSweepResult | None
    publications: PublishSweepResult | None
    challenges_purged: int
    credentials_purged: int
    errors: tuple[str, ...]

    @property
    def ok(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        statuses = self.statuses
        publications = self.publications
        return (
            f"activated={statuses.activated if statuses else '-'} "
            f"completed={statuses.completed if statuses else '-'} "
            f"status_failures={statuses.failed if statuses else '-'} "
            f"declared={publications.declared if publications else '-'} "
            f"publish_failures={publications.failed if publications else '-'} "
            f"challenges_purged={self.challenges_purged} "
            f"credentials_purged={self.credentials_purged} "
            f"errors={len(self.errors)}"
        )


class ElectionScheduler:
    def __init__(
        self,
        *,
        interval_seconds: float | None = None,
        credential_broker: VotingCredentialBroker | None = None,
        challenge_issuer: ChallengeIssuer | None = None,
        clock: Callable[[], datetime.datetime] = timezone.now,
    ) -> None:
        self.interval_seconds = float(
            settings.ELECTION_SWEEP_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        )
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.credential_broker = credential_broker
        self.challenge_issuer = challenge_issuer or ChallengeIssuer(clock=clock)
        self.clock = clock
        self._tick_lock = threading.Lock()

    def run_once(self) -> SweepReport:
        with self._tick_lock:
            now = self.clock()
            errors: list[str] = []

            statuses: StatusSweepResult | None = None
            try:
                statuses = sweep_election_statuses(now=now)
            except Exception as exc:
                logger.exception("Election status sweep failed")
                errors.append(f"status sweep: {exc}")

            publications: PublishSweepResult | None = None
            try:
                publications = publish_due_results(now=now)
            except Exception as exc:
                logger.exception("Result auto-publish sweep failed")
                errors.append(f"publish sweep: {exc}")

            challenges_purged = 0
            try:
                challenges_purged = self.challenge_issuer.purge_expired(now=now)
            except Exception as exc:
                logger.exception("Challenge code purge failed")
                errors.append(f"challenge purge: {exc}")

            credentials_purged = 0
            if self.credential_broker is not None:
                try:
                    credentials_purged = self.credential_broker.purge_expired()
                except Exception as exc:
                    logger.exception("Voting credential purge failed")
                    errors.append(f"credential purge: {exc}")

            report = SweepReport(
                started_at=now,
                statuses=statuses,
                publications=publications,
                challenges_purged=challenges_purged,
                credentials_purged=credentials_purged,
                errors=tuple(errors),
            )

        logger.info("Election sweep finished: %s", report.summary())
        return report

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info("Election scheduler started interval=%ss", self.interval_seconds)
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Election scheduler tick failed")
            finally:
                close_old_connections()
            stop_event.wait(self.interval_seconds)
        logger.info("Election scheduler stopped")
