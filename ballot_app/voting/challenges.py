from __future__ import annotations

import datetime
import hmac
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass

from django.conf import settings
from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone

from voting import notifications
from voting.errors import translate_storage_errors
from voting.models import ChallengeCode
from voting.notifications import Notifier

logger = logging.getLogger(__name__)

CODE_DIGITS = 6


@dataclass(frozen=True)
class ChallengeResult:
    valid: bool
    reason: str


def _normalize_identity(identity: str) -> str:
    return str(identity or "").strip().lower()


class ChallengeIssuer:
    """Expiring one-time codes bound to an (identity, purpose) pair."""

    def __init__(
        self,
        *,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime.datetime] = timezone.now,
        ttl: datetime.timedelta | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self.notifier = notifier or Notifier()
        self.clock = clock
        self.ttl = ttl or datetime.timedelta(seconds=settings.CHALLENGE_CODE_TTL_SECONDS)
        self.max_attempts = settings.CHALLENGE_CODE_MAX_ATTEMPTS if max_attempts is None else max_attempts

    @translate_storage_errors
    def issue(self, *, identity: str, purpose: str) -> str:
        identity = _normalize_identity(identity)
        now = self.clock()
        code = f"{secrets.randbelow(10**CODE_DIGITS):0{CODE_DIGITS}d}"

        with transaction.atomic():
            self.invalidate_outstanding(identity=identity, purpose=purpose)
            ChallengeCode.objects.create(
                identity=identity,
                purpose=purpose,
                code=code,
                expires_at=now + self.ttl,
            )

        self.notifier.send(
            recipient=identity,
            kind=notifications.CHALLENGE_CODE,
            context={
                "code": code,
                "purpose": purpose,
                "expires_in_minutes": int(self.ttl.total_seconds() // 60),
            },
        )
        logger.info("Challenge code issued purpose=%s identity=%s", purpose, identity)
        return code

    @translate_storage_errors
    @transaction.atomic
    def verify(self, *, identity: str, code: str, purpose: str) -> ChallengeResult:
        identity = _normalize_identity(identity)
        now = self.clock()

        challenge = (
            ChallengeCode.objects.select_for_update()
            .filter(identity=identity, purpose=purpose, is_used=False, expires_at__gt=now)
            .order_by("-created_at", "-id")
            .first()
        )
        if challenge is None:
            return ChallengeResult(valid=False, reason="not_found")

        if challenge.attempts >= self.max_attempts:
            return ChallengeResult(valid=False, reason="attempts_exceeded")

        if not hmac.compare_digest(challenge.code.encode(), str(code or "").strip().encode()):
            ChallengeCode.objects.filter(pk=challenge.pk).update(attempts=F("attempts") + 1, last_attempt_at=now)
            logger.info(
                "Challenge code mismatch purpose=%s identity=%s attempt=%d",
                purpose,
                identity,
                challenge.attempts + 1,
            )
            return ChallengeResult(valid=False, reason="mismatch")

        consumed = ChallengeCode.objects.filter(pk=challenge.pk, is_used=False).update(
            is_used=True,
            last_attempt_at=now,
        )
        if consumed != 1:
            return ChallengeResult(valid=False, reason="not_found")
        return ChallengeResult(valid=True, reason="ok")

    def invalidate_outstanding(self, *, identity: str, purpose: str) -> int:
        return ChallengeCode.objects.filter(
            identity=_normalize_identity(identity),
            purpose=purpose,
            is_used=False,
        ).update(is_used=True)

    def purge_expired(self, *, now: datetime.datetime | None = None) -> int:
        now = now or self.clock()
        deleted, _ = ChallengeCode.objects.filter(Q(expires_at__lte=now) | Q(is_used=True)).delete()
        return deleted
