from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass

import post_office.mail
from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder

logger = logging.getLogger(__name__)


VOTING_CREDENTIAL = "voting_credential"
RESULTS_DECLARED = "results_declared"
CHALLENGE_CODE = "challenge_code"
VOTE_CONFIRMATION = "vote_confirmation"


def _template_name_for(kind: str) -> str:
    names = {
        VOTING_CREDENTIAL: settings.VOTING_CREDENTIAL_EMAIL_TEMPLATE_NAME,
        RESULTS_DECLARED: settings.RESULTS_DECLARED_EMAIL_TEMPLATE_NAME,
        CHALLENGE_CODE: settings.CHALLENGE_CODE_EMAIL_TEMPLATE_NAME,
        VOTE_CONFIRMATION: settings.VOTE_CONFIRMATION_EMAIL_TEMPLATE_NAME,
    }
    try:
        return names[kind]
    except KeyError as exc:
        raise ValueError(f"unknown notification kind: {kind!r}") from exc


def _post_office_json_context(context: Mapping[str, object]) -> dict[str, object]:
    """Coerce context values to JSON-safe payloads for django-post-office."""
    encoded = json.dumps(dict(context), cls=DjangoJSONEncoder)
    decoded = json.loads(encoded)
    if isinstance(decoded, dict):
        return {str(k): v for k, v in decoded.items()}
    return {}


@dataclass(frozen=True)
class NotificationResult:
    success: bool
    error: str = ""


class Notifier:
    """Delivers voter-facing messages through django-post-office.

    Delivery is best-effort from the engine's point of view: a failure is
    reported in the result and logged, never raised, so a mail outage cannot
    roll back a vote or a result declaration.
    """

    def send(self, *, recipient: str, kind: str, context: Mapping[str, object]) -> NotificationResult:
        recipient = str(recipient or "").strip()
        if not recipient:
            return NotificationResult(success=False, error="no recipient address")

        template_name = _template_name_for(kind)
        try:
            post_office.mail.send(
                recipients=[recipient],
                sender=settings.DEFAULT_FROM_EMAIL,
                template=template_name,
                context=_post_office_json_context(context),
                headers={"Reply-To": settings.ELECTION_COMMITTEE_EMAIL},
                commit=True,
            )
        except Exception as exc:
            logger.warning(
                "Notification delivery failed kind=%s recipient=%s error=%s",
                kind,
                recipient,
                exc,
            )
            return NotificationResult(success=False, error=str(exc))

        logger.debug("Notification queued kind=%s recipient=%s", kind, recipient)
        return NotificationResult(success=True)

    def send_many(
        self,
        *,
        recipients: list[str],
        kind: str,
        context: Mapping[str, object],
    ) -> list[NotificationResult]:
        return [self.send(recipient=r, kind=kind, context=context) for r in recipients]
