from __future__ import annotations

from collections.abc import Mapping

from voting.models import AuditLogEntry


def record_audit(
    *,
    election_id: int,
    event_type: str,
    payload: Mapping[str, object] | None = None,
    actor: str | None = None,
    is_public: bool = True,
) -> AuditLogEntry:
    data: dict[str, object] = dict(payload or {})
    if actor:
        data["actor"] = actor

    return AuditLogEntry.objects.create(
        election_id=election_id,
        event_type=event_type,
        payload=data,
        is_public=is_public,
    )
