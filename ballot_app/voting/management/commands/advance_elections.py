from __future__ import annotations

from typing import override

from django.core.management.base import BaseCommand
from django.utils import timezone

from voting.apps import credential_broker
from voting.elections_lifecycle import plan_status_sweep
from voting.models import Election
from voting.scheduler import ElectionScheduler


class Command(BaseCommand):
    help = "Advance election statuses and publish results that are due (one sweep)."

    @override
    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would be done without modifying elections.",
        )

    @override
    def handle(self, *args, **options) -> None:
        dry_run: bool = bool(options.get("dry_run"))

        if dry_run:
            now = timezone.now()
            planned = plan_status_sweep(now=now)
            for item in planned:
                self.stdout.write(
                    f"[dry-run] Would move election {item.election_id} ({item.title}) "
                    f"from {item.from_status} to {item.to_status}."
                )
            due = Election.objects.due_for_publication(now=now).count()
            self.stdout.write(
                f"[dry-run] Would advance {len(planned)} election(s) and publish results for {due} election(s)."
            )
            return

        report = ElectionScheduler(credential_broker=credential_broker()).run_once()

        statuses = report.statuses
        publications = report.publications
        failed = (statuses.failed if statuses else 0) + (publications.failed if publications else 0)
        for error in report.errors:
            self.stderr.write(f"Sweep step failed: {error}")

        self.stdout.write(
            f"Activated {statuses.activated if statuses else 0} election(s); "
            f"completed {statuses.completed if statuses else 0} election(s); "
            f"declared results for {publications.declared if publications else 0} election(s); "
            f"failed {failed}."
        )
