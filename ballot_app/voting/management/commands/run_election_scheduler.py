from __future__ import annotations

import logging
import signal
import threading
from typing import override

from django.core.management.base import BaseCommand, CommandError

from voting.apps import credential_broker
from voting.scheduler import ElectionScheduler

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Run the election sweep on a fixed interval until interrupted."

    @override
    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--interval",
            type=float,
            default=None,
            help="Seconds between sweeps (defaults to ELECTION_SWEEP_INTERVAL_SECONDS).",
        )
        parser.add_argument(
            "--once",
            action="store_true",
            help="Run a single sweep and exit.",
        )

    @override
    def handle(self, *args, **options) -> None:
        try:
            scheduler = ElectionScheduler(
                interval_seconds=options.get("interval"),
                credential_broker=credential_broker(),
            )
        except ValueError as exc:
            raise CommandError(str(exc)) from exc

        if options.get("once"):
            report = scheduler.run_once()
            self.stdout.write(f"Sweep finished: {report.summary()}")
            return

        stop_event = threading.Event()

        def _stop(signum, _frame) -> None:
            logger.info("Received signal %s; stopping election scheduler", signum)
            stop_event.set()

        signal.signal(signal.SIGTERM, _stop)
        signal.signal(signal.SIGINT, _stop)

        self.stdout.write(f"Election scheduler running every {scheduler.interval_seconds:g}s.")
        scheduler.run_forever(stop_event)
        self.stdout.write("Election scheduler stopped.")
