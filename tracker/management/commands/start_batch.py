import json

from django.core.management.base import BaseCommand, CommandError

from tracker.exceptions import BatchAlreadyRunning, EmptyRosterError
from tracker.models import BatchJob
from tracker.services.batches import start_batch


class Command(BaseCommand):
    help = "Start a manual batch from a validated roster (JSON list of students)."

    def add_arguments(self, parser):
        parser.add_argument(
            "roster",
            help="Path to a JSON file with a list of {regNo, name, department, year, platformIds}.",
        )

    def handle(self, *args, **options):
        path = options["roster"]
        try:
            with open(path, encoding="utf-8") as handle:
                students = json.load(handle)
        except (OSError, ValueError) as exc:
            raise CommandError(f"Could not read roster {path}: {exc}")

        if isinstance(students, dict):
            students = students.get("students", [])
        if not isinstance(students, list):
            raise CommandError("Roster must be a JSON list of students.")

        try:
            batch = start_batch(students, source=BatchJob.SOURCE_MANUAL)
        except (EmptyRosterError, BatchAlreadyRunning) as exc:
            raise CommandError(str(exc))

        self.stdout.write(
            self.style.SUCCESS(
                f"Batch {batch.job_id} ({batch.week_label}) queued with {batch.total_students} students."
            )
        )
