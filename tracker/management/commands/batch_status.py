import json

from django.core.management.base import BaseCommand, CommandError

from tracker.models import BatchJob
from tracker.services.reports import batch_status, summarize_batch


class Command(BaseCommand):
    help = "Show progress, platform tallies and errors for a batch."

    def add_arguments(self, parser):
        parser.add_argument("job_id")
        parser.add_argument(
            "--summary",
            action="store_true",
            help="Include the week-over-week comparison summary.",
        )

    def handle(self, *args, **options):
        try:
            batch = BatchJob.objects.get(job_id=options["job_id"])
        except BatchJob.DoesNotExist:
            raise CommandError(f"Batch {options['job_id']} not found.")

        payload = batch_status(batch)
        if options.get("summary"):
            payload["summary"] = summarize_batch(batch)
        self.stdout.write(json.dumps(payload, indent=2, default=str))
