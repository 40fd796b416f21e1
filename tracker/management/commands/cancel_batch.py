from django.core.management.base import BaseCommand, CommandError

from tracker.models import BatchJob
from tracker.services.batches import cancel_batch


class Command(BaseCommand):
    help = "Cancel a pending or processing batch."

    def add_arguments(self, parser):
        parser.add_argument("job_id")
        parser.add_argument("--reason", default="Cancelled by operator")

    def handle(self, *args, **options):
        job_id = options["job_id"]
        if not BatchJob.objects.filter(job_id=job_id).exists():
            raise CommandError(f"Batch {job_id} not found.")

        if cancel_batch(job_id, reason=options["reason"]):
            self.stdout.write(self.style.SUCCESS(f"Batch {job_id} cancelled."))
        else:
            self.stdout.write(self.style.WARNING(f"Batch {job_id} already finished; nothing to cancel."))
