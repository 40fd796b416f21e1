from django.core.management.base import BaseCommand

from tracker.services.batches import run_weekly_sweep


class Command(BaseCommand):
    help = "Re-enqueue every active student now, as the weekly schedule does."

    def handle(self, *args, **options):
        batch = run_weekly_sweep()
        if batch is None:
            self.stdout.write(self.style.WARNING("Sweep skipped (no active students or a batch is running)."))
            return
        self.stdout.write(
            self.style.SUCCESS(
                f"Batch {batch.job_id} ({batch.week_label}) queued with {batch.total_students} students."
            )
        )
