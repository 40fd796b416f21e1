from django.core.management.base import BaseCommand

from tracker.services.api_client import check_platform_connectivity


class Command(BaseCommand):
    help = "Fetch a known public profile from each platform to check connectivity."

    def handle(self, *args, **options):
        results = check_platform_connectivity()
        for platform, result in results.items():
            status = result["status"]
            if status == "success":
                self.stdout.write(self.style.SUCCESS(f"{platform}: ok ({result['response_ms']}ms)"))
            elif status == "skipped":
                self.stdout.write(f"{platform}: skipped ({result['reason']})")
            else:
                self.stdout.write(self.style.ERROR(f"{platform}: {result['kind']} - {result['error']}"))
