from django.core.management.base import BaseCommand

from mail.content_cache import ContentCache


class Command(BaseCommand):
    help = "Evict idle cached message bodies (same predicate as the hourly sweep task)."

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Only count entries that would be deleted",
        )

    def handle(self, *args, **options):
        cache = ContentCache()
        if options["dry_run"]:
            from mail.models import ContentCacheEntry

            count = ContentCacheEntry.objects.filter(cache.eviction_filter()).count()
            self.stdout.write(self.style.WARNING(f"Would delete {count} cached bod(ies)."))
            return
        deleted = cache.sweep()
        self.stdout.write(self.style.SUCCESS(f"Deleted {deleted} cached bod(ies)."))
