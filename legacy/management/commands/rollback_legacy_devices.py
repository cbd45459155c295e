from django.core.management.base import BaseCommand, CommandError

from common.exceptions import MigrationFailure
from legacy.services import rollback_legacy_migration, summarize_audit_entries


class Command(BaseCommand):
    help = "Reverse the legacy device migration and delete the synthetic legacy projects."

    def handle(self, *args, **options):
        try:
            result = rollback_legacy_migration()
        except MigrationFailure as exc:
            raise CommandError(f"Rollback aborted: {exc.detail}") from exc

        if not result.restored and not result.projects_deleted:
            self.stdout.write(self.style.WARNING("Nothing to roll back."))
        else:
            self.stdout.write(
                self.style.SUCCESS(
                    f"Restored {result.restored} device(s) and deleted {result.projects_deleted} legacy project(s)."
                )
            )
        summary = ", ".join(f"{status}={total}" for status, total in summarize_audit_entries().items())
        self.stdout.write(f"Audit entries: {summary}")
