from django.core.management.base import BaseCommand, CommandError

from legacy.services import migrate_legacy_devices, summarize_audit_entries


class Command(BaseCommand):
    help = (
        "Move devices without a project onto synthetic legacy projects and composite identifiers. "
        "Run once, inside a maintenance window."
    )

    def handle(self, *args, **options):
        result = migrate_legacy_devices()

        self.stdout.write(f"Started:  {result.started_at.isoformat()}")
        self.stdout.write(f"Finished: {result.finished_at.isoformat()}")

        if not result.succeeded:
            for entry in result.errors:
                self.stdout.write(self.style.ERROR(f"- {entry.legacy_id}: {entry.error}"))
            raise CommandError(
                f"Migration aborted, no device was changed: {result.failure_reason} "
                "Review the audit entries before retrying."
            )

        self.stdout.write(self.style.SUCCESS(f"Migrated {result.migrated} device(s)."))
        summary = ", ".join(f"{status}={total}" for status, total in summarize_audit_entries().items())
        self.stdout.write(f"Audit entries: {summary}")
