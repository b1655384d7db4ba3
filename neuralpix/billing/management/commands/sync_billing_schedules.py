"""
Management command to synchronize billing schedules into Celery Beat.

Reads BILLING_SCHEDULES (neuralpix.billing.schedules) and creates or updates
the matching django-celery-beat PeriodicTask rows.

Usage:
    python manage.py sync_billing_schedules
    python manage.py sync_billing_schedules --dry-run
    python manage.py sync_billing_schedules --list
"""

from django.core.management.base import BaseCommand
from django_celery_beat.models import CrontabSchedule
from django_celery_beat.models import PeriodicTask

from neuralpix.billing.schedules import BILLING_SCHEDULES


class Command(BaseCommand):
    help = "Sync billing job schedules to Celery Beat"

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would be done without making changes",
        )
        parser.add_argument(
            "--list",
            action="store_true",
            dest="list_jobs",
            help="List the registered billing jobs",
        )

    def handle(self, *args, **options):
        if options["list_jobs"]:
            for job in BILLING_SCHEDULES:
                status = "enabled" if job.enabled else "disabled"
                self.stdout.write(f"{job.name} ({job.id}) [{status}]")
                self.stdout.write(f"  Schedule: {job.schedule_cron}")
                self.stdout.write(f"  Celery:   {job.celery_task}")
            return

        dry_run = options["dry_run"]
        created_count = 0
        updated_count = 0

        for job in BILLING_SCHEDULES:
            if dry_run:
                self.stdout.write(
                    f"Would create/update {job.name}: {job.celery_task} @ {job.schedule_cron}"
                )
                continue

            crontab, _ = CrontabSchedule.objects.get_or_create(**job.crontab_fields())
            periodic_task, created = PeriodicTask.objects.get_or_create(
                name=job.name,
                defaults={
                    "task": job.celery_task,
                    "crontab": crontab,
                    "enabled": job.enabled,
                },
            )
            if created:
                created_count += 1
                self.stdout.write(self.style.SUCCESS(f"Created: {job.name}"))
                continue

            periodic_task.task = job.celery_task
            periodic_task.crontab = crontab
            periodic_task.interval = None
            periodic_task.enabled = job.enabled
            periodic_task.save()
            updated_count += 1
            self.stdout.write(f"Updated: {job.name}")

        if dry_run:
            self.stdout.write(
                self.style.WARNING(f"Would create/update {len(BILLING_SCHEDULES)} periodic tasks")
            )
            return
        self.stdout.write(
            self.style.SUCCESS(f"Done! Created: {created_count}, Updated: {updated_count}")
        )
