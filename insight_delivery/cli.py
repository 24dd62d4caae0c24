"""
CLI commands for operating the insight delivery service.
"""

import argparse
from datetime import time
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

load_dotenv()

from insight_delivery.database.connection import Database
from insight_delivery.database.models import (
    Channel,
    DeliveryJob,
    Frequency,
    JobStatus,
    NotificationPreference,
    TrackedProduct,
    TrackingStatus,
    User,
)
from insight_delivery.database.repository import (
    AnalysisRepository,
    ChannelAttemptRepository,
    DeliveryJobRepository,
    JobStateError,
    PreferenceRepository,
    TrackingRepository,
    UserRepository,
)
from insight_delivery.healthcheck import run_healthcheck


def add_user(
    db: Database,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    push_token: Optional[str] = None,
) -> User:
    """Add a new user."""
    repo = UserRepository(db)
    return repo.create(User(email=email, phone=phone, push_token=push_token))


def set_preferences(
    db: Database,
    user_id: int,
    channels: list[str],
    delivery_time: str,
    timezone: str,
    frequency: str = "daily",
    weekly_day: int = 0,
) -> NotificationPreference:
    """Validate and store a user's notification preference."""
    try:
        ZoneInfo(timezone)
    except ZoneInfoNotFoundError:
        raise ValueError(f"Unknown timezone: {timezone}")
    if not 0 <= weekly_day <= 6:
        raise ValueError("weekly_day must be between 0 (Monday) and 6 (Sunday)")

    preference = NotificationPreference(
        user_id=user_id,
        channels=[Channel(c.strip().lower()) for c in channels if c.strip()],
        delivery_time=time.fromisoformat(delivery_time),
        timezone=timezone,
        frequency=Frequency(frequency),
        weekly_day=weekly_day,
    )
    return PreferenceRepository(db).upsert(preference)


def requeue_job(db: Database, job_id: int) -> DeliveryJob:
    """Send a failed job back to the pending queue."""
    repo = DeliveryJobRepository(db)
    repo.requeue(job_id)
    return repo.get_by_id(job_id)


def _print_job(job: DeliveryJob) -> None:
    print(
        f"ID: {job.id}, Tracked: {job.tracked_product_id}, User: {job.user_id}, "
        f"Due: {job.due_at.isoformat()}, Status: {job.status.value}, "
        f"Attempts: {job.attempt_count}"
    )


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Insight Delivery CLI")
    parser.add_argument("--db", default="data/insights.db", help="Database path")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # User commands
    user_parser = subparsers.add_parser("user", help="User management")
    user_subparsers = user_parser.add_subparsers(dest="action")

    add_user_parser = user_subparsers.add_parser("add", help="Add user")
    add_user_parser.add_argument("--email", help="User email")
    add_user_parser.add_argument("--phone", help="WhatsApp phone number (E.164)")
    add_user_parser.add_argument("--push-token", help="Device push token")

    user_subparsers.add_parser("list", help="List users")

    # Tracking commands
    tracking_parser = subparsers.add_parser("tracking", help="Tracked products")
    tracking_subparsers = tracking_parser.add_subparsers(dest="action")

    add_tracking_parser = tracking_subparsers.add_parser("add", help="Track a product")
    add_tracking_parser.add_argument("--user", type=int, required=True, help="User ID")
    add_tracking_parser.add_argument("--product", required=True, help="Product ID")

    for action in ("pause", "resume", "archive"):
        status_parser = tracking_subparsers.add_parser(action, help=f"{action.title()} tracking")
        status_parser.add_argument("--id", type=int, required=True, help="Tracked product ID")

    list_tracking_parser = tracking_subparsers.add_parser("list", help="List tracking")
    list_tracking_parser.add_argument("--user", type=int, required=True, help="User ID")

    # Preference commands
    prefs_parser = subparsers.add_parser("prefs", help="Notification preferences")
    prefs_subparsers = prefs_parser.add_subparsers(dest="action")

    set_prefs_parser = prefs_subparsers.add_parser("set", help="Set preferences")
    set_prefs_parser.add_argument("--user", type=int, required=True, help="User ID")
    set_prefs_parser.add_argument(
        "--channels", required=True, help="Comma-separated: push,whatsapp,email"
    )
    set_prefs_parser.add_argument("--time", default="09:00", help="Local delivery time HH:MM")
    set_prefs_parser.add_argument("--timezone", default="UTC", help="IANA timezone")
    set_prefs_parser.add_argument(
        "--frequency", default="daily", choices=[f.value for f in Frequency]
    )
    set_prefs_parser.add_argument(
        "--weekly-day", type=int, default=0, help="0=Monday .. 6=Sunday"
    )

    show_prefs_parser = prefs_subparsers.add_parser("show", help="Show preferences")
    show_prefs_parser.add_argument("--user", type=int, required=True, help="User ID")

    # Analysis commands
    analysis_parser = subparsers.add_parser("analysis", help="Analysis payloads")
    analysis_subparsers = analysis_parser.add_subparsers(dest="action")

    record_parser = analysis_subparsers.add_parser("record", help="Record a payload ref")
    record_parser.add_argument("--product", required=True, help="Product ID")
    record_parser.add_argument("--ref", required=True, help="Payload ref")

    # Job commands
    jobs_parser = subparsers.add_parser("jobs", help="Delivery jobs")
    jobs_subparsers = jobs_parser.add_subparsers(dest="action")

    list_jobs_parser = jobs_subparsers.add_parser("list", help="List jobs")
    list_jobs_parser.add_argument("--status", choices=[s.value for s in JobStatus])
    list_jobs_parser.add_argument("--limit", type=int, default=50)

    for action in ("show", "requeue", "abandon"):
        job_parser = jobs_subparsers.add_parser(action, help=f"{action.title()} a job")
        job_parser.add_argument("--id", type=int, required=True, help="Job ID")

    # Health
    health_parser = subparsers.add_parser("health", help="Delivery health report")
    health_parser.add_argument("--hours", type=int, default=24, help="Window in hours")

    # DB commands
    db_parser = subparsers.add_parser("db", help="Database management")
    db_subparsers = db_parser.add_subparsers(dest="action")
    db_subparsers.add_parser("migrate", help="Create or update schema")

    args = parser.parse_args()

    # Initialize database
    db = Database(args.db)
    db.initialize()

    # Handle commands
    try:
        if args.command == "user":
            if args.action == "add":
                user = add_user(
                    db, email=args.email, phone=args.phone, push_token=args.push_token
                )
                print(f"Created user with ID: {user.id}")
            elif args.action == "list":
                for user in UserRepository(db).list_all():
                    print(f"ID: {user.id}, Email: {user.email}, Phone: {user.phone}")

        elif args.command == "tracking":
            repo = TrackingRepository(db)
            if args.action == "add":
                tracked = repo.create(TrackedProduct(user_id=args.user, product_id=args.product))
                print(f"Tracking product {tracked.product_id} with ID: {tracked.id}")
            elif args.action in ("pause", "resume", "archive"):
                status = {
                    "pause": TrackingStatus.PAUSED,
                    "resume": TrackingStatus.ACTIVE,
                    "archive": TrackingStatus.ARCHIVED,
                }[args.action]
                repo.set_status(args.id, status)
                print(f"Tracked product {args.id} is now {status.value}")
            elif args.action == "list":
                for tracked in repo.list_for_user(args.user):
                    print(f"ID: {tracked.id}, Product: {tracked.product_id}, Status: {tracked.status.value}")

        elif args.command == "prefs":
            if args.action == "set":
                preference = set_preferences(
                    db,
                    user_id=args.user,
                    channels=args.channels.split(","),
                    delivery_time=args.time,
                    timezone=args.timezone,
                    frequency=args.frequency,
                    weekly_day=args.weekly_day,
                )
                print(f"Saved preferences for user {preference.user_id}")
            elif args.action == "show":
                preference = PreferenceRepository(db).get_for_user(args.user)
                if preference is None:
                    print(f"No preferences for user {args.user}")
                else:
                    channels = ",".join(c.value for c in preference.channels)
                    print(
                        f"Channels: {channels}, Time: {preference.delivery_time.strftime('%H:%M')} "
                        f"{preference.timezone}, Frequency: {preference.frequency.value}"
                    )

        elif args.command == "analysis":
            if args.action == "record":
                AnalysisRepository(db).record(args.product, args.ref)
                print(f"Recorded payload {args.ref} for product {args.product}")

        elif args.command == "jobs":
            repo = DeliveryJobRepository(db)
            if args.action == "list":
                status = JobStatus(args.status) if args.status else None
                for job in repo.list_by_status(status, limit=args.limit):
                    _print_job(job)
            elif args.action == "show":
                job = repo.get_by_id(args.id)
                if job is None:
                    print(f"Job {args.id} not found")
                else:
                    _print_job(job)
                    for attempt in ChannelAttemptRepository(db).list_for_job(job.id):
                        print(
                            f"  {attempt.attempted_at.isoformat()} {attempt.channel.value} "
                            f"#{attempt.attempt_number}: {attempt.outcome.value} "
                            f"({attempt.latency_ms:.0f}ms) {attempt.error or ''}"
                        )
            elif args.action == "requeue":
                job = requeue_job(db, args.id)
                print(f"Job {job.id} re-queued")
            elif args.action == "abandon":
                repo.abandon(args.id)
                print(f"Job {args.id} abandoned")

        elif args.command == "health":
            run_healthcheck(db, window_hours=args.hours)

        elif args.command == "db":
            if args.action == "migrate":
                db.initialize()
                print("Schema up to date")

    except (ValueError, JobStateError) as e:
        parser.exit(1, f"Error: {e}\n")
    finally:
        db.close()


if __name__ == "__main__":
    main()
