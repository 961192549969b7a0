"""CLI interface for local testing and administration."""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from . import db
from .config import load_config
from .events import Channel, EventType, Frequency, ProactiveLevel, TaskKind, TaskStatus
from .feedback import FeedbackError, IdentitySignalSink, record_feedback
from .generator import StaticGenerator
from .logging_setup import setup_logging
from .quiet_hours import parse_time_of_day
from .schedule import ScheduleError
from .scheduler import build_consumer
from .tasks import create_task


def _config(args):
    return load_config(Path(args.config) if args.config else None)


def cmd_init(args):
    """Initialize the database."""
    config = _config(args)
    db.init_db(config.db_path)
    print(f"Database initialized at {config.db_path}")


def cmd_enqueue(args):
    """Insert a notification queue item."""
    config = _config(args)
    try:
        context = json.loads(args.context) if args.context else {}
    except json.JSONDecodeError as e:
        print(f"Error: --context is not valid JSON: {e}", file=sys.stderr)
        sys.exit(1)

    with db.get_db(config.db_path) as conn:
        item_id = db.enqueue_notification(
            conn,
            args.user,
            args.event_type,
            priority=args.priority,
            context=context,
            batch_id=args.batch,
            expiry_hours=config.engine.default_expiry_hours,
        )
    print(f"Enqueued item {item_id}")


def cmd_sweep(args):
    """Run one queue sweep now."""
    config = _config(args)
    generator = StaticGenerator() if args.dry_run else None
    consumer = build_consumer(config, generator)

    async def _run():
        with db.get_db(config.db_path) as conn:
            return await consumer.run_sweep(conn)

    stats = asyncio.run(_run())
    print(
        f"fetched={stats.fetched} sent={stats.sent} skipped={stats.skipped} "
        f"deferred={stats.deferred} failed={stats.failed} errors={stats.errors}"
    )


def cmd_queue(args):
    """List queue items."""
    config = _config(args)
    with db.get_db(config.db_path) as conn:
        items = db.list_queue_items(conn, user_id=args.user, include_processed=args.all, limit=args.limit)

    if not items:
        print("No queue items found")
        return

    for item in items:
        state = item.outcome or ("claimed" if item.processing_started_at else "pending")
        print(f"[{item.id}] p{item.priority:<2} {state:18} {item.user_id:15} {item.event_type:20} {item.scheduled_for}")


def _print_prefs(prefs: db.UserPreferences, saved: bool) -> None:
    print(f"User: {prefs.user_id}{'' if saved else ' (defaults, nothing saved)'}")
    print(f"Proactive: {'enabled' if prefs.proactive_enabled else 'disabled'} ({ProactiveLevel(prefs.proactive_level).value})")
    for channel in (Channel.EMAIL, Channel.SMS, Channel.WHATSAPP, Channel.TELEGRAM):
        flag = "on " if prefs.channel_enabled(channel) else "off"
        print(f"  {channel.value:9} {flag} {prefs.destination(channel) or '-'}")
    if prefs.quiet_hours_enabled:
        print(f"Quiet hours: {prefs.quiet_hours_start}-{prefs.quiet_hours_end} {prefs.quiet_hours_timezone}")
    else:
        print("Quiet hours: off")
    opted_out = sorted(k for k, v in prefs.notification_types.items() if v is False)
    if opted_out:
        print(f"Opted out: {', '.join(opted_out)}")


def cmd_prefs_show(args):
    config = _config(args)
    with db.get_db(config.db_path) as conn:
        prefs = db.get_preferences(conn, args.user)
    _print_prefs(prefs or db.default_preferences(args.user), saved=prefs is not None)


def cmd_prefs_set(args):
    config = _config(args)
    with db.get_db(config.db_path) as conn:
        prefs = db.get_preferences(conn, args.user) or db.default_preferences(args.user)

        if args.proactive:
            prefs.proactive_enabled = args.proactive == "on"
        if args.level:
            prefs.proactive_level = ProactiveLevel(args.level)
        for channel in args.enable or []:
            setattr(prefs, f"{channel}_enabled", True)
        for channel in args.disable or []:
            setattr(prefs, f"{channel}_enabled", False)
        if args.email_address is not None:
            prefs.email_address = args.email_address or None
        if args.phone is not None:
            prefs.sms_phone_number = args.phone or None
        if args.whatsapp_number is not None:
            prefs.whatsapp_number = args.whatsapp_number or None
        if args.telegram_chat_id is not None:
            prefs.telegram_chat_id = args.telegram_chat_id or None
        if args.quiet:
            if args.quiet == "off":
                prefs.quiet_hours_enabled = False
            else:
                start, _, end = args.quiet.partition("-")
                try:
                    parse_time_of_day(start)
                    parse_time_of_day(end)
                except ValueError:
                    print(f"Error: --quiet expects HH:MM-HH:MM or off, got {args.quiet!r}", file=sys.stderr)
                    sys.exit(1)
                prefs.quiet_hours_enabled = True
                prefs.quiet_hours_start, prefs.quiet_hours_end = start.strip(), end.strip()
        if args.quiet_tz:
            prefs.quiet_hours_timezone = args.quiet_tz
        for event_type in args.opt_out or []:
            prefs.notification_types[event_type] = False
        for event_type in args.opt_in or []:
            prefs.notification_types.pop(event_type, None)

        db.upsert_preferences(conn, prefs)
    _print_prefs(prefs, saved=True)


def cmd_task_create(args):
    config = _config(args)
    try:
        with db.get_db(config.db_path) as conn:
            task_id = create_task(
                conn,
                args.user,
                args.title,
                args.frequency,
                args.hour,
                args.minute,
                day=args.day,
                timezone_name=args.timezone,
                task_kind=args.kind,
                prompt=args.prompt or "",
                max_runs=args.max_runs,
                priority=args.priority,
            )
            task = db.get_scheduled_task(conn, task_id)
    except ScheduleError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Created task {task_id}, next run {task.next_run_at} UTC")


def cmd_task_list(args):
    config = _config(args)
    with db.get_db(config.db_path) as conn:
        tasks = db.list_scheduled_tasks(conn, user_id=args.user)

    if not tasks:
        print("No scheduled tasks")
        return

    for t in tasks:
        runs = f"{t.run_count}/{t.max_runs}" if t.max_runs else str(t.run_count)
        print(
            f"[{t.id}] {t.status:9} {t.user_id:15} {t.frequency:8} "
            f"{t.schedule_hour:02d}:{t.schedule_minute:02d} {t.timezone:20} "
            f"runs={runs:6} next={t.next_run_at or '-'}  {t.title}"
        )


def cmd_task_delete(args):
    config = _config(args)
    with db.get_db(config.db_path) as conn:
        deleted = db.delete_scheduled_task(conn, args.task_id)
    if not deleted:
        print(f"Task {args.task_id} not found", file=sys.stderr)
        sys.exit(1)
    print(f"Deleted task {args.task_id}")


def cmd_task_status(args):
    config = _config(args)
    status = TaskStatus.PAUSED if args.task_action == "pause" else TaskStatus.ACTIVE
    with db.get_db(config.db_path) as conn:
        if not db.get_scheduled_task(conn, args.task_id):
            print(f"Task {args.task_id} not found", file=sys.stderr)
            sys.exit(1)
        db.set_task_status(conn, args.task_id, status.value)
    print(f"Task {args.task_id} {status.value}")


def cmd_feedback(args):
    """Record feedback on a notification or batch."""
    config = _config(args)
    helpful = {"yes": True, "no": False, None: None}[args.helpful]
    sink = IdentitySignalSink(config.identity)
    try:
        with db.get_db(config.db_path) as conn:
            result = record_feedback(
                conn, config, args.user,
                item_id=args.item, batch_id=args.batch,
                was_helpful=helpful, rating=args.rating, comment=args.comment,
                was_dismissed=True if args.dismissed else None,
                identity_sink=sink,
            )
    except FeedbackError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    sink.flush()

    print(f"Updated {len(result.updated_items)} item(s)")
    if result.downgraded_to:
        print(f"Proactive level lowered: {result.downgraded_from.value} -> {result.downgraded_to.value}")


def cmd_feed(args):
    """Show a user's in-app notifications."""
    config = _config(args)
    with db.get_db(config.db_path) as conn:
        notifications = db.get_in_app_notifications(conn, args.user, unread_only=args.unread, limit=args.limit)
        if args.mark_read:
            db.mark_in_app_read(conn, args.user)

    if not notifications:
        print("No notifications")
        return
    for n in notifications:
        marker = " " if n.is_read else "*"
        preview = n.message.replace("\n", " ")
        preview = preview[:70] + "..." if len(preview) > 70 else preview
        print(f"{marker}[{n.id}] {n.created_at} {n.type:8} {n.title}: {preview}")


def cmd_attempts(args):
    """Show delivery attempts."""
    config = _config(args)
    with db.get_db(config.db_path) as conn:
        attempts = db.get_delivery_attempts(conn, queue_item_id=args.item, user_id=args.user, limit=args.limit)

    if not attempts:
        print("No delivery attempts")
        return
    for a in attempts:
        error = f"  ({a.error})" if a.error else ""
        print(f"[{a.id}] item={a.queue_item_id} {a.channel:9} {a.status:8} {a.destination or '-'}{error}")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="Herald notification engine CLI")
    parser.add_argument("-c", "--config", help="Path to config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # init
    subparsers.add_parser("init", help="Initialize database")

    # enqueue
    enqueue_parser = subparsers.add_parser("enqueue", help="Insert a notification queue item")
    enqueue_parser.add_argument("-u", "--user", required=True, help="User ID")
    enqueue_parser.add_argument("-e", "--event-type", required=True, choices=[e.value for e in EventType])
    enqueue_parser.add_argument("-p", "--priority", type=int, default=5, help="Priority 0-10 (>= 8 is urgent)")
    enqueue_parser.add_argument("--context", help="Context payload (JSON object)")
    enqueue_parser.add_argument("--batch", help="Batch ID")

    # sweep
    sweep_parser = subparsers.add_parser("sweep", help="Run one queue sweep")
    sweep_parser.add_argument("--dry-run", action="store_true", help="Use fixed text instead of the generator")

    # queue
    queue_parser = subparsers.add_parser("queue", help="List queue items")
    queue_parser.add_argument("-u", "--user", help="Filter by user")
    queue_parser.add_argument("-a", "--all", action="store_true", help="Include processed items")
    queue_parser.add_argument("-n", "--limit", type=int, default=20, help="Max results")

    # prefs (with subparsers)
    prefs_parser = subparsers.add_parser("prefs", help="User notification preferences")
    prefs_subparsers = prefs_parser.add_subparsers(dest="prefs_action", required=True)

    prefs_show_parser = prefs_subparsers.add_parser("show", help="Show preferences")
    prefs_show_parser.add_argument("-u", "--user", required=True, help="User ID")

    channel_names = [c.value for c in (Channel.EMAIL, Channel.SMS, Channel.WHATSAPP, Channel.TELEGRAM)]
    prefs_set_parser = prefs_subparsers.add_parser("set", help="Update preferences")
    prefs_set_parser.add_argument("-u", "--user", required=True, help="User ID")
    prefs_set_parser.add_argument("--proactive", choices=["on", "off"], help="Enable or disable proactive notifications")
    prefs_set_parser.add_argument("--level", choices=[lvl.value for lvl in ProactiveLevel])
    prefs_set_parser.add_argument("--enable", action="append", choices=channel_names, help="Enable a channel")
    prefs_set_parser.add_argument("--disable", action="append", choices=channel_names, help="Disable a channel")
    prefs_set_parser.add_argument("--email-address")
    prefs_set_parser.add_argument("--phone", help="SMS phone number")
    prefs_set_parser.add_argument("--whatsapp-number")
    prefs_set_parser.add_argument("--telegram-chat-id")
    prefs_set_parser.add_argument("--quiet", help='Quiet hours "HH:MM-HH:MM", or "off"')
    prefs_set_parser.add_argument("--quiet-tz", help="Quiet hours timezone")
    prefs_set_parser.add_argument("--opt-out", action="append", choices=[e.value for e in EventType])
    prefs_set_parser.add_argument("--opt-in", action="append", choices=[e.value for e in EventType])

    # task (with subparsers)
    task_parser = subparsers.add_parser("task", help="Scheduled task definitions")
    task_subparsers = task_parser.add_subparsers(dest="task_action", required=True)

    task_create_parser = task_subparsers.add_parser("create", help="Create a scheduled task")
    task_create_parser.add_argument("-u", "--user", required=True, help="User ID")
    task_create_parser.add_argument("-t", "--title", required=True)
    task_create_parser.add_argument("-f", "--frequency", required=True, choices=[f.value for f in Frequency])
    task_create_parser.add_argument("--hour", type=int, required=True)
    task_create_parser.add_argument("--minute", type=int, default=0)
    task_create_parser.add_argument("--day", type=int, help="Weekday 0-6 (0 = Sunday) or day of month 1-31")
    task_create_parser.add_argument("--timezone", default="UTC")
    task_create_parser.add_argument("--kind", default="custom", choices=[k.value for k in TaskKind])
    task_create_parser.add_argument("--prompt")
    task_create_parser.add_argument("--max-runs", type=int)
    task_create_parser.add_argument("-p", "--priority", type=int, default=5)

    task_list_parser = task_subparsers.add_parser("list", help="List scheduled tasks")
    task_list_parser.add_argument("-u", "--user", help="Filter by user")

    for action, help_text in (("delete", "Delete a task"), ("pause", "Pause a task"), ("resume", "Resume a task")):
        action_parser = task_subparsers.add_parser(action, help=help_text)
        action_parser.add_argument("task_id", type=int, help="Task ID")

    # feedback
    feedback_parser = subparsers.add_parser("feedback", help="Record feedback on a notification")
    feedback_parser.add_argument("-u", "--user", required=True, help="User ID")
    feedback_parser.add_argument("-i", "--item", type=int, help="Queue item ID")
    feedback_parser.add_argument("-b", "--batch", help="Batch ID")
    feedback_parser.add_argument("--helpful", choices=["yes", "no"])
    feedback_parser.add_argument("--rating", type=int, help="Rating 1-5")
    feedback_parser.add_argument("--comment")
    feedback_parser.add_argument("--dismissed", action="store_true")

    # feed
    feed_parser = subparsers.add_parser("feed", help="Show in-app notifications")
    feed_parser.add_argument("-u", "--user", required=True, help="User ID")
    feed_parser.add_argument("--unread", action="store_true", help="Only unread")
    feed_parser.add_argument("--mark-read", action="store_true", help="Mark all read after listing")
    feed_parser.add_argument("-n", "--limit", type=int, default=20, help="Max results")

    # attempts
    attempts_parser = subparsers.add_parser("attempts", help="Show delivery attempts")
    attempts_parser.add_argument("-i", "--item", type=int, help="Queue item ID")
    attempts_parser.add_argument("-u", "--user", help="Filter by user")
    attempts_parser.add_argument("-n", "--limit", type=int, default=50, help="Max results")

    args = parser.parse_args(argv)

    if args.command != "init":
        setup_logging(_config(args), verbose=args.verbose)

    commands = {
        "init": cmd_init,
        "enqueue": cmd_enqueue,
        "sweep": cmd_sweep,
        "queue": cmd_queue,
        "feedback": cmd_feedback,
        "feed": cmd_feed,
        "attempts": cmd_attempts,
    }

    if args.command == "prefs":
        prefs_commands = {
            "show": cmd_prefs_show,
            "set": cmd_prefs_set,
        }
        prefs_commands[args.prefs_action](args)
    elif args.command == "task":
        task_commands = {
            "create": cmd_task_create,
            "list": cmd_task_list,
            "delete": cmd_task_delete,
            "pause": cmd_task_status,
            "resume": cmd_task_status,
        }
        task_commands[args.task_action](args)
    else:
        commands[args.command](args)


if __name__ == "__main__":
    main()
