"""Subcommand handlers for the CalendarSync CLI.

Every handler receives the running application and the parsed arguments and
returns a process exit code.
"""

import argparse
import logging
import sys
from typing import Awaitable, Callable, Optional

from ..ics.exceptions import ICSError
from ..ics.models import CalendarItem, date_range_bounds
from ..ics.recurrence import describe_rule
from ..main import CalendarSyncApp, setup_signal_handlers
from ..sources.exceptions import SourceError
from ..sources.models import CalendarSubscription, SubscriptionCreate, SyncResult
from ..store.base import StoreError
from ..utils.helpers import format_duration, to_timezone, utc_now

logger = logging.getLogger(__name__)

CommandHandler = Callable[[CalendarSyncApp, argparse.Namespace], Awaitable[int]]


def _format_sync_result(result: SyncResult) -> str:
    if result.skipped:
        return f"{result.subscription_id}: skipped ({result.error})"
    if not result.success:
        return f"{result.subscription_id}: failed ({result.error})"
    if result.not_modified:
        return f"{result.subscription_id}: not modified"

    line = (
        f"{result.subscription_id}: +{result.added} ~{result.updated} "
        f"-{result.deleted} ={result.unchanged}"
    )
    if result.errors:
        line += f" ({len(result.errors)} row error(s))"
    return line


def _format_subscription(subscription: CalendarSubscription, event_count: int) -> str:
    if subscription.last_sync_at is None:
        synced = "never synced"
    else:
        age = int((utc_now() - subscription.last_sync_at).total_seconds())
        synced = f"synced {format_duration(max(age, 0))} ago"

    status = f"error: {subscription.last_sync_error}" if subscription.last_sync_error else "ok"
    mode = f"every {subscription.sync_interval_minutes}m" if subscription.auto_sync else "manual"
    return (
        f"{subscription.id}  {subscription.name}  {subscription.url}\n"
        f"    {event_count} event(s), {mode}, {synced}, {status}"
    )


def _format_item(item: CalendarItem, tz_name: Optional[str]) -> str:
    start = to_timezone(item.start, tz_name)
    if item.all_day:
        when = start.strftime("%Y-%m-%d") + " (all day)"
    else:
        end = to_timezone(item.end, tz_name)
        when = f"{start.strftime('%Y-%m-%d %H:%M')}-{end.strftime('%H:%M')}"
    line = f"{when}  {item.title}"
    if item.location:
        line += f"  @ {item.location}"
    return line


async def cmd_import(app: CalendarSyncApp, args: argparse.Namespace) -> int:
    try:
        document = args.file.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        print(f"Cannot read {args.file}: {e}", file=sys.stderr)
        return 1

    result = await app.service.import_events(
        document, args.owner, color=args.color or app.settings.default_color
    )
    print(
        f"Imported {result.imported} new, {result.updated} updated, "
        f"{result.unchanged} unchanged event(s)"
    )
    for error in result.errors:
        print(f"  warning: {error}", file=sys.stderr)
    return 0


async def cmd_export(app: CalendarSyncApp, args: argparse.Namespace) -> int:
    start = end = None
    if args.start and args.end:
        start, end = date_range_bounds(args.start, args.end)
    elif args.start or args.end:
        print("--start and --end must be given together", file=sys.stderr)
        return 1

    document = await app.service.export_events(
        args.owner, start=start, end=end, calendar_name=args.name
    )
    if args.output:
        args.output.write_text(document, encoding="utf-8")
        print(f"Wrote {args.output}")
    else:
        sys.stdout.write(document)
    return 0


async def cmd_subscribe(app: CalendarSyncApp, args: argparse.Namespace) -> int:
    data = SubscriptionCreate(
        owner_id=args.owner,
        name=args.name,
        url=args.url,
        color=args.color or app.settings.default_color,
        auto_sync=args.auto_sync,
        sync_interval_minutes=args.interval or app.settings.default_sync_interval_minutes,
    )
    subscription, result = await app.manager.create_subscription(data)
    print(f"Subscribed {subscription.name} as {subscription.id}")
    print(_format_sync_result(result))
    return 0 if result.success else 1


async def cmd_unsubscribe(app: CalendarSyncApp, args: argparse.Namespace) -> int:
    deleted = await app.manager.delete_subscription(args.subscription_id)
    print(f"Deleted subscription {args.subscription_id} and {deleted} event(s)")
    return 0


async def cmd_subscriptions(app: CalendarSyncApp, args: argparse.Namespace) -> int:
    subscriptions = await app.manager.list_subscriptions(args.owner)
    if not subscriptions:
        print("No subscriptions")
        return 0

    for subscription in subscriptions:
        status = await app.manager.get_sync_status(subscription.id)
        print(_format_subscription(subscription, status.event_count))
    return 0


async def cmd_sync(app: CalendarSyncApp, args: argparse.Namespace) -> int:
    if args.subscription_id:
        results = [await app.manager.sync_subscription(args.subscription_id)]
    else:
        results = await app.manager.sync_all(args.owner)

    if not results:
        print("No auto-sync subscriptions")
        return 0

    for result in results:
        print(_format_sync_result(result))
    return 0 if all(r.success for r in results) else 1


async def cmd_run(app: CalendarSyncApp, args: argparse.Namespace) -> int:  # noqa: ARG001
    setup_signal_handlers(app)
    await app.run_forever()
    return 0


async def cmd_view(app: CalendarSyncApp, args: argparse.Namespace) -> int:
    if args.end < args.start:
        print("--end must not be before --start", file=sys.stderr)
        return 1

    start, end = date_range_bounds(args.start, args.end)
    items = await app.service.get_calendar_view(args.owner, start, end)
    if not items:
        print("No events")
        return 0

    for item in items:
        print(_format_item(item, args.timezone))
    return 0


async def cmd_describe(app: CalendarSyncApp, args: argparse.Namespace) -> int:  # noqa: ARG001
    print(describe_rule(args.rule))
    return 0


COMMANDS: dict[str, CommandHandler] = {
    "import": cmd_import,
    "export": cmd_export,
    "subscribe": cmd_subscribe,
    "unsubscribe": cmd_unsubscribe,
    "subscriptions": cmd_subscriptions,
    "sync": cmd_sync,
    "run": cmd_run,
    "view": cmd_view,
    "describe": cmd_describe,
}


async def run_command(app: CalendarSyncApp, args: argparse.Namespace) -> int:
    """Dispatch to a subcommand handler, reporting domain errors as exit code 1.

    Args:
        app: Application instance
        args: Parsed command line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    handler = COMMANDS[args.command]
    try:
        return await handler(app, args)
    except (ICSError, SourceError, StoreError) as e:
        logger.debug(f"Command {args.command} failed", exc_info=True)
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
