"""Run notification jobs by hand, outside the web process.

Usage:
    python -m scripts.notify due
    python -m scripts.notify overdue
    python -m scripts.notify stats
    python -m scripts.notify clear [--all]
    python -m scripts.notify test-reminder --user USER_ID --task TASK_ID
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add parent dir to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from todo_api.core.clock import utcnow
from todo_api.core.config import settings
from todo_api.core.database import engine, init_db
from todo_api.core.logging_setup import setup_logging
from todo_api.services.notification_service import get_notification_service


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run notification jobs")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("due", help="Run the due-date reminder sweep once")
    sub.add_parser("overdue", help="Run the overdue sweep once")
    sub.add_parser("stats", help="Print notification statistics")
    clear = sub.add_parser("clear", help="Delete overdue markers from previous days")
    clear.add_argument("--all", action="store_true", help="Delete today's markers too")
    test = sub.add_parser("test-reminder", help="Send a reminder for one task now")
    test.add_argument("--user", required=True, help="User id")
    test.add_argument("--task", required=True, help="Task id")
    return parser


async def run(args: argparse.Namespace) -> dict:
    await init_db()
    service = get_notification_service()
    try:
        if args.command == "due":
            return (await service.check_due_date_reminders()).to_dict()
        if args.command == "overdue":
            return (await service.check_overdue_tasks()).to_dict()
        if args.command == "stats":
            return await service.get_notification_stats()
        if args.command == "clear":
            before = None if args.all else utcnow().date()
            return {"removed": await service.clear_sent_markers(before=before)}
        return {"message_id": await service.send_test_reminder(args.user, args.task)}
    finally:
        await engine.dispose()


def main():
    args = build_parser().parse_args()
    setup_logging(level=settings.log_level, log_file=settings.log_file or None)
    print(json.dumps(asyncio.run(run(args)), indent=2))


if __name__ == "__main__":
    main()
