#!/usr/bin/env python3
"""
Notifications CLI — Inspect config and trigger scheduling without the API.

Usage:
    python scripts/notifications_cli.py kinds
    python scripts/notifications_cli.py show-config --environment SANDBOX
    python scripts/notifications_cli.py toggle-rule rule_ab12cd34ef56 --disable
    python scripts/notifications_cli.py delete-template tpl_due_reminder
    python scripts/notifications_cli.py schedule-subscription sub_123 --force-now
    python scripts/notifications_cli.py schedule-payment pay_456
    python scripts/notifications_cli.py pop-due --limit 20
    python scripts/notifications_cli.py migrate

Collaborators (store, billing, queue, channel) come from settings.yaml,
so the memory backends only see what this process itself wrote.
"""
import asyncio
import json
import os
import sys
import argparse

import structlog

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _print(data):
    print(json.dumps(data, indent=2, default=str))


async def run_command(args: argparse.Namespace) -> int:
    from config.settings import load_settings
    settings = load_settings(args.config)

    from models.errors import NotificationError
    from rules.catalog import list_kinds

    if args.command == "kinds":
        _print(list_kinds())
        return 0

    if args.command == "migrate":
        from database.store import SqlConfigStore
        store = SqlConfigStore(settings.database.url)
        try:
            await store.open()
        finally:
            await store.close()
        print("Migration complete.")
        return 0

    from backend.connector import create_billing_connector
    from channels.messaging_adapter import MessagingAdapter
    from core.dispatcher import SchedulingDispatcher
    from database.store_factory import create_store
    from job_queue.message_queue import create_notification_queue
    from models.schemas import Environment
    from rules.compiler import RuleCompiler

    store = create_store(settings.database)
    queue = create_notification_queue({
        "backend": settings.queue.backend,
        "redis_url": settings.queue.redis_url,
        "key": settings.queue.key,
    })
    environment = args.environment or settings.notifications.active_environment

    try:
        await store.open()
        env = Environment.parse(environment)

        if args.command == "show-config":
            config = await store.get_or_default(env)
            _print({"environment": env.value, "config": config.to_dict()})

        elif args.command == "toggle-rule":
            enabled = True if args.enable else False if args.disable else None
            rule = await RuleCompiler(store).toggle_rule(env, args.rule_id, enabled)
            _print(rule.to_dict())

        elif args.command == "delete-template":
            removed = await RuleCompiler(store).delete_template(env, args.template_id)
            _print({"ok": True, "rulesRemoved": removed})

        elif args.command == "pop-due":
            await queue.connect()
            try:
                jobs = await queue.pop_due(limit=args.limit)
            finally:
                await queue.close()
            _print([job.to_dict() for job in jobs])

        elif args.command in ("schedule-subscription", "schedule-payment"):
            billing = create_billing_connector(settings.billing)
            channel = MessagingAdapter(settings.channel)
            dispatcher = SchedulingDispatcher(store, billing, queue, channel, settings=settings)
            await queue.connect()
            try:
                if args.command == "schedule-subscription":
                    result = await dispatcher.schedule_for_subscription(
                        args.subscription_id, env, force_now=args.force_now,
                    )
                else:
                    result = await dispatcher.schedule_for_payment(
                        args.payment_id, env, force_now=args.force_now,
                    )
            finally:
                await queue.close()
                await billing.close()
                await channel.shutdown()
            _print({"ok": True, "scheduled": result.scheduled_count})

    except NotificationError as e:
        _print(e.to_dict())
        return 1
    finally:
        await store.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Subscription notification tooling")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--environment", default=None, help="PRODUCTION or SANDBOX")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("kinds", help="List notification kinds and their defaults")
    sub.add_parser("show-config", help="Print the environment's config blob")
    sub.add_parser("migrate", help="Create the config table in the SQL database")

    toggle = sub.add_parser("toggle-rule", help="Enable, disable or flip a rule")
    toggle.add_argument("rule_id")
    state = toggle.add_mutually_exclusive_group()
    state.add_argument("--enable", action="store_true")
    state.add_argument("--disable", action="store_true")

    delete = sub.add_parser("delete-template", help="Delete a template and its rules")
    delete.add_argument("template_id")

    pop = sub.add_parser("pop-due", help="Remove and print jobs that are due")
    pop.add_argument("--limit", type=int, default=100)

    sched_sub = sub.add_parser("schedule-subscription", help="Schedule due-date notifications")
    sched_sub.add_argument("subscription_id")
    sched_sub.add_argument("--force-now", action="store_true")

    sched_pay = sub.add_parser("schedule-payment", help="Schedule payment status notifications")
    sched_pay.add_argument("payment_id")
    sched_pay.add_argument("--force-now", action="store_true")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(run_command(args))


if __name__ == "__main__":
    # stdout carries the JSON output; logs go to stderr
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(sys.stderr))
    sys.exit(main())
