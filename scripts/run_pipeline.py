#!/usr/bin/env python3
"""CLI script to run action pipeline operations for one opportunity.

Usage:
    uv run python scripts/run_pipeline.py generate --opportunity <uuid>
    uv run python scripts/run_pipeline.py re-evaluate --opportunity <uuid> --reason "new inbound email"
    uv run python scripts/run_pipeline.py execute --action <uuid> --actor <user-id>
    uv run python scripts/run_pipeline.py cancel-all --opportunity <uuid>

Connects directly to the database using DATABASE_URL from environment or .env file.
Gmail and Calendar execution are enabled when GOOGLE_SERVICE_ACCOUNT_FILE and
GOOGLE_DELEGATED_USER_EMAIL are set.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.pipeline
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


def _build_providers(settings):
    """Gmail and Calendar providers, or (None, None) without credentials."""
    if not (settings.GOOGLE_SERVICE_ACCOUNT_FILE and settings.GOOGLE_DELEGATED_USER_EMAIL):
        print("Google Workspace not configured: EMAIL and MEETING execution disabled")
        return None, None

    from src.pipeline.services.gsuite import (
        GmailService,
        GoogleCalendarService,
        GSuiteAuthManager,
    )

    auth = GSuiteAuthManager(
        service_account_file=settings.GOOGLE_SERVICE_ACCOUNT_FILE,
        delegated_user_email=settings.GOOGLE_DELEGATED_USER_EMAIL,
    )
    return GmailService(auth), GoogleCalendarService(auth)


async def main_async(args: argparse.Namespace) -> int:
    from src.pipeline.actions.service import create_pipeline_service
    from src.pipeline.config import get_settings
    from src.pipeline.core.database import close_db, init_db
    from src.pipeline.core.logging import configure_structlog
    from src.pipeline.observability.tracer import init_langfuse

    settings = get_settings()
    configure_structlog(settings)
    init_langfuse(settings)
    await init_db()

    email_provider, calendar_provider = _build_providers(settings)
    service = create_pipeline_service(
        settings=settings,
        email_provider=email_provider,
        calendar_provider=calendar_provider,
    )

    try:
        if args.command == "generate":
            actions = await service.generate_proposed_actions(args.opportunity)
            print(f"Proposed {len(actions)} action(s):")
            for action in actions:
                print(f"  [{action.priority}] {action.type.value:<22} {action.id}")
                print(f"      {action.reasoning}")

        elif args.command == "re-evaluate":
            context = await service.re_evaluate_actions(args.opportunity, args.reason)
            print(f"Open actions after re-evaluation: {len(context.existing_actions)}")
            for action in context.existing_actions:
                print(f"  {action.status.value:<9} {action.type.value:<22} {action.id}")

        elif args.command == "execute":
            if args.approve:
                result = await service.approve_action(
                    args.action, args.actor, execute_immediately=True
                )
                outcome = result.execution
            else:
                outcome = await service.execution.execute(args.action, args.actor)
            if outcome is None or not outcome.success:
                print(f"Execution failed: {outcome.error if outcome else 'not executed'}")
                return 1
            print(f"Executed at {outcome.executed_at.isoformat()}: {outcome.details}")

        elif args.command == "cancel-all":
            count = await service.cancel_all_proposed_actions(args.opportunity)
            print(f"Cancelled {count} proposed action(s)")
    finally:
        await close_db()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run action pipeline operations")
    subparsers = parser.add_subparsers(dest="command", required=True)

    generate = subparsers.add_parser("generate", help="Propose new actions")
    generate.add_argument("--opportunity", required=True, help="Opportunity UUID")

    re_evaluate = subparsers.add_parser("re-evaluate", help="Reconcile open actions")
    re_evaluate.add_argument("--opportunity", required=True, help="Opportunity UUID")
    re_evaluate.add_argument("--reason", default=None, help="What triggered the re-evaluation")

    execute = subparsers.add_parser("execute", help="Execute an approved action")
    execute.add_argument("--action", required=True, help="Action UUID")
    execute.add_argument("--actor", required=True, help="User id performing the execution")
    execute.add_argument(
        "--approve", action="store_true", help="Approve a PROPOSED action before executing"
    )

    cancel_all = subparsers.add_parser("cancel-all", help="Cancel every proposed action")
    cancel_all.add_argument("--opportunity", required=True, help="Opportunity UUID")

    args = parser.parse_args()
    sys.exit(asyncio.run(main_async(args)))


if __name__ == "__main__":
    main()
