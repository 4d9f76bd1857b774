"""Returns-Portal-Core CLI operator tool.

Usage:
    python -m cli risk score --amount 80 --attachments --items
    python -m cli risk score --amount 450 --orders 12 --refunds 5 --account-age 40
    python -m cli eligibility check --type return --age 20 --policy policy.json
    python -m cli statuses list --locale en
    python -m cli statuses flow --type refund
    python -m cli sync auto
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from decimal import Decimal
from pathlib import Path

from app.config import get_settings
from app.services import lifecycle
from app.services.eligibility import EligibilityDraft, check_eligibility
from app.services.policy import PolicyConfigError, parse_policy
from app.services.risk import CustomerHistory, assess, risk_category
from app.services.statuses import STATUS_LABELS, label_for, label_table


def main():
    parser = argparse.ArgumentParser(
        prog="portal-cli",
        description="Returns-Portal-Core CLI",
    )
    sub = parser.add_subparsers(dest="command", help="Top-level command")

    # ── Risk ─────────────────────────────────────────────
    risk_parser = sub.add_parser("risk", help="Refund risk scoring")
    risk_sub = risk_parser.add_subparsers(dest="action")

    score = risk_sub.add_parser("score", help="Score a refund request")
    score.add_argument("--amount", type=str, required=True, help="Requested amount")
    score.add_argument("--attachments", action="store_true", help="Evidence was attached")
    score.add_argument("--items", action="store_true", help="Items were listed")
    score.add_argument("--orders", type=int, help="Customer's total orders")
    score.add_argument("--refunds", type=int, default=0, help="Customer's total refunds")
    score.add_argument("--account-age", type=int, default=0, help="Account age in days")
    score.add_argument("--limit", type=str, help="Auto-approve amount limit")

    # ── Eligibility ──────────────────────────────────────
    elig_parser = sub.add_parser("eligibility", help="Eligibility checks")
    elig_sub = elig_parser.add_subparsers(dest="action")

    check = elig_sub.add_parser("check", help="Check a draft against a store policy")
    check.add_argument("--type", choices=lifecycle.REQUEST_TYPES, default="return")
    check.add_argument("--age", type=int, help="Order age in days")
    check.add_argument("--reason", default="", help="Reason code")
    check.add_argument("--amount", type=str, default="0", help="Requested amount")
    check.add_argument("--attachments", action="store_true", help="Photos were attached")
    check.add_argument("--category", action="append", default=[], help="Item category (repeatable)")
    check.add_argument("--policy", help="JSON file with the policy rules")

    # ── Statuses ─────────────────────────────────────────
    status_parser = sub.add_parser("statuses", help="Status vocabulary")
    status_sub = status_parser.add_subparsers(dest="action")

    labels = status_sub.add_parser("list", help="List status codes and labels")
    labels.add_argument("--locale", choices=sorted(STATUS_LABELS), default="pt-BR")

    flow = status_sub.add_parser("flow", help="Show the transitions of a request type")
    flow.add_argument("--type", choices=lifecycle.REQUEST_TYPES, default="return")
    flow.add_argument("--locale", choices=sorted(STATUS_LABELS), default="pt-BR")

    # ── Sync ─────────────────────────────────────────────
    sync_parser = sub.add_parser("sync", help="Dashboard sync jobs")
    sync_sub = sync_parser.add_subparsers(dest="action")
    sync_sub.add_parser("auto", help="Start the trailing-window sync for every store")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    handlers = {
        "risk": handle_risk,
        "eligibility": handle_eligibility,
        "statuses": handle_statuses,
        "sync": handle_sync,
    }
    handler = handlers.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()


# ── Command Handlers ────────────────────────────────────

def handle_risk(args):
    if args.action == "score":
        history = None
        if args.orders is not None:
            history = CustomerHistory(
                total_orders=args.orders,
                total_refunds=args.refunds,
                account_age_days=args.account_age,
            )
        limit = Decimal(args.limit) if args.limit else Decimal(str(get_settings().default_auto_approve_limit))
        result = assess(
            Decimal(args.amount),
            has_attachments=args.attachments,
            has_items=args.items,
            auto_approve_limit=limit,
            history=history,
            low_risk_threshold=get_settings().low_risk_threshold,
        )
        category = risk_category(result.score)
        print(f"Risk score:     {result.score}/100 ({category['level']})")
        print(f"                {category['description']}")
        print(f"Initial status: {result.initial_status.value}")
    else:
        print("Usage: portal-cli risk score --amount 80 [--attachments] [--items]")


def handle_eligibility(args):
    if args.action == "check":
        rules = {}
        if args.policy:
            path = Path(args.policy)
            if not path.exists():
                print(f"File not found: {args.policy}")
                sys.exit(1)
            rules = json.loads(path.read_text(encoding="utf-8"))
        link_type = "refunds" if args.type == "refund" else "returns"
        try:
            policy = parse_policy(link_type, rules, [])
        except PolicyConfigError as e:
            print(f"Invalid policy: {e.message}")
            sys.exit(1)

        verdict = check_eligibility(
            EligibilityDraft(
                request_type=args.type,
                order_age_days=args.age,
                reason=args.reason,
                has_attachments=args.attachments,
                amount=Decimal(args.amount),
                categories=args.category,
            ),
            policy.rules,
        )
        print(json.dumps(verdict.to_dict(), indent=2, ensure_ascii=False))
    else:
        print("Usage: portal-cli eligibility check --type return --age 3")


def handle_statuses(args):
    if args.action == "list":
        for row in label_table(args.locale):
            print(f"{row['code']:<15} {row['label']}")

    elif args.action == "flow":
        f = lifecycle.flow_for(args.type)
        for status, targets in lifecycle.FORWARD[f].items():
            names = ", ".join(label_for(t, args.locale) for t in targets)
            print(f"{label_for(status, args.locale):<22} -> {names}")

    else:
        print("Usage: portal-cli statuses {list|flow}")


def handle_sync(args):
    if args.action == "auto":
        results = asyncio.run(_auto_sync())
        for r in results:
            detail = r.get("reason") or r.get("request_id", "")
            print(f"{r['slug']:<30} {r['status']:<8} {detail}")
    else:
        print("Usage: portal-cli sync auto")


async def _auto_sync() -> list[dict]:
    from app.database import async_session, engine
    from app.services.notification import notification_service
    from app.services.sync import HttpSyncTrigger, SyncJobOrchestrator

    settings = get_settings()
    orchestrator = SyncJobOrchestrator(
        HttpSyncTrigger(settings.sync_webhook_url, timeout=settings.sync_timeout_seconds),
    )
    try:
        async with async_session() as db:
            return await orchestrator.auto_sync_all(db)
    finally:
        await notification_service.flush()
        await engine.dispose()


if __name__ == "__main__":
    main()
