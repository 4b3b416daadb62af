from __future__ import annotations

import argparse
import asyncio

from tierflow.apps.runtime_support import OrchestratorRuntime, build_runtime
from tierflow.cli import base_parser
from tierflow.core.runtime.errors import TierflowError
from tierflow.core.upgrade.events import ProgressEvent


def _print_event(event: ProgressEvent) -> None:
    eta = "" if event.estimated_seconds_remaining is None else f" eta_s={event.estimated_seconds_remaining:.1f}"
    print(f"[{event.progress_percent:>3}%] {event.state}: {event.message}{eta}")


def _cmd_tiers(runtime: OrchestratorRuntime, _args: argparse.Namespace) -> int:
    print("tiers:")
    for cfg in runtime.catalog.tiers():
        print(
            f"- {cfg.tier.value}: name={cfg.name} monthly={cfg.monthly_price:g} yearly={cfg.yearly_price:g} "
            f"features={len(cfg.features)} saved_reports={cfg.quotas.saved_reports}"
        )
    return 0


def _cmd_diff(runtime: OrchestratorRuntime, args: argparse.Namespace) -> int:
    diff = runtime.resolver.diff(args.current, args.target)
    print(f"diff {diff.current_tier.value} -> {diff.target_tier.value} downgrade={diff.is_downgrade}")
    print(f"- added={list(diff.added_features)}")
    print(f"- removed={list(diff.removed_features)}")
    print(f"- transforms={[t.key for t in diff.data_transforms]}")
    for key, (old, new) in diff.limit_changes.items():
        print(f"- limit {key}: {old} -> {new}")
    return 0


async def _run_upgrade(runtime: OrchestratorRuntime, args: argparse.Namespace) -> int:
    executor = runtime.executor
    session = await executor.begin(args.user, args.target, args.interval)
    unsubscribe = executor.subscribe(session.session_id, _print_event, replay=True)
    try:
        outcome = await executor.wait(session.session_id)
    finally:
        unsubscribe()
    print(f"session={session.session_id} state={outcome.session.state.value} success={outcome.success}")
    if outcome.rollback is not None:
        rb = outcome.rollback
        print(
            f"rollback success={rb.success} restored={rb.restored_items} "
            f"unrestored={rb.unrestored_items} refunded={rb.refunded}"
        )
    print(outcome.user_message)
    return 0 if outcome.success else 2


def _cmd_upgrade(runtime: OrchestratorRuntime, args: argparse.Namespace) -> int:
    return asyncio.run(_run_upgrade(runtime, args))


def _cmd_status(runtime: OrchestratorRuntime, args: argparse.Namespace) -> int:
    rows = runtime.journal.list_sessions(user_id=args.user, limit=args.limit)
    print(f"upgrades for {args.user}:")
    if not rows:
        print("- none")
    for row in rows:
        error = f" error={row.error_kind}" if row.error_kind else ""
        review = " needs_manual_review" if row.needs_manual_review else ""
        print(
            f"- {row.session_id}: {row.current_tier}->{row.target_tier} state={row.state} "
            f"progress={row.progress_percent}{error}{review}"
        )
    status = asyncio.run(runtime.monitor().check(args.user))
    print(
        f"preservation integrity={status.data_integrity} preserved={status.preserved_items}/{status.total_items} "
        f"snapshot={status.snapshot_id}"
    )
    for issue in status.issues[:10]:
        print(f"- {issue}")
    return 0


def _cmd_purge(runtime: OrchestratorRuntime, _args: argparse.Namespace) -> int:
    purged = runtime.snapshot_store.purge_expired()
    print(f"purged-snapshots={purged} retention_days={runtime.snapshot_store.retention_days}")
    return 0


_COMMANDS = {
    "tiers": _cmd_tiers,
    "diff": _cmd_diff,
    "upgrade": _cmd_upgrade,
    "status": _cmd_status,
    "purge-snapshots": _cmd_purge,
}


def main(argv: list[str] | None = None) -> int:
    parser = base_parser("tierflow", "Tierflow upgrade orchestrator")
    parser.add_argument("--config", default=None, help="Config file path")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("tiers", help="List the tier catalog")

    diff_parser = subparsers.add_parser("diff", help="Show what changes between two tiers")
    diff_parser.add_argument("--current", required=True)
    diff_parser.add_argument("--target", required=True)

    upgrade_parser = subparsers.add_parser("upgrade", help="Run an upgrade and stream its progress")
    upgrade_parser.add_argument("--user", required=True)
    upgrade_parser.add_argument("--target", required=True)
    upgrade_parser.add_argument("--interval", default="monthly")

    status_parser = subparsers.add_parser("status", help="Show a user's upgrades and data preservation")
    status_parser.add_argument("--user", required=True)
    status_parser.add_argument("--limit", type=int, default=10)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)

    subparsers.add_parser("purge-snapshots", help="Delete archived snapshots past retention")

    args = parser.parse_args(argv)

    if args.command == "serve":
        from tierflow.apps.api_server import serve

        return serve(config_path=args.config, host=args.host, port=args.port)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        runtime = build_runtime(config_path=args.config)
        return handler(runtime, args)
    except (TierflowError, ValueError) as exc:
        print(f"error kind={getattr(getattr(exc, 'kind', None), 'value', 'config')} message={exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
