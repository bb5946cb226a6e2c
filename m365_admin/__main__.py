"""
M365 Admin Toolkit — command-line entry point.

Usage:
    python -m m365_admin list-users --filter disabled
    python -m m365_admin --profile contoso-prod inactive-users --days 60
    python -m m365_admin --dry-run --formats csv html leaver --user jane@contoso.com
    python -m m365_admin --auth-mode secret --tenant-id ... --client-id ... license-report

Profile management:
    python -m m365_admin profile add <name> --tenant-id ... --client-id ...
    python -m m365_admin profile list
    python -m m365_admin profile remove <name>
    python -m m365_admin profile set-default <name>

Scheduled tasks:
    python -m m365_admin schedule add weekly-inactive --every weekly --at 07:30 -- inactive-users --days 60
    python -m m365_admin schedule list
    python -m m365_admin schedule remove weekly-inactive

Global options go before the command name.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from . import __version__
from .auth.authenticator import AuthenticationError, Authenticator
from .automation import AUTOMATION_OPERATIONS
from .automation.scheduler import (
    FREQUENCIES,
    ScheduledTask,
    ScheduleError,
    ScheduleStore,
    install_task,
    render,
    uninstall_task,
)
from .config import AUTH_MODES, OUTPUT_FORMATS, REQUIRED_PERMISSIONS, ToolkitConfig
from .graph.client import GraphClient
from .operations import ALL_OPERATIONS, Operation, OperationResult
from .profiles import ProfileStore, TenantProfile, resolve_profile
from .reporting import collect_columns, export_rows
from .safety.guardian import ChangeGuard, WriteBlocked

logger = logging.getLogger("m365_admin")

OPERATIONS: dict[str, type[Operation]] = {
    op.name: op for op in [*ALL_OPERATIONS, *AUTOMATION_OPERATIONS]
}

CONSOLE_ROW_LIMIT = 50
CONSOLE_COLUMN_WIDTH = 40


# ---------------------------------------------------------------------------
# Profile management sub-commands
# ---------------------------------------------------------------------------

def _cmd_profile(args: argparse.Namespace) -> int:
    """Handle `profile add|list|remove|set-default` sub-commands."""
    store = ProfileStore.load()
    action = args.profile_action

    if action == "add":
        profile = TenantProfile(
            name=args.profile_name,
            tenant_id=args.profile_tenant_id,
            client_id=args.profile_client_id,
            auth_mode=args.profile_auth_mode,
            cert_path=args.profile_cert_path,
            default_domain=args.domain or "",
            tenant_display_name=args.display_name or "",
            notes=args.notes or "",
        )
        replaced = store.add(profile, set_default=args.set_default)
        print(f"  ✅ Profile '{profile.name}' {'updated' if replaced else 'saved'}.")
        if store.default_profile == profile.name:
            print("  ✅ Default profile.")
        return 0

    if action in ("remove", "set-default"):
        changed = (store.remove if action == "remove" else store.set_default)(args.profile_name)
        if not changed:
            print(f"  ❌ Profile '{args.profile_name}' not found.")
            return 1
        verb = "removed" if action == "remove" else "is now the default"
        print(f"  ✅ Profile '{args.profile_name}' {verb}.")
        return 0

    if action == "list":
        _print_profiles(store)
        return 0

    print("Usage: python -m m365_admin profile {add|list|remove|set-default}")
    return 0


def _print_profiles(store: ProfileStore) -> None:
    profiles = store.list_profiles()
    if not profiles:
        print("No profiles configured. Add one with:\n")
        print("  python -m m365_admin profile add <name> --tenant-id <GUID> --client-id <GUID>")
        return
    print(f"\n  {'Profile':<30s} {'Tenant ID':<38s} {'Auth':<12s} {'Domain'}")
    print(f"  {'─'*30} {'─'*38} {'─'*12} {'─'*20}")
    for p in profiles:
        marker = " ✓" if p.name == store.default_profile else ""
        print(f"  {p.label + marker:<30s} {p.tenant_id:<38s} {p.auth_mode:<12s} {p.default_domain}")
    print()



# ---------------------------------------------------------------------------
# Scheduled task sub-commands
# ---------------------------------------------------------------------------

def _cmd_schedule(args: argparse.Namespace) -> int:
    """Handle `schedule add|list|remove` sub-commands."""
    action = args.schedule_action
    try:
        if action == "add":
            return _schedule_add(args)
        elif action == "list":
            return _schedule_list()
        elif action == "remove":
            return _schedule_remove(args)
    except ScheduleError as e:
        print(f"  ❌ {e}")
        return 1
    print("Usage: python -m m365_admin schedule {add|list|remove}")
    return 0


def _schedule_add(args: argparse.Namespace) -> int:
    command = [c for c in args.task_command if c != "--"]
    if command and command[0] not in OPERATIONS:
        raise ScheduleError(f"Unknown toolkit command '{command[0]}'.")
    task = ScheduledTask(
        name=args.task_name,
        command=command,
        frequency=args.every,
        start_time=args.at,
        weekday=args.weekday,
    )
    store = ScheduleStore.load()
    store.add(task, replace=args.replace)
    print(f"  ✅ Scheduled task '{task.name}' saved.")
    print(f"     {render(task)}")

    if args.install:
        try:
            ChangeGuard(dry_run=args.dry_run).require_live(f"install scheduled task '{task.name}'")
        except WriteBlocked as e:
            print(f"  ⏭  {e}")
            return 0
        install_task(task)
        print("  ✅ Registered with the system scheduler.")
    return 0


def _schedule_list() -> int:
    tasks = ScheduleStore.load().list_tasks()
    if not tasks:
        print("No scheduled tasks.")
        return 0
    print(f"\n  {'Name':<24s} {'Every':<8s} {'At':<6s} {'Command'}")
    print(f"  {'─'*24} {'─'*8} {'─'*6} {'─'*30}")
    for t in tasks:
        when = f"{t.frequency}" + (f"/{t.weekday}" if t.frequency == "weekly" else "")
        print(f"  {t.name:<24s} {when:<8s} {t.start_time:<6s} {' '.join(t.command)}")
    print()
    return 0


def _schedule_remove(args: argparse.Namespace) -> int:
    store = ScheduleStore.load()
    task = store.remove(args.task_name)
    print(f"  ✅ Scheduled task '{task.name}' removed.")
    if args.uninstall:
        uninstall_task(task)
        print("  ✅ Removed from the system scheduler.")
    return 0


def _cmd_permissions() -> int:
    width = max(len(p) for p in REQUIRED_PERMISSIONS)
    print(f"\n  Application permissions used by this toolkit ({len(REQUIRED_PERMISSIONS)}):\n")
    for permission, purpose in REQUIRED_PERMISSIONS.items():
        print(f"  {permission:<{width}s}  {purpose}")
    print()
    return 0


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def operation_dest(flags: tuple[str, ...], kwargs: dict[str, Any]) -> str:
    """The argparse attribute name an operation argument is stored under."""
    if "dest" in kwargs:
        return kwargs["dest"]
    long_flags = [f for f in flags if f.startswith("--")]
    return (long_flags or list(flags))[0].lstrip("-").replace("-", "_")


def operation_params(op_cls: type[Operation], args: argparse.Namespace) -> dict[str, Any]:
    params = {}
    for flags, kwargs in op_cls.arguments:
        dest = operation_dest(flags, kwargs)
        if hasattr(args, dest):
            params[dest] = getattr(args, dest)
    return params


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="m365_admin",
        description="Microsoft 365 administration through Microsoft Graph",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    # --- Global options ---
    parser.add_argument("--profile", "-p", default=None,
                        help="Tenant profile name (run 'profile list' to see available)")
    parser.add_argument("--config", "-c", type=Path, help="Path to JSON configuration file")
    parser.add_argument("--tenant-id", default=None, help="Tenant ID (overrides profile)")
    parser.add_argument("--client-id", default=None, help="Client ID (overrides profile)")
    parser.add_argument("--auth-mode", choices=AUTH_MODES, default=None,
                        help="certificate (default), secret or delegated device-code sign-in")
    parser.add_argument("--cert-path", type=Path, default=None,
                        help="Base64-encoded PFX for certificate auth (overrides profile)")
    parser.add_argument("--dry-run", action="store_true",
                        help="Record write requests as planned changes instead of sending them")
    parser.add_argument("--formats", nargs="+", choices=OUTPUT_FORMATS, default=None,
                        help="Export rows to these formats")
    parser.add_argument("--output-dir", "-o", type=Path, default=None,
                        help="Directory for exported reports (default: ./m365_admin_output)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", metavar="<command>")

    # --- profile ---
    prof_parser = subparsers.add_parser("profile", help="Manage tenant profiles")
    prof_sub = prof_parser.add_subparsers(dest="profile_action")

    add_p = prof_sub.add_parser("add", help="Add or update a tenant profile")
    add_p.add_argument("profile_name", help="Short name for the profile (e.g. 'contoso-prod')")
    add_p.add_argument("--tenant-id", dest="profile_tenant_id", required=True, help="Tenant ID (GUID)")
    add_p.add_argument("--client-id", dest="profile_client_id", required=True,
                       help="App registration client ID (GUID)")
    add_p.add_argument("--auth-mode", dest="profile_auth_mode", choices=AUTH_MODES, default="certificate")
    add_p.add_argument("--cert-path", dest="profile_cert_path", default="./base64.txt",
                       help="Path to base64-encoded PFX (default: ./base64.txt)")
    add_p.add_argument("--domain", help="Default UPN domain for new users")
    add_p.add_argument("--display-name", help="Friendly tenant display name")
    add_p.add_argument("--notes", help="Optional admin notes")
    add_p.add_argument("--set-default", action="store_true", help="Set as default profile")

    prof_sub.add_parser("list", help="List all configured profiles")
    rm_p = prof_sub.add_parser("remove", help="Remove a profile")
    rm_p.add_argument("profile_name")
    sd_p = prof_sub.add_parser("set-default", help="Set the default profile")
    sd_p.add_argument("profile_name")

    # --- schedule ---
    sched_parser = subparsers.add_parser("schedule", help="Manage recurring toolkit runs")
    sched_sub = sched_parser.add_subparsers(dest="schedule_action")

    sa = sched_sub.add_parser("add", help="Register a recurring command")
    sa.add_argument("task_name")
    sa.add_argument("--every", choices=FREQUENCIES, default="daily")
    sa.add_argument("--at", default="06:00", help="Start time HH:MM")
    sa.add_argument("--weekday", default="MON", help="Day for weekly tasks (MON..SUN)")
    sa.add_argument("--replace", action="store_true", help="Overwrite an existing task")
    sa.add_argument("--install", action="store_true",
                    help="Also register with cron / Windows Task Scheduler")
    sa.add_argument("task_command", nargs="+",
                    help="Toolkit command and its options, after '--'")

    sched_sub.add_parser("list", help="List scheduled tasks")
    sr = sched_sub.add_parser("remove", help="Remove a scheduled task")
    sr.add_argument("task_name")
    sr.add_argument("--uninstall", action="store_true",
                    help="Also remove it from cron / Windows Task Scheduler")

    subparsers.add_parser("permissions", help="List the Graph permissions the app registration needs")

    # --- operations ---
    for name, op_cls in OPERATIONS.items():
        op_parser = subparsers.add_parser(name, help=op_cls.description,
                                          description=op_cls.description)
        for flags, kwargs in op_cls.arguments:
            op_parser.add_argument(*flags, **kwargs)

    return parser


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    # Request URLs at DEBUG would include every token-bearing call
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_config(args: argparse.Namespace) -> ToolkitConfig:
    """Build toolkit configuration from config file, profile, CLI flags and environment."""
    if args.config:
        if not args.config.exists():
            print(f"\n❌ Config file not found: {args.config}")
            sys.exit(1)
        config = ToolkitConfig.from_file(args.config)
    else:
        config = ToolkitConfig()

    profile = None
    if args.profile:
        profile = resolve_profile(args.profile)
        if not profile:
            print(f"\n❌ Profile '{args.profile}' not found. Use 'profile list' to see available profiles.")
            sys.exit(1)
    elif not args.config and not args.tenant_id:
        profile = resolve_profile()

    mode = args.auth_mode or (profile.auth_mode if profile else config.auth.mode)
    config.auth.mode = mode
    configured = getattr(config.auth, mode)

    tenant_id = (args.tenant_id or (profile.tenant_id if profile else "")
                 or (configured.tenant_id if configured else ""))
    client_id = (args.client_id or (profile.client_id if profile else "")
                 or (configured.client_id if configured else ""))

    if tenant_id and client_id:
        if args.cert_path:
            cert_path = str(args.cert_path)
        elif profile:
            cert_path = profile.resolve_cert_path()
        else:
            cert_path = getattr(configured, "certificate_path", "") or "./base64.txt"
        settings = TenantProfile(
            name=profile.name if profile else "ad-hoc",
            tenant_id=tenant_id,
            client_id=client_id,
            auth_mode=mode,
        ).auth_settings(cert_path=cert_path)
        # Secrets and scopes only ever come from the config file or environment
        if configured:
            for attr in ("certificate_password", "client_secret", "scopes"):
                if hasattr(settings, attr):
                    setattr(settings, attr, getattr(configured, attr))
        setattr(config.auth, mode, settings)

    config.apply_environment()
    if getattr(config.auth, mode) is None:
        print("\n❌ No tenant credentials found. Use one of:")
        print("   • --profile <name>             (from saved profiles)")
        print("   • --tenant-id X --client-id Y  (ad-hoc)")
        print("   • --config config.json         (JSON config file)")
        print("   • M365_TENANT_ID / M365_CLIENT_ID environment variables")
        sys.exit(1)

    if profile and profile.default_domain and not config.default_domain:
        config.default_domain = profile.default_domain
    config.dry_run = args.dry_run or config.dry_run
    config.verbose = args.verbose or config.verbose
    if args.output_dir:
        config.output.base_dir = str(args.output_dir)
    if args.formats:
        config.output.formats = list(args.formats)
    return config


# ---------------------------------------------------------------------------
# Running an operation
# ---------------------------------------------------------------------------

async def run_operation(
    op_cls: type[Operation],
    params: dict[str, Any],
    config: ToolkitConfig,
    token: str,
    guard: ChangeGuard,
    transport=None,
) -> OperationResult:
    async with GraphClient(access_token=token, guard=guard, transport=transport) as client:
        operation = op_cls(graph=client, config=config)
        return await operation.execute(**params)


def _cell(value: Any) -> str:
    text = "" if value is None else str(value)
    if len(text) > CONSOLE_COLUMN_WIDTH:
        return text[:CONSOLE_COLUMN_WIDTH - 1] + "…"
    return text


def print_rows(rows: list[dict], limit: int = CONSOLE_ROW_LIMIT) -> None:
    if not rows:
        return
    columns = collect_columns(rows)
    widths = {
        c: min(CONSOLE_COLUMN_WIDTH, max(len(c), *(len(_cell(r.get(c))) for r in rows[:limit])))
        for c in columns
    }
    print("  " + "  ".join(f"{c:<{widths[c]}s}" for c in columns))
    print("  " + "  ".join("─" * widths[c] for c in columns))
    for row in rows[:limit]:
        print("  " + "  ".join(f"{_cell(row.get(c)):<{widths[c]}s}" for c in columns))
    if len(rows) > limit:
        print(f"  … {len(rows) - limit} more row(s); use --formats to export all")


def print_result(result: OperationResult, guard: ChangeGuard) -> None:
    meta = result.metadata
    marker = "✅" if result.ok else "❌"
    print(f"\n{marker} {result.operation_name}: {len(result.rows)} row(s) "
          f"in {meta['duration_seconds']}s ({meta['requests']} requests)\n")

    print_rows(result.rows)
    if not result.rows and result.data:
        print(json.dumps(result.data, indent=2, default=str))

    for w in meta["warnings"]:
        print(f"  ⚠  {w}")
    for e in meta["errors"]:
        print(f"  ❌ {e}")
    if guard.dry_run and guard.planned_changes:
        print(f"\n  ⏭  Dry run: {len(guard.planned_changes)} change(s) not sent")
        for change in guard.planned_changes:
            print(f"      {change['method']:<6s} {change['url']}")
    elif guard.applied_changes:
        print(f"\n  ✅ {len(guard.applied_changes)} change(s) sent to the tenant")


def export_result(result: OperationResult, op_cls: type[Operation], config: ToolkitConfig) -> list[Path]:
    if not config.output.formats or not result.rows:
        return []
    name = f"{op_cls.report_name or op_cls.name.replace('-', '_')}_{config.output.timestamp}"
    metadata = {
        "operation": result.operation_name,
        "dry_run": config.dry_run,
        "duration_seconds": result.metadata["duration_seconds"],
        "warnings": len(result.metadata["warnings"]),
        "errors": len(result.metadata["errors"]),
    }
    created = export_rows(
        result.rows,
        config.output.formats,
        config.output.output_dir,
        name,
        title=op_cls.description,
        metadata=metadata,
    )
    for path in created:
        print(f"  📄 {path}")
    return created


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for `python -m m365_admin` and the `m365-admin` script."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "profile":
        return _cmd_profile(args)
    if args.command == "schedule":
        return _cmd_schedule(args)
    if args.command == "permissions":
        return _cmd_permissions()

    op_cls = OPERATIONS[args.command]
    config = build_config(args)
    guard = ChangeGuard(dry_run=config.dry_run)
    guard.print_banner()

    # --- Authentication ---
    print("🔐 Authenticating...")
    authenticator = Authenticator(config.auth)
    try:
        authenticator.acquire_token()
        token = authenticator.require_context()
    except AuthenticationError as e:
        print(f"❌ {e}")
        return 1
    print("✅ Authentication successful.")

    result = asyncio.run(
        run_operation(op_cls, operation_params(op_cls, args), config, token, guard)
    )
    print_result(result, guard)
    export_result(result, op_cls, config)
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
