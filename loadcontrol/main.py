import argparse
from dataclasses import replace
from datetime import date, datetime
import logging

from loadcontrol.config import get_settings
from loadcontrol.database import build_session_factory
from loadcontrol.errors import PackageNotFound, QuarantineEntryNotFound, ResolutionConflict
from loadcontrol.pipeline import SKIPPED_STATUS, PipelineRunner
from loadcontrol.quarantine import list_quarantine_entries, resolve_quarantine_entry
from loadcontrol.run_control import provision_package
from loadcontrol.run_log import list_log_entries
from loadcontrol.scheduler import start_scheduler


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Control and validate batch package loads")
    parser.add_argument("--package", required=False, help="Package name (defaults to PACKAGE_NAME)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("provision", help="create the package control record")

    run_parser = subparsers.add_parser("run", help="run one package execution")
    run_parser.add_argument("--run-date", required=True, help="Run date in YYYY-MM-DD format")
    run_parser.add_argument(
        "--trigger-source",
        default="manual",
        choices=["manual", "scheduled"],
        help="Metadata label for how this run was triggered",
    )

    schedule_parser = subparsers.add_parser("schedule", help="start the nightly scheduler")
    schedule_parser.add_argument("--run-now", action="store_true", help="also run once immediately")

    quarantine_parser = subparsers.add_parser("quarantine", help="list quarantined records")
    quarantine_parser.add_argument("--all", action="store_true", help="include resolved entries")

    resolve_parser = subparsers.add_parser("resolve", help="mark a quarantine entry as resolved")
    resolve_parser.add_argument("entry_id", type=int)
    resolve_parser.add_argument("--by", required=True, help="Operator resolving the entry")

    history_parser = subparsers.add_parser("history", help="show run log entries")
    history_parser.add_argument("--since", required=False, help="ISO timestamp lower bound")
    history_parser.add_argument("--until", required=False, help="ISO timestamp upper bound")

    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()
    package_name = args.package or settings.package_name
    if package_name != settings.package_name:
        settings = replace(settings, package_name=package_name)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    session_factory = build_session_factory(settings.database_url)
    if args.command == "schedule":
        start_scheduler(settings, session_factory, run_now=args.run_now)
        return

    if args.command == "provision":
        with session_factory() as db:
            package_run, created = provision_package(db, package_name)
            print(f"package={package_run.package_name} status={package_run.status} created={created}")
        return

    if args.command == "quarantine":
        with session_factory() as db:
            for entry in list_quarantine_entries(db, package_name=package_name, unresolved_only=not args.all):
                print(
                    f"id={entry.id} staging_id={entry.staging_id} source={entry.source_data} "
                    f"status={entry.resolution_status} error={entry.error_message!r}"
                )
        return

    if args.command == "resolve":
        with session_factory() as db:
            try:
                entry = resolve_quarantine_entry(db, args.entry_id, resolved_by=args.by)
            except (QuarantineEntryNotFound, ResolutionConflict) as exc:
                print(f"error={exc}")
                raise SystemExit(1)
            print(f"id={entry.id} status={entry.resolution_status} resolved_by={entry.resolved_by}")
        return

    if args.command == "history":
        since = datetime.fromisoformat(args.since) if args.since else None
        until = datetime.fromisoformat(args.until) if args.until else None
        with session_factory() as db:
            for log_entry in list_log_entries(db, package_name, since=since, until=until):
                print(
                    f"{log_entry.start_time.isoformat()} step={log_entry.step_name!r} status={log_entry.status} "
                    f"records={log_entry.records_processed} error={log_entry.error_message!r}"
                )
        return

    runner = PipelineRunner(settings, session_factory)
    try:
        result = runner.run(run_date=date.fromisoformat(args.run_date), trigger_source=args.trigger_source)
    except PackageNotFound as exc:
        print(f"error={exc}")
        raise SystemExit(1)

    print(
        "package={package} date={run_date} trigger={trigger} status={status} extracted={extracted} loaded={loaded} rejected={rejected} output={output}".format(
            package=result.package_name,
            run_date=result.run_date.isoformat(),
            trigger=result.trigger_source,
            status=result.status,
            extracted=result.records_extracted,
            loaded=result.records_loaded,
            rejected=result.records_rejected,
            output=result.output_path,
        )
    )
    if result.status == SKIPPED_STATUS:
        raise SystemExit(2)
    if result.error is not None:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
