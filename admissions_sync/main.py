import argparse
import logging
import signal

from admissions_sync.cache import DEFAULT_NAMESPACES, InvalidationCoordinator, build_cache_client, namespaces_by_name
from admissions_sync.config import get_settings
from admissions_sync.database import build_engine, build_session_factory
from admissions_sync.ddl import DDL_SCRIPTS
from admissions_sync.pipeline import PipelineRunner
from admissions_sync.reporting import format_summary
from admissions_sync.schema_registry import SchemaRegistry, default_registry
from admissions_sync.scheduler import start_scheduler
from admissions_sync.verifier import SchemaVerifier


ALL_TABLES = "all"


def parse_args(table_names: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Normalize admissions data and keep derived caches consistent")
    subparsers = parser.add_subparsers(dest="command", required=True)
    table_choices = [*table_names, ALL_TABLES]

    run_parser = subparsers.add_parser("run", help="verify, normalize, load and invalidate")
    run_parser.add_argument("--table", default=ALL_TABLES, choices=table_choices, help="target table or 'all'")
    run_parser.add_argument("--province", help="only process this province")
    run_parser.add_argument("--year", type=int, help="only process this year")
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="run verify and normalize only, report what would have been committed",
    )

    migrate_parser = subparsers.add_parser("migrate", help="apply canonical table DDL (idempotent)")
    migrate_parser.add_argument("--table", default=ALL_TABLES, choices=table_choices)

    verify_parser = subparsers.add_parser("verify", help="compare live tables against the canonical schema")
    verify_parser.add_argument("--table", default=ALL_TABLES, choices=table_choices)

    invalidate_parser = subparsers.add_parser("invalidate", help="purge derived cache namespaces")
    invalidate_parser.add_argument(
        "--namespace",
        action="append",
        choices=[namespace.name for namespace in DEFAULT_NAMESPACES],
        help="namespace to purge, repeatable; defaults to all",
    )
    invalidate_parser.add_argument("--reason", default="manual invalidation")

    schedule_parser = subparsers.add_parser("schedule", help="start the daily ingestion scheduler")
    schedule_parser.add_argument("--run-now", action="store_true", help="also run once immediately")

    return parser.parse_args()


def _selected_tables(selection: str, table_names: list[str]) -> list[str]:
    return list(table_names) if selection == ALL_TABLES else [selection]


def _verify(verifier: SchemaVerifier, registry: SchemaRegistry, tables: list[str]) -> int:
    exit_code = 0
    for table in tables:
        result = verifier.verify(table, registry.latest(table))
        print(
            "table={table} version={version} ok={ok} missing={missing} extra={extra} type_mismatches={mismatches} tolerated={tolerated}".format(
                table=table,
                version=result.version,
                ok=result.ok,
                missing=",".join(result.drift) or "-",
                extra=",".join(result.extra) or "-",
                mismatches=",".join(m.column for m in result.type_mismatches) or "-",
                tolerated=",".join(result.tolerated) or "-",
            )
        )
        if not result.ok:
            exit_code = 1
    return exit_code


def main() -> None:
    registry = default_registry()
    table_names = registry.tables()
    args = parse_args(table_names)
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    engine = build_engine(settings)
    session_factory = build_session_factory(engine)

    if args.command == "migrate":
        verifier = SchemaVerifier(engine, settings)
        for table in _selected_tables(args.table, table_names):
            applied = verifier.migrate(table, DDL_SCRIPTS[table])
            print(f"table={table} statements_applied={len(applied)}")
        return

    if args.command == "verify":
        verifier = SchemaVerifier(engine, settings)
        raise SystemExit(_verify(verifier, registry, _selected_tables(args.table, table_names)))

    if args.command == "invalidate":
        namespaces = namespaces_by_name(args.namespace) if args.namespace else list(DEFAULT_NAMESPACES)
        coordinator = InvalidationCoordinator(build_cache_client(settings), settings)
        outcome = coordinator.invalidate(namespaces, reason=args.reason)
        for name, count in sorted(outcome.purged.items()):
            print(f"namespace={name} purged={count}")
        for name, message in sorted(outcome.failures.items()):
            print(f"namespace={name} failed={message} resume_cursor={outcome.cursors.get(name)}")
        if not outcome.ok:
            raise SystemExit(1)
        return

    dry_run = args.command == "run" and args.dry_run
    cache_client = None if dry_run else build_cache_client(settings)
    runner = PipelineRunner(settings, engine, session_factory, cache_client, registry=registry)
    if args.command == "schedule":
        start_scheduler(settings, runner, table_names, run_now=args.run_now)
        return

    signal.signal(signal.SIGTERM, lambda signum, frame: runner.cancel())

    report = runner.run(
        tables=_selected_tables(args.table, table_names),
        province=args.province,
        year=args.year,
        dry_run=dry_run,
    )
    print(format_summary(report))
    if report.status == "failed":
        raise SystemExit(1)


if __name__ == "__main__":
    main()
