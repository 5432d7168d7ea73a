import argparse
from datetime import date
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config import Settings, get_settings
from .errors import ConfigurationError, ParseError, StorageError
from .logger import get_logger
from .migration import migrate, validate
from .registry import TransactionManagerRegistry
from .report_files import parse_month, parse_report_date

from pipelines.backfill.spec11_threat_matches import Spec11BackfillPipeline
from storage.repositories.domains import DomainStore, read_domain_file
from storage.repositories.threat_matches import ThreatMatchStore


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected a date as yyyy-MM-dd, got {value!r}")


def build_registry(args: argparse.Namespace, settings: Optional[Settings] = None) -> TransactionManagerRegistry:
    settings = (settings or get_settings()).with_overrides(
        primary_backend=getattr(args, "backend", None),
        database_url=getattr(args, "database_url", None),
        object_store_path=getattr(args, "object_store", None),
        reporting_root=getattr(args, "reporting_root", None),
        workers=getattr(args, "workers", None),
    )
    return TransactionManagerRegistry(settings)


def cmd_init_db(args: argparse.Namespace, registry: TransactionManagerRegistry) -> None:
    # Building the relational handle creates any missing tables
    registry.sql_tm()
    print(f"Database ready: {registry.settings.database_url}")


def cmd_import_domains(args: argparse.Namespace, registry: TransactionManagerRegistry) -> None:
    input_path = Path(args.input)
    if not input_path.exists():
        raise SystemExit(f"Input file not found: {input_path}")
    domains = read_domain_file(input_path)
    count = DomainStore(registry.tm()).import_domains(domains)
    print(f"Imported {count} domains into the {registry.settings.primary_backend} backend.")


def cmd_backfill(args: argparse.Namespace, registry: TransactionManagerRegistry) -> None:
    settings = registry.settings
    start = parse_month(args.start or settings.start_month)
    end = parse_month(args.end or settings.end_month)
    dates = set(args.date) if args.date else None

    pipeline = Spec11BackfillPipeline.from_registry(registry)
    result = pipeline.run(start, end, dates=dates)

    print(result.summary())
    if result.rejected_files:
        print(f"Rejected {len(result.rejected_files)} files with unrecognized names:")
        for location in result.rejected_files:
            print(f"  {location}")
    if result.has_failures:
        failed_dates = sorted({parse_report_date(f.location) for f in result.failed_files})
        print("Re-run only the failed partitions with:")
        rerun = [f"--start {start:%Y-%m}", f"--end {end:%Y-%m}"]
        rerun += [f"--date {d.isoformat()}" for d in failed_dates]
        print("  " + " ".join(rerun))
        raise SystemExit(1)


def cmd_show(args: argparse.Namespace, registry: TransactionManagerRegistry) -> None:
    tm = registry.tm()
    store = ThreatMatchStore(tm)
    records = tm.transact(lambda: store.load_by_date(args.date))
    if not records:
        print(f"No threat matches for {args.date.isoformat()}.")
        return
    print(f"Found {len(records)} threat matches for {args.date.isoformat()}:\n")
    for record in sorted(records, key=lambda r: (r.domain_name, r.key().id)):
        threats = ",".join(sorted(t.value for t in record.threat_types))
        print(f"{record.domain_name}")
        print(f"  Repo ID: {record.domain_repo_id}")
        print(f"  Registrar: {record.registrar_id}")
        print(f"  Threats: {threats}")


def cmd_migrate(args: argparse.Namespace, registry: TransactionManagerRegistry) -> None:
    report = migrate(registry.object_store_tm(), registry.sql_tm(), dry_run=args.dry_run)
    prefix = "[DRY RUN] Would migrate" if report.dry_run else "Migrated"
    for kind, count in report.copied.items():
        print(f"{prefix} {count} {kind} records")


def cmd_validate_migration(args: argparse.Namespace, registry: TransactionManagerRegistry) -> None:
    report = validate(registry.object_store_tm(), registry.sql_tm())
    if report.ok:
        print("All records validated successfully.")
        return
    if report.missing:
        print(f"MISSING from SQL: {len(report.missing)} records")
        for key in report.missing[:5]:
            print(f"   - {key.kind}/{key.id}")
    if report.extra:
        print(f"EXTRA in SQL: {len(report.extra)} records")
        for key in report.extra[:5]:
            print(f"   - {key.kind}/{key.id}")
    if report.mismatched:
        print(f"DATA MISMATCHES: {len(report.mismatched)} records")
        for key, changed in list(report.mismatched.items())[:5]:
            print(f"   - {key.kind}/{key.id}: {', '.join(sorted(changed))}")
    raise SystemExit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="threatmatch", description="Spec11 threat-match backfill and storage tools"
    )
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--backend", choices=["sql", "object"], help="Primary backend (or THREATMATCH_PRIMARY_BACKEND)")
    parser.add_argument("--database-url", help="SQLAlchemy URL (or THREATMATCH_DATABASE_URL)")
    parser.add_argument("--object-store", type=Path, help="Path to JSON object store (or THREATMATCH_OBJECT_STORE_PATH)")

    subparsers = parser.add_subparsers(dest="command")

    init = subparsers.add_parser("init-db", help="Create the relational schema")
    init.set_defaults(func=cmd_init_db)

    imp = subparsers.add_parser("import-domains", help="Load a JSON-lines domain snapshot into the primary backend")
    imp.add_argument("--input", required=True, help="Path to domains file, one JSON object per line")
    imp.set_defaults(func=cmd_import_domains)

    bf = subparsers.add_parser("backfill", help="Rebuild threat-match partitions from Spec11 report files")
    bf.add_argument("--start", help="First month, yyyy-MM (default: THREATMATCH_START_MONTH or 2019-01)")
    bf.add_argument("--end", help="Last month, yyyy-MM, included (default: THREATMATCH_END_MONTH or 2020-07)")
    bf.add_argument("--date", type=_parse_date, action="append", help="Only backfill this partition (repeatable)")
    bf.add_argument("--reporting-root", type=Path, help="Root containing icann/spec11/<yyyy-MM>/")
    bf.add_argument("--workers", type=int, help="Number of files processed in parallel")
    bf.set_defaults(func=cmd_backfill)

    show = subparsers.add_parser("show", help="List the threat matches of one partition")
    show.add_argument("--date", required=True, type=_parse_date, help="Check date, yyyy-MM-dd")
    show.set_defaults(func=cmd_show)

    mig = subparsers.add_parser("migrate", help="Copy all records from the object store to SQL")
    mig.add_argument("--dry-run", action="store_true", help="Show what would be migrated without writing")
    mig.set_defaults(func=cmd_migrate)

    val = subparsers.add_parser("validate-migration", help="Compare object store and SQL contents")
    val.set_defaults(func=cmd_validate_migration)

    return parser


def main(argv: Optional[List[str]] = None, settings: Optional[Settings] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return

    if not hasattr(args, "func"):
        parser.print_help()
        return

    try:
        registry = build_registry(args, settings)
    except ConfigurationError as e:
        raise SystemExit(f"Configuration error: {e}")

    get_logger(
        level=registry.settings.log_level,
        log_dir=registry.settings.log_dir,
        enable_file=registry.settings.log_dir is not None,
    )
    try:
        args.func(args, registry)
    except (ConfigurationError, ParseError, StorageError) as e:
        raise SystemExit(f"{type(e).__name__}: {e}")
    finally:
        registry.close()


if __name__ == "__main__":
    main()
