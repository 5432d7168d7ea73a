"""
Copy records between backends during the object store to SQL migration.

Usage (through the CLI):
    threatmatch migrate --dry-run
    threatmatch migrate
    threatmatch validate-migration
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence

from .logger import get_logger
from .models import DomainRecord, Key, ThreatMatchRecord
from .storage import diff_dict
from .transaction import TransactionManager

MIGRATED_KINDS = (DomainRecord.KIND, ThreatMatchRecord.KIND)


@dataclass
class MigrationReport:
    copied: Dict[str, int] = field(default_factory=dict)
    dry_run: bool = False


@dataclass
class ValidationReport:
    missing: List[Key] = field(default_factory=list)  # in source, not in target
    extra: List[Key] = field(default_factory=list)  # in target, not in source
    mismatched: Dict[Key, Dict[str, Dict]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.missing and not self.extra and not self.mismatched


def _snapshot(tm: TransactionManager, kind: str) -> Dict[Key, Dict]:
    records = tm.transact(lambda: tm.load_all(kind))
    return {record.key(): record.to_dict() for record in records}


def migrate(
    source: TransactionManager,
    target: TransactionManager,
    kinds: Sequence[str] = MIGRATED_KINDS,
    dry_run: bool = False,
) -> MigrationReport:
    """
    Copy every record of the given kinds from source to target.

    Each kind is read in one source transaction and written in one target
    transaction, so a failed copy leaves the target kind unchanged.

    Args:
        source: Backend being migrated away from
        target: Backend being migrated to
        kinds: Record kinds to copy
        dry_run: Count records without writing
    """
    logger = get_logger()
    report = MigrationReport(dry_run=dry_run)

    for kind in kinds:
        records = source.transact(lambda: source.load_all(kind))
        report.copied[kind] = len(records)
        if dry_run:
            logger.info("Would migrate records", kind=kind, count=len(records))
            continue
        target.transact(lambda: target.save_all(records))
        logger.info("Migrated records", kind=kind, count=len(records))

    return report


def validate(
    source: TransactionManager,
    target: TransactionManager,
    kinds: Iterable[str] = MIGRATED_KINDS,
) -> ValidationReport:
    """Compare source and target record by record."""
    report = ValidationReport()

    for kind in kinds:
        source_records = _snapshot(source, kind)
        target_records = _snapshot(target, kind)

        for key in sorted(set(source_records) - set(target_records)):
            report.missing.append(key)
        for key in sorted(set(target_records) - set(source_records)):
            report.extra.append(key)
        for key in sorted(set(source_records) & set(target_records)):
            changed = diff_dict(source_records[key], target_records[key])
            if changed:
                report.mismatched[key] = changed

    return report
