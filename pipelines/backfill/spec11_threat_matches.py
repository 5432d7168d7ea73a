"""
Spec11 Threat Match Backfill Pipeline.

Responsibilities:
- Discover monthly Spec11 report files for a range of months.
- Parse each file, resolve every match to a live domain, and replace the
  file's partition (check date) in one transaction.
- Isolate failures per file and report them.

Non-Responsibilities:
- No guard against two runs over the same dates; that is operational.
- No point-in-time domain lookups.

Invariant:
A partition is either left untouched or fully replaced by the records of one
file. Re-running a file yields the same partition as running it once.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Collection, Iterable, List, Optional, Protocol, Tuple, Union

from threatmatch.errors import SYSTEMIC_ERRORS, ParseError, TransientStorageError
from threatmatch.logger import StructuredLogger, get_logger
from threatmatch.models import BackfillJobResult, FileFailure, ReportFile, ThreatMatchRecord
from threatmatch.registry import TransactionManagerRegistry
from threatmatch.report_files import LocalReportFileSystem, month_range, parse_report_date, report_folder
from threatmatch.retry import exponential_backoff
from threatmatch.schema import parse_report_line
from threatmatch.transaction import TransactionManager

from pipelines.entity_resolution.resolver import DomainResolver
from storage.repositories.domains import DomainStore
from storage.repositories.threat_matches import ThreatMatchStore


class JobState(Enum):
    NOT_STARTED = "NOT_STARTED"
    LISTING = "LISTING"
    PROCESSING = "PROCESSING"
    DONE = "DONE"


class FileState(Enum):
    PARSING = "PARSING"
    RESOLVING = "RESOLVING"
    WRITING = "WRITING"
    FILE_SUCCEEDED = "FILE_SUCCEEDED"
    FILE_FAILED = "FILE_FAILED"


class ReportFileSystem(Protocol):
    def list_folder(self, folder: Path) -> List[str]:
        ...

    def read_text(self, location: Union[str, Path]) -> str:
        ...


class _FailureLog:
    """Append-only failure accumulator shared by workers."""

    def __init__(self):
        self._failures: List[FileFailure] = []
        self._lock = threading.Lock()

    def append(self, failure: FileFailure) -> None:
        with self._lock:
            self._failures.append(failure)

    def snapshot(self) -> Tuple[FileFailure, ...]:
        with self._lock:
            return tuple(sorted(self._failures, key=lambda f: f.location))


class Spec11BackfillPipeline:
    """Rebuilds Spec11 threat-match partitions from monthly report files."""

    def __init__(
        self,
        tm: TransactionManager,
        file_system: ReportFileSystem,
        resolver: DomainResolver,
        reporting_root: Union[str, Path],
        workers: int = 1,
        commit_retries: int = 3,
        retry_base_delay: float = 0.5,
        logger: Optional[StructuredLogger] = None,
    ):
        self.tm = tm
        self.store = ThreatMatchStore(tm)
        self.file_system = file_system
        self.resolver = resolver
        self.reporting_root = Path(reporting_root)
        self.workers = max(1, workers)
        self.commit_retries = commit_retries
        self.retry_base_delay = retry_base_delay
        self.logger = logger or get_logger()
        self.state = JobState.NOT_STARTED

    @classmethod
    def from_registry(
        cls,
        registry: TransactionManagerRegistry,
        file_system: Optional[ReportFileSystem] = None,
        **overrides,
    ) -> "Spec11BackfillPipeline":
        """Wire a pipeline to the registry's primary backend and its settings."""
        settings = registry.settings
        tm = registry.tm()
        options = {
            "reporting_root": settings.reporting_root,
            "workers": settings.workers,
            "commit_retries": settings.commit_retries,
            "retry_base_delay": settings.retry_base_delay,
        }
        options.update({k: v for k, v in overrides.items() if v is not None})
        return cls(
            tm=tm,
            file_system=file_system or LocalReportFileSystem(),
            resolver=DomainResolver(DomainStore(tm)),
            **options,
        )

    def _set_state(self, state: JobState) -> None:
        self.state = state
        self.logger.debug("Backfill state change", state=state.value)

    # Discovery

    def discover(
        self,
        start_month: date,
        end_month: date,
        dates: Optional[Collection[date]] = None,
    ) -> Tuple[List[ReportFile], List[str]]:
        """
        List report files for every month in [start_month, end_month].

        Args:
            start_month: First month (any day in it)
            end_month: Last month, included
            dates: If given, only files feeding these partitions are kept

        Returns:
            (report files, locations rejected because their name did not parse)
        """
        self._set_state(JobState.LISTING)
        files: List[ReportFile] = []
        rejected: List[str] = []
        seen_dates = set()

        for month in month_range(start_month, end_month):
            folder = report_folder(self.reporting_root, month)
            names = self.file_system.list_folder(folder)
            self.logger.debug("Listed report folder", folder=str(folder), files=len(names))
            for name in names:
                location = str(folder / name)
                try:
                    report_date = parse_report_date(name)
                except ParseError as e:
                    self.logger.warning("Rejected report file", location=location, reason=str(e))
                    rejected.append(location)
                    continue
                if dates is not None and report_date not in dates:
                    continue
                if report_date in seen_dates:
                    self.logger.warning(
                        "Several report files feed one partition; the last exchange wins",
                        location=location,
                        check_date=report_date,
                    )
                seen_dates.add(report_date)
                files.append(ReportFile(location=location, report_date=report_date))

        self.logger.info("Discovered report files", files=len(files), rejected=len(rejected))
        return files, rejected

    # Per-file processing

    def parse_report(self, report_file: ReportFile, text: str) -> List[dict]:
        """Parse every line after the header. Blank lines are skipped."""
        parsed = []
        for line_number, line in enumerate(text.splitlines()[1:], start=2):
            if not line.strip():
                continue
            parsed.append(parse_report_line(line, line_number))
        return parsed

    def build_records(self, report_file: ReportFile, parsed: Iterable[dict]) -> List[ThreatMatchRecord]:
        """
        Resolve every threat match to a live domain.

        Raises:
            ForeignKeyError: On the first unknown or foreign-sponsored domain;
                the whole file is rejected
        """
        records = {}
        for line in parsed:
            registrar_id = line["registrar_id"]
            for domain_name, threat_type in line["threat_matches"]:
                record = ThreatMatchRecord(
                    check_date=report_file.report_date,
                    domain_name=domain_name,
                    domain_repo_id=self.resolver.resolve(domain_name, registrar_id),
                    registrar_id=registrar_id,
                    threat_types=frozenset([threat_type]),
                )
                records[record.key()] = record
        return list(records.values())

    def exchange_partition(self, check_date: date, records: List[ThreatMatchRecord]) -> None:
        """
        Replace the partition for check_date with records, atomically.

        Commit conflicts are retried with exponential backoff; the whole
        delete-then-insert is repeated each time.

        Raises:
            RetryError: If every attempt conflicted
        """
        def on_retry(attempt, error, delay):
            self.logger.warning(
                "Partition exchange conflicted, retrying",
                check_date=check_date,
                attempt=attempt,
                delay=delay,
                error=str(error),
            )

        @exponential_backoff(
            max_retries=self.commit_retries,
            base_delay=self.retry_base_delay,
            exceptions=(TransientStorageError,),
            on_retry=on_retry,
        )
        def exchange():
            with self.tm.transaction():
                self.store.delete_by_date(check_date)
                self.store.save_all(records)

        exchange()

    def process_file(self, report_file: ReportFile) -> int:
        """
        Parse, resolve and write one report file.

        Returns:
            Number of records now in the file's partition
        """
        context = {"location": report_file.location, "check_date": report_file.report_date}

        self.logger.debug("Processing report file", state=FileState.PARSING.value, **context)
        text = self.file_system.read_text(report_file.location)
        parsed = self.parse_report(report_file, text)

        self.logger.debug("Processing report file", state=FileState.RESOLVING.value, **context)
        records = self.build_records(report_file, parsed)

        self.logger.debug(
            "Processing report file", state=FileState.WRITING.value, records=len(records), **context
        )
        self.exchange_partition(report_file.report_date, records)
        return len(records)

    def _process_isolated(self, report_file: ReportFile, failures: _FailureLog) -> int:
        self.logger.record_file_attempt(report_file.month)
        try:
            written = self.process_file(report_file)
        except SYSTEMIC_ERRORS as e:
            self.logger.critical(
                "Aborting backfill", location=report_file.location, error=f"{type(e).__name__}: {e}"
            )
            raise
        except Exception as e:
            cause = f"{type(e).__name__}: {e}"
            failures.append(FileFailure(location=report_file.location, cause=cause))
            self.logger.record_file_failure(report_file.month, type(e).__name__)
            self.logger.error(
                "Report file failed",
                state=FileState.FILE_FAILED.value,
                location=report_file.location,
                error=cause,
            )
            return 0

        self.logger.record_file_success(report_file.month, written)
        self.logger.info(
            "Report file succeeded",
            state=FileState.FILE_SUCCEEDED.value,
            location=report_file.location,
            records=written,
        )
        return written

    # Job

    def run(
        self,
        start_month: date,
        end_month: date,
        dates: Optional[Collection[date]] = None,
    ) -> BackfillJobResult:
        """
        Backfill every partition with a report file in [start_month, end_month].

        Per-file failures are recorded in the result, never raised.

        Raises:
            ConfigurationError: On transactional misuse or an invalid month range
            StorageUnavailableError: If the backend cannot be reached
        """
        files, rejected = self.discover(start_month, end_month, dates)

        self._set_state(JobState.PROCESSING)
        failures = _FailureLog()
        written = 0

        if self.workers == 1 or len(files) <= 1:
            for report_file in files:
                written += self._process_isolated(report_file, failures)
        else:
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="backfill") as pool:
                futures = [pool.submit(self._process_isolated, f, failures) for f in files]
                try:
                    for future in as_completed(futures):
                        written += future.result()
                except BaseException:
                    pool.shutdown(wait=True, cancel_futures=True)
                    raise

        failed = failures.snapshot()
        result = BackfillJobResult(
            total_files=len(files),
            succeeded_files=len(files) - len(failed),
            failed_files=failed,
            rejected_files=tuple(rejected),
            records_written=written,
        )
        self._set_state(JobState.DONE)
        self.logger.log_metrics_summary()
        if result.has_failures:
            self.logger.warning(result.summary())
        else:
            self.logger.info(result.summary())
        return result
