"""
Spec11 report file naming and discovery.

Reports live under <reporting-root>/icann/spec11/<yyyy-MM>/ and are named
SPEC11_MONTHLY_REPORT_<yyyy-MM-dd>. The date in the name is the partition the
file feeds.
"""

import re
from datetime import date
from pathlib import Path
from typing import List, Union

from .errors import ConfigurationError, ParseError
from .retry import exponential_backoff

FILENAME_PREFIX = "SPEC11_MONTHLY_REPORT_"
FILENAME_PATTERN = re.compile(r"SPEC11_MONTHLY_REPORT_(\d{4}-\d{2}-\d{2})")
SPEC11_SUBDIR = "icann/spec11"


def parse_report_date(filename: str) -> date:
    """
    Extract the partition date from a report filename.

    Args:
        filename: Bare filename or path; only the last component is matched

    Returns:
        The embedded date

    Raises:
        ParseError: If the name does not follow the convention or the date is invalid
    """
    name = Path(filename).name
    match = FILENAME_PATTERN.fullmatch(name)
    if match is None:
        raise ParseError(f"Not a Spec11 report filename: {name}")
    try:
        return date.fromisoformat(match.group(1))
    except ValueError as e:
        raise ParseError(f"Invalid date in report filename {name}: {e}") from e


def report_filename(report_date: date) -> str:
    return f"{FILENAME_PREFIX}{report_date.isoformat()}"


def parse_month(value: str) -> date:
    """Parse yyyy-MM into the first day of that month."""
    try:
        year, month = value.strip().split("-")
        return date(int(year), int(month), 1)
    except ValueError:
        raise ConfigurationError(f"Expected a month as yyyy-MM, got {value!r}")


def month_range(start: date, end: date) -> List[date]:
    """
    List the first day of every month from start to end, both included.

    Raises:
        ConfigurationError: If end is before start
    """
    first = date(start.year, start.month, 1)
    last = date(end.year, end.month, 1)
    if last < first:
        raise ConfigurationError(f"End month {last:%Y-%m} is before start month {first:%Y-%m}")

    months = []
    current = first
    while current <= last:
        months.append(current)
        if current.month == 12:
            current = date(current.year + 1, 1, 1)
        else:
            current = date(current.year, current.month + 1, 1)
    return months


def report_folder(reporting_root: Union[str, Path], month: date) -> Path:
    return Path(reporting_root) / SPEC11_SUBDIR / month.strftime("%Y-%m")


class LocalReportFileSystem:
    """
    Report files on a local or mounted directory tree.

    Reads retry on timeouts and dropped connections, which a mounted bucket
    can produce.
    """

    def __init__(self, max_retries: int = 2, base_delay: float = 0.5):
        self._read = exponential_backoff(
            max_retries=max_retries,
            base_delay=base_delay,
            exceptions=(TimeoutError, ConnectionError),
        )(self._read_once)

    def list_folder(self, folder: Path) -> List[str]:
        """Return the sorted names of regular files in folder, or [] if it does not exist."""
        folder = Path(folder)
        if not folder.is_dir():
            return []
        return sorted(p.name for p in folder.iterdir() if p.is_file())

    def read_text(self, location: Union[str, Path]) -> str:
        return self._read(location)

    @staticmethod
    def _read_once(location: Union[str, Path]) -> str:
        return Path(location).read_text(encoding="utf-8")
