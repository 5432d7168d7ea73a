"""
Spec11 Threat Match Repository.

Responsibilities:
- Load, delete and insert threat matches by check date (partition).

Non-Responsibilities:
- No transaction boundaries: callers open them.
- No foreign-key resolution.

Invariant:
Every operation runs inside the caller's active transaction.
"""

from datetime import date
from typing import FrozenSet, Iterable

from threatmatch.models import ThreatMatchRecord
from threatmatch.transaction import TransactionManager


class ThreatMatchStore:
    """Partition-scoped data access for ThreatMatchRecord."""

    def __init__(self, tm: TransactionManager):
        self.tm = tm

    def delete_by_date(self, check_date: date) -> None:
        """Delete every threat match checked on check_date. Deleting nothing is fine."""
        self.tm.assert_in_transaction()
        self.tm.delete_all(ThreatMatchRecord.KIND, check_date=check_date)

    def load_by_date(self, check_date: date) -> FrozenSet[ThreatMatchRecord]:
        self.tm.assert_in_transaction()
        return frozenset(self.tm.load_all(ThreatMatchRecord.KIND, check_date=check_date))

    def save_all(self, records: Iterable[ThreatMatchRecord]) -> None:
        self.tm.assert_in_transaction()
        self.tm.save_all(records)
