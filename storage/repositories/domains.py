"""
Domain Repository.

Responsibilities:
- Look up live domains by name for foreign-key resolution.
- Import domain snapshots so a backfill can run outside the registry.

Non-Responsibilities:
- No domain lifecycle: the registry owns domains, this is a read model.

Invariant:
Lookups see the current state of the dataset, never its history.
"""

import json
from pathlib import Path
from typing import Iterable, List, Optional

from threatmatch.errors import ParseError
from threatmatch.models import DomainRecord
from threatmatch.normalize import normalize_domain_name, normalize_registrar_id
from threatmatch.transaction import TransactionManager

DOMAIN_IMPORT_FIELDS = ("domainName", "repoId", "currentSponsorRegistrarId")


class DomainStore:
    """Read access to the live domain dataset."""

    def __init__(self, tm: TransactionManager):
        self.tm = tm

    def find_by_name(self, domain_name: str) -> Optional[DomainRecord]:
        """
        Return the domain currently holding domain_name, or None.

        Runs in its own short transaction, or joins the caller's.
        """
        name = normalize_domain_name(domain_name)
        matches = self.tm.transact(
            lambda: self.tm.load_all(DomainRecord.KIND, domain_name=name)
        )
        if not matches:
            return None
        # Only one live domain can hold a name; pick deterministically if the data disagrees
        return sorted(matches, key=lambda d: d.repo_id)[0]

    def import_domains(self, domains: Iterable[DomainRecord]) -> int:
        """Upsert domains in one transaction. Returns the number written."""
        domains = list(domains)
        self.tm.transact(lambda: self.tm.save_all(domains))
        return len(domains)


def read_domain_file(path: Path) -> List[DomainRecord]:
    """
    Parse a JSON-lines domain snapshot.

    Each line: {"domainName": ..., "repoId": ..., "currentSponsorRegistrarId": ...}

    Raises:
        ParseError: On malformed lines
    """
    domains = []
    with path.open("r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, 1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                raise ParseError(f"{path}:{line_number}: invalid JSON: {e}") from e
            if not isinstance(data, dict):
                raise ParseError(f"{path}:{line_number}: expected a JSON object")
            missing = [f for f in DOMAIN_IMPORT_FIELDS if not isinstance(data.get(f), str) or not data[f].strip()]
            if missing:
                raise ParseError(f"{path}:{line_number}: missing field(s): {', '.join(missing)}")
            domains.append(DomainRecord(
                repo_id=data["repoId"].strip(),
                domain_name=normalize_domain_name(data["domainName"]),
                current_sponsor_registrar_id=normalize_registrar_id(data["currentSponsorRegistrarId"]),
            ))
    return domains
