"""
Domain Foreign-Key Resolver.

Responsibilities:
- Turn a reported (domain name, registrar) pair into the domain's repo id.
- Reject matches whose domain is unknown or sponsored by someone else.

Non-Responsibilities:
- No writes.
- No point-in-time lookups: resolution uses the current state of the
  domain dataset, not its state on the report's check date.

Invariant:
A resolved repo id always belongs to a domain whose current name equals the
requested name.
"""

import threading
from typing import Dict, Optional, Protocol

from threatmatch.errors import ForeignKeyError
from threatmatch.models import DomainRecord
from threatmatch.normalize import normalize_domain_name


class DomainLookup(Protocol):
    def find_by_name(self, domain_name: str) -> Optional[DomainRecord]:
        ...


class DomainResolver:
    """
    Resolves domain names against a DomainLookup, caching lookups for one run.

    Negative results are cached too. Thread-safe; concurrent misses for the
    same name may both hit the lookup.
    """

    def __init__(self, lookup: DomainLookup):
        self.lookup = lookup
        self._cache: Dict[str, Optional[DomainRecord]] = {}
        self._lock = threading.Lock()

    def _find(self, domain_name: str) -> Optional[DomainRecord]:
        with self._lock:
            if domain_name in self._cache:
                return self._cache[domain_name]
        domain = self.lookup.find_by_name(domain_name)
        with self._lock:
            self._cache[domain_name] = domain
        return domain

    def resolve(self, domain_name: str, registrar_id: str) -> str:
        """
        Return the repo id of domain_name.

        Raises:
            ForeignKeyError: If no live domain has that name, or it is not
                sponsored by registrar_id
        """
        name = normalize_domain_name(domain_name)
        domain = self._find(name)
        if domain is None or domain.domain_name != name:
            raise ForeignKeyError(f"Unknown domain {name}")
        if domain.current_sponsor_registrar_id != registrar_id:
            raise ForeignKeyError(
                f"Domain {name} is not owned by registrar {registrar_id}"
            )
        return domain.repo_id

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
