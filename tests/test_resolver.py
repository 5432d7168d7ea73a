"""
Tests for domain foreign-key resolution.
"""

from typing import Dict, Optional

import pytest

from pipelines.entity_resolution.resolver import DomainResolver
from storage.repositories.domains import DomainStore
from threatmatch.errors import ForeignKeyError
from threatmatch.models import DomainRecord


class StaticDomainLookup:
    """Domain lookup over a fixed mapping, counting calls."""

    def __init__(self, domains: Dict[str, DomainRecord]):
        self.domains = domains
        self.calls = 0

    def find_by_name(self, domain_name: str) -> Optional[DomainRecord]:
        self.calls += 1
        return self.domains.get(domain_name)


@pytest.fixture
def lookup():
    return StaticDomainLookup({
        "a.com": DomainRecord(repo_id="1-COM", domain_name="a.com", current_sponsor_registrar_id="Reg1"),
        "b.com": DomainRecord(repo_id="2-COM", domain_name="b.com", current_sponsor_registrar_id="Reg2"),
    })


class TestDomainResolver:
    """Resolve (domain, registrar) pairs to repo ids."""

    def test_resolves_owned_domain(self, lookup):
        """A domain owned by the registrar resolves to its repo ID."""
        assert DomainResolver(lookup).resolve("a.com", "Reg1") == "1-COM"

    def test_normalizes_name(self, lookup):
        """Names are normalized before lookup."""
        assert DomainResolver(lookup).resolve("A.COM.", "Reg1") == "1-COM"

    def test_unknown_domain(self, lookup):
        """An unknown domain is a foreign key error."""
        with pytest.raises(ForeignKeyError, match="Unknown domain c.com"):
            DomainResolver(lookup).resolve("c.com", "Reg2")

    def test_wrong_sponsor(self, lookup):
        """A domain sponsored by another registrar is a foreign key error."""
        with pytest.raises(ForeignKeyError, match="Domain a.com is not owned by registrar Reg2"):
            DomainResolver(lookup).resolve("a.com", "Reg2")

    def test_registrar_is_case_sensitive(self, lookup):
        """Registrar IDs compare exactly."""
        with pytest.raises(ForeignKeyError):
            DomainResolver(lookup).resolve("a.com", "reg1")

    def test_caches_hits(self, lookup):
        """A resolved name is looked up once."""
        resolver = DomainResolver(lookup)
        resolver.resolve("a.com", "Reg1")
        resolver.resolve("a.com", "Reg1")
        assert lookup.calls == 1

    def test_caches_misses(self, lookup):
        """An unknown name is looked up once."""
        resolver = DomainResolver(lookup)
        for _ in range(2):
            with pytest.raises(ForeignKeyError):
                resolver.resolve("c.com", "Reg1")
        assert lookup.calls == 1

    def test_clear(self, lookup):
        """clear() drops cached lookups."""
        resolver = DomainResolver(lookup)
        resolver.resolve("a.com", "Reg1")
        resolver.clear()
        resolver.resolve("a.com", "Reg1")
        assert lookup.calls == 2

    def test_against_domain_store(self, seeded_tm):
        """The live dataset works as a lookup."""
        resolver = DomainResolver(DomainStore(seeded_tm))
        assert resolver.resolve("b.com", "Reg2") == "2-COM"
