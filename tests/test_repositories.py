"""
Tests for the threat match and domain repositories.
"""

import json
from datetime import date

import pytest

from storage.repositories.domains import DomainStore, read_domain_file
from storage.repositories.threat_matches import ThreatMatchStore
from threatmatch.errors import ConfigurationError, ParseError
from threatmatch.models import DomainRecord, ThreatMatchRecord, ThreatType

CHECK_DATE = date(2020, 7, 29)


def make_match(domain_name, check_date=CHECK_DATE, registrar_id="Reg1", threat=ThreatType.MALWARE):
    return ThreatMatchRecord(
        check_date=check_date,
        domain_name=domain_name,
        domain_repo_id=f"{domain_name}-REPO",
        registrar_id=registrar_id,
        threat_types={threat},
    )


class TestThreatMatchStore:
    """Partition-scoped reads and writes."""

    def test_operations_require_transaction(self, tm):
        """Partition operations must run inside a transaction."""
        store = ThreatMatchStore(tm)
        with pytest.raises(ConfigurationError):
            store.delete_by_date(CHECK_DATE)
        with pytest.raises(ConfigurationError):
            store.load_by_date(CHECK_DATE)
        with pytest.raises(ConfigurationError):
            store.save_all([make_match("a.com")])

    def test_save_and_load_by_date(self, tm):
        """A saved partition loads back as a set."""
        store = ThreatMatchStore(tm)
        records = {make_match("a.com"), make_match("b.com", threat=ThreatType.PHISHING)}

        tm.transact(lambda: store.save_all(records))

        assert tm.transact(lambda: store.load_by_date(CHECK_DATE)) == frozenset(records)

    def test_load_empty_partition(self, tm):
        """An empty partition loads as an empty set."""
        store = ThreatMatchStore(tm)
        assert tm.transact(lambda: store.load_by_date(CHECK_DATE)) == frozenset()

    def test_delete_by_date_leaves_other_partitions(self, tm):
        """Deleting one date keeps the others."""
        store = ThreatMatchStore(tm)
        other_date = date(2020, 7, 28)
        kept = make_match("kept.com", check_date=other_date)
        tm.transact(lambda: store.save_all([make_match("a.com"), kept]))

        tm.transact(lambda: store.delete_by_date(CHECK_DATE))

        assert tm.transact(lambda: store.load_by_date(CHECK_DATE)) == frozenset()
        assert tm.transact(lambda: store.load_by_date(other_date)) == frozenset({kept})

    def test_delete_empty_partition_is_fine(self, tm):
        """Deleting an empty partition is a no-op."""
        store = ThreatMatchStore(tm)
        tm.transact(lambda: store.delete_by_date(CHECK_DATE))


class TestDomainStore:
    """Current-state domain lookups."""

    def test_find_by_name(self, seeded_tm):
        """A live domain is found by name."""
        found = DomainStore(seeded_tm).find_by_name("a.com")
        assert found == DomainRecord(repo_id="1-COM", domain_name="a.com", current_sponsor_registrar_id="Reg1")

    def test_find_normalizes_name(self, seeded_tm):
        """Lookups normalize case and the trailing dot."""
        assert DomainStore(seeded_tm).find_by_name("B.COM.").repo_id == "2-COM"

    def test_find_unknown(self, seeded_tm):
        """Unknown names return None."""
        assert DomainStore(seeded_tm).find_by_name("c.com") is None

    def test_find_joins_open_transaction(self, seeded_tm):
        """Lookups inside a transaction see its uncommitted writes."""
        store = DomainStore(seeded_tm)
        fresh = DomainRecord(repo_id="3-COM", domain_name="c.com", current_sponsor_registrar_id="Reg2")

        def work():
            seeded_tm.save(fresh)
            return store.find_by_name("c.com")

        assert seeded_tm.transact(work) == fresh

    def test_duplicate_names_resolve_to_lowest_repo_id(self, tm):
        """Duplicate names resolve deterministically to the lowest repo ID."""
        tm.transact(lambda: tm.save_all([
            DomainRecord(repo_id="9-COM", domain_name="dup.com", current_sponsor_registrar_id="Reg1"),
            DomainRecord(repo_id="4-COM", domain_name="dup.com", current_sponsor_registrar_id="Reg2"),
        ]))
        assert DomainStore(tm).find_by_name("dup.com").repo_id == "4-COM"

    def test_import_domains(self, tm, domains):
        """Importing writes every domain and returns the count."""
        count = DomainStore(tm).import_domains(domains)

        assert count == 2
        assert all(tm.exists(d.key()) for d in domains)

    def test_import_is_upsert(self, tm, domains):
        """Re-importing a repo ID replaces the stored domain."""
        store = DomainStore(tm)
        store.import_domains(domains)
        transferred = DomainRecord(repo_id="1-COM", domain_name="a.com", current_sponsor_registrar_id="Reg3")

        store.import_domains([transferred])

        assert store.find_by_name("a.com").current_sponsor_registrar_id == "Reg3"


class TestReadDomainFile:
    """JSON-lines domain snapshots."""

    def test_reads_records(self, tmp_path):
        """Comments and blank lines are skipped and names normalized."""
        path = tmp_path / "domains.jsonl"
        path.write_text(
            "# snapshot\n"
            + json.dumps({"domainName": "A.com", "repoId": "1-COM", "currentSponsorRegistrarId": "Reg1"})
            + "\n\n"
            + json.dumps({"domainName": "b.com", "repoId": "2-COM", "currentSponsorRegistrarId": "Reg2"})
            + "\n"
        )

        domains = read_domain_file(path)

        assert [d.domain_name for d in domains] == ["a.com", "b.com"]
        assert domains[0].repo_id == "1-COM"

    def test_invalid_json(self, tmp_path):
        """Bad JSON names the file and line."""
        path = tmp_path / "domains.jsonl"
        path.write_text("{oops\n")
        with pytest.raises(ParseError, match=":1: invalid JSON"):
            read_domain_file(path)

    def test_not_an_object(self, tmp_path):
        """Each line must be a JSON object."""
        path = tmp_path / "domains.jsonl"
        path.write_text('["a.com"]\n')
        with pytest.raises(ParseError, match="expected a JSON object"):
            read_domain_file(path)

    def test_missing_fields(self, tmp_path):
        """Missing or empty fields are listed."""
        path = tmp_path / "domains.jsonl"
        path.write_text(json.dumps({"domainName": "a.com", "repoId": ""}) + "\n")
        with pytest.raises(ParseError, match="repoId, currentSponsorRegistrarId"):
            read_domain_file(path)
