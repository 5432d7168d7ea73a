"""
Pytest configuration and shared fixtures.
"""

from datetime import date
from pathlib import Path
from typing import List, Optional

import pytest

from threatmatch.config import Settings
from threatmatch.database import sqlite_url
from threatmatch.logger import get_logger, reset_logger
from threatmatch.models import DomainRecord
from threatmatch.report_files import report_filename, report_folder
from threatmatch.transaction import ObjectStoreTransactionManager, SqlTransactionManager

REPORT_HEADER = "Map from registrar email / name to detected subdomain threats:"


@pytest.fixture(autouse=True)
def quiet_logger(tmp_path):
    """Route the global logger to a temp dir and keep the console clean."""
    reset_logger()
    logger = get_logger(log_dir=tmp_path / "logs", enable_console=False)
    yield logger
    reset_logger()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings for the unittest environment, everything under tmp_path."""
    return Settings(
        environment="unittest",
        database_url=sqlite_url(tmp_path / "test.db"),
        object_store_path=tmp_path / "object_store.json",
        reporting_root=tmp_path / "reporting",
        commit_retries=1,
        retry_base_delay=0.0,
        log_dir=None,
    )


@pytest.fixture
def sql_tm(tmp_path):
    """Relational transaction manager on a temporary SQLite file."""
    tm = SqlTransactionManager.from_url(sqlite_url(tmp_path / "test.db"))
    tm.create_schema()
    yield tm
    tm.teardown()


@pytest.fixture
def object_tm(tmp_path):
    """Object store transaction manager on a temporary JSON document."""
    return ObjectStoreTransactionManager(tmp_path / "object_store.json")


@pytest.fixture(params=["sql", "object"])
def tm(request):
    """Each test using this fixture runs once per backend."""
    return request.getfixturevalue(f"{request.param}_tm")


@pytest.fixture
def domains() -> List[DomainRecord]:
    return [
        DomainRecord(repo_id="1-COM", domain_name="a.com", current_sponsor_registrar_id="Reg1"),
        DomainRecord(repo_id="2-COM", domain_name="b.com", current_sponsor_registrar_id="Reg2"),
    ]


@pytest.fixture
def seeded_tm(tm, domains):
    """A backend holding the live domain dataset."""
    tm.transact(lambda: tm.save_all(domains))
    return tm


@pytest.fixture
def reporting_root(tmp_path) -> Path:
    return tmp_path / "reporting"


@pytest.fixture
def write_report(reporting_root):
    """Return a helper that writes a Spec11 report into its month folder."""
    def _write(
        report_date: date,
        lines: List[str],
        header: Optional[str] = REPORT_HEADER,
        name: Optional[str] = None,
    ) -> Path:
        folder = report_folder(reporting_root, report_date)
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / (name or report_filename(report_date))
        content = [header] if header is not None else []
        path.write_text("\n".join(content + lines) + "\n", encoding="utf-8")
        return path

    return _write
