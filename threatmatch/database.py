"""
Relational schema and engine management.

Uses SQLAlchemy for the relational backend. Each ORM row maps one-to-one onto a
backend-neutral record from models.py.
"""

from pathlib import Path
from typing import Dict, Type

from sqlalchemy import create_engine, Column, Date, String
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .models import DomainRecord, ThreatMatchRecord, Record

Base = declarative_base()


class ThreatMatchRow(Base):
    """Spec11 threat match, partitioned by check_date."""

    __tablename__ = "spec11_threat_match"

    id = Column(String, primary_key=True)  # date|domain|registrar|types
    check_date = Column(Date, nullable=False, index=True)
    domain_name = Column(String, nullable=False)
    domain_repo_id = Column(String, nullable=False)
    registrar_id = Column(String, nullable=False)
    threat_types = Column(String, nullable=False)  # comma separated ThreatType names

    @classmethod
    def from_record(cls, record: ThreatMatchRecord) -> "ThreatMatchRow":
        data = record.to_dict()
        return cls(
            id=record.key().id,
            check_date=record.check_date,
            domain_name=data["domain_name"],
            domain_repo_id=data["domain_repo_id"],
            registrar_id=data["registrar_id"],
            threat_types=data["threat_types"],
        )

    def to_record(self) -> ThreatMatchRecord:
        return ThreatMatchRecord.from_dict({
            "check_date": self.check_date.isoformat(),
            "domain_name": self.domain_name,
            "domain_repo_id": self.domain_repo_id,
            "registrar_id": self.registrar_id,
            "threat_types": self.threat_types,
        })


class DomainRow(Base):
    """Live domain dataset used for foreign-key resolution."""

    __tablename__ = "domain"

    id = Column(String, primary_key=True)  # repo id
    domain_name = Column(String, nullable=False, index=True)
    current_sponsor_registrar_id = Column(String, nullable=False)

    @classmethod
    def from_record(cls, record: DomainRecord) -> "DomainRow":
        return cls(
            id=record.repo_id,
            domain_name=record.domain_name,
            current_sponsor_registrar_id=record.current_sponsor_registrar_id,
        )

    def to_record(self) -> DomainRecord:
        return DomainRecord(
            repo_id=self.id,
            domain_name=self.domain_name,
            current_sponsor_registrar_id=self.current_sponsor_registrar_id,
        )


ROW_TYPES: Dict[str, Type[Base]] = {
    ThreatMatchRecord.KIND: ThreatMatchRow,
    DomainRecord.KIND: DomainRow,
}


def row_type_for(kind: str) -> Type[Base]:
    try:
        return ROW_TYPES[kind]
    except KeyError:
        raise ValueError(f"No table mapped for record kind: {kind}")


def row_from_record(record: Record):
    return row_type_for(record.KIND).from_record(record)


def sqlite_url(db_path: Path) -> str:
    return f"sqlite:///{db_path}"


def create_db_engine(url: str) -> Engine:
    """
    Create an engine for the given database URL.

    SQLite file databases get a busy timeout and cross-thread connections so a
    worker pool can share one engine.

    Args:
        url: SQLAlchemy database URL

    Returns:
        SQLAlchemy engine
    """
    if url.startswith("sqlite:///"):
        db_file = url[len("sqlite:///"):]
        if db_file and db_file != ":memory:":
            Path(db_file).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(url, pool_pre_ping=True)


def init_database(engine: Engine) -> None:
    """
    Create all tables that do not exist yet.

    Args:
        engine: Engine bound to the target database
    """
    Base.metadata.create_all(engine)


def get_session_factory(engine: Engine) -> sessionmaker:
    """
    Get a session factory bound to the engine.

    Args:
        engine: SQLAlchemy engine

    Returns:
        sessionmaker producing sessions that keep loaded rows usable after commit
    """
    return sessionmaker(bind=engine, expire_on_commit=False)
