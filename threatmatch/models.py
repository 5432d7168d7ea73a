"""
Backend-neutral record types and job results.

Records know their kind, their key and how to turn themselves into plain
JSON-compatible dicts. Both transaction managers persist these types; the SQL
backend maps them onto ORM rows in database.py.
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, Iterable, NamedTuple, Tuple, Type


class Key(NamedTuple):
    """Address of one persisted record."""

    kind: str
    id: str

    @classmethod
    def of(cls, record_type: Type["Record"], record_id: str) -> "Key":
        return cls(record_type.KIND, record_id)


class ThreatType(Enum):
    THREAT_TYPE_UNSPECIFIED = "THREAT_TYPE_UNSPECIFIED"
    MALWARE = "MALWARE"
    PHISHING = "PHISHING"
    SOCIAL_ENGINEERING = "SOCIAL_ENGINEERING"
    UNWANTED_SOFTWARE = "UNWANTED_SOFTWARE"
    POTENTIALLY_HARMFUL_APPLICATION = "POTENTIALLY_HARMFUL_APPLICATION"

    @classmethod
    def parse(cls, name: str) -> "ThreatType":
        """Look up a threat type by name, ignoring case. Raises ValueError if unknown."""
        try:
            return cls[name.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown threat type: {name}")


def _encode_threat_types(threat_types: Iterable[ThreatType]) -> str:
    return ",".join(sorted(t.value for t in threat_types))


def _decode_threat_types(encoded: str) -> FrozenSet[ThreatType]:
    return frozenset(ThreatType(v) for v in encoded.split(",") if v)


class Record:
    """Mixin for persistable records. Subclasses set KIND and implement key()."""

    KIND: ClassVar[str]

    def key(self) -> Key:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Record":
        raise NotImplementedError


@dataclass(frozen=True)
class ThreatMatchRecord(Record):
    """One detected threat against one domain on one check date."""

    KIND: ClassVar[str] = "Spec11ThreatMatch"

    check_date: date
    domain_name: str
    domain_repo_id: str
    registrar_id: str
    threat_types: FrozenSet[ThreatType] = field(default_factory=frozenset)

    def __post_init__(self):
        # Accept any iterable of threat types but store a frozenset
        object.__setattr__(self, "threat_types", frozenset(self.threat_types))

    def key(self) -> Key:
        record_id = "|".join([
            self.check_date.isoformat(),
            self.domain_name,
            self.registrar_id,
            _encode_threat_types(self.threat_types),
        ])
        return Key(self.KIND, record_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "check_date": self.check_date.isoformat(),
            "domain_name": self.domain_name,
            "domain_repo_id": self.domain_repo_id,
            "registrar_id": self.registrar_id,
            "threat_types": _encode_threat_types(self.threat_types),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreatMatchRecord":
        return cls(
            check_date=date.fromisoformat(data["check_date"]),
            domain_name=data["domain_name"],
            domain_repo_id=data["domain_repo_id"],
            registrar_id=data["registrar_id"],
            threat_types=_decode_threat_types(data["threat_types"]),
        )


@dataclass(frozen=True)
class DomainRecord(Record):
    """Current state of a live domain, as far as foreign-key resolution needs it."""

    KIND: ClassVar[str] = "Domain"

    repo_id: str
    domain_name: str
    current_sponsor_registrar_id: str

    def key(self) -> Key:
        return Key(self.KIND, self.repo_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repo_id": self.repo_id,
            "domain_name": self.domain_name,
            "current_sponsor_registrar_id": self.current_sponsor_registrar_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DomainRecord":
        return cls(
            repo_id=data["repo_id"],
            domain_name=data["domain_name"],
            current_sponsor_registrar_id=data["current_sponsor_registrar_id"],
        )


RECORD_TYPES: Dict[str, Type[Record]] = {
    ThreatMatchRecord.KIND: ThreatMatchRecord,
    DomainRecord.KIND: DomainRecord,
}


def record_type_for(kind: str) -> Type[Record]:
    try:
        return RECORD_TYPES[kind]
    except KeyError:
        raise ValueError(f"Unknown record kind: {kind}")


def encode_value(value: Any) -> Any:
    """Encode a filter value the same way to_dict() encodes fields."""
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, ThreatType):
        return value.value
    if isinstance(value, (set, frozenset)):
        return _encode_threat_types(value)
    return value


@dataclass(frozen=True)
class ReportFile:
    """One Spec11 report snapshot and the partition it feeds."""

    location: str
    report_date: date

    @property
    def month(self) -> str:
        return self.report_date.strftime("%Y-%m")


@dataclass(frozen=True)
class FileFailure:
    location: str
    cause: str


@dataclass(frozen=True)
class BackfillJobResult:
    """Outcome of one backfill invocation."""

    total_files: int
    succeeded_files: int
    failed_files: Tuple[FileFailure, ...] = ()
    rejected_files: Tuple[str, ...] = ()
    records_written: int = 0

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_files)

    def summary(self) -> str:
        if not self.failed_files:
            return f"Successfully parsed through {self.succeeded_files} files."
        lines = [
            f"Failed to parse through {len(self.failed_files)} of {self.total_files} files:"
        ]
        for failure in self.failed_files:
            lines.append(f"  {failure.location}: {failure.cause}")
        return "\n".join(lines)
