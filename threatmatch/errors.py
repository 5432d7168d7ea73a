"""
Exception hierarchy for the threat-match backfill.

Systemic errors (configuration misuse, unavailable storage) abort a run.
Data errors (parse, foreign key) are scoped to the report file that raised them.
"""


class ThreatMatchError(Exception):
    """Base exception for all backfill failures."""


class ConfigurationError(ThreatMatchError):
    """Raised for invalid settings or transactional API misuse."""


class StorageError(ThreatMatchError):
    """Raised for failures reported by a storage backend."""


class TransientStorageError(StorageError):
    """Raised when a commit conflicts or times out. Safe to retry the whole unit of work."""


class StorageUnavailableError(StorageError):
    """Raised when a backend cannot be reached or its data cannot be read."""


class RecordNotFoundError(ThreatMatchError):
    """Raised when a unit of work deletes a record that is not there."""


class ParseError(ThreatMatchError):
    """Raised for malformed report files, lines or filenames."""


class ForeignKeyError(ThreatMatchError):
    """Raised when a threat match cannot be tied to a live domain."""


# Errors that indicate a broken run rather than a bad input file.
SYSTEMIC_ERRORS = (ConfigurationError, StorageUnavailableError)
