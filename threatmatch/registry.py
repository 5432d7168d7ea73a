"""
Transaction manager registry.

Responsibilities:
- Hold exactly one handle per backend kind (object store, relational).
- Build the relational handle lazily on first use and keep it for the
  lifetime of the process.
- Expose the primary backend chosen by configuration.

Non-Responsibilities:
- No global state: the registry is built once at startup and passed to the
  components that need persistence.

Invariant:
The relational handle may only be swapped by tests and tools, and never while
a transaction is open on it.
"""

import threading
from typing import Callable, Optional

from .config import Settings
from .errors import ConfigurationError
from .transaction import ObjectStoreTransactionManager, SqlTransactionManager, TransactionManager

OVERRIDE_ENVIRONMENTS = ("unittest", "tool")


class TransactionManagerRegistry:
    """Process-wide handles to the active transaction managers."""

    def __init__(
        self,
        settings: Settings,
        object_store_tm: Optional[TransactionManager] = None,
        sql_tm_factory: Optional[Callable[[], TransactionManager]] = None,
    ):
        """
        Args:
            settings: Startup settings; decides the primary backend
            object_store_tm: Substitute object store handle (tests, tools)
            sql_tm_factory: Substitute builder for the relational handle
        """
        self.settings = settings
        self._object_store_tm = object_store_tm or ObjectStoreTransactionManager(
            settings.object_store_path
        )
        self._sql_tm_factory = sql_tm_factory or self._default_sql_tm
        self._sql_tm: Optional[TransactionManager] = None
        self._lock = threading.Lock()

    def _default_sql_tm(self) -> TransactionManager:
        tm = SqlTransactionManager.from_url(self.settings.database_url)
        tm.create_schema()
        return tm

    def object_store_tm(self) -> TransactionManager:
        return self._object_store_tm

    def sql_tm(self) -> TransactionManager:
        """Return the relational handle, building it on first call."""
        with self._lock:
            if self._sql_tm is None:
                self._sql_tm = self._sql_tm_factory()
            return self._sql_tm

    def tm(self) -> TransactionManager:
        """Return the primary handle selected by settings.primary_backend."""
        if self.settings.primary_backend == "sql":
            return self.sql_tm()
        return self.object_store_tm()

    def override_sql_tm(self, factory: Callable[[], TransactionManager]) -> None:
        """
        Replace the relational handle. For test harnesses and one-off tools only.

        The replacement is built lazily on the next sql_tm() call, like the
        original handle.

        Raises:
            ConfigurationError: Outside tests/tools, or while a transaction is
                open on the current handle
        """
        if self.settings.environment not in OVERRIDE_ENVIRONMENTS:
            raise ConfigurationError(
                "override_sql_tm() may only be called by tools and tests"
            )
        with self._lock:
            if self._sql_tm is not None and self._sql_tm.active_transactions:
                raise ConfigurationError(
                    "Cannot replace the relational handle while transactions are in flight"
                )
            replaced = self._sql_tm
            self._sql_tm_factory = factory
            self._sql_tm = None
        if replaced is not None:
            replaced.teardown()

    def close(self) -> None:
        with self._lock:
            if self._sql_tm is not None:
                self._sql_tm.teardown()
                self._sql_tm = None
        self._object_store_tm.teardown()
