from __future__ import annotations

import threading
from typing import Dict, Protocol

from psycopg import errors, sql
from psycopg_pool import ConnectionPool

from storefront_auth.logging import get_logger

logger = get_logger(__name__)


class OrderHistory(Protocol):
    """Read-only view of the order system, used to decide delete vs deactivate."""

    def count_orders(self, account_id: str) -> int: ...


class InMemoryOrderHistory:
    def __init__(self) -> None:
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def record_order(self, account_id: str) -> None:
        with self._lock:
            self._counts[account_id] = self._counts.get(account_id, 0) + 1

    def count_orders(self, account_id: str) -> int:
        with self._lock:
            return self._counts.get(account_id, 0)


class PostgresOrderHistory:
    """Counts rows owned by an account in the order system's table.

    The table belongs to the order service; when it has not been created yet
    the account has no history to protect.
    """

    def __init__(
        self, pool: ConnectionPool, *, table: str = "customer_order", owner_column: str = "account_id"
    ) -> None:
        self.pool = pool
        self.table = table
        self.owner_column = owner_column

    def count_orders(self, account_id: str) -> int:
        query = sql.SQL("SELECT COUNT(*) AS total FROM {} WHERE {} = %s").format(
            sql.Identifier(self.table), sql.Identifier(self.owner_column)
        )
        try:
            with self.pool.connection() as conn:
                row = conn.execute(query, (account_id,)).fetchone()
        except errors.UndefinedTable:
            logger.warning("order_table_missing", table=self.table)
            return 0
        return int(row["total"]) if row else 0
