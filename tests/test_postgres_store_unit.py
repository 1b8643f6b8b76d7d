import uuid
from datetime import datetime, timezone
from pathlib import Path

import pytest
from psycopg import errors

from storefront_auth.service.order_history import PostgresOrderHistory
from storefront_auth.storage.common import build_secret_cipher, encrypt_secret
from storefront_auth.storage.errors import ConstraintViolation
from storefront_auth.storage.postgres import PostgresStore
from storefront_auth.storage.redis_cache import RedisCache, SyncRedisCache


def _render(query) -> str:
    if isinstance(query, str):
        return query
    # No connection: identifiers use the standard double-quote escaping
    return query.as_string(None)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params=None):
        self.pool.executed.append((_render(query), list(params or [])))
        if self.pool.error is not None:
            raise self.pool.error
        return self.pool.results.pop(0) if self.pool.results else FakeCursor()


class FakePool:
    def __init__(self, *results, error=None):
        self.results = list(results)
        self.error = error
        self.executed = []

    def connection(self):
        return FakeConnection(self)


def _store(tmp_path: Path, pool: FakePool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.fs_root = tmp_path
    store._cipher = build_secret_cipher("unit-test-key")
    return store


def _row(**overrides):
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "email": "shopper@example.com",
        "name": "Shopper",
        "password_hash": "hash",
        "password_changed_at": None,
        "role": "user",
        "failed_login_attempts": 0,
        "lock_until": None,
        "last_login_at": None,
        "two_factor_enabled": False,
        "two_factor_secret": None,
        "backup_codes": [],
        "google_id": None,
        "avatar": None,
        "is_verified": False,
        "is_active": True,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


class TestPostgresStore:
    def test_update_composes_quoted_columns(self, tmp_path):
        pool = FakePool(FakeCursor([_row(name="Renamed", role="admin")]))
        store = _store(tmp_path, pool)

        account = store.update_account("abc", name="Renamed", role="admin")

        query, params = pool.executed[0]
        assert query == (
            'UPDATE account SET "name" = %s, "role" = %s, updated_at = now() '
            "WHERE id = %s RETURNING *"
        )
        assert params == ["Renamed", "admin", "abc"]
        assert account.name == "Renamed"
        assert account.role == "admin"

    def test_update_normalizes_email_and_encrypts_secret(self, tmp_path):
        pool = FakePool(FakeCursor([_row()]))
        store = _store(tmp_path, pool)

        store.update_account("abc", email=" New@Example.COM ", two_factor_secret="JBSWY3DPEHPK3PXP")

        _, params = pool.executed[0]
        assert params[0] == "new@example.com"
        assert params[1] != "JBSWY3DPEHPK3PXP"
        assert store._cipher.decrypt(params[1].encode()).decode() == "JBSWY3DPEHPK3PXP"

    def test_update_rejects_unknown_columns_before_touching_the_pool(self, tmp_path):
        pool = FakePool()
        store = _store(tmp_path, pool)
        with pytest.raises(ValueError):
            store.update_account("abc", **{"role = 'admin'; --": "x"})
        assert pool.executed == []

    def test_unique_violation_maps_to_constraint_violation(self, tmp_path):
        pool = FakePool(error=errors.UniqueViolation("duplicate key"))
        store = _store(tmp_path, pool)

        with pytest.raises(ConstraintViolation) as create_exc:
            store.create_account("shopper@example.com", "Shopper")
        assert create_exc.value.detail == {"field": "email"}

        with pytest.raises(ConstraintViolation):
            store.update_account("abc", email="taken@example.com")

    def test_row_mapping_decrypts_secret(self, tmp_path):
        store = _store(tmp_path, FakePool())
        stored = encrypt_secret(store._cipher, "JBSWY3DPEHPK3PXP")
        account = store._account_from_row(
            _row(two_factor_enabled=True, two_factor_secret=stored, backup_codes=["a", "b"])
        )
        assert account.two_factor_secret == "JBSWY3DPEHPK3PXP"
        assert account.backup_codes == ["a", "b"]
        assert isinstance(account.id, str)

    def test_get_account_skips_query_for_non_uuid(self, tmp_path):
        pool = FakePool()
        assert _store(tmp_path, pool).get_account("not-a-uuid") is None
        assert pool.executed == []

    def test_filters(self, tmp_path):
        store = _store(tmp_path, FakePool())

        where, params = store._filters()
        assert _render(where) == ""
        assert params == []

        where, params = store._filters(search="ann", role="admin", is_active=False)
        assert _render(where) == (
            " WHERE (name ILIKE %s OR email ILIKE %s) AND role = %s AND is_active = %s"
        )
        assert params == ["%ann%", "%ann%", "admin", False]

    def test_list_accounts_pages_with_filters(self, tmp_path):
        pool = FakePool(
            FakeCursor([{"total": 3}]),
            FakeCursor([_row(email="a@example.com"), _row(email="b@example.com")]),
        )
        store = _store(tmp_path, pool)

        accounts, total = store.list_accounts(role="user", offset=2, limit=2)

        assert total == 3
        assert [a.email for a in accounts] == ["a@example.com", "b@example.com"]
        count_query, count_params = pool.executed[0]
        assert count_query == "SELECT COUNT(*) AS total FROM account WHERE role = %s"
        assert count_params == ["user"]
        page_query, page_params = pool.executed[1]
        assert page_query.endswith("ORDER BY created_at DESC LIMIT %s OFFSET %s")
        assert page_params == ["user", 2, 2]

    def test_delete_reports_rowcount(self, tmp_path):
        pool = FakePool(FakeCursor(rowcount=1), FakeCursor(rowcount=0))
        store = _store(tmp_path, pool)
        assert store.delete_account("abc") is True
        assert store.delete_account("abc") is False


class TestPostgresOrderHistory:
    def test_counts_owned_rows(self):
        pool = FakePool(FakeCursor([{"total": 4}]))
        history = PostgresOrderHistory(pool)
        assert history.count_orders("abc") == 4
        query, params = pool.executed[0]
        assert query == 'SELECT COUNT(*) AS total FROM "customer_order" WHERE "account_id" = %s'
        assert params == ["abc"]

    def test_missing_table_counts_as_no_orders(self):
        pool = FakePool(error=errors.UndefinedTable("relation does not exist"))
        assert PostgresOrderHistory(pool).count_orders("abc") == 0


class FakeScript:
    def __init__(self, result):
        self.result = result
        self.calls = []

    def __call__(self, keys, args):
        self.calls.append((keys, args))
        return self.result


class AsyncFakeScript(FakeScript):
    async def __call__(self, keys, args):
        return super().__call__(keys, args)


class TestRedisWindow:
    def test_window_result_mapping(self):
        assert RedisCache._window_result(["1", "3", "0"]) == (True, 3, 0)
        assert RedisCache._window_result([0, 0, 7]) == (False, 0, 7)
        assert RedisCache._window_result([1, -1, 0]) == (True, 0, 0)

    def test_window_key_hides_caller_key(self):
        key = RedisCache._window_key("2fa_abc")
        assert key.startswith("ratelimit:")
        assert "2fa_abc" not in key
        assert key == RedisCache._window_key("2fa_abc")

    async def test_sync_wrapper_runs_script(self):
        cache: SyncRedisCache = SyncRedisCache.__new__(SyncRedisCache)
        cache._sliding_window = FakeScript([0, 0, 42])

        assert await cache.hit_window("2fa_abc", 5, 900) == (False, 0, 42)

        keys, args = cache._sliding_window.calls[0]
        assert keys == [RedisCache._window_key("2fa_abc")]
        assert args[1:3] == [900 * 1000, 5]

    async def test_async_cache_runs_script(self):
        cache: RedisCache = RedisCache.__new__(RedisCache)
        cache._sliding_window = AsyncFakeScript([1, 4, 0])

        assert await cache.hit_window("2fa_abc", 5, 900) == (True, 4, 0)
        _, args = cache._sliding_window.calls[0]
        assert args[2] == 5
