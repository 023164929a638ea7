"""Tests for engine construction and schema creation."""

import pytest
from sqlalchemy import inspect
from sqlalchemy.pool import NullPool, StaticPool

from logward.db import create_engine_for, init_db
from logward.db.engine import engine, engine_options, is_memory_sqlite


class TestEngineOptions:
    def test_memory_sqlite_shares_one_connection(self):
        options = engine_options("sqlite+aiosqlite:///:memory:")
        assert options["poolclass"] is StaticPool
        assert options["connect_args"]["check_same_thread"] is False

    def test_file_sqlite_uses_null_pool(self):
        options = engine_options("sqlite+aiosqlite:///./logward.db")
        assert options["poolclass"] is NullPool
        assert options["connect_args"]["timeout"] == 60

    def test_postgres_gets_a_sized_pool(self):
        options = engine_options("postgresql+asyncpg://lw:lw@db/logward")
        assert options == {"pool_size": 5, "max_overflow": 10, "pool_pre_ping": True}

    @pytest.mark.parametrize("url,expected", [
        ("sqlite+aiosqlite:///:memory:", True),
        ("sqlite+aiosqlite:///./logward.db", False),
        ("postgresql+asyncpg://lw:lw@db/logward", False),
    ])
    def test_is_memory_sqlite(self, url, expected):
        assert is_memory_sqlite(url) is expected


@pytest.mark.asyncio
class TestSchema:
    async def test_memory_engine_keeps_data_between_connections(self):
        memory = create_engine_for("sqlite+aiosqlite:///:memory:")
        try:
            async with memory.begin() as conn:
                await conn.exec_driver_sql("CREATE TABLE marker (id INTEGER)")
            async with memory.connect() as conn:
                tables = await conn.run_sync(lambda sync: inspect(sync).get_table_names())
            assert "marker" in tables
        finally:
            await memory.dispose()

    async def test_init_db_creates_tables_and_is_repeatable(self):
        await init_db()
        await init_db()
        async with engine.connect() as conn:
            tables = await conn.run_sync(lambda sync: inspect(sync).get_table_names())
        assert {"events", "alert_rules", "alerts"} <= set(tables)
