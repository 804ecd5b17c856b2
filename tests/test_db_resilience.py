# tests/test_db_resilience.py
"""Tests for app/infra/db_resilience_async.py"""
import asyncio
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import asyncpg
import pytest

from app.core.dispatch.errors import DependencyFailureError, NotFoundError
from app.infra import db_resilience_async
from app.infra.db_resilience_async import is_transient_error, safe_db_conn


class TestIsTransientError:
    @pytest.mark.parametrize("exc", [
        OSError("connection refused"),
        asyncio.TimeoutError(),
        asyncpg.InterfaceError("pool is closed"),
        RuntimeError("Database pool not initialized. Call init_pool() first."),
    ])
    def test_transient(self, exc):
        assert is_transient_error(exc) is True

    @pytest.mark.parametrize("exc", [
        asyncpg.UniqueViolationError("duplicate key"),
        ValueError("bad input"),
    ])
    def test_not_transient(self, exc):
        assert is_transient_error(exc) is False


def _fake_db_conn(failures):
    """db_conn replacement that raises the queued errors before yielding a connection."""
    conn = AsyncMock()
    queue = list(failures)

    @asynccontextmanager
    async def fake(autocommit=True):
        if queue:
            raise queue.pop(0)
        yield conn

    return fake, conn


class TestSafeDbConn:
    @pytest.fixture(autouse=True)
    def no_backoff(self, monkeypatch):
        monkeypatch.setattr(db_resilience_async, "INITIAL_DELAY", 0)

    @pytest.mark.asyncio
    async def test_retries_transient_acquire(self, monkeypatch):
        fake, conn = _fake_db_conn([OSError("reset"), OSError("reset")])
        monkeypatch.setattr(db_resilience_async, "db_conn", fake)

        async with safe_db_conn(operation="test") as got:
            assert got is conn

    @pytest.mark.asyncio
    async def test_gives_up_with_dependency_failure(self, monkeypatch):
        fake, _ = _fake_db_conn([OSError("down")] * 10)
        monkeypatch.setattr(db_resilience_async, "db_conn", fake)

        with pytest.raises(DependencyFailureError):
            async with safe_db_conn(operation="test"):
                pass

    @pytest.mark.asyncio
    async def test_non_transient_acquire_error_propagates(self, monkeypatch):
        fake, _ = _fake_db_conn([ValueError("bad dsn")])
        monkeypatch.setattr(db_resilience_async, "db_conn", fake)

        with pytest.raises(ValueError):
            async with safe_db_conn(operation="test"):
                pass

    @pytest.mark.asyncio
    async def test_transient_error_in_body(self, monkeypatch):
        fake, _ = _fake_db_conn([])
        monkeypatch.setattr(db_resilience_async, "db_conn", fake)

        with pytest.raises(DependencyFailureError):
            async with safe_db_conn(operation="test"):
                raise asyncpg.PostgresConnectionError("server closed the connection")

    @pytest.mark.asyncio
    async def test_domain_error_in_body_passes_through(self, monkeypatch):
        fake, _ = _fake_db_conn([])
        monkeypatch.setattr(db_resilience_async, "db_conn", fake)

        with pytest.raises(NotFoundError):
            async with safe_db_conn(operation="test"):
                raise NotFoundError("Crisis not found")

    @pytest.mark.asyncio
    async def test_constraint_violation_in_body_propagates(self, monkeypatch):
        fake, _ = _fake_db_conn([])
        monkeypatch.setattr(db_resilience_async, "db_conn", fake)

        with pytest.raises(asyncpg.UniqueViolationError):
            async with safe_db_conn(operation="test"):
                raise asyncpg.UniqueViolationError("duplicate key")
