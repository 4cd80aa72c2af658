"""Tests for database session management."""

from pathlib import Path

import pytest
from sqlalchemy import func, select

from omnipair_indexer.storage.database import DatabaseManager, _normalize_async_database_url
from omnipair_indexer.storage.models import TransactionModel
from omnipair_indexer.storage.repos import TransactionDTO, TransactionRepository


class TestNormalizeDatabaseUrl:
    def test_sync_postgres_url_uses_asyncpg(self) -> None:
        assert (
            _normalize_async_database_url("postgresql://indexer@db/omnipair")
            == "postgresql+asyncpg://indexer@db/omnipair"
        )

    @pytest.mark.parametrize(
        "url",
        ["postgresql+asyncpg://indexer@db/omnipair", "sqlite+aiosqlite:///indexer.db"],
    )
    def test_async_urls_unchanged(self, url: str) -> None:
        assert _normalize_async_database_url(url) == url


class TestDatabaseManager:
    @pytest.mark.asyncio
    async def test_session_rolls_back_on_error(self, tmp_path: Path) -> None:
        db = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'scope.db'}")
        await db.init_schema_async()
        record = TransactionDTO(
            tx_signature="sigR",
            slot=1,
            block_time=None,
            pair_address=None,
            user_address=None,
            transaction_type="other",
            status="success",
        )

        with pytest.raises(RuntimeError):
            async with db.get_async_session() as session:
                await TransactionRepository(session).insert_if_absent(record)
                raise RuntimeError("abort")

        async with db.get_async_session() as session:
            count = await session.scalar(select(func.count()).select_from(TransactionModel))
        await db.ping()
        await db.dispose_async()

        assert count == 0
