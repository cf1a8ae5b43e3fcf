"""Shared test fixtures for the chainpay test suite."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from chainpay.config.settings import ChainPayConfig
from chainpay.utils.db import Base

RPC_URL = "http://rpc.test/"


def _make_config(**overrides: Any) -> ChainPayConfig:
    """ChainPayConfig with test defaults, bypassing YAML files."""
    values: dict[str, Any] = {
        "rpc_url": RPC_URL,
        "chain_id": 100,
        "poll_seconds": 1,
        "page_size": 500,
        "confirm_confirmations": 3,
        "finalize_confirmations": 6,
        "request_timeout_seconds": 5.0,
    }
    values.update(overrides)
    return ChainPayConfig(**values)


@pytest.fixture
def config_factory() -> Callable[..., ChainPayConfig]:
    """Build a ChainPayConfig with test defaults plus overrides."""
    return _make_config


@pytest.fixture
def config() -> ChainPayConfig:
    return _make_config()


@pytest.fixture
async def db_engine() -> AsyncIterator[AsyncEngine]:
    """In-memory SQLite engine with every table created."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
