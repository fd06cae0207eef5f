from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from lexybrain.core.config import Settings, get_settings


def build_engine(settings: Settings) -> AsyncEngine:
    options: dict[str, Any] = {"pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        # Local sqlite runs use a static pool; sizing options are rejected.
        return create_async_engine(settings.database_url, **options)

    options.update(
        pool_size=max(1, settings.api_db_pool_size),
        max_overflow=max(0, settings.api_db_max_overflow),
        pool_timeout=settings.api_db_pool_timeout_s,
        pool_recycle=settings.api_db_pool_recycle_s,
    )
    if settings.api_db_statement_timeout_ms > 0:
        # Corpus searches are the slowest queries; cap them server-side.
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(settings.api_db_statement_timeout_ms)}
        }
    return create_async_engine(settings.database_url, **options)


engine = build_engine(get_settings())
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
