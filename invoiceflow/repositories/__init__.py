"""
Repository Package

  base.py    PipelineRepository contract (incl. batch_for_update)
  memory.py  in-process implementation (default; also used by tests)
  sql.py     SQLAlchemy-async implementation (PostgreSQL in production)

Selected at startup by `settings.persistence_backend`.
"""

from __future__ import annotations

import logging

from invoiceflow.core.config import Settings
from invoiceflow.repositories.base import PipelineRepository
from invoiceflow.repositories.memory import InMemoryPipelineRepository

logger = logging.getLogger(__name__)


async def build_repository(cfg: Settings) -> PipelineRepository:
    """Factory: returns the configured repository, schema ready."""
    backend = cfg.persistence_backend.lower()
    if backend == "memory":
        logger.info("Repository | backend=memory")
        return InMemoryPipelineRepository()
    if backend == "sql":
        from invoiceflow.db.session import build_engine, create_schema
        from invoiceflow.repositories.sql import SqlPipelineRepository

        engine = build_engine(cfg=cfg)
        await create_schema(engine)
        logger.info("Repository | backend=sql")
        return SqlPipelineRepository(engine)
    raise ValueError(f"Unknown persistence backend: {cfg.persistence_backend!r}")


__all__ = ["PipelineRepository", "InMemoryPipelineRepository", "build_repository"]
