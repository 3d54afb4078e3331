"""
User directory: the set of principals allowed to call the API.

Injected at startup (app.state.users) instead of living in module globals,
so tests and deployments can each supply their own.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Literal

from pydantic import BaseModel, TypeAdapter

from invoiceflow.core.config import Settings

logger = logging.getLogger(__name__)

Role = Literal["viewer", "member", "admin"]


class User(BaseModel):
    username: str
    role:     Role = "viewer"
    active:   bool = True


class UserDirectory(ABC):

    @abstractmethod
    async def get(self, username: str) -> User | None:
        """Return the user, or None if unknown."""


class StaticUserDirectory(UserDirectory):
    """Fixed set of users, loaded once."""

    def __init__(self, users: Iterable[User]) -> None:
        self._users = {u.username: u for u in users}

    async def get(self, username: str) -> User | None:
        return self._users.get(username)

    def __len__(self) -> int:
        return len(self._users)

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticUserDirectory":
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        users = TypeAdapter(list[User]).validate_python(raw)
        logger.info("Auth | loaded %d user(s) from %s", len(users), path)
        return cls(users)

    @classmethod
    def from_settings(cls, cfg: Settings) -> "StaticUserDirectory":
        if cfg.users_file:
            return cls.from_file(cfg.users_file)
        logger.warning("Auth | no users_file configured, using bootstrap admin %r",
                       cfg.bootstrap_admin)
        return cls([User(username=cfg.bootstrap_admin, role="admin")])
