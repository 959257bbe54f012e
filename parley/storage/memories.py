"""SQL-backed user memory store.

One row per (user, key). get_formatted_memories renders the list twice:
with keys for the memory processor (so it can target updates) and
without keys for the model-facing memory block.
"""

from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from parley.storage.database import Database
from parley.storage.models import UserMemory

logger = logging.getLogger(__name__)


class SqlMemoryStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def set_memory(self, user_id: str, key: str, value: str, token_count: int = 0) -> bool:
        try:
            async with self.db.session() as session:
                result = await session.execute(
                    select(UserMemory).where(UserMemory.user_id == user_id, UserMemory.key == key)
                )
                memory = result.scalar_one_or_none()
                if memory is None:
                    session.add(UserMemory(user_id=user_id, key=key, value=value, token_count=token_count))
                else:
                    memory.value = value
                    memory.token_count = token_count
                await session.commit()
            return True
        except SQLAlchemyError:
            logger.exception("Failed to set memory %s for user %s", key, user_id)
            return False

    async def delete_memory(self, user_id: str, key: str) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                delete(UserMemory).where(UserMemory.user_id == user_id, UserMemory.key == key)
            )
            await session.commit()
            return (result.rowcount or 0) > 0

    async def list_memories(self, user_id: str) -> list[UserMemory]:
        async with self.db.session() as session:
            result = await session.execute(
                select(UserMemory).where(UserMemory.user_id == user_id).order_by(UserMemory.updated_at, UserMemory.key)
            )
            return list(result.scalars().all())

    async def get_formatted_memories(self, user_id: str) -> tuple[str, str, int]:
        """(with_keys, without_keys, total_tokens)."""
        memories = await self.list_memories(user_id)
        if not memories:
            return "", "", 0

        with_keys: list[str] = []
        without_keys: list[str] = []
        total = 0
        for i, memory in enumerate(memories, start=1):
            date = memory.updated_at.strftime("%Y-%m-%d") if memory.updated_at else "unknown"
            with_keys.append(f'{i}. [{date}]. ["key": "{memory.key}"]: {memory.value}')
            without_keys.append(f"{i}. [{date}]. {memory.value}")
            total += memory.token_count or 0
        return "\n".join(with_keys), "\n".join(without_keys), total
