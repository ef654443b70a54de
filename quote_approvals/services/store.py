"""
Persistence boundary: documents behind get/put/list.

Two extra primitives on top:
  - add(key, value): insert-only, used for append-only audit entries
  - swap(key, value, expected_version): compare-and-set on the record's
    ``version`` field, used for every approval status change

Backends:
  InMemoryStore: process-local dict, used in development and tests
  SqlStore: SQLAlchemy async over the ``records`` table
"""

import copy
from typing import Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
import structlog

from quote_approvals.models.record import Record

logger = structlog.get_logger()


class Store(Protocol):
    async def get(self, key: str) -> Optional[dict]: ...

    async def put(self, key: str, value: dict) -> None: ...

    async def list(self, prefix: str) -> list[dict]: ...

    async def add(self, key: str, value: dict) -> bool: ...

    async def swap(self, key: str, value: dict, expected_version: int) -> bool: ...


def _prefix_of(key: str) -> str:
    return key.split("/", 1)[0]


class InMemoryStore:
    """Dict-backed store. Operations never await, so each one is atomic on the loop."""

    def __init__(self):
        self._data: dict[str, dict] = {}

    async def get(self, key: str) -> Optional[dict]:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def put(self, key: str, value: dict) -> None:
        self._data[key] = copy.deepcopy(value)

    async def list(self, prefix: str) -> list[dict]:
        return [
            copy.deepcopy(self._data[key])
            for key in sorted(self._data)
            if key.startswith(prefix)
        ]

    async def add(self, key: str, value: dict) -> bool:
        if key in self._data:
            return False
        self._data[key] = copy.deepcopy(value)
        return True

    async def swap(self, key: str, value: dict, expected_version: int) -> bool:
        current = self._data.get(key)
        if current is None or current.get("version", 0) != expected_version:
            return False
        stored = copy.deepcopy(value)
        stored["version"] = expected_version + 1
        self._data[key] = stored
        return True


class SqlStore:
    """Store over the ``records`` table; each call runs in its own transaction."""

    def __init__(self, sessionmaker: async_sessionmaker):
        self._sessionmaker = sessionmaker

    async def get(self, key: str) -> Optional[dict]:
        async with self._sessionmaker() as session:
            result = await session.execute(select(Record.value).where(Record.key == key))
            return result.scalar_one_or_none()

    async def put(self, key: str, value: dict) -> None:
        async with self._sessionmaker() as session:
            async with session.begin():
                record = await session.get(Record, key)
                if record is None:
                    session.add(Record(
                        key=key,
                        prefix=_prefix_of(key),
                        value=value,
                        version=value.get("version", 0),
                    ))
                else:
                    record.value = value
                    record.version = value.get("version", 0)

    async def list(self, prefix: str) -> list[dict]:
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(Record.value)
                .where(Record.key.startswith(prefix, autoescape=True))
                .order_by(Record.key)
            )
            return list(result.scalars().all())

    async def add(self, key: str, value: dict) -> bool:
        try:
            async with self._sessionmaker() as session:
                async with session.begin():
                    session.add(Record(
                        key=key,
                        prefix=_prefix_of(key),
                        value=value,
                        version=value.get("version", 0),
                    ))
        except IntegrityError:
            logger.warning("store_add_conflict", key=key)
            return False
        return True

    async def swap(self, key: str, value: dict, expected_version: int) -> bool:
        stored = dict(value)
        stored["version"] = expected_version + 1
        async with self._sessionmaker() as session:
            async with session.begin():
                result = await session.execute(
                    update(Record)
                    .where(Record.key == key, Record.version == expected_version)
                    .values(value=stored, version=expected_version + 1)
                )
                return result.rowcount == 1


def create_store(backend: str) -> Store:
    if backend == "sql":
        from quote_approvals.database import get_sessionmaker

        return SqlStore(get_sessionmaker())
    if backend != "memory":
        raise ValueError(f"Unknown STORE_BACKEND: {backend}")
    return InMemoryStore()
