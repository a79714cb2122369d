"""Tenant handles: the only way the rest of the code reaches a database.

MongoHandle wraps a live pymongo AsyncMongoClient database.
NoopHandle is the permissive-mode stand-in: same contract, reads come back
empty and writes are acknowledged and dropped. It is never handed out
silently; the connection manager logs loudly when it falls back to one.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Protocol, Union

from bson import ObjectId
from pymongo.results import DeleteResult, InsertOneResult, UpdateResult

from shared.logging import get_logger

log = get_logger(__name__)


class TenantKey(str, Enum):
    """The two logically separate account populations."""

    RIDER = "A"
    PASSENGER = "B"

    @property
    def label(self) -> str:
        return "rider" if self is TenantKey.RIDER else "passenger"

    @classmethod
    def parse(cls, value: Union["TenantKey", str]) -> "TenantKey":
        if isinstance(value, TenantKey):
            return value
        lowered = str(value).strip().lower()
        if lowered in ("a", "rider"):
            return cls.RIDER
        if lowered in ("b", "passenger"):
            return cls.PASSENGER
        raise ValueError(f"Unknown tenant: {value!r}")


class Handle(Protocol):
    tenant: TenantKey
    is_degraded: bool

    def collection(self, name: str) -> Any: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class MongoHandle:
    is_degraded = False

    def __init__(self, tenant: TenantKey, client: Any, db_name: str) -> None:
        self.tenant = tenant
        self.client = client
        self.db = client[db_name]

    def collection(self, name: str) -> Any:
        return self.db[name]

    async def ping(self) -> bool:
        await self.db.command("ping")
        return True

    async def close(self) -> None:
        await self.client.close()


class _NoopCursor:
    """Empty async cursor supporting the chaining the stores use."""

    def sort(self, *args: Any, **kwargs: Any) -> "_NoopCursor":
        return self

    def limit(self, *args: Any) -> "_NoopCursor":
        return self

    async def to_list(self, length: Optional[int] = None) -> list:
        return []

    def __aiter__(self) -> "_NoopCursor":
        return self

    async def __anext__(self) -> Any:
        raise StopAsyncIteration


class NoopCollection:
    def __init__(self, tenant: TenantKey, name: str) -> None:
        self.tenant = tenant
        self.name = name

    async def find_one(self, *args: Any, **kwargs: Any) -> None:
        return None

    def find(self, *args: Any, **kwargs: Any) -> _NoopCursor:
        return _NoopCursor()

    async def find_one_and_update(self, *args: Any, **kwargs: Any) -> None:
        return None

    async def count_documents(self, *args: Any, **kwargs: Any) -> int:
        return 0

    async def insert_one(self, document: dict, *args: Any, **kwargs: Any) -> InsertOneResult:
        return InsertOneResult(document.get("_id", ObjectId()), True)

    async def update_one(self, *args: Any, **kwargs: Any) -> UpdateResult:
        return UpdateResult({"n": 0, "nModified": 0}, True)

    async def update_many(self, *args: Any, **kwargs: Any) -> UpdateResult:
        return UpdateResult({"n": 0, "nModified": 0}, True)

    async def delete_many(self, *args: Any, **kwargs: Any) -> DeleteResult:
        return DeleteResult({"n": 0}, True)

    async def create_index(self, keys: Any, **kwargs: Any) -> str:
        return kwargs.get("name", "noop")


class NoopHandle:
    is_degraded = True

    def __init__(self, tenant: TenantKey) -> None:
        self.tenant = tenant
        self._touched: set[str] = set()

    def collection(self, name: str) -> NoopCollection:
        if name not in self._touched:
            self._touched.add(name)
            log.warning(
                "noop_collection_used",
                tenant=self.tenant.label,
                collection=name,
            )
        return NoopCollection(self.tenant, name)

    async def ping(self) -> bool:
        return False

    async def close(self) -> None:
        return None
