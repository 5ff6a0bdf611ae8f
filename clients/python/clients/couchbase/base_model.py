import uuid
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Generic, List, Optional, Sequence, TypeVar

from pydantic import BaseModel
from couchbase.exceptions import DocumentNotFoundException

from .keyspace import Keyspace, get_keyspace


class BaseCouchbaseEntityData(BaseModel):
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by_user_id: Optional[str] = None

    def before_save(self) -> None:
        """Hook run on every create/update before the document is serialised."""


DataT = TypeVar("DataT", bound=BaseCouchbaseEntityData)
T = TypeVar("T", bound="BaseModelCouchbase")


class BaseModelCouchbase(BaseModel, Generic[DataT]):
    id: str
    data: DataT
    cas: Optional[int] = None

    _collection_name: ClassVar[str] = ""

    @staticmethod
    def model_dump_with_excluded_attributes(data: DataT) -> dict:
        """
        Converts the data to a dictionary for database storage,
        re-injecting fields marked with exclude=True (e.g. secrets that
        must never reach an API response but still have to be stored).
        """
        doc = data.model_dump(mode='json')
        for field_name, field_info in type(data).model_fields.items():
            if field_info.exclude:
                value = getattr(data, field_name)
                if value is not None:
                    doc[field_name] = value
        return doc

    @classmethod
    def get_keyspace(cls) -> Keyspace:
        if not cls._collection_name:
            raise ValueError(f"_collection_name not set for {cls.__name__}")
        return get_keyspace(cls._collection_name)

    @classmethod
    def _prepare(cls, data: DataT, user_id: Optional[str] = None) -> dict:
        now = datetime.now(timezone.utc)
        if data.created_at is None:
            data.created_at = now
        data.updated_at = now
        if user_id:
            data.created_by_user_id = user_id
        data.before_save()
        return cls.model_dump_with_excluded_attributes(data)

    @classmethod
    async def get(cls: type[T], id: str) -> Optional[T]:
        try:
            result = await cls.get_keyspace().get(id)
        except DocumentNotFoundException:
            return None
        return cls(id=id, data=result.content_as[dict], cas=result.cas)

    @classmethod
    async def create(cls: type[T], data: DataT, key: Optional[str] = None, user_id: Optional[str] = None) -> T:
        if key is None:
            key = str(uuid.uuid4())
        doc = cls._prepare(data, user_id)
        result = await cls.get_keyspace().insert(doc, key=key)
        return cls(id=key, data=data, cas=result.cas)

    @classmethod
    async def update(cls: type[T], item: T) -> T:
        """Replace the stored document.

        When the item carries a CAS value the write is rejected with
        ``CASMismatchException`` if the document changed since it was read.
        """
        doc = cls._prepare(item.data)
        result = await cls.get_keyspace().replace(item.id, doc, cas=item.cas)
        item.cas = result.cas
        return item

    @classmethod
    async def delete(cls: type[T], id: str) -> bool:
        try:
            await cls.get_keyspace().remove(id)
            return True
        except DocumentNotFoundException:
            return False

    @classmethod
    async def find(
        cls: type[T],
        conditions: Optional[Sequence] = None,
        order_by: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        consistent: bool = False,
    ) -> List[T]:
        rows = await cls.get_keyspace().find(conditions, order_by, limit, offset, consistent=consistent)
        return [cls(id=doc_id, data=doc) for doc_id, doc in rows]

    @classmethod
    async def find_one(
        cls: type[T],
        conditions: Optional[Sequence] = None,
        order_by: Optional[Sequence[str]] = None,
        consistent: bool = False,
    ) -> Optional[T]:
        items = await cls.find(conditions, order_by, limit=1, consistent=consistent)
        return items[0] if items else None

    @classmethod
    async def count(cls, conditions: Optional[Sequence] = None, consistent: bool = False) -> int:
        return await cls.get_keyspace().count(conditions, consistent=consistent)

    @classmethod
    async def update_where(cls, conditions: Sequence, changes: Dict[str, Any]) -> int:
        """Bulk update by query. Bypasses ``before_save``; callers set plain fields only."""
        changes = {**changes, "updated_at": datetime.now(timezone.utc)}
        return await cls.get_keyspace().update_where(conditions, changes)
