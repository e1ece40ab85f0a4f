import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from realtime_chat.errors import FetchError, SendError, TransportDisconnected
from realtime_chat.schemas.events import RowChangeEvent, changes_channel


logger = logging.getLogger(__name__)

Sort = Sequence[Tuple[str, int]]


def new_id() -> str:
    return str(ObjectId())


def to_row(doc: Dict[str, Any]) -> Dict[str, Any]:
    row = dict(doc)
    if "_id" in row:
        row["id"] = str(row.pop("_id"))
    return row


def to_query(filter: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Rename the public ``id`` column to Mongo's ``_id``, including inside ``$or``."""
    if not filter:
        return {}
    query: Dict[str, Any] = {}
    for key, value in filter.items():
        if key == "id":
            query["_id"] = value
        elif key in ("$or", "$and"):
            query[key] = [to_query(part) for part in value]
        else:
            query[key] = value
    return query


def to_sort(sort: Optional[Sort]) -> List[Tuple[str, int]]:
    return [("_id" if field == "id" else field, direction) for field, direction in (sort or ())]


class MongoBackend:
    """Persistence commands over motor.

    Every successful write is followed by a row-change event on the bus, so
    subscribers see the same stream whichever process performed the write.
    """

    def __init__(self, db: AsyncIOMotorDatabase, bus=None) -> None:
        self._db = db
        self._bus = bus

    def collection(self, table: str):
        return self._db[table]

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        doc = {k: v for k, v in row.items() if k != "id"}
        doc["_id"] = row.get("id") or new_id()
        try:
            await self.collection(table).insert_one(doc)
        except PyMongoError as exc:
            raise SendError(f"insert into {table}", exc) from exc
        created = to_row(doc)
        await self._emit(table, "insert", created)
        return created

    async def update(self, table: str, filter: Dict[str, Any], patch: Dict[str, Any]) -> None:
        query = to_query(filter)
        try:
            before = await self.collection(table).find(query).to_list(length=None)
            if not before:
                return
            ids = [doc["_id"] for doc in before]
            await self.collection(table).update_many({"_id": {"$in": ids}}, {"$set": patch})
            after = await self.collection(table).find({"_id": {"$in": ids}}).to_list(length=None)
        except PyMongoError as exc:
            raise SendError(f"update {table}", exc) from exc
        old_by_id = {doc["_id"]: doc for doc in before}
        for doc in after:
            await self._emit(table, "update", to_row(doc), to_row(old_by_id.get(doc["_id"], {})))

    async def select(
        self,
        table: str,
        filter: Optional[Dict[str, Any]] = None,
        projection: Optional[Iterable[str]] = None,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        fields = None
        if projection is not None:
            fields = {("_id" if name == "id" else name): 1 for name in projection}
        cursor = self.collection(table).find(to_query(filter), fields)
        if sort:
            cursor = cursor.sort(to_sort(sort))
        if limit:
            cursor = cursor.limit(limit)
        try:
            docs = await cursor.to_list(length=limit)
        except PyMongoError as exc:
            raise FetchError(table, exc) from exc
        return [to_row(doc) for doc in docs]

    async def upsert(self, table: str, rows: Sequence[Dict[str, Any]], conflict_key: Sequence[str]) -> None:
        """Insert rows whose conflict key is not present yet; existing rows are left as they are."""
        for row in rows:
            key = {column: row[column] for column in conflict_key}
            doc_id = row.get("id") or new_id()
            on_insert = {k: v for k, v in row.items() if k not in conflict_key and k != "id"}
            on_insert["_id"] = doc_id
            try:
                result = await self.collection(table).update_one(key, {"$setOnInsert": on_insert}, upsert=True)
            except PyMongoError as exc:
                raise SendError(f"upsert into {table}", exc) from exc
            if result.upserted_id is not None:
                await self._emit(table, "insert", to_row({**key, **on_insert}))

    async def _emit(self, table: str, operation: str, row: Dict[str, Any], old: Optional[Dict[str, Any]] = None) -> None:
        if self._bus is None:
            return
        event = RowChangeEvent(table=table, operation=operation, row=row, old=old)
        try:
            await self._bus.publish(changes_channel(table), event.model_dump_json())
        except TransportDisconnected as exc:
            # the write stands; subscribers catch up when they reload after reconnecting
            logger.warning("Row change on %s not published: %s", table, exc)
