# src/storage/redis_notifications.py
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import WatchError

from cryptoalerts.alerts.models import Notification, as_bool
from cryptoalerts.errors import PersistenceConflict

PREFIX = "alerts"

log = structlog.get_logger("store")


def _encode(v: Any) -> str:
    # redis hashes hold strings only
    if v is None:
        return ""
    if isinstance(v, bool):
        return "1" if v else "0"
    if isinstance(v, Decimal):
        return format(v, "f")
    return str(v)


def _decode_row(row: Dict[Any, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in row.items():
        if isinstance(k, (bytes, bytearray)):
            k = k.decode("utf-8")
        if isinstance(v, (bytes, bytearray)):
            v = v.decode("utf-8")
        out[k] = v
    return out


class RedisNotificationStore:
    """
    Notifications as flat Redis hashes.

    Keys:
      {prefix}:notif:{id}       hash of the record's fields
      {prefix}:active           set of ids with is_active=1
      {prefix}:user:{user_id}   set of the user's ids

    save() writes only the requested fields under WATCH so a write-back never
    clobbers an edit made between load and save.
    """

    def __init__(self, r: Redis, prefix: str = PREFIX):
        self.r = r
        self.prefix = prefix

    # ---------- keys ----------

    def _key(self, nid: str) -> str:
        return f"{self.prefix}:notif:{nid}"

    def _active_key(self) -> str:
        return f"{self.prefix}:active"

    def _user_key(self, user_id: str) -> str:
        return f"{self.prefix}:user:{user_id}"

    # ---------- reads ----------

    async def get(self, nid: str) -> Optional[Notification]:
        row = await self.r.hgetall(self._key(nid))
        if not row:
            return None
        return Notification.from_doc(_decode_row(row))

    async def _fetch_many(self, ids: Iterable[str]) -> List[Notification]:
        ids = sorted(i.decode("utf-8") if isinstance(i, (bytes, bytearray)) else str(i) for i in ids)
        if not ids:
            return []
        pipe = self.r.pipeline(transaction=False)
        for nid in ids:
            pipe.hgetall(self._key(nid))
        rows = await pipe.execute()
        out: List[Notification] = []
        for nid, row in zip(ids, rows):
            if not row:
                log.warning("store_dangling_id", id=nid)
                continue
            doc = _decode_row(row)
            doc.setdefault("id", nid)
            out.append(Notification.from_doc(doc))
        return out

    async def load_active(self) -> List[Notification]:
        ids = await self.r.smembers(self._active_key())
        return [n for n in await self._fetch_many(ids) if n.is_active]

    async def list_for_user(self, user_id: str) -> List[Notification]:
        ids = await self.r.smembers(self._user_key(user_id))
        return await self._fetch_many(ids)

    # ---------- writes ----------

    async def create(self, n: Notification) -> Notification:
        doc = n.to_doc()
        mapping = {k: _encode(v) for k, v in doc.items() if v is not None}
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(self._key(n.id), mapping=mapping)
        pipe.sadd(self._user_key(n.user_id), n.id)
        if n.is_active:
            pipe.sadd(self._active_key(), n.id)
        await pipe.execute()
        log.info("notification_created", id=n.id, user_id=n.user_id, market=n.market, kind=doc["kind"])
        return n

    async def save(self, n: Notification, fields: Optional[Iterable[str]] = None) -> None:
        """
        Write back `fields` of `n` (all fields when None).

        Raises PersistenceConflict when the record vanished, was deactivated by
        someone else, or changed while the transaction was being prepared.
        """
        doc = n.to_doc()
        names = tuple(fields) if fields is not None else tuple(k for k in doc if k != "id")
        if not names:
            return
        mapping = {f: _encode(doc.get(f)) for f in names}
        key = self._key(n.id)
        async with self.r.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = await pipe.hget(key, "is_active")
                if current is None:
                    raise PersistenceConflict(n.id, "record no longer exists")
                if not as_bool(current):
                    raise PersistenceConflict(n.id, "deactivated externally")
                pipe.multi()
                pipe.hset(key, mapping=mapping)
                if "is_active" in mapping and not n.is_active:
                    pipe.srem(self._active_key(), n.id)
                await pipe.execute()
            except WatchError:
                raise PersistenceConflict(n.id, "modified concurrently") from None

    async def delete(self, n: Notification) -> None:
        pipe = self.r.pipeline(transaction=True)
        pipe.delete(self._key(n.id))
        pipe.srem(self._active_key(), n.id)
        pipe.srem(self._user_key(n.user_id), n.id)
        await pipe.execute()
        log.info("notification_deleted", id=n.id, user_id=n.user_id)
