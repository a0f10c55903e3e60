"""In-process document store with live queries and optional JSON snapshots."""

from __future__ import annotations

import asyncio
import copy
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from clock import Clock
from presence_store import (
    ConnectivityError,
    Document,
    NotFoundError,
    SERVER_TIMESTAMP,
    SnapshotCallback,
    Store,
    Subscription,
)


def _isoformat(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class DocumentStore(Store):
    """Collections of JSON-like documents kept in memory.

    Writes fan out to live subscriptions through ``loop.call_soon`` so
    callbacks never run inside the writer's or subscriber's own call. When a
    ``path`` is given every write is persisted atomically (tmp file + replace)
    and the snapshot is reloaded on construction.
    """

    def __init__(self, path: Optional[Path] = None, *, clock: Optional[Clock] = None):
        self._path = path
        self._clock = clock
        self._lock = asyncio.Lock()
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._subs: List[Subscription] = []
        self._pending = 0
        self.online = True
        self.closed = False
        self._load_sync()

    # -- persistence ---------------------------------------------------------
    def _load_sync(self) -> None:
        self._collections.clear()
        if self._path is None:
            return
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return
        try:
            raw = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            print(f"[store] ignoring unreadable snapshot {self._path}: {exc}")
            return
        collections = raw.get("collections", {}) if isinstance(raw, dict) else {}
        for name, entries in collections.items():
            if not isinstance(entries, list):
                continue
            docs: Dict[str, Dict[str, Any]] = {}
            for entry in entries:
                if not isinstance(entry, dict) or not entry.get("id"):
                    continue
                data = {**entry}
                doc_id = str(data.pop("id"))
                docs[doc_id] = data
            self._collections[name] = docs

    def _serialise_state(self) -> str:
        data = {
            "collections": {
                name: [{"id": doc_id, **fields} for doc_id, fields in docs.items()]
                for name, docs in self._collections.items()
            },
            "updated_at": self._now_iso(),
        }
        return json.dumps(data, indent=2, sort_keys=True)

    async def _persist(self) -> None:
        if self._path is None:
            return
        payload = self._serialise_state()
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp_path.write_text(payload)
            tmp_path.replace(self._path)
        except OSError as exc:
            raise ConnectivityError(f"could not persist {self._path}: {exc}") from exc

    # -- helpers -------------------------------------------------------------
    def _now_iso(self) -> str:
        if self._clock is not None:
            return _isoformat(self._clock.now())
        return _isoformat(datetime.now(timezone.utc))

    def _check_online(self) -> None:
        if self.closed:
            raise ConnectivityError("store is closed")
        if not self.online:
            raise ConnectivityError("store unreachable")

    def _resolve(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        now = self._now_iso()
        return {
            key: (now if value is SERVER_TIMESTAMP else copy.deepcopy(value))
            for key, value in fields.items()
        }

    def _snapshot(self, collection: str, filters: Mapping[str, Any]) -> List[Document]:
        docs = self._collections.get(collection, {})
        return [
            Document(id=doc_id, data=copy.deepcopy(data))
            for doc_id, data in docs.items()
            if all(data.get(k) == v for k, v in filters.items())
        ]

    def set_online(self, online: bool) -> None:
        self.online = online
        print(f"[store] backend {'online' if online else 'offline'}")

    # -- fan-out -------------------------------------------------------------
    def _schedule(self, sub: Subscription, docs: Optional[List[Document]]) -> None:
        loop = asyncio.get_running_loop()
        self._pending += 1

        def _run() -> None:
            self._pending -= 1
            if not sub.active:
                return
            payload = docs if docs is not None else self._snapshot(sub.collection, sub.filters)
            sub.deliver(payload)

        loop.call_soon(_run)

    def _notify(
        self,
        collection: str,
        before: Optional[Mapping[str, Any]],
        after: Optional[Mapping[str, Any]],
    ) -> None:
        for sub in list(self._subs):
            if not sub.active or sub.collection != collection:
                continue
            touched = (before is not None and sub.matches(before)) or (
                after is not None and sub.matches(after)
            )
            if touched:
                self._schedule(sub, self._snapshot(collection, sub.filters))

    async def drain(self) -> None:
        """Wait until every scheduled delivery has run."""
        while self._pending > 0:
            await asyncio.sleep(0)

    # -- Store contract ------------------------------------------------------
    async def ping(self) -> bool:
        self._check_online()
        return True

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        self._check_online()
        data = self._collections.get(collection, {}).get(doc_id)
        if data is None:
            return None
        return Document(id=doc_id, data=copy.deepcopy(data))

    async def query(self, collection: str, filters: Optional[Mapping[str, Any]] = None) -> List[Document]:
        self._check_online()
        return self._snapshot(collection, filters or {})

    async def create(self, collection: str, fields: Mapping[str, Any]) -> str:
        self._check_online()
        async with self._lock:
            doc_id = uuid.uuid4().hex[:20]
            data = self._resolve(fields)
            docs = self._collections.setdefault(collection, {})
            docs[doc_id] = data
            try:
                await self._persist()
            except ConnectivityError:
                docs.pop(doc_id, None)
                raise
            self._notify(collection, None, data)
        return doc_id

    async def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        self._check_online()
        async with self._lock:
            docs = self._collections.get(collection, {})
            current = docs.get(doc_id)
            if current is None:
                raise NotFoundError(f"{collection}/{doc_id} not found")
            before = copy.deepcopy(current)
            current.update(self._resolve(fields))
            try:
                await self._persist()
            except ConnectivityError:
                docs[doc_id] = before
                raise
            self._notify(collection, before, current)

    async def delete(self, collection: str, doc_id: str) -> None:
        self._check_online()
        async with self._lock:
            docs = self._collections.get(collection, {})
            if doc_id not in docs:
                return
            # Restoring must keep creation order for first-match lookups
            entries = list(docs.items())
            before = docs.pop(doc_id)
            try:
                await self._persist()
            except ConnectivityError:
                docs.clear()
                docs.update(entries)
                raise
            self._notify(collection, before, None)

    def subscribe(
        self,
        collection: str,
        callback: SnapshotCallback,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> Subscription:
        sub = Subscription(collection, callback, filters, release=self._release)
        if self.closed:
            sub.unsubscribe()
            return sub
        self._subs.append(sub)
        self._schedule(sub, None)
        return sub

    def _release(self, sub: Subscription) -> None:
        if sub in self._subs:
            self._subs.remove(sub)

    def subscription_count(self) -> int:
        return sum(1 for sub in self._subs if sub.active)

    def close(self) -> None:
        self.closed = True
        subs, self._subs = self._subs, []
        for sub in subs:
            sub.unsubscribe()


__all__ = ["DocumentStore"]
