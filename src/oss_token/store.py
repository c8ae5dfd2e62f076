"""Document store interface and the in-process reference implementation."""

from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Protocol

from .errors import ConfigurationError, NotFound
from .models import ProjectConfig, ProjectStatus, TokenPrice

Document = dict[str, Any]


class Collections:
    """Collection names used across the service."""

    PROJECTS = "projects"
    PLEDGE_REQUESTS = "pledge_requests"
    PLEDGE_RECORDS = "pledge_records"
    PLEDGE_TOKENS = "pledge_tokens"
    LEDGER_TX_INDEX = "ledger_tx_index"
    ISSUANCE_OUTBOX = "issuance_outbox"
    TRUSTLINE_REQUESTS = "trustline_requests"
    TRUSTLINE_SLOTS = "trustline_slots"
    WALLET_LINK_REQUESTS = "wallet_link_requests"
    WALLET_LINKS = "wallet_links"
    QUALITY_SCORES = "quality_scores"
    PRICE_HISTORY = "price_history"
    SETTINGS = "settings"


class Transaction(Protocol):
    async def get(self, collection: str, key: str) -> Optional[Document]: ...

    def set(self, collection: str, key: str, data: Document) -> None: ...

    def update(self, collection: str, key: str, fields: Document) -> None: ...


class DocumentStore(Protocol):
    """Keyed document storage with atomic multi-write transactions."""

    async def get(self, collection: str, key: str) -> Optional[Document]: ...

    async def set(self, collection: str, key: str, data: Document) -> None: ...

    async def update(self, collection: str, key: str, fields: Document) -> None: ...

    async def query(self, collection: str, **equals: Any) -> list[Document]: ...

    def transaction(self) -> Any: ...


class _InMemoryTransaction:
    def __init__(self, data: dict[str, dict[str, Document]]) -> None:
        self._data = data
        self._writes: list[tuple[str, str, Document, bool]] = []

    async def get(self, collection: str, key: str) -> Optional[Document]:
        current = copy.deepcopy(self._data.get(collection, {}).get(key))
        for coll, doc_key, payload, merge in self._writes:
            if coll != collection or doc_key != key:
                continue
            if merge and current is not None:
                current.update(copy.deepcopy(payload))
            elif not merge:
                current = copy.deepcopy(payload)
        return current

    def set(self, collection: str, key: str, data: Document) -> None:
        self._writes.append((collection, key, copy.deepcopy(data), False))

    def update(self, collection: str, key: str, fields: Document) -> None:
        self._writes.append((collection, key, copy.deepcopy(fields), True))

    def commit(self) -> None:
        for collection, key, payload, merge in self._writes:
            docs = self._data.setdefault(collection, {})
            if merge:
                if key not in docs:
                    raise NotFound(f"Document not found: {collection}/{key}")
                docs[key].update(payload)
            else:
                docs[key] = payload


class InMemoryDocumentStore:
    """Dict-backed store; one asyncio lock serialises every read-modify-write."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Document]] = {}
        self._lock = asyncio.Lock()

    async def get(self, collection: str, key: str) -> Optional[Document]:
        async with self._lock:
            return copy.deepcopy(self._data.get(collection, {}).get(key))

    async def set(self, collection: str, key: str, data: Document) -> None:
        async with self._lock:
            self._data.setdefault(collection, {})[key] = copy.deepcopy(data)

    async def update(self, collection: str, key: str, fields: Document) -> None:
        async with self._lock:
            docs = self._data.setdefault(collection, {})
            if key not in docs:
                raise NotFound(f"Document not found: {collection}/{key}")
            docs[key].update(copy.deepcopy(fields))

    async def query(self, collection: str, **equals: Any) -> list[Document]:
        async with self._lock:
            docs = self._data.get(collection, {}).values()
            return [
                copy.deepcopy(doc)
                for doc in docs
                if all(doc.get(field) == value for field, value in equals.items())
            ]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_InMemoryTransaction]:
        async with self._lock:
            txn = _InMemoryTransaction(self._data)
            yield txn
            # staged writes are dropped if the block raised
            txn.commit()


class ProjectStore:
    """Read access to project identity; the price cache is its only write."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def get(self, project_id: str) -> Optional[ProjectConfig]:
        data = await self._store.get(Collections.PROJECTS, project_id)
        if data is None:
            return None
        return ProjectConfig.model_validate({**data, "id": project_id})

    async def require_active(self, project_id: str) -> ProjectConfig:
        """Return the project or raise before any ledger traffic happens."""

        project = await self.get(project_id)
        if project is None:
            raise NotFound(f"Project not found: {project_id}")
        if project.status != ProjectStatus.ACTIVE:
            raise ConfigurationError(f"Project is not active: {project_id}")
        if not project.token_code or not project.issuer_address:
            raise ConfigurationError(f"Project token code or issuer address is not set: {project_id}")
        return project

    async def put(self, project: ProjectConfig) -> None:
        await self._store.set(Collections.PROJECTS, project.id, project.model_dump(mode="json"))

    async def list_active(self) -> list[ProjectConfig]:
        docs = await self._store.query(Collections.PROJECTS, status=ProjectStatus.ACTIVE.value)
        return [ProjectConfig.model_validate(doc) for doc in docs]

    def set_current_price(self, txn: Transaction, project_id: str, price: TokenPrice) -> None:
        txn.update(Collections.PROJECTS, project_id, {"current_price": price.model_dump(mode="json")})
