"""Base document store interface."""

import secrets
import string
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..sync.live import Callback, ErrorCallback, Subscription
from . import paths

_AUTO_ID_ALPHABET = string.ascii_letters + string.digits
_AUTO_ID_LENGTH = 20


class _ServerTimestamp:
    """Placeholder replaced by the store's clock when a write is committed."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class ArrayUnion:
    """Append values to an array field, skipping ones already present."""

    def __init__(self, *values: Any) -> None:
        self.values = list(values)

    def __repr__(self) -> str:
        return f"ArrayUnion({self.values!r})"


class ArrayRemove:
    """Remove every occurrence of the given values from an array field."""

    def __init__(self, *values: Any) -> None:
        self.values = list(values)

    def __repr__(self) -> str:
        return f"ArrayRemove({self.values!r})"


class Increment:
    """Add ``amount`` to a numeric field, treating a missing field as zero."""

    def __init__(self, amount: int = 1) -> None:
        self.amount = amount

    def __repr__(self) -> str:
        return f"Increment({self.amount})"


@dataclass(frozen=True)
class DocumentSnapshot:
    path: str
    data: Optional[Dict[str, Any]] = None
    update_time: Optional[datetime] = None

    @property
    def id(self) -> str:
        return paths.leaf(self.path)

    @property
    def exists(self) -> bool:
        return self.data is not None


@dataclass(frozen=True)
class Query:
    """Collection query: optional single-field ordering and a result limit."""

    collection: str
    order_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = None


class WriteKind(str, Enum):
    CREATE = "create"
    SET = "set"
    UPDATE = "update"


@dataclass
class Write:
    kind: WriteKind
    path: str
    data: Dict[str, Any] = field(default_factory=dict)
    merge: bool = False
    last_update: Optional[datetime] = None


class WriteBatch:
    """Collects writes and commits them all-or-nothing."""

    def __init__(self, store: "DocumentStore") -> None:
        self._store = store
        self._writes: List[Write] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._writes)

    def create(self, path: str, data: Dict[str, Any]) -> "WriteBatch":
        self._writes.append(Write(WriteKind.CREATE, path, data))
        return self

    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> "WriteBatch":
        self._writes.append(Write(WriteKind.SET, path, data, merge=merge))
        return self

    def update(
        self,
        path: str,
        data: Dict[str, Any],
        last_update: Optional[datetime] = None,
    ) -> "WriteBatch":
        """Merge into an existing document.

        With ``last_update`` the write only applies if the document has not
        changed since the snapshot carrying that update time was read.
        """
        self._writes.append(Write(WriteKind.UPDATE, path, data, last_update=last_update))
        return self

    async def commit(self) -> None:
        if self._committed:
            raise RuntimeError("Write batch already committed")
        if self._writes:
            await self._store.commit(self._writes)
        self._committed = True


class DocumentStore(ABC):
    """Abstract base class for document stores."""

    @abstractmethod
    async def get(self, path: str) -> DocumentSnapshot:
        """Read a single document."""
        pass

    @abstractmethod
    async def query(self, query: Query) -> List[DocumentSnapshot]:
        """Run a collection query."""
        pass

    @abstractmethod
    async def commit(self, writes: Sequence[Write]) -> None:
        """Apply writes atomically."""
        pass

    @abstractmethod
    def subscribe_document(
        self,
        path: str,
        on_next: Callback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """Listen to one document; ``on_next`` receives a DocumentSnapshot."""
        pass

    @abstractmethod
    def subscribe_query(
        self,
        query: Query,
        on_next: Callback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """Listen to a query; ``on_next`` receives a list of DocumentSnapshot."""
        pass

    def new_id(self) -> str:
        return "".join(secrets.choice(_AUTO_ID_ALPHABET) for _ in range(_AUTO_ID_LENGTH))

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def create(self, path: str, data: Dict[str, Any]) -> None:
        await self.commit([Write(WriteKind.CREATE, path, data)])

    async def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        await self.commit([Write(WriteKind.SET, path, data, merge=merge)])

    async def update(self, path: str, data: Dict[str, Any]) -> None:
        await self.commit([Write(WriteKind.UPDATE, path, data)])

    async def close(self) -> None:
        pass
