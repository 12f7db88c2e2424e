# =============================================================================
# reva_core/data/remote.py
# Contracts for the Remote Mutation API and the Realtime Transport
# =============================================================================
"""
Abstract collaborators the sync core talks to.

The Supabase adapters in supabase_client.py implement both; tests use
in-memory fakes.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from reva_core.offline.models import ChangeEvent


@dataclass
class RemoteResult:
    """Server-confirmed outcome of a mutation."""
    record: Optional[Dict[str, Any]]    # None for deletes
    revision: Optional[str] = None
    replayed: bool = False              # Already applied by an earlier attempt


@dataclass
class FilterSpec:
    """Parsed `column=op.value` subscription filter."""
    column: str
    operator: str
    value: str
    raw: str = field(default="", compare=False)

    @property
    def values(self) -> List[str]:
        """Operand list for the `in` operator: `in.(a,b,c)`."""
        return [v.strip() for v in self.value.strip("()").split(",") if v.strip()]


EventHandler = Callable[["ChangeEvent"], Any]
CloseHandler = Callable[[Optional[BaseException]], Any]


class RemoteApi(ABC):
    """
    Mutation and query API of the backend.

    Implementations raise TransientRemoteError for failures worth retrying,
    PermanentRemoteError for failures that never succeed on replay, and
    RevisionConflictError when an update or delete was based on a stale
    revision. Every mutation carries the outbox idempotency key so that a
    replay of an already-applied mutation reports success instead of
    applying twice.
    """

    @abstractmethod
    async def create(self, table: str, entity_id: str, payload: Dict[str, Any],
                     idempotency_key: str) -> RemoteResult:
        ...

    @abstractmethod
    async def update(self, table: str, entity_id: str, payload: Dict[str, Any],
                     idempotency_key: str, expected_revision: Optional[str]) -> RemoteResult:
        ...

    @abstractmethod
    async def delete(self, table: str, entity_id: str, idempotency_key: str,
                     expected_revision: Optional[str]) -> RemoteResult:
        ...

    @abstractmethod
    async def fetch(self, table: str, entity_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def fetch_since(self, table: str, since: Optional[str],
                          filter_spec: Optional[FilterSpec] = None,
                          limit: int = 500) -> List[Dict[str, Any]]:
        """Rows whose revision is newer than `since` (all rows when None)."""


class RealtimeTransport(ABC):
    """Opens and closes remote change-stream channels."""

    @abstractmethod
    async def open_channel(
        self,
        table: str,
        filter_spec: Optional[FilterSpec],
        on_event: EventHandler,
        on_close: CloseHandler,
    ) -> Any:
        """
        Open a channel and return once the server confirmed the subscription.

        Raises ChannelError if the channel cannot be joined. After a
        successful open, on_event receives every change and on_close is
        called once if the channel drops.

        Returns:
            Opaque handle passed back to close_channel()
        """

    @abstractmethod
    async def close_channel(self, handle: Any) -> None:
        ...
