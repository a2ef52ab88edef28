"""Remote layer — RemotePlatform interface.

The execution core never talks to HTTP directly.  Everything it needs from
the CRM is expressed by the async methods below, so tests can substitute an
in-memory implementation and the production wiring uses ``HubSpotClient``.

All implementations raise subclasses of ``RemoteError``.  Rate limiting,
retries and timeouts are NOT the implementation's concern; the orchestration
gateway wraps every call.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class RemotePlatform(ABC):
    """Capability interface over a HubSpot-style CRM."""

    @abstractmethod
    async def read_property(self, object_type: str, object_id: str, property: str) -> Any:
        """Return the current value of *property*, or ``None`` when unset."""

    @abstractmethod
    async def update_properties(
        self, object_type: str, object_id: str, properties: dict[str, Any]
    ) -> None: ...

    @abstractmethod
    async def delete_object(self, object_type: str, object_id: str) -> None: ...

    @abstractmethod
    async def add_to_list(self, list_id: str, member_ids: list[str]) -> None: ...

    @abstractmethod
    async def remove_from_list(self, list_id: str, member_ids: list[str]) -> None: ...

    @abstractmethod
    async def create_association(
        self, from_type: str, from_id: str, to_type: str, to_id: str
    ) -> None: ...

    @abstractmethod
    async def remove_association(
        self, from_type: str, from_id: str, to_type: str, to_id: str
    ) -> None: ...

    @abstractmethod
    async def merge_objects(
        self, object_type: str, primary_id: str, secondary_id: str
    ) -> None:
        """Merge *secondary_id* into *primary_id*. The secondary is deleted remotely."""

    async def aclose(self) -> None:
        """Release network resources. Default: nothing to release."""
