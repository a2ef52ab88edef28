"""Remote layer — HubSpot CRM client on httpx.

Implements :class:`RemotePlatform` against the CRM v3 objects API, the v3
lists API and the v4 associations API.  Non-success responses are mapped
onto the ``RemoteError`` family; rate limiting and retries live in the
orchestration gateway, not here.
"""

from __future__ import annotations

from typing import Any

import httpx

from crm_audit.config import RemoteConfig
from crm_audit.exceptions import (
    RemoteAPIError,
    RemoteAuthError,
    RemoteConflictError,
    RemoteError,
    RemoteNotFoundError,
    RemoteRateLimitError,
    RemoteScopeError,
    RemoteValidationError,
)
from crm_audit.logging import get_logger
from crm_audit.remote.base import RemotePlatform

_log = get_logger(__name__)

# List membership endpoints accept at most this many ids per request.
_LIST_CHUNK_SIZE = 100

_OBJECT_PATHS = {
    "contact": "contacts",
    "company": "companies",
    "deal": "deals",
}


def _object_path(object_type: str) -> str:
    return _OBJECT_PATHS.get(object_type, object_type)


def _as_property_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _chunks(items: list[str], size: int) -> list[list[str]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def map_http_error(response: httpx.Response) -> RemoteError:
    """Translate a non-success response into the matching ``RemoteError``."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    message = body.get("message") if isinstance(body, dict) else None
    status = response.status_code

    if status == 401:
        return RemoteAuthError()
    if status == 403:
        return RemoteScopeError()
    if status == 404:
        return RemoteNotFoundError(message or "Resource not found.")
    if status == 409:
        return RemoteConflictError(message or "Conflict. Resource already exists or cannot be modified.")
    if status == 429:
        retry_after: float | None = None
        header = response.headers.get("Retry-After")
        if header is not None:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None
        return RemoteRateLimitError(retry_after=retry_after)
    if status == 400:
        errors = body.get("errors", []) if isinstance(body, dict) else []
        return RemoteValidationError(message or "Validation failed.", errors=errors)
    return RemoteAPIError(
        message or f"HubSpot API error (status={status}): {response.text[:500]}",
        status_code=status,
        category="API_ERROR",
    )


class HubSpotClient(RemotePlatform):
    """HTTP implementation of the remote capability.

    Usage::

        client = HubSpotClient.from_config(settings.remote)
        await client.update_properties("contact", "101", {"email": "a@b.c"})
        await client.aclose()
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.hubapi.com",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: RemoteConfig) -> "HubSpotClient":
        if not config.access_token:
            raise RemoteAuthError("No access token configured (remote.access_token).")
        return cls(
            access_token=config.access_token,
            base_url=config.base_url,
            timeout=config.timeout_seconds,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        response = await self._client.request(method, path, json=json, params=params)
        if response.is_success:
            if not response.content:
                return None
            return response.json()
        error = map_http_error(response)
        _log.warning(
            "remote_request_failed",
            method=method,
            path=path,
            status_code=response.status_code,
            category=error.category,
        )
        raise error

    # ------------------------------------------------------------------
    # RemotePlatform
    # ------------------------------------------------------------------

    async def read_property(self, object_type: str, object_id: str, property: str) -> Any:
        data = await self._request(
            "GET",
            f"/crm/v3/objects/{_object_path(object_type)}/{object_id}",
            params={"properties": property},
        )
        return (data or {}).get("properties", {}).get(property)

    async def update_properties(
        self, object_type: str, object_id: str, properties: dict[str, Any]
    ) -> None:
        await self._request(
            "PATCH",
            f"/crm/v3/objects/{_object_path(object_type)}/{object_id}",
            json={"properties": {k: _as_property_value(v) for k, v in properties.items()}},
        )

    async def delete_object(self, object_type: str, object_id: str) -> None:
        await self._request("DELETE", f"/crm/v3/objects/{_object_path(object_type)}/{object_id}")

    async def add_to_list(self, list_id: str, member_ids: list[str]) -> None:
        for chunk in _chunks(member_ids, _LIST_CHUNK_SIZE):
            await self._request("PUT", f"/crm/v3/lists/{list_id}/memberships/add", json=chunk)

    async def remove_from_list(self, list_id: str, member_ids: list[str]) -> None:
        for chunk in _chunks(member_ids, _LIST_CHUNK_SIZE):
            await self._request("PUT", f"/crm/v3/lists/{list_id}/memberships/remove", json=chunk)

    async def create_association(
        self, from_type: str, from_id: str, to_type: str, to_id: str
    ) -> None:
        await self._request(
            "PUT",
            f"/crm/v4/objects/{_object_path(from_type)}/{from_id}"
            f"/associations/default/{_object_path(to_type)}/{to_id}",
        )

    async def remove_association(
        self, from_type: str, from_id: str, to_type: str, to_id: str
    ) -> None:
        await self._request(
            "DELETE",
            f"/crm/v4/objects/{_object_path(from_type)}/{from_id}"
            f"/associations/{_object_path(to_type)}/{to_id}",
        )

    async def merge_objects(
        self, object_type: str, primary_id: str, secondary_id: str
    ) -> None:
        await self._request(
            "POST",
            f"/crm/v3/objects/{_object_path(object_type)}/merge",
            json={"primaryObjectId": primary_id, "objectIdToMerge": secondary_id},
        )

    async def aclose(self) -> None:
        await self._client.aclose()
