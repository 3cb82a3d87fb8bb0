from __future__ import annotations

from typing import Callable, Optional, Protocol

import httpx

from .notifications import ChangeFeed


class BackendError(Exception):
    """Raised when the hosted backend cannot be reached or rejects a request."""


class CanteenBackend(Protocol):
    def fetch_orders(self, canteen_id: str) -> list[dict]: ...

    def fetch_reviews(self, canteen_id: str) -> list[dict]: ...

    def update_order_status(
        self, order_id: str, new_status: str, updated_at: str, *, expected_status: str
    ) -> bool: ...

    def subscribe_to_order_changes(
        self, canteen_id: str, on_change: Callable[[], None]
    ) -> Callable[[], None]: ...

    def resolve_canteen_for_owner(self, owner_id: str) -> Optional[str]: ...


class HTTPBackendClient:
    """Talks to the hosted PostgREST API.

    Change notifications reach this client through its ``feed``, which the
    database webhook endpoint publishes to.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        timeout: float = 5.0,
        feed: ChangeFeed | None = None,
        client: httpx.Client | None = None,
    ):
        root = base_url.rstrip("/")
        self._base_url = root + "/rest/v1"
        self._auth_url = root + "/auth/v1"
        headers = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.Client(timeout=timeout)
        self._headers = headers
        self.feed = feed or ChangeFeed()

    def fetch_orders(self, canteen_id: str) -> list[dict]:
        return self._select(
            "orders",
            {"select": "*", "canteen_id": f"eq.{canteen_id}", "order": "created_at.desc"},
        )

    def fetch_reviews(self, canteen_id: str) -> list[dict]:
        return self._select(
            "reviews",
            {"select": "*", "canteen_id": f"eq.{canteen_id}", "order": "created_at.desc"},
        )

    def update_order_status(
        self, order_id: str, new_status: str, updated_at: str, *, expected_status: str
    ) -> bool:
        try:
            response = self._client.patch(
                f"{self._base_url}/orders",
                params={"id": f"eq.{order_id}", "status": f"eq.{expected_status}"},
                json={"status": new_status, "updated_at": updated_at},
                headers={**self._headers, "Prefer": "return=representation"},
            )
        except httpx.HTTPError as exc:
            raise BackendError(f"Backend not reachable: {exc}") from exc
        if response.status_code >= 400:
            raise BackendError(
                f"Status update rejected ({response.status_code}): {response.text}"
            )
        return bool(response.json())

    def subscribe_to_order_changes(
        self, canteen_id: str, on_change: Callable[[], None]
    ) -> Callable[[], None]:
        return self.feed.subscribe(canteen_id, on_change)

    def resolve_canteen_for_owner(self, owner_id: str) -> Optional[str]:
        rows = self._select(
            "canteens", {"select": "id", "owner_id": f"eq.{owner_id}", "limit": "1"}
        )
        if not rows:
            return None
        return rows[0].get("id")

    def fetch_user_id(self, access_token: str) -> Optional[str]:
        """Return the user id behind an auth session token, or None if the token is not valid."""
        headers = {**self._headers, "Authorization": f"Bearer {access_token}"}
        try:
            response = self._client.get(f"{self._auth_url}/user", headers=headers)
        except httpx.HTTPError as exc:
            raise BackendError(f"Auth service not reachable: {exc}") from exc
        if response.status_code in (401, 403):
            return None
        if response.status_code >= 400:
            raise BackendError(
                f"User lookup failed ({response.status_code}): {response.text}"
            )
        payload = response.json()
        if not isinstance(payload, dict) or not payload.get("id"):
            return None
        return str(payload["id"])

    def close(self) -> None:
        self._client.close()

    def _select(self, table: str, params: dict) -> list[dict]:
        try:
            response = self._client.get(
                f"{self._base_url}/{table}", params=params, headers=self._headers
            )
        except httpx.HTTPError as exc:
            raise BackendError(f"Backend not reachable: {exc}") from exc
        if response.status_code >= 400:
            raise BackendError(
                f"Query on {table} failed ({response.status_code}): {response.text}"
            )
        payload = response.json()
        if not isinstance(payload, list):
            raise BackendError(f"Unexpected payload for {table}: {payload!r}")
        return payload
