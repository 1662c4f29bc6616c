"""HTTP gateway to the booking store and transaction coordinator."""

import asyncio
import logging
import re
from typing import Any, Dict, Optional, Sequence
from urllib.parse import quote

import httpx

from .config import Settings, settings as default_settings
from .exceptions import (
    AlreadyCommitted,
    AuthenticationError,
    HoldExpired,
    LockHeldError,
    NetworkError,
    PermissionDenied,
    RecordExists,
    RecordNotFound,
    ResourceUnavailable,
    StaySyncError,
    ValidationError,
    VersionConflict,
)
from .gateway import StoreGateway, Subscription, TransactionCoordinator
from .models import ChangeEvent, ChangeType, Period, Record, ReservationHold

logger = logging.getLogger(__name__)

_CONFLICT_CODES = {
    "resource_unavailable": ResourceUnavailable,
    "hold_expired": HoldExpired,
    "already_committed": AlreadyCommitted,
    "lock_held": LockHeldError,
    "exists": RecordExists,
    "not_found": RecordNotFound,
}


class HttpGateway(StoreGateway, TransactionCoordinator):
    """Async REST client implementing both store contracts."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the gateway.

        Args:
            base_url: Base URL of the booking API (defaults to settings)
            token: Bearer token identifying the caller
            config: Settings instance
            transport: Optional httpx transport, mainly for tests
        """
        self.config = config or default_settings
        self.base_url = (base_url or self.config.base_url).rstrip("/")
        self.token = token if token is not None else self.config.api_token
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.token}"} if self.token else {},
            timeout=self.config.http_timeout,
            transport=transport,
        )
        self._pollers: Dict[Subscription, asyncio.Task] = {}

    def _validate_key(self, name: str, value: str) -> None:
        """Validate a path segment."""
        if not value or len(value) > 256:
            raise ValidationError(f"{name} must be 1-256 characters")
        if not re.match(r"^[A-Za-z0-9._:@-]+$", value):
            raise ValidationError(
                f"{name} can only contain alphanumeric characters and . _ : @ -"
            )

    def _path(self, *segments: str) -> str:
        return "/" + "/".join(quote(s, safe="") for s in segments)

    def _handle_response(self, response: httpx.Response) -> Any:
        """Handle HTTP response and raise appropriate exceptions."""
        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {}
            if not isinstance(error_data, dict):
                error_data = {}
            message = error_data.get("error") or f"HTTP {response.status_code}: {response.text}"
            code = error_data.get("code")

            if response.status_code == 401:
                raise AuthenticationError("Invalid or missing authentication token")
            if response.status_code == 403:
                raise PermissionDenied(message)
            if response.status_code in (400, 422):
                raise ValidationError(message)
            if response.status_code == 404:
                raise RecordNotFound(message)
            if response.status_code == 409:
                if code == "version_conflict":
                    raise VersionConflict(
                        message,
                        expected=error_data.get("expected_version"),
                        actual=error_data.get("current_version"),
                    )
                if code == "lock_held":
                    raise LockHeldError(
                        message,
                        holder_id=error_data.get("holder_id"),
                        expires_at=error_data.get("expires_at"),
                    )
                if code == "already_committed":
                    raise AlreadyCommitted(message, booking_id=error_data.get("booking_id"))
                raise _CONFLICT_CODES.get(code, ResourceUnavailable)(message)
            if response.status_code == 429 or response.status_code >= 500:
                raise NetworkError(message)
            raise StaySyncError(message)

        try:
            return response.json() if response.content else {}
        except ValueError as e:
            raise NetworkError(f"Failed to parse response: {e}")

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise NetworkError(f"Network error during {method} {path}: {e}")
        return self._handle_response(response)

    async def health(self) -> str:
        """Check API health status."""
        try:
            response = await self.client.get("/health")
        except httpx.RequestError as e:
            raise NetworkError(f"Network error during health check: {e}")
        if response.status_code != 200:
            raise NetworkError(f"Health check failed: HTTP {response.status_code}")
        return response.text.strip('"')

    # -- records ---------------------------------------------------------

    async def create(
        self, collection: str, key: str, data: Dict[str, Any], origin: Optional[str] = None
    ) -> Record:
        self._validate_key("Collection", collection)
        self._validate_key("Key", key)
        payload = await self._request(
            "POST",
            self._path("collections", collection, "records"),
            json={"key": key, "data": data, "origin": origin},
        )
        return Record.from_dict(payload)

    async def read(self, collection: str, key: str) -> Optional[Record]:
        self._validate_key("Collection", collection)
        self._validate_key("Key", key)
        try:
            payload = await self._request("GET", self._path("collections", collection, "records", key))
        except RecordNotFound:
            return None
        return Record.from_dict(payload)

    async def update(
        self,
        collection: str,
        key: str,
        data: Dict[str, Any],
        expected_version: Optional[int] = None,
        origin: Optional[str] = None,
    ) -> Record:
        self._validate_key("Collection", collection)
        self._validate_key("Key", key)
        payload = await self._request(
            "PUT",
            self._path("collections", collection, "records", key),
            json={"data": data, "expected_version": expected_version, "origin": origin},
        )
        return Record.from_dict(payload)

    async def delete(
        self,
        collection: str,
        key: str,
        expected_version: Optional[int] = None,
        origin: Optional[str] = None,
    ) -> None:
        self._validate_key("Collection", collection)
        self._validate_key("Key", key)
        params = {}
        if expected_version is not None:
            params["expected_version"] = expected_version
        if origin is not None:
            params["origin"] = origin
        try:
            await self._request(
                "DELETE", self._path("collections", collection, "records", key), params=params
            )
        except RecordNotFound:
            return

    async def fetch_changes(
        self, collection: str, cursor: Optional[str] = None, limit: Optional[int] = None
    ) -> Dict[str, Any]:
        """One page of the change feed: ``{"changes": [...], "cursor": ...}``."""
        params: Dict[str, Any] = {}
        if cursor:
            params["cursor"] = cursor
        if limit:
            params["limit"] = limit
        return await self._request(
            "GET", self._path("collections", collection, "changes"), params=params
        )

    def subscribe(self, collection: str, limit: Optional[int] = None) -> Subscription:
        self._validate_key("Collection", collection)
        subscription = Subscription(collection, limit, on_cancel=self._stop_polling)
        self._pollers[subscription] = asyncio.get_running_loop().create_task(
            self._poll(subscription)
        )
        return subscription

    async def _poll(self, subscription: Subscription) -> None:
        cursor = None
        interval = self.config.feed_poll_interval_seconds
        while not subscription.cancelled:
            try:
                page = await self.fetch_changes(subscription.collection, cursor, subscription.limit)
            except NetworkError as e:
                logger.warning("Change feed for %s unavailable: %s", subscription.collection, e)
            except StaySyncError as e:
                self._end_feed(subscription, e)
                return
            else:
                try:
                    events = [
                        ChangeEvent(ChangeType(change["type"]), Record.from_dict(change["record"]))
                        for change in page.get("changes", [])
                    ]
                except (KeyError, TypeError, ValueError) as e:
                    self._end_feed(
                        subscription, ValidationError(f"Malformed change in feed: {e!r}")
                    )
                    return
                for event in events:
                    subscription.push(event)
                cursor = page.get("cursor", cursor)
            await asyncio.sleep(interval)

    def _end_feed(self, subscription: Subscription, error: StaySyncError) -> None:
        logger.error("Change feed for %s stopped: %s", subscription.collection, error)
        self._pollers.pop(subscription, None)
        subscription.fail(error)

    def _stop_polling(self, subscription: Subscription) -> None:
        task = self._pollers.pop(subscription, None)
        if task is not None:
            task.cancel()

    # -- holds -----------------------------------------------------------

    async def create_hold(
        self, resource_id: str, period: Period, owner_id: str, ttl_seconds: float
    ) -> ReservationHold:
        self._validate_key("Resource id", resource_id)
        if not owner_id:
            raise ValidationError("Hold owner must be identified")
        payload = await self._request(
            "POST",
            "/holds",
            json={
                "resource_id": resource_id,
                "period_start": period.start.isoformat(),
                "period_end": period.end.isoformat(),
                "owner_id": owner_id,
                "ttl_seconds": ttl_seconds,
            },
        )
        return ReservationHold.from_dict(payload)

    async def read_hold(self, hold_id: str) -> Optional[ReservationHold]:
        self._validate_key("Hold id", hold_id)
        try:
            payload = await self._request("GET", self._path("holds", hold_id))
        except RecordNotFound:
            return None
        return ReservationHold.from_dict(payload)

    async def release_hold(self, hold_id: str) -> None:
        self._validate_key("Hold id", hold_id)
        try:
            await self._request("POST", self._path("holds", hold_id, "release"))
        except RecordNotFound:
            return

    async def atomic_commit(self, hold_id: str, payment_ref: str) -> str:
        self._validate_key("Hold id", hold_id)
        try:
            payload = await self._request(
                "POST", self._path("holds", hold_id, "commit"), json={"payment_ref": payment_ref}
            )
        except RecordNotFound:
            raise HoldExpired(f"Hold '{hold_id}' does not exist", hold_id=hold_id)
        return payload["booking_id"]

    async def check_availability(self, resource_id: str, period: Period) -> bool:
        self._validate_key("Resource id", resource_id)
        payload = await self._request(
            "GET",
            "/availability",
            params={
                "resource_id": resource_id,
                "period_start": period.start.isoformat(),
                "period_end": period.end.isoformat(),
            },
        )
        return bool(payload.get("available"))

    async def block_dates(
        self, resource_id: str, periods: Sequence[Period], actor_id: Optional[str] = None
    ) -> None:
        self._validate_key("Resource id", resource_id)
        await self._request(
            "POST",
            self._path("resources", resource_id, "blocks"),
            json={"periods": [p.to_dict() for p in periods], "actor_id": actor_id},
        )

    async def close(self) -> None:
        """Stop change feeds and close the HTTP client."""
        for subscription in list(self._pollers):
            subscription.cancel()
        await self.client.aclose()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
