"""Sync client for exchanging changes with a mixsync server.

Handles network synchronization with retry logic, batching and cursor
tracking so a replica only pulls what it has not seen yet.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import httpx

from .change import Change

logger = logging.getLogger(__name__)

CHANGES_PATH = "/v1/sync/changes"


class SyncStatus(Enum):
    """Status of a sync operation."""

    SUCCESS = "success"
    FAILED = "failed"
    OFFLINE = "offline"  # Server unavailable


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncStatus
    entries_pushed: int = 0
    entries_pulled: int = 0
    changes: list[Change] = field(default_factory=list)
    error: str | None = None
    timestamp: datetime | None = None


class SyncClient:
    """Client for pushing local changes and pulling remote ones.

    Supports:
    - Push: Send queued local changes to the server
    - Pull: Fetch changes at or after the last cursor
    - Full sync: Push then pull

    The pull cursor is inclusive, so records already delivered are dropped
    by their dedup key. Records originating from this device are dropped as
    echoes.
    """

    def __init__(
        self,
        server_url: str | None = None,
        device_id: str | None = None,
        token: str | None = None,
        batch_size: int = 100,
        max_retries: int = 3,
        timeout: float = 30.0,
    ):
        """Initialize the sync client.

        Args:
            server_url: Base URL of the sync server (e.g., "http://nas:8080").
            device_id: This replica's id, used to filter echoes of own edits.
            token: Bearer token for the push endpoint, if the server requires one.
            batch_size: Maximum changes per push request.
            max_retries: Maximum retry attempts.
            timeout: Request timeout in seconds.
        """
        self.server_url = server_url
        self.device_id = device_id
        self.token = token
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.timeout = timeout
        self.cursor = ""
        self._outbox: list[Change] = []
        self._seen: set[tuple] = set()
        self._last_sync: datetime | None = None
        self._consecutive_failures = 0

    def set_server_url(self, url: str) -> None:
        """Set or update the server URL."""
        self.server_url = url
        logger.info(f"Server URL set to {url}")

    def queue(self, changes: list[Change]) -> None:
        """Add local changes to the outbox for the next push."""
        self._outbox.extend(changes)

    @property
    def pending(self) -> list[Change]:
        """Changes waiting to be pushed."""
        return list(self._outbox)

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json_data: Any = None,
        params: dict[str, str] | None = None,
    ) -> tuple[Any, str | None]:
        """Make HTTP request with exponential backoff retry.

        Args:
            method: HTTP method (GET, POST).
            path: URL path to append to server_url.
            json_data: Optional JSON body.
            params: Optional query parameters.

        Returns:
            Tuple of (response_data, error_message).
        """
        if not self.server_url:
            return None, "No server URL configured"

        url = f"{self.server_url.rstrip('/')}{path}"
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        backoff = 1.0
        connection_failures = 0

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for attempt in range(self.max_retries):
                try:
                    if method == "GET":
                        response = await client.get(url, params=params, headers=headers)
                    elif method == "POST":
                        response = await client.post(
                            url, json=json_data, params=params, headers=headers
                        )
                    else:
                        return None, f"Unsupported method: {method}"

                    if response.status_code in (200, 202):
                        self._consecutive_failures = 0
                        return response.json(), None

                    elif response.status_code >= 500:
                        # Server error, retry
                        logger.warning(
                            f"Server error {response.status_code}, "
                            f"attempt {attempt + 1}/{self.max_retries}"
                        )
                    else:
                        # Client error, don't retry
                        return None, f"HTTP {response.status_code}: {response.text}"

                except httpx.ConnectError:
                    connection_failures += 1
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.HTTPError as e:
                    logger.error(f"Request error: {e}")
                    return None, str(e)

                # Exponential backoff
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        self._consecutive_failures += 1
        if connection_failures == self.max_retries:
            return None, f"Connection failed after {self.max_retries} attempts"
        return None, f"Max retries ({self.max_retries}) exceeded"

    @staticmethod
    def _failure(error: str) -> SyncResult:
        return SyncResult(
            status=SyncStatus.OFFLINE if "Connection" in error else SyncStatus.FAILED,
            error=error,
        )

    async def check_connection(self) -> bool:
        """Check whether the server answers its health check."""
        if not self.server_url:
            return False
        url = f"{self.server_url.rstrip('/')}/health"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url)
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Health check failed: {e}")
            return False

    async def push_pending(self) -> SyncResult:
        """Push queued local changes to the server in batches.

        Acknowledged batches leave the outbox. The first failing batch stops
        the push; it and everything after it stay queued.

        Returns:
            SyncResult with push statistics.
        """
        if not self.server_url:
            return SyncResult(
                status=SyncStatus.FAILED,
                error="No server URL configured",
            )

        pushed = 0
        while self._outbox:
            batch = self._outbox[: self.batch_size]
            data, error = await self._request_with_retry(
                "POST", CHANGES_PATH, [c.to_dict() for c in batch]
            )
            if error:
                result = self._failure(error)
                result.entries_pushed = pushed
                return result

            received = data.get("received", 0) if isinstance(data, dict) else 0
            if received != len(batch):
                logger.warning(
                    f"Server acknowledged {received} of {len(batch)} changes"
                )
            del self._outbox[: len(batch)]
            pushed += len(batch)

        self._last_sync = datetime.now()
        return SyncResult(
            status=SyncStatus.SUCCESS,
            entries_pushed=pushed,
            timestamp=self._last_sync,
        )

    async def pull(self, since: str | None = None) -> SyncResult:
        """Pull changes from the server.

        Args:
            since: Cursor to pull from. If None, uses the last cursor seen.

        Returns:
            SyncResult carrying the changes this replica has not seen yet.
        """
        if not self.server_url:
            return SyncResult(
                status=SyncStatus.FAILED,
                error="No server URL configured",
            )

        cursor = self.cursor if since is None else since
        params = {"since": cursor} if cursor else None

        data, error = await self._request_with_retry("GET", CHANGES_PATH, params=params)
        if error:
            return self._failure(error)

        try:
            received = [Change.from_dict(item) for item in data or []]
        except (TypeError, ValueError) as e:
            return SyncResult(status=SyncStatus.FAILED, error=f"Bad response: {e}")

        fresh = []
        latest = self.cursor
        for change in received:
            # Every ts coming back from the server is in the fixed profile,
            # so the greatest string is the latest time
            if change.ts > latest:
                latest = change.ts
            if change.dedup_key in self._seen:
                continue
            self._seen.add(change.dedup_key)
            if self.device_id and change.device_id == self.device_id:
                continue
            fresh.append(change)

        if latest != self.cursor:
            # The cursor is inclusive: only records stamped at it can repeat
            self._seen = {c.dedup_key for c in received if c.ts == latest}
            self.cursor = latest

        self._last_sync = datetime.now()
        logger.debug(f"Pulled {len(received)} changes, {len(fresh)} new")

        return SyncResult(
            status=SyncStatus.SUCCESS,
            entries_pulled=len(fresh),
            changes=fresh,
            timestamp=self._last_sync,
        )

    async def full_sync(self) -> SyncResult:
        """Perform bidirectional sync.

        Returns:
            Combined SyncResult.
        """
        # Push first
        push_result = await self.push_pending()
        if push_result.status == SyncStatus.OFFLINE:
            return push_result

        # Then pull
        pull_result = await self.pull()

        return SyncResult(
            status=pull_result.status
            if push_result.status == SyncStatus.SUCCESS
            else push_result.status,
            entries_pushed=push_result.entries_pushed,
            entries_pulled=pull_result.entries_pulled,
            changes=pull_result.changes,
            error=push_result.error or pull_result.error,
            timestamp=datetime.now(),
        )

    @property
    def last_sync(self) -> datetime | None:
        """Get timestamp of last successful sync."""
        return self._last_sync

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with sync statistics.
        """
        return {
            "server_url": self.server_url,
            "device_id": self.device_id,
            "cursor": self.cursor,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "consecutive_failures": self._consecutive_failures,
            "pending_entries": len(self._outbox),
        }
