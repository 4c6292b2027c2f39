"""REST adapter for the desktop broker.

BrokerClient implements the three collaborators the scheduler needs:
- InventorySource: list pools and clones
- ReplicaLookup: find clones built from a parent snapshot
- CommandIssuer: submit recompose and refresh commands

Connection details live in an explicit BrokerSession passed to the client;
nothing is read from global state.

Security:
- HTTPS certificate verification on by default
- API token taken from the environment, never persisted or logged
- Timeout on every request
"""

import logging
import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import requests

from vdiwave.inventory import (
    Clone,
    FullClonePool,
    InventoryError,
    LinkedClonePool,
    Pool,
    PoolPersistence,
    filter_idle_clones,
)
from vdiwave.retry_handler import (
    TransientHTTPError,
    retry_with_exponential_backoff,
    safe_error_message,
    should_retry_http_error,
)
from vdiwave.schedule_executor import CommandResult

logger = logging.getLogger(__name__)

TOKEN_ENV_VAR = "VDIWAVE_BROKER_TOKEN"
LINKED_CLONE_POOL_TYPES = ("linked_clone", "automated_linked_clone", "instant_clone")


class BrokerClientError(Exception):
    """Raised when a broker request fails."""

    pass


@dataclass
class BrokerSession:
    """Connection context for one broker."""

    base_url: str
    token: str | None = None
    verify_ssl: bool = True
    timeout: int = 30

    @classmethod
    def from_env(cls, base_url: str, verify_ssl: bool = True, timeout: int = 30) -> "BrokerSession":
        """Create a session using the token in VDIWAVE_BROKER_TOKEN."""
        return cls(
            base_url=base_url,
            token=os.environ.get(TOKEN_ENV_VAR),
            verify_ssl=verify_ssl,
            timeout=timeout,
        )

    def url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def __repr__(self) -> str:
        token = "***" if self.token else None
        return f"BrokerSession(base_url={self.base_url!r}, token={token!r}, verify_ssl={self.verify_ssl})"


class BrokerClient:
    """Broker REST client."""

    def __init__(self, session: BrokerSession, http: requests.Session | None = None):
        """Initialize broker client.

        Args:
            session: Broker connection context
            http: requests session to reuse (default: new session)
        """
        if not session.base_url.startswith("https://"):
            raise BrokerClientError(f"Broker URL must use HTTPS: {session.base_url}")
        self.session = session
        self.http = http or requests.Session()

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def list_pools(self) -> list[Pool]:
        """List all desktop pools.

        Raises:
            InventoryError: If a pool record cannot be parsed
            BrokerClientError: If the request fails
        """
        pools: list[Pool] = []
        for data in self._get("pools"):
            try:
                pools.append(self._parse_pool(data))
            except (KeyError, TypeError) as e:
                raise InventoryError(f"Invalid pool record {data!r}: {e}") from e
        logger.debug(f"Broker returned {len(pools)} pool(s)")
        return pools

    def list_clones(self, pool_ids: Iterable[str] | None = None) -> list[Clone]:
        """List idle clones, optionally restricted to some pools.

        Raises:
            InventoryError: If a machine record cannot be parsed
            BrokerClientError: If the request fails
        """
        params = {"poolId": list(pool_ids)} if pool_ids is not None else None
        clones: list[Clone] = []
        for data in self._get("machines", params=params):
            try:
                clones.append(self._parse_clone(data))
            except (KeyError, TypeError) as e:
                raise InventoryError(f"Invalid machine record {data!r}: {e}") from e
        return filter_idle_clones(clones)

    # ------------------------------------------------------------------
    # Replica lookup
    # ------------------------------------------------------------------

    def find_snapshot_clones(self, image_path: str, snapshot_path: str) -> list[str]:
        """Return ids of composer clones built from the given snapshot.

        Raises:
            BrokerClientError: If a request fails
        """
        snapshots = self._get("snapshots", params={"imagePath": image_path, "path": snapshot_path})
        if not snapshots:
            logger.debug(f"Snapshot not found: {image_path}@{snapshot_path}")
            return []

        snapshot_id = snapshots[0]["id"]
        clones = self._get("composer/clones", params={"snapshotId": snapshot_id})
        return [c["id"] for c in clones]

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def recompose(
        self,
        clones: Sequence[Clone],
        image_path: str,
        snapshot_path: str,
        when: datetime,
        force_logoff: bool = False,
        stop_on_error: bool = False,
    ) -> CommandResult:
        """Schedule a recompose of clones (all from one pool)."""
        pool_id = self._single_pool(clones)
        payload = {
            "machineIds": [c.id for c in clones],
            "parentVmPath": image_path,
            "parentVmSnapshotPath": snapshot_path,
            "startTime": when.isoformat(),
            "forceLogoff": force_logoff,
            "stopOnError": stop_on_error,
        }
        return self._post_command(f"pools/{pool_id}/action/recompose", payload)

    def refresh(
        self,
        clones: Sequence[Clone],
        when: datetime,
        force_logoff: bool = False,
        stop_on_error: bool = False,
    ) -> CommandResult:
        """Schedule a refresh of clones (all from one pool)."""
        pool_id = self._single_pool(clones)
        payload = {
            "machineIds": [c.id for c in clones],
            "startTime": when.isoformat(),
            "forceLogoff": force_logoff,
            "stopOnError": stop_on_error,
        }
        return self._post_command(f"pools/{pool_id}/action/refresh", payload)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get(self, path: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        try:
            response = self._send_get(path, params)
        except requests.RequestException as e:
            raise BrokerClientError(f"GET {path} failed: {safe_error_message(e)}") from e

        if response.status_code == 404:
            return []
        return self._json(response, f"GET {path}")

    @retry_with_exponential_backoff(max_attempts=3)
    def _send_get(self, path: str, params: dict[str, Any] | None) -> requests.Response:
        response = self.http.get(
            self.session.url(path),
            headers=self.session.headers(),
            params=params,
            timeout=self.session.timeout,
            verify=self.session.verify_ssl,
        )
        if should_retry_http_error(response.status_code):
            raise TransientHTTPError(f"HTTP {response.status_code}", response=response)
        return response

    def _post_command(self, path: str, payload: dict[str, Any]) -> CommandResult:
        try:
            response = self.http.post(
                self.session.url(path),
                headers=self.session.headers(),
                json=payload,
                timeout=self.session.timeout,
                verify=self.session.verify_ssl,
            )
        except requests.RequestException as e:
            raise BrokerClientError(f"POST {path} failed: {safe_error_message(e)}") from e

        data = self._json(response, f"POST {path}")
        return CommandResult(
            attempted=int(data.get("attempted", len(payload["machineIds"]))),
            successful=int(data.get("successful", 0)),
            unchanged=int(data.get("unchanged", 0)),
        )

    @staticmethod
    def _json(response: requests.Response, description: str) -> Any:
        if not response.ok:
            raise BrokerClientError(
                f"{description} returned HTTP {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise BrokerClientError(f"{description} returned invalid JSON") from e

    @staticmethod
    def _single_pool(clones: Sequence[Clone]) -> str:
        pool_ids = {c.pool_id for c in clones}
        if len(pool_ids) != 1:
            raise BrokerClientError(f"A command must target exactly one pool, got {sorted(pool_ids)}")
        return pool_ids.pop()

    @staticmethod
    def _parse_pool(data: dict[str, Any]) -> Pool:
        persistence = PoolPersistence.parse(data.get("persistence"))
        if data.get("type") in LINKED_CLONE_POOL_TYPES:
            return LinkedClonePool(
                id=data["id"],
                name=data.get("name") or data["id"],
                parent_image_path=data.get("parentVmPath") or "",
                parent_snapshot_path=data.get("parentVmSnapshotPath") or "",
                persistence=persistence,
            )
        return FullClonePool(id=data["id"], name=data.get("name") or data["id"], persistence=persistence)

    @staticmethod
    def _parse_clone(data: dict[str, Any]) -> Clone:
        return Clone(
            id=data["id"],
            name=data["name"],
            pool_id=data["poolId"],
            is_linked_clone=bool(data.get("isLinkedClone", True)),
            in_pool=bool(data.get("inPool", True)),
            pending_task=data.get("pendingTask") or None,
        )


__all__ = ["TOKEN_ENV_VAR", "BrokerClient", "BrokerClientError", "BrokerSession"]
