"""Client for the Boskos resource broker REST service.

Boskos keeps a pool of resources (here GCP projects) in named states. A resource is acquired by
moving it from the "free" to the "busy" state, kept by periodically updating it, and returned by
moving it to the "dirty" state, from where the Boskos janitor cleans it up.
"""

import dataclasses
import logging
import time

import requests

from gke_deployer.utils import http_client

LOGGER = logging.getLogger(__name__)

STATE_FREE = "free"
STATE_BUSY = "busy"
STATE_DIRTY = "dirty"


class BoskosError(Exception):
    pass


class BoskosTimeoutError(BoskosError, TimeoutError):
    pass


class BoskosConnectionError(BoskosError):
    pass


@dataclasses.dataclass(frozen=True)
class BoskosResource:
    type: str
    name: str
    state: str
    owner: str


class BoskosClient:
    """Acquire, renew and release Boskos resources on behalf of a single owner."""

    # Boskos answers with these when there's no free resource of the requested type
    NOT_AVAILABLE_CODES = frozenset({404, 409})

    def __init__(
        self,
        url: str,
        *,
        owner: str,
        session: requests.Session | None = None,
        poll_interval: float = 3,
        request_timeout: float = 60,
    ) -> None:
        self.url = url.rstrip("/")
        self.owner = owner
        self.session = session or http_client.get_session()
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout

    def _post(self, endpoint: str, params: dict) -> requests.Response:
        try:
            return self.session.post(
                f"{self.url}/{endpoint}", params=params, timeout=self.request_timeout
            )
        except requests.exceptions.RequestException as exc:
            msg = f"Boskos request `{endpoint}` failed: {exc}"
            raise BoskosConnectionError(msg) from exc

    def acquire_once(self, resource_type: str) -> BoskosResource | None:
        """Try to acquire a free resource, return `None` if there's none available."""
        response = self._post(
            "acquire",
            params={
                "type": resource_type,
                "state": STATE_FREE,
                "dest": STATE_BUSY,
                "owner": self.owner,
            },
        )
        if response.status_code in self.NOT_AVAILABLE_CODES:
            return None
        if not response:
            msg = (
                f"Failed to acquire a '{resource_type}' resource.\n"
                f"  status: {response.status_code}\n"
                f"  reason: {response.reason}\n"
                f"  error: {response.text}"
            )
            raise BoskosError(msg)

        data = response.json()
        return BoskosResource(
            type=data.get("type") or resource_type,
            name=data["name"],
            state=data.get("state") or STATE_BUSY,
            owner=data.get("owner") or self.owner,
        )

    def acquire(self, resource_type: str, timeout: float) -> str:
        """Wait up to `timeout` seconds for a free resource and return its name."""
        deadline = time.monotonic() + timeout
        while True:
            try:
                resource = self.acquire_once(resource_type)
            except BoskosConnectionError as exc:
                # The broker may be briefly unreachable, keep trying until the deadline
                LOGGER.warning(f"Acquisition attempt failed: {exc}")
                resource = None

            if resource:
                LOGGER.info(f"Acquired Boskos resource '{resource.name}' ({resource.type}).")
                return resource.name

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                msg = f"Timed out after {timeout}s waiting for a free '{resource_type}' resource."
                raise BoskosTimeoutError(msg)
            time.sleep(min(self.poll_interval, remaining))

    def heartbeat(self, name: str) -> None:
        """Renew the lease of the resource."""
        response = self._post(
            "update", params={"name": name, "state": STATE_BUSY, "owner": self.owner}
        )
        if not response:
            msg = f"Failed to update '{name}': {response.status_code} {response.text}"
            raise BoskosError(msg)

    def release(self, name: str) -> None:
        """Return the resource to the pool, it needs cleanup before it can be reused."""
        response = self._post(
            "release", params={"name": name, "dest": STATE_DIRTY, "owner": self.owner}
        )
        if not response:
            msg = f"Failed to release '{name}': {response.status_code} {response.text}"
            raise BoskosError(msg)
        LOGGER.info(f"Released Boskos resource '{name}'.")
