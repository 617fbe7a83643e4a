"""Async client for the Proxmox VE HTTP API."""

import asyncio
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from pveshape.errors import AccessError, PveshapeError
from pveshape.models.config import PveshapeConfig
from pveshape.models.guest import GuestRef


logger = logging.getLogger(__name__)

REQUIRED_PRIVILEGES = (
    "Datastore.AllocateSpace",
    "Datastore.Audit",
    "Pool.Allocate",
    "Sys.Audit",
    "Sys.Console",
    "Sys.Modify",
    "VM.Allocate",
    "VM.Audit",
    "VM.Clone",
    "VM.Config.CDROM",
    "VM.Config.Cloudinit",
    "VM.Config.CPU",
    "VM.Config.Disk",
    "VM.Config.HWType",
    "VM.Config.Memory",
    "VM.Config.Network",
    "VM.Config.Options",
    "VM.Migrate",
    "VM.Monitor",
    "VM.PowerMgmt",
)


class PveApiError(PveshapeError):
    """Error talking to the Proxmox VE API."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        method: Optional[str] = None,
        path: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.method = method
        self.path = path


class PveClient:
    """Thin async wrapper around the ``api2/json`` endpoints used for guests.

    Calls that start a platform task are awaited until the task stops, so
    from the caller's point of view every method completes the operation
    it names or raises :class:`PveApiError`.
    """

    def __init__(
        self,
        api_url: str,
        token_id: str,
        token_secret: str,
        verify: bool = True,
        headers: Optional[Dict[str, str]] = None,
        task_timeout: float = 60.0,
        task_poll_interval: float = 1.0,
        debug: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize API client."""
        self.api_url = api_url.rstrip("/")
        self.task_timeout = task_timeout
        self.task_poll_interval = task_poll_interval
        self.debug = debug
        all_headers = {"Authorization": f"PVEAPIToken={token_id}={token_secret}"}
        all_headers.update(headers or {})
        self._client = httpx.AsyncClient(
            base_url=self.api_url + "/",
            headers=all_headers,
            verify=verify,
            transport=transport,
            timeout=httpx.Timeout(30.0, connect=10.0),
        )

    @classmethod
    def from_config(cls, config: PveshapeConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> "PveClient":
        """Build a client from configuration."""
        return cls(
            api_url=config.api.api_url,
            token_id=config.api.api_token_id,
            token_secret=config.api.api_token_secret,
            verify=not config.api.tls_insecure,
            headers=config.api.header_map(),
            task_timeout=config.api.timeout,
            task_poll_interval=config.engine.task_poll_interval,
            debug=config.api.debug,
            transport=transport,
        )

    async def aclose(self):
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Send a request and unwrap the ``data`` envelope."""
        url = path.lstrip("/")
        if self.debug:
            logger.debug(f">>> {method} {path} params={params} data={_redact(data)}")

        try:
            response = await self._client.request(method, url, params=params, data=data)
        except httpx.RequestError as e:
            raise PveApiError(f"Connection error: {e}", method=method, path=path) from e

        if self.debug:
            logger.debug(f"<<< {response.status_code} {method} {path}: {response.text}")

        if response.is_error:
            raise PveApiError(
                _error_message(response),
                status_code=response.status_code,
                method=method,
                path=path,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise PveApiError(f"Invalid JSON in response: {e}", response.status_code, method, path) from e
        return body.get("data") if isinstance(body, dict) else None

    async def _task(self, node: str, method: str, path: str, data: Optional[Dict[str, Any]] = None) -> Any:
        """Issue a request and wait for the task it starts, if any."""
        result = await self._request(method, path, data=data)
        if isinstance(result, str) and result.startswith("UPID:"):
            await self.wait_for_task(node, result)
        return result

    async def wait_for_task(self, node: str, upid: str):
        """Poll a task until it stops, raising if it did not succeed."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.task_timeout
        path = f"/nodes/{node}/tasks/{quote(upid, safe='')}/status"

        while True:
            status = await self._request("GET", path)
            if status.get("status") == "stopped":
                exitstatus = status.get("exitstatus", "")
                if exitstatus != "OK" and not exitstatus.startswith("WARNINGS"):
                    raise PveApiError(f"Task {upid} failed: {exitstatus}", method="GET", path=path)
                return
            if loop.time() >= deadline:
                raise PveApiError(f"timeout waiting for task {upid} after {self.task_timeout}s", path=path)
            await asyncio.sleep(self.task_poll_interval)

    # Cluster

    async def get_version(self) -> Dict[str, Any]:
        """Get platform version info."""
        return await self._request("GET", "/version")

    async def get_permissions(self, path: str = "/") -> Dict[str, Dict[str, int]]:
        """Get privileges of the current token."""
        return await self._request("GET", "/access/permissions", params={"path": path})

    async def verify_access(self):
        """Check connectivity and that the token holds the required privileges."""
        version = await self.get_version()
        logger.info(f"Connected to Proxmox VE {version.get('version', 'unknown')} at {self.api_url}")

        permissions = (await self.get_permissions("/")).get("/", {})
        missing = [p for p in REQUIRED_PRIVILEGES if not permissions.get(p)]
        if missing:
            raise AccessError(f"API token is missing required privileges on /: {', '.join(missing)}")

    async def get_next_id(self) -> int:
        """Ask the platform for the next free guest id."""
        return int(await self._request("GET", "/cluster/nextid"))

    async def list_guests(self) -> List[Dict[str, Any]]:
        """List all guests in the cluster."""
        return await self._request("GET", "/cluster/resources", params={"type": "vm"}) or []

    async def find_guest_by_name(self, name: str) -> Optional[GuestRef]:
        """Find a guest by display name."""
        for guest in await self.list_guests():
            if guest.get("name") == name:
                return GuestRef(node=guest["node"], vmid=int(guest["vmid"]), kind=guest["type"])
        return None

    # Guest config

    def _guest_path(self, ref: GuestRef, suffix: str = "") -> str:
        return f"/nodes/{ref.node}/{ref.kind}/{ref.vmid}{suffix}"

    async def get_config(self, ref: GuestRef) -> Dict[str, Any]:
        """Get current guest configuration."""
        return await self._request("GET", self._guest_path(ref, "/config")) or {}

    async def get_pending(self, ref: GuestRef) -> List[Dict[str, Any]]:
        """Get configuration with pending values."""
        return await self._request("GET", self._guest_path(ref, "/pending")) or []

    async def has_pending_changes(self, ref: GuestRef) -> bool:
        """Whether a restart is needed to apply configuration."""
        for item in await self.get_pending(ref):
            if "pending" in item or "delete" in item:
                return True
        return False

    async def update_config(self, ref: GuestRef, params: Dict[str, Any]):
        """Update guest configuration."""
        # qemu accepts async POST, lxc only PUT
        method = "POST" if ref.kind == "qemu" else "PUT"
        await self._task(ref.node, method, self._guest_path(ref, "/config"), data=params)

    async def get_status(self, ref: GuestRef) -> Dict[str, Any]:
        """Get current guest status."""
        return await self._request("GET", self._guest_path(ref, "/status/current"))

    # Lifecycle

    async def create_guest(self, ref: GuestRef, params: Dict[str, Any]):
        """Create a guest with the given id."""
        data = dict(params)
        data["vmid"] = ref.vmid
        await self._task(ref.node, "POST", f"/nodes/{ref.node}/{ref.kind}", data=data)

    async def clone_guest(self, source: GuestRef, ref: GuestRef, params: Dict[str, Any]):
        """Clone ``source`` into a new guest ``ref``."""
        data = dict(params)
        data["newid"] = ref.vmid
        if source.node != ref.node:
            data["target"] = ref.node
        await self._task(source.node, "POST", self._guest_path(source, "/clone"), data=data)

    async def start_guest(self, ref: GuestRef):
        """Start a guest."""
        await self._task(ref.node, "POST", self._guest_path(ref, "/status/start"))

    async def stop_guest(self, ref: GuestRef):
        """Stop a guest immediately."""
        await self._task(ref.node, "POST", self._guest_path(ref, "/status/stop"))

    async def delete_guest(self, ref: GuestRef):
        """Destroy a guest and its owned volumes."""
        await self._task(ref.node, "DELETE", self._guest_path(ref))

    # Volumes

    async def move_volume(self, ref: GuestRef, slot: str, storage: str):
        """Move a volume to another storage, dropping the source copy."""
        if ref.kind == "qemu":
            path, data = "/move_disk", {"disk": slot, "storage": storage, "delete": 1}
        else:
            path, data = "/move_volume", {"volume": slot, "storage": storage, "delete": 1}
        await self._task(ref.node, "POST", self._guest_path(ref, path), data=data)

    async def resize_volume(self, ref: GuestRef, slot: str, size: str):
        """Resize a volume to an absolute size."""
        await self._task(ref.node, "PUT", self._guest_path(ref, "/resize"), data={"disk": slot, "size": size})

    # Guest agent

    async def agent_network_interfaces(self, ref: GuestRef) -> List[Dict[str, Any]]:
        """Interfaces reported by the QEMU guest agent."""
        data = await self._request("GET", self._guest_path(ref, "/agent/network-get-interfaces"))
        return (data or {}).get("result", [])


def _error_message(response: httpx.Response) -> str:
    """Format an error response, keeping the platform's reason text."""
    message = f"{response.status_code} {response.reason_phrase}".strip()
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("errors"):
        details = "; ".join(f"{k}: {v}" for k, v in body["errors"].items())
        message = f"{message} ({details})"
    return message


def _redact(data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not data:
        return data
    return {k: ("***" if k in ("password", "ssh-public-keys") else v) for k, v in data.items()}
