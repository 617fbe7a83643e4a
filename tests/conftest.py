"""Shared fixtures: an in-memory Proxmox VE standing in for the HTTP client."""

import copy
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest
import pytest_asyncio

from pveshape.models.config import PveshapeConfig
from pveshape.models.guest import GuestRef
from pveshape.providers.registry import ProviderRegistry
from pveshape.reconcile.translate import format_property_string, parse_property_string
from pveshape.utils.pveapi import PveApiError


DEVICE_BUSES = ("virtio", "ide", "rootfs", "mp")
# Options a running guest only picks up after a restart
COLD_OPTIONS = ("memory", "sockets", "cores")


class FakePveClient:
    """Minimal model of the platform behaviour the providers rely on.

    Every mutating call is appended to ``calls`` as ``(method, vmid, payload)``.
    """

    def __init__(self, node: str = "pve"):
        self.node = node
        self.guests: Dict[int, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, int, Any]] = []
        self.next_ids: List[int] = []
        self.taken: Set[int] = set()
        self.interfaces: Dict[int, List[Dict[str, Any]]] = {}
        self.agent_starting: Dict[int, int] = {}
        self.failures: Dict[str, PveApiError] = {}
        self._disk_counter: Dict[int, int] = {}
        self.closed = False

    # Test helpers

    def add_guest(self, vmid: int, kind: str = "qemu", config: Optional[Dict[str, Any]] = None,
                  status: str = "stopped", node: Optional[str] = None, template: bool = False) -> GuestRef:
        self.guests[vmid] = {
            "node": node or self.node,
            "kind": kind,
            "config": dict(config or {}),
            "pending": {},
            "status": status,
            "template": template,
        }
        return GuestRef(node=node or self.node, vmid=vmid, kind=kind)

    def calls_to(self, method: str) -> List[Tuple[str, int, Any]]:
        return [call for call in self.calls if call[0] == method]

    def _record(self, method: str, vmid: int, payload: Any = None):
        self.calls.append((method, vmid, copy.deepcopy(payload)))
        if method in self.failures:
            raise self.failures.pop(method)

    def _guest(self, ref: GuestRef) -> Dict[str, Any]:
        guest = self.guests.get(ref.vmid)
        if guest is None or guest["kind"] != ref.kind:
            conf_dir = "qemu-server" if ref.kind == "qemu" else "lxc"
            raise PveApiError(
                f"500 Configuration file 'nodes/{ref.node}/{conf_dir}/{ref.vmid}.conf' does not exist",
                status_code=500,
            )
        return guest

    def _allocate(self, vmid: int, name: str, value: str) -> str:
        """Turn ``storage:N`` allocation syntax into a concrete volume."""
        props = parse_property_string(value, "volume")
        storage, _, rest = props["volume"].partition(":")
        if rest.replace(".", "", 1).isdigit():
            index = self._disk_counter.get(vmid, 0)
            self._disk_counter[vmid] = index + 1
            props["volume"] = f"{storage}:vm-{vmid}-disk-{index}"
            props["size"] = f"{rest}G"
        return format_property_string(props, "volume")

    def _mac(self, vmid: int, index: int = 0) -> str:
        return f"BC:24:11:{vmid // 256 % 256:02X}:{vmid % 256:02X}:{index:02X}"

    def _network(self, kind: str, vmid: int, value: str) -> str:
        if kind == "qemu":
            props = parse_property_string(value, "model")
            model = props.pop("model", "virtio")
            mac = props.pop("macaddr", None) or props.pop(model, None) or self._mac(vmid)
            return format_property_string({model: mac, **props})
        props = parse_property_string(value, "name")
        props.setdefault("hwaddr", self._mac(vmid))
        return format_property_string(props)

    def _apply(self, guest: Dict[str, Any], vmid: int, params: Dict[str, Any], allow_pending: bool = True):
        config = guest["config"]
        for name in [d for d in str(params.get("delete", "")).split(",") if d.strip()]:
            config.pop(name.strip(), None)

        for name, value in params.items():
            if name == "delete":
                continue
            bus = name.rstrip("0123456789")
            if bus in DEVICE_BUSES and "media=cdrom" not in str(value):
                value = self._allocate(vmid, name, str(value))
            elif name == "net0":
                value = self._network(guest["kind"], vmid, str(value))

            if allow_pending and guest["status"] == "running" and name in COLD_OPTIONS \
                    and str(config.get(name)) != str(value):
                guest["pending"][name] = value
            else:
                config[name] = value

    # Client surface

    async def verify_access(self):
        self._record("verify_access", 0)

    async def aclose(self):
        self.closed = True

    async def get_next_id(self) -> int:
        if self.next_ids:
            return self.next_ids.pop(0)
        vmid = 100
        while vmid in self.guests or vmid in self.taken:
            vmid += 1
        return vmid

    async def list_guests(self) -> List[Dict[str, Any]]:
        return [
            {
                "vmid": vmid,
                "node": guest["node"],
                "type": guest["kind"],
                "name": guest["config"].get("name") or guest["config"].get("hostname"),
                "status": guest["status"],
                "template": 1 if guest["template"] else 0,
            }
            for vmid, guest in sorted(self.guests.items())
        ]

    async def find_guest_by_name(self, name: str) -> Optional[GuestRef]:
        for guest in await self.list_guests():
            if guest["name"] == name:
                return GuestRef(node=guest["node"], vmid=guest["vmid"], kind=guest["type"])
        return None

    async def get_config(self, ref: GuestRef) -> Dict[str, Any]:
        guest = self._guest(ref)
        return {"digest": "0" * 40, **copy.deepcopy(guest["config"])}

    async def get_pending(self, ref: GuestRef) -> List[Dict[str, Any]]:
        guest = self._guest(ref)
        return [{"key": key, "value": guest["config"].get(key), "pending": value}
                for key, value in guest["pending"].items()]

    async def has_pending_changes(self, ref: GuestRef) -> bool:
        return bool(await self.get_pending(ref))

    async def update_config(self, ref: GuestRef, params: Dict[str, Any]):
        self._record("update_config", ref.vmid, params)
        self._apply(self._guest(ref), ref.vmid, params)

    async def get_status(self, ref: GuestRef) -> Dict[str, Any]:
        return {"status": self._guest(ref)["status"], "vmid": ref.vmid}

    async def create_guest(self, ref: GuestRef, params: Dict[str, Any]):
        self._record("create_guest", ref.vmid, params)
        if ref.vmid in self.guests or ref.vmid in self.taken:
            label = "VM" if ref.kind == "qemu" else "CT"
            raise PveApiError(
                f"500 unable to create {label} {ref.vmid} - {label} {ref.vmid} already exists",
                status_code=500,
            )

        params = dict(params)
        ostemplate = params.pop("ostemplate", None)
        params.pop("password", None)
        params.pop("ssh-public-keys", None)
        if ref.kind == "lxc":
            params.setdefault("ostype", "debian" if ostemplate and "debian" in ostemplate else "unmanaged")
        guest = self.add_guest(ref.vmid, ref.kind, node=ref.node)
        self._apply(self.guests[guest.vmid], ref.vmid, params, allow_pending=False)

    async def clone_guest(self, source: GuestRef, ref: GuestRef, params: Dict[str, Any]):
        self._record("clone_guest", ref.vmid, {"source": source.vmid, **params})
        original = self._guest(source)
        if ref.vmid in self.guests or ref.vmid in self.taken:
            raise PveApiError(f"500 unable to create VM {ref.vmid}: config file already exists", status_code=500)

        config = {}
        for name, value in original["config"].items():
            bus = name.rstrip("0123456789")
            if bus in DEVICE_BUSES and "media=cdrom" not in str(value):
                props = parse_property_string(str(value), "volume")
                storage = props["volume"].split(":", 1)[0]
                index = self._disk_counter.get(ref.vmid, 0)
                self._disk_counter[ref.vmid] = index + 1
                props["volume"] = f"{storage}:vm-{ref.vmid}-disk-{index}"
                value = format_property_string(props, "volume")
            elif name == "net0":
                props = parse_property_string(str(value), "model")
                for key in list(props):
                    if key in ("hwaddr", "macaddr") or ":" in props[key]:
                        props[key] = self._mac(ref.vmid)
                value = format_property_string(props)
            config[name] = value
        for key in ("name", "hostname"):
            if params.get(key):
                config[key] = params[key]
        self.add_guest(ref.vmid, ref.kind, config=config, node=ref.node)

    async def start_guest(self, ref: GuestRef):
        self._record("start_guest", ref.vmid)
        guest = self._guest(ref)
        guest["config"].update(guest["pending"])
        guest["pending"] = {}
        guest["status"] = "running"

    async def stop_guest(self, ref: GuestRef):
        self._record("stop_guest", ref.vmid)
        self._guest(ref)["status"] = "stopped"

    async def delete_guest(self, ref: GuestRef):
        self._record("delete_guest", ref.vmid)
        guest = self._guest(ref)
        if guest["status"] == "running":
            raise PveApiError(f"500 VM {ref.vmid} is running - destroy failed", status_code=500)
        del self.guests[ref.vmid]

    async def move_volume(self, ref: GuestRef, slot: str, storage: str):
        self._record("move_volume", ref.vmid, {"slot": slot, "storage": storage})
        config = self._guest(ref)["config"]
        props = parse_property_string(config[slot], "volume")
        props["volume"] = f"{storage}:{props['volume'].split(':', 1)[1]}"
        config[slot] = format_property_string(props, "volume")

    async def resize_volume(self, ref: GuestRef, slot: str, size: str):
        self._record("resize_volume", ref.vmid, {"slot": slot, "size": size})
        config = self._guest(ref)["config"]
        props = parse_property_string(config[slot], "volume")
        props["size"] = size
        config[slot] = format_property_string(props, "volume")

    async def agent_network_interfaces(self, ref: GuestRef) -> List[Dict[str, Any]]:
        self._guest(ref)
        if self.agent_starting.get(ref.vmid, 0) > 0:
            self.agent_starting[ref.vmid] -= 1
            raise PveApiError("500 QEMU guest agent is not running", status_code=500)
        return self.interfaces.get(ref.vmid, [])


def agent_interfaces(mac: str, *addresses: str) -> List[Dict[str, Any]]:
    """Guest agent answer for one NIC plus loopback."""
    return [
        {
            "name": "lo",
            "hardware-address": "00:00:00:00:00:00",
            "ip-addresses": [{"ip-address": "127.0.0.1", "ip-address-type": "ipv4", "prefix": 8}],
        },
        {
            "name": "eth0",
            "hardware-address": mac.lower(),
            "ip-addresses": [
                {"ip-address": address, "ip-address-type": "ipv6" if ":" in address else "ipv4", "prefix": 24}
                for address in addresses
            ],
        },
    ]


@pytest.fixture
def fake_client():
    """In-memory platform."""
    return FakePveClient()


@pytest.fixture
def make_interfaces():
    """Factory for guest agent interface listings."""
    return agent_interfaces


@pytest.fixture
def pve_config():
    """Configuration with fast polling for tests."""
    return PveshapeConfig(
        api={
            "api_url": "https://pve.example.com:8006/api2/json",
            "api_token_id": "root@pam!pveshape",
            "api_token_secret": "00000000-0000-0000-0000-000000000000",
        },
        engine={
            "id_retry_backoff": 0,
            "agent_poll_interval": 0.01,
            "agent_poll_deadline": 1,
            "task_poll_interval": 0.01,
        },
    )


@pytest_asyncio.fixture
async def registry(pve_config, fake_client):
    """Provider registry wired to the in-memory platform."""
    registry = ProviderRegistry()
    await registry.initialize(pve_config, client=fake_client, verify=False)
    return registry


@pytest.fixture
def vm_provider(registry):
    return registry.get_provider("qemu")


@pytest.fixture
def lxc_provider(registry):
    return registry.get_provider("lxc")
