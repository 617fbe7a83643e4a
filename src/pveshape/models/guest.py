"""Guest specification models."""

import ipaddress
import re
from dataclasses import dataclass, field
from enum import IntFlag
from typing import Any, ClassVar, Dict, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pveshape.utils.sizes import normalize_size


SIZE_PATTERN = r"^\d+[MG]?$"
MAC_PATTERN = re.compile(r"^([a-fA-F0-9]{2}:){5}[a-fA-F0-9]{2}$")
SLOT_PATTERN = re.compile(r"^([a-z]+)(\d+)$")
VIRTIO_SLOT = re.compile(r"^virtio([0-9]|1[0-5])$")
IDE_SLOT = re.compile(r"^ide[0-3]$")
MOUNTPOINT_SLOT = re.compile(r"^mp([0-9]|[1-9][0-9]|1[0-9]{2}|2[0-4][0-9]|25[0-5])$")


class StateMask(IntFlag):
    """Selects which parts of remote state a read populates."""
    CONFIG = 1
    STATUS = 2
    NET = 4
    EVERYTHING = CONFIG | STATUS | NET


@dataclass(frozen=True)
class SlotKey:
    """Positional device slot such as ``virtio0``, ``mp3`` or ``rootfs``."""
    bus: str
    index: Optional[int] = None

    ROOTFS: ClassVar["SlotKey"]

    @property
    def name(self) -> str:
        """Platform configuration key for this slot."""
        if self.index is None:
            return self.bus
        return f"{self.bus}{self.index}"

    @property
    def sort_key(self) -> Tuple[bool, str, int]:
        return (self.index is not None, self.bus, self.index or 0)

    @classmethod
    def parse(cls, name: str) -> "SlotKey":
        """Parse a platform configuration key."""
        if name == "rootfs":
            return cls.ROOTFS
        match = SLOT_PATTERN.match(name)
        if not match:
            raise ValueError(f"Not a device slot name: {name}")
        return cls(match.group(1), int(match.group(2)))

    def __str__(self) -> str:
        return self.name


SlotKey.ROOTFS = SlotKey("rootfs")


@dataclass(frozen=True)
class GuestRef:
    """Where a guest lives on the platform."""
    node: str
    vmid: int
    kind: str


@dataclass
class RemoteGuestConfig:
    """Platform-side view of a guest, populated according to ``mask``."""
    node: str
    vmid: int
    kind: str
    mask: StateMask
    config: Optional[Dict[str, Any]] = None
    status: Optional[str] = None
    ipv4_address: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class Attachment(BaseModel):
    """A storage device at one slot, expressed in platform terms."""
    media: Literal["disk", "cdrom"] = "disk"
    storage: Optional[str] = None
    size: Optional[str] = None
    volume: Optional[str] = None
    format: Optional[str] = None
    mount_path: Optional[str] = None
    file: Optional[str] = None

    def merged_with(self, previous: "Attachment") -> "Attachment":
        """Fill unset attributes from a previously observed attachment."""
        missing = {
            name: value
            for name, value in previous.model_dump().items()
            if value is not None and getattr(self, name) is None
        }
        return self.model_copy(update=missing)


def _validate_slot_keys(value: Dict[str, Any], pattern: re.Pattern, label: str) -> Dict[str, Any]:
    for key in value:
        if not pattern.match(key):
            raise ValueError(f"Invalid {label} slot: {key}")
    return value


def _validate_mac(value: Optional[str]) -> Optional[str]:
    if value is not None and not MAC_PATTERN.match(value):
        raise ValueError(f"Invalid MAC address: {value}")
    return value


class VmDisk(BaseModel):
    """VirtIO disk."""
    media: Literal["disk", "cdrom"] = "disk"
    format: Literal["raw", "cow", "qcow", "qed", "qcow2", "vmdk", "cloop"] = "raw"
    size: int = Field(..., ge=0, description="Size in whole gigabytes")
    storage: str
    volume: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class VmCdrom(BaseModel):
    """IDE optical drive backed by an ISO image."""
    media: Literal["cdrom"] = "cdrom"
    file: str = Field(..., description="ISO reference as storage:file")

    model_config = ConfigDict(extra="ignore")

    @field_validator("file")
    @classmethod
    def validate_file(cls, v):
        """Require a storage prefix."""
        storage, _, name = v.partition(":")
        if not storage or not name:
            raise ValueError(f"ISO reference must look like storage:file, got: {v}")
        return v


class VmNet(BaseModel):
    """Primary VM network interface."""
    model: str = Field(default="virtio")
    bridge: str
    mac_address: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("mac_address")
    @classmethod
    def validate_mac_address(cls, v):
        """Validate MAC address format."""
        return _validate_mac(v)


class GuestSpec(BaseModel):
    """Attributes shared by every guest kind."""
    kind: ClassVar[str] = ""
    REPLACE_ONLY: ClassVar[Tuple[str, ...]] = ("node", "clone", "full_clone")
    COMPUTED: ClassVar[Tuple[str, ...]] = ("vmid",)
    UNTRACKED: ClassVar[Tuple[str, ...]] = ("clone", "full_clone", "ensure")

    node: str
    vmid: Optional[int] = Field(None, ge=100, le=999999999)
    status: Literal["running", "stopped"] = Field(default="running")
    ensure: Literal["present", "absent"] = Field(default="present")
    clone: Optional[str] = Field(None, description="Source guest id or name")
    full_clone: bool = Field(default=False)

    model_config = ConfigDict(extra="ignore")

    @field_validator("clone", mode="before")
    @classmethod
    def coerce_clone(cls, v):
        """Accept numeric clone sources."""
        if isinstance(v, int):
            return str(v)
        return v


class VmSpec(GuestSpec):
    """QEMU virtual machine."""
    kind: ClassVar[str] = "qemu"
    COMPUTED: ClassVar[Tuple[str, ...]] = ("vmid", "name", "description")

    name: Optional[str] = None
    description: Optional[str] = None
    agent: bool = Field(default=False)
    sockets: int = Field(default=1, ge=1)
    cores: int = Field(default=1, ge=1)
    memory: int = Field(default=16, ge=16, description="Memory in MB")
    net: Optional[VmNet] = None
    disks: Dict[str, VmDisk] = Field(default_factory=dict)
    cdroms: Dict[str, VmCdrom] = Field(default_factory=dict)
    ipv4_address: Optional[str] = None

    @field_validator("disks")
    @classmethod
    def validate_disk_slots(cls, v):
        """Only virtio0 to virtio15 are supported."""
        return _validate_slot_keys(v, VIRTIO_SLOT, "virtio")

    @field_validator("cdroms")
    @classmethod
    def validate_cdrom_slots(cls, v):
        """Only ide0 to ide3 are supported."""
        return _validate_slot_keys(v, IDE_SLOT, "ide")


class LxcVolume(BaseModel):
    """Container root filesystem."""
    storage: Optional[str] = None
    size: str = Field(..., pattern=SIZE_PATTERN)
    volume: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("size")
    @classmethod
    def normalize_volume_size(cls, v):
        """Store sizes in canonical form, a bare number meaning gigabytes."""
        return normalize_size(v)

    @model_validator(mode="after")
    def require_backing(self):
        """A volume needs a storage or an existing volume."""
        if not self.storage and not self.volume:
            raise ValueError("storage is required when volume is not given")
        return self


class LxcMountPoint(LxcVolume):
    """Additional container volume mounted at ``mp``."""
    mp: str

    @field_validator("mp")
    @classmethod
    def validate_mount_path(cls, v):
        """Mount paths are absolute."""
        if not v.startswith("/"):
            raise ValueError(f"Mount path must be absolute: {v}")
        return v


class LxcNet(BaseModel):
    """Primary container network interface."""
    name: str = Field(default="eth0")
    bridge: str
    ip: Optional[str] = Field(None, description="dhcp or an IPv4 CIDR")
    gw: Optional[str] = None
    mac_address: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("mac_address")
    @classmethod
    def validate_mac_address(cls, v):
        """Validate MAC address format."""
        return _validate_mac(v)

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v):
        """Validate address assignment."""
        if v is None or v in ("dhcp", "manual"):
            return v
        if "/" not in v:
            raise ValueError(f"Static address must be in CIDR notation: {v}")
        try:
            ipaddress.IPv4Interface(v)
        except ValueError as e:
            raise ValueError(f"Invalid IPv4 CIDR: {v}") from e
        return v

    @field_validator("gw")
    @classmethod
    def validate_gateway(cls, v):
        """Validate gateway address."""
        if v is None:
            return v
        try:
            ipaddress.IPv4Address(v)
        except ValueError as e:
            raise ValueError(f"Invalid IPv4 gateway: {v}") from e
        return v


class LxcSpec(GuestSpec):
    """LXC container."""
    kind: ClassVar[str] = "lxc"
    REPLACE_ONLY: ClassVar[Tuple[str, ...]] = (
        "node", "clone", "full_clone", "ostemplate", "unprivileged", "password", "ssh_public_keys",
    )
    COMPUTED: ClassVar[Tuple[str, ...]] = ("vmid", "hostname", "ostype", "rootfs")
    UNTRACKED: ClassVar[Tuple[str, ...]] = (
        "clone", "full_clone", "ensure", "ostemplate", "password", "ssh_public_keys",
    )

    ostemplate: Optional[str] = None
    unprivileged: bool = Field(default=False)
    ostype: Optional[str] = None
    hostname: Optional[str] = None
    password: Optional[str] = Field(None, repr=False)
    ssh_public_keys: Optional[str] = None
    rootfs: Optional[LxcVolume] = None
    mountpoints: Dict[str, LxcMountPoint] = Field(default_factory=dict)
    net: Optional[LxcNet] = None

    @field_validator("mountpoints")
    @classmethod
    def validate_mountpoint_slots(cls, v):
        """Only mp0 to mp255 are supported."""
        return _validate_slot_keys(v, MOUNTPOINT_SLOT, "mountpoint")

    @model_validator(mode="after")
    def require_source(self):
        """A container is built from a template or a clone."""
        if not self.ostemplate and not self.clone:
            raise ValueError("ostemplate is required unless cloning")
        return self


SPEC_CLASSES = {cls.kind: cls for cls in (VmSpec, LxcSpec)}
