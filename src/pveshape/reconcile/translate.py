"""Mapping between guest specifications and platform configuration."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Type

from pveshape.errors import TranslationError
from pveshape.models.guest import (
    Attachment,
    GuestSpec,
    LxcMountPoint,
    LxcNet,
    LxcSpec,
    LxcVolume,
    RemoteGuestConfig,
    SlotKey,
    VmCdrom,
    VmDisk,
    VmNet,
    VmSpec,
)
from pveshape.utils.sizes import allocation_size, kib_to_gb, normalize_size, parse_size_kib

NIC_MODELS = ("virtio", "e1000", "e1000e", "rtl8139", "vmxnet3", "i82551", "i82557b", "i82559er", "ne2k_isa", "ne2k_pci", "pcnet")
TRUE_VALUES = ("1", "on", "yes", "true")
PVE_DEFAULT_MEMORY = 512


def parse_property_string(value: str, default_key: str) -> Dict[str, str]:
    """Parse ``a,b=c,d=e`` into a dict, the bare leading part stored under ``default_key``."""
    result: Dict[str, str] = {}
    for part in str(value).split(","):
        part = part.strip()
        if not part:
            continue
        key, sep, val = part.partition("=")
        if sep:
            result[key.strip()] = val.strip()
        else:
            result[default_key] = key
    return result


def format_property_string(props: Dict[str, Any], default_key: Optional[str] = None) -> str:
    """Inverse of :func:`parse_property_string`; ``None`` values are skipped."""
    parts = []
    if default_key and props.get(default_key) is not None:
        parts.append(str(props[default_key]))
    for key, val in props.items():
        if key == default_key or val is None:
            continue
        parts.append(f"{key}={val}")
    return ",".join(parts)


def parse_bool(value: Any) -> bool:
    return str(value).strip().lower() in TRUE_VALUES


def parse_agent_flag(value: Any) -> bool:
    """Read the agent option, either ``1`` or ``enabled=1,fstrim_cloned_disks=0``."""
    if value is None or value == "":
        return False
    props = parse_property_string(str(value), "enabled")
    return parse_bool(props.get("enabled", "0"))


def _storage_of(volume: Optional[str]) -> Optional[str]:
    if volume and ":" in volume:
        return volume.split(":", 1)[0]
    return None


@dataclass
class ConfigDraft:
    """Platform configuration derived from a spec.

    ``options`` holds plain settings, where ``None`` means the option should
    be removed. ``attachments`` is always present, even when empty, so that
    an empty collection reads as "remove every device" rather than "leave
    devices alone".
    """
    kind: str
    options: Dict[str, Any] = field(default_factory=dict)
    create_only: Dict[str, Any] = field(default_factory=dict)
    attachments: Dict[SlotKey, Attachment] = field(default_factory=dict)

    def settings(self) -> Dict[str, Any]:
        """Options that carry a value."""
        return {k: v for k, v in self.options.items() if v is not None}

    def cleared(self, current: Dict[str, Any]) -> List[str]:
        """Options to delete because they are unset here but present remotely."""
        return [k for k, v in self.options.items() if v is None and k in current]

    def update_params(self, current: Dict[str, Any]) -> Dict[str, Any]:
        """Parameters for a config update against ``current``, devices excluded."""
        params = self.settings()
        cleared = self.cleared(current)
        if cleared:
            params["delete"] = ",".join(cleared)
        return params


class GuestTranslator(ABC):
    """Translates one guest kind in both directions."""

    kind: str = ""
    spec_class: Type[GuestSpec] = GuestSpec
    attachment_buses: Tuple[str, ...] = ()

    def _check(self, spec: GuestSpec):
        if not isinstance(spec, self.spec_class):
            raise TranslationError(
                f"{type(self).__name__} cannot translate {type(spec).__name__}"
            )

    @abstractmethod
    def to_remote(self, spec: GuestSpec) -> ConfigDraft:
        """Build the platform configuration for a spec."""
        pass

    @abstractmethod
    def from_remote(self, remote: RemoteGuestConfig) -> Dict[str, Any]:
        """Every platform-tracked spec field, read from ``remote.config``."""
        pass

    @abstractmethod
    def attachment_param(self, key: SlotKey, attachment: Attachment) -> str:
        """Format an attachment as a config value."""
        pass

    @abstractmethod
    def parse_attachment(self, key: SlotKey, value: str) -> Optional[Attachment]:
        """Parse a config value into an attachment, or None if not managed."""
        pass

    @abstractmethod
    def clone_params(self, spec: GuestSpec) -> Dict[str, Any]:
        """Parameters accepted directly by the clone call."""
        pass

    def attachments_from_remote(self, config: Dict[str, Any]) -> Dict[SlotKey, Attachment]:
        """Managed attachments present in a platform config."""
        result = {}
        for name, value in config.items():
            try:
                key = SlotKey.parse(name)
            except ValueError:
                continue
            if key.bus not in self.attachment_buses:
                continue
            attachment = self.parse_attachment(key, str(value))
            if attachment is not None:
                result[key] = attachment
        return result

    def create_params(self, draft: ConfigDraft) -> Dict[str, Any]:
        """Parameters for creating a guest from scratch."""
        params = draft.settings()
        params.update(draft.create_only)
        for key in sorted(draft.attachments, key=lambda k: k.sort_key):
            params[key.name] = self.attachment_param(key, draft.attachments[key])
        return params

    def _slot(self, name: str) -> SlotKey:
        try:
            return SlotKey.parse(name)
        except ValueError as e:
            raise TranslationError(f"Unexpected device slot {name!r} in {self.kind} spec") from e


class QemuTranslator(GuestTranslator):
    """Translator for QEMU virtual machines."""

    kind = "qemu"
    spec_class = VmSpec
    attachment_buses = ("virtio", "ide")

    def to_remote(self, spec: VmSpec) -> ConfigDraft:
        self._check(spec)
        draft = ConfigDraft(kind=self.kind)
        draft.options = {
            "name": spec.name,
            "description": spec.description,
            "agent": 1 if spec.agent else 0,
            "sockets": spec.sockets,
            "cores": spec.cores,
            "memory": spec.memory,
            "net0": self.format_net(spec.net) if spec.net else None,
        }

        for slot, disk in spec.disks.items():
            draft.attachments[self._slot(slot)] = Attachment(
                media=disk.media,
                storage=disk.storage,
                size=f"{disk.size}G",
                format=disk.format,
                volume=disk.volume,
            )
        for slot, cdrom in spec.cdroms.items():
            draft.attachments[self._slot(slot)] = Attachment(media="cdrom", file=cdrom.file)

        return draft

    def format_net(self, net: VmNet) -> str:
        return format_property_string({
            "model": net.model,
            "bridge": net.bridge,
            "macaddr": net.mac_address,
        })

    def parse_net(self, value: str) -> VmNet:
        props = parse_property_string(value, "model")
        model = props.get("model")
        mac = props.get("macaddr")
        for nic in NIC_MODELS:
            if nic in props:
                model, mac = nic, props[nic]
                break
        return VmNet.model_construct(model=model or "virtio", bridge=props.get("bridge", ""), mac_address=mac)

    def attachment_param(self, key: SlotKey, attachment: Attachment) -> str:
        if attachment.media == "cdrom" and attachment.file:
            storage, _, name = attachment.file.partition(":")
            if not name.startswith("iso/"):
                name = f"iso/{name}"
            return f"{storage}:{name},media=cdrom"

        props: Dict[str, Any] = {"format": attachment.format}
        if attachment.media == "cdrom":
            props["media"] = "cdrom"
        if attachment.volume:
            props["volume"] = attachment.volume
            props["size"] = attachment.size
        elif attachment.storage and attachment.size:
            props["volume"] = f"{attachment.storage}:{allocation_size(attachment.size)}"
        else:
            raise TranslationError(f"Disk {key} has neither a volume nor a storage and size")
        return format_property_string(props, "volume")

    def parse_attachment(self, key: SlotKey, value: str) -> Optional[Attachment]:
        props = parse_property_string(value, "volume")
        volume = props.get("volume")

        if key.bus == "ide":
            if props.get("media") != "cdrom" or not volume or ":" not in volume:
                return None
            storage, _, name = volume.partition(":")
            if name.startswith("iso/"):
                name = name[len("iso/"):]
            return Attachment(media="cdrom", file=f"{storage}:{name}")

        return Attachment(
            media=props.get("media", "disk"),
            storage=_storage_of(volume),
            size=props.get("size"),
            volume=volume,
            format=props.get("format"),
        )

    def from_remote(self, remote: RemoteGuestConfig) -> Dict[str, Any]:
        config = remote.config or {}
        fragment: Dict[str, Any] = {
            "node": remote.node,
            "vmid": remote.vmid,
            "name": config.get("name") or None,
            "description": config.get("description") or None,
            "agent": parse_agent_flag(config.get("agent")),
            "sockets": int(config.get("sockets", 1)),
            "cores": int(config.get("cores", 1)),
            "memory": int(config.get("memory", PVE_DEFAULT_MEMORY)),
            "net": self.parse_net(config["net0"]) if config.get("net0") else None,
            "disks": {},
            "cdroms": {},
        }

        for key, attachment in self.attachments_from_remote(config).items():
            if key.bus == "ide":
                fragment["cdroms"][key.name] = VmCdrom.model_construct(file=attachment.file)
                continue
            size = kib_to_gb(parse_size_kib(attachment.size)) if attachment.size else 0
            fragment["disks"][key.name] = VmDisk.model_construct(
                media=attachment.media,
                format=attachment.format or "raw",
                size=size,
                storage=attachment.storage or "",
                volume=attachment.volume,
            )

        return fragment

    def clone_params(self, spec: VmSpec) -> Dict[str, Any]:
        params: Dict[str, Any] = {"full": 1 if spec.full_clone else 0}
        if spec.name:
            params["name"] = spec.name
        return params


class LxcTranslator(GuestTranslator):
    """Translator for LXC containers."""

    kind = "lxc"
    spec_class = LxcSpec
    attachment_buses = ("rootfs", "mp")

    def to_remote(self, spec: LxcSpec) -> ConfigDraft:
        self._check(spec)
        draft = ConfigDraft(kind=self.kind)
        draft.options = {
            "net0": self.format_net(spec.net) if spec.net else None,
        }
        if spec.hostname:
            draft.options["hostname"] = spec.hostname

        draft.create_only = {
            "ostemplate": spec.ostemplate,
            "unprivileged": 1 if spec.unprivileged else 0,
            "password": spec.password,
            "ssh-public-keys": spec.ssh_public_keys,
        }
        draft.create_only = {k: v for k, v in draft.create_only.items() if v is not None}

        if spec.rootfs:
            draft.attachments[SlotKey.ROOTFS] = Attachment(
                storage=spec.rootfs.storage or _storage_of(spec.rootfs.volume),
                size=spec.rootfs.size,
                volume=spec.rootfs.volume,
            )
        for slot, mountpoint in spec.mountpoints.items():
            draft.attachments[self._slot(slot)] = Attachment(
                storage=mountpoint.storage or _storage_of(mountpoint.volume),
                size=mountpoint.size,
                volume=mountpoint.volume,
                mount_path=mountpoint.mp,
            )

        return draft

    def format_net(self, net: LxcNet) -> str:
        return format_property_string({
            "name": net.name,
            "bridge": net.bridge,
            "hwaddr": net.mac_address,
            "ip": net.ip,
            "gw": net.gw,
        })

    def parse_net(self, value: str) -> LxcNet:
        props = parse_property_string(value, "name")
        return LxcNet.model_construct(
            name=props.get("name", "eth0"),
            bridge=props.get("bridge", ""),
            ip=props.get("ip") or None,
            gw=props.get("gw") or None,
            mac_address=props.get("hwaddr") or None,
        )

    def attachment_param(self, key: SlotKey, attachment: Attachment) -> str:
        props: Dict[str, Any] = {}
        if attachment.volume:
            props["volume"] = attachment.volume
            props["size"] = normalize_size(attachment.size) if attachment.size else None
        elif attachment.storage and attachment.size:
            props["volume"] = f"{attachment.storage}:{allocation_size(attachment.size)}"
        else:
            raise TranslationError(f"Volume {key} has neither a volume nor a storage and size")

        if key != SlotKey.ROOTFS:
            if not attachment.mount_path:
                raise TranslationError(f"Mountpoint {key} has no mount path")
            props["mp"] = attachment.mount_path
        return format_property_string(props, "volume")

    def parse_attachment(self, key: SlotKey, value: str) -> Optional[Attachment]:
        props = parse_property_string(value, "volume")
        volume = props.get("volume")
        size = props.get("size")

        # "local-lvm:3" is shorthand for a fresh 3G volume
        storage, _, rest = (volume or "").partition(":")
        if size is None and rest.isdigit():
            size = f"{rest}G"

        return Attachment(
            storage=storage or None,
            size=normalize_size(size) if size else None,
            volume=volume,
            mount_path=props.get("mp"),
        )

    def from_remote(self, remote: RemoteGuestConfig) -> Dict[str, Any]:
        config = remote.config or {}
        attachments = self.attachments_from_remote(config)

        rootfs = None
        if SlotKey.ROOTFS in attachments:
            attachment = attachments.pop(SlotKey.ROOTFS)
            rootfs = LxcVolume.model_construct(
                storage=attachment.storage,
                size=attachment.size or "0G",
                volume=attachment.volume,
            )

        mountpoints = {
            key.name: LxcMountPoint.model_construct(
                storage=attachment.storage,
                size=attachment.size or "0G",
                volume=attachment.volume,
                mp=attachment.mount_path or "",
            )
            for key, attachment in attachments.items()
        }

        return {
            "node": remote.node,
            "vmid": remote.vmid,
            "hostname": config.get("hostname") or None,
            "ostype": config.get("ostype") or None,
            "unprivileged": parse_bool(config.get("unprivileged", 0)),
            "rootfs": rootfs,
            "mountpoints": mountpoints,
            "net": self.parse_net(config["net0"]) if config.get("net0") else None,
        }

    def clone_params(self, spec: LxcSpec) -> Dict[str, Any]:
        params: Dict[str, Any] = {"full": 1 if spec.full_clone else 0}
        if spec.hostname:
            params["hostname"] = spec.hostname
        return params


TRANSLATORS: Dict[str, Type[GuestTranslator]] = {
    QemuTranslator.kind: QemuTranslator,
    LxcTranslator.kind: LxcTranslator,
}
