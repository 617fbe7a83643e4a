"""Pydantic models for configuration and guest specifications."""

from pveshape.models.config import PveshapeConfig, ApiConfig, EngineConfig, AgentConfig
from pveshape.models.guest import (
    Attachment,
    GuestRef,
    GuestSpec,
    LxcMountPoint,
    LxcNet,
    LxcSpec,
    LxcVolume,
    RemoteGuestConfig,
    SlotKey,
    SPEC_CLASSES,
    StateMask,
    VmCdrom,
    VmDisk,
    VmNet,
    VmSpec,
)

__all__ = [
    "PveshapeConfig",
    "ApiConfig",
    "EngineConfig",
    "AgentConfig",
    "Attachment",
    "GuestRef",
    "GuestSpec",
    "LxcMountPoint",
    "LxcNet",
    "LxcSpec",
    "LxcVolume",
    "RemoteGuestConfig",
    "SlotKey",
    "SPEC_CLASSES",
    "StateMask",
    "VmCdrom",
    "VmDisk",
    "VmNet",
    "VmSpec",
]
