"""
pveshape - Declarative shape reconciliation for Proxmox VE guests.

Keeps virtual machines and containers on a Proxmox VE cluster in the shape
declared in YAML, treating live platform state as the source of truth.
"""

__version__ = "0.1.0"

# Re-export key components for easier access
from pveshape.models.config import PveshapeConfig
from pveshape.models.guest import LxcSpec, StateMask, VmSpec

__all__ = [
    "PveshapeConfig",
    "LxcSpec",
    "StateMask",
    "VmSpec",
]
