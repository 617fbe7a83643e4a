"""Provider for QEMU virtual machines."""

from pveshape.models.guest import VmSpec
from pveshape.providers.guest import GuestProvider
from pveshape.reconcile.translate import QemuTranslator


class VmProvider(GuestProvider):
    """Manages QEMU virtual machines.

    Disks and optical drives are folded into the regular config update by
    default; the platform reports the guest agent address once the VM is up.
    """

    kind = "qemu"
    spec_class = VmSpec
    translator_class = QemuTranslator
