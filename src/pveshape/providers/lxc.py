"""Provider for LXC containers."""

from pveshape.models.guest import LxcSpec
from pveshape.providers.guest import GuestProvider
from pveshape.reconcile.translate import LxcTranslator


class LxcProvider(GuestProvider):
    """Manages LXC containers.

    Root filesystem and mountpoint changes go through the attachment diff
    as separate calls by default, since the root filesystem may only be
    moved or resized.
    """

    kind = "lxc"
    spec_class = LxcSpec
    translator_class = LxcTranslator
    attachment_strategy = "diff"
