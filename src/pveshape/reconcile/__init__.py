"""Reconciliation building blocks shared by the guest providers."""

from pveshape.reconcile.attachments import AttachmentDiff, DiffPlan
from pveshape.reconcile.drift import DriftReconciler
from pveshape.reconcile.ids import IdAllocator, is_id_collision
from pveshape.reconcile.netpoll import GuestNetworkPoller
from pveshape.reconcile.plan import carry_computed, changed_fields, requires_replace
from pveshape.reconcile.reader import StateReader
from pveshape.reconcile.translate import TRANSLATORS, LxcTranslator, QemuTranslator

__all__ = [
    "AttachmentDiff",
    "DiffPlan",
    "DriftReconciler",
    "IdAllocator",
    "is_id_collision",
    "GuestNetworkPoller",
    "carry_computed",
    "changed_fields",
    "requires_replace",
    "StateReader",
    "TRANSLATORS",
    "LxcTranslator",
    "QemuTranslator",
]
