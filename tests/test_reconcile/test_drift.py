"""Tests for the read-path drift policy."""

import pytest

from pveshape.models.guest import LxcSpec, RemoteGuestConfig, StateMask, VmSpec
from pveshape.reconcile.drift import DriftReconciler
from pveshape.reconcile.netpoll import GuestNetworkPoller
from pveshape.reconcile.reader import StateReader
from pveshape.reconcile.translate import LxcTranslator, QemuTranslator


@pytest.fixture
def reader(fake_client):
    return StateReader(fake_client, GuestNetworkPoller(fake_client, interval=0.01, deadline=1))


@pytest.fixture
def vm_drift(reader):
    return DriftReconciler(reader, QemuTranslator())


@pytest.fixture
def lxc_drift(reader):
    return DriftReconciler(reader, LxcTranslator())


class TestApply:
    """Test overlaying remote state."""

    def test_config_replaces_tracked_values(self, vm_drift):
        """Test remote values win, including removals."""
        record = VmSpec(node="pve", vmid=100, name="web", description="old", memory=1024,
                        disks={"virtio0": {"storage": "local-lvm", "size": 8}})
        remote = RemoteGuestConfig(
            node="pve", vmid=100, kind="qemu", mask=StateMask.CONFIG,
            config={"name": "web-renamed", "memory": 2048},
        )

        result = vm_drift.apply(record, remote)

        assert result.name == "web-renamed"
        assert result.memory == 2048
        assert result.description is None
        assert result.disks == {}
        assert result.status == "running"

    def test_status_only(self, vm_drift):
        """Test a STATUS read leaves configuration alone."""
        record = VmSpec(node="pve", vmid=100, memory=1024)
        remote = RemoteGuestConfig(node="pve", vmid=100, kind="qemu", mask=StateMask.STATUS, status="stopped")

        result = vm_drift.apply(record, remote)

        assert result.status == "stopped"
        assert result.memory == 1024

    def test_net_sets_address(self, vm_drift):
        """Test a NET read records the address, even when it is gone."""
        record = VmSpec(node="pve", vmid=100, ipv4_address="10.0.0.9")

        found = vm_drift.apply(record, RemoteGuestConfig(
            node="pve", vmid=100, kind="qemu", mask=StateMask.NET, ipv4_address="10.0.0.5"))
        lost = vm_drift.apply(record, RemoteGuestConfig(
            node="pve", vmid=100, kind="qemu", mask=StateMask.NET))

        assert found.ipv4_address == "10.0.0.5"
        assert lost.ipv4_address is None

    def test_untracked_fields_survive(self, lxc_drift):
        """Test container secrets are kept from the record."""
        record = LxcSpec(node="pve", vmid=200, ostemplate="local:vztmpl/debian-12.tar.zst",
                         password="hunter2", hostname="old")
        remote = RemoteGuestConfig(
            node="pve", vmid=200, kind="lxc", mask=StateMask.CONFIG,
            config={"hostname": "proxy", "rootfs": "local-lvm:vm-200-disk-0,size=8G"},
        )

        result = lxc_drift.apply(record, remote)

        assert result.hostname == "proxy"
        assert result.password == "hunter2"
        assert result.ostemplate == "local:vztmpl/debian-12.tar.zst"
        assert result.rootfs.volume == "local-lvm:vm-200-disk-0"


@pytest.mark.asyncio
class TestRefresh:
    """Test refreshing tracked records."""

    async def test_refresh(self, fake_client, vm_drift):
        """Test a full re-read of a tracked guest."""
        fake_client.add_guest(100, config={"name": "web", "memory": 2048}, status="stopped")
        record = VmSpec(node="pve", vmid=100, name="web", memory=1024)

        result = await vm_drift.refresh(record)

        assert result.memory == 2048
        assert result.status == "stopped"

    async def test_gone_guest(self, vm_drift):
        """Test a vanished guest drops out of state."""
        assert await vm_drift.refresh(VmSpec(node="pve", vmid=100)) is None

    async def test_other_kind_at_same_id(self, fake_client, vm_drift):
        """Test a container at the tracked VM id counts as gone."""
        fake_client.add_guest(100, kind="lxc")

        assert await vm_drift.refresh(VmSpec(node="pve", vmid=100)) is None

    async def test_record_without_id(self, fake_client, vm_drift):
        """Test a record that never got an id is returned unchanged."""
        record = VmSpec(node="pve")

        assert await vm_drift.refresh(record) is record
