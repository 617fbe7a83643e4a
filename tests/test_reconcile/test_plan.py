"""Tests for desired versus tracked state comparison."""

from pveshape.models.guest import LxcSpec, VmSpec
from pveshape.reconcile.plan import carry_computed, changed_fields, requires_replace


TEMPLATE = "local:vztmpl/debian-12.tar.zst"


class TestCarryComputed:
    """Test carrying computed attributes."""

    def test_fills_unset_computed(self):
        """Test the id and name come from state when undeclared."""
        desired = VmSpec(node="pve", memory=2048)
        state = VmSpec(node="pve", vmid=100, name="web", memory=1024)

        carried = carry_computed(desired, state)

        assert carried.vmid == 100
        assert carried.name == "web"
        assert carried.memory == 2048

    def test_declared_values_win(self):
        """Test declared computed attributes are kept."""
        desired = VmSpec(node="pve", vmid=100, name="api")
        state = VmSpec(node="pve", vmid=100, name="web")

        assert carry_computed(desired, state).name == "api"

    def test_nested_volume_and_mac(self):
        """Test volumes and MAC addresses carry into nested records."""
        desired = VmSpec(node="pve", net={"bridge": "vmbr0"},
                         disks={"virtio0": {"storage": "local-lvm", "size": 8},
                                "virtio1": {"storage": "local-lvm", "size": 4}})
        state = VmSpec(node="pve", vmid=100,
                       net={"bridge": "vmbr0", "mac_address": "BC:24:11:00:64:00"},
                       disks={"virtio0": {"storage": "local-lvm", "size": 8, "volume": "local-lvm:vm-100-disk-0"}})

        carried = carry_computed(desired, state)

        assert carried.net.mac_address == "BC:24:11:00:64:00"
        assert carried.disks["virtio0"].volume == "local-lvm:vm-100-disk-0"
        assert carried.disks["virtio1"].volume is None

    def test_without_state(self):
        """Test nothing to carry for an untracked guest."""
        desired = VmSpec(node="pve")

        assert carry_computed(desired, None) is desired
        assert carry_computed(desired, LxcSpec(node="pve", ostemplate=TEMPLATE)) is desired


class TestRequiresReplace:
    """Test replace detection."""

    def test_node_change(self):
        """Test moving nodes means replacing."""
        assert requires_replace(VmSpec(node="pve2", vmid=100), VmSpec(node="pve", vmid=100)) == ["node"]

    def test_container_template(self):
        """Test container create-only attributes."""
        desired = LxcSpec(node="pve", ostemplate=TEMPLATE, password="new", unprivileged=True)
        state = LxcSpec(node="pve", ostemplate=TEMPLATE, password="old")

        assert requires_replace(desired, state) == ["unprivileged", "password"]

    def test_kind_change(self):
        """Test changing kind."""
        assert requires_replace(LxcSpec(node="pve", ostemplate=TEMPLATE), VmSpec(node="pve")) == ["kind"]

    def test_in_place_change(self):
        """Test ordinary changes need no replace."""
        assert requires_replace(VmSpec(node="pve", memory=2048), VmSpec(node="pve", memory=1024)) == []


class TestChangedFields:
    """Test changed field listing."""

    def test_changes_sorted(self):
        """Test differing attributes are listed in order."""
        desired = VmSpec(node="pve", vmid=100, memory=2048, cores=2)
        state = VmSpec(node="pve", vmid=100, memory=1024, cores=1)

        assert changed_fields(desired, state) == ["cores", "memory"]

    def test_ignores_address_and_ensure(self):
        """Test observed-only attributes never count as changes."""
        desired = VmSpec(node="pve", vmid=100)
        state = VmSpec(node="pve", vmid=100, ipv4_address="10.0.0.5")

        assert changed_fields(desired, state) == []

    def test_status_counts(self):
        """Test power state is a change."""
        desired = VmSpec(node="pve", vmid=100, status="stopped")
        state = VmSpec(node="pve", vmid=100)

        assert changed_fields(desired, state) == ["status"]
