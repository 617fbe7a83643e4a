"""Tests for the tracked state store."""

import json

from pveshape.agent.state import StateStore
from pveshape.models.guest import LxcSpec, VmSpec


def test_empty_without_file(tmp_path):
    """Test a fresh store starts empty."""
    store = StateStore(tmp_path / "state")
    store.load()

    assert store.keys() == []
    assert store.get("web") is None


def test_put_persists(tmp_path):
    """Test entries survive a reload."""
    store = StateStore(tmp_path / "state")
    store.put("web", VmSpec(node="pve", vmid=100, memory=2048))
    store.put("proxy", LxcSpec(node="pve", vmid=200, ostemplate="local:vztmpl/debian-12.tar.zst",
                               password="hunter2", rootfs={"storage": "local-lvm", "size": "8G"}))

    reloaded = StateStore(tmp_path / "state")
    reloaded.load()

    assert reloaded.keys() == ["proxy", "web"]
    assert isinstance(reloaded.get("web"), VmSpec)
    assert reloaded.get("web").memory == 2048
    assert isinstance(reloaded.get("proxy"), LxcSpec)
    assert reloaded.get("proxy").password == "hunter2"
    assert reloaded.get("proxy").rootfs.size == "8G"


def test_file_format(tmp_path):
    """Test the on-disk layout."""
    store = StateStore(tmp_path)
    store.put("web", VmSpec(node="pve", vmid=100))

    data = json.loads((tmp_path / "state.json").read_text())

    assert data["web"]["kind"] == "qemu"
    assert data["web"]["spec"]["vmid"] == 100
    assert not (tmp_path / "state.json.tmp").exists()


def test_forget(tmp_path):
    """Test forgetting removes the entry on disk too."""
    store = StateStore(tmp_path)
    store.put("web", VmSpec(node="pve", vmid=100))
    store.forget("web")
    store.forget("never-tracked")

    reloaded = StateStore(tmp_path)
    reloaded.load()
    assert reloaded.keys() == []


def test_bad_entries_are_skipped(tmp_path):
    """Test unknown kinds and invalid records do not block loading."""
    (tmp_path / "state.json").write_text(json.dumps({
        "web": {"kind": "qemu", "spec": {"node": "pve", "vmid": 100}},
        "odd": {"kind": "zone", "spec": {}},
        "broken": {"kind": "qemu", "spec": {"vmid": 100}},
    }))

    store = StateStore(tmp_path)
    store.load()

    assert store.keys() == ["web"]
