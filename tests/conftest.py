"""
Pytest configuration and shared fixtures.

pyVmomi managed objects are replaced by MagicMock fakes that expose the few
properties vm_snapshot reads: names, snapshot trees, config paths and
datastore summaries.
"""

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from pyVmomi import vim

from vm_snapshot import GB, VMSnapshotManager


def make_datastore(name, free_gb, capacity_gb):
    """Fake datastore with the given free space and capacity in GB."""
    datastore = MagicMock()
    datastore.name = name
    datastore.summary.freeSpace = int(free_gb * GB)
    datastore.summary.capacity = int(capacity_gb * GB)
    return datastore


def make_snapshot(name, description="", created=None, state="poweredOff", children=None):
    """Fake snapshot tree node."""
    node = MagicMock()
    node.name = name
    node.description = description
    node.createTime = created or datetime(2026, 1, 1, 12, 0, 0)
    node.state = state
    node.childSnapshotList = children or []
    return node


def make_vm(name, datastore=None, snapshots=None, vmx_datastore=None, extra_datastores=()):
    """Fake VM whose CreateSnapshot_Task adds a node to its snapshot tree."""
    vm = MagicMock()
    vm.name = name

    config_datastore = vmx_datastore or (datastore.name if datastore else "missing-ds")
    vm.config.files.vmPathName = f"[{config_datastore}] {name}/{name}.vmx"
    vm.config.hardware.device = []
    vm.datastore = ([datastore] if datastore else []) + list(extra_datastores)
    vm.snapshot = MagicMock(rootSnapshotList=list(snapshots)) if snapshots else None
    vm.layoutEx = None

    def create_snapshot_task(name, description, memory, quiesce):
        node = make_snapshot(
            name,
            description,
            created=datetime.now(),
            state="poweredOn" if memory else "poweredOff",
        )
        if vm.snapshot is None:
            vm.snapshot = MagicMock(rootSnapshotList=[])
        vm.snapshot.rootSnapshotList.append(node)

        task = MagicMock()
        task.info.state = "success"
        return task

    vm.CreateSnapshot_Task.side_effect = create_snapshot_task
    return vm


def make_service_instance(vms, datastores=()):
    """Fake ServiceInstance whose container views list the given objects."""
    si = MagicMock()
    content = si.RetrieveContent.return_value

    def create_container_view(container, view_type, recursive):
        view = MagicMock()
        if view_type == [vim.VirtualMachine]:
            view.view = list(vms)
        else:
            view.view = list(datastores)
        return view

    content.viewManager.CreateContainerView.side_effect = create_container_view
    return si


def make_config(**defaults):
    config = {
        "vcenter": {
            "hostname": None,
            "username": "administrator@vsphere.local",
            "password": "secret",
            "port": 443,
            "verify_ssl": False,
        },
        "defaults": {
            "free_space_gb": 20,
            "free_space_percent": 10,
            "column": "Name",
            "output_dir": ".",
        },
    }
    config["defaults"].update(defaults)
    return config


@pytest.fixture(autouse=True)
def no_sleep():
    """Skip the real pauses between snapshot requests."""
    with patch("vm_snapshot.time.sleep") as sleep:
        yield sleep


@pytest.fixture
def manager_factory():
    """Build a connected VMSnapshotManager over fake inventory."""

    def factory(vms, datastores=(), check_only=False):
        manager = VMSnapshotManager("vc01", make_config(), check_only=check_only)
        manager.si = make_service_instance(vms, datastores)
        return manager

    return factory


@pytest.fixture
def run_date():
    return datetime(2026, 10, 19, 9, 30, 0)


@pytest.fixture
def vm_list_file(tmp_path):
    """Write an input CSV and return its path."""

    def write(names, column="Name"):
        path = tmp_path / "vms.csv"
        lines = [column] + list(names)
        path.write_text("\n".join(lines) + "\n")
        return path

    return write
