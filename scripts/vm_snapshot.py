#!/usr/bin/env python3
"""
ABOUTME: Batch snapshot creation for a list of vCenter VMs.
ABOUTME: Checks each VM for existence, existing snapshots and datastore headroom before snapshotting.

Usage:
    vm_snapshot.py --server vc01 --input vms.csv --snapshot-name pre-patch --check
    vm_snapshot.py --server vc01 --input vms.csv --snapshot-name pre-patch

The input file is a CSV with a "Name" column (override with --column). Names
may use wildcards (*, ?, [...]) and are matched case-insensitively.

A VM is skipped when it cannot be found, when its datastore cannot be
resolved, or when the datastore holding its .vmx file has free space at or
below EITHER threshold (--free-space-gb OR --free-space-percent). An
existing snapshot is reported but does not cause a skip. Memory snapshots
are not accounted for in the free space check.

Examples:
    # Report what would happen, no changes made
    vm_snapshot.py --server vc01 --input vms.csv --snapshot-name pre-patch --check

    # Snapshot with memory, stricter thresholds
    vm_snapshot.py --server vc01 --input vms.csv --snapshot-name pre-patch \\
        --memory --free-space-gb 50 --free-space-percent 15

    # Credentials come from SNAPSHOT_VCENTER_USER / SNAPSHOT_VCENTER_PASSWORD,
    # config/snapshot-secrets.yaml, config/snapshot-config.yaml or a prompt.

In apply mode a report of every requested VM that now has a snapshot is
written to <output-dir>/<snapshot-name>-snapshots.csv.
"""

import argparse
import csv
import fnmatch
import re
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from pyVim import connect
from pyVmomi import vim, vmodl

from snapshot_secrets import load_config_with_secrets


GB = 1024 ** 3

# Pause after every snapshot request so back-to-back creations do not pile
# up on the vCenter task queue.
SNAPSHOT_PAUSE_SECONDS = 5

REPORT_FIELDS = [
    "VM Name",
    "Snapshot Name",
    "Description",
    "Snapshot Size GB",
    "Datastore",
    "Datastore Free GB",
    "Memory Included",
]

_DATASTORE_PATH = re.compile(r"^\[([^\]]+)\]")


def read_vm_list(input_path: str, column: str = "Name") -> List[str]:
    """Read VM names from the given CSV column, in file order."""
    path = Path(input_path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")

    with open(path, newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        fieldnames = reader.fieldnames or []
        if column not in fieldnames:
            raise ValueError(
                f"Input file {path} has no '{column}' column "
                f"(found: {', '.join(fieldnames) or 'none'})"
            )

        names = []
        for row in reader:
            value = (row.get(column) or "").strip()
            if value:
                names.append(value)

    return names


def datastore_name_from_path(path: Optional[str]) -> Optional[str]:
    """Return 'ds1' for a datastore path like '[ds1] vm/vm.vmx'."""
    if not path:
        return None
    match = _DATASTORE_PATH.match(path)
    return match.group(1) if match else None


def build_description(vm_name: str, snapshot_name: str, run_date: datetime) -> str:
    return f"{snapshot_name} snapshot of {vm_name} taken {run_date.strftime('%m-%d-%Y')}"


def report_path(snapshot_name: str, output_dir: str = ".") -> Path:
    return Path(output_dir) / f"{snapshot_name}-snapshots.csv"


class VMSnapshotManager:
    """Check and create snapshots for a batch of VMs over one vCenter session."""

    def __init__(self, server: str, config: Dict[str, Any], check_only: bool = False):
        self.server = server
        self.config = config
        self.check_only = check_only
        self.si: Optional[vim.ServiceInstance] = None

    def connect_vcenter(self) -> None:
        """Connect to vCenter Server."""
        vcenter_config = self.config["vcenter"]

        print(f"Connecting to vCenter: {self.server}")

        try:
            self.si = connect.SmartConnect(
                host=self.server,
                user=vcenter_config["username"],
                pwd=vcenter_config["password"],
                port=int(vcenter_config.get("port", 443)),
                disableSslCertValidation=not vcenter_config.get("verify_ssl", False),
            )
            print("✓ Connected to vCenter successfully\n")
        except Exception as e:
            raise ConnectionError(f"Failed to connect to vCenter {self.server}: {e}")

    def disconnect_vcenter(self) -> None:
        """Disconnect from vCenter Server."""
        if self.si:
            connect.Disconnect(self.si)
            self.si = None

    def _get_inventory(self, view_type: list) -> list:
        if not self.si:
            raise RuntimeError("Not connected to vCenter")

        content = self.si.RetrieveContent()
        container_view = content.viewManager.CreateContainerView(
            content.rootFolder, view_type, True
        )
        try:
            return list(container_view.view)
        finally:
            container_view.Destroy()

    def find_vm(self, pattern: str) -> Optional[vim.VirtualMachine]:
        """Find the first VM whose name matches a wildcard pattern."""
        needle = pattern.lower()
        matches = [
            vm for vm in self._get_inventory([vim.VirtualMachine])
            if fnmatch.fnmatchcase(vm.name.lower(), needle)
        ]

        if not matches:
            return None

        if len(matches) > 1:
            names = ", ".join(vm.name for vm in matches)
            print(f"  ⚠ '{pattern}' matches {len(matches)} VMs ({names}), using {matches[0].name}")

        return matches[0]

    def get_snapshots(self, vm: vim.VirtualMachine) -> List[vim.vm.SnapshotTree]:
        """Return every snapshot of a VM, depth first."""
        if not vm.snapshot:
            return []

        snapshots = []
        pending = list(reversed(vm.snapshot.rootSnapshotList or []))
        while pending:
            node = pending.pop()
            snapshots.append(node)
            pending.extend(reversed(node.childSnapshotList or []))
        return snapshots

    def _get_datastore_by_name(self, vm: vim.VirtualMachine, name: str) -> Optional[vim.Datastore]:
        for datastore in vm.datastore or []:
            if datastore.name == name:
                return datastore

        for datastore in self._get_inventory([vim.Datastore]):
            if datastore.name == name:
                return datastore

        return None

    def get_config_datastore(self, vm: vim.VirtualMachine) -> Optional[vim.Datastore]:
        """Datastore holding the VM's .vmx file."""
        if not vm.config:
            return None

        name = datastore_name_from_path(vm.config.files.vmPathName)
        if not name:
            return None
        return self._get_datastore_by_name(vm, name)

    def get_primary_disk_datastore(self, vm: vim.VirtualMachine) -> Optional[vim.Datastore]:
        """Datastore holding the VM's first virtual disk."""
        devices = vm.config.hardware.device if vm.config else []
        for device in devices or []:
            if isinstance(device, vim.vm.device.VirtualDisk):
                name = datastore_name_from_path(getattr(device.backing, "fileName", None))
                if name:
                    return self._get_datastore_by_name(vm, name)
                break

        return self.get_config_datastore(vm)

    def get_datastore_capacity(self, datastore: vim.Datastore) -> Dict:
        """Current free space of a datastore in GB and percent."""
        summary = datastore.summary
        free_bytes = summary.freeSpace or 0
        capacity_bytes = summary.capacity or 0

        return {
            "name": datastore.name,
            "free_space_gb": round(free_bytes / GB, 2),
            "capacity_gb": round(capacity_bytes / GB, 2),
            "free_space_percent": (
                round(free_bytes / capacity_bytes * 100, 2)
                if capacity_bytes > 0
                else 0
            ),
        }

    def check_eligibility(self, vm_name: str, free_space_gb: float, free_space_percent: float) -> Dict:
        """Decide whether a VM can be snapshotted.

        A fresh result is built for every call. ``proceed`` is True only
        when the VM exists, its .vmx datastore resolves, and that datastore
        has more than ``free_space_gb`` GB free and more than
        ``free_space_percent`` percent free.
        """
        result = {
            "vm_name": vm_name,
            "vm": None,
            "resolved_name": None,
            "exists": False,
            "snapshots": [],
            "datastore": None,
            "free_space_gb": None,
            "free_space_percent": None,
            "proceed": False,
            "reasons": [],
        }

        print(f"\n{'-' * 80}")
        print(f"VM: {vm_name}")
        print(f"{'-' * 80}")

        try:
            vm = self.find_vm(vm_name)
            if not vm:
                print("  ✗ VM not found")
                result["reasons"].append("not found")
                return result

            result["vm"] = vm
            result["resolved_name"] = vm.name
            result["exists"] = True

            snapshots = self.get_snapshots(vm)
            result["snapshots"] = [snapshot.name for snapshot in snapshots]
            if snapshots:
                print(f"  ⚠ Existing snapshot(s): {', '.join(result['snapshots'])}")
            else:
                print("  ✓ No existing snapshots")

            datastore = self.get_config_datastore(vm)
            if not datastore:
                print("  ✗ Datastore for VM configuration not found")
                result["reasons"].append("datastore not found")
                return result

            capacity = self.get_datastore_capacity(datastore)
        except vmodl.MethodFault as e:
            print(f"  ✗ Lookup failed: {e.msg or e}")
            result["reasons"].append("not found")
            return result

        result["datastore"] = capacity["name"]
        result["free_space_gb"] = capacity["free_space_gb"]
        result["free_space_percent"] = capacity["free_space_percent"]

        print(
            f"  Datastore: {capacity['name']} "
            f"({capacity['free_space_gb']:.2f} GB free, {capacity['free_space_percent']:.2f}%)"
        )

        if capacity["free_space_gb"] <= free_space_gb:
            print(f"  ✗ Free space {capacity['free_space_gb']:.2f} GB is at or below {free_space_gb} GB")
            result["reasons"].append(
                f"free space {capacity['free_space_gb']:.2f} GB <= {free_space_gb} GB"
            )
        else:
            print(f"  ✓ Free space above {free_space_gb} GB")

        if capacity["free_space_percent"] <= free_space_percent:
            print(f"  ✗ Free space {capacity['free_space_percent']:.2f}% is at or below {free_space_percent}%")
            result["reasons"].append(
                f"free space {capacity['free_space_percent']:.2f}% <= {free_space_percent}%"
            )
        else:
            print(f"  ✓ Free space above {free_space_percent}%")

        result["proceed"] = not result["reasons"]
        return result

    def _wait_for_task(self, task: vim.Task) -> None:
        """Wait for a vCenter task to complete, however long it runs."""
        while task.info.state in [vim.TaskInfo.State.running, vim.TaskInfo.State.queued]:
            time.sleep(1)

        if task.info.state != vim.TaskInfo.State.success:
            raise RuntimeError(f"Task failed: {task.info.error}")

    def create_snapshot(
        self,
        check: Dict,
        snapshot_name: str,
        include_memory: bool,
        run_date: datetime,
    ) -> bool:
        """Create a snapshot for an eligible VM. Never quiesces."""
        vm = check["vm"]
        description = build_description(check["resolved_name"], snapshot_name, run_date)

        print(f"  ● Creating snapshot '{snapshot_name}' (memory: {'yes' if include_memory else 'no'})...")

        try:
            task = vm.CreateSnapshot_Task(
                name=snapshot_name,
                description=description,
                memory=include_memory,
                quiesce=False,
            )
            self._wait_for_task(task)
            print("  ✓ Snapshot created")
            return True
        except (vmodl.MethodFault, RuntimeError) as e:
            print(f"  ✗ Snapshot creation failed: {e}")
            return False
        finally:
            time.sleep(SNAPSHOT_PAUSE_SECONDS)

    def process_vms(
        self,
        vm_names: List[str],
        snapshot_name: str,
        free_space_gb: float,
        free_space_percent: float,
        include_memory: bool = False,
        run_date: Optional[datetime] = None,
    ) -> Dict[str, List[str]]:
        """Check every VM in order and snapshot the eligible ones."""
        run_date = run_date or datetime.now()
        summary = {"created": [], "skipped": [], "failed": [], "would_create": []}

        for vm_name in vm_names:
            check = self.check_eligibility(vm_name, free_space_gb, free_space_percent)

            if not check["proceed"]:
                prefix = "[CHECK] Would skip" if self.check_only else "○ Skipping"
                print(f"  {prefix} {vm_name}: {'; '.join(check['reasons'])}")
                summary["skipped"].append(vm_name)
                continue

            if self.check_only:
                print(
                    f"  [CHECK] Would create snapshot '{snapshot_name}' on {check['resolved_name']} "
                    f"(memory: {'yes' if include_memory else 'no'})"
                )
                summary["would_create"].append(vm_name)
                continue

            if self.create_snapshot(check, snapshot_name, include_memory, run_date):
                summary["created"].append(vm_name)
            else:
                summary["failed"].append(vm_name)

        return summary

    def get_snapshot_size_gb(self, vm: vim.VirtualMachine) -> int:
        """Disk space used by all of a VM's snapshot files, in whole GB."""
        layout = vm.layoutEx
        if not layout:
            return 0

        snapshot_keys = set()
        for snapshot_layout in layout.snapshot or []:
            snapshot_keys.add(snapshot_layout.dataKey)
            if snapshot_layout.memoryKey is not None and snapshot_layout.memoryKey >= 0:
                snapshot_keys.add(snapshot_layout.memoryKey)

        # Every link after the base disk in a chain is a snapshot delta
        for disk_layout in layout.disk or []:
            for link in (disk_layout.chain or [])[1:]:
                snapshot_keys.update(link.fileKey or [])

        total_bytes = sum(
            layout_file.size or 0
            for layout_file in layout.file or []
            if layout_file.key in snapshot_keys
        )
        return int(round(total_bytes / GB))

    @staticmethod
    def _pick_report_snapshot(snapshots: list, snapshot_name: str):
        for snapshot in snapshots:
            if snapshot.name == snapshot_name:
                return snapshot
        return max(snapshots, key=lambda snapshot: snapshot.createTime)

    def build_report(self, vm_names: List[str], snapshot_name: str) -> List[Dict]:
        """Look every VM up again and describe the ones that now have a snapshot."""
        print(f"\n{'=' * 80}")
        print("Collecting snapshot report")
        print(f"{'=' * 80}")

        rows = []
        seen = set()

        for vm_name in vm_names:
            try:
                vm = self.find_vm(vm_name)
                if not vm or vm.name in seen:
                    continue

                snapshots = self.get_snapshots(vm)
                if not snapshots:
                    continue

                seen.add(vm.name)
                snapshot = self._pick_report_snapshot(snapshots, snapshot_name)
                datastore = self.get_primary_disk_datastore(vm)

                rows.append({
                    "VM Name": vm.name,
                    "Snapshot Name": snapshot.name,
                    "Description": snapshot.description or "",
                    "Snapshot Size GB": self.get_snapshot_size_gb(vm),
                    "Datastore": datastore.name if datastore else "",
                    "Datastore Free GB": (
                        int(round((datastore.summary.freeSpace or 0) / GB))
                        if datastore
                        else ""
                    ),
                    "Memory Included": snapshot.state == vim.VirtualMachinePowerState.poweredOn,
                })
            except vmodl.MethodFault as e:
                print(f"  ⚠ Could not report on {vm_name}: {e.msg or e}")

        return rows

    def export_to_csv(self, rows: List[Dict], output_path: Path) -> None:
        """Export snapshot report to CSV file."""
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, "w", newline="", encoding="utf-8") as csvfile:
            writer = csv.DictWriter(csvfile, fieldnames=REPORT_FIELDS)
            writer.writeheader()
            for row in rows:
                writer.writerow(row)

        print(f"\n✓ Snapshot report exported to: {output_path}")

    def display_report(self, rows: List[Dict]) -> None:
        if not rows:
            print("\n○ No requested VMs have snapshots")
            return

        print(
            f"\n{'VM':<25} {'Snapshot':<20} {'Size':>6} {'Datastore':<20} {'Free':>8} {'Memory':>7}"
        )
        print("-" * 91)
        for row in rows:
            free = f"{row['Datastore Free GB']}GB" if row["Datastore Free GB"] != "" else "-"
            print(
                f"{row['VM Name']:<25} {row['Snapshot Name']:<20} "
                f"{row['Snapshot Size GB']:>4}GB {row['Datastore'] or '-':<20} "
                f"{free:>8} {'yes' if row['Memory Included'] else 'no':>7}"
            )


def non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be 0 or greater, got {number}")
    return number


def percentage(value: str) -> int:
    number = int(value)
    if not 0 <= number <= 100:
        raise argparse.ArgumentTypeError(f"must be between 0 and 100, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Check and create snapshots for a list of vCenter VMs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument(
        "--server",
        help="vCenter hostname (default: vcenter.hostname from config)",
    )
    parser.add_argument(
        "--input",
        required=True,
        metavar="FILE",
        help="CSV file listing the VMs to snapshot",
    )
    parser.add_argument(
        "--snapshot-name",
        required=True,
        help="Snapshot name, also used for the report file name",
    )
    parser.add_argument(
        "--free-space-gb",
        type=non_negative_int,
        help="Skip VMs whose datastore has this many GB free or less",
    )
    parser.add_argument(
        "--free-space-percent",
        type=percentage,
        help="Skip VMs whose datastore has this percent free or less",
    )
    parser.add_argument(
        "--memory",
        action="store_true",
        help="Include VM memory in the snapshot",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only report what would be done, create nothing",
    )
    parser.add_argument(
        "--column",
        help="Name of the VM column in the input file (default: Name)",
    )
    parser.add_argument(
        "--output-dir",
        help="Directory for the snapshot report (default: current directory)",
    )
    parser.add_argument(
        "--config",
        default="config/snapshot-config.yaml",
        help="Path to config file",
    )

    return parser


def print_summary(summary: Dict[str, List[str]], check_only: bool) -> None:
    print(f"\n{'=' * 80}")
    print("SUMMARY")
    print(f"{'=' * 80}")

    if check_only:
        print(f"\nWould snapshot: {len(summary['would_create'])}")
        print(f"Would skip:     {len(summary['skipped'])}")
        print("\n🔍 This was a check run. No snapshots were created.")
        return

    print(f"\nCreated: {len(summary['created'])}")
    print(f"Skipped: {len(summary['skipped'])}")
    print(f"Failed:  {len(summary['failed'])}")
    for vm_name in summary["failed"]:
        print(f"  ✗ {vm_name}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the VM snapshot CLI."""
    args = build_parser().parse_args(argv)

    print("VM Snapshot Tool")
    print("=" * 80)

    if args.check:
        print("🔍 CHECK MODE: No snapshots will be created\n")

    try:
        config = load_config_with_secrets(Path(args.config))
    except ValueError as e:
        print(f"✗ Failed to load configuration: {e}")
        return 1
    except KeyboardInterrupt:
        print("\n\nOperation cancelled by user")
        return 130

    defaults = config["defaults"]
    server = args.server or config["vcenter"].get("hostname")
    if not server:
        print("✗ No vCenter server given (use --server or vcenter.hostname in config)")
        return 1

    free_space_gb = args.free_space_gb if args.free_space_gb is not None else defaults["free_space_gb"]
    free_space_percent = (
        args.free_space_percent
        if args.free_space_percent is not None
        else defaults["free_space_percent"]
    )
    column = args.column or defaults["column"]
    output_dir = args.output_dir or defaults["output_dir"]

    try:
        vm_names = read_vm_list(args.input, column)
    except (FileNotFoundError, ValueError) as e:
        print(f"✗ {e}")
        return 1

    print(f"VMs requested: {len(vm_names)}")
    print(f"Thresholds: {free_space_gb} GB / {free_space_percent}% free")

    manager = VMSnapshotManager(server, config, check_only=args.check)
    report_failed = False

    try:
        manager.connect_vcenter()

        summary = manager.process_vms(
            vm_names,
            args.snapshot_name,
            free_space_gb,
            free_space_percent,
            include_memory=args.memory,
        )

        if not args.check:
            rows = manager.build_report(vm_names, args.snapshot_name)
            manager.display_report(rows)
            try:
                manager.export_to_csv(rows, report_path(args.snapshot_name, output_dir))
            except OSError as e:
                print(f"\n✗ Failed to write snapshot report: {e}")
                report_failed = True

        print_summary(summary, args.check)

    except KeyboardInterrupt:
        print("\n\nOperation cancelled by user")
        return 130
    except ConnectionError as e:
        print(f"\n✗ {e}")
        return 1
    finally:
        manager.disconnect_vcenter()

    return 1 if summary["failed"] or report_failed else 0


if __name__ == "__main__":
    sys.exit(main())
