"""CLI entry points for vpsctl."""

from __future__ import annotations

import argparse
from typing import Dict, List, Optional

from vpsctl.config import EDITABLE_FIELDS, load_settings
from vpsctl.constants import (
    CACHE_MODES,
    DEFAULT_CPUS,
    DEFAULT_DISK_SIZE,
    DEFAULT_MEMORY_MB,
    DEFAULT_SSH_PORT,
    DISPLAY_SERVER_LOCATIONS,
    SUPPORTED_NETWORK_MODELS,
)
from vpsctl.exceptions import ManagerError
from vpsctl.manager import VMManager
from vpsctl.models import Capabilities, OSImage
from vpsctl.utils import log


def list_images(images: Dict[str, OSImage]) -> None:
    if not images:
        log("WARN", "No OS images found")
        return
    width = max(len(label) for label in images)
    for label in sorted(images):
        image = images[label]
        print(f"  {label:<{width}}  {image.family} {image.variant}  (user={image.username})")


def print_vm_table(rows: List[Dict[str, str]]) -> None:
    if not rows:
        log("INFO", "No VMs found")
        return
    width = max(len(row["name"]) for row in rows)
    print(f"  {'NAME':<{width}}  {'STATE':<8}  {'SSH':<5}  OS")
    for row in rows:
        print(f"  {row['name']:<{width}}  {row['state']:<8}  {row['ssh_port']:<5}  {row['os']}")


def show_details(details: Dict[str, str]) -> None:
    width = max(len(key) for key in details)
    for key, value in details.items():
        print(f"  {key:<{width}}: {value}")


def show_capabilities(caps: Capabilities) -> None:
    show_details(
        {
            "kvm": "yes" if caps.kvm else "no",
            "cpu_cores": str(caps.cpu_cores),
            "avx2": "yes" if "avx2" in caps.cpu_flags else "no",
            "memory": f"{caps.memory_mb} MB",
            "virgl": "yes" if caps.virgl else "no",
            "display_server": "yes" if caps.display_server else "no",
        }
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vpsctl", description="Local QEMU VM manager")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List VMs and whether they are running")
    sub.add_parser("images", help="List available OS images")
    sub.add_parser("probe", help="Show detected host capabilities")

    create = sub.add_parser("create", help="Create a VM from an OS image")
    create.add_argument("image", help="OS image label (see 'vpsctl images')")
    create.add_argument("--name", help="VM name (default: the image's hostname)")
    create.add_argument("--hostname")
    create.add_argument("--username")
    create.add_argument("--password")
    create.add_argument("--disk-size", default=DEFAULT_DISK_SIZE, help="e.g. 30G or 512M")
    create.add_argument("--memory", type=int, default=DEFAULT_MEMORY_MB, help="memory in MB")
    create.add_argument("--cpus", type=int, default=DEFAULT_CPUS)
    create.add_argument("--ssh-port", type=int, default=DEFAULT_SSH_PORT)
    create.add_argument("--port-forwards", default="", help="host:guest pairs, e.g. 8080:80,8443:443")
    create.add_argument("--cache", choices=CACHE_MODES, default="writeback")
    create.add_argument("--io-threads", action=argparse.BooleanOptionalAction, default=True)
    create.add_argument("--network-model", choices=sorted(SUPPORTED_NETWORK_MODELS), default="virtio-net-pci")
    create.add_argument(
        "--gpu",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="virtio GPU with virgl (default: on when the host supports it)",
    )
    create.add_argument("--display-server", choices=DISPLAY_SERVER_LOCATIONS, default="host")

    edit = sub.add_parser("edit", help="Change one field of a VM")
    edit.add_argument("name")
    edit.add_argument("field", choices=EDITABLE_FIELDS)
    edit.add_argument("value")
    edit.add_argument("--confirm-shrink", action="store_true", help="Allow shrinking the disk")

    for command, help_text in (
        ("info", "Show a VM's configuration"),
        ("status", "Show whether a VM is running"),
        ("stop", "Stop a running VM"),
    ):
        cmd = sub.add_parser(command, help=help_text)
        cmd.add_argument("name")

    start = sub.add_parser("start", help="Start a VM")
    start.add_argument("name")
    start.add_argument("--attach", action="store_true", help="Stay attached to the serial console")

    delete = sub.add_parser("delete", help="Delete a stopped VM and its disks")
    delete.add_argument("name")
    delete.add_argument("--yes", action="store_true", help="Confirm deletion")
    return parser


def dispatch(args: argparse.Namespace, mgr: VMManager) -> int:
    if args.command == "list":
        print_vm_table(mgr.list_vms())
    elif args.command == "images":
        list_images(mgr.images())
    elif args.command == "probe":
        show_capabilities(mgr.capabilities)
    elif args.command == "create":
        mgr.create(
            args.image,
            name=args.name,
            hostname=args.hostname,
            username=args.username,
            password=args.password,
            disk_size=args.disk_size,
            memory_mb=args.memory,
            cpus=args.cpus,
            ssh_port=args.ssh_port,
            port_forwards=args.port_forwards,
            cache=args.cache,
            io_threads=args.io_threads,
            network_model=args.network_model,
            gpu=args.gpu,
            display_server=args.display_server,
        )
    elif args.command == "edit":
        mgr.edit(args.name, args.field, args.value, confirm_shrink=args.confirm_shrink)
    elif args.command == "info":
        show_details(mgr.info(args.name))
    elif args.command == "status":
        status = mgr.status(args.name)
        print(f"  {status['name']}: {status['state']} (pid {status['pid']})")
    elif args.command == "start":
        result = mgr.start(args.name, attach=args.attach)
        if result.exit_code:
            log("WARN", f"VM exited with status {result.exit_code}")
            return result.exit_code
    elif args.command == "stop":
        mgr.stop(args.name)
    elif args.command == "delete":
        if not args.yes:
            log("ERROR", f"Refusing to delete '{args.name}' without --yes")
            return 1
        mgr.delete(args.name)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        mgr = VMManager(load_settings())
        return dispatch(args, mgr)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
