import argparse
import asyncio
import sys
from pathlib import Path

from vm_provisioner.domain import LaunchConfiguration, ProvisioningState, SaveProgress
from vm_provisioner.logging import LoggerFactory, setup_logging
from vm_provisioner.services.editing import save_launch_configuration
from vm_provisioner.services.instances import InstanceManager, JsonInstanceStore
from vm_provisioner.services.provisioning import ProvisioningPipeline
from vm_provisioner.services.virtualization import (
    load_engine,
    recommended_launch_configuration,
)
from vm_provisioner.storage.bundle import BundleLayout
from vm_provisioner.storage.capability import FileCapabilityBroker
from vm_provisioner.storage.disk import DiskImageOperator
from vm_provisioner.storage.exceptions import ProvisionerError
from vm_provisioner.storage.metadata import read_launch_configuration
from vm_provisioner.storage.validation import inspect_bundle, require_launchable


def build_parser():
    parser = argparse.ArgumentParser(
        prog="vm-provisioner", description="Provision and resize VM bundles"
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output")
    parser.add_argument("--log-dir", type=Path, default=None, help="Directory for log files")
    parser.add_argument("--store", type=Path, default=None, help="Instance record file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_sizing(sub):
        sub.add_argument("--cpus", type=int, default=None, help="CPU cores")
        sub.add_argument("--memory", type=int, default=None, help="Memory in GiB")
        sub.add_argument("--storage", type=int, default=None, help="Disk size in GiB")

    provision = subparsers.add_parser("provision", help="Create and install a new VM bundle")
    provision.add_argument("name")
    provision.add_argument("--container", type=Path, required=True)
    provision.add_argument("--image", type=Path, default=None, help="Local restore image")
    provision.add_argument("--engine", default=None, help="Engine as module:factory")
    provision.add_argument("--resume", action="store_true", help="Reuse files from a failed attempt")
    add_sizing(provision)

    edit = subparsers.add_parser("edit", help="Change an instance's launch configuration")
    edit.add_argument("instance_id")
    add_sizing(edit)

    show = subparsers.add_parser("show", help="Print a bundle's launch configuration")
    show.add_argument("bundle", type=Path)

    check = subparsers.add_parser("check", help="Report missing or damaged bundle files")
    check.add_argument("bundle", type=Path)

    import_ = subparsers.add_parser("import", help="Track an existing VM bundle")
    import_.add_argument("bundle", type=Path)

    relink = subparsers.add_parser("relink", help="Point an instance at its moved bundle")
    relink.add_argument("instance_id")
    relink.add_argument("bundle", type=Path)

    started = subparsers.add_parser(
        "mark-started", help="Record that an instance was just started"
    )
    started.add_argument("instance_id")

    subparsers.add_parser("list", help="List instance records")
    return parser


def _print_state(state: ProvisioningState) -> None:
    print(state.format_label(), flush=True)


def _print_save_progress(progress: SaveProgress) -> None:
    if progress.percentage is not None:
        print(f"Resizing disk image {progress.percentage}%", flush=True)
    else:
        print("Saving launch configuration", flush=True)


async def run_provision(args, store, broker) -> int:
    engine = load_engine(args.engine)
    defaults = recommended_launch_configuration(args.container)
    config = defaults.with_changes(
        cpu_cores=args.cpus, memory_gib=args.memory, storage_gib=args.storage
    )
    pipeline = ProvisioningPipeline(engine, broker=broker, launch_configuration=config)
    pipeline.on_state(_print_state)
    token = await pipeline.start_provisioning(
        args.name, args.container, args.image, resume=args.resume
    )
    layout = BundleLayout.from_container(args.container, args.name)
    manager = InstanceManager.register(layout, token, store, broker)
    print(f"Registered {manager.name} as {manager.record_id}")
    return 0


async def run_edit(args, store, broker) -> int:
    manager = InstanceManager(store.read(args.instance_id), store, broker)
    resolution = manager.resolve()
    if resolution.stale:
        manager.remint(resolution.layout)
    layout = resolution.layout
    previous = read_launch_configuration(layout.metadata)
    updated = previous.with_changes(
        cpu_cores=args.cpus, memory_gib=args.memory, storage_gib=args.storage
    )
    saved = await save_launch_configuration(
        layout, previous, updated, DiskImageOperator(), broker, _print_save_progress
    )
    print(updated.format_label() if saved else "No changes")
    return 0


def run_show(args) -> int:
    layout = BundleLayout.from_path(args.bundle)
    config: LaunchConfiguration = read_launch_configuration(layout.metadata)
    print(f"{layout.name}: {config.format_label()}")
    return 0


def run_check(args) -> int:
    health = inspect_bundle(BundleLayout.from_path(args.bundle))
    if not health.exists:
        print(f"{args.bundle}: bundle does not exist")
        return 1
    for path in health.missing:
        print(f"missing: {path.name}")
    if health.metadata_error is not None:
        print(f"metadata: {health.metadata_error}")
    if health.restore_image_left_behind:
        print("restore image left behind by an unfinished install")
    print("launchable" if health.is_launchable else "not launchable")
    return 0 if health.is_launchable else 1


def run_import(args, store, broker) -> int:
    manager = InstanceManager.link_existing(args.bundle, store, broker)
    print(f"Tracking {manager.name} as {manager.record_id}")
    return 0


def run_relink(args, store, broker) -> int:
    manager = InstanceManager(store.read(args.instance_id), store, broker)
    manager.relink(args.bundle)
    print(f"Relinked {manager.name} to {manager.record.bundle_path}")
    return 0


def run_mark_started(args, store, broker) -> int:
    manager = InstanceManager(store.read(args.instance_id), store, broker)
    require_launchable(manager.resolve().layout)
    manager.mark_started()
    print(f"{manager.name} last ran {manager.record.last_ran_at.isoformat(timespec='seconds')}")
    return 0


def run_list(store, broker) -> int:
    for record in store.list():
        manager = InstanceManager(record, store, broker)
        manager.refresh_link_status()
        last_ran = record.last_ran_at.isoformat(timespec="seconds") if record.last_ran_at else "never"
        status = "" if record.is_linked else "  (unlinked)"
        print(f"{record.record_id}  {record.name:<20} {record.bundle_path}  last ran: {last_ran}{status}")
    return 0


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    store = JsonInstanceStore(args.store)
    broker = FileCapabilityBroker()

    try:
        if args.command == "provision":
            return asyncio.run(run_provision(args, store, broker))
        if args.command == "edit":
            return asyncio.run(run_edit(args, store, broker))
        if args.command == "show":
            return run_show(args)
        if args.command == "check":
            return run_check(args)
        if args.command == "import":
            return run_import(args, store, broker)
        if args.command == "relink":
            return run_relink(args, store, broker)
        if args.command == "mark-started":
            return run_mark_started(args, store, broker)
        return run_list(store, broker)
    except (ProvisionerError, ValueError, ImportError, AttributeError) as error:
        log.error(f"{args.command} failed: {error}")
        print(f"Error: {error}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
