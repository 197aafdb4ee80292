import argparse
import json
import logging
import signal
import threading

from provisioner.clients.prlctl import HypervisorCommandFailure, PrlctlClient
from provisioner.cloud_init import discover_ssh_public_keys, with_default_cloud_init
from provisioner.config import Settings, get_settings
from provisioner.errors import ConfigurationError, ProvisionerError
from provisioner.logging_config import configure_logging
from provisioner.metrics import metrics
from provisioner.models import SUCCESSFUL_OUTCOMES
from provisioner.schemas import VmSpec, load_fleet
from provisioner.services import templates
from provisioner.services.cleanup import cleanup_orphan_media
from provisioner.services.fleet import FleetScheduler
from provisioner.services.lifecycle import VmLifecycle
from provisioner.services.status import collect_status, vm_details


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def build_client(settings: Settings, cancel_event: threading.Event):
    if settings.dry_run:
        from fake_hypervisor.hypervisor import FakeHypervisor

        logger.info("dry run: using in-memory hypervisor")
        return FakeHypervisor()
    return PrlctlClient(
        binary=settings.prlctl_binary,
        timeout_sec=settings.command_timeout_sec,
        cancel_event=cancel_event,
    )


def install_signal_handlers(cancel_event: threading.Event) -> None:
    def _request_cancel(signum, frame):
        logger.warning("signal %s received, cancelling in-flight work", signum)
        cancel_event.set()

    signal.signal(signal.SIGINT, _request_cancel)
    signal.signal(signal.SIGTERM, _request_cancel)


def select_vms(specs: list[VmSpec], only: list[str] | None) -> list[VmSpec]:
    if not only:
        return specs
    wanted = set(only)
    unknown = wanted - {spec.name for spec in specs}
    if unknown:
        raise ConfigurationError(f"unknown vm names: {', '.join(sorted(unknown))}")
    selected = []
    for spec in specs:
        if spec.name not in wanted:
            continue
        dropped = spec.start_after - wanted
        if dropped:
            logger.info(
                "ignoring start_after outside selection name=%s deps=%s",
                spec.name,
                ",".join(sorted(dropped)),
            )
            spec = spec.model_copy(update={"start_after": spec.start_after & wanted})
        selected.append(spec)
    return selected


def cmd_up(args, settings: Settings, client, cancel_event: threading.Event) -> int:
    specs = select_vms(load_fleet(args.fleet), args.only)
    ssh_keys = discover_ssh_public_keys(settings.ssh_dir)
    specs = [with_default_cloud_init(spec, ssh_keys) for spec in specs]
    settings.ensure_dirs()

    lifecycle = VmLifecycle(client, settings, cancel_event=cancel_event)
    scheduler = FleetScheduler(
        lifecycle, max_concurrency=settings.max_concurrency, cancel_event=cancel_event
    )
    results = scheduler.run(specs)
    print(
        json.dumps(
            {name: result.model_dump(mode="json") for name, result in results.items()},
            indent=2,
            sort_keys=True,
        )
    )
    logger.info("run counters %s", metrics.render() or "-")
    if all(result.outcome in SUCCESSFUL_OUTCOMES for result in results.values()):
        return EXIT_OK
    return EXIT_FAILED


def cmd_down(args, settings: Settings, client, cancel_event: threading.Event) -> int:
    specs = select_vms(load_fleet(args.fleet), args.only)
    lifecycle = VmLifecycle(client, settings, cancel_event=cancel_event)
    scheduler = FleetScheduler(lifecycle, cancel_event=cancel_event)
    errors = scheduler.teardown(specs)
    failed = {name: error for name, error in errors.items() if error}
    for name, error in sorted(failed.items()):
        print(f"{name}: teardown failed: {error}")
    return EXIT_FAILED if failed else EXIT_OK


def _print_details(details: dict) -> None:
    print(f"{details['name']}:")
    print(f"  UUID:     {details['uuid'] or '-'}")
    print(f"  Status:   {details['status']}")
    print(f"  CPUs:     {details['cpus'] or '-'}")
    print(f"  Memory:   {details['memory_mib'] or '-'} MiB")
    for disk in details["disks"]:
        print(f"  Disk:     {disk['device']} {disk['size_mib'] or '-'} MiB")
    for nic in details["interfaces"]:
        print(f"  Network:  {nic['device']} {nic['type'] or '-'} {nic['mac'] or '-'}")


def _render_status(args, client) -> None:
    if args.name:
        details = vm_details(client, args.name)
        if args.json:
            print(json.dumps(details, indent=2))
        else:
            _print_details(details)
        return
    rows = collect_status(client)
    if args.verbose:
        for row in rows:
            row["details"] = vm_details(client, row["name"])
    if args.json:
        print(json.dumps(rows, indent=2))
        return
    if not rows:
        print("No VMs found")
        return
    print(f"{'VM Name':<30} {'Status':<10} {'IP Address':<15} UUID")
    for row in rows:
        print(
            f"{row['name']:<30} {row['status']:<10} {row['ip'] or '-':<15} {row['uuid'] or '-'}"
        )
    running = sum(1 for row in rows if row["status"] == "RUNNING")
    print(f"\nTotal VMs: {len(rows)} (Running: {running})")
    if args.verbose:
        for row in rows:
            print()
            _print_details(row["details"])


def cmd_status(args, settings: Settings, client, cancel_event: threading.Event) -> int:
    while True:
        _render_status(args, client)
        if not args.watch or cancel_event.wait(args.interval):
            return EXIT_OK
        print()


def cmd_cleanup(args, settings: Settings, client, cancel_event: threading.Event) -> int:
    removed = cleanup_orphan_media(client, settings)
    print(json.dumps(removed, indent=2, sort_keys=True))
    return EXIT_OK


def cmd_templates(args, settings: Settings, client, cancel_event: threading.Event) -> int:
    action = args.template_action
    if action == "list":
        print(json.dumps(templates.list_templates(client), indent=2))
    elif action == "info":
        print(json.dumps(templates.template_info(client, args.template), indent=2))
    elif action == "create":
        templates.convert_to_template(client, args.vm)
    elif action == "release":
        templates.convert_from_template(client, args.template)
    elif action == "export":
        templates.export_template(client, args.template, args.output)
    elif action == "import":
        name = templates.import_template(client, args.pvm, name=args.name)
        print(name)
    elif action == "delete":
        templates.delete_template(client, args.template)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="provisioner", description="Provision Parallels VM fleets with prlctl"
    )
    parser.add_argument("--dry-run", action="store_true", help="Use the in-memory hypervisor")
    parser.add_argument("--log-level", default=None, help="Override PROVISIONER_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    up = sub.add_parser("up", help="Create and start every VM in a fleet file")
    up.add_argument("fleet", help="Path to the fleet JSON file")
    up.add_argument("--only", action="append", help="Limit to the named VM (repeatable)")
    up.set_defaults(handler=cmd_up)

    down = sub.add_parser("down", help="Stop and delete every VM in a fleet file")
    down.add_argument("fleet", help="Path to the fleet JSON file")
    down.add_argument("--only", action="append", help="Limit to the named VM (repeatable)")
    down.set_defaults(handler=cmd_down)

    status = sub.add_parser("status", help="Show status of all VMs")
    status.add_argument("name", nargs="?", default=None, help="Show details for one VM")
    status.add_argument("--json", action="store_true", help="Emit JSON")
    status.add_argument("--verbose", action="store_true", help="Include per-VM details")
    status.add_argument("--watch", action="store_true", help="Refresh until interrupted")
    status.add_argument(
        "--interval", type=float, default=5.0, help="Seconds between refreshes with --watch"
    )
    status.set_defaults(handler=cmd_status)

    cleanup = sub.add_parser("cleanup", help="Remove seed media of VMs that no longer exist")
    cleanup.set_defaults(handler=cmd_cleanup)

    tmpl = sub.add_parser("templates", help="Manage VM templates")
    tmpl_sub = tmpl.add_subparsers(dest="template_action", required=True)
    tmpl_sub.add_parser("list", help="List templates")
    info = tmpl_sub.add_parser("info", help="Show details of a template")
    info.add_argument("template")
    create = tmpl_sub.add_parser("create", help="Convert a VM into a template")
    create.add_argument("vm")
    release = tmpl_sub.add_parser("release", help="Convert a template back into a VM")
    release.add_argument("template")
    export = tmpl_sub.add_parser("export", help="Export a template to a .pvm bundle")
    export.add_argument("template")
    export.add_argument("output")
    imp = tmpl_sub.add_parser("import", help="Register a .pvm bundle as a template")
    imp.add_argument("pvm")
    imp.add_argument("--name", default=None)
    delete = tmpl_sub.add_parser("delete", help="Delete a template")
    delete.add_argument("template")
    tmpl.set_defaults(handler=cmd_templates)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = get_settings()
    except ValueError as exc:
        logger.error("configuration error: %s", exc)
        return EXIT_CONFIG
    if args.dry_run:
        settings = settings.model_copy(update={"dry_run": True})
    configure_logging(args.log_level)

    cancel_event = threading.Event()
    install_signal_handlers(cancel_event)
    client = build_client(settings, cancel_event)
    try:
        return args.handler(args, settings, client, cancel_event)
    except ConfigurationError as exc:
        logger.error("configuration error: %s", exc)
        return EXIT_CONFIG
    except (ProvisionerError, HypervisorCommandFailure) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return EXIT_FAILED
