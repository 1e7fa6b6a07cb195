"""Command-line interface for agentvm.

Usage:
    agentvm create dev                      # Create and boot a VM
    agentvm list                            # Show all VMs
    agentvm snapshot dev --name golden      # Snapshot a running VM
    agentvm restore <snapshot-dir> clone-1  # Clone it with a new identity
    agentvm ssh dev                         # Print the ssh command
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, NoReturn

import click
from pydantic import BaseModel, ValidationError

from agentvm import AgentVmError, VmCreateRequest, VmOrchestrator, __version__
from agentvm._logging import configure_logging

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

# Exit codes
EXIT_SUCCESS = 0
EXIT_OPERATION_ERROR = 1
EXIT_CLI_ERROR = 2

# Upper bound for waiting on a background boot/restore before the CLI exits
SETTLE_TIMEOUT_SECONDS = 180.0


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def _suggestions_for(error: AgentVmError) -> list[str]:
    match error.kind:
        case "not_found":
            return ["List VMs with: agentvm list"]
        case "image_not_found":
            return ["Check available images with: agentvm images"]
        case "invalid_state":
            return ["Check the VM's status with: agentvm list"]
        case "process_error":
            return ["Check that firecracker is installed (AGENTVM_FIRECRACKER_BIN)", "Check that /dev/kvm is accessible"]
        case _:
            return []


def to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [to_jsonable(item) for item in value]
    return value


def echo_result(value: Any, json_output: bool, render: Callable[[Any], str] | None = None) -> None:
    if json_output or render is None:
        click.echo(json.dumps(to_jsonable(value), indent=2))
    else:
        click.echo(render(value))


def render_vm(vm: Any) -> str:
    line = f"{vm.id}  {vm.name:<20} {vm.status.value:<9} ssh:{vm.ssh_port}"
    if vm.network.guest_ip:
        line += f"  ip:{vm.network.guest_ip}"
    if vm.error:
        line += "  " + click.style(vm.error, fg="red")
    return line


def render_vms(vms: list[Any]) -> str:
    if not vms:
        return "No VMs"
    return "\n".join(render_vm(vm) for vm in vms)


def render_snapshots(snapshots: list[Any]) -> str:
    if not snapshots:
        return "No snapshots"
    return "\n".join(
        f"{s.id}  {s.name or '-':<16} {s.size_bytes // (1024 * 1024)} MiB  {s.directory}" for s in snapshots
    )


def run_with_orchestrator(
    operation: Callable[[VmOrchestrator], Awaitable[Any]],
    *,
    json_output: bool,
    render: Callable[[Any], str] | None = None,
) -> NoReturn:
    """Initialize an orchestrator, run *operation*, print its result and exit.

    Hypervisors launched by the command are detached and keep running after
    the CLI exits.
    """

    async def _run() -> int:
        orchestrator = VmOrchestrator()
        try:
            await orchestrator.initialize()
            result = await operation(orchestrator)
        except AgentVmError as e:
            click.echo(format_error(e.message, f"({e.kind})", _suggestions_for(e)), err=True)
            return EXIT_OPERATION_ERROR
        except TimeoutError as e:
            click.echo(format_error("Timed out", str(e)), err=True)
            return EXIT_OPERATION_ERROR
        finally:
            await orchestrator.close()

        if result is not None:
            echo_result(result, json_output, render)
        return EXIT_SUCCESS

    sys.exit(asyncio.run(_run()))


async def settle(orchestrator: VmOrchestrator, vm_id: str) -> Any:
    vm = await orchestrator.wait_until_settled(vm_id, timeout=SETTLE_TIMEOUT_SECONDS)
    if vm.error:
        raise click.ClickException(f"VM {vm.name} failed: {vm.error}")
    return vm


json_option = click.option("--json", "json_output", is_flag=True, help="Output as JSON")


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.option("-q", "--quiet", is_flag=True, help="Errors only")
@click.version_option(__version__, "-V", "--version", prog_name="agentvm")
def main(verbose: bool, quiet: bool) -> None:
    """Manage Firecracker microVMs on this host."""
    configure_logging(level="DEBUG" if verbose else None, quiet=quiet)


@main.command("list")
@json_option
def list_command(json_output: bool) -> None:
    """List all VMs."""

    async def op(o: VmOrchestrator) -> Any:
        return o.list_vms()

    run_with_orchestrator(op, json_output=json_output, render=render_vms)


@main.command()
@click.argument("name")
@click.option("--image", "base_image", help="Base image name")
@click.option("--vcpus", type=int, help="Virtual CPUs")
@click.option("--memory", "memory_mb", type=int, help="Memory in MiB")
@click.option("--disk", "disk_gb", type=int, help="Disk size in GiB")
@click.option("--no-start", is_flag=True, help="Create without booting")
@json_option
def create(
    name: str,
    base_image: str | None,
    vcpus: int | None,
    memory_mb: int | None,
    disk_gb: int | None,
    no_start: bool,
    json_output: bool,
) -> None:
    """Create (and by default boot) a VM."""
    try:
        request = VmCreateRequest(
            name=name,
            base_image=base_image,
            vcpus=vcpus,
            memory_mb=memory_mb,
            disk_gb=disk_gb,
            auto_start=not no_start,
        )
    except ValidationError as exc:
        raise click.UsageError(str(exc)) from exc

    async def op(o: VmOrchestrator) -> Any:
        vm = await o.create(request)
        return await settle(o, vm.id) if request.auto_start else vm

    run_with_orchestrator(op, json_output=json_output, render=render_vm)


@main.command()
@click.argument("vm")
@json_option
def start(vm: str, json_output: bool) -> None:
    """Boot a stopped VM."""

    async def op(o: VmOrchestrator) -> Any:
        record = await o.start(vm)
        return await settle(o, record.id)

    run_with_orchestrator(op, json_output=json_output, render=render_vm)


@main.command()
@click.argument("vm")
@json_option
def stop(vm: str, json_output: bool) -> None:
    """Shut a VM down."""

    async def op(o: VmOrchestrator) -> Any:
        return await o.stop(vm)

    run_with_orchestrator(op, json_output=json_output, render=render_vm)


@main.command()
@click.argument("vm")
def delete(vm: str) -> None:
    """Stop a VM and remove its files."""

    async def op(o: VmOrchestrator) -> Any:
        await o.delete(vm)
        click.echo(f"Deleted {vm}")

    run_with_orchestrator(op, json_output=False)


@main.command()
@click.argument("vm")
@json_option
def pause(vm: str, json_output: bool) -> None:
    """Pause a running VM."""

    async def op(o: VmOrchestrator) -> Any:
        return await o.pause(vm)

    run_with_orchestrator(op, json_output=json_output, render=render_vm)


@main.command()
@click.argument("vm")
@json_option
def resume(vm: str, json_output: bool) -> None:
    """Resume a paused VM."""

    async def op(o: VmOrchestrator) -> Any:
        return await o.resume(vm)

    run_with_orchestrator(op, json_output=json_output, render=render_vm)


@main.command()
@click.argument("vm")
@click.option("--name", help="Label for the snapshot")
@json_option
def snapshot(vm: str, name: str | None, json_output: bool) -> None:
    """Take a full snapshot of a running or paused VM."""

    async def op(o: VmOrchestrator) -> Any:
        return await o.create_snapshot(vm, name)

    run_with_orchestrator(op, json_output=json_output, render=lambda s: render_snapshots([s]))


@main.command()
@click.argument("vm")
@json_option
def snapshots(vm: str, json_output: bool) -> None:
    """List a VM's snapshots, newest first."""

    async def op(o: VmOrchestrator) -> Any:
        return await o.list_snapshots(vm)

    run_with_orchestrator(op, json_output=json_output, render=render_snapshots)


@main.command()
@click.argument("snapshot_dir", type=click.Path(path_type=Path))
@click.argument("name")
@click.option("--id", "vm_id", help="Explicit id for the new VM")
@json_option
def restore(snapshot_dir: Path, name: str, vm_id: str | None, json_output: bool) -> None:
    """Clone a snapshot into a new VM with a fresh identity."""

    async def op(o: VmOrchestrator) -> Any:
        record = await o.restore_from_snapshot(snapshot_dir, name=name, vm_id=vm_id)
        return await settle(o, record.id)

    run_with_orchestrator(op, json_output=json_output, render=render_vm)


@main.command()
@click.argument("vm")
@json_option
def ssh(vm: str, json_output: bool) -> None:
    """Print how to SSH into a VM."""

    async def op(o: VmOrchestrator) -> Any:
        return o.get_ssh_info(vm)

    run_with_orchestrator(op, json_output=json_output, render=lambda info: info.command)


@main.command("set-metadata")
@click.argument("vm")
@click.argument("document", type=click.File("r"))
@json_option
def set_metadata(vm: str, document: Any, json_output: bool) -> None:
    """Replace the metadata document served to a VM (JSON file, - for stdin)."""
    try:
        payload = json.load(document)
    except json.JSONDecodeError as exc:
        raise click.UsageError(f"Invalid JSON: {exc}") from exc

    async def op(o: VmOrchestrator) -> Any:
        return await o.set_metadata(vm, payload)

    run_with_orchestrator(op, json_output=json_output, render=render_vm)


@main.command()
@click.argument("vm", required=False)
@click.option("--helper", "helper", is_flag=True, help="Show TAP helper diagnostics instead of the active mode.")
@json_option
def network(vm: str | None, helper: bool, json_output: bool) -> None:
    """Show host network health, or one VM's network status."""
    if vm is not None and helper:
        raise click.UsageError("--helper takes no VM argument")

    async def op(o: VmOrchestrator) -> Any:
        if vm is not None:
            return o.get_network_status(vm)
        if helper:
            return await o.network_helper_status()
        return await o.network_health()

    run_with_orchestrator(op, json_output=json_output)


@main.command()
@json_option
def stats(json_output: bool) -> None:
    """Count VMs by status."""

    async def op(o: VmOrchestrator) -> Any:
        return o.get_stats()

    def render(s: Any) -> str:
        return "  ".join(f"{k}:{v}" for k, v in s.model_dump().items())

    run_with_orchestrator(op, json_output=json_output, render=render)


@main.command()
@json_option
def images(json_output: bool) -> None:
    """List base images."""

    async def op(o: VmOrchestrator) -> Any:
        return await o.list_base_images()

    def render(items: list[Any]) -> str:
        if not items:
            return "No base images"
        return "\n".join(f"{i.name:<20} {'ready' if i.ready else 'incomplete'}  {i.path}" for i in items)

    run_with_orchestrator(op, json_output=json_output, render=render)


if __name__ == "__main__":
    main()
