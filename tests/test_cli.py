"""Tests for the agentvm CLI.

VmOrchestrator is replaced with a mock; these tests cover argument
parsing, rendering and the exit-code contract.
"""

import json
from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from agentvm import constants
from agentvm.cli import EXIT_CLI_ERROR, EXIT_OPERATION_ERROR, EXIT_SUCCESS, main
from agentvm.exceptions import InvalidStateError, VmNotFoundError
from agentvm.metadata import build_metadata
from agentvm.models import NetworkHealth, SshInfo, VmRecord, VmStats
from agentvm.vm_types import VmStatus


def record(name: str = "dev", status: VmStatus = VmStatus.RUNNING, error: str | None = None) -> VmRecord:
    return VmRecord(
        id="fc-0000abcd",
        name=name,
        status=status,
        ssh_port=10122,
        base_image=constants.DEFAULT_BASE_IMAGE,
        metadata=build_metadata(vm_id="fc-0000abcd", name=name, allocation=None, public_key=None),
        error=error,
    )


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def orchestrator() -> Iterator[MagicMock]:
    instance = MagicMock()
    instance.initialize = AsyncMock()
    instance.close = AsyncMock()
    with patch("agentvm.cli.VmOrchestrator", return_value=instance), patch("agentvm.cli.configure_logging"):
        yield instance


# ============================================================================
# Output
# ============================================================================


class TestOutput:
    def test_list_empty(self, runner: CliRunner, orchestrator: MagicMock) -> None:
        orchestrator.list_vms.return_value = []

        result = runner.invoke(main, ["list"])

        assert result.exit_code == EXIT_SUCCESS
        assert "No VMs" in result.output
        orchestrator.initialize.assert_awaited_once()
        orchestrator.close.assert_awaited_once()

    def test_list_json(self, runner: CliRunner, orchestrator: MagicMock) -> None:
        orchestrator.list_vms.return_value = [record()]

        result = runner.invoke(main, ["list", "--json"])

        assert result.exit_code == EXIT_SUCCESS
        data = json.loads(result.output)
        assert data[0]["name"] == "dev"
        assert data[0]["status"] == "running"

    def test_ssh_prints_command(self, runner: CliRunner, orchestrator: MagicMock) -> None:
        orchestrator.get_ssh_info.return_value = SshInfo(
            host="127.0.0.1", port=10122, user="agent", command="ssh -p 10122 agent@127.0.0.1"
        )

        result = runner.invoke(main, ["ssh", "dev"])

        assert result.output.strip() == "ssh -p 10122 agent@127.0.0.1"
        orchestrator.get_ssh_info.assert_called_once_with("dev")

    def test_stats(self, runner: CliRunner, orchestrator: MagicMock) -> None:
        orchestrator.get_stats.return_value = VmStats(total=2, running=1, stopped=1)

        result = runner.invoke(main, ["stats"])

        assert "total:2" in result.output
        assert "running:1" in result.output

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--version"])

        assert result.exit_code == EXIT_SUCCESS
        assert "agentvm" in result.output


# ============================================================================
# Commands
# ============================================================================


class TestCreate:
    def test_create_waits_for_boot(self, runner: CliRunner, orchestrator: MagicMock) -> None:
        orchestrator.create = AsyncMock(return_value=record(status=VmStatus.CREATING))
        orchestrator.wait_until_settled = AsyncMock(return_value=record())

        result = runner.invoke(main, ["create", "dev", "--vcpus", "2", "--memory", "2048"])

        assert result.exit_code == EXIT_SUCCESS
        assert "running" in result.output
        request = orchestrator.create.await_args.args[0]
        assert (request.name, request.vcpus, request.memory_mb, request.auto_start) == ("dev", 2, 2048, True)

    def test_create_no_start(self, runner: CliRunner, orchestrator: MagicMock) -> None:
        orchestrator.create = AsyncMock(return_value=record(status=VmStatus.STOPPED))
        orchestrator.wait_until_settled = AsyncMock()

        result = runner.invoke(main, ["create", "dev", "--no-start"])

        assert result.exit_code == EXIT_SUCCESS
        orchestrator.wait_until_settled.assert_not_awaited()

    def test_invalid_name_is_usage_error(self, runner: CliRunner, orchestrator: MagicMock) -> None:
        result = runner.invoke(main, ["create", "bad name"])

        assert result.exit_code == EXIT_CLI_ERROR
        orchestrator.initialize.assert_not_awaited()

    def test_boot_failure_exits_nonzero(self, runner: CliRunner, orchestrator: MagicMock) -> None:
        orchestrator.create = AsyncMock(return_value=record(status=VmStatus.CREATING))
        orchestrator.wait_until_settled = AsyncMock(
            return_value=record(status=VmStatus.ERROR, error="Failed to start (boot_source): no kernel")
        )

        result = runner.invoke(main, ["create", "dev"])

        assert result.exit_code == EXIT_OPERATION_ERROR
        assert "Failed to start (boot_source)" in result.output
        orchestrator.close.assert_awaited_once()


class TestErrors:
    def test_not_found_suggests_list(self, runner: CliRunner, orchestrator: MagicMock) -> None:
        orchestrator.stop = AsyncMock(side_effect=VmNotFoundError("VM ghost not found"))

        result = runner.invoke(main, ["stop", "ghost"])

        assert result.exit_code == EXIT_OPERATION_ERROR
        assert "VM ghost not found" in result.output
        assert "agentvm list" in result.output
        orchestrator.close.assert_awaited_once()

    def test_invalid_state(self, runner: CliRunner, orchestrator: MagicMock) -> None:
        orchestrator.pause = AsyncMock(side_effect=InvalidStateError("Cannot pause VM in status stopped"))

        result = runner.invoke(main, ["pause", "dev"])

        assert result.exit_code == EXIT_OPERATION_ERROR
        assert "(invalid_state)" in result.output

    def test_set_metadata_invalid_json(self, runner: CliRunner, orchestrator: MagicMock) -> None:
        result = runner.invoke(main, ["set-metadata", "dev", "-"], input="{not json")

        assert result.exit_code == EXIT_CLI_ERROR
        assert "Invalid JSON" in result.output

    def test_set_metadata_from_stdin(self, runner: CliRunner, orchestrator: MagicMock) -> None:
        orchestrator.set_metadata = AsyncMock(return_value=record())
        document = {"instance": {"id": "fc-0000abcd", "name": "dev", "hostname": "dev"}}

        result = runner.invoke(main, ["set-metadata", "dev", "-"], input=json.dumps(document))

        assert result.exit_code == EXIT_SUCCESS
        orchestrator.set_metadata.assert_awaited_once_with("dev", document)


class TestNetwork:
    def test_active_mode_health(self, runner: CliRunner, orchestrator: MagicMock) -> None:
        orchestrator.network_health = AsyncMock(
            return_value=NetworkHealth(mode="pool", configured=True, bridge_exists=True, message="Network ready")
        )
        orchestrator.network_helper_status = AsyncMock()

        result = runner.invoke(main, ["network", "--json"])

        assert result.exit_code == EXIT_SUCCESS
        assert json.loads(result.output)["mode"] == "pool"
        orchestrator.network_helper_status.assert_not_awaited()

    def test_helper_diagnostics(self, runner: CliRunner, orchestrator: MagicMock) -> None:
        orchestrator.network_helper_status = AsyncMock(
            return_value=NetworkHealth(
                mode="helper", configured=False, bridge_exists=True, message="TAP helper missing CAP_NET_ADMIN"
            )
        )

        result = runner.invoke(main, ["network", "--helper", "--json"])

        assert result.exit_code == EXIT_SUCCESS
        data = json.loads(result.output)
        assert data["mode"] == "helper"
        assert data["message"] == "TAP helper missing CAP_NET_ADMIN"

    def test_helper_with_vm_is_usage_error(self, runner: CliRunner, orchestrator: MagicMock) -> None:
        result = runner.invoke(main, ["network", "dev", "--helper"])

        assert result.exit_code == EXIT_CLI_ERROR
        orchestrator.initialize.assert_not_awaited()
