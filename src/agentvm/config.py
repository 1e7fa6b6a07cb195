"""Orchestrator configuration for agentvm.

OrchestratorConfig holds the tunables of VmOrchestrator: the SSH port
range, resource defaults for new VMs and every bounded wait.  Host paths
and binaries come from :class:`agentvm.settings.Settings` instead.

Example:
    ```python
    from agentvm import OrchestratorConfig, VmOrchestrator

    config = OrchestratorConfig(ssh_port_range_start=20000, ssh_port_range_end=20099)
    async with VmOrchestrator(config=config) as orchestrator:
        vm = await orchestrator.create(VmCreateRequest(name="dev"))
    ```
"""

from __future__ import annotations

from typing import Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from agentvm import constants


class OrchestratorConfig(BaseModel):
    """Configuration for VmOrchestrator.

    Attributes:
        ssh_port_range_start: First host SSH port (inclusive). Default: 10122.
        ssh_port_range_end: Last host SSH port (inclusive). Default: 10222.
        default_vcpus: vCPUs for requests that omit them. Range: 1-32.
        default_memory_mb: Guest memory for requests that omit it. Range: 128-65536.
        default_disk_gb: Disk size for requests that omit it. Range: 1-1000.
        default_base_image: Base image for requests that omit it.
        boot_args: Kernel command line for cold boots.
        control_timeout_seconds: Ceiling on one control-socket call.
        boot_socket_timeout_seconds: Ceiling on socket appearance after launch.
        restore_socket_timeout_seconds: Ceiling on socket appearance on restore.
        boot_ready_timeout_seconds: Ceiling on guest SSH readiness after boot.
        restore_ready_timeout_seconds: Ceiling on guest SSH readiness after restore.
        ssh_retry_interval_seconds: Delay between readiness probes.
        guest_shutdown_grace_seconds: Wait after the guest shutdown request in stop().
        term_timeout_seconds: Wait after SIGTERM before SIGKILL.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    # Host SSH port range
    ssh_port_range_start: int = Field(
        default=constants.SSH_PORT_RANGE_START,
        ge=1,
        le=65535,
        description="First host SSH port (inclusive)",
    )
    ssh_port_range_end: int = Field(
        default=constants.SSH_PORT_RANGE_END,
        ge=1,
        le=65535,
        description="Last host SSH port (inclusive)",
    )

    # Defaults for create()
    default_vcpus: int = Field(default=constants.DEFAULT_VCPUS, ge=1, le=32)
    default_memory_mb: int = Field(default=constants.DEFAULT_MEMORY_MB, ge=128, le=65536)
    default_disk_gb: int = Field(default=constants.DEFAULT_DISK_GB, ge=1, le=1000)
    default_base_image: str = Field(default=constants.DEFAULT_BASE_IMAGE, min_length=1)
    boot_args: str = constants.DEFAULT_BOOT_ARGS

    # Bounded waits
    control_timeout_seconds: float = Field(default=constants.CONTROL_CHANNEL_TIMEOUT_SECONDS, gt=0, le=120)
    boot_socket_timeout_seconds: float = Field(default=constants.BOOT_SOCKET_TIMEOUT_SECONDS, gt=0, le=120)
    restore_socket_timeout_seconds: float = Field(default=constants.RESTORE_SOCKET_TIMEOUT_SECONDS, gt=0, le=120)
    boot_ready_timeout_seconds: float = Field(default=constants.SSH_READY_TIMEOUT_SECONDS, gt=0, le=1800)
    restore_ready_timeout_seconds: float = Field(
        default=constants.SSH_RESTORE_READY_TIMEOUT_SECONDS,
        gt=0,
        le=1800,
    )
    ssh_retry_interval_seconds: float = Field(default=constants.SSH_RETRY_INTERVAL_SECONDS, gt=0, le=60)
    guest_shutdown_grace_seconds: float = Field(default=constants.GUEST_SHUTDOWN_GRACE_SECONDS, ge=0, le=60)
    term_timeout_seconds: float = Field(default=constants.TERM_TIMEOUT_SECONDS, gt=0, le=60)

    @model_validator(mode="after")
    def _check_port_range(self) -> Self:
        if self.ssh_port_range_start > self.ssh_port_range_end:
            raise ValueError(
                f"ssh_port_range_start ({self.ssh_port_range_start}) must not exceed "
                f"ssh_port_range_end ({self.ssh_port_range_end})"
            )
        return self
