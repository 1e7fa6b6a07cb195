"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from agentvm import constants
from agentvm.platform_utils import get_data_dir


class Settings(BaseSettings):
    """Host paths, binaries and network layout.

    All settings can be overridden via environment variables with the AGENTVM_ prefix.
    Example: AGENTVM_FIRECRACKER_BIN=/opt/firecracker/bin/firecracker
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTVM_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Storage
    data_dir: Path = Field(default_factory=lambda: get_data_dir() / "firecracker-vms")
    base_images_dir: Path = Field(default_factory=lambda: get_data_dir() / "base-images")
    ssh_keys_dir: Path = Field(default_factory=lambda: get_data_dir() / "ssh-keys")

    # Binaries
    firecracker_bin: Path = Path("/usr/local/bin/firecracker")
    qemu_img_bin: str = "qemu-img"
    ssh_bin: str = "ssh"
    ssh_keygen_bin: str = "ssh-keygen"
    launch_group: str | None = None
    """Run the hypervisor via ``sg <group> -c`` (e.g. "kvm") when the
    orchestrator user is not itself in the group owning /dev/kvm."""

    # Guest access
    ssh_user: str = constants.GUEST_SSH_USER

    # Network
    tap_helper_paths: list[Path] = Field(
        default_factory=lambda: [Path(p) for p in constants.DEFAULT_TAP_HELPER_PATHS],
    )
    bridge_name: str = constants.DEFAULT_BRIDGE_NAME
    gateway: str = constants.DEFAULT_GATEWAY
    subnet_prefix: str = constants.DEFAULT_SUBNET_PREFIX
    netmask: str = constants.DEFAULT_NETMASK
    dns_servers: list[str] = Field(default_factory=lambda: list(constants.DEFAULT_DNS_SERVERS))
    network_pool_file: str = constants.NETWORK_POOL_FILE
    sys_class_net: Path = Path(constants.SYS_CLASS_NET)

    @property
    def network_pool_path(self) -> Path:
        """Location of the pool configuration file."""
        return self.data_dir / self.network_pool_file

    @property
    def ssh_private_key(self) -> Path:
        return self.ssh_keys_dir / constants.SSH_KEY_NAME

    @property
    def ssh_public_key(self) -> Path:
        return self.ssh_keys_dir / f"{constants.SSH_KEY_NAME}.pub"
