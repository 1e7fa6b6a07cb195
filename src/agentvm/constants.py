"""Constants for agentvm protocol details, timeouts and defaults."""

from typing import Final

# ============================================================================
# Hypervisor / Guest Defaults
# ============================================================================

DEFAULT_BOOT_ARGS: Final[str] = "console=ttyS0 reboot=k panic=1 pci=off init=/sbin/init"
"""Kernel command line for cold boots."""

DEFAULT_VCPUS: Final[int] = 1
"""Default vCPU count for new VMs."""

DEFAULT_MEMORY_MB: Final[int] = 1024
"""Default guest memory in MiB."""

DEFAULT_DISK_GB: Final[int] = 5
"""Default disk size in GiB (informational, the disk is a copy of the base rootfs)."""

DEFAULT_BASE_IMAGE: Final[str] = "ubuntu-minimal-24.04"
"""Base image used when a create request does not name one."""

SSH_PORT_RANGE_START: Final[int] = 10122
"""First host SSH port handed out (inclusive)."""

SSH_PORT_RANGE_END: Final[int] = 10222
"""Last host SSH port handed out (inclusive)."""

GUEST_SSH_USER: Final[str] = "agent"
"""Login user baked into base images."""

GUEST_SSH_PORT: Final[int] = 22
"""sshd port inside the guest (used when the VM has a routed TAP address)."""

# ============================================================================
# Metadata Service
# ============================================================================

MMDS_IPV4_ADDRESS: Final[str] = "169.254.169.254"
"""Link-local address the guest queries for its identity."""

MMDS_VERSION: Final[str] = "V2"
"""Token-based metadata service protocol version."""

GUEST_INTERFACE: Final[str] = "eth0"
"""Guest network interface id (also the control-protocol iface_id)."""

PLACEHOLDER_IPV4: Final[str] = "0.0.0.0"
"""Address/gateway advertised to a guest that has no network identity."""

DEFAULT_NETMASK: Final[str] = "255.255.255.0"
"""Netmask of the bridged /24."""

DEFAULT_DNS_SERVERS: Final[tuple[str, ...]] = ("8.8.8.8", "8.8.4.4")
"""Resolvers advertised through the metadata document."""

# ============================================================================
# Network Defaults
# ============================================================================

DEFAULT_BRIDGE_NAME: Final[str] = "agentc-br0"
"""Host bridge every TAP is enslaved to."""

DEFAULT_GATEWAY: Final[str] = "172.31.0.1"
"""Bridge address, the guests' default route."""

DEFAULT_SUBNET_PREFIX: Final[str] = "172.31.0"
"""First three octets of the guest /24."""

FIRST_GUEST_SUFFIX: Final[int] = 2
"""First guest address suffix (.1 is the gateway)."""

LAST_GUEST_SUFFIX: Final[int] = 254
"""Last guest address suffix (.255 is broadcast)."""

GUEST_MAC_PREFIX: Final[str] = "52:54:00:01"
"""Locally administered OUI + prefix for helper-mode MACs; last two bytes encode the IP suffix."""

TAP_NAME_PREFIX: Final[str] = "tap-"
"""Helper-mode TAP names are ``tap-`` + first 8 alphanumerics of the VM id."""

TAP_NAME_ID_CHARS: Final[int] = 8
"""Number of VM-id characters kept in a TAP name (IFNAMSIZ is 16)."""

NETWORK_POOL_FILE: Final[str] = "network.json"
"""Pool configuration file name under the data directory."""

SYS_CLASS_NET: Final[str] = "/sys/class/net"
"""sysfs directory listing host network devices."""

DEFAULT_TAP_HELPER_PATHS: Final[tuple[str, ...]] = (
    "/usr/local/bin/agentc-tap-helper",
    "/usr/local/lib/agentcontainers/agentc-tap-helper",
)
"""Search order for the privilege-separated TAP helper."""

TAP_HELPER_TIMEOUT_SECONDS: Final[float] = 15.0
"""Upper bound on a single helper invocation."""

# ============================================================================
# Timeouts
# ============================================================================

CONTROL_CHANNEL_TIMEOUT_SECONDS: Final[float] = 10.0
"""Upper bound on a single control-socket request/response."""

SOCKET_POLL_INTERVAL_SECONDS: Final[float] = 0.05
"""Poll interval while waiting for the control socket to appear."""

BOOT_SOCKET_TIMEOUT_SECONDS: Final[float] = 10.0
"""Ceiling on control socket appearance after a cold launch."""

RESTORE_SOCKET_TIMEOUT_SECONDS: Final[float] = 5.0
"""Ceiling on control socket appearance when restoring."""

SSH_READY_TIMEOUT_SECONDS: Final[float] = 120.0
"""Ceiling on guest SSH reachability after a cold boot."""

SSH_RESTORE_READY_TIMEOUT_SECONDS: Final[float] = 30.0
"""Ceiling on guest SSH reachability after a warm restore."""

SSH_RETRY_INTERVAL_SECONDS: Final[float] = 2.0
"""Delay between SSH readiness probes."""

SSH_PROBE_CONNECT_TIMEOUT_SECONDS: Final[int] = 5
"""ssh -o ConnectTimeout for a single probe."""

GUEST_SHUTDOWN_GRACE_SECONDS: Final[float] = 3.0
"""Wait after Ctrl+Alt+Del before signalling the process."""

TERM_TIMEOUT_SECONDS: Final[float] = 3.0
"""Wait after SIGTERM before SIGKILL."""

KILL_TIMEOUT_SECONDS: Final[float] = 2.0
"""Wait after SIGKILL before giving up."""

SHUTDOWN_TASK_GRACE_SECONDS: Final[float] = 5.0
"""How long shutdown() waits for background boot tasks before cancelling them."""

# ============================================================================
# On-disk Layout
# ============================================================================

STATE_FILE: Final[str] = "state.json"
CONTROL_SOCKET_FILE: Final[str] = "api.sock"
HYPERVISOR_LOG_FILE: Final[str] = "firecracker.log"
ROOTFS_FILE: Final[str] = "rootfs.ext4"
ALTERNATE_IMAGE_FILE: Final[str] = "image.qcow2"
KERNEL_FILE: Final[str] = "vmlinux"
SNAPSHOTS_DIR: Final[str] = "snapshots"
SNAPSHOT_STATE_FILE: Final[str] = "snapshot.bin"
SNAPSHOT_MEMORY_FILE: Final[str] = "mem.bin"
SNAPSHOT_METADATA_FILE: Final[str] = "metadata.json"
SSH_KEY_NAME: Final[str] = "id_ed25519"
