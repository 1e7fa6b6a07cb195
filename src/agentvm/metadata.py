"""Builds the identity document pushed to the guest's metadata service."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Any

from agentvm import constants
from agentvm.models import (
    InstanceIdentity,
    InterfaceConfig,
    Ipv4Config,
    MetadataDocument,
    NetworkDocument,
    SshDocument,
)

if TYPE_CHECKING:
    from agentvm.models import TapAllocation


def random_mac() -> str:
    """Locally administered unicast MAC for VMs without a TAP."""
    tail = ":".join(f"{b:02x}" for b in secrets.token_bytes(3))
    return f"{constants.GUEST_MAC_PREFIX[:8]}:{tail}"


def build_metadata(
    *,
    vm_id: str,
    name: str,
    allocation: TapAllocation | None,
    public_key: str | None,
    dns_servers: list[str] | None = None,
    netmask: str = constants.DEFAULT_NETMASK,
    user_data: dict[str, Any] | None = None,
    mac_address: str | None = None,
) -> MetadataDocument:
    """Identity for a new (or re-identified) VM.

    Without an allocation the interface carries placeholder addresses so
    the guest's configure script sees a well-formed but inert document.
    """
    if allocation is not None:
        interface = InterfaceConfig(
            mac=allocation.mac_address,
            ipv4=Ipv4Config(address=allocation.guest_ip, netmask=netmask, gateway=allocation.gateway),
        )
    else:
        interface = InterfaceConfig(
            mac=mac_address or random_mac(),
            ipv4=Ipv4Config(
                address=constants.PLACEHOLDER_IPV4,
                netmask=netmask,
                gateway=constants.PLACEHOLDER_IPV4,
            ),
        )
    return MetadataDocument(
        instance=InstanceIdentity(id=vm_id, name=name, hostname=name),
        network=NetworkDocument(
            interfaces={constants.GUEST_INTERFACE: interface},
            dns=list(dns_servers) if dns_servers is not None else list(constants.DEFAULT_DNS_SERVERS),
        ),
        ssh=SshDocument(authorized_keys=[public_key] if public_key else []),
        user_data=user_data,
    )
