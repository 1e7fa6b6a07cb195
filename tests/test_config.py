"""Unit tests for OrchestratorConfig, Settings and request/record models.

No mocks - uses real pydantic validation and environment variables.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from agentvm import constants
from agentvm.config import OrchestratorConfig
from agentvm.metadata import build_metadata, random_mac
from agentvm.models import MetadataDocument, NetworkPoolConfig, TapAllocation, VmCreateRequest
from agentvm.platform_utils import get_data_dir
from agentvm.settings import Settings

# ============================================================================
# OrchestratorConfig
# ============================================================================


class TestOrchestratorConfig:
    def test_defaults(self) -> None:
        config = OrchestratorConfig()
        assert config.ssh_port_range_start == 10122
        assert config.ssh_port_range_end == 10222
        assert config.default_vcpus == 1
        assert config.default_memory_mb == 1024
        assert config.boot_ready_timeout_seconds == 120
        assert config.ssh_retry_interval_seconds == 2
        assert "console=ttyS0" in config.boot_args

    def test_port_range_order(self) -> None:
        with pytest.raises(ValidationError, match="must not exceed"):
            OrchestratorConfig(ssh_port_range_start=2000, ssh_port_range_end=1999)

    def test_single_port_range_allowed(self) -> None:
        config = OrchestratorConfig(ssh_port_range_start=2000, ssh_port_range_end=2000)
        assert config.ssh_port_range_start == config.ssh_port_range_end

    def test_timeouts_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            OrchestratorConfig(control_timeout_seconds=0)

    def test_frozen(self) -> None:
        config = OrchestratorConfig()
        with pytest.raises(ValidationError):
            config.default_vcpus = 4  # type: ignore[misc]

    def test_extra_fields_forbidden(self) -> None:
        with pytest.raises(ValidationError):
            OrchestratorConfig(unknown_field="value")  # type: ignore[call-arg]


# ============================================================================
# Settings
# ============================================================================


class TestSettings:
    def test_default_paths_under_data_dir(self) -> None:
        settings = Settings()
        assert settings.data_dir == get_data_dir() / "firecracker-vms"
        assert settings.base_images_dir == get_data_dir() / "base-images"
        assert settings.ssh_private_key == get_data_dir() / "ssh-keys" / "id_ed25519"
        assert settings.ssh_public_key.name == "id_ed25519.pub"
        assert settings.network_pool_path == settings.data_dir / "network.json"

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("AGENTVM_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("AGENTVM_BRIDGE_NAME", "br-test")
        monkeypatch.setenv("AGENTVM_LAUNCH_GROUP", "kvm")

        settings = Settings()

        assert settings.data_dir == tmp_path
        assert settings.bridge_name == "br-test"
        assert settings.launch_group == "kvm"

    def test_xdg_data_home(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        get_data_dir.cache_clear()
        monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))
        try:
            assert get_data_dir() == tmp_path / "agentvm"
        finally:
            get_data_dir.cache_clear()


# ============================================================================
# Models
# ============================================================================


class TestVmCreateRequest:
    @pytest.mark.parametrize("name", ["a", "web-1", "db_2.primary", "X9"])
    def test_valid_names(self, name: str) -> None:
        assert VmCreateRequest(name=name).name == name

    @pytest.mark.parametrize("name", ["", "-lead", ".hidden", "has space", "slash/name", "x" * 64])
    def test_invalid_names(self, name: str) -> None:
        with pytest.raises(ValidationError):
            VmCreateRequest(name=name)

    def test_auto_start_default(self) -> None:
        assert VmCreateRequest(name="a").auto_start is True

    def test_sizing_bounds(self) -> None:
        with pytest.raises(ValidationError):
            VmCreateRequest(name="a", vcpus=0)
        with pytest.raises(ValidationError):
            VmCreateRequest(name="a", memory_mb=64)

    def test_extra_fields_forbidden(self) -> None:
        with pytest.raises(ValidationError):
            VmCreateRequest(name="a", gpu=True)  # type: ignore[call-arg]


class TestMetadataDocument:
    def test_guest_payload_uses_aliases_and_drops_none(self) -> None:
        allocation = TapAllocation(
            tap_name="tap-abc",
            guest_ip="172.31.0.5",
            gateway="172.31.0.1",
            mac_address="52:54:00:01:00:03",
            bridge_name="agentc-br0",
        )
        document = build_metadata(
            vm_id="fc-1", name="web", allocation=allocation, public_key="ssh-ed25519 KEY", user_data={"x": 1}
        )

        payload = document.to_guest_payload()

        assert payload["instance"] == {"id": "fc-1", "name": "web", "hostname": "web"}
        assert payload["userData"] == {"x": 1}
        eth0 = payload["network"]["interfaces"]["eth0"]
        assert eth0["ipv4"] == {"address": "172.31.0.5", "netmask": constants.DEFAULT_NETMASK, "gateway": "172.31.0.1"}
        assert "mtu" not in eth0
        assert payload["ssh"]["authorized_keys"] == ["ssh-ed25519 KEY"]

    def test_payload_without_user_data(self) -> None:
        document = build_metadata(vm_id="fc-1", name="web", allocation=None, public_key=None)

        payload = document.to_guest_payload()

        assert "userData" not in payload
        assert payload["ssh"]["authorized_keys"] == []
        assert payload["network"]["interfaces"]["eth0"]["ipv4"]["address"] == constants.PLACEHOLDER_IPV4

    def test_accepts_alias_and_field_name(self) -> None:
        by_alias = MetadataDocument.model_validate({"instance": {"id": "i", "name": "n", "hostname": "h"}, "userData": {}})
        by_name = MetadataDocument(instance=by_alias.instance, user_data={})
        assert by_alias == by_name

    def test_random_mac_locally_administered(self) -> None:
        mac = random_mac()
        assert mac.startswith("52:54:00:")
        assert len(mac.split(":")) == 6


class TestNetworkPoolConfig:
    def test_round_trips_camel_case_file(self) -> None:
        raw = {
            "bridgeName": "agentc-br0",
            "subnet": "172.31.0.0/24",
            "gateway": "172.31.0.1",
            "tapDevices": [
                {"name": "tap0", "allocated": True, "allocatedTo": "fc-1", "guestIp": "172.31.0.2", "macAddress": "m"}
            ],
            "ownerUid": 1000,
        }

        config = NetworkPoolConfig.model_validate(raw)
        dumped = config.model_dump(by_alias=True, exclude_none=True)

        assert config.tap_devices[0].allocated_to == "fc-1"
        assert dumped["tapDevices"][0]["allocatedTo"] == "fc-1"
        assert dumped["ownerUid"] == 1000
