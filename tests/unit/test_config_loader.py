"""
Unit tests for sqm-links.yaml loading, validation and config providers
"""

import os
from pathlib import Path

import pytest
import yaml

from adaptive_sqm.controller.config_loader import (
    ConfigLoader,
    ConfigurationError,
    StaticConfigProvider,
    YamlConfigProvider,
    parse_schedule_time,
)
from adaptive_sqm.controller.models import Direction
from adaptive_sqm.controller.profiles import ConnectionType, bounds_from_nominal

from conftest import make_link

EXAMPLE_CONFIG = Path(__file__).resolve().parents[2] / "config" / "sqm-links.yaml"


def write_config(path, links, **sections):
    data = {"links": links}
    data.update(sections)
    path.write_text(yaml.safe_dump(data))
    return str(path)


def raw_link(link_id="wan1", **overrides):
    entry = {
        "id": link_id,
        "interface": "eth0",
        "connection_type": "docsis_cable",
        "download": {"min_mbps": 50, "max_mbps": 285},
        "upload": {"min_mbps": 5, "max_mbps": 30},
        "ping_target_host": "1.1.1.1",
    }
    entry.update(overrides)
    return entry


class TestConfigLoader:

    def test_example_config(self):
        config = ConfigLoader.load(str(EXAMPLE_CONFIG))

        assert ConfigLoader.validate(config)
        assert [link.link_id for link in config.links] == ["wan1", "wan2"]
        assert config.control.learning_schedule == ["06:00", "18:30"]
        assert config.gateway.dry_run is True

        wan1 = config.links[0]
        assert (wan1.download.min_mbps, wan1.download.max_mbps) == (195, 285)
        assert wan1.download.absolute_max_mbps <= wan1.download.max_mbps
        assert wan1.overhead_multiplier == 1.05

        wan2 = config.links[1]
        assert wan2.connection_type == ConnectionType.STARLINK
        assert wan2.download.absolute_max_mbps == 240
        assert wan2.upload.absolute_max_mbps == 25
        assert wan2.baseline_latency_ms == 28

    def test_defaults(self, tmp_path):
        config = ConfigLoader.load(write_config(tmp_path / "sqm.yaml", [raw_link()]))

        assert config.control.correction_interval_seconds == 300
        assert config.control.apply_timeout_seconds == 10
        assert config.control.lease_timeout_seconds == 600
        link = config.links[0]
        assert link.adjustment_cap_fraction == 0.95
        assert link.blend_threshold_fraction == 0.90
        assert (link.blend_weight_within, link.blend_weight_below) == (0.60, 0.80)
        assert (link.decrease_factor, link.increase_factor) == (0.97, 1.04)
        assert link.ping_count == 20
        assert link.ifb_device == "ifbeth0"

    def test_bad_link_recorded_not_fatal(self, tmp_path):
        links = [raw_link("good"), raw_link("bad", connection_type="carrier_pigeon"), raw_link("partial")]
        del links[2]["download"]
        config = ConfigLoader.load(write_config(tmp_path / "sqm.yaml", links))

        assert [link.link_id for link in config.links] == ["good"]
        assert set(config.link_errors) == {"bad", "partial"}

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            ConfigLoader.load("/nonexistent/sqm-links.yaml")

    def test_validate_rejects_duplicates_and_bad_gateway(self, tmp_path):
        config = ConfigLoader.load(write_config(tmp_path / "sqm.yaml", [raw_link(), raw_link()]))
        assert not ConfigLoader.validate(config)

        config = ConfigLoader.load(write_config(tmp_path / "sqm.yaml", [raw_link()],
                                                gateway={"executor": "http"}))
        assert not ConfigLoader.validate(config)

        config = ConfigLoader.load(write_config(tmp_path / "sqm.yaml", [raw_link()],
                                                control={"learning_schedule": ["25:00"]}))
        assert not ConfigLoader.validate(config)

        config = ConfigLoader.load(write_config(tmp_path / "sqm.yaml", [raw_link()],
                                                control={"lease_timeout_seconds": 0}))
        assert not ConfigLoader.validate(config)


class TestValidateLink:

    def test_valid(self):
        assert ConfigLoader.validate_link(make_link()) == []

    def test_min_above_max(self):
        link = make_link()
        link.download.min_mbps = 300
        errors = ConfigLoader.validate_link(link)
        assert any("download.min_mbps must not exceed" in e for e in errors), errors

    def test_missing_ping_target(self):
        errors = ConfigLoader.validate_link(make_link(ping_target_host=""))
        assert "ping_target_host is required" in errors

    def test_out_of_range_tuning(self):
        link = make_link(overhead_multiplier=1.5, decrease_factor=1.2, increase_factor=0.9)
        assert len(ConfigLoader.validate_link(link)) == 3


class TestSchedule:

    def test_parse(self):
        assert parse_schedule_time("06:00") == (6, 0)
        assert parse_schedule_time("18:30") == (18, 30)

    @pytest.mark.parametrize("value", ["6am", "24:00", "12:60", ""])
    def test_invalid(self, value):
        with pytest.raises(ConfigurationError):
            parse_schedule_time(value)


class TestProfiles:

    def test_bounds_from_nominal(self):
        assert bounds_from_nominal(ConnectionType.DOCSIS_CABLE, 300) == (195, 285, 285)
        min_mbps, max_mbps, absolute_max = bounds_from_nominal(ConnectionType.STARLINK, 200)
        assert min_mbps < max_mbps
        assert absolute_max <= max_mbps


class TestYamlConfigProvider:

    def test_invalid_link_raises(self, tmp_path):
        path = write_config(tmp_path / "sqm.yaml", [raw_link(ping_target_host="")])
        provider = YamlConfigProvider(path)
        with pytest.raises(ConfigurationError):
            provider.get_link("wan1")

    def test_removed_link_is_none(self, tmp_path):
        provider = YamlConfigProvider(write_config(tmp_path / "sqm.yaml", [raw_link()]))
        assert provider.get_link("wan9") is None

    def test_unreadable_file_is_configuration_error(self, tmp_path):
        provider = YamlConfigProvider(str(tmp_path / "missing.yaml"))
        with pytest.raises(ConfigurationError):
            provider.get_link_ids()

    def test_picks_up_edits(self, tmp_path):
        path = write_config(tmp_path / "sqm.yaml", [raw_link()])
        provider = YamlConfigProvider(path)
        assert provider.get_link("wan1").bounds(Direction.DOWNLOAD).max_mbps == 285

        write_config(tmp_path / "sqm.yaml", [raw_link(download={"min_mbps": 50, "max_mbps": 200})])
        stat = os.stat(path)
        os.utime(path, (stat.st_atime, stat.st_mtime + 10))

        assert provider.get_link("wan1").bounds(Direction.DOWNLOAD).max_mbps == 200
        assert provider.get_link_ids() == ["wan1"]


class TestStaticConfigProvider:

    def test_set_and_remove(self):
        provider = StaticConfigProvider([make_link()])
        assert provider.get_link_ids() == ["wan1"]

        provider.set_link(make_link(ping_target_host=""))
        with pytest.raises(ConfigurationError):
            provider.get_link("wan1")

        provider.remove_link("wan1")
        assert provider.get_link("wan1") is None
