"""Tests for config/config.py"""

import pydantic
import pytest

from quorum_dns.config.config import Config, parse_duration


class TestParseDuration:
    """Tests for parse_duration."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("30s", 30),
            ("15m", 900),
            ("1h", 3600),
            ("2d", 172800),
            ("45", 45),
            (20, 20),
            (1.5, 1),
        ],
    )
    def test_parses(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["", None, "fast", "10w", "-5s"])
    def test_falls_back_to_default(self, value):
        """Should return the default for empty or malformed values."""
        assert parse_duration(value, default=7) == 7


class TestConfigFromYaml:
    """Tests for Config.from_yaml."""

    def test_nested_sections(self, tmp_path):
        """Should flatten every section into the model."""
        path = tmp_path / "quorum-dns.yaml"
        path.write_text(
            """
provider:
  name: inmemory
  zones: [example.com]
registry:
  txt_prefix: "qd-"
  encrypt: true
  encryption_key: secret
controller:
  cluster_id: east
  workers: 4
  min_requeue: 10s
  valid_for: 600
  delegation_role: secondary
  health_checks_file: /var/run/quorum-dns/health.yaml
  remote_clusters:
    west: /etc/quorum-dns/west.yaml
groups:
  group: east
  nameservers: ["10.0.0.53:5353"]
logging:
  level: debug
health:
  port: 9090
"""
        )

        config = Config.from_yaml(path)

        assert config.zones == ["example.com"]
        assert config.txt_prefix == "qd-"
        assert config.encrypt_txt is True
        assert config.encryption_key == "secret"
        assert config.cluster_id == "east"
        assert config.workers == 4
        assert config.delegation_role == "secondary"
        assert config.remote_clusters == {"west": "/etc/quorum-dns/west.yaml"}
        assert config.health_checks_file == "/var/run/quorum-dns/health.yaml"
        assert config.group == "east"
        assert config.nameservers == ["10.0.0.53:5353"]
        assert config.log_level == "debug"
        assert config.health_port == 9090
        assert config.health_host == "0.0.0.0"

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("QUORUM_GROUP", "west")
        monkeypatch.delenv("QUORUM_KEY", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text("groups:\n  group: ${QUORUM_GROUP}\nregistry:\n  encryption_key: ${QUORUM_KEY:-fallback}\n")

        config = Config.from_yaml(path)

        assert config.group == "west"
        assert config.encryption_key == "fallback"

    def test_missing_file_uses_defaults(self, tmp_path):
        config = Config.from_yaml(tmp_path / "missing.yaml")

        assert config.provider == "inmemory"
        assert config.txt_prefix == "kuadrant-"
        assert config.delegation_role == "primary"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert Config.from_yaml(path).cluster_id == "local"


class TestConfigValidation:
    """Tests for Config validators."""

    def test_invalid_group(self):
        with pytest.raises(pydantic.ValidationError):
            Config(group="not a group")

    def test_invalid_delegation_role(self):
        with pytest.raises(pydantic.ValidationError):
            Config(delegation_role="tertiary")

    def test_invalid_variance(self):
        with pytest.raises(pydantic.ValidationError):
            Config(validation_variance=1.5)


class TestConfigTiming:
    """Tests for Config.to_timing."""

    def test_defaults(self):
        timing = Config().to_timing()

        assert timing.max_requeue == 900
        assert timing.valid_for == 840
        assert timing.min_requeue == 5
        assert timing.inactive_group_requeue == 15
        assert timing.validation_variance == 0.5

    def test_overrides(self):
        timing = Config(min_requeue=2, valid_for="1h").to_timing()

        assert timing.min_requeue == 2
        assert timing.valid_for == 3600
