"""Tests for configuration loading and management."""

from pathlib import Path

import pytest

from iap_reconciler.config import (
    Config,
    ConfigurationError,
    get_config,
    reload_config,
    reset_config,
)
from iap_reconciler.models import ProductKind


@pytest.fixture
def config(config_path):
    """Create a Config instance for testing."""
    return Config(str(config_path))


@pytest.fixture(autouse=True)
def fresh_global_config():
    reset_config()
    yield
    reset_config()


class TestConfigurationLoading:
    """Test basic configuration loading."""

    def test_config_loads_successfully(self, config):
        assert config.config_path.exists()
        assert str(config.config_path).endswith("reconciler.yaml")

    def test_package_name(self, config):
        assert config.package_name == "com.example.trivialdrive"

    def test_catalog_sets(self, config):
        catalog = config.catalog
        assert catalog.consumable_products == frozenset({"gas"})
        assert catalog.one_time_products == frozenset({"premium_car"})
        assert catalog.subscription_products == frozenset({"gold_monthly", "gold_yearly"})
        assert catalog.exclusive_members == ("gold_monthly", "gold_yearly")

    def test_gas_entitlement_mapping(self, config):
        gas = next(p for p in config.catalog.products if p.id == "gas")
        assert gas.kind == ProductKind.CONSUMABLE
        assert gas.key == "gas_tank"
        assert gas.max_balance == 4


class TestDefaults:
    """Section defaults match the reference policies."""

    def test_connection_policy(self, config):
        connection = config.settings.connection
        assert (connection.max_retry, connection.base_delay_millis, connection.task_delay_millis) == (5, 500, 2000)

    def test_throttle(self, config):
        assert config.settings.throttle.dead_band_millis == 7_200_000
        assert config.settings.throttle.namespace == "BillingRepository.Throttle"

    def test_signature_digest(self, config):
        assert config.settings.signature.digest == "SHA1"

    def test_state_dir_by_default(self, monkeypatch, config):
        monkeypatch.delenv("STATE_DIR")
        assert config.state_dir == Path(".reconciler_state")

    def test_state_dir_env_override(self, monkeypatch, config, tmp_path):
        monkeypatch.setenv("STATE_DIR", str(tmp_path))
        assert config.state_dir == tmp_path

    def test_empty_state_dir_env_keeps_state_in_memory(self, config):
        assert config.state_dir is None

    def test_pubsub_disabled_by_default(self, config):
        assert config.settings.pubsub.enabled is False


class TestPathResolution:
    """Argument, CONFIG_PATH, then the default."""

    def test_env_var(self, monkeypatch, config_path):
        monkeypatch.setenv("CONFIG_PATH", str(config_path))
        assert Config().config_path == Path(config_path)

    def test_default_path(self, monkeypatch, config_path):
        monkeypatch.delenv("CONFIG_PATH", raising=False)
        monkeypatch.chdir(config_path.parent.parent)
        assert Config().config_path == Path("config/reconciler.yaml")


class TestInvalidConfiguration:
    """Errors surface as ConfigurationError."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            Config(str(tmp_path / "missing.yaml"))

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        with pytest.raises(ConfigurationError, match="empty"):
            Config(str(path))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("package_name: [unclosed")
        with pytest.raises(ConfigurationError, match="YAML"):
            Config(str(path))

    def test_exclusive_member_must_be_subscription(self, tmp_path):
        path = tmp_path / "bad_group.yaml"
        path.write_text(
            """
package_name: com.example
catalog:
  products:
    - {id: gas, category: inapp, kind: consumable}
    - {id: gold, category: subs, kind: subscription}
  mutually_exclusive_group: {name: g, members: [gas, gold]}
"""
        )
        with pytest.raises(ConfigurationError, match="validation"):
            Config(str(path))

    def test_kind_category_mismatch(self, tmp_path):
        path = tmp_path / "mismatch.yaml"
        path.write_text(
            """
package_name: com.example
catalog:
  products:
    - {id: gold, category: inapp, kind: subscription}
"""
        )
        with pytest.raises(ConfigurationError):
            Config(str(path))


class TestGlobalConfig:
    """Module-level accessors."""

    def test_singleton(self, config_path):
        assert get_config(str(config_path)) is get_config()

    def test_reload_keeps_instance(self, config_path):
        first = get_config(str(config_path))
        reload_config()
        assert get_config() is first
