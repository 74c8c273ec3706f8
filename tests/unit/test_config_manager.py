"""Tests for saving and loading pre-created resources."""

import os
import stat

import pytest

from adeval.config_manager import ConfigManager
from adeval.exceptions import ConfigError
from adeval.models import PresuppliedResources

RESOURCES = PresuppliedResources(
    app_name="adeprereqadapp",
    app_secret="s3cret",
    app_id="app-id",
    key_vault_id="/subscriptions/s/vaults/kv",
    key_vault_uri="https://kv.vault.azure.net/",
    kek_id="/subscriptions/s/vaults/kv",
    kek_uri="https://kv.vault.azure.net/keys/kek/1",
)


class TestSaveResources:
    """Tests for ConfigManager.save_resources."""

    def test_file_is_owner_only(self, tmp_path):
        path = ConfigManager.save_resources(RESOURCES, str(tmp_path / "ade.toml"))

        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_creates_parent_directory(self, tmp_path):
        path = ConfigManager.save_resources(RESOURCES, str(tmp_path / "nested" / "ade.toml"))
        assert path.exists()

    def test_saved_values_load_back(self, tmp_path):
        target = str(tmp_path / "ade.toml")
        ConfigManager.save_resources(RESOURCES, target, details={"resource_group": "adeprereqrg"})

        assert ConfigManager.load_resources(target) == RESOURCES

    def test_details_are_written_to_their_own_table(self, tmp_path):
        path = ConfigManager.save_resources(
            RESOURCES, str(tmp_path / "ade.toml"), details={"certificate_thumbprint": "ABC123", "sid": None}
        )
        text = path.read_text()

        assert "[details]" in text
        assert 'certificate_thumbprint = "ABC123"' in text
        assert "sid" not in text

    def test_no_temporary_file_left(self, tmp_path):
        ConfigManager.save_resources(RESOURCES, str(tmp_path / "ade.toml"))
        assert [p.name for p in tmp_path.iterdir()] == ["ade.toml"]


class TestLoadResources:
    """Tests for ConfigManager.load_resources."""

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            ConfigManager.load_resources(str(tmp_path / "missing.toml"))

    def test_missing_default_file_means_nothing_presupplied(self, tmp_path, monkeypatch):
        monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_FILE", tmp_path / "resources.toml")
        assert ConfigManager.load_resources() == PresuppliedResources()

    def test_unknown_keys_rejected(self, tmp_path):
        path = tmp_path / "ade.toml"
        path.write_text('[resources]\napp_name = "x"\nvault = "y"\n')
        os.chmod(path, 0o600)

        with pytest.raises(ConfigError, match="vault"):
            ConfigManager.load_resources(str(path))

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / "ade.toml"
        path.write_text("[resources\n")
        os.chmod(path, 0o600)

        with pytest.raises(ConfigError, match="Failed to load"):
            ConfigManager.load_resources(str(path))

    def test_insecure_permissions_are_fixed(self, tmp_path):
        path = tmp_path / "ade.toml"
        path.write_text('[resources]\nkek_uri = "https://kv/keys/k/1"\n')
        os.chmod(path, 0o644)

        loaded = ConfigManager.load_resources(str(path))

        assert loaded.kek_uri == "https://kv/keys/k/1"
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_environment_overrides_file(self, tmp_path):
        target = str(tmp_path / "ade.toml")
        ConfigManager.save_resources(RESOURCES, target)

        merged = PresuppliedResources.from_environment(
            {"ADE_KEK_URI": "https://other/keys/k/2"}, base=ConfigManager.load_resources(target)
        )

        assert merged.kek_uri == "https://other/keys/k/2"
        assert merged.app_id == "app-id"
