"""Tests for run settings and TOML persistence."""

import pytest

from ema_dynamics.config import DataConfig, Settings, load_settings


class TestSettingsDataclass:
    """Test suite for the Settings dataclass."""

    def test_default_initialization(self):
        settings = Settings()
        assert settings.plrnn.latent_dim == 5
        assert settings.kalmanformer.embed_dim == 64
        assert settings.training.epochs == 100
        assert settings.data.n_participants == 48
        assert settings.random_seed is None
        assert settings.output_dir == "output"
        assert settings.export_formats == ["png"]

    def test_instances_are_independent(self):
        first, second = Settings(), Settings()
        first.export_formats.append("pdf")
        assert second.export_formats == ["png"]
        assert first.plrnn is not second.plrnn

    def test_no_directory_created_on_init(self, tmp_path):
        output = tmp_path / "out"
        settings = Settings(output_dir=str(output))
        assert not output.exists()
        assert settings.ensure_output_dir() == output
        assert output.is_dir()

    def test_verbose_logs_warnings(self, caplog):
        from ema_dynamics.config import PLRNNConfig

        with caplog.at_level("WARNING"):
            Settings(plrnn=PLRNNConfig(latent_dim=12), verbose=True)
        assert "Configuration warning" in caplog.text


class TestSettingsFromPreset:
    """Test suite for Settings.from_preset()."""

    def test_minimal_preset(self):
        settings = Settings.from_preset('minimal')
        assert settings.plrnn.latent_dim == 3
        assert settings.training.epochs == 5
        assert settings.data == DataConfig(n_participants=4, duration_weeks=2)

    def test_presets_do_not_share_configs(self):
        first = Settings.from_preset('default')
        first.training.epochs = 1
        assert Settings.from_preset('default').training.epochs == 100

    def test_unknown_preset(self):
        with pytest.raises(ValueError, match="Unknown preset"):
            Settings.from_preset('huge')


class TestSettingsDict:
    """Nested dictionaries and updates."""

    def test_from_dict_merges_sections(self):
        settings = Settings.from_dict({
            'preset': 'minimal',
            'training': {'epochs': 2},
            'random_seed': 9,
            'experiment_id': 'ignored',
        })
        assert settings.training.epochs == 2
        assert settings.training.bptt_truncation_window == 10
        assert settings.plrnn.latent_dim == 3
        assert settings.random_seed == 9

    def test_to_dict_round_trip(self):
        settings = Settings.from_preset('minimal').update(random_seed=3)
        restored = Settings.from_dict(settings.to_dict())
        assert restored.to_dict() == settings.to_dict()

    def test_update(self):
        settings = Settings()
        updated = settings.update(figure_dpi=300)
        assert updated.figure_dpi == 300
        assert settings.figure_dpi == 150

    def test_update_rejects_unknown_fields(self):
        with pytest.raises(ValueError):
            Settings().update(window_length=3)


class TestSettingsToml:
    """TOML load and save."""

    def test_round_trip(self, tmp_path):
        path = tmp_path / "settings.toml"
        settings = Settings.from_preset('minimal').update(random_seed=11, export_formats=["png", "pdf"])
        settings.to_toml(path)

        loaded = Settings.from_toml(path)
        assert loaded.random_seed == 11
        assert loaded.export_formats == ["png", "pdf"]
        assert loaded.training.horizons == [1, 3]
        assert loaded.kalmanformer.context_window == 12

    def test_none_values_are_dropped(self, tmp_path):
        path = tmp_path / "settings.toml"
        Settings().to_toml(path)
        text = path.read_text()
        assert "random_seed" not in text
        assert "csv_path" not in text
        assert Settings.from_toml(path).random_seed is None

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Settings.from_toml(tmp_path / "missing.toml")

    def test_load_settings(self, tmp_path):
        assert load_settings().plrnn.latent_dim == 5
        assert load_settings(preset='minimal').plrnn.latent_dim == 3

        path = tmp_path / "run.toml"
        path.write_text('random_seed = 4\n\n[training]\nepochs = 7\n')
        settings = load_settings(path)
        assert settings.random_seed == 4
        assert settings.training.epochs == 7
