"""
Configuration and Settings Tests
"""

import pytest

from crit_ledger.core.config import (
    DEFAULT_FONT,
    DevelopmentConfig,
    EngineConfig,
    ProductionConfig,
    Settings,
    TestConfig,
    get_config,
)
from crit_ledger.persistence.kv_store import MemoryKeyValueStore


class TestGetConfig:

    def test_named_environments(self):
        assert get_config('test') is TestConfig
        assert get_config('production') is ProductionConfig
        assert get_config('development') is DevelopmentConfig

    def test_unknown_falls_back_to_development(self):
        assert get_config('staging') is DevelopmentConfig

    def test_env_var(self, monkeypatch):
        monkeypatch.setenv('CRIT_LEDGER_ENV', 'test')
        assert get_config() is TestConfig

    def test_test_config_is_in_memory(self):
        assert TestConfig.STORE_BACKEND == 'memory'
        assert TestConfig.SETTLE_DELAY == 0.0


class TestValidateConfig:

    def test_defaults_are_valid(self):
        assert TestConfig.validate_config() == []

    def test_reports_each_issue(self):
        class Broken(EngineConfig):
            STORE_BACKEND = 'mongo'
            MAX_CRIT_HISTORY = 5000
            MAX_HISTORY_SIZE = 100
            BATCH_SIZE = 0

        issues = Broken.validate_config()
        assert len(issues) == 3
        assert any('STORE_BACKEND' in issue for issue in issues)
        assert any('MAX_CRIT_HISTORY' in issue for issue in issues)

    def test_save_intervals(self):
        class Inverted(TestConfig):
            SAVE_MIN_INTERVAL = 10.0
            SAVE_FORCE_INTERVAL = 1.0

        assert Inverted.validate_config() == ["SAVE_FORCE_INTERVAL should be at least SAVE_MIN_INTERVAL"]


class TestSettings:

    def test_defaults(self):
        settings = Settings()
        assert settings.enabled is True
        assert settings.crit_chance == 10.0
        assert settings.crit_font == DEFAULT_FONT
        assert settings.filter_bot_messages is False

    def test_stored_with_camel_case_keys(self):
        data = Settings(crit_chance=25.0).to_dict()
        assert data['critChance'] == 25.0
        assert data['filterSystemMessages'] is True
        assert 'crit_chance' not in data

    def test_from_dict_merges_over_defaults(self):
        settings = Settings.from_dict({'critColor': '#00ff00', 'unknownKey': 1})
        assert settings.crit_color == '#00ff00'
        assert settings.crit_chance == 10.0

    @pytest.mark.persistence
    def test_unknown_keys_survive_round_trip(self):
        """HAPPY PATH: Keys written by other versions are carried through a load and save."""
        kv = MemoryKeyValueStore()
        kv.save('CriticalHit', 'settings', {"critChance": 12, "critAnimationDuration": 900, "cssEnabled": False})

        Settings.load(kv, 'CriticalHit').save(kv, 'CriticalHit')

        stored = kv.load('CriticalHit', 'settings')
        assert stored["critChance"] == 12
        assert stored["critAnimationDuration"] == 900
        assert stored["cssEnabled"] is False

    def test_unknown_keys_kept_through_update(self):
        settings = Settings.from_dict({"critAnimationDuration": 900})
        settings.update(crit_glow=False)

        data = settings.to_dict()
        assert data["critAnimationDuration"] == 900
        assert data["critGlow"] is False

    def test_unknown_keys_ignored_in_comparison(self):
        assert Settings.from_dict({"cssEnabled": False}) == Settings()

    def test_from_dict_ignores_nulls(self):
        assert Settings.from_dict({'critColor': None}).crit_color == '#ff0000'

    @pytest.mark.parametrize("payload", [None, "settings", [1, 2], 42])
    def test_non_dict_payload_gives_defaults(self, payload):
        assert Settings.from_dict(payload) == Settings()

    @pytest.mark.parametrize("font", ["Impact, sans-serif", "'VT323', monospace", "Silkscreen", ""])
    def test_legacy_fonts_migrated(self, font):
        """EDGE: Fonts older installs shipped are replaced with the current default."""
        assert Settings.from_dict({'critFont': font}).crit_font == DEFAULT_FONT

    def test_custom_font_kept(self):
        assert Settings.from_dict({'critFont': 'Orbitron'}).crit_font == 'Orbitron'

    def test_chance_coerced(self):
        assert Settings.from_dict({'critChance': '12.5'}).crit_chance == 12.5
        assert Settings.from_dict({'critChance': 'lots'}).crit_chance == 10.0

    def test_save_and_load(self):
        kv = MemoryKeyValueStore()
        Settings(crit_chance=33.0, filter_bot_messages=True).save(kv, 'CriticalHit')

        loaded = Settings.load(kv, 'CriticalHit')
        assert loaded.crit_chance == 33.0
        assert loaded.filter_bot_messages is True

    def test_load_missing_gives_defaults(self):
        assert Settings.load(MemoryKeyValueStore(), 'CriticalHit') == Settings()

    def test_update(self):
        settings = Settings()
        assert settings.update(crit_chance=5.0, enabled=False) is settings
        assert settings.crit_chance == 5.0
        assert settings.enabled is False

    def test_update_unknown_raises(self):
        with pytest.raises(AttributeError, match="Unknown setting: sparkles"):
            Settings().update(sparkles=True)
