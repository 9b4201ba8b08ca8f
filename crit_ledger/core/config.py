#!/usr/bin/env python3
"""
Engine Configuration
Environment-driven tuning for the classification engine plus the
user-facing Settings record that lives in the key/value store.
"""
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == 'true'


class EngineConfig:
    """Configuration for the classification engine"""

    # Key/value namespace the engine owns
    NAMESPACE = os.getenv('CRIT_LEDGER_NAMESPACE', 'CriticalHit')

    # Store backend: memory | sqlite | redis
    STORE_BACKEND = os.getenv('CRIT_LEDGER_STORE_BACKEND', 'sqlite')
    DB_PATH = os.getenv('CRIT_LEDGER_DB_PATH', 'crit_ledger.db')
    REDIS_HOST = os.getenv('CRIT_LEDGER_REDIS_HOST', 'localhost')
    REDIS_PORT = int(os.getenv('CRIT_LEDGER_REDIS_PORT', 6379))
    REDIS_DB = int(os.getenv('CRIT_LEDGER_REDIS_DB', 0))
    REDIS_PASSWORD = os.getenv('CRIT_LEDGER_REDIS_PASSWORD', None)

    # History limits
    MAX_HISTORY_SIZE = int(os.getenv('CRIT_LEDGER_MAX_HISTORY', 2000))
    MAX_CRIT_HISTORY = int(os.getenv('CRIT_LEDGER_MAX_CRIT_HISTORY', 1000))
    MAX_HISTORY_PER_CHANNEL = int(os.getenv('CRIT_LEDGER_MAX_PER_CHANNEL', 500))
    MAX_PROCESSED = int(os.getenv('CRIT_LEDGER_MAX_PROCESSED', 5000))

    # Pending queue
    MAX_PENDING = int(os.getenv('CRIT_LEDGER_MAX_PENDING', 100))
    PENDING_TTL_IDENTIFIED = float(os.getenv('CRIT_LEDGER_PENDING_TTL', 3.0))
    PENDING_TTL_FINGERPRINT = float(os.getenv('CRIT_LEDGER_PENDING_TTL_FINGERPRINT', 5.0))

    # Persistence throttling (seconds)
    SAVE_MIN_INTERVAL = float(os.getenv('CRIT_LEDGER_SAVE_MIN_INTERVAL', 1.0))
    SAVE_FORCE_INTERVAL = float(os.getenv('CRIT_LEDGER_SAVE_FORCE_INTERVAL', 5.0))
    CACHE_TTL = float(os.getenv('CRIT_LEDGER_CACHE_TTL', 1.0))

    # Dispatch loop
    BATCH_SIZE = int(os.getenv('CRIT_LEDGER_BATCH_SIZE', 10))
    BATCH_SPACING = float(os.getenv('CRIT_LEDGER_BATCH_SPACING', 0.05))
    MAX_NODE_ATTEMPTS = int(os.getenv('CRIT_LEDGER_MAX_NODE_ATTEMPTS', 3))
    REQUEUE_DELAY = float(os.getenv('CRIT_LEDGER_REQUEUE_DELAY', 0.1))
    ATTACH_RETRY_DELAY = float(os.getenv('CRIT_LEDGER_ATTACH_RETRY_DELAY', 0.5))
    ATTACH_MAX_DELAY = float(os.getenv('CRIT_LEDGER_ATTACH_MAX_DELAY', 5.0))
    ATTACH_MAX_ATTEMPTS = int(os.getenv('CRIT_LEDGER_ATTACH_MAX_ATTEMPTS', 20))
    SETTLE_DELAY = float(os.getenv('CRIT_LEDGER_SETTLE_DELAY', 0.5))
    BINDING_DEPTH = int(os.getenv('CRIT_LEDGER_BINDING_DEPTH', 100))

    # Restoration
    MAX_RESTORE_RETRIES = int(os.getenv('CRIT_LEDGER_MAX_RESTORE_RETRIES', 3))
    RESTORE_TIMEOUT = float(os.getenv('CRIT_LEDGER_RESTORE_TIMEOUT', 2.0))
    RESTORE_THROTTLE = float(os.getenv('CRIT_LEDGER_RESTORE_THROTTLE', 0.1))

    # Font assets consumed by the display layer
    FONTS_DIR = os.getenv('CRIT_LEDGER_FONTS_DIR', os.path.join(os.path.expanduser('~'), '.local', 'share', 'crit_ledger', 'fonts'))

    # Maintenance
    MAINTENANCE_INTERVAL = float(os.getenv('CRIT_LEDGER_MAINTENANCE_INTERVAL', 1800))

    # Logging Configuration
    LOG_LEVEL = os.getenv('CRIT_LEDGER_LOG_LEVEL', 'INFO')
    ERROR_LOG = os.getenv('CRIT_LEDGER_ERROR_LOG', None)
    DEBUG = False

    @classmethod
    def validate_config(cls):
        """Validate configuration settings"""
        issues = []

        if cls.STORE_BACKEND not in ('memory', 'sqlite', 'redis'):
            issues.append("STORE_BACKEND must be one of memory, sqlite, redis")

        if cls.MAX_CRIT_HISTORY > cls.MAX_HISTORY_SIZE:
            issues.append("MAX_CRIT_HISTORY cannot exceed MAX_HISTORY_SIZE")

        if cls.MAX_HISTORY_PER_CHANNEL < 1:
            issues.append("MAX_HISTORY_PER_CHANNEL must be at least 1")

        if cls.SAVE_FORCE_INTERVAL < cls.SAVE_MIN_INTERVAL:
            issues.append("SAVE_FORCE_INTERVAL should be at least SAVE_MIN_INTERVAL")

        if cls.BATCH_SIZE < 1:
            issues.append("BATCH_SIZE must be at least 1")

        return issues


# Environment-specific configurations
class DevelopmentConfig(EngineConfig):
    """Development environment configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'


class ProductionConfig(EngineConfig):
    """Production environment configuration"""
    DEBUG = False
    LOG_LEVEL = 'INFO'


class TestConfig(EngineConfig):
    """Test environment configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'
    STORE_BACKEND = 'memory'
    SETTLE_DELAY = 0.0
    ERROR_LOG = None


def get_config(env=None):
    """Get configuration based on environment"""
    env = env or os.getenv('CRIT_LEDGER_ENV', 'development')

    configs = {
        'development': DevelopmentConfig,
        'production': ProductionConfig,
        'test': TestConfig
    }

    return configs.get(env, DevelopmentConfig)


# =============================================================================
# USER SETTINGS
# =============================================================================

DEFAULT_FONT = "'Nova Flat', sans-serif"
LEGACY_FONTS = ('impact', 'vt323', 'silkscreen')


@dataclass
class Settings:
    """
    User-facing settings, persisted under (namespace, "settings").

    Stored with the camelCase keys earlier installs wrote. Stored keys this
    class does not model are carried in `extra` and written back unchanged.
    """
    enabled: bool = True
    crit_chance: float = 10.0
    crit_color: str = "#ff0000"
    crit_gradient: bool = True
    crit_font: str = DEFAULT_FONT
    crit_animation: bool = True
    crit_glow: bool = True
    filter_replies: bool = True
    filter_system_messages: bool = True
    filter_bot_messages: bool = False
    filter_empty_messages: bool = True
    history_retention_days: int = 30
    auto_cleanup_history: bool = True
    debug_mode: bool = False
    extra: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    _KEY_MAP = {
        'enabled': 'enabled',
        'crit_chance': 'critChance',
        'crit_color': 'critColor',
        'crit_gradient': 'critGradient',
        'crit_font': 'critFont',
        'crit_animation': 'critAnimation',
        'crit_glow': 'critGlow',
        'filter_replies': 'filterReplies',
        'filter_system_messages': 'filterSystemMessages',
        'filter_bot_messages': 'filterBotMessages',
        'filter_empty_messages': 'filterEmptyMessages',
        'history_retention_days': 'historyRetentionDays',
        'auto_cleanup_history': 'autoCleanupHistory',
        'debug_mode': 'debugMode',
    }

    def to_dict(self) -> Dict[str, Any]:
        data = {stored_key: getattr(self, name) for name, stored_key in self._KEY_MAP.items()}
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Settings":
        """Merge a stored payload over the defaults, migrating legacy fonts."""
        settings = cls()
        if not isinstance(data, dict):
            return settings

        for name, stored_key in cls._KEY_MAP.items():
            if stored_key in data and data[stored_key] is not None:
                setattr(settings, name, data[stored_key])

        known = set(cls._KEY_MAP.values())
        settings.extra = {key: value for key, value in data.items() if key not in known}

        font = str(settings.crit_font or '')
        if not font or any(legacy in font.lower() for legacy in LEGACY_FONTS):
            if font:
                logger.info(f"Migrating legacy crit font {font!r} to {DEFAULT_FONT!r}")
            settings.crit_font = DEFAULT_FONT

        try:
            settings.crit_chance = float(settings.crit_chance)
        except (TypeError, ValueError):
            settings.crit_chance = cls.crit_chance

        return settings

    @classmethod
    def load(cls, kv_store, namespace: str) -> "Settings":
        return cls.from_dict(kv_store.load(namespace, "settings"))

    def save(self, kv_store, namespace: str) -> bool:
        return kv_store.save(namespace, "settings", self.to_dict())

    def update(self, **changes) -> "Settings":
        """Apply changes in place; unknown names raise AttributeError."""
        for name, value in changes.items():
            if name not in self._KEY_MAP:
                raise AttributeError(f"Unknown setting: {name}")
            setattr(self, name, value)
        return self
