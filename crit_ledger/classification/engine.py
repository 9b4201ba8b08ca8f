#!/usr/bin/env python3
"""
Classification Engine

Deterministic pseudo-random verdicts. The roll is derived from a seed
built out of the entry's content fingerprint (or its identity when there is
no body text), the partition and the author, so re-observing the same
logical entry after a host re-render always reproduces the same verdict
even when the history store is unavailable.

Effective chance = base chance from settings + capped external bonuses
read from other plugins' key/value records, clamped to [0, 50].
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from crit_ledger.core.config import Settings
from crit_ledger.core.datashapes import ClassificationParams, EntityIdentity, Verdict
from crit_ledger.core.error_handler import ErrorCategory, ErrorHandler, ErrorSeverity
from crit_ledger.identity.fingerprint import content_fingerprint, stable_hash
from crit_ledger.persistence.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

MIN_CHANCE = 0.0
MAX_CHANCE = 50.0


@dataclass(frozen=True)
class BonusSource:
    """Where one external bonus lives and how much it may contribute."""
    name: str
    namespace: str
    key: str
    field: str
    cap_percent: float


BONUS_SOURCES = (
    BonusSource("agility", "SoloLevelingStats", "agilityBonus", "bonus", 25.0),
    BonusSource("luck", "SoloLevelingStats", "luckBonus", "bonus", 25.0),
    BonusSource("skill_tree", "SkillTree", "bonuses", "critBonus", 15.0),
)


def roll_for_seed(seed: str) -> float:
    """Map a seed onto [0, 100) with two decimals."""
    return (stable_hash(seed) % 10000) / 100


def params_from_settings(settings: Settings) -> ClassificationParams:
    return ClassificationParams(
        color=settings.crit_color,
        use_gradient=bool(settings.crit_gradient),
        font=settings.crit_font,
        glow=bool(settings.crit_glow),
        animate=bool(settings.crit_animation),
    )


class ClassificationEngine:
    """
    Stateless apart from a short-lived bonus cache.

    settings may be a Settings instance or a zero-argument callable returning
    one, so the engine always sees the latest user settings.
    """

    def __init__(self, kv_store: Optional[KeyValueStore] = None, settings=None,
                 error_handler: Optional[ErrorHandler] = None, bonus_ttl: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        self.kv_store = kv_store
        self._settings = settings if settings is not None else Settings()
        self.error_handler = error_handler or ErrorHandler()
        self.bonus_ttl = bonus_ttl
        self._clock = clock
        self._bonus_cache: Optional[Dict[str, float]] = None
        self._bonus_cache_time = 0.0

    @property
    def settings(self) -> Settings:
        return self._settings() if callable(self._settings) else self._settings

    # =========================================================================
    # CHANCE
    # =========================================================================

    def read_bonuses(self) -> Dict[str, float]:
        """Current capped bonus percentages by source name."""
        now = self._clock()
        if self._bonus_cache is not None and now - self._bonus_cache_time < self.bonus_ttl:
            return dict(self._bonus_cache)

        bonuses = {}
        for source in BONUS_SOURCES:
            bonuses[source.name] = self._read_bonus(source)

        self._bonus_cache = bonuses
        self._bonus_cache_time = now
        return dict(bonuses)

    def _read_bonus(self, source: BonusSource) -> float:
        if self.kv_store is None:
            return 0.0

        value = 0.0
        with self.error_handler.create_context_manager(
            ErrorCategory.CLASSIFICATION, ErrorSeverity.LOW_DEBUG,
            operation="read_bonus", context=f"{source.namespace}/{source.key}"
        ):
            data = self.kv_store.load(source.namespace, source.key)
            if isinstance(data, dict):
                raw = data.get(source.field)
                if isinstance(raw, (int, float)) and not isinstance(raw, bool) and raw > 0:
                    value = min(source.cap_percent, raw * 100)
        return value

    def invalidate_bonuses(self) -> None:
        self._bonus_cache = None

    def effective_chance(self) -> float:
        try:
            base = float(self.settings.crit_chance)
        except (TypeError, ValueError):
            base = 10.0
        total = base + sum(self.read_bonuses().values())
        return min(MAX_CHANCE, max(MIN_CHANCE, total))

    def current_params(self) -> ClassificationParams:
        return params_from_settings(self.settings)

    # =========================================================================
    # VERDICT
    # =========================================================================

    @staticmethod
    def build_seed(identity: Optional[EntityIdentity], partition_id: Optional[str],
                   author_id: Optional[str], body_text: Optional[str],
                   author_name: str = "", timestamp_label: str = "") -> str:
        body = (body_text or "").strip()
        if body:
            head = content_fingerprint(author_name, body, timestamp_label)
        else:
            head = identity.value if identity is not None else ""
        return f"{head}:{partition_id or ''}:{author_id or ''}"

    def classify(self, identity: Optional[EntityIdentity], partition_id: Optional[str],
                 author_id: Optional[str], body_text: Optional[str],
                 author_name: str = "", timestamp_label: str = "",
                 chance: Optional[float] = None) -> Verdict:
        """Deterministic verdict for one entry. Same inputs, same roll."""
        seed = self.build_seed(identity, partition_id, author_id, body_text, author_name, timestamp_label)
        roll = roll_for_seed(seed)
        effective = self.effective_chance() if chance is None else min(MAX_CHANCE, max(MIN_CHANCE, chance))
        verdict = Verdict(
            is_critical=roll < effective,
            roll=roll,
            seed=seed,
            effective_chance=effective,
        )
        logger.debug(f"classify {identity}: roll={roll:.2f} chance={effective:.2f} critical={verdict.is_critical}")
        return verdict
