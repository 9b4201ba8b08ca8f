"""
Classification Engine Tests

Determinism of the roll, effective chance (base + capped bonuses, clamped
to [0, 50]) and bonus caching.
"""

import pytest

from crit_ledger.classification.engine import ClassificationEngine, params_from_settings, roll_for_seed
from crit_ledger.core.datashapes import EntityIdentity
from crit_ledger.identity.fingerprint import content_fingerprint

from crit_ledger.testing.conftest import AUTHOR_ID, OTHER_PARTITION_ID, PARTITION_ID, message_id


IDENTITY = EntityIdentity.external(message_id(1))


class TestDeterminism:

    @pytest.mark.critical
    def test_same_inputs_same_verdict(self, classifier):
        """HAPPY PATH: Re-observing an entry reproduces its verdict."""
        first = classifier.classify(IDENTITY, PARTITION_ID, AUTHOR_ID, "gg", "alice", "12:00")
        second = classifier.classify(IDENTITY, PARTITION_ID, AUTHOR_ID, "gg", "alice", "12:00")
        assert first == second

    def test_seed_built_from_content(self, classifier):
        seed = classifier.build_seed(IDENTITY, PARTITION_ID, AUTHOR_ID, " gg ", "alice", "12:00")
        assert seed == f"{content_fingerprint('alice', 'gg', '12:00')}:{PARTITION_ID}:{AUTHOR_ID}"

    def test_seed_ignores_identity_when_body_present(self, classifier):
        """EDGE: A re-keyed entry with the same content keeps its verdict."""
        other = EntityIdentity.fingerprint("hash_123")
        a = classifier.classify(IDENTITY, PARTITION_ID, AUTHOR_ID, "same body", "alice")
        b = classifier.classify(other, PARTITION_ID, AUTHOR_ID, "same body", "alice")
        assert a.roll == b.roll

    def test_seed_falls_back_to_identity_without_body(self, classifier):
        seed = classifier.build_seed(IDENTITY, PARTITION_ID, None, "")
        assert seed == f"{message_id(1)}:{PARTITION_ID}:"

    def test_partition_is_part_of_seed(self, classifier):
        a = classifier.classify(IDENTITY, PARTITION_ID, AUTHOR_ID, "text")
        b = classifier.classify(IDENTITY, OTHER_PARTITION_ID, AUTHOR_ID, "text")
        assert a.seed != b.seed

    def test_verdict_matches_roll(self, classifier):
        verdict = classifier.classify(IDENTITY, PARTITION_ID, AUTHOR_ID, "text")
        assert verdict.roll == roll_for_seed(verdict.seed)
        assert verdict.is_critical == (verdict.roll < verdict.effective_chance)


class TestEffectiveChance:

    def test_base_chance_from_settings(self, classifier, settings):
        settings.crit_chance = 12.5
        assert classifier.effective_chance() == 12.5

    def test_bonuses_added_as_percentages(self, classifier, kv_store):
        kv_store.save("SoloLevelingStats", "agilityBonus", {"bonus": 0.05})
        kv_store.save("SoloLevelingStats", "luckBonus", {"bonus": 0.02})
        kv_store.save("SkillTree", "bonuses", {"critBonus": 0.03})
        bonuses = classifier.read_bonuses()
        assert bonuses == pytest.approx({"agility": 5.0, "luck": 2.0, "skill_tree": 3.0})
        assert classifier.effective_chance() == pytest.approx(20.0)

    def test_bonus_caps(self, classifier, kv_store):
        """EDGE: Each source is capped individually."""
        kv_store.save("SoloLevelingStats", "agilityBonus", {"bonus": 0.9})
        kv_store.save("SoloLevelingStats", "luckBonus", {"bonus": 0.4})
        kv_store.save("SkillTree", "bonuses", {"critBonus": 0.5})
        assert classifier.read_bonuses() == {"agility": 25.0, "luck": 25.0, "skill_tree": 15.0}

    def test_clamped_to_fifty(self, classifier, kv_store, settings):
        settings.crit_chance = 40
        kv_store.save("SoloLevelingStats", "agilityBonus", {"bonus": 0.2})
        assert classifier.effective_chance() == 50.0

    def test_clamped_to_zero(self, classifier, settings):
        settings.crit_chance = -5
        assert classifier.effective_chance() == 0.0

    def test_garbage_chance_uses_default(self, classifier, settings):
        settings.crit_chance = "lots"
        assert classifier.effective_chance() == 10.0

    @pytest.mark.parametrize("payload", [{"bonus": -0.3}, {"bonus": "0.2"}, {"bonus": True}, ["x"], None])
    def test_unusable_bonus_records_ignored(self, classifier, kv_store, payload):
        kv_store.save("SoloLevelingStats", "agilityBonus", payload)
        assert classifier.read_bonuses()["agility"] == 0.0

    def test_corrupt_bonus_record_contained(self, classifier, kv_store, error_handler):
        """EDGE: An undecodable bonus record counts as zero and is reported."""
        kv_store.save_raw("SoloLevelingStats", "luckBonus", "{not json")
        assert classifier.read_bonuses()["luck"] == 0.0
        assert error_handler.recent_errors[-1]["category"] == "classification"

    def test_no_store_means_no_bonus(self, settings):
        engine = ClassificationEngine(None, settings)
        assert engine.effective_chance() == settings.crit_chance

    def test_bonuses_cached_until_ttl(self, classifier, kv_store, scheduler):
        kv_store.save("SoloLevelingStats", "agilityBonus", {"bonus": 0.1})
        assert classifier.read_bonuses()["agility"] == pytest.approx(10.0)

        kv_store.save("SoloLevelingStats", "agilityBonus", {"bonus": 0.2})
        assert classifier.read_bonuses()["agility"] == pytest.approx(10.0)

        scheduler.advance(1.0)
        assert classifier.read_bonuses()["agility"] == pytest.approx(20.0)

    def test_invalidate_bonuses(self, classifier, kv_store):
        classifier.read_bonuses()
        kv_store.save("SkillTree", "bonuses", {"critBonus": 0.1})
        classifier.invalidate_bonuses()
        assert classifier.read_bonuses()["skill_tree"] == pytest.approx(10.0)


class TestVerdicts:

    def test_zero_chance_never_critical(self, classifier, settings, force_critical):
        """EDGE: roll 0.0 is not below a 0% chance."""
        settings.crit_chance = 0
        assert classifier.classify(IDENTITY, PARTITION_ID, AUTHOR_ID, "x").is_critical is False

    def test_low_roll_is_critical(self, classifier, force_critical):
        assert classifier.classify(IDENTITY, PARTITION_ID, AUTHOR_ID, "x").is_critical is True

    def test_explicit_chance_clamped(self, classifier, force_non_critical):
        verdict = classifier.classify(IDENTITY, PARTITION_ID, AUTHOR_ID, "x", chance=500)
        assert verdict.effective_chance == 50.0
        assert verdict.is_critical is False

    def test_params_follow_settings(self, classifier, settings):
        settings.crit_color = "#00ff00"
        settings.crit_glow = False
        params = classifier.current_params()
        assert params == params_from_settings(settings)
        assert params.color == "#00ff00"
        assert params.glow is False
