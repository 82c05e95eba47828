"""Tests for strata.core.settings and the per-org settings store."""

from strata.core.settings import AIBudgetSettings, CreativeSettings, OrganizationSettings


class TestAIBudgetSettings:
    def test_v1_camel_case_migrates(self):
        s = AIBudgetSettings.from_dict({"dailyUsd": 1.5, "monthlyUsd": "30"})
        assert s.daily_usd == 1.5
        assert s.monthly_usd == 30.0
        assert s.to_dict()["schema_version"] == 2

    def test_v2(self):
        s = AIBudgetSettings.from_dict(
            {"schema_version": 2, "daily_usd": 4, "monthly_usd": None, "strict": True}
        )
        assert s.daily_usd == 4.0
        assert s.monthly_usd is None
        assert s.strict is True

    def test_invalid_values_use_defaults(self):
        s = AIBudgetSettings.from_dict({"schema_version": 2, "daily_usd": -3, "monthly_usd": "x"})
        assert s.daily_usd is None
        assert s.monthly_usd is None

    def test_not_a_dict(self):
        assert AIBudgetSettings.from_dict("5") == AIBudgetSettings()


class TestCreativeSettings:
    def test_thresholds_filtered(self):
        s = CreativeSettings.from_dict(
            {"success_thresholds": {"engagement": 3, "reach": 0, "leads": "bad"}}
        )
        assert s.success_thresholds == {"engagement": 3.0}
        assert s.bandit_exploration is None


class TestOrganizationSettings:
    def test_v1_blob(self):
        s = OrganizationSettings.from_dict({"aiBudget": {"dailyUsd": 1}, "theme": "dark"})
        assert s.ai_budget.daily_usd == 1.0
        assert s.creative == CreativeSettings()

    def test_round_trip_through_store(self, store):
        settings = OrganizationSettings(
            ai_budget=AIBudgetSettings(daily_usd=0.75, strict=True),
            creative=CreativeSettings(success_thresholds={"saves": 1.2}, bandit_exploration=0.3),
        )
        store.settings.save("org-1", settings)
        loaded = store.settings.get("org-1")
        assert loaded.ai_budget.daily_usd == 0.75
        assert loaded.ai_budget.strict is True
        assert loaded.creative.success_thresholds == {"saves": 1.2}
        assert loaded.creative.bandit_exploration == 0.3

    def test_missing_org_gets_defaults(self, store):
        assert store.settings.get("nobody") == OrganizationSettings()

    def test_save_overwrites(self, store):
        store.settings.save("org-1", OrganizationSettings(ai_budget=AIBudgetSettings(daily_usd=1)))
        store.settings.save("org-1", OrganizationSettings(ai_budget=AIBudgetSettings(daily_usd=2)))
        assert store.settings.get("org-1").ai_budget.daily_usd == 2.0
