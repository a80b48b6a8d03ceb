"""
Tests for job risk scoring and mitigation checklist generation.
"""

import pytest

from riskmate.risk_scoring import (
    apply_risk_factors,
    build_mitigation_items,
    calculate_risk_score,
    generate_mitigation_items,
    risk_level_for_score,
    score_factors,
)

FACTORS = [
    {"id": "rf-1", "code": "FALL", "name": "Fall hazard", "severity": "critical",
     "mitigation_steps": ["Install guardrails", "Harness check"]},
    {"id": "rf-2", "code": "ELEC", "name": "Live wiring", "severity": "high", "mitigation_steps": []},
    {"id": "rf-3", "code": "DUST", "name": "Dust", "severity": "low"},
]


class TestScoring:

    def test_weights_are_summed(self):
        result = score_factors(FACTORS)
        assert result["overall_score"] == 25 + 15 + 3
        assert result["risk_level"] == "low"
        assert [f["weight"] for f in result["factors"]] == [25, 15, 3]

    def test_score_is_capped(self):
        result = score_factors([{"code": f"C{i}", "severity": "critical"} for i in range(6)])
        assert result["overall_score"] == 100
        assert result["risk_level"] == "critical"

    def test_unknown_severity_weighs_nothing(self):
        assert score_factors([{"code": "X", "severity": "extreme"}])["overall_score"] == 0

    @pytest.mark.parametrize("score,level", [
        (100, "critical"),
        (95, "high"),
        (90, "high"),
        (70, "medium"),
        (69, "low"),
        (0, "low"),
    ])
    def test_levels(self, score, level):
        assert risk_level_for_score(score) == level

    def test_no_codes_skips_database(self, fake_db):
        assert calculate_risk_score(fake_db.client, []) == {"overall_score": 0, "risk_level": "low", "factors": []}
        fake_db.client.table.assert_not_called()

    def test_codes_are_loaded(self, fake_db):
        fake_db.set("risk_factors", FACTORS[:2])
        result = calculate_risk_score(fake_db.client, ["FALL", "ELEC"])
        assert result["overall_score"] == 40
        fake_db.table("risk_factors").in_.assert_called_with("code", ["FALL", "ELEC"])


class TestMitigations:

    def test_items_per_step_or_generic(self):
        items = build_mitigation_items("job-1", FACTORS)
        titles = [i["title"] for i in items]
        assert titles == ["Install guardrails", "Harness check", "Address Live wiring", "Address Dust"]
        assert all(i["job_id"] == "job-1" and i["done"] is False for i in items)
        assert items[0]["risk_factor_id"] == "rf-1"

    def test_generate_inserts_checklist(self, fake_db):
        fake_db.set("risk_factors", FACTORS[1:])
        assert generate_mitigation_items(fake_db.client, "job-1", ["ELEC", "DUST"]) == 2
        assert [i["title"] for i in fake_db.inserted("mitigation_items")[0]] == ["Address Live wiring", "Address Dust"]

    def test_generate_without_codes(self, fake_db):
        assert generate_mitigation_items(fake_db.client, "job-1", None) == 0
        fake_db.client.table.assert_not_called()


class TestApplyRiskFactors:

    def test_replaces_score_and_checklist(self, fake_db):
        fake_db.set("risk_factors", FACTORS)

        result = apply_risk_factors(fake_db.client, "job-1", ["FALL", "ELEC", "DUST"])

        assert result["overall_score"] == 43
        fake_db.table("job_risk_scores").delete.assert_called_once()
        fake_db.table("mitigation_items").delete.assert_called_once()
        score_row = fake_db.inserted("job_risk_scores")[0]
        assert score_row["overall_score"] == 43
        assert len(fake_db.inserted("mitigation_items")[0]) == 4
        fake_db.table("jobs").update.assert_called_with({"risk_score": 43, "risk_level": "low"})

    def test_cleared_codes_reset_job(self, fake_db):
        result = apply_risk_factors(fake_db.client, "job-1", [])

        assert result["overall_score"] is None
        assert result["risk_level"] is None
        fake_db.table("jobs").update.assert_called_with({"risk_score": None, "risk_level": None})
        fake_db.table("job_risk_scores").insert.assert_not_called()
