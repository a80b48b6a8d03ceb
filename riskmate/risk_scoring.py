"""
Risk Scoring

Deterministic job risk score from the severity of selected risk factors.
Critical = 25 points, High = 15, Medium = 8, Low = 3, capped at 100.
"""

import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

SEVERITY_WEIGHTS = {
    "critical": 25,
    "high": 15,
    "medium": 8,
    "low": 3,
}

# Minimum score for each level, checked highest first
RISK_LEVEL_THRESHOLDS = [
    ("critical", 100),
    ("high", 90),
    ("medium", 70),
]

MAX_SCORE = 100


def risk_level_for_score(score: int) -> str:
    for level, threshold in RISK_LEVEL_THRESHOLDS:
        if score >= threshold:
            return level
    return "low"


def score_factors(risk_factors: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Score already-loaded risk factor rows."""
    factors = []
    total = 0
    for factor in risk_factors:
        weight = SEVERITY_WEIGHTS.get(factor.get("severity"), 0)
        total += weight
        factors.append({
            "code": factor.get("code"),
            "name": factor.get("name"),
            "severity": factor.get("severity"),
            "weight": weight,
        })

    overall_score = min(MAX_SCORE, total)
    return {
        "overall_score": overall_score,
        "risk_level": risk_level_for_score(overall_score),
        "factors": factors,
    }


def _load_active_factors(supabase, codes: List[str]) -> List[Dict[str, Any]]:
    result = supabase.table("risk_factors")\
        .select("id, code, name, severity, category, mitigation_steps")\
        .in_("code", codes)\
        .eq("is_active", True)\
        .execute()
    return result.data or []


def calculate_risk_score(supabase, risk_factor_codes: Optional[List[str]]) -> Dict[str, Any]:
    """Load active factors for the codes and score them. Raises on database errors."""
    if not risk_factor_codes:
        return {"overall_score": 0, "risk_level": "low", "factors": []}
    return score_factors(_load_active_factors(supabase, risk_factor_codes))


def build_mitigation_items(job_id: str, risk_factors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """One item per mitigation step, or a generic item when a factor lists none."""
    items = []
    for factor in risk_factors:
        steps = factor.get("mitigation_steps") or []
        if steps:
            for step in steps:
                items.append({
                    "job_id": job_id,
                    "risk_factor_id": factor.get("id"),
                    "title": step,
                    "description": f"Mitigation for {factor.get('name')}: {step}",
                    "done": False,
                    "is_completed": False,
                })
        else:
            items.append({
                "job_id": job_id,
                "risk_factor_id": factor.get("id"),
                "title": f"Address {factor.get('name')}",
                "description": f"Review and mitigate risks associated with {factor.get('name')}",
                "done": False,
                "is_completed": False,
            })
    return items


def _insert_mitigation_items(supabase, job_id: str, factors: List[Dict[str, Any]]) -> int:
    items = build_mitigation_items(job_id, factors)
    if items:
        supabase.table("mitigation_items").insert(items).execute()
    return len(items)


def generate_mitigation_items(supabase, job_id: str, risk_factor_codes: Optional[List[str]]) -> int:
    """Insert mitigation items for the job. Returns how many were created."""
    if not risk_factor_codes:
        return 0
    return _insert_mitigation_items(supabase, job_id, _load_active_factors(supabase, risk_factor_codes))


def apply_risk_factors(supabase, job_id: str, risk_factor_codes: Optional[List[str]]) -> Dict[str, Any]:
    """
    Replace a job's risk score and mitigation checklist from a new set of codes.
    Returns the score result (score 0 / level None when codes are cleared).
    """
    supabase.table("job_risk_scores").delete().eq("job_id", job_id).execute()
    supabase.table("mitigation_items").delete().eq("job_id", job_id).execute()

    if not risk_factor_codes:
        supabase.table("jobs").update({"risk_score": None, "risk_level": None}).eq("id", job_id).execute()
        return {"overall_score": None, "risk_level": None, "factors": []}

    factors = _load_active_factors(supabase, risk_factor_codes)
    result = score_factors(factors)

    supabase.table("job_risk_scores").insert({
        "job_id": job_id,
        "overall_score": result["overall_score"],
        "risk_level": result["risk_level"],
        "factors": result["factors"],
    }).execute()
    supabase.table("jobs").update({
        "risk_score": result["overall_score"],
        "risk_level": result["risk_level"],
    }).eq("id", job_id).execute()

    _insert_mitigation_items(supabase, job_id, factors)

    logger.info(f"Job {job_id} risk recalculated: score={result['overall_score']} level={result['risk_level']}")
    return result
