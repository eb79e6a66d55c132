"""
Audit Recommendations - PV Digital Twin Platform

Maps each finding category to corrective actions with cost, annual benefit,
payback and ROI. Every recommendation references the finding it answers.
"""
from typing import List, Optional

from pv_twin.domain.models import (
    AuditFinding, AuditRecommendation, FindingCategory, RecommendationPriority
)

# (priority, action_type, action, description, cost, benefit share of recoverable, hours, specialist)
RECOMMENDATION_TEMPLATES = {
    FindingCategory.SOILING: [
        (RecommendationPriority.SHORT_TERM, "cleaning", "Module cleaning",
         "Full cleaning of the array with demineralised water and soft brushes.",
         500.0, 1.0, 4.0, False),
        (RecommendationPriority.MEDIUM_TERM, "monitoring", "Soiling monitoring station",
         "Install soiling sensors to track accumulation and tune the cleaning interval.",
         3000.0, 0.25, 8.0, True),
    ],
    FindingCategory.SHADING: [
        (RecommendationPriority.MEDIUM_TERM, "vegetation", "Shading obstruction removal",
         "Survey the horizon, trim vegetation and relocate obstructions casting shade.",
         400.0, 1.0, 6.0, False),
    ],
    FindingCategory.INVERTER: [
        (RecommendationPriority.IMMEDIATE, "maintenance", "Inverter maintenance or replacement",
         "Detailed inverter inspection; replace components or the unit if required.",
         2000.0, 1.0, 8.0, True),
    ],
    FindingCategory.MISMATCH: [
        (RecommendationPriority.MEDIUM_TERM, "reconfiguration", "String reconfiguration",
         "Rebalance strings, check connectors and module orientation on the affected strings.",
         1000.0, 1.0, 6.0, True),
    ],
    FindingCategory.MPPT: [
        (RecommendationPriority.SHORT_TERM, "maintenance", "MPPT input inspection",
         "Check input fuses, DC connectors and tracker settings on the affected MPPT inputs.",
         300.0, 1.0, 3.0, True),
    ],
    FindingCategory.CLIPPING: [
        (RecommendationPriority.LONG_TERM, "redesign", "DC/AC ratio review",
         "Evaluate inverter upsizing or DC reallocation to reduce clipping losses.",
         5000.0, 1.0, 16.0, True),
    ],
    FindingCategory.DEGRADATION: [
        (RecommendationPriority.MEDIUM_TERM, "inspection", "IV curve and thermography campaign",
         "Measure IV curves and run thermography to locate degraded modules for warranty claims.",
         1500.0, 1.0, 12.0, True),
    ],
    FindingCategory.OUTAGE: [
        (RecommendationPriority.IMMEDIATE, "maintenance", "Outage root cause follow-up",
         "Review protection trips and grid events behind the outages; fix recurring triggers.",
         250.0, 1.0, 2.0, False),
    ],
}

DEFAULT_TEMPLATE = [
    (RecommendationPriority.LONG_TERM, "monitoring", "Continuous monitoring",
     "Keep detailed monitoring to identify patterns and root causes.",
     0.0, 1.0, 0.0, False),
]


def payback_months(cost: float, annual_benefit_value: float) -> Optional[float]:
    if annual_benefit_value <= 0:
        return None
    return cost / (annual_benefit_value / 12.0)


def roi_percent(cost: float, annual_benefit_value: float) -> Optional[float]:
    if cost <= 0:
        return None
    return (annual_benefit_value - cost) / cost * 100.0


def recommend(finding: AuditFinding, tariff: float) -> List[AuditRecommendation]:
    recommendations = []
    templates = RECOMMENDATION_TEMPLATES.get(finding.category, DEFAULT_TEMPLATE)
    for priority, action_type, action, description, cost, share, hours, specialist in templates:
        benefit_kwh = finding.estimated_loss_kwh_year * finding.recoverable_fraction * share
        benefit_value = benefit_kwh * tariff
        recommendations.append(AuditRecommendation(
            finding_id=finding.finding_id,
            priority=priority,
            action_type=action_type,
            action=action,
            description=description,
            estimated_cost=cost,
            estimated_annual_benefit_kwh=benefit_kwh,
            estimated_annual_benefit_value=benefit_value,
            payback_months=payback_months(cost, benefit_value),
            roi_percent=roi_percent(cost, benefit_value),
            implementation_time_hours=hours,
            requires_specialist=specialist
        ))
    return recommendations
