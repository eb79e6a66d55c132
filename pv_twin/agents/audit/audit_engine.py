"""
Audit Engine Agent - PV Digital Twin Platform

Periodic loss audit of one plant. Gathers gaps, baselines, anomalies and
telemetry for the period, runs the category sub-analyses, prices the
findings into recommendations and appends an immutable PlantAudit.
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from pv_twin.agents.analysis.gap_analyzer import PerformanceGapAnalyzerAgent, gap_percent_of
from pv_twin.agents.audit.recommendations import recommend
from pv_twin.agents.audit.sub_analyses import SUB_ANALYSES, AuditInputs, reconcile_losses
from pv_twin.domain.errors import ConfigNotFoundError, UpstreamDataError, ValidationError
from pv_twin.domain.events import AuditCompletedEvent
from pv_twin.domain.interfaces import IConfigProvider, ITelemetryProvider, ITwinRepository
from pv_twin.domain.models import (
    AuditFinding, CategoryResult, CategoryStatus, OverallStatus, PlantAudit, Severity
)
from pv_twin.framework.base_agent import BaseAgent
from pv_twin.framework.bus import EventBus

SEVERITY_ORDER = [Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW]


def overall_status_for(recoverable_percent: float, thresholds: Dict[str, float]) -> OverallStatus:
    if recoverable_percent < thresholds.get("excellent", 1.0):
        return OverallStatus.EXCELLENT
    if recoverable_percent < thresholds.get("good", 3.0):
        return OverallStatus.GOOD
    if recoverable_percent < thresholds.get("needs_attention", 6.0):
        return OverallStatus.NEEDS_ATTENTION
    return OverallStatus.CRITICAL


def recoverable_percent_of(recoverable_kwh: float, actual_kwh: float) -> float:
    if actual_kwh <= 0:
        return 0.0
    return max(recoverable_kwh / actual_kwh * 100.0, 0.0)


class AuditEngineAgent(BaseAgent):
    def __init__(self, name: str, bus: EventBus, config_provider: IConfigProvider,
                 telemetry_provider: ITelemetryProvider, repository: ITwinRepository,
                 config: Optional[Dict[str, Any]] = None):
        super().__init__(name, bus, config)
        self.config_provider = config_provider
        self.telemetry_provider = telemetry_provider
        self.repository = repository

        self.default_period_days = float(self.config.get("default_period_days", 30))
        self.tariff = float(self.config.get("tariff_per_kwh", 0.5))

    def run_audit(self, plant_id: str, period_days: Optional[float] = None) -> PlantAudit:
        days = self.default_period_days if period_days is None else float(period_days)
        if days <= 0:
            raise ValidationError(f"period_days must be positive, got {days}")
        twin = self.config_provider.get_active_config(plant_id)
        if twin is None:
            raise ConfigNotFoundError(plant_id)

        end = self.now()
        start = end - timedelta(days=days)
        inputs = self.gather(twin, start, end, days)

        results: List[CategoryResult] = []
        for analysis in SUB_ANALYSES:
            results.append(analysis(inputs))
        results, scale = reconcile_losses(results, inputs)
        if scale < 1.0:
            self.logger.info(f"Finding losses scaled by {scale:.3f} to the period shortfall",
                             extra={"props": {"plant_id": plant_id, "loss_scale": round(scale, 4)}})

        findings = self.rank_findings([f for r in results for f in r.findings])
        recommendations = [rec for f in findings for rec in recommend(f, self.tariff)]

        recoverable_kwh = sum(f.recoverable_kwh for f in findings)
        recoverable_percent = recoverable_percent_of(recoverable_kwh, inputs.actual_kwh)
        gap_kwh = inputs.actual_kwh - inputs.expected_kwh
        not_evaluated = [r.category.value for r in results if r.status == CategoryStatus.NOT_EVALUATED]

        audit = PlantAudit(
            plant_id=plant_id,
            period_start=start,
            period_end=end,
            actual_generation_kwh=inputs.actual_kwh,
            expected_generation_kwh=inputs.expected_kwh,
            gap_kwh=gap_kwh,
            gap_percent=gap_percent_of(inputs.actual_kwh, inputs.expected_kwh),
            overall_status=overall_status_for(recoverable_percent,
                                              self.config.get("status_thresholds", {})),
            total_recoverable_generation_kwh=recoverable_kwh,
            total_recoverable_value=recoverable_kwh * self.tariff,
            recoverable_percent=recoverable_percent,
            confidence_percent=self.confidence_percent(findings, results),
            findings=findings,
            recommendations=recommendations,
            category_results=results,
            executive_summary=self.executive_summary(findings, not_evaluated),
            audit_date=end
        )
        self.repository.append_audit(audit)

        self.log_metric("audit_recoverable_kwh", round(recoverable_kwh, 3))
        self.log_business_event("audit_completed", {
            "audit_id": audit.audit_id, "plant_id": plant_id,
            "status": audit.overall_status.value, "findings": len(findings)
        })
        self.publish(AuditCompletedEvent(
            source=self.name,
            audit_id=audit.audit_id,
            plant_id=plant_id,
            overall_status=audit.overall_status.value,
            findings_count=len(findings),
            recoverable_kwh=recoverable_kwh,
            not_evaluated=not_evaluated
        ))
        return audit

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def gather(self, twin, start, end, days: float) -> AuditInputs:
        plant_id = twin.plant_id
        gaps = self.repository.list_gaps(plant_id, start, end)
        baselines = self.repository.list_baselines(plant_id, start, end)
        anomalies = self.repository.list_anomalies(plant_id, start, end)

        telemetry = None
        telemetry_error = None
        try:
            telemetry = self.telemetry_provider.get_telemetry(plant_id, start, end)
        except UpstreamDataError as e:
            telemetry_error = e.message
            self.logger.warning(f"Audit for {plant_id} continues without telemetry: {e}",
                                extra={"props": {"plant_id": plant_id, "error_kind": e.error_kind}})

        actual, expected = self.headline_energy(gaps, baselines, telemetry)
        return AuditInputs(
            config=twin, start=start, end=end, period_days=days,
            actual_kwh=actual, expected_kwh=expected,
            gaps=gaps, baselines=baselines, anomalies=anomalies,
            telemetry=telemetry, telemetry_error=telemetry_error,
            settings=self.config
        )

    @staticmethod
    def headline_energy(gaps, baselines, telemetry) -> Tuple[float, float]:
        """Matched actual/expected pairs: stored gaps first, else baselines vs telemetry."""
        if gaps:
            return sum(g.actual_kwh for g in gaps), sum(g.expected_kwh for g in gaps)
        if not baselines or telemetry is None:
            return 0.0, 0.0
        by_ts: Dict[Any, list] = {}
        for point in telemetry:
            by_ts.setdefault(point.timestamp, []).append(point)
        actual = 0.0
        expected = 0.0
        for baseline in baselines:
            readings = by_ts.get(baseline.timestamp)
            if not readings:
                continue
            energy, _ = PerformanceGapAnalyzerAgent.sum_energy(readings)
            actual += energy
            expected += baseline.expected_generation_kwh
        return actual, expected

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    @staticmethod
    def rank_findings(findings: List[AuditFinding]) -> List[AuditFinding]:
        return sorted(findings, key=lambda f: (SEVERITY_ORDER.index(f.severity), -f.period_loss_kwh))

    @staticmethod
    def confidence_percent(findings: List[AuditFinding], results: List[CategoryResult]) -> float:
        """Loss-weighted finding confidence scaled by the share of categories evaluated."""
        if not results:
            return 0.0
        coverage = sum(1 for r in results if r.status == CategoryStatus.EVALUATED) / len(results)
        total_loss = sum(f.period_loss_kwh for f in findings)
        if total_loss > 0:
            base = sum(f.confidence * f.period_loss_kwh for f in findings) / total_loss
        else:
            base = 0.75
        return round(base * coverage * 100.0, 1)

    @staticmethod
    def executive_summary(findings: List[AuditFinding], not_evaluated: List[str]) -> Dict[str, Any]:
        return {
            "total_findings": len(findings),
            "critical_findings": sum(1 for f in findings if f.severity == Severity.CRITICAL),
            "quick_wins": [f.title for f in findings[:3]],
            "not_evaluated": not_evaluated,
        }
