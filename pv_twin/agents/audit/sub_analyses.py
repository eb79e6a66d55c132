"""
Audit Sub-Analyses - PV Digital Twin Platform

One function per loss category. Each takes the shared AuditInputs and
returns a CategoryResult that is either evaluated (zero or more findings)
or not_evaluated with the reason its input was missing.
"""
import math
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from pv_twin.domain.models import (
    Anomaly, AnomalyStatus, AnomalyType, AuditFinding, BaselineForecast, CategoryResult,
    CategoryStatus, DigitalTwinConfig, FindingCategory, PerformanceGap, Severity, TelemetryPoint,
    as_utc, parse_timestamp
)


@dataclass
class AuditInputs:
    config: DigitalTwinConfig
    start: datetime
    end: datetime
    period_days: float
    actual_kwh: float
    expected_kwh: float
    gaps: List[PerformanceGap] = field(default_factory=list)
    baselines: List[BaselineForecast] = field(default_factory=list)
    anomalies: List[Anomaly] = field(default_factory=list)
    telemetry: Optional[List[TelemetryPoint]] = None
    telemetry_error: Optional[str] = None
    settings: Dict[str, Any] = field(default_factory=dict)

    @property
    def tariff(self) -> float:
        return float(self.settings.get("tariff_per_kwh", 0.5))

    def section(self, name: str) -> Dict[str, Any]:
        return self.settings.get(name, {}) or {}

    def interval_hours(self) -> float:
        stamps = sorted({p.timestamp for p in self.telemetry or [] if p.is_plant_level})
        if len(stamps) < 2:
            return 0.25
        diffs = [(b - a).total_seconds() / 3600.0 for a, b in zip(stamps, stamps[1:])]
        return float(np.median(diffs))


def severity_for(loss_percent: float, thresholds: Dict[str, float]) -> Severity:
    if loss_percent >= thresholds.get("critical", 5.0):
        return Severity.CRITICAL
    if loss_percent >= thresholds.get("high", 2.0):
        return Severity.HIGH
    if loss_percent >= thresholds.get("medium", 0.5):
        return Severity.MEDIUM
    return Severity.LOW


def make_finding(inputs: AuditInputs, category: FindingCategory, title: str, description: str,
                 period_loss_kwh: float, causes: List[str], confidence: float,
                 evidence: List[Dict[str, Any]], components: Optional[List[str]] = None,
                 frequency: str = "constant") -> AuditFinding:
    """Annualise a period loss and grade it against generation."""
    reference = inputs.actual_kwh if inputs.actual_kwh > 0 else inputs.expected_kwh
    loss_percent = period_loss_kwh / reference * 100.0 if reference > 0 else 0.0
    annual_kwh = period_loss_kwh * 365.0 / inputs.period_days if inputs.period_days > 0 else 0.0
    fractions = inputs.settings.get("recoverable_fractions", {})
    return AuditFinding(
        category=category,
        severity=severity_for(loss_percent, inputs.settings.get("severity_thresholds", {})),
        title=title,
        description=description,
        period_loss_kwh=period_loss_kwh,
        estimated_loss_kwh_year=annual_kwh,
        estimated_loss_value_year=annual_kwh * inputs.tariff,
        loss_percent=loss_percent,
        recoverable_fraction=float(fractions.get(category.value, 0.5)),
        probable_root_causes=causes,
        confidence=confidence,
        evidence=evidence,
        affected_components=components or [],
        frequency=frequency
    )


def _evaluated(category: FindingCategory, findings: List[AuditFinding],
               details: Optional[Dict[str, Any]] = None) -> CategoryResult:
    return CategoryResult(category=category, status=CategoryStatus.EVALUATED,
                          findings=findings, details=details or {})


def _active(inputs: AuditInputs, anomaly_type: AnomalyType) -> List[Anomaly]:
    return [a for a in inputs.anomalies
            if a.anomaly_type == anomaly_type and a.status != AnomalyStatus.FALSE_POSITIVE]


def offline_window(anomaly: Anomaly) -> Tuple[datetime, datetime]:
    """First to last offline sample, both inclusive."""
    start = as_utc(anomaly.timestamp)
    run_end = anomaly.metadata.get("run_end")
    if run_end:
        return start, parse_timestamp(run_end)
    return start, start + timedelta(minutes=float(anomaly.metadata.get("duration_minutes", 0.0)))


def data_gap_window(anomaly: Anomaly) -> Tuple[datetime, datetime]:
    """Last sample before the gap to first sample after it, both exclusive."""
    start = as_utc(anomaly.timestamp)
    gap_end = anomaly.metadata.get("gap_end")
    if gap_end:
        return start, parse_timestamp(gap_end)
    return start, start + timedelta(minutes=float(anomaly.metadata.get("gap_minutes", 0.0)))


def attributable_gaps(inputs: AuditInputs) -> List[PerformanceGap]:
    """Gaps outside offline runs and telemetry holes; those hours are not a cause-attributable shortfall."""
    offline = [offline_window(a) for a in _active(inputs, AnomalyType.OFFLINE)]
    holes = [data_gap_window(a) for a in _active(inputs, AnomalyType.DATA_GAP)]
    kept = []
    for gap in inputs.gaps:
        ts = as_utc(gap.timestamp)
        if any(start <= ts <= end for start, end in offline):
            continue
        if any(start < ts < end for start, end in holes):
            continue
        kept.append(gap)
    return kept


def attribution_share(gap: PerformanceGap) -> float:
    """Scale factor so a gap's cause impacts together never exceed its own shortfall."""
    shortfall = max(-gap.gap_kwh, 0.0)
    claimed = sum(max(c.estimated_impact_kwh, 0.0) for c in gap.probable_causes)
    if claimed <= 0:
        return 0.0
    return min(1.0, shortfall / claimed)


def _cause_impact(inputs: AuditInputs, needle: str) -> Tuple[float, int]:
    total = 0.0
    hits = 0
    for gap in attributable_gaps(inputs):
        share = attribution_share(gap)
        for cause in gap.probable_causes:
            if needle in cause.cause.lower():
                total += max(cause.estimated_impact_kwh, 0.0) * share
                hits += 1
    return total, hits


def reconcile_losses(results: List[CategoryResult], inputs: AuditInputs) -> Tuple[List[CategoryResult], float]:
    """
    Scale every finding by one factor so the summed period loss never exceeds
    the period shortfall against the twin. Findings scaled to nothing are
    dropped. Without an expectation there is nothing to reconcile against.
    """
    claimed = sum(f.period_loss_kwh for r in results for f in r.findings)
    if inputs.expected_kwh <= 0 or claimed <= 0:
        return results, 1.0
    shortfall = max(inputs.expected_kwh - inputs.actual_kwh, 0.0)
    if claimed <= shortfall:
        return results, 1.0

    factor = shortfall / claimed
    thresholds = inputs.settings.get("severity_thresholds", {})
    reconciled = []
    for result in results:
        findings = []
        for f in result.findings:
            loss = f.period_loss_kwh * factor
            if loss <= 0:
                continue
            loss_percent = f.loss_percent * factor
            findings.append(replace(
                f, period_loss_kwh=loss,
                estimated_loss_kwh_year=f.estimated_loss_kwh_year * factor,
                estimated_loss_value_year=f.estimated_loss_value_year * factor,
                loss_percent=loss_percent,
                severity=severity_for(loss_percent, thresholds)
            ))
        reconciled.append(replace(result, findings=findings))
    return reconciled, factor


def _telemetry_frame(inputs: AuditInputs, column: str, key: str) -> pd.DataFrame:
    rows = [
        {"timestamp": p.timestamp, key: getattr(p, key), "inverter_id": p.inverter_id,
         "mppt_input": p.mppt_input, column: getattr(p, column)}
        for p in inputs.telemetry or []
        if getattr(p, key) is not None and getattr(p, column) is not None
    ]
    return pd.DataFrame(rows)


# ==============================================================================
# GAP-CAUSE CATEGORIES
# ==============================================================================

def analyze_soiling(inputs: AuditInputs) -> CategoryResult:
    if not inputs.gaps:
        return CategoryResult.not_evaluated(FindingCategory.SOILING, "no performance gaps in period")
    cfg = inputs.section("soiling")
    excess, excess_hits = _cause_impact(inputs, "excess soiling")
    mixed, mixed_hits = _cause_impact(inputs, "soiling or shading")
    loss = excess + 0.5 * mixed

    daily_expected = inputs.expected_kwh / inputs.period_days if inputs.period_days > 0 else 0.0
    rate = float(cfg.get("daily_soiling_rate_percent", 0.1)) / 100.0
    cost = float(cfg.get("cleaning_cost", 500.0))
    details: Dict[str, Any] = {"excess_soiling_events": excess_hits, "mixed_events": mixed_hits}
    if daily_expected > 0 and rate > 0 and inputs.tariff > 0:
        details["optimal_cleaning_interval_days"] = round(
            math.sqrt(2 * cost / (daily_expected * inputs.tariff * rate)), 1)
    env = inputs.config.environmental_context
    if env.last_cleaning_date is not None:
        details["days_since_cleaning"] = round((inputs.end - env.last_cleaning_date).total_seconds() / 86400.0, 1)

    min_excess = float(cfg.get("min_excess_percent", 1.0))
    reference = inputs.actual_kwh or inputs.expected_kwh
    if loss <= 0 or (reference > 0 and loss / reference * 100.0 < min_excess):
        return _evaluated(FindingCategory.SOILING, [], details)

    description = f"Soiling accounts for about {loss:.1f} kWh lost over the period."
    if "optimal_cleaning_interval_days" in details:
        description += f" Economic cleaning interval is {details['optimal_cleaning_interval_days']} days."
    finding = make_finding(
        inputs, FindingCategory.SOILING, "Soiling losses above expectation", description, loss,
        ["Dust or organic deposits on modules", "Insufficient cleaning frequency"], 0.7,
        [{"type": "gap_causes", "data": details, "description": "Gap causes attributed to soiling"}],
        ["modules"], "recurring"
    )
    return _evaluated(FindingCategory.SOILING, [finding], details)


def analyze_shading(inputs: AuditInputs) -> CategoryResult:
    if not inputs.gaps:
        return CategoryResult.not_evaluated(FindingCategory.SHADING, "no performance gaps in period")
    mixed, hits = _cause_impact(inputs, "soiling or shading")
    loss = 0.5 * mixed
    details = {"events": hits}
    if loss <= 0:
        return _evaluated(FindingCategory.SHADING, [], details)
    finding = make_finding(
        inputs, FindingCategory.SHADING, "Shading losses detected",
        f"Severe gaps consistent with shading account for about {loss:.1f} kWh.", loss,
        ["Vegetation growth", "New obstruction near the array"], 0.5,
        [{"type": "gap_causes", "data": details, "description": "Severe gaps attributed to shading"}],
        ["modules"], "intermittent"
    )
    return _evaluated(FindingCategory.SHADING, [finding], details)


def analyze_inverter(inputs: AuditInputs) -> CategoryResult:
    if not inputs.gaps:
        return CategoryResult.not_evaluated(FindingCategory.INVERTER, "no performance gaps in period")
    loss, hits = _cause_impact(inputs, "equipment malfunction")
    details = {"events": hits}
    if loss <= 0:
        return _evaluated(FindingCategory.INVERTER, [], details)
    finding = make_finding(
        inputs, FindingCategory.INVERTER, "Equipment malfunction suspected",
        f"{hits} severe gaps point to inverter or string failures ({loss:.1f} kWh).", loss,
        ["Inverter derating or trip", "String failure"], 0.5,
        [{"type": "gap_causes", "data": details, "description": "Severe gaps attributed to equipment"}],
        [inv.inverter_id for inv in inputs.config.inverters], "intermittent"
    )
    return _evaluated(FindingCategory.INVERTER, [finding], details)


# ==============================================================================
# TELEMETRY CATEGORIES
# ==============================================================================

def _telemetry_missing(inputs: AuditInputs, category: FindingCategory) -> Optional[CategoryResult]:
    if inputs.telemetry is None:
        reason = f"telemetry unavailable: {inputs.telemetry_error}" if inputs.telemetry_error \
            else "telemetry unavailable"
        return CategoryResult.not_evaluated(category, reason)
    return None


def analyze_mismatch(inputs: AuditInputs) -> CategoryResult:
    missing = _telemetry_missing(inputs, FindingCategory.MISMATCH)
    if missing:
        return missing
    strings = {s.string_id: s for s in inputs.config.strings}
    if len(strings) < 2:
        return CategoryResult.not_evaluated(FindingCategory.MISMATCH, "fewer than two strings configured")
    frame = _telemetry_frame(inputs, "dc_power_w", "string_id")
    if frame.empty:
        return CategoryResult.not_evaluated(FindingCategory.MISMATCH, "no string-level telemetry")

    frame = frame[frame["string_id"].isin(strings)].copy()
    if frame.empty:
        return CategoryResult.not_evaluated(FindingCategory.MISMATCH, "no telemetry for configured strings")
    modules = frame["string_id"].map({sid: s.module_count for sid, s in strings.items()})
    frame["per_module_w"] = frame["dc_power_w"] / modules
    pivot = frame.pivot_table(index="timestamp", columns="string_id", values="per_module_w", aggfunc="mean")
    pivot = pivot[pivot.max(axis=1) > 0]
    if pivot.empty:
        return CategoryResult.not_evaluated(FindingCategory.MISMATCH, "no producing string samples")

    median = pivot.median(axis=1)
    ratios = pivot.div(median.replace(0, np.nan), axis=0)
    mean_ratio = ratios.mean(axis=0)
    threshold = float(inputs.section("mismatch").get("spread_threshold_percent", 5.0)) / 100.0
    hours = inputs.interval_hours()

    details = {"string_ratios": {sid: round(float(v), 4) for sid, v in mean_ratio.items()
                                 if math.isfinite(v)}}
    weak = [sid for sid, v in mean_ratio.items() if math.isfinite(v) and v < 1.0 - threshold]
    if not weak:
        return _evaluated(FindingCategory.MISMATCH, [], details)

    loss = 0.0
    for sid in weak:
        shortfall = (median - pivot[sid]).clip(lower=0).fillna(0.0)
        loss += float(shortfall.sum()) * strings[sid].module_count * hours / 1000.0
    details["weak_strings"] = weak
    finding = make_finding(
        inputs, FindingCategory.MISMATCH, "String mismatch",
        f"{len(weak)} string(s) produce below their peers ({loss:.1f} kWh lost).", loss,
        ["Failed or disconnected string", "Module mismatch or hotspot", "Connector degradation"],
        0.8, [{"type": "string_ratios", "data": details["string_ratios"],
               "description": "Mean per-module output relative to the string median"}],
        [f"string:{sid}" for sid in weak]
    )
    return _evaluated(FindingCategory.MISMATCH, [finding], details)


def mppt_status(ratio: float, optimal: float = 0.98, degraded: float = 0.95) -> str:
    if ratio >= optimal:
        return "optimal"
    if ratio >= degraded:
        return "degraded"
    return "failing"


def analyze_mppt(inputs: AuditInputs) -> CategoryResult:
    missing = _telemetry_missing(inputs, FindingCategory.MPPT)
    if missing:
        return missing
    inputs_by_inverter = defaultdict(set)
    for s in inputs.config.strings:
        inputs_by_inverter[s.inverter_id].add(s.mppt_input)
    if not any(len(v) > 1 for v in inputs_by_inverter.values()):
        return CategoryResult.not_evaluated(FindingCategory.MPPT, "no inverter with multiple MPPT inputs")
    frame = _telemetry_frame(inputs, "dc_power_w", "string_id")
    if frame.empty:
        return CategoryResult.not_evaluated(FindingCategory.MPPT, "no string-level telemetry")

    cfg = inputs.section("mppt")
    optimal = float(cfg.get("optimal_ratio", 0.98))
    degraded = float(cfg.get("degraded_ratio", 0.95))
    hours = inputs.interval_hours()

    analyses = []
    findings = []
    for inverter_id, mppts in sorted(inputs_by_inverter.items()):
        if len(mppts) < 2:
            continue
        modules_total = sum(s.module_count for s in inputs.config.strings if s.inverter_id == inverter_id)
        inv_rows = frame[frame["inverter_id"] == inverter_id]
        energy_total = float(inv_rows["dc_power_w"].sum()) * hours / 1000.0
        if energy_total <= 0 or modules_total <= 0:
            continue
        for mppt in sorted(mppts):
            modules = sum(s.module_count for s in inputs.config.strings_for_input(inverter_id, mppt))
            actual = float(inv_rows[inv_rows["mppt_input"] == mppt]["dc_power_w"].sum()) * hours / 1000.0
            # expectation comes from the per-module yield of the other inputs
            peer_modules = modules_total - modules
            if peer_modules <= 0 or modules <= 0:
                continue
            expected = (energy_total - actual) / peer_modules * modules
            ratio = actual / expected if expected > 0 else 1.0
            status = mppt_status(ratio, optimal, degraded)
            analyses.append({"inverter_id": inverter_id, "mppt_input": mppt,
                             "ratio": round(ratio, 4), "status": status})
            if status == "failing":
                loss = max(expected - actual, 0.0)
                findings.append(make_finding(
                    inputs, FindingCategory.MPPT, f"MPPT input {mppt} on {inverter_id} failing",
                    f"Input yields {ratio:.0%} of its share of inverter DC energy.", loss,
                    ["Blown string fuse", "Tracker stuck off the maximum power point"], 0.7,
                    [{"type": "mppt_ratio", "data": analyses[-1], "description": "Energy share vs module share"}],
                    [f"inverter:{inverter_id}"]
                ))
    if not analyses:
        return CategoryResult.not_evaluated(FindingCategory.MPPT, "no producing MPPT inputs")
    return _evaluated(FindingCategory.MPPT, findings, {"inputs": analyses})


def analyze_clipping(inputs: AuditInputs) -> CategoryResult:
    missing = _telemetry_missing(inputs, FindingCategory.CLIPPING)
    if missing:
        return missing
    if not inputs.config.inverters:
        return CategoryResult.not_evaluated(FindingCategory.CLIPPING, "no inverters configured")
    frame = _telemetry_frame(inputs, "ac_power_w", "inverter_id")
    if frame.empty:
        return CategoryResult.not_evaluated(FindingCategory.CLIPPING, "no inverter-level telemetry")

    dc_by_key = {(p.inverter_id, p.timestamp): p.dc_power_w for p in inputs.telemetry
                 if p.string_id is None and p.inverter_id is not None and p.dc_power_w is not None}
    cfg = inputs.section("clipping")
    saturation = float(cfg.get("saturation_ratio", 0.99))
    min_hours = float(cfg.get("min_clipped_hours", 1))
    hours = inputs.interval_hours()

    analyses = []
    findings = []
    for inverter in inputs.config.inverters:
        rated_w = inverter.rated_power_kw * 1000.0
        rows = frame[frame["inverter_id"] == inverter.inverter_id]
        if rows.empty or rated_w <= 0:
            continue
        clipped = rows[rows["ac_power_w"] >= saturation * rated_w]
        clipped_hours = len(clipped) * hours
        lost_kwh = 0.0
        for _, row in clipped.iterrows():
            dc = dc_by_key.get((inverter.inverter_id, row["timestamp"]))
            if dc is None:
                continue
            potential = dc * inverter.efficiency_at(min(dc / rated_w, 1.0))
            lost_kwh += max(potential - row["ac_power_w"], 0.0) * hours / 1000.0
        dc_capacity = inputs.config.dc_capacity_kw(inverter.inverter_id)
        analysis = {
            "inverter_id": inverter.inverter_id,
            "oversizing_ratio": round(dc_capacity / inverter.rated_power_kw, 3) if dc_capacity else None,
            "clipped_hours": round(clipped_hours, 2),
            "clipped_energy_kwh": round(lost_kwh, 3),
        }
        analyses.append(analysis)
        if clipped_hours >= min_hours and lost_kwh > 0:
            findings.append(make_finding(
                inputs, FindingCategory.CLIPPING, f"Inverter {inverter.inverter_id} clipping",
                f"Output saturated for {clipped_hours:.1f} h, about {lost_kwh:.1f} kWh curtailed.",
                lost_kwh, ["DC/AC ratio above inverter capacity"], 0.8,
                [{"type": "clipping", "data": analysis, "description": "Samples at the AC rating"}],
                [f"inverter:{inverter.inverter_id}"], "recurring"
            ))
    if not analyses:
        return CategoryResult.not_evaluated(FindingCategory.CLIPPING, "no producing inverter samples")
    return _evaluated(FindingCategory.CLIPPING, findings, {"inverters": analyses})


# ==============================================================================
# TREND & EVENT CATEGORIES
# ==============================================================================

def analyze_degradation(inputs: AuditInputs) -> CategoryResult:
    cfg = inputs.section("degradation")
    min_days = int(cfg.get("min_days", 14))
    daily: Dict[Any, List[float]] = defaultdict(lambda: [0.0, 0.0])
    for gap in inputs.gaps:
        bucket = daily[gap.timestamp.date()]
        bucket[0] += gap.actual_kwh
        bucket[1] += gap.expected_kwh
    points = sorted((day, a / e) for day, (a, e) in daily.items() if e > 0)
    if len(points) < min_days:
        return CategoryResult.not_evaluated(
            FindingCategory.DEGRADATION, f"needs {min_days} days of gaps, have {len(points)}")

    first_day = points[0][0]
    x = np.array([(day - first_day).days for day, _ in points], dtype=float)
    y = np.array([pi for _, pi in points], dtype=float)
    if np.ptp(x) == 0:
        return CategoryResult.not_evaluated(FindingCategory.DEGRADATION, "all gaps on one day")
    fit = stats.linregress(x, y)
    mean_index = float(np.mean(y))
    rate = fit.slope * 365.0 / mean_index * 100.0 if mean_index > 0 else 0.0
    allowed = float(cfg.get("max_expected_rate_percent_year",
                            inputs.config.losses.annual_degradation))
    details = {"rate_percent_year": round(rate, 3), "r_value": round(float(fit.rvalue), 4),
               "p_value": round(float(fit.pvalue), 6), "days": len(points)}

    excess = -rate - allowed
    if rate >= 0 or excess <= 0 or fit.pvalue > 0.05:
        return _evaluated(FindingCategory.DEGRADATION, [], details)
    loss = inputs.actual_kwh * excess / 100.0 * inputs.period_days / 365.0
    finding = make_finding(
        inputs, FindingCategory.DEGRADATION, "Accelerated performance degradation",
        f"Performance index falls {-rate:.2f}%/year, {excess:.2f} points above the expected rate.",
        loss, ["Potential induced degradation", "Module cell cracks", "Encapsulant browning"],
        min(0.5 + abs(float(fit.rvalue)) * 0.4, 0.9),
        [{"type": "trend", "data": details, "description": "Linear fit of daily performance index"}],
        ["modules"], "constant"
    )
    return _evaluated(FindingCategory.DEGRADATION, [finding], details)


def analyze_outages(inputs: AuditInputs) -> CategoryResult:
    """
    Offline loss is the shortfall of the gaps inside each offline run, each
    gap counted once. Runs with no gap to measure against fall back to the
    anomaly's own expected power.
    """
    hours = inputs.interval_hours()
    offline = _active(inputs, AnomalyType.OFFLINE)
    holes = _active(inputs, AnomalyType.DATA_GAP)

    claimed = set()
    loss = 0.0
    outage_hours = 0.0
    measured = 0
    for anomaly in offline:
        samples = max(int(anomaly.metadata.get("samples", 1)), 1)
        outage_hours += samples * hours
        start, end = offline_window(anomaly)
        covered = [g for g in inputs.gaps if start <= as_utc(g.timestamp) <= end]
        if covered:
            measured += 1
            for gap in covered:
                if gap.key in claimed:
                    continue
                claimed.add(gap.key)
                loss += max(-gap.gap_kwh, 0.0)
        else:
            loss += (anomaly.expected_value or 0.0) * samples * hours / 1000.0
    details = {
        "offline_events": len(offline),
        "offline_hours": round(outage_hours, 2),
        "measured_from_gaps": measured,
        "data_gap_events": len(holes),
        "data_gap_minutes": round(sum(a.metadata.get("gap_minutes", 0.0) for a in holes), 1),
    }
    if loss <= 0:
        return _evaluated(FindingCategory.OUTAGE, [], details)
    finding = make_finding(
        inputs, FindingCategory.OUTAGE, "Generation outages",
        f"{len(offline)} outage event(s) totalling {outage_hours:.1f} h cost about {loss:.1f} kWh.",
        loss, ["Inverter protection trips", "Grid outages", "Breaker operations"], 0.9,
        [{"type": "anomalies", "data": details, "description": "Offline anomalies in the period"}],
        ["inverter", "grid"], "intermittent"
    )
    return _evaluated(FindingCategory.OUTAGE, [finding], details)


SUB_ANALYSES = [
    analyze_soiling,
    analyze_shading,
    analyze_inverter,
    analyze_mismatch,
    analyze_mppt,
    analyze_clipping,
    analyze_degradation,
    analyze_outages,
]
