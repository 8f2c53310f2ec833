# =============================================================================
# Financial Series Analysis — Trend, Anomalies, Peer Gap
# =============================================================================
#
# Pure functions behind the analyze_data tool. Series are newest first.
#
#   trend      recent = first min(4, n) values, older = last min(4, n);
#              percent change of the averages, ±2% deadband →
#              stable | improving | declining; n < 2 → insufficient_data
#   anomalies  n >= 4; values more than 2 population standard deviations
#              from the mean
#   detailed   trend + peer gap + anomalies
#
# Metric names from the model arrive in several spellings
# ("efficiency", "efficiencyRatio", "operating-leverage"); resolve_metric
# maps them onto the keys the data provider uses.
# =============================================================================

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field

from app.agents.tools import AnalysisMode
from app.services.entity_data import FinancialStatement, PeerSet

TREND_DEADBAND_PCT = 2.0
ANOMALY_SIGMA = 2.0

METRIC_ALIASES = {
    "efficiency": "efficiency_ratio",
    "operating-leverage": "operating_leverage",
    "nim": "net_interest_margin",
    "roa": "return_on_assets",
    "roe": "return_on_equity",
    "npl": "non_performing_loans",
}

_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def camel_to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY_RE.sub("_", name).replace("-", "_").lower()


def resolve_metric(name: str) -> str:
    key = name.strip()
    return METRIC_ALIASES.get(key.lower(), camel_to_snake(key))


@dataclass
class DataPoint:
    period: str
    value: float


@dataclass
class Anomaly:
    period: str
    value: float
    deviation: float  # in standard deviations, signed

    def to_dict(self) -> dict:
        return {"period": self.period, "value": self.value, "deviation": f"{self.deviation:.2f}σ"}


@dataclass
class MetricFinding:
    metric: str
    current: float | None
    historical: list[DataPoint]
    trend: str
    peer_average: float | None = None
    peer_count: int | None = None
    vs_peer: str | None = None
    anomalies: list[Anomaly] | None = None

    def to_dict(self) -> dict:
        data: dict = {
            "metric": self.metric,
            "current": self.current,
            "historical": [{"period": p.period, "value": p.value} for p in self.historical],
            "trend": self.trend,
        }
        if self.peer_count is not None:
            data.update(peer_average=self.peer_average, peer_count=self.peer_count, vs_peer=self.vs_peer)
        if self.anomalies is not None:
            data["anomalies"] = [a.to_dict() for a in self.anomalies]
        return data


@dataclass
class DataAnalysis:
    metrics: list[str]
    mode: AnalysisMode
    quarters_analyzed: int
    findings: list[MetricFinding] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "metrics": self.metrics,
            "analysis_type": self.mode.value,
            "quarters_analyzed": self.quarters_analyzed,
            "findings": [f.to_dict() for f in self.findings],
        }


def calculate_trend(values: list[float]) -> str:
    """Recent-vs-older average change, newest value first."""
    if len(values) < 2:
        return "insufficient_data"

    window = min(4, len(values))
    recent_avg = sum(values[:window]) / window
    older_avg = sum(values[-window:]) / window

    if older_avg == 0:
        if recent_avg == 0:
            return "stable"
        return "improving" if recent_avg > 0 else "declining"

    change = (recent_avg - older_avg) / abs(older_avg) * 100
    if abs(change) < TREND_DEADBAND_PCT:
        return "stable"
    return "improving" if change > 0 else "declining"


def detect_anomalies(points: list[DataPoint]) -> list[Anomaly]:
    if len(points) < 4:
        return []
    values = [p.value for p in points]
    mean = sum(values) / len(values)
    std_dev = math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))
    if std_dev == 0:
        return []
    return [
        Anomaly(period=p.period, value=p.value, deviation=(p.value - mean) / std_dev)
        for p in points
        if abs(p.value - mean) > ANOMALY_SIGMA * std_dev
    ]


def _series(statements: list[FinancialStatement], metric: str) -> list[DataPoint]:
    resolved = resolve_metric(metric)
    points: list[DataPoint] = []
    for statement in statements:
        value = statement.metric(resolved)
        if value is None:
            value = statement.metric(metric)
        if value is not None:
            points.append(DataPoint(period=statement.reporting_period, value=float(value)))
    return points


def analyze_series(
    statements: list[FinancialStatement],
    metrics: list[str],
    mode: AnalysisMode,
    quarters: int = 8,
    peers: PeerSet | None = None,
) -> DataAnalysis:
    recent = statements[: max(0, quarters)]
    analysis = DataAnalysis(metrics=list(metrics), mode=mode, quarters_analyzed=len(recent))

    for metric in metrics:
        points = _series(recent, metric)
        if not points:
            continue

        finding = MetricFinding(
            metric=metric,
            current=points[0].value,
            historical=points,
            trend=calculate_trend([p.value for p in points]),
        )

        if mode in (AnalysisMode.PEER_COMPARISON, AnalysisMode.DETAILED) and peers is not None:
            peer_avg = peers.peer_averages.get(resolve_metric(metric), peers.peer_averages.get(metric))
            finding.peer_average = peer_avg
            finding.peer_count = peers.count
            finding.vs_peer = (
                f"{(finding.current - peer_avg) / peer_avg * 100:.2f}%"
                if finding.current is not None and peer_avg
                else "N/A"
            )

        if mode in (AnalysisMode.ANOMALY_DETECTION, AnalysisMode.DETAILED):
            finding.anomalies = detect_anomalies(points)

        analysis.findings.append(finding)

    return analysis
