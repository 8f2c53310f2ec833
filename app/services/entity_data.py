# =============================================================================
# Entity Data Provider — Structured Financials for the Research Agent
# =============================================================================
#
# The agent's analyze_data tool reads quarterly financials and a peer
# group through this narrow interface. Storage of raw statements lives
# elsewhere; StaticEntityDataProvider serves data handed to it in memory
# (tests, batch jobs that already loaded the numbers).
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass
class EntityProfile:
    """Who is being researched. total_assets drives the memory size tier."""

    entity_id: str
    name: str
    city: str | None = None
    state: str | None = None
    region: str | None = None
    total_assets: float | None = None

    @property
    def location(self) -> str:
        return ", ".join(p for p in (self.city, self.state) if p)


@dataclass
class FinancialStatement:
    """One reporting period. `ratios` and `values` are keyed by metric name."""

    reporting_period: str
    ratios: dict[str, float] = field(default_factory=dict)
    values: dict[str, float] = field(default_factory=dict)
    total_assets: float | None = None

    def metric(self, name: str) -> float | None:
        value = self.ratios.get(name)
        if value is None:
            value = self.values.get(name)
        return value


@dataclass
class PeerSet:
    peer_ids: list[str] = field(default_factory=list)
    peer_averages: dict[str, float] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.peer_ids)


class EntityDataProvider(Protocol):
    def get_financial_series(self, entity_id: str, quarters: int) -> list[FinancialStatement]:
        """Up to `quarters` statements, newest first."""
        ...

    def get_peer_set(self, entity_id: str) -> PeerSet | None:
        ...


class StaticEntityDataProvider:
    def __init__(
        self,
        series: dict[str, list[FinancialStatement]] | None = None,
        peers: dict[str, PeerSet] | None = None,
    ) -> None:
        self._series = series or {}
        self._peers = peers or {}

    def get_financial_series(self, entity_id: str, quarters: int) -> list[FinancialStatement]:
        return list(self._series.get(entity_id, []))[: max(0, quarters)]

    def get_peer_set(self, entity_id: str) -> PeerSet | None:
        return self._peers.get(entity_id)
