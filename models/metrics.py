"""Dataclasses for metric samples and derived series views."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from models.enums import TrendDirection


@dataclass
class MetricSample:
    id: Optional[int] = None
    scope: str = ""
    series_key: str = ""
    value: float = 0.0
    label: Optional[str] = None
    row_count: int = 0
    source: str = "report"
    actor: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "scope": self.scope,
            "series_key": self.series_key,
            "value": self.value,
            "label": self.label,
            "row_count": self.row_count,
            "source": self.source,
            "actor": self.actor,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class RecordResult:
    stored: bool = False
    sample_id: Optional[int] = None
    # Populated when the engine evaluates synchronously after a write
    outcomes: dict = field(default_factory=dict)


@dataclass
class Trend:
    direction: TrendDirection = TrendDirection.NEUTRAL
    percentage: float = 0.0
    previous_value: Optional[float] = None
    has_history: bool = False


@dataclass
class SeriesStatistics:
    count: int = 0
    min: Optional[float] = None
    max: Optional[float] = None
    avg: Optional[float] = None
    first_recorded: Optional[datetime] = None
    last_recorded: Optional[datetime] = None
