import math
from dataclasses import dataclass
from typing import Dict, Optional
from ..models.event import Event


@dataclass
class RunningStats:
    count: int = 0
    mean: float = 0.0
    m2: float = 0.0

    def update(self, value: float) -> None:
        # Welford's online algorithm
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (value - self.mean)

    @property
    def stddev(self) -> float:
        if self.count < 2:
            return 0.0
        return math.sqrt(self.m2 / (self.count - 1))


class AnomalyDetector:
    """
    Scores events by how far their numeric payload fields sit from the
    running mean of previous values for the same device and field.

    The score is the largest absolute z-score across fields. Fields are only
    scored after `warmup` samples have been seen for them, and at most
    `max_fields` fields are tracked per device.
    """

    def __init__(self, warmup: int = 10, max_fields: int = 32):
        self.warmup = warmup
        self.max_fields = max_fields
        self._stats: Dict[str, Dict[str, RunningStats]] = {}

    def forget(self, device_id: str) -> None:
        """Drop the running statistics of a device, e.g. once it is pruned"""
        self._stats.pop(device_id, None)

    def score(self, event: Event) -> Optional[float]:
        score: Optional[float] = None
        for key, value in event.payload.items():
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            try:
                value = float(value)
            except OverflowError:
                continue
            if not math.isfinite(value):
                continue
            fields = self._stats.setdefault(event.device_id, {})
            stats = fields.get(key)
            if stats is None:
                if len(fields) >= self.max_fields:
                    continue
                stats = fields[key] = RunningStats()
            if stats.count >= self.warmup:
                stddev = stats.stddev
                # constant series carry no spread to score against
                if stddev > 0:
                    z = abs(value - stats.mean) / stddev
                    score = z if score is None else max(score, z)
            stats.update(value)
        return score

    def annotate(self, event: Event) -> Event:
        score = self.score(event)
        if score is None:
            return event
        metadata = event.metadata.model_copy(update={"anomaly_score": round(score, 3)})
        return event.model_copy(update={"metadata": metadata})
