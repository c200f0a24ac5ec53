"""
Session metrics aggregation.

Collects reading and instruction statistics for the active session in
memory, and turns them into the summary fields and the performance scoring
input when the session ends.
"""

from dataclasses import dataclass, field
from typing import Optional

from ihht.domain.models.instruction import AdaptiveInstruction, AltitudeAdjustment, MaskLift
from ihht.domain.models.phase import Phase
from ihht.domain.models.progression import SessionStats, SessionType
from ihht.domain.models.reading import Reading


@dataclass
class SpO2Aggregate:
    """Running min/max/mean of SpO2 samples.

    Attributes:
        count: Samples recorded
        total: Sum of samples
        minimum: Lowest sample
        maximum: Highest sample
    """

    count: int = 0
    total: int = 0
    minimum: Optional[int] = None
    maximum: Optional[int] = None

    @property
    def average(self) -> Optional[float]:
        if self.count == 0:
            return None
        return round(self.total / self.count, 1)

    def record(self, spo2: int) -> None:
        self.count += 1
        self.total += spo2
        if self.minimum is None or spo2 < self.minimum:
            self.minimum = spo2
        if self.maximum is None or spo2 > self.maximum:
            self.maximum = spo2


@dataclass
class SessionMetrics:
    """
    In-memory aggregation for one session.

    SpO2 is aggregated over the whole session and separately over altitude
    phases; performance scoring uses the altitude aggregate because recovery
    readings sit near 100% on enriched air.

    Usage:
        metrics = SessionMetrics()
        metrics.record_reading(reading, Phase.ALTITUDE)
        metrics.record_instruction(instruction)
        stats = metrics.to_session_stats(completion_rate, session_type)
    """

    reading_count: int = 0
    overall: SpO2Aggregate = field(default_factory=SpO2Aggregate)
    altitude: SpO2Aggregate = field(default_factory=SpO2Aggregate)
    heart_rate_count: int = 0
    heart_rate_total: int = 0
    mask_lift_count: int = 0
    altitude_adjustment_count: int = 0
    altitude_changes_confirmed: int = 0

    @property
    def avg_heart_rate(self) -> Optional[float]:
        if self.heart_rate_count == 0:
            return None
        return round(self.heart_rate_total / self.heart_rate_count, 1)

    def record_reading(self, reading: Reading, phase: Phase) -> None:
        self.reading_count += 1
        if reading.heart_rate is not None:
            self.heart_rate_count += 1
            self.heart_rate_total += reading.heart_rate
        if not reading.has_spo2:
            return
        self.overall.record(reading.spo2)
        if phase == Phase.ALTITUDE:
            self.altitude.record(reading.spo2)

    def record_instruction(self, instruction: AdaptiveInstruction) -> None:
        if isinstance(instruction, MaskLift):
            self.mask_lift_count += 1
        elif isinstance(instruction, AltitudeAdjustment):
            self.altitude_adjustment_count += 1

    def to_session_stats(
        self, completion_rate: float, session_type: SessionType
    ) -> SessionStats:
        return SessionStats(
            mask_lift_count=self.mask_lift_count,
            min_spo2=self.altitude.minimum,
            avg_spo2=self.altitude.average,
            completion_rate=completion_rate,
            session_type=session_type,
        )
