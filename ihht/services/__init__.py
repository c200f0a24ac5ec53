# noqa
from ihht.services.phase_scheduler import PhaseScheduler
from ihht.services.adaptive_instruction_engine import AdaptiveInstructionEngine, PhaseStats
from ihht.services.altitude_progression_service import AltitudeProgressionEngine
from ihht.services.event_bus import EventBus, Subscription
from ihht.services.reading_feed import ReadingFeed
from ihht.services.session_metrics import SessionMetrics
from ihht.services.session_controller import SessionController

__all__ = [
    "PhaseScheduler",
    "AdaptiveInstructionEngine",
    "PhaseStats",
    "AltitudeProgressionEngine",
    "EventBus",
    "Subscription",
    "ReadingFeed",
    "SessionMetrics",
    "SessionController",
]
