"""
Session controller: orchestrates one live training session.

Owns the PhaseScheduler, the AdaptiveInstructionEngine and the session
metrics, drives the tick loop, routes readings, publishes session events and
keeps the persistence collaborators up to date.

Concurrency model:
    - Single asyncio event loop; every mutation holds self._lock
    - One tick task calls tick(tick_interval_seconds) every interval
    - Persistence writes run as tracked background tasks; failures are
      logged and retried at the next opportunity (dirty snapshot, readings
      put back at the front of the buffer)
    - end_session is the single cancellation point
"""

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

from ihht.core.config import settings, training_config
from ihht.core.exceptions import (
    InvalidConfigError,
    NoActiveSessionError,
    PersistenceWriteError,
    RecoveryDataCorruptOrStaleError,
    SensorDisconnectedError,
    SessionAlreadyActiveError,
)
from ihht.core.logging import bind_context, clear_context
from ihht.domain.models.instruction import AdaptiveInstruction, MaskLift
from ihht.domain.models.phase import Phase, PhaseTransition
from ihht.domain.models.progression import (
    AltitudeRecommendation,
    ProgressionData,
    SessionType,
)
from ihht.domain.models.reading import Reading
from ihht.domain.models.session import (
    RecoverySnapshot,
    SessionConfig,
    SessionEvent,
    SessionEventType,
    SessionInfo,
    SessionSummary,
)
from ihht.services.adaptive_instruction_engine import AdaptiveInstructionEngine
from ihht.services.altitude_progression_service import AltitudeProgressionEngine
from ihht.services.event_bus import EventBus, EventHandler, Subscription
from ihht.services.phase_scheduler import PhaseScheduler
from ihht.services.protocols import (
    IReadingSink,
    IReadingSource,
    IRecoveryStore,
    ISessionStore,
    Unsubscribe,
)
from ihht.services.session_metrics import SessionMetrics

log = structlog.get_logger(__name__)

InstructionCallback = Callable[[AdaptiveInstruction], None]

PAUSE_REASON_MANUAL = "manual"
PAUSE_REASON_DEVICE_DISCONNECTED = "device_disconnected"
END_REASON_COMPLETED = "completed"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActiveSession:
    """
    In-memory state of the running session.

    The phase state itself lives in the PhaseScheduler.
    """

    session_id: str
    user_id: str
    config: SessionConfig
    session_type: SessionType
    start_time: datetime
    starting_altitude_level: int
    current_altitude_level: int
    metrics: SessionMetrics = field(default_factory=SessionMetrics)
    reading_buffer: List[Reading] = field(default_factory=list)
    seconds_since_snapshot: float = 0.0
    snapshot_dirty: bool = False
    recommendation: Optional[AltitudeRecommendation] = None


class SessionController:
    """
    Orchestrator for a single active training session.

    Usage:
        controller = SessionController(session_store, recovery_store,
                                       reading_sink, reading_source=feed)
        controller.set_adaptive_instruction_callback(show_instruction)
        await controller.start_session("s-1", SessionConfig())
        ...
        summary = await controller.end_session()
    """

    def __init__(
        self,
        session_store: ISessionStore,
        recovery_store: IRecoveryStore,
        reading_sink: IReadingSink,
        reading_source: Optional[IReadingSource] = None,
        progression_engine: Optional[AltitudeProgressionEngine] = None,
        transition_seconds: Optional[int] = None,
        tick_interval_seconds: Optional[float] = None,
        snapshot_interval_seconds: Optional[int] = None,
        recovery_ttl_seconds: Optional[int] = None,
        reading_batch_size: Optional[int] = None,
        default_user_id: Optional[str] = None,
        auto_tick: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize controller.

        Args:
            session_store: Session history persistence
            recovery_store: Recovery snapshot persistence
            reading_sink: Batched reading persistence
            reading_source: Sensor feed (None: readings only via add_reading)
            progression_engine: Altitude recommendation engine (default created)
            transition_seconds: Changeover length (defaults to training_config.yaml)
            tick_interval_seconds: Tick loop interval (defaults to settings)
            snapshot_interval_seconds: Periodic snapshot interval (defaults to settings)
            recovery_ttl_seconds: Snapshot expiry (defaults to settings)
            reading_batch_size: Readings buffered before a flush (defaults to settings)
            default_user_id: User for sessions started without one (defaults to settings)
            auto_tick: Run the background tick task (disable to drive tick() manually)
            clock: Wall clock returning aware datetimes (default: utc now)
        """
        self.session_store = session_store
        self.recovery_store = recovery_store
        self.reading_sink = reading_sink
        self.reading_source = reading_source
        self.progression_engine = progression_engine or AltitudeProgressionEngine()

        self.transition_seconds = (
            training_config.phases.transition_seconds
            if transition_seconds is None
            else transition_seconds
        )
        self.tick_interval_seconds = tick_interval_seconds or settings.tick_interval_seconds
        self.snapshot_interval_seconds = (
            snapshot_interval_seconds or settings.snapshot_interval_seconds
        )
        self.recovery_ttl_seconds = recovery_ttl_seconds or settings.recovery_ttl_seconds
        self.reading_batch_size = reading_batch_size or settings.reading_batch_size
        self.default_user_id = default_user_id or settings.default_user_id
        self.auto_tick = auto_tick
        self._now = clock or _utc_now

        self._lock = asyncio.Lock()
        self._snapshot_lock = asyncio.Lock()
        self._bus = EventBus()
        self._engine = AdaptiveInstructionEngine()
        self._scheduler: Optional[PhaseScheduler] = None
        self._session: Optional[ActiveSession] = None
        self._instruction_callback: Optional[InstructionCallback] = None

        self._tick_task: Optional[asyncio.Task] = None
        self._unsubscribe_source: Optional[Unsubscribe] = None
        self._pending_writes: Set[asyncio.Task] = set()
        self._callback_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Read model and subscriptions
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self._session is not None

    @property
    def pending_write_count(self) -> int:
        return len(self._pending_writes)

    def get_session_info(self) -> SessionInfo:
        """Snapshot of the live session for the presentation layer."""
        session = self._session
        scheduler = self._scheduler
        if session is None or scheduler is None:
            return SessionInfo(is_active=False)

        state = scheduler.state
        return SessionInfo(
            is_active=True,
            session_id=session.session_id,
            current_phase=state.current_phase,
            current_cycle=state.current_cycle,
            total_cycles=session.config.total_cycles,
            phase_time_remaining_seconds=state.phase_time_remaining_seconds,
            next_phase_after_transition=state.next_phase_after_transition,
            is_paused=state.is_paused,
            session_start_time=session.start_time,
            current_altitude_level=session.current_altitude_level,
            session_type=session.session_type,
            config=session.config,
        )

    def subscribe(
        self,
        handler: EventHandler,
        event_type: Optional[SessionEventType] = None,
    ) -> Subscription:
        """Subscribe to session events (all types when event_type is None)."""
        return self._bus.subscribe(handler, event_type)

    def set_adaptive_instruction_callback(
        self, callback: Optional[InstructionCallback]
    ) -> None:
        """Register the single consumer of adaptive instructions (None clears it)."""
        self._instruction_callback = callback

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_session(
        self,
        session_id: str,
        config: SessionConfig,
        *,
        user_id: Optional[str] = None,
        session_type: Optional[SessionType] = None,
    ) -> SessionInfo:
        """
        Start a new session.

        When config.starting_altitude_level is None the progression engine
        recommends one; when session_type is None it is chosen from history.

        Raises:
            SessionAlreadyActiveError: A session is already running (it is
                left untouched)
            InvalidConfigError: Non-positive cycles or durations
        """
        async with self._lock:
            if self._session is not None:
                raise SessionAlreadyActiveError(
                    f"Session {self._session.session_id} is already active"
                )
            PhaseScheduler.validate_config(config)

            user_id = user_id or self.default_user_id
            recommendation: Optional[AltitudeRecommendation] = None

            data: Optional[ProgressionData] = None
            if config.starting_altitude_level is None or session_type is None:
                data = await self._load_progression_data(user_id)

            if config.starting_altitude_level is None:
                recommendation = self._recommend(data)
                config = config.model_copy(
                    update={"starting_altitude_level": recommendation.level}
                )
            if session_type is None:
                if data is None:
                    # History unavailable: calibration band is the safe default
                    session_type = SessionType.CALIBRATION
                else:
                    session_type = self.progression_engine.select_session_type(data)

            assert config.starting_altitude_level is not None
            scheduler = PhaseScheduler(self.transition_seconds)
            scheduler.start(config)

            session = ActiveSession(
                session_id=session_id,
                user_id=user_id,
                config=config,
                session_type=session_type,
                start_time=self._now(),
                starting_altitude_level=config.starting_altitude_level,
                current_altitude_level=config.starting_altitude_level,
                recommendation=recommendation,
            )
            self._activate(session, scheduler)

            log.info(
                "session_started",
                session_id=session_id,
                user_id=user_id,
                session_type=session_type.value,
                altitude_level=session.starting_altitude_level,
                total_cycles=config.total_cycles,
            )
            self._publish(
                SessionEventType.SESSION_STARTED,
                session,
                config=config.model_dump(mode="json"),
                session_type=session_type.value,
                altitude_level=session.starting_altitude_level,
                recommendation=(
                    recommendation.model_dump(mode="json") if recommendation else None
                ),
                recovered=False,
            )
            return self.get_session_info()

    async def pause_session(self, reason: str = PAUSE_REASON_MANUAL) -> bool:
        """
        Pause phase time consumption.

        Returns:
            False when already paused or completed

        Raises:
            NoActiveSessionError: No session is running
        """
        async with self._lock:
            session, scheduler = self._require_active()
            if not scheduler.pause():
                return False

            log.info("session_paused", session_id=session.session_id, reason=reason)
            self._publish(SessionEventType.SESSION_PAUSED, session, reason=reason)
            self._schedule_snapshot(session)
            return True

    async def resume_session(self) -> bool:
        """
        Resume a paused session.

        Returns:
            False when the session was not paused

        Raises:
            NoActiveSessionError: No session is running
        """
        async with self._lock:
            session, scheduler = self._require_active()
            if not scheduler.resume():
                return False

            log.info("session_resumed", session_id=session.session_id)
            self._publish(SessionEventType.SESSION_RESUMED, session)
            self._schedule_snapshot(session)
            return True

    async def skip_to_next_phase(self) -> bool:
        """
        Skip the rest of the current phase.

        Returns:
            False (no state change) when paused or completed

        Raises:
            NoActiveSessionError: No session is running
        """
        async with self._lock:
            session, scheduler = self._require_active()
            if not scheduler.skip():
                return False

            transition = scheduler.last_transition
            assert transition is not None
            completed = self._after_transitions(session, scheduler, [transition])

        if completed:
            await self.end_session(reason=END_REASON_COMPLETED)
        return True

    async def end_session(self, reason: str = "manual") -> Optional[SessionSummary]:
        """
        End the active session.

        Stops the tick task, unsubscribes from the reading source, waits for
        pending writes, flushes buffered readings, persists the summary and
        deletes the recovery snapshot.

        Returns:
            Session summary, or None when no session was active
        """
        async with self._lock:
            session = self._session
            scheduler = self._scheduler
            if session is None or scheduler is None:
                return None

            # Completion wins over a manual end that got the lock first
            if scheduler.is_completed:
                reason = END_REASON_COMPLETED

            self._session = None
            await self._stop_background(cancel_current=False)

            await self.wait_for_pending_writes()
            await self._flush_remaining(session)

            summary = self._build_summary(session, scheduler, reason)
            try:
                await self.session_store.save_session_summary(summary)
            except Exception as e:
                error = PersistenceWriteError(f"Session summary write failed: {e}")
                log.error(
                    "session_summary_write_failed",
                    session_id=session.session_id,
                    error=error.message,
                )

            await self._delete_snapshot()
            self._scheduler = None

            log.info(
                "session_ended",
                session_id=session.session_id,
                reason=reason,
                duration_seconds=summary.duration_seconds,
                cycles_completed=summary.cycles_completed,
                mask_lifts=summary.mask_lift_count,
                performance=(
                    summary.performance.category.value if summary.performance else None
                ),
            )
            self._publish(
                SessionEventType.SESSION_ENDED,
                session,
                reason=reason,
                summary=summary.model_dump(mode="json"),
            )
            clear_context()
            return summary

    async def shutdown(self) -> None:
        """
        Stop background work without ending the session.

        A running session keeps its (freshly written) recovery snapshot so it
        can be resumed after restart.
        """
        async with self._lock:
            session = self._session
            await self._stop_background(cancel_current=True)
            if session is not None:
                self._schedule_snapshot(session)
                await self.wait_for_pending_writes()
                await self._flush_remaining(session)
                log.info("session_suspended_on_shutdown", session_id=session.session_id)
            self._session = None
            self._scheduler = None

        for task in list(self._callback_tasks):
            task.cancel()
        self._bus.clear()
        log.info("session_controller_shutdown")

    # ------------------------------------------------------------------
    # Ticks and readings
    # ------------------------------------------------------------------

    async def tick(self, elapsed_seconds: float) -> List[PhaseTransition]:
        """
        Advance the phase timer.

        Writes a recovery snapshot on every transition and every
        snapshot_interval_seconds of ticking. Ends the session with reason
        "completed" once the last recovery phase expires.

        Returns:
            Transitions that happened (empty when no session is active)
        """
        async with self._lock:
            session = self._session
            scheduler = self._scheduler
            if session is None or scheduler is None:
                return []

            was_paused = scheduler.state.is_paused
            transitions = scheduler.tick(elapsed_seconds)
            if not was_paused:
                session.seconds_since_snapshot += elapsed_seconds

            state = scheduler.state
            self._publish(
                SessionEventType.PHASE_UPDATE,
                session,
                phase=state.current_phase.value,
                cycle=state.current_cycle,
                phase_time_remaining_seconds=state.phase_time_remaining_seconds,
                is_paused=state.is_paused,
            )

            completed = False
            if transitions:
                completed = self._after_transitions(session, scheduler, transitions)
            elif (
                session.snapshot_dirty
                or session.seconds_since_snapshot >= self.snapshot_interval_seconds
            ):
                self._schedule_snapshot(session)

        if completed:
            await self.end_session(reason=END_REASON_COMPLETED)
        return transitions

    async def add_reading(self, reading: Reading) -> Optional[AdaptiveInstruction]:
        """
        Ingest a reading.

        The reading is buffered for persistence. While unpaused it is also
        evaluated by the instruction engine; a resulting instruction is passed
        to the instruction callback and returned.
        """
        async with self._lock:
            session = self._session
            scheduler = self._scheduler
            if session is None or scheduler is None:
                log.debug("reading_ignored_no_session")
                return None

            state = scheduler.state
            session.metrics.record_reading(reading, state.current_phase)
            session.reading_buffer.append(reading)
            if len(session.reading_buffer) >= self.reading_batch_size:
                self._schedule_reading_flush(session)

            if state.is_paused or state.current_phase == Phase.COMPLETED:
                return None

            instruction = self._engine.on_reading(reading, state)
            if instruction is None:
                return None

            session.metrics.record_instruction(instruction)
            event_type = (
                "mask_lift" if isinstance(instruction, MaskLift) else "dial_adjustment"
            )
            self._track_write(
                self._write_adaptive_event(
                    session.session_id,
                    event_type,
                    instruction=instruction,
                    altitude_level=session.current_altitude_level,
                )
            )
            self._deliver_instruction(instruction)
            return instruction

    async def set_altitude_level(self, level: int) -> None:
        """
        Confirm that the user turned the altitude dial.

        Re-arms altitude adjustment suggestions.

        Raises:
            InvalidConfigError: level outside the configured range
            NoActiveSessionError: No session is running
        """
        progression = training_config.progression
        if not progression.min_level <= level <= progression.max_level:
            raise InvalidConfigError(
                f"Altitude level must be between {progression.min_level} and "
                f"{progression.max_level}, got {level}"
            )

        async with self._lock:
            session, _ = self._require_active()
            previous = session.current_altitude_level
            session.current_altitude_level = level
            session.metrics.altitude_changes_confirmed += 1
            self._engine.set_altitude_level(level)

            self._track_write(
                self._write_adaptive_event(
                    session.session_id,
                    "dial_adjustment_confirmed",
                    altitude_level=level,
                )
            )
            self._publish(
                SessionEventType.ALTITUDE_LEVEL_CHANGED,
                session,
                previous_level=previous,
                new_level=level,
            )
            self._schedule_snapshot(session)

    async def handle_sensor_disconnect(self, error: Optional[Exception] = None) -> bool:
        """
        Pause the session after the sensor feed was lost.

        Returns:
            True when the session was paused by this call
        """
        disconnect = SensorDisconnectedError(
            f"Sensor disconnected: {error}" if error else "Sensor disconnected"
        )
        log.warning("sensor_disconnected", error=disconnect.message)
        try:
            return await self.pause_session(reason=PAUSE_REASON_DEVICE_DISCONNECTED)
        except NoActiveSessionError:
            return False

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def get_recoverable_session(self) -> Optional[RecoverySnapshot]:
        """
        Return the stored snapshot if it can be resumed.

        Corrupt, outdated and expired snapshots are deleted and None returned.
        """
        try:
            snapshot = await self.recovery_store.load()
        except RecoveryDataCorruptOrStaleError as e:
            log.warning("recovery_snapshot_discarded", reason=e.message)
            await self._delete_snapshot()
            return None
        except Exception as e:
            log.error("recovery_snapshot_load_failed", error=str(e))
            return None

        if snapshot is None:
            return None

        active = self._session
        if active is not None and active.session_id == snapshot.session_id:
            return None

        last_persisted = snapshot.last_persisted_at
        if last_persisted.tzinfo is None:
            last_persisted = last_persisted.replace(tzinfo=timezone.utc)
        age = (self._now() - last_persisted).total_seconds()
        # A timestamp from the future (clock skew) cannot be aged
        if age < 0 or age > self.recovery_ttl_seconds:
            log.info(
                "recovery_snapshot_expired",
                session_id=snapshot.session_id,
                age_seconds=round(age),
                ttl_seconds=self.recovery_ttl_seconds,
            )
            await self._delete_snapshot()
            return None

        try:
            PhaseScheduler.validate_restorable(snapshot.config, snapshot.phase_state)
        except InvalidConfigError as e:
            log.warning(
                "recovery_snapshot_discarded",
                session_id=snapshot.session_id,
                reason=e.message,
            )
            await self._delete_snapshot()
            return None

        return snapshot

    async def decline_session_recovery(self) -> None:
        """Discard the stored snapshot."""
        log.info("session_recovery_declined")
        await self._delete_snapshot()

    async def resume_recovered_session(self) -> SessionInfo:
        """
        Resume the stored session.

        The restored session starts paused; resume_session() continues it
        once the user is ready.

        Raises:
            NoActiveSessionError: No recoverable snapshot
            SessionAlreadyActiveError: Another session is running
        """
        snapshot = await self.get_recoverable_session()
        if snapshot is None:
            raise NoActiveSessionError("No recoverable session")

        async with self._lock:
            if self._session is not None:
                raise SessionAlreadyActiveError(
                    f"Session {self._session.session_id} is already active"
                )

            phase_state = snapshot.phase_state.model_copy(update={"is_paused": True})
            scheduler = PhaseScheduler(self.transition_seconds)
            scheduler.restore(snapshot.config, phase_state)

            starting_level = snapshot.config.starting_altitude_level
            session = ActiveSession(
                session_id=snapshot.session_id,
                user_id=snapshot.user_id,
                config=snapshot.config,
                session_type=snapshot.session_type,
                start_time=snapshot.session_start_time,
                starting_altitude_level=(
                    starting_level
                    if starting_level is not None
                    else snapshot.current_altitude_level
                ),
                current_altitude_level=snapshot.current_altitude_level,
            )
            self._activate(session, scheduler)

            log.info(
                "session_recovered",
                session_id=session.session_id,
                phase=phase_state.current_phase.value,
                cycle=phase_state.current_cycle,
            )
            self._publish(
                SessionEventType.SESSION_STARTED,
                session,
                config=session.config.model_dump(mode="json"),
                session_type=session.session_type.value,
                altitude_level=session.current_altitude_level,
                recommendation=None,
                recovered=True,
            )
            return self.get_session_info()

    # ------------------------------------------------------------------
    # Progression
    # ------------------------------------------------------------------

    async def recommend_starting_altitude(
        self, user_id: Optional[str] = None
    ) -> AltitudeRecommendation:
        """Recommend a starting altitude for the user's next session."""
        data = await self._load_progression_data(user_id or self.default_user_id)
        return self._recommend(data)

    def _recommend(self, data: Optional[ProgressionData]) -> AltitudeRecommendation:
        if data is None:
            return self.progression_engine.fallback_recommendation(
                "session history unavailable"
            )
        return self.progression_engine.recommend_starting_altitude(data)

    async def _load_progression_data(self, user_id: str) -> Optional[ProgressionData]:
        try:
            return await self.session_store.get_user_progression_data(user_id)
        except Exception as e:
            log.error("progression_data_load_failed", user_id=user_id, error=str(e))
            return None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def wait_for_pending_writes(self) -> None:
        """Wait until every background write scheduled so far has finished."""
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    def _track_write(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)
        return task

    def _build_snapshot(self, session: ActiveSession) -> RecoverySnapshot:
        assert self._scheduler is not None
        return RecoverySnapshot(
            session_id=session.session_id,
            user_id=session.user_id,
            config=session.config,
            phase_state=self._scheduler.state,
            session_start_time=session.start_time,
            last_persisted_at=self._now(),
            current_altitude_level=session.current_altitude_level,
            session_type=session.session_type,
        )

    def _schedule_snapshot(self, session: ActiveSession) -> None:
        session.seconds_since_snapshot = 0.0
        session.snapshot_dirty = False
        snapshot = self._build_snapshot(session)
        self._track_write(self._write_snapshot(session, snapshot))

    async def _write_snapshot(
        self, session: ActiveSession, snapshot: RecoverySnapshot
    ) -> None:
        # Serialized so an older snapshot never overwrites a newer one
        async with self._snapshot_lock:
            try:
                await self.recovery_store.save(snapshot)
            except Exception as e:
                error = PersistenceWriteError(f"Recovery snapshot write failed: {e}")
                session.snapshot_dirty = True
                log.error(
                    "snapshot_write_failed",
                    session_id=session.session_id,
                    error=error.message,
                )

    async def _delete_snapshot(self) -> None:
        try:
            await self.recovery_store.delete()
        except Exception as e:
            log.error("snapshot_delete_failed", error=str(e))

    def _schedule_reading_flush(self, session: ActiveSession) -> None:
        batch = session.reading_buffer
        session.reading_buffer = []
        self._track_write(self._flush_readings(session, batch))

    async def _flush_readings(self, session: ActiveSession, batch: List[Reading]) -> bool:
        try:
            await self.reading_sink.save_readings(session.session_id, batch)
        except Exception as e:
            error = PersistenceWriteError(f"Reading batch write failed: {e}")
            # Oldest readings go back to the front of the buffer
            session.reading_buffer[:0] = batch
            log.error(
                "reading_flush_failed",
                session_id=session.session_id,
                batch_size=len(batch),
                buffered=len(session.reading_buffer),
                error=error.message,
            )
            return False
        log.debug("readings_flushed", session_id=session.session_id, count=len(batch))
        return True

    async def _flush_remaining(self, session: ActiveSession) -> None:
        if not session.reading_buffer:
            return
        batch = session.reading_buffer
        session.reading_buffer = []
        await self._flush_readings(session, batch)

    async def _write_adaptive_event(
        self,
        session_id: str,
        event_type: str,
        instruction: Optional[AdaptiveInstruction] = None,
        altitude_level: Optional[int] = None,
    ) -> None:
        try:
            await self.session_store.record_adaptive_event(
                session_id,
                event_type,
                instruction=instruction,
                altitude_level=altitude_level,
            )
        except Exception as e:
            log.warning(
                "adaptive_event_write_failed",
                session_id=session_id,
                event_type=event_type,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _activate(self, session: ActiveSession, scheduler: PhaseScheduler) -> None:
        """Install a new session, start the tick task and subscribe to the feed."""
        self._session = session
        self._scheduler = scheduler
        self._engine.reset(session.session_type, session.current_altitude_level)
        bind_context(session_id=session.session_id, user_id=session.user_id)

        if self.reading_source is not None:
            self._unsubscribe_source = self.reading_source.subscribe(
                self._on_reading, self._on_disconnect
            )
        if self.auto_tick:
            self._tick_task = asyncio.create_task(self._run_tick_loop())

        self._schedule_snapshot(session)

    async def _stop_background(self, cancel_current: bool) -> None:
        """Unsubscribe from the feed and cancel the tick task."""
        if self._unsubscribe_source is not None:
            self._unsubscribe_source()
            self._unsubscribe_source = None

        task = self._tick_task
        self._tick_task = None
        if task is None or task.done():
            return
        # The tick task ends its own session; it must not cancel itself
        if task is asyncio.current_task() and not cancel_current:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run_tick_loop(self) -> None:
        interval = self.tick_interval_seconds
        log.debug("tick_loop_started", interval=interval)
        while self._session is not None:
            await asyncio.sleep(interval)
            try:
                await self.tick(interval)
            except Exception as e:
                log.error("tick_failed", error=str(e), exc_info=True)
        log.debug("tick_loop_stopped")

    def _after_transitions(
        self,
        session: ActiveSession,
        scheduler: PhaseScheduler,
        transitions: List[PhaseTransition],
    ) -> bool:
        """Publish transitions and snapshot; return True when the session completed."""
        for transition in transitions:
            self._publish(
                SessionEventType.PHASE_ADVANCED,
                session,
                from_phase=transition.from_phase.value,
                to_phase=transition.to_phase.value,
                from_cycle=transition.from_cycle,
                to_cycle=transition.to_cycle,
                skipped=transition.skipped,
            )

        if scheduler.is_completed:
            log.info("session_completed", session_id=session.session_id)
            self._publish(
                SessionEventType.SESSION_COMPLETED,
                session,
                total_cycles=session.config.total_cycles,
            )
            return True

        self._schedule_snapshot(session)
        return False

    def _build_summary(
        self, session: ActiveSession, scheduler: PhaseScheduler, reason: str
    ) -> SessionSummary:
        end_time = self._now()
        state = scheduler.state
        completed = state.current_phase == Phase.COMPLETED

        if completed:
            completion_rate = 1.0
            cycles_completed = session.config.total_cycles
        else:
            planned = scheduler.planned_training_seconds
            completion_rate = min(1.0, scheduler.elapsed_training_seconds / planned)
            cycles_completed = state.current_cycle - 1

        metrics = session.metrics
        performance = self.progression_engine.score_session_performance(
            metrics.to_session_stats(completion_rate, session.session_type)
        )

        return SessionSummary(
            session_id=session.session_id,
            user_id=session.user_id,
            start_time=session.start_time,
            end_time=end_time,
            duration_seconds=max(0, int((end_time - session.start_time).total_seconds())),
            end_reason=reason,
            session_type=session.session_type,
            total_cycles=session.config.total_cycles,
            cycles_completed=cycles_completed,
            completion_rate=round(completion_rate, 3),
            starting_altitude_level=session.starting_altitude_level,
            ending_altitude_level=session.current_altitude_level,
            mask_lift_count=metrics.mask_lift_count,
            altitude_adjustment_count=metrics.altitude_adjustment_count,
            min_spo2=metrics.overall.minimum,
            max_spo2=metrics.overall.maximum,
            avg_spo2=metrics.overall.average,
            avg_heart_rate=metrics.avg_heart_rate,
            reading_count=metrics.reading_count,
            performance=performance,
        )

    def _require_active(self):
        if self._session is None or self._scheduler is None:
            raise NoActiveSessionError("No active session")
        return self._session, self._scheduler

    def _publish(
        self, event_type: SessionEventType, session: ActiveSession, **data: Any
    ) -> None:
        event_data: Dict[str, Any] = data
        self._bus.publish(
            SessionEvent(
                type=event_type,
                session_id=session.session_id,
                timestamp=self._now(),
                data=event_data,
            )
        )

    def _deliver_instruction(self, instruction: AdaptiveInstruction) -> None:
        callback = self._instruction_callback
        if callback is None:
            return
        try:
            callback(instruction)
        except Exception as e:
            log.error(
                "instruction_callback_failed",
                instruction_type=instruction.type,
                error=str(e),
                exc_info=True,
            )

    def _on_reading(self, reading: Reading) -> None:
        self._spawn_callback(self._ingest(reading))

    def _on_disconnect(self, error: Optional[Exception] = None) -> None:
        self._spawn_callback(self.handle_sensor_disconnect(error))

    def _spawn_callback(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            log.error("reading_source_callback_outside_event_loop")
            return
        task = loop.create_task(coro)
        self._callback_tasks.add(task)
        task.add_done_callback(self._callback_tasks.discard)

    async def _ingest(self, reading: Reading) -> None:
        try:
            await self.add_reading(reading)
        except Exception as e:
            log.error("reading_ingest_failed", error=str(e), exc_info=True)

    async def drain_callbacks(self) -> None:
        """Wait for readings and disconnects delivered by the source to be processed."""
        while self._callback_tasks:
            await asyncio.gather(*list(self._callback_tasks), return_exceptions=True)
