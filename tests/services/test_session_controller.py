"""
Tests for SessionController.

The controller is driven with auto_tick=False and a manual clock so phase
time and wall time are fully deterministic; the auto-tick loop has its own
test at the end.
"""

import asyncio
from unittest.mock import AsyncMock
from datetime import timedelta

import pytest

from ihht.core.exceptions import (
    InvalidConfigError,
    NoActiveSessionError,
    SessionAlreadyActiveError,
)
from ihht.domain.models.instruction import MaskLift
from ihht.domain.models.phase import Phase, PhaseState
from ihht.domain.models.progression import (
    PerformanceCategory,
    ProgressionData,
    SessionHistoryRecord,
    SessionType,
)
from ihht.domain.models.session import SessionConfig, SessionEventType
from ihht.services.reading_feed import ReadingFeed
from ihht.services.session_controller import SessionController

CONFIG = SessionConfig(
    total_cycles=3,
    hypoxic_duration_seconds=420,
    hyperoxic_duration_seconds=180,
    starting_altitude_level=6,
)


def build_controller(session_store, recovery_store, reading_sink, clock, **kwargs):
    options = dict(
        transition_seconds=10,
        snapshot_interval_seconds=10,
        recovery_ttl_seconds=600,
        reading_batch_size=5,
        auto_tick=False,
        clock=clock,
    )
    options.update(kwargs)
    return SessionController(session_store, recovery_store, reading_sink, **options)


@pytest.fixture
async def controller(session_store, recovery_store, reading_sink, clock):
    controller = build_controller(session_store, recovery_store, reading_sink, clock)
    yield controller
    await controller.shutdown()


@pytest.fixture
def events(controller):
    received = []
    controller.subscribe(received.append)
    return received


def event_types(events):
    return [e.type for e in events]


class TestStartSession:
    @pytest.mark.asyncio
    async def test_start_initializes_cycle_one(self, controller, recovery_store):
        info = await controller.start_session("s-1", CONFIG, session_type=SessionType.TRAINING)
        await controller.wait_for_pending_writes()

        assert info.is_active
        assert info.current_phase == Phase.ALTITUDE
        assert info.current_cycle == 1
        assert info.phase_time_remaining_seconds == 420
        assert info.current_altitude_level == 6
        assert recovery_store.snapshot.session_id == "s-1"

    @pytest.mark.asyncio
    async def test_first_session_is_recommended_default_calibration(self, controller):
        info = await controller.start_session("s-1", SessionConfig())

        assert info.current_altitude_level == 6
        assert info.session_type == SessionType.CALIBRATION

    @pytest.mark.asyncio
    async def test_recommendation_uses_history(self, controller, session_store, clock):
        end = clock.now - timedelta(days=2)
        records = [
            SessionHistoryRecord(
                session_id=f"old-{i}",
                start_time=end - timedelta(days=i, minutes=31),
                end_time=end - timedelta(days=i),
                starting_altitude_level=level,
                ending_altitude_level=level,
            )
            for i, level in enumerate([7, 6, 6])
        ]
        session_store.progression_data = ProgressionData.from_history(records, now=clock.now)

        info = await controller.start_session("s-1", SessionConfig())

        assert info.current_altitude_level == 7
        assert info.session_type == SessionType.TRAINING

    @pytest.mark.asyncio
    async def test_history_unavailable_falls_back(self, controller, session_store):
        session_store.fail_progression = True

        info = await controller.start_session("s-1", SessionConfig())

        assert info.current_altitude_level == 6
        assert info.session_type == SessionType.CALIBRATION

    @pytest.mark.asyncio
    async def test_second_start_is_rejected(self, controller):
        await controller.start_session("s-1", CONFIG)
        await controller.tick(30)

        with pytest.raises(SessionAlreadyActiveError):
            await controller.start_session("s-2", CONFIG)

        info = controller.get_session_info()
        assert info.session_id == "s-1"
        assert info.phase_time_remaining_seconds == 390

    @pytest.mark.asyncio
    async def test_invalid_config_is_rejected(self, controller):
        with pytest.raises(InvalidConfigError):
            await controller.start_session("s-1", SessionConfig(total_cycles=0))

        assert not controller.is_active

    @pytest.mark.asyncio
    async def test_started_event(self, controller, events):
        await controller.start_session("s-1", CONFIG)

        assert events[0].type == SessionEventType.SESSION_STARTED
        assert events[0].data["recovered"] is False
        assert events[0].data["altitude_level"] == 6


class TestFullSession:
    @pytest.mark.asyncio
    async def test_three_cycle_session_runs_to_completion(
        self, controller, events, session_store, recovery_store, reading_sink, clock, make_reading
    ):
        await controller.start_session("s-1", CONFIG, session_type=SessionType.TRAINING)

        seconds = 0
        while controller.is_active:
            phase = controller.get_session_info().current_phase
            spo2 = 88 if phase == Phase.ALTITUDE else 98
            await controller.add_reading(make_reading(seconds, spo2=spo2))
            clock.advance(1)
            await controller.tick(1.0)
            seconds += 1

        assert seconds == 3 * (420 + 180) + 5 * 10

        summary = session_store.summaries[0]
        assert summary.end_reason == "completed"
        assert summary.completion_rate == 1.0
        assert summary.cycles_completed == 3
        assert summary.duration_seconds == seconds
        assert summary.mask_lift_count == 0
        assert summary.performance.category == PerformanceCategory.EXCELLENT
        assert reading_sink.saved_count == seconds
        assert recovery_store.snapshot is None

        types = event_types(events)
        assert types.count(SessionEventType.PHASE_ADVANCED) == 11
        assert types[-2:] == [SessionEventType.SESSION_COMPLETED, SessionEventType.SESSION_ENDED]

    @pytest.mark.asyncio
    async def test_skipping_every_phase_ends_session(self, controller, session_store):
        await controller.start_session("s-1", CONFIG)

        skips = 0
        while controller.is_active:
            assert await controller.skip_to_next_phase()
            skips += 1

        assert skips == 11
        assert session_store.summaries[0].end_reason == "completed"

    @pytest.mark.asyncio
    async def test_manual_end_reports_partial_completion(self, controller, session_store):
        await controller.start_session("s-1", CONFIG)
        await controller.tick(900)

        summary = await controller.end_session()

        # 420 + 180 + 280 training seconds of 1800
        assert summary.end_reason == "manual"
        assert summary.completion_rate == pytest.approx(0.489)
        assert summary.cycles_completed == 1
        assert session_store.summaries == [summary]
        assert not controller.is_active

    @pytest.mark.asyncio
    async def test_completion_wins_over_queued_manual_end(self, controller, session_store):
        await controller.start_session("s-1", CONFIG)

        async with controller._lock:
            finishing_tick = asyncio.create_task(controller.tick(10_000))
            await asyncio.sleep(0)
            manual_end = asyncio.create_task(controller.end_session())
            await asyncio.sleep(0)

        await finishing_tick
        summary = await manual_end

        assert summary is not None
        assert summary.end_reason == "completed"
        assert [s.end_reason for s in session_store.summaries] == ["completed"]

    @pytest.mark.asyncio
    async def test_operations_without_session(self, controller):
        assert await controller.end_session() is None
        assert await controller.tick(1.0) == []

        with pytest.raises(NoActiveSessionError):
            await controller.pause_session()
        with pytest.raises(NoActiveSessionError):
            await controller.skip_to_next_phase()
        with pytest.raises(NoActiveSessionError):
            await controller.set_altitude_level(5)


class TestPauseResumeSkip:
    @pytest.mark.asyncio
    async def test_pause_stops_phase_time(self, controller, events):
        await controller.start_session("s-1", CONFIG)
        await controller.tick(100)

        assert await controller.pause_session()
        await controller.tick(500)

        info = controller.get_session_info()
        assert info.is_paused
        assert info.phase_time_remaining_seconds == 320

        assert await controller.resume_session()
        await controller.tick(20)
        assert controller.get_session_info().phase_time_remaining_seconds == 300
        assert SessionEventType.SESSION_PAUSED in event_types(events)
        assert SessionEventType.SESSION_RESUMED in event_types(events)

    @pytest.mark.asyncio
    async def test_double_pause_and_resume(self, controller):
        await controller.start_session("s-1", CONFIG)

        assert await controller.pause_session()
        assert not await controller.pause_session()
        assert await controller.resume_session()
        assert not await controller.resume_session()

    @pytest.mark.asyncio
    async def test_skip_while_paused_is_noop(self, controller):
        await controller.start_session("s-1", CONFIG)
        await controller.pause_session()
        before = controller.get_session_info()

        assert not await controller.skip_to_next_phase()
        assert controller.get_session_info() == before

    @pytest.mark.asyncio
    async def test_skip_publishes_advance(self, controller, events):
        await controller.start_session("s-1", CONFIG)

        await controller.skip_to_next_phase()

        advanced = [e for e in events if e.type == SessionEventType.PHASE_ADVANCED]
        assert advanced[0].data["skipped"] is True
        assert advanced[0].data["to_phase"] == "transition"


class TestReadings:
    @pytest.mark.asyncio
    async def test_sustained_low_spo2_gives_one_mask_lift(
        self, controller, session_store, make_reading
    ):
        delivered = []
        controller.set_adaptive_instruction_callback(delivered.append)
        await controller.start_session("s-1", CONFIG)

        for offset in range(20):
            await controller.add_reading(make_reading(offset, spo2=80))
        await controller.wait_for_pending_writes()

        assert len(delivered) == 1
        assert isinstance(delivered[0], MaskLift)
        assert session_store.event_types() == ["mask_lift"]
        assert session_store.adaptive_events[0]["altitude_level"] == 6

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_ingestion(self, controller, make_reading):
        def broken(instruction):
            raise RuntimeError("ui gone")

        controller.set_adaptive_instruction_callback(broken)
        await controller.start_session("s-1", CONFIG)

        results = [await controller.add_reading(make_reading(i, spo2=80)) for i in range(6)]

        assert isinstance(results[-1], MaskLift)

    @pytest.mark.asyncio
    async def test_paused_session_buffers_but_does_not_evaluate(
        self, controller, reading_sink, make_reading
    ):
        await controller.start_session("s-1", CONFIG)
        await controller.pause_session()

        results = [await controller.add_reading(make_reading(i, spo2=80)) for i in range(10)]
        await controller.wait_for_pending_writes()

        assert results == [None] * 10
        assert reading_sink.saved_count == 10

    @pytest.mark.asyncio
    async def test_no_session_ignores_reading(self, controller, make_reading):
        assert await controller.add_reading(make_reading(0, spo2=80)) is None

    @pytest.mark.asyncio
    async def test_reading_source_is_wired_while_active(
        self, session_store, recovery_store, reading_sink, clock, make_reading
    ):
        feed = ReadingFeed()
        controller = build_controller(
            session_store, recovery_store, reading_sink, clock, reading_source=feed
        )
        delivered = []
        controller.set_adaptive_instruction_callback(delivered.append)

        await controller.start_session("s-1", CONFIG)
        assert feed.subscriber_count == 1

        for offset in range(6):
            feed.publish(make_reading(offset, spo2=80))
        await controller.drain_callbacks()
        assert len(delivered) == 1

        feed.signal_disconnect(ConnectionError("ble lost"))
        await controller.drain_callbacks()
        assert controller.get_session_info().is_paused

        await controller.end_session()
        assert feed.subscriber_count == 0
        await controller.shutdown()


class TestAltitudeLevel:
    @pytest.mark.asyncio
    async def test_confirm_new_level(self, controller, session_store, events):
        await controller.start_session("s-1", CONFIG)

        await controller.set_altitude_level(4)
        await controller.wait_for_pending_writes()

        assert controller.get_session_info().current_altitude_level == 4
        assert session_store.event_types() == ["dial_adjustment_confirmed"]
        changed = [e for e in events if e.type == SessionEventType.ALTITUDE_LEVEL_CHANGED]
        assert changed[0].data == {"previous_level": 6, "new_level": 4}

        summary = await controller.end_session()
        assert summary.starting_altitude_level == 6
        assert summary.ending_altitude_level == 4

    @pytest.mark.asyncio
    async def test_out_of_range_level_rejected(self, controller):
        await controller.start_session("s-1", CONFIG)

        with pytest.raises(InvalidConfigError):
            await controller.set_altitude_level(11)


class TestSensorDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_pauses(self, controller, events):
        await controller.start_session("s-1", CONFIG)

        assert await controller.handle_sensor_disconnect(ConnectionError("ble lost"))

        paused = [e for e in events if e.type == SessionEventType.SESSION_PAUSED]
        assert paused[0].data["reason"] == "device_disconnected"
        assert controller.get_session_info().is_paused

    @pytest.mark.asyncio
    async def test_disconnect_without_session(self, controller):
        assert not await controller.handle_sensor_disconnect()


class TestPersistenceFailures:
    @pytest.mark.asyncio
    async def test_failed_snapshot_is_retried(self, controller, recovery_store):
        await controller.start_session("s-1", CONFIG)
        await controller.wait_for_pending_writes()

        recovery_store.fail_save = True
        await controller.pause_session()
        await controller.wait_for_pending_writes()
        assert not recovery_store.snapshot.phase_state.is_paused

        recovery_store.fail_save = False
        await controller.tick(1.0)
        await controller.wait_for_pending_writes()
        assert recovery_store.snapshot.phase_state.is_paused

    @pytest.mark.asyncio
    async def test_failed_reading_batch_is_kept(self, controller, reading_sink, make_reading):
        await controller.start_session("s-1", CONFIG)

        reading_sink.fail = True
        for offset in range(5):
            await controller.add_reading(make_reading(offset))
        await controller.wait_for_pending_writes()
        assert reading_sink.saved_count == 0

        reading_sink.fail = False
        await controller.end_session()

        saved = await reading_sink.get_readings("s-1")
        assert [r.timestamp for r in saved] == sorted(r.timestamp for r in saved)
        assert len(saved) == 5

    @pytest.mark.asyncio
    async def test_failed_summary_write_still_ends_session(
        self, controller, session_store, recovery_store
    ):
        session_store.fail_summary = True
        await controller.start_session("s-1", CONFIG)

        summary = await controller.end_session()

        assert summary.session_id == "s-1"
        assert not controller.is_active
        assert recovery_store.snapshot is None


class TestRecovery:
    @pytest.mark.asyncio
    async def test_resume_after_restart(
        self, session_store, recovery_store, reading_sink, clock
    ):
        first = build_controller(session_store, recovery_store, reading_sink, clock)
        await first.start_session("s-1", CONFIG, session_type=SessionType.TRAINING)
        await first.tick(500)
        await first.shutdown()

        second = build_controller(session_store, recovery_store, reading_sink, clock)
        received = []
        second.subscribe(received.append)
        clock.advance(60)

        snapshot = await second.get_recoverable_session()
        assert snapshot.session_id == "s-1"

        info = await second.resume_recovered_session()
        assert info.is_paused
        assert info.current_phase == Phase.RECOVERY
        assert info.current_cycle == 1
        assert info.phase_time_remaining_seconds == 110
        assert received[0].data["recovered"] is True

        assert await second.resume_session()
        await second.tick(110)
        assert second.get_session_info().current_cycle == 2
        await second.shutdown()

    @pytest.mark.asyncio
    async def test_live_session_snapshot_is_not_offered(self, controller):
        await controller.start_session("s-1", CONFIG)
        await controller.wait_for_pending_writes()

        assert await controller.get_recoverable_session() is None

    @pytest.mark.asyncio
    async def test_expired_snapshot_is_discarded(
        self, session_store, recovery_store, reading_sink, clock
    ):
        first = build_controller(session_store, recovery_store, reading_sink, clock)
        await first.start_session("s-1", CONFIG)
        await first.shutdown()

        clock.advance(601)
        second = build_controller(session_store, recovery_store, reading_sink, clock)

        assert await second.get_recoverable_session() is None
        assert recovery_store.snapshot is None

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_is_discarded(self, controller, recovery_store):
        recovery_store.corrupt = True

        assert await controller.get_recoverable_session() is None
        assert not recovery_store.corrupt

    @pytest.mark.asyncio
    async def test_snapshot_from_the_future_is_discarded(
        self, session_store, recovery_store, reading_sink, clock
    ):
        first = build_controller(session_store, recovery_store, reading_sink, clock)
        await first.start_session("s-1", CONFIG)
        await first.shutdown()
        recovery_store.snapshot = recovery_store.snapshot.model_copy(
            update={"last_persisted_at": clock.now + timedelta(minutes=5)}
        )

        second = build_controller(session_store, recovery_store, reading_sink, clock)

        assert await second.get_recoverable_session() is None
        assert recovery_store.snapshot is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "phase_state",
        [
            PhaseState(current_phase=Phase.RECOVERY, current_cycle=5),
            PhaseState(current_phase=Phase.COMPLETED, current_cycle=3),
            PhaseState(current_phase=Phase.TRANSITION, current_cycle=1),
        ],
        ids=["cycle_beyond_total", "completed", "transition_without_next_phase"],
    )
    async def test_unrestorable_snapshot_is_discarded(
        self, session_store, recovery_store, reading_sink, clock, phase_state
    ):
        first = build_controller(session_store, recovery_store, reading_sink, clock)
        await first.start_session("s-1", CONFIG)
        await first.shutdown()
        recovery_store.snapshot = recovery_store.snapshot.model_copy(
            update={"phase_state": phase_state}
        )

        second = build_controller(session_store, recovery_store, reading_sink, clock)

        assert await second.get_recoverable_session() is None
        assert recovery_store.snapshot is None
        with pytest.raises(NoActiveSessionError):
            await second.resume_recovered_session()
        assert not second.is_active

    @pytest.mark.asyncio
    async def test_decline_recovery(self, session_store, recovery_store, reading_sink, clock):
        first = build_controller(session_store, recovery_store, reading_sink, clock)
        await first.start_session("s-1", CONFIG)
        await first.shutdown()

        second = build_controller(session_store, recovery_store, reading_sink, clock)
        await second.decline_session_recovery()

        assert recovery_store.snapshot is None
        with pytest.raises(NoActiveSessionError):
            await second.resume_recovered_session()


class TestAutoTick:
    @pytest.mark.asyncio
    async def test_tick_loop_runs_session_to_completion(
        self, session_store, recovery_store, reading_sink
    ):
        controller = SessionController(
            session_store,
            recovery_store,
            reading_sink,
            transition_seconds=0,
            tick_interval_seconds=0.05,
            auto_tick=True,
        )
        ended = asyncio.Event()
        controller.subscribe(lambda e: ended.set(), SessionEventType.SESSION_ENDED)

        await controller.start_session(
            "s-1",
            SessionConfig(
                total_cycles=1,
                hypoxic_duration_seconds=1,
                hyperoxic_duration_seconds=1,
                starting_altitude_level=6,
            ),
        )
        await asyncio.wait_for(ended.wait(), timeout=10)

        assert not controller.is_active
        assert session_store.summaries[0].end_reason == "completed"
        await controller.shutdown()


class TestCollaborators:
    @pytest.mark.asyncio
    async def test_progression_loaded_for_given_user(self, recovery_store, reading_sink, clock):
        store = AsyncMock()
        store.get_user_progression_data.return_value = ProgressionData()
        controller = build_controller(store, recovery_store, reading_sink, clock)

        await controller.start_session("s-1", SessionConfig(), user_id="alice")
        await controller.end_session()

        store.get_user_progression_data.assert_awaited_once_with("alice")
        saved = store.save_session_summary.await_args.args[0]
        assert saved.user_id == "alice"
        await controller.shutdown()

    @pytest.mark.asyncio
    async def test_fixed_level_and_type_skip_history(self, recovery_store, reading_sink, clock):
        store = AsyncMock()
        controller = build_controller(store, recovery_store, reading_sink, clock)

        await controller.start_session("s-1", CONFIG, session_type=SessionType.TRAINING)

        store.get_user_progression_data.assert_not_awaited()
        await controller.shutdown()
