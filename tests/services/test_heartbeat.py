import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from mindship.config.config import HeartbeatConfig
from mindship.models.drift import CameraAnalysis, CandidateSignal, ClassificationResult, DriftCause
from mindship.services.capture import CaptureKind, CaptureManager
from mindship.services.errors import CaptureError, CaptureUnavailableError, ClassificationError
from mindship.services.heartbeat import HeartbeatScheduler
from mindship.services.signals import PeriodicMultimodalSignal

class FakeFrameDevice:
    def __init__(self, frame=b"jpeg-bytes", fail_open=False, fail_capture=False):
        self.frame = frame
        self.fail_open = fail_open
        self.fail_capture = fail_capture
        self.opened = 0
        self.closed = 0

    def open(self):
        if self.fail_open:
            raise CaptureUnavailableError("permission denied")
        self.opened += 1
        return object()

    def close(self, resource):
        self.closed += 1

    async def capture_frame(self, resource):
        if self.fail_capture:
            raise CaptureError("grab failed")
        return self.frame

@pytest.fixture
def multimodal(clock, candidates):
    return PeriodicMultimodalSignal(clock, candidates.append)

@pytest.fixture
def classifier():
    return AsyncMock(return_value=ClassificationResult(content_relevant=True, confidence_level=0.9))

def make_scheduler(clock, devices, classifier, multimodal, config=None):
    scheduler = HeartbeatScheduler(
        clock,
        CaptureManager(devices),
        Mock(classify=classifier),
        multimodal,
        config or HeartbeatConfig(),
        task_context=lambda: ("Finish the report", ["docs.google.com"]),
    )
    multimodal.start()
    return scheduler

@pytest.mark.asyncio
async def test_content_alone_without_camera(clock, candidates, classifier, multimodal):
    classifier.return_value = ClassificationResult(content_relevant=False, confidence_level=0.7)
    scheduler = make_scheduler(
        clock, {CaptureKind.SCREEN: FakeFrameDevice(b"screen")}, classifier, multimodal
    )

    result = await scheduler.tick()

    classifier.assert_awaited_once_with(b"screen", None, "Finish the report", ["docs.google.com"])
    assert result.content_relevant is False
    assert len(candidates) == 1
    assert candidates[0].cause == DriftCause.MULTIMODAL

@pytest.mark.asyncio
async def test_camera_frame_counts_when_enabled(clock, candidates, classifier, multimodal):
    classifier.return_value = ClassificationResult(
        content_relevant=True,
        camera_analysis=CameraAnalysis(person_present=False, appears_focused=False),
    )
    scheduler = make_scheduler(
        clock,
        {CaptureKind.SCREEN: FakeFrameDevice(b"screen"), CaptureKind.CAMERA: FakeFrameDevice(b"camera")},
        classifier,
        multimodal,
        HeartbeatConfig(camera_enabled=True),
    )

    await scheduler.tick()

    args = classifier.await_args.args
    assert args[:2] == (b"screen", b"camera")
    assert [c.signal for c in candidates] == [CandidateSignal.DISTRACTED]

@pytest.mark.asyncio
async def test_unavailable_kind_is_disabled_and_other_continues(clock, classifier, multimodal):
    camera = FakeFrameDevice(b"camera")
    scheduler = make_scheduler(
        clock,
        {CaptureKind.SCREEN: FakeFrameDevice(fail_open=True), CaptureKind.CAMERA: camera},
        classifier,
        multimodal,
        HeartbeatConfig(camera_enabled=True),
    )

    await scheduler.tick()

    assert CaptureKind.SCREEN in scheduler.disabled_kinds
    assert scheduler.enabled_kinds == [CaptureKind.CAMERA]
    classifier.assert_awaited_once()
    assert classifier.await_args.args[:2] == (None, b"camera")

@pytest.mark.asyncio
async def test_no_frames_skips_tick(clock, candidates, classifier, multimodal):
    scheduler = make_scheduler(
        clock, {CaptureKind.SCREEN: FakeFrameDevice(fail_capture=True)}, classifier, multimodal
    )

    result = await scheduler.tick()

    assert result is None
    assert scheduler.failed_ticks == 1
    classifier.assert_not_awaited()
    assert candidates == []
    # A failed grab is transient; the kind stays enabled
    assert scheduler.enabled_kinds == [CaptureKind.SCREEN]

@pytest.mark.asyncio
async def test_handles_released_after_every_tick(clock, classifier, multimodal):
    screen = FakeFrameDevice(fail_capture=True)
    scheduler = make_scheduler(clock, {CaptureKind.SCREEN: screen}, classifier, multimodal)

    await scheduler.tick()
    screen.fail_capture = False
    await scheduler.tick()

    assert screen.opened == screen.closed == 2
    assert scheduler.capture.holder(CaptureKind.SCREEN) is None

@pytest.mark.asyncio
async def test_busy_kind_is_skipped_not_disabled(clock, classifier, multimodal):
    scheduler = make_scheduler(clock, {CaptureKind.SCREEN: FakeFrameDevice()}, classifier, multimodal)
    handle = scheduler.capture.acquire(CaptureKind.SCREEN, "someone-else")

    result = await scheduler.tick()

    assert result is None
    assert scheduler.disabled_kinds == {}
    scheduler.capture.release(handle)

@pytest.mark.asyncio
async def test_classification_retries_with_backoff(clock, classifier, multimodal):
    classifier.side_effect = [
        ClassificationError("timeout"),
        ClassificationError("timeout"),
        ClassificationResult(content_relevant=True),
    ]
    scheduler = make_scheduler(clock, {CaptureKind.SCREEN: FakeFrameDevice()}, classifier, multimodal)
    started = clock.now()

    result = await scheduler.tick()

    assert result is not None
    assert classifier.await_count == 3
    assert (clock.now() - started).total_seconds() == pytest.approx(3)

@pytest.mark.asyncio
async def test_classification_failure_never_clears_drift(clock, candidates, classifier, multimodal):
    scheduler = make_scheduler(clock, {CaptureKind.SCREEN: FakeFrameDevice()}, classifier, multimodal)
    classifier.return_value = ClassificationResult(content_relevant=False)
    await scheduler.tick()

    classifier.side_effect = ClassificationError("service down")
    result = await scheduler.tick()

    assert result is None
    assert classifier.await_count == 1 + 3
    assert [c.signal for c in candidates] == [CandidateSignal.DISTRACTED]
    assert multimodal.distracted

@pytest.mark.asyncio
async def test_run_loop_ticks_until_stopped(clock, classifier, multimodal):
    scheduler = make_scheduler(
        clock, {CaptureKind.SCREEN: FakeFrameDevice()}, classifier, multimodal,
        HeartbeatConfig(interval_seconds=0.01),
    )

    scheduler.start()
    await asyncio.sleep(0.1)
    await scheduler.stop()

    assert scheduler.tick_count >= 1
    assert not scheduler.running

@pytest.mark.asyncio
async def test_run_loop_disables_itself_without_sources(clock, classifier, multimodal):
    scheduler = make_scheduler(
        clock, {CaptureKind.SCREEN: FakeFrameDevice(fail_open=True)}, classifier, multimodal,
        HeartbeatConfig(interval_seconds=0.01),
    )

    scheduler.start()
    await asyncio.sleep(0.1)

    assert not scheduler.running
    assert multimodal.disabled
    await scheduler.stop()

@pytest.mark.asyncio
async def test_next_session_retries_disabled_sources(clock, candidates, classifier, multimodal):
    screen = FakeFrameDevice(fail_open=True)
    classifier.return_value = ClassificationResult(content_relevant=False)
    scheduler = make_scheduler(
        clock, {CaptureKind.SCREEN: screen}, classifier, multimodal,
        HeartbeatConfig(interval_seconds=0.01),
    )

    scheduler.start()
    await asyncio.sleep(0.1)
    await scheduler.stop()
    assert CaptureKind.SCREEN in scheduler.disabled_kinds
    assert classifier.await_count == 0

    # Permission granted before the next session
    screen.fail_open = False
    scheduler.start()
    await asyncio.sleep(0.1)
    await scheduler.stop()

    assert scheduler.disabled_kinds == {}
    assert not multimodal.disabled
    assert classifier.await_count >= 1
    assert [c.cause for c in candidates][:1] == [DriftCause.MULTIMODAL]

def test_enable_reverses_disable(candidates, multimodal):
    multimodal.disable("no capture source")
    multimodal.enable()
    multimodal.start()
    multimodal.report(ClassificationResult(content_relevant=False))

    assert multimodal.running
    assert len(candidates) == 1
