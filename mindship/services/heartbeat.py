import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

from mindship.config.config import HeartbeatConfig
from mindship.models.drift import ClassificationResult
from mindship.services.capture import CaptureHandle, CaptureKind, CaptureManager
from mindship.services.clock import Clock
from mindship.services.errors import CaptureError, CaptureUnavailableError
from mindship.services.interfaces import Classifier
from mindship.services.signals import PeriodicMultimodalSignal

logger = logging.getLogger(__name__)

OWNER = "heartbeat"

class HeartbeatScheduler:
    """Drives the multimodal signal with a fixed-period classification check

    A failing tick is logged and skipped; it never sets or clears drift on
    its own.
    """

    def __init__(
        self,
        clock: Clock,
        capture: CaptureManager,
        classifier: Classifier,
        signal: PeriodicMultimodalSignal,
        config: HeartbeatConfig,
        task_context: Optional[Callable[[], Tuple[str, List[str]]]] = None,
    ):
        self.clock = clock
        self.capture = capture
        self.classifier = classifier
        self.signal = signal
        self.config = config
        self.task_context = task_context or (lambda: ("", []))
        self.kinds: List[CaptureKind] = [CaptureKind.SCREEN]
        if config.camera_enabled:
            self.kinds.append(CaptureKind.CAMERA)
        self.disabled_kinds: Dict[CaptureKind, str] = {}
        self.running = False
        self.tick_count = 0
        self.failed_ticks = 0
        self.shutdown_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def enabled_kinds(self) -> List[CaptureKind]:
        return [kind for kind in self.kinds if kind not in self.disabled_kinds]

    def start(self) -> None:
        """Start the periodic loop on the running event loop

        Capture sources disabled during an earlier session get another chance.
        """
        if self.running:
            return
        self.running = True
        self.shutdown_event = asyncio.Event()
        self.disabled_kinds.clear()
        self.signal.enable()
        self.signal.start()
        self._task = asyncio.create_task(self.run())
        logger.info(f"Heartbeat started (every {self.config.interval_seconds}s)")

    async def stop(self) -> None:
        self.running = False
        self.shutdown_event.set()
        self.signal.stop()
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Heartbeat stopped")

    async def run(self) -> None:
        """Tick every interval until stopped"""
        while self.running:
            # Wait for next interval or shutdown
            try:
                await asyncio.wait_for(
                    self.shutdown_event.wait(),
                    timeout=self.config.interval_seconds
                )
                if self.shutdown_event.is_set():
                    break
            except asyncio.TimeoutError:
                pass

            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in heartbeat loop: {e}", exc_info=True)

            if not self.enabled_kinds:
                logger.warning("No capture source left, heartbeat disabled")
                self.running = False
                self.signal.disable("no capture source available")

    async def tick(self) -> Optional[ClassificationResult]:
        """Run one capture -> classify -> report cycle"""
        self.tick_count += 1
        frames = await self._capture_frames()
        screenshot = frames.get(CaptureKind.SCREEN)
        camera_frame = frames.get(CaptureKind.CAMERA)
        if screenshot is None and camera_frame is None:
            logger.warning(f"Heartbeat tick {self.tick_count}: no frames captured, skipping")
            self.failed_ticks += 1
            return None

        goal_text, related = self.task_context()
        result = await self._classify(screenshot, camera_frame, goal_text, related)
        if result is None:
            self.failed_ticks += 1
            return None

        logger.info(
            f"Heartbeat tick {self.tick_count}: relevant={result.content_relevant} "
            f"camera={result.camera_analysis} confidence={result.confidence_level:.2f}"
        )
        self.signal.report(result, camera_supplied=camera_frame is not None)
        return result

    async def _capture_frames(self) -> Dict[CaptureKind, bytes]:
        frames: Dict[CaptureKind, bytes] = {}
        for kind in self.enabled_kinds:
            handle: Optional[CaptureHandle] = None
            try:
                handle = self.capture.acquire(kind, OWNER)
                frames[kind] = await self.capture.capture_frame(handle)
            except CaptureUnavailableError as e:
                if self.capture.holder(kind) not in (None, OWNER):
                    # Busy, not broken: try again next tick
                    logger.warning(f"{kind.value} busy, skipping for this tick: {e}")
                else:
                    logger.warning(f"{kind.value} capture unavailable, disabling: {e}")
                    self.disabled_kinds[kind] = str(e)
            except CaptureError as e:
                logger.error(f"Failed to capture {kind.value} frame: {e}")
            finally:
                self.capture.release(handle)
        return frames

    async def _classify(
        self,
        screenshot: Optional[bytes],
        camera_frame: Optional[bytes],
        goal_text: str,
        related: List[str],
    ) -> Optional[ClassificationResult]:
        delay = self.config.retry_backoff_seconds
        for attempt in range(self.config.max_retries):
            try:
                return await self.classifier.classify(screenshot, camera_frame, goal_text, related)
            except Exception as e:
                if attempt == self.config.max_retries - 1:
                    logger.error(f"Failed to classify after {self.config.max_retries} attempts: {e}")
                else:
                    logger.warning(f"Attempt {attempt + 1} failed, retrying: {e}")
                    await self.clock.sleep(delay)
                    delay *= 2
        return None
