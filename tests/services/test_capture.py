import io
import threading
from unittest.mock import MagicMock, patch

import pytest
from PIL import Image

from mindship.services.capture import CaptureKind, CaptureManager, ScreenCapture
from mindship.services.errors import CaptureError, CaptureUnavailableError

class FakeDevice:
    def __init__(self):
        self.opened = 0
        self.closed = 0

    def open(self):
        self.opened += 1
        return f"resource-{self.opened}"

    def close(self, resource):
        self.closed += 1

    async def capture_frame(self, resource):
        return resource.encode()

@pytest.fixture
def device():
    return FakeDevice()

@pytest.fixture
def manager(device):
    return CaptureManager({CaptureKind.SCREEN: device})

def test_acquire_and_release(manager, device):
    handle = manager.acquire(CaptureKind.SCREEN, "heartbeat")

    assert manager.holder(CaptureKind.SCREEN) == "heartbeat"
    manager.release(handle)

    assert manager.holder(CaptureKind.SCREEN) is None
    assert device.opened == device.closed == 1

def test_second_owner_is_refused(manager):
    manager.acquire(CaptureKind.SCREEN, "heartbeat")

    with pytest.raises(CaptureUnavailableError, match="already held by heartbeat"):
        manager.acquire(CaptureKind.SCREEN, "dialogue")

def test_missing_device(manager):
    assert not manager.available(CaptureKind.MIC)
    with pytest.raises(CaptureUnavailableError):
        manager.acquire(CaptureKind.MIC, "dialogue")

def test_stale_handle_release_is_noop(manager, device):
    stale = manager.acquire(CaptureKind.SCREEN, "heartbeat")
    manager.release(stale)
    fresh = manager.acquire(CaptureKind.SCREEN, "heartbeat")

    manager.release(stale)

    assert manager.holder(CaptureKind.SCREEN) == "heartbeat"
    assert device.closed == 1
    manager.release(fresh)
    manager.release(None)

@pytest.mark.asyncio
async def test_stale_handle_cannot_capture(manager):
    handle = manager.acquire(CaptureKind.SCREEN, "heartbeat")
    assert await manager.capture_frame(handle) == b"resource-1"
    manager.release(handle)

    with pytest.raises(CaptureError):
        await manager.capture_frame(handle)

def test_frame_device_cannot_stream(manager):
    handle = manager.acquire(CaptureKind.SCREEN, "dialogue")

    with pytest.raises(CaptureError):
        manager.stream(handle)

def test_release_all(manager, device):
    manager.acquire(CaptureKind.SCREEN, "heartbeat")
    manager.release_all()

    assert manager.holder(CaptureKind.SCREEN) is None
    assert device.closed == 1

def test_screen_compression_resizes_large_frames():
    capture = ScreenCapture(jpeg_quality=70, max_dimension=800)
    image = Image.new("RGB", (1600, 900), color="white")

    data = capture._compress(image)

    assert data[:2] == b"\xff\xd8"
    with Image.open(io.BytesIO(data)) as decoded:
        assert max(decoded.size) == 800

@pytest.mark.asyncio
async def test_screen_capture_uses_mss():
    shot = MagicMock()
    shot.size = (4, 2)
    shot.bgra = b"\x00" * 4 * 2 * 4
    sct = MagicMock()
    sct.monitors = [{"left": 0, "top": 0, "width": 4, "height": 2}]
    sct.grab.return_value = shot

    with patch("mindship.services.capture.mss.mss", return_value=sct):
        capture = ScreenCapture()
        resource = capture.open()
        data = await capture.capture_frame(resource)
        capture.close(resource)

    assert data[:2] == b"\xff\xd8"
    sct.close.assert_called_once()

@pytest.mark.asyncio
async def test_screen_grab_runs_off_the_event_loop():
    threads = []
    shot = MagicMock()
    shot.size = (2, 2)
    shot.bgra = b"\x00" * 2 * 2 * 4

    def grab(monitor):
        threads.append(threading.get_ident())
        return shot

    sct = MagicMock()
    sct.monitors = [{"left": 0, "top": 0, "width": 2, "height": 2}]
    sct.grab.side_effect = grab

    data = await ScreenCapture().capture_frame(sct)

    assert data[:2] == b"\xff\xd8"
    assert threads and threads[0] != threading.get_ident()

@pytest.mark.asyncio
async def test_screen_grab_failure_is_capture_error():
    sct = MagicMock()
    sct.monitors = [{}]
    sct.grab.side_effect = RuntimeError("XGetImage failed")

    with pytest.raises(CaptureError, match="XGetImage failed"):
        await ScreenCapture().capture_frame(sct)
