import asyncio
import io
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional, Protocol

import mss
from PIL import Image

from mindship.services.errors import CaptureError, CaptureUnavailableError

logger = logging.getLogger(__name__)

class CaptureKind(str, Enum):
    MIC = "mic"
    CAMERA = "camera"
    SCREEN = "screen"

@dataclass
class CaptureHandle:
    """Exclusive handle on one capture device"""
    kind: CaptureKind
    handle_id: int
    owner: str
    resource: Any = None

class CaptureDevice(Protocol):
    def open(self) -> Any:
        ...

    def close(self, resource: Any) -> None:
        ...

class FrameDevice(CaptureDevice, Protocol):
    async def capture_frame(self, resource: Any) -> bytes:
        ...

class AudioDevice(CaptureDevice, Protocol):
    def stream(self, resource: Any) -> AsyncIterator[bytes]:
        """Yield audio chunks until the device detects silence or end of input"""
        ...

class ScreenCapture:
    """Captures and compresses screenshots"""

    def __init__(self, jpeg_quality: int = 85, max_dimension: int = 1920):
        self.JPEG_QUALITY = jpeg_quality  # Good balance between quality and size
        self.MAX_DIMENSION = max_dimension  # Max width/height for screenshots

    def open(self) -> Any:
        try:
            return mss.mss()
        except Exception as e:
            raise CaptureUnavailableError(f"Screen capture unavailable: {e}")

    def close(self, resource: Any) -> None:
        try:
            resource.close()
        except Exception as e:
            logger.error(f"Error closing screenshot manager: {e}")

    async def capture_frame(self, resource: Any) -> bytes:
        """Grab the full virtual screen as JPEG bytes

        Raises:
            CaptureError: If the grab or compression fails
        """
        # Grab and compress off the event loop
        return await asyncio.to_thread(self._grab, resource)

    def _grab(self, resource: Any) -> bytes:
        try:
            screenshot = resource.grab(resource.monitors[0])
            img = Image.frombytes('RGB', screenshot.size, screenshot.bgra, 'raw', 'BGRX')
        except Exception as e:
            raise CaptureError(f"Failed to grab screenshot: {e}")
        return self._compress(img)

    def _compress(self, img: Image.Image) -> bytes:
        try:
            if max(img.size) > self.MAX_DIMENSION:
                ratio = self.MAX_DIMENSION / max(img.size)
                new_size = tuple(int(dim * ratio) for dim in img.size)
                img = img.resize(new_size, Image.Resampling.LANCZOS)

            buffer = io.BytesIO()
            img.save(buffer, format="JPEG", quality=self.JPEG_QUALITY, optimize=True)
            return buffer.getvalue()
        except Exception as e:
            raise CaptureError(f"Failed to compress screenshot: {e}")

class CaptureManager:
    """Hands out exclusive capture handles and guarantees their release

    Each kind can be held by one owner at a time; acquiring a kind that is
    missing, busy or refused fails fast with CaptureUnavailableError.
    """

    def __init__(self, devices: Optional[Dict[CaptureKind, CaptureDevice]] = None):
        self.devices: Dict[CaptureKind, CaptureDevice] = dict(devices or {})
        self._held: Dict[CaptureKind, CaptureHandle] = {}
        self._ids = itertools.count(1)

    def available(self, kind: CaptureKind) -> bool:
        return kind in self.devices

    def holder(self, kind: CaptureKind) -> Optional[str]:
        handle = self._held.get(kind)
        return handle.owner if handle else None

    def acquire(self, kind: CaptureKind, owner: str) -> CaptureHandle:
        device = self.devices.get(kind)
        if device is None:
            raise CaptureUnavailableError(f"No {kind.value} device configured")
        if kind in self._held:
            raise CaptureUnavailableError(
                f"{kind.value} is already held by {self._held[kind].owner}"
            )

        resource = device.open()
        handle = CaptureHandle(kind=kind, handle_id=next(self._ids), owner=owner, resource=resource)
        self._held[kind] = handle
        logger.debug(f"{owner} acquired {kind.value} handle {handle.handle_id}")
        return handle

    async def capture_frame(self, handle: CaptureHandle) -> bytes:
        self._check(handle)
        device = self.devices[handle.kind]
        if not hasattr(device, "capture_frame"):
            raise CaptureError(f"{handle.kind.value} device does not produce frames")
        return await device.capture_frame(handle.resource)

    def stream(self, handle: CaptureHandle) -> AsyncIterator[bytes]:
        self._check(handle)
        device = self.devices[handle.kind]
        if not hasattr(device, "stream"):
            raise CaptureError(f"{handle.kind.value} device does not stream audio")
        return device.stream(handle.resource)

    def release(self, handle: Optional[CaptureHandle]) -> None:
        """Release a handle; releasing a stale or missing handle is a no-op"""
        if handle is None:
            return
        held = self._held.get(handle.kind)
        if held is None or held.handle_id != handle.handle_id:
            return
        del self._held[handle.kind]
        try:
            self.devices[handle.kind].close(handle.resource)
        except Exception as e:
            logger.error(f"Failed to close {handle.kind.value} device: {e}")
        logger.debug(f"{handle.owner} released {handle.kind.value} handle {handle.handle_id}")

    def release_all(self) -> None:
        for handle in list(self._held.values()):
            self.release(handle)

    def _check(self, handle: CaptureHandle) -> None:
        held = self._held.get(handle.kind)
        if held is None or held.handle_id != handle.handle_id:
            raise CaptureError(f"Stale {handle.kind.value} handle {handle.handle_id}")
