import asyncio
import logging
from typing import Optional

import cv2

from app.decoding import decode_from_video_frame

logger = logging.getLogger(__name__)


class CameraFrameSource:
    """
    Frame source for a camera attached to the desk machine.
    Each read grabs one frame in a worker thread and returns the decoded text, if any.
    """

    def __init__(self, device_id: int = 0, resolution=(1280, 720)):
        self.device_id = device_id
        self.resolution = resolution
        self.capture: Optional[cv2.VideoCapture] = None

    def open(self):
        self.capture = cv2.VideoCapture(self.device_id)
        if not self.capture.isOpened():
            self.capture = None
            raise RuntimeError(f"Cannot open camera device {self.device_id}")
        self.capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.resolution[0])
        self.capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.resolution[1])
        logger.info(f"Camera {self.device_id} opened at {self.resolution[0]}x{self.resolution[1]}")

    def _grab(self) -> Optional[str]:
        if self.capture is None:
            return None
        ok, frame = self.capture.read()
        if not ok or frame is None:
            return None
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        found = decode_from_video_frame(gray)
        return found[0] if found else None

    async def __call__(self) -> Optional[str]:
        return await asyncio.to_thread(self._grab)

    def close(self):
        if self.capture is not None:
            self.capture.release()
            self.capture = None
            logger.info(f"Camera {self.device_id} released")
