"""Video Source - Webcam access with a continuously refreshed latest frame

A reader thread keeps pulling frames from the active OpenCV capture so
get_frame() always returns the most recent one instead of a stale buffered
frame. Switching cameras opens the new device first and only then drops the
old one, so a failed switch leaves the previous stream running.

Features:
- Device enumeration by probing indices
- Thread-safe access via RLock
- Graceful None when no frame has arrived yet
"""

import threading
import time
import logging
from typing import List, Optional

import numpy as np

from .errors import SourceSwitchError

logger = logging.getLogger(__name__)

# Lazy import
cv2 = None


def _ensure_cv2():
    """Lazy load OpenCV"""
    global cv2
    if cv2 is None:
        import cv2 as opencv
        cv2 = opencv


def list_cameras(max_index: int = 5, skip: Optional[int] = None) -> List[int]:
    """Try camera indices 0..max_index-1

    Args:
        max_index: Number of indices to try
        skip: Index to skip (already open elsewhere)

    Returns:
        Indices that opened and delivered a frame
    """
    _ensure_cv2()
    found = []
    for index in range(max_index):
        if index == skip:
            continue
        cap = cv2.VideoCapture(index)
        try:
            if cap.isOpened():
                ok, _ = cap.read()
                if ok:
                    found.append(index)
        finally:
            cap.release()
    return found


class VideoSource:
    """Owns one OpenCV capture and serves its latest frame

    Usage:
        source = VideoSource()
        source.open(0)
        frame = source.get_frame()
        source.switch(1)
        source.release()
    """

    READ_RETRY_DELAY = 0.01

    def __init__(self, width: Optional[int] = None, height: Optional[int] = None):
        """Initialize the source

        Args:
            width: Requested capture width (device default if None)
            height: Requested capture height
        """
        self.width = width
        self.height = height
        self._lock = threading.RLock()
        self._capture = None
        self._index: Optional[int] = None
        self._latest: Optional[np.ndarray] = None
        self._frame_event = threading.Event()
        self._reader: Optional[threading.Thread] = None
        self._reader_stop = threading.Event()
        self._released = False

    @property
    def index(self) -> Optional[int]:
        return self._index

    def _open_capture(self, index: int):
        _ensure_cv2()
        cap = cv2.VideoCapture(index)
        if not cap.isOpened():
            cap.release()
            raise SourceSwitchError(f"Camera {index} could not be opened")
        if self.width:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        if self.height:
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        ok, frame = cap.read()
        if not ok or frame is None:
            cap.release()
            raise SourceSwitchError(f"Camera {index} opened but delivered no frames")
        return cap, frame

    def open(self, index: int = 0):
        """Open a camera and start reading frames

        Raises:
            SourceSwitchError: If the camera cannot deliver frames
        """
        cap, frame = self._open_capture(index)
        self._install(cap, index, frame)
        logger.info(f"Camera {index} opened")

    def switch(self, index: int):
        """Switch to another camera, keeping the current one on failure

        Raises:
            SourceSwitchError: If the new camera cannot deliver frames
        """
        if index == self._index and self.is_available():
            return
        cap, frame = self._open_capture(index)
        self._install(cap, index, frame)
        logger.info(f"Switched to camera {index}")

    def _install(self, cap, index: int, frame: np.ndarray):
        self._stop_reader()
        with self._lock:
            old = self._capture
            self._capture = cap
            self._index = index
            self._latest = frame
            self._released = False
            self._frame_event.set()
        if old is not None:
            old.release()
        self._start_reader()

    def _start_reader(self):
        self._reader_stop.clear()
        self._reader = threading.Thread(target=self._read_loop, name="touchguard-camera", daemon=True)
        self._reader.start()

    def _stop_reader(self):
        self._reader_stop.set()
        if self._reader and self._reader.is_alive():
            self._reader.join(timeout=1.0)
        self._reader = None

    def _read_loop(self):
        while not self._reader_stop.is_set():
            with self._lock:
                cap = self._capture
            if cap is None:
                break
            ok, frame = cap.read()
            if ok and frame is not None:
                with self._lock:
                    self._latest = frame
                    self._frame_event.set()
            else:
                time.sleep(self.READ_RETRY_DELAY)

    def get_frame(self, wait: float = 0.0) -> Optional[np.ndarray]:
        """Latest frame of the active stream

        Args:
            wait: Seconds to wait for a first frame

        Returns:
            BGR image copy, or None if nothing has arrived
        """
        if wait > 0:
            self._frame_event.wait(wait)
        with self._lock:
            if self._released or self._latest is None:
                return None
            return self._latest.copy()

    def list_sources(self, max_index: int = 5) -> List[int]:
        """Available camera indices, including the active one"""
        active = self._index if self.is_available() else None
        found = set(list_cameras(max_index, skip=active))
        if active is not None:
            found.add(active)
        return sorted(found)

    def is_available(self) -> bool:
        with self._lock:
            return self._capture is not None and not self._released

    def release(self):
        """Stop reading and release the device"""
        self._stop_reader()
        with self._lock:
            if self._released:
                return
            self._released = True
            cap = self._capture
            self._capture = None
            self._latest = None
            self._frame_event.clear()
        if cap is not None:
            cap.release()
        logger.info("Video source released")
