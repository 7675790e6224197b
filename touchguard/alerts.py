"""Alerts - Audible cue and desktop notifications for touch detections

The core only talks to the AlertSink interface:
- play_cue(): start the warning sound (ignored while muted or already playing)
- stop_cue(): stop a cue that is still playing
- on_cue_complete(cb): cb() runs when a cue finishes on its own
- notify(title, body): fire-and-forget desktop notification
- set_muted(bool): suppress the cue only

PygameAlertSink plays an MP3/WAV cue through pygame.mixer and sends desktop
notifications with notify-send, dropping any that arrive within a cooldown
window of the previous one.
"""

import os
import shutil
import subprocess
import threading
import time
import logging
from pathlib import Path
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

# Lazy import (pygame prints a banner and opens audio devices on import)
pygame = None


def _ensure_pygame():
    """Lazy load pygame"""
    global pygame
    if pygame is None:
        os.environ.setdefault('PYGAME_HIDE_SUPPORT_PROMPT', '1')
        try:
            import pygame as pg
            pygame = pg
        except ImportError:
            raise ImportError(
                "pygame not installed. Install with: pip install pygame"
            )


ALERT_TITLE = "Take your hand off!"
ALERT_BODY = "You just touched your face!"


class AlertSink:
    """Alert delivery contract used by the inference loop"""

    def __init__(self):
        self.muted = False
        self._cue_callbacks: List[Callable[[], None]] = []

    def play_cue(self):
        raise NotImplementedError

    def stop_cue(self):
        raise NotImplementedError

    def notify(self, title: str, body: str):
        raise NotImplementedError

    def set_muted(self, muted: bool):
        self.muted = bool(muted)
        if self.muted:
            self.stop_cue()

    def on_cue_complete(self, callback: Callable[[], None]):
        self._cue_callbacks.append(callback)

    def _fire_cue_complete(self):
        for callback in list(self._cue_callbacks):
            try:
                callback()
            except Exception as e:
                logger.error(f"Cue completion callback failed: {e}")

    def close(self):
        pass


class NullAlertSink(AlertSink):
    """Logs alerts instead of delivering them (headless runs)

    A logged cue "plays" for cue_duration seconds before completing.
    """

    def __init__(self, cue_duration: float = 1.5):
        super().__init__()
        self.cue_duration = cue_duration
        self._timer: Optional[threading.Timer] = None

    def play_cue(self):
        if self.muted or (self._timer is not None and self._timer.is_alive()):
            return
        logger.info("Alert cue")
        self._timer = threading.Timer(self.cue_duration, self._fire_cue_complete)
        self._timer.daemon = True
        self._timer.start()

    def stop_cue(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def notify(self, title: str, body: str):
        logger.debug(f"Notification: {title} - {body}")


class DesktopNotifier:
    """notify-send wrapper with a cooldown between notifications"""

    def __init__(self, cooldown: float = 3.0, app_name: str = "Touch Guard",
                 clock: Callable[[], float] = time.monotonic):
        self.cooldown = cooldown
        self.app_name = app_name
        self._clock = clock
        self._last_sent: Optional[float] = None
        self._command = shutil.which("notify-send")
        if self._command is None:
            logger.info("notify-send not found, notifications will only be logged")

    def ready(self) -> bool:
        """True if the cooldown since the last notification has passed"""
        if self._last_sent is None:
            return True
        return self._clock() - self._last_sent >= self.cooldown

    def send(self, title: str, body: str) -> bool:
        """Send a notification unless still cooling down

        Returns:
            True if the notification went out
        """
        if not self.ready():
            return False
        self._last_sent = self._clock()

        if self._command is None:
            logger.warning(f"{title} {body}")
            return True

        try:
            subprocess.Popen(
                [self._command, "--app-name", self.app_name, title, body],
                stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
            )
        except OSError as e:
            logger.debug(f"notify-send failed: {e}")
        return True


class PygameAlertSink(AlertSink):
    """Plays the warning cue with pygame.mixer

    Usage:
        sink = PygameAlertSink("assets/take_your_hand_off.mp3")
        sink.on_cue_complete(lambda: print("cue done"))
        sink.play_cue()
    """

    POLL_INTERVAL = 0.05

    def __init__(self, sound_path: str, volume: float = 1.0,
                 notifier: Optional[DesktopNotifier] = None):
        """Initialize the sink

        Args:
            sound_path: Cue file (MP3 or WAV)
            volume: Playback volume 0-1
            notifier: Desktop notifier, created with a 3s cooldown if omitted
        """
        super().__init__()
        self.sound_path = Path(sound_path)
        self.volume = max(0.0, min(1.0, volume))
        self.notifier = notifier or DesktopNotifier()

        self._lock = threading.Lock()
        self._playing = False
        self._generation = 0
        self._initialized = False

    def _init_mixer(self):
        if self._initialized:
            return
        _ensure_pygame()
        if not self.sound_path.exists():
            raise FileNotFoundError(f"Alert sound not found: {self.sound_path}")
        pygame.mixer.init()
        pygame.mixer.music.load(str(self.sound_path))
        pygame.mixer.music.set_volume(self.volume)
        self._initialized = True

    def play_cue(self):
        with self._lock:
            if self.muted or self._playing:
                return
            try:
                self._init_mixer()
                pygame.mixer.music.play()
            except Exception as e:
                logger.error(f"Could not play alert cue: {e}")
                return
            self._playing = True
            self._generation += 1
            generation = self._generation

        threading.Thread(target=self._watch_playback, args=(generation,), daemon=True).start()

    def _watch_playback(self, generation: int):
        """Wait for the cue to end, then signal completion"""
        while True:
            time.sleep(self.POLL_INTERVAL)
            with self._lock:
                if generation != self._generation:
                    # Stopped or superseded; no completion signal
                    return
                if not pygame.mixer.music.get_busy():
                    self._playing = False
                    break
        self._fire_cue_complete()

    def stop_cue(self):
        with self._lock:
            if not self._playing:
                return
            self._generation += 1
            self._playing = False
            try:
                pygame.mixer.music.stop()
            except Exception as e:
                logger.debug(f"Error stopping alert cue: {e}")

    def notify(self, title: str, body: str):
        self.notifier.send(title, body)

    def close(self):
        self.stop_cue()
        if self._initialized:
            pygame.mixer.quit()
            self._initialized = False
