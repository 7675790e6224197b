"""Touch Guard - Face-touch detection with a user-trained two-class classifier

Wires the pieces together:
1. Startup: bring up the feature model and camera, restore (or discard) the dataset
2. Training: collect "not touched" then "touched" examples from the camera
3. Detection: run the paced inference loop, alert on confident "touched" frames
4. Settings: threshold, batch size, mute, camera selection

Errors are reported as one human-readable message in `error` / `last_error`;
only startup failures are raised.
"""

import time
import logging
from typing import Any, Callable, Dict, List, Optional

from .alerts import AlertSink, NullAlertSink
from .classifier import ClassifierStore, LABELS
from .errors import InitializationError
from .features import FeatureExtractor, FrameEmbedder
from .inference import InferenceLoop
from .persistence import DatasetPersistence, KeyValueStore, SQLiteKeyValueStore
from .settings import SettingsManager
from .state import GuardSession, StateEvent
from .trainer import ProgressCallback, TrainingController

logger = logging.getLogger(__name__)

INIT_ERROR_MESSAGE = ("Could not initialize the camera or the feature model. "
                      "Check camera permissions and the model path, then restart.")
SWITCH_ERROR_MESSAGE = "Could not switch camera. Try another camera or restart."


class TouchGuard:
    """Main Touch Guard controller

    Usage:
        guard = TouchGuard(
            extractor=MobileNetEmbedder("models/mobilenet.tflite"),
            video_source=VideoSource(),
            alert_sink=PygameAlertSink("assets/cue.mp3"),
        )
        guard.start()

        guard.train(NOT_TOUCH_LABEL)  # hands away from the face
        guard.train(TOUCHED_LABEL)    # touching the face
        guard.run()

        ...
        guard.stop()
    """

    def __init__(self,
                 extractor: FeatureExtractor,
                 video_source,
                 alert_sink: Optional[AlertSink] = None,
                 kv_store: Optional[KeyValueStore] = None,
                 settings_manager: Optional[SettingsManager] = None,
                 camera_index: int = 0,
                 on_progress: Optional[ProgressCallback] = None,
                 sleep: Optional[Callable[[float], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize Touch Guard

        Args:
            extractor: Frame -> embedding model
            video_source: Object with open/switch/get_frame/release (see VideoSource)
            alert_sink: Cue and notification delivery (logs only if omitted)
            kv_store: Dataset storage (SQLite next to the package if omitted)
            settings_manager: Settings (in-memory defaults if omitted)
            camera_index: Camera opened at startup
            on_progress: Called with (label, percent) during training
            sleep: Pause primitive for training and the loop, injectable for tests
            clock: Monotonic clock for loop pacing
        """
        self.settings_manager = settings_manager or SettingsManager()
        self.settings = self.settings_manager.get()

        self.extractor = extractor
        self.video_source = video_source
        self.alert_sink = alert_sink or NullAlertSink()
        self.kv = kv_store if kv_store is not None else SQLiteKeyValueStore()
        self.camera_index = camera_index

        # Record kind and K are fixed for the lifetime of the store
        self.session = GuardSession()
        self.store = ClassifierStore(
            compress_to_centroid=self.settings.compress_to_centroid,
            k=self.settings.k
        )
        self.persistence = DatasetPersistence(self.store, self.kv)
        self.embedder = FrameEmbedder(extractor, video_source.get_frame)

        self.trainer = TrainingController(
            self.session, self.store, self.embedder, self.persistence, self.settings,
            on_progress=on_progress,
            sleep=sleep or time.sleep
        )
        self.loop = InferenceLoop(
            self.session, self.store, self.embedder, self.alert_sink, self.settings,
            sleep=sleep, clock=clock
        )

        self.alert_sink.set_muted(self.settings.muted)

        self.error: Optional[str] = None
        self._started = False

    # ==================== LIFECYCLE ====================

    def start(self):
        """Bring up the model and camera, then restore the dataset

        Raises:
            InitializationError: Model or camera unavailable (no retry)
        """
        if self._started:
            return

        self.error = None
        try:
            self.extractor.load()
            self.video_source.open(self.camera_index)
        except Exception as e:
            self.error = INIT_ERROR_MESSAGE
            logger.error(f"{INIT_ERROR_MESSAGE} ({e})")
            raise InitializationError(INIT_ERROR_MESSAGE) from e

        result = self.persistence.load(discard_on_startup=self.settings.discard_on_startup)
        self.session.display_counts.update(result.display_counts)
        if result.both_classes:
            self.session.machine.apply(StateEvent.RESTORED)

        self._started = True
        logger.info(f"Touch Guard ready (backend: {self.extractor.backend}, "
                    f"state: {self.session.state.name})")

    def stop(self):
        """Stop detection and release the camera, sound and database"""
        self.loop.pause()

        try:
            self.alert_sink.close()
        except Exception as e:
            logger.warning(f"Error closing alert sink: {e}")

        try:
            self.video_source.release()
        except Exception as e:
            logger.warning(f"Error releasing video source: {e}")

        self.kv.close()
        self._started = False
        logger.info("Touch Guard stopped")

    # ==================== TRAINING & DETECTION ====================

    def train(self, label: str) -> bool:
        """Collect one batch of examples for a label (blocks until done)"""
        return self.trainer.train(label)

    def run(self, blocking: bool = False) -> bool:
        """Start detection"""
        return self.loop.run(blocking=blocking)

    def pause(self):
        """Stop detection, keeping the dataset"""
        self.loop.pause()

    def reset(self) -> bool:
        """Stop detection, forget every example and delete the saved dataset

        Returns:
            False if a training batch is in progress
        """
        if self.session.busy:
            logger.debug("Reset rejected: training in progress")
            return False

        self.loop.pause()
        self.store.clear_all()
        self.session.reset_display()
        self.session.last_error = None
        self.session.machine.apply(StateEvent.RESET)
        self.persistence.delete()

        logger.info("Dataset reset")
        return True

    # ==================== SETTINGS ====================

    def set_threshold(self, value: float) -> bool:
        """Set the touched-confidence cutoff (clamped to 0.50-0.99)

        In centroid mode a class with at least K examples takes every vote,
        so the cutoff only bites in raw mode or on sparsely trained classes.
        """
        if self.session.busy:
            logger.debug("Threshold change rejected: training in progress")
            return False
        ok, msg = self.settings_manager.update('threshold', value)
        logger.debug(msg)
        return ok

    def set_batch_multiplier(self, value: int) -> bool:
        """Set how many units of samples one training batch collects (clamped to 1-20)"""
        if self.session.busy or self.session.running:
            logger.debug("Batch size change rejected while busy")
            return False
        ok, msg = self.settings_manager.update('batch_multiplier', value)
        logger.debug(msg)
        return ok

    def set_muted(self, muted: bool) -> bool:
        """Mute or unmute the audible cue"""
        ok, _ = self.settings_manager.update('muted', bool(muted))
        self.alert_sink.set_muted(self.settings.muted)
        return ok

    def list_cameras(self) -> List[int]:
        """Camera indices available for switching"""
        lister = getattr(self.video_source, 'list_sources', None)
        if lister is None:
            return [] if self.video_source.index is None else [self.video_source.index]
        return lister()

    def switch_camera(self, index: int) -> bool:
        """Switch to another camera

        Detection stops first. On failure the previous camera keeps streaming
        and the state is untouched.

        Returns:
            True if the switch succeeded
        """
        if self.session.busy:
            logger.debug("Camera switch rejected: training in progress")
            return False

        self.loop.pause()

        try:
            self.video_source.switch(index)
        except Exception as e:
            self.error = SWITCH_ERROR_MESSAGE
            logger.warning(f"{SWITCH_ERROR_MESSAGE} ({e})")
            return False

        self.camera_index = index
        self.error = None
        return True

    # ==================== STATUS ====================

    @property
    def allow_run(self) -> bool:
        return self.session.allow_run

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of everything a UI would display"""
        session = self.session
        return {
            'state': session.state.name,
            'step': session.state.value,
            'running': session.running,
            'busy': session.busy,
            'allow_run': session.allow_run,
            'touched': session.touched,
            'fps': session.fps,
            'progress': dict(session.progress),
            'counts': {label: session.display_counts.get(label, 0) for label in LABELS},
            'threshold': self.settings.threshold,
            'batch_multiplier': self.settings.batch_multiplier,
            'training_target': self.settings.training_target,
            'muted': self.settings.muted,
            'mode': self.store.kind,
            'camera': self.video_source.index,
            'backend': self.extractor.backend,
            'error': self.error or session.last_error,
        }
