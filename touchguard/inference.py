"""Inference Loop - Paced, cancellable touch detection

Each iteration embeds the current frame, classifies it and updates the
touched flag. The loop sleeps for whatever is left of the target cycle time
(~160ms) so the cadence holds steady when extraction latency varies.

Alerting is edge-triggered: the audible cue fires once per detection episode
and is only re-armed when the cue finishes playing (or on pause/reset), so a
hand resting on the face does not restart the sound every frame.
Notifications go out on every touched frame; the sink throttles them.
"""

import time
import threading
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Callable, Optional

from .alerts import AlertSink, ALERT_BODY, ALERT_TITLE
from .classifier import ClassifierStore, Prediction, TOUCHED_LABEL
from .errors import ExtractionTimeoutError
from .features import FrameEmbedder
from .settings import GuardSettings
from .state import GuardSession, StateEvent

logger = logging.getLogger(__name__)


class FpsMeter:
    """Counts frames and publishes a rate once per second"""

    def __init__(self, window: float = 1.0):
        self.window = window
        self.frames = 0
        self._since = 0.0

    def reset(self, now: float):
        self.frames = 0
        self._since = now

    def tick(self, now: float) -> Optional[int]:
        """Count one frame

        Returns:
            Frames counted over the elapsed window, or None until it has passed
        """
        self.frames += 1
        if now - self._since >= self.window:
            fps = self.frames
            self.reset(now)
            return fps
        return None


class InferenceLoop:
    """Continuous touch detection over the live camera feed

    Usage:
        loop = InferenceLoop(session, store, embedder, alert_sink, settings)
        loop.run()      # background thread
        ...
        loop.pause()

    Tests drive it synchronously with run(blocking=True) and an injected sleep.
    """

    def __init__(self,
                 session: GuardSession,
                 store: ClassifierStore,
                 embedder: FrameEmbedder,
                 alert_sink: AlertSink,
                 settings: GuardSettings,
                 sleep: Optional[Callable[[float], None]] = None,
                 clock: Callable[[], float] = time.monotonic,
                 on_frame: Optional[Callable[[Prediction], None]] = None):
        """Initialize the loop

        Args:
            session: Shared session state
            store: Classifier store to query
            embedder: Source of current-frame embeddings
            alert_sink: Cue/notification delivery
            settings: Live settings (threshold, muted, cycle time, timeout)
            sleep: Pause primitive; defaults to an interruptible wait
            clock: Monotonic clock in seconds
            on_frame: Called with each prediction
        """
        self.session = session
        self.store = store
        self.embedder = embedder
        self.alert_sink = alert_sink
        self.settings = settings
        self._sleep = sleep
        self._clock = clock
        self.on_frame = on_frame

        self.fps_meter = FpsMeter()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None

        alert_sink.on_cue_complete(self._rearm)

    def _rearm(self):
        self.session.may_alert = True

    def run(self, blocking: bool = False) -> bool:
        """Start the loop

        Args:
            blocking: Run in the calling thread until stopped

        Returns:
            True if the loop started
        """
        session = self.session

        if not session.allow_run:
            logger.debug("Run rejected: both classes need examples")
            return False

        if session.busy:
            logger.debug("Run rejected: training in progress")
            return False

        if self.is_alive:
            logger.warning("Run rejected: previous inference thread has not stopped yet")
            return False

        if not session.machine.apply(StateEvent.RUN):
            logger.debug(f"Run rejected in state {session.state.name}")
            return False

        session.running = True
        session.may_alert = True
        session.last_error = None
        self.fps_meter.reset(self._clock())

        # Fresh token per run; a stale thread keeps the one that was set
        self._stop_event = threading.Event()
        stop = self._stop_event

        logger.info("Inference loop started")

        if blocking:
            self._loop(stop)
        else:
            self._thread = threading.Thread(target=self._loop, args=(stop,),
                                            name="touchguard-inference", daemon=True)
            self._thread.start()
        return True

    def pause(self, timeout: float = 2.0):
        """Stop the loop and return to READY

        Args:
            timeout: Seconds to wait for the loop thread to finish its iteration
        """
        session = self.session
        was_running = session.running

        session.running = False
        self._stop_event.set()
        session.machine.apply(StateEvent.STOP)

        self.alert_sink.stop_cue()
        session.may_alert = True
        session.touched = False

        thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                # Keep the reference so run() refuses until it has exited
                logger.warning("Inference thread did not stop within timeout")
                return
        self._thread = None

        if was_running:
            logger.info("Inference loop paused")

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ==================== LOOP ====================

    def _loop(self, stop: threading.Event):
        session = self.session
        try:
            while session.running and not stop.is_set():
                # Dataset cleared underneath us
                if self.store.total_examples() == 0:
                    logger.info("Classifier is empty, stopping inference loop")
                    self._stop(StateEvent.STOP)
                    break

                started = self._clock()
                try:
                    prediction = self._predict()

                    # Paused while the frame was in flight
                    if stop.is_set() or not session.running:
                        break

                    self._handle_prediction(prediction)
                except Exception as e:
                    if not stop.is_set():
                        self._abort(e)
                    break

                now = self._clock()
                fps = self.fps_meter.tick(now)
                if fps is not None:
                    session.fps = fps

                elapsed_ms = (now - started) * 1000.0
                delay = max(0.0, self.settings.target_cycle_ms - elapsed_ms) / 1000.0
                self._wait(delay, stop)
        finally:
            self._shutdown_executor()

    def _wait(self, seconds: float, stop: threading.Event):
        if self._sleep is not None:
            self._sleep(seconds)
        else:
            stop.wait(seconds)

    def _predict_once(self) -> Prediction:
        embedding = self.embedder.current_embedding()
        return self.store.classify(embedding)

    def _predict(self) -> Prediction:
        timeout = self.settings.frame_timeout
        if timeout is None:
            return self._predict_once()

        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="touchguard-frame")
        future = self._executor.submit(self._predict_once)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            raise ExtractionTimeoutError(f"Frame took longer than {timeout:.2f}s")

    def _shutdown_executor(self):
        if self._executor is not None:
            # A hung worker is abandoned rather than joined
            self._executor.shutdown(wait=False)
            self._executor = None

    def _handle_prediction(self, prediction: Prediction):
        session = self.session

        if prediction.label == TOUCHED_LABEL and prediction.confidence > self.settings.threshold:
            if session.may_alert and not self.settings.muted:
                session.may_alert = False
                self.alert_sink.play_cue()
            self.alert_sink.notify(ALERT_TITLE, ALERT_BODY)
            session.touched = True
        else:
            session.touched = False

        if self.on_frame:
            self.on_frame(prediction)

    def _stop(self, event: StateEvent):
        self.session.running = False
        self.session.machine.apply(event)

    def _abort(self, error: Exception):
        """Loop-fatal failure: stop, revert to READY, report once"""
        self.session.last_error = f"Detection stopped: {error}"
        logger.error(self.session.last_error)
        self.session.touched = False
        self._stop(StateEvent.STOP)
