"""Training Controller - Batched example collection for one label at a time

One call to train() collects unit_size x batch_multiplier embeddings of the
current camera view for a single label, pausing briefly between samples so
the camera has time to produce a new frame. Only one batch may run at a time
and never while the inference loop is running.
"""

import time
import logging
from typing import Callable, Optional

from .classifier import ClassifierStore, NOT_TOUCH_LABEL
from .features import FrameEmbedder
from .persistence import DatasetPersistence
from .settings import GuardSettings
from .state import GuardSession, StateEvent, TrainingSession

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int], None]


class TrainingController:
    """Collect labelled examples into the classifier store

    Usage:
        trainer = TrainingController(session, store, embedder, persistence, settings)
        trainer.train(NOT_TOUCH_LABEL)  # blocks until the batch is done
        trainer.train(TOUCHED_LABEL)
    """

    def __init__(self,
                 session: GuardSession,
                 store: ClassifierStore,
                 embedder: FrameEmbedder,
                 persistence: DatasetPersistence,
                 settings: GuardSettings,
                 on_progress: Optional[ProgressCallback] = None,
                 sleep: Callable[[float], None] = time.sleep):
        """Initialize the controller

        Args:
            session: Shared session state
            store: Classifier store to add examples to
            embedder: Source of current-frame embeddings
            persistence: Snapshot writer, called after each successful batch
            settings: Live settings (batch size, sample pause)
            on_progress: Called with (label, percent) after each sample
            sleep: Pause primitive, injectable for tests
        """
        self.session = session
        self.store = store
        self.embedder = embedder
        self.persistence = persistence
        self.settings = settings
        self.on_progress = on_progress
        self._sleep = sleep

    def train(self, label: str) -> bool:
        """Run one training batch for a label

        Args:
            label: NOT_TOUCH_LABEL or TOUCHED_LABEL

        Returns:
            True if the batch completed, False if rejected or aborted
        """
        session = self.session

        if session.machine.is_running:
            logger.debug(f"Training {label} rejected: inference loop is running")
            return False

        if not session.machine.can_train(label):
            logger.debug(f"Training {label} rejected in state {session.state.name}")
            return False

        # Single-flight: a second caller gives up instead of queueing
        if not session.training_lock.acquire(blocking=False):
            logger.debug(f"Training {label} rejected: another batch is in progress")
            return False

        session.training = True
        try:
            return self._run_batch(label)
        finally:
            session.active_training = None
            session.training = False
            session.training_lock.release()

    def _run_batch(self, label: str) -> bool:
        session = self.session
        batch = TrainingSession(label=label, target=self.settings.training_target)
        session.active_training = batch
        session.progress[label] = 0
        pause = self.settings.sample_pause_ms / 1000.0

        logger.info(f"Training '{label}': collecting {batch.target} samples")

        try:
            for _ in range(batch.target):
                embedding = self.embedder.current_embedding()
                self.store.add_example(embedding, label)
                batch.completed += 1

                session.progress[label] = batch.percent
                if self.on_progress:
                    self.on_progress(label, batch.percent)

                self._sleep(pause)
        except Exception as e:
            # Keep whatever was added; counts reflect the partial batch
            session.display_counts.update(self.store.get_class_counts())
            session.last_error = f"Training '{label}' stopped after {batch.completed} samples: {e}"
            logger.error(session.last_error)
            return False

        session.display_counts.update(self.store.get_class_counts())
        self.persistence.save(session.display_counts)

        event = StateEvent.TRAINED_A if label == NOT_TOUCH_LABEL else StateEvent.TRAINED_B
        session.machine.apply(event)
        session.last_error = None

        logger.info(f"Training '{label}' complete: {session.display_counts}")
        return True
