"""Touch Guard - Warns you when you touch your face

This package detects face touching in a live webcam feed:
- Classifier: Two-class nearest-neighbor store over frame embeddings
- Training: Batched example collection per class, one class at a time
- Inference: Paced detection loop with edge-triggered audible alerts
- State: Operating state machine gating training and detection
- Persistence: Versioned dataset snapshots in SQLite
- Vision: OpenCV camera source and MobileNet TFLite embeddings
- Logging: Structured logging configuration
"""

from .classifier import ClassifierStore, Prediction, NOT_TOUCH_LABEL, TOUCHED_LABEL
from .state import RunState, StateMachine, GuardSession
from .settings import GuardSettings, SettingsManager
from .persistence import DatasetPersistence, SQLiteKeyValueStore, MemoryKeyValueStore
from .guard import TouchGuard
from .logging_config import setup_logging, set_debug

__all__ = [
    'ClassifierStore',
    'Prediction',
    'NOT_TOUCH_LABEL',
    'TOUCHED_LABEL',
    'RunState',
    'StateMachine',
    'GuardSession',
    'GuardSettings',
    'SettingsManager',
    'DatasetPersistence',
    'SQLiteKeyValueStore',
    'MemoryKeyValueStore',
    'TouchGuard',
    'setup_logging',
    'set_debug',
]

__version__ = '0.1.0'
