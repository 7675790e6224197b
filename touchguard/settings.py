"""Settings - Bounded configuration surface for Touch Guard

Every field is clamped into its valid range instead of being rejected:
- threshold: confidence cutoff for "touched" alerting (0.50-0.99)
- batch_multiplier: scales the training batch size (1-20)
- compress_to_centroid: keep only a running mean per class (lossy)
- discard_on_startup: delete the persisted dataset instead of restoring it
- muted: suppress the audible cue (notifications unaffected)

Settings persist across restarts as JSON so the mute preference survives.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from dataclasses import dataclass, asdict

logger = logging.getLogger(__name__)

THRESHOLD_MIN = 0.50
THRESHOLD_MAX = 0.99
BATCH_MULTIPLIER_MIN = 1
BATCH_MULTIPLIER_MAX = 20


def clamp_threshold(value: float) -> float:
    """Bound a confidence threshold to the valid range"""
    return max(THRESHOLD_MIN, min(THRESHOLD_MAX, float(value)))


def clamp_batch_multiplier(value: int) -> int:
    """Bound a batch multiplier to the valid range"""
    return max(BATCH_MULTIPLIER_MIN, min(BATCH_MULTIPLIER_MAX, int(value)))


@dataclass
class GuardSettings:
    """Touch Guard configuration"""
    threshold: float = 0.8
    batch_multiplier: int = 1
    unit_size: int = 50
    k: int = 10
    target_cycle_ms: float = 160.0
    sample_pause_ms: float = 50.0
    compress_to_centroid: bool = True
    discard_on_startup: bool = True
    muted: bool = False
    frame_timeout: Optional[float] = None  # seconds, None = wait forever
    notify_cooldown: float = 3.0  # seconds between desktop notifications

    def __post_init__(self):
        """Ensure all values are bounded"""
        self.threshold = clamp_threshold(self.threshold)
        self.batch_multiplier = clamp_batch_multiplier(self.batch_multiplier)
        self.unit_size = max(1, int(self.unit_size))
        self.k = max(1, int(self.k))
        self.target_cycle_ms = max(0.0, float(self.target_cycle_ms))
        self.sample_pause_ms = max(0.0, float(self.sample_pause_ms))
        self.compress_to_centroid = bool(self.compress_to_centroid)
        self.discard_on_startup = bool(self.discard_on_startup)
        self.muted = bool(self.muted)
        if self.frame_timeout is not None:
            self.frame_timeout = float(self.frame_timeout) if self.frame_timeout > 0 else None
        self.notify_cooldown = max(0.0, float(self.notify_cooldown))

    @property
    def training_target(self) -> int:
        """Samples collected by one training batch"""
        return self.unit_size * self.batch_multiplier

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GuardSettings':
        """Create from dictionary, ignoring unknown keys"""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


class SettingsManager:
    """Loads, bounds and saves Touch Guard settings

    Usage:
        sm = SettingsManager("settings.json")

        s = sm.get()
        print(s.threshold)

        sm.update("threshold", 1.5)  # clamped to 0.99
    """

    VALID_SETTINGS = list(GuardSettings.__dataclass_fields__)

    # Read once when the classifier store is built
    BUILD_TIME_SETTINGS = ('compress_to_centroid', 'k')

    def __init__(self, config_path: Optional[str] = None,
                 defaults: Optional[GuardSettings] = None):
        """Initialize settings manager

        Args:
            config_path: Path to settings JSON file. None keeps settings in memory only.
            defaults: Settings to use when no file exists yet
        """
        self.config_path = Path(config_path) if config_path is not None else None
        self._settings = self._load(defaults or GuardSettings())

    def _load(self, defaults: GuardSettings) -> GuardSettings:
        """Load settings from file or fall back to defaults"""
        if self.config_path is not None and self.config_path.exists():
            try:
                with open(self.config_path) as f:
                    data = json.load(f)
                merged = defaults.to_dict()
                merged.update(data)
                return GuardSettings.from_dict(merged)
            except (json.JSONDecodeError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring unreadable settings file {self.config_path}: {e}")

        return defaults

    def _save(self):
        """Save settings to file"""
        if self.config_path is None:
            return
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w') as f:
                json.dump(self._settings.to_dict(), f, indent=2)
        except OSError as e:
            logger.warning(f"Could not save settings to {self.config_path}: {e}")

    def get(self) -> GuardSettings:
        """Get current settings"""
        return self._settings

    def update(self, name: str, value: Any) -> Tuple[bool, str]:
        """Update one setting

        Args:
            name: Setting name
            value: New value (bounded to the valid range)

        Returns:
            Tuple of (success, message)
        """
        if name not in self.VALID_SETTINGS:
            return False, f"Invalid setting '{name}'. Valid: {', '.join(self.VALID_SETTINGS)}"

        if name in self.BUILD_TIME_SETTINGS:
            return False, f"{name} is fixed when the classifier is built; restart to change it"

        data = self._settings.to_dict()
        data[name] = value
        try:
            bounded = GuardSettings.from_dict(data)
        except (TypeError, ValueError) as e:
            return False, f"Invalid value for {name}: {e}"

        # Mutate in place so collaborators holding the settings object see the change
        setattr(self._settings, name, getattr(bounded, name))
        self._save()

        return True, f"Updated {name} to {getattr(self._settings, name)}"
