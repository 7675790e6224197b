"""Feature Extraction - Frame to embedding with a MobileNet TFLite model

Uses a MobileNet feature-vector model (classification head removed) so every
frame becomes a fixed-length embedding. The model is treated as opaque: the
only promise is a constant output dimension for the lifetime of a store.

Runs locally; ~30-60ms per frame for MobileNet V2 on a laptop CPU.
"""

import logging
from pathlib import Path
from typing import Callable, Optional

import numpy as np

from .errors import FrameUnavailableError

logger = logging.getLogger(__name__)

# Lazy imports
tflite_runtime = None
cv2 = None


def _ensure_tflite():
    """Lazy load TFLite runtime"""
    global tflite_runtime
    if tflite_runtime is None:
        try:
            import tflite_runtime.interpreter as tflite
            tflite_runtime = tflite
        except ImportError:
            try:
                import tensorflow.lite as tflite
                tflite_runtime = tflite
            except ImportError:
                raise ImportError(
                    "TFLite runtime not installed. Install with: "
                    "pip install tflite-runtime"
                )


def _ensure_cv2():
    """Lazy load OpenCV"""
    global cv2
    if cv2 is None:
        import cv2 as opencv
        cv2 = opencv


class FeatureExtractor:
    """frame -> embedding contract"""

    backend = "unknown"

    def load(self):
        """Prepare the model; called once at startup"""

    def extract(self, frame: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class MobileNetEmbedder(FeatureExtractor):
    """Embed BGR frames with a MobileNet feature-vector TFLite model

    Usage:
        embedder = MobileNetEmbedder("models/mobilenet_v2_feature_vector.tflite")
        embedder.load()
        vector = embedder.extract(frame)  # shape (D,)
    """

    backend = "tflite"

    def __init__(self, model_path: str, num_threads: int = 2):
        """Initialize the embedder

        Args:
            model_path: Path to a TFLite model whose output is a feature vector
            num_threads: Interpreter threads
        """
        self.model_path = Path(model_path)
        self.num_threads = num_threads
        self._interpreter = None
        self._input_details = None
        self._output_details = None
        self._input_size = (224, 224)
        self.dim: Optional[int] = None

    def load(self):
        """Load the TFLite model

        Raises:
            FileNotFoundError: Model file missing
            ImportError: No TFLite runtime available
        """
        if self._interpreter is not None:
            return

        _ensure_tflite()
        _ensure_cv2()

        if not self.model_path.exists():
            raise FileNotFoundError(f"Feature model not found: {self.model_path}")

        self._interpreter = tflite_runtime.Interpreter(
            model_path=str(self.model_path), num_threads=self.num_threads
        )
        self._interpreter.allocate_tensors()

        self._input_details = self._interpreter.get_input_details()
        self._output_details = self._interpreter.get_output_details()

        # Input is NHWC
        input_shape = self._input_details[0]['shape']
        self._input_size = (int(input_shape[2]), int(input_shape[1]))
        self.dim = int(np.prod(self._output_details[0]['shape'][1:]))

        logger.info(f"Loaded feature model {self.model_path.name} "
                    f"(input {self._input_size}, embedding dim {self.dim})")

    def _preprocess(self, frame: np.ndarray) -> np.ndarray:
        image = cv2.resize(frame, self._input_size)
        image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

        dtype = self._input_details[0]['dtype']
        if dtype == np.uint8:
            # Quantized model takes raw pixels
            return np.expand_dims(image.astype(np.uint8), axis=0)

        # Float MobileNet expects [-1, 1]
        image = image.astype(np.float32) / 127.5 - 1.0
        return np.expand_dims(image, axis=0)

    def extract(self, frame: np.ndarray) -> np.ndarray:
        """Compute the embedding of one frame

        Args:
            frame: BGR image (OpenCV format)

        Returns:
            1-D float32 embedding
        """
        self.load()

        self._interpreter.set_tensor(self._input_details[0]['index'], self._preprocess(frame))
        self._interpreter.invoke()

        output = self._interpreter.get_tensor(self._output_details[0]['index'])
        scale, zero_point = self._output_details[0].get('quantization', (0.0, 0))
        if scale:
            output = (output.astype(np.float32) - zero_point) * scale

        return output.astype(np.float32).reshape(-1)


class FrameEmbedder:
    """Binds the latest-frame provider to a feature extractor

    Both the training controller and the inference loop ask this object for
    "the embedding of whatever the camera shows right now".
    """

    def __init__(self, extractor: FeatureExtractor,
                 frame_source: Callable[[], Optional[np.ndarray]]):
        self.extractor = extractor
        self.frame_source = frame_source

    def current_embedding(self) -> np.ndarray:
        frame = self.frame_source()
        if frame is None:
            raise FrameUnavailableError("No frame available from the video source")
        return self.extractor.extract(frame)
