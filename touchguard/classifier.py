"""Classifier Store - Online example-based KNN over frame embeddings

Holds one record per class label:
- RawRecord keeps every embedding verbatim (lossless, grows with training)
- CentroidRecord folds embeddings into a running mean + count (lossy, O(D))

The record kind is chosen once when the store is built and never changes.
Classification votes among the K representatives nearest (L2) to the query.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)

NOT_TOUCH_LABEL = 'not_touch'
TOUCHED_LABEL = 'touched'
LABELS = (NOT_TOUCH_LABEL, TOUCHED_LABEL)

SNAPSHOT_VERSION = 2
DEFAULT_K = 10


@dataclass
class RawRecord:
    """Every embedding collected for a class, in insertion order"""
    vectors: List[np.ndarray] = field(default_factory=list)

    kind = 'raw'

    @property
    def count(self) -> int:
        return len(self.vectors)

    def representatives(self) -> List[np.ndarray]:
        return self.vectors


@dataclass
class CentroidRecord:
    """Running mean of every embedding added to a class"""
    mean: Optional[np.ndarray] = None
    count: int = 0

    kind = 'centroid'

    def representatives(self) -> List[np.ndarray]:
        if self.mean is None or self.count == 0:
            return []
        return [self.mean]


ClassRecord = Union[RawRecord, CentroidRecord]


@dataclass
class Prediction:
    """Result of classifying one embedding"""
    label: str
    confidences: Dict[str, float]

    @property
    def confidence(self) -> float:
        """Confidence of the predicted label"""
        return self.confidences.get(self.label, 0.0)


class ClassifierStore:
    """Two-class nearest-neighbor store

    Usage:
        store = ClassifierStore(compress_to_centroid=False, k=10)

        store.add_example(embedding, NOT_TOUCH_LABEL)
        store.add_example(other, TOUCHED_LABEL)

        result = store.classify(query)
        print(result.label, result.confidence)
    """

    def __init__(self, compress_to_centroid: bool = True, k: int = DEFAULT_K):
        """Initialize an empty store

        Args:
            compress_to_centroid: Keep a running centroid per class instead of raw vectors
            k: Number of nearest representatives that vote
        """
        self.compress_to_centroid = compress_to_centroid
        self.k = max(1, int(k))
        self.dim: Optional[int] = None
        self._records: Dict[str, ClassRecord] = {label: self._empty_record() for label in LABELS}

        # (matrix, labels, weights) of all representatives, rebuilt lazily after changes
        self._cache: Optional[Tuple[np.ndarray, List[str], List[int]]] = None

    @property
    def kind(self) -> str:
        return CentroidRecord.kind if self.compress_to_centroid else RawRecord.kind

    def _empty_record(self) -> ClassRecord:
        return CentroidRecord() if self.compress_to_centroid else RawRecord()

    def _invalidate_cache(self):
        self._cache = None

    def _check_label(self, label: str):
        if label not in self._records:
            raise ValueError(f"Unknown label '{label}'. Valid: {', '.join(LABELS)}")

    def _as_vector(self, embedding) -> np.ndarray:
        vector = np.asarray(embedding, dtype=np.float32).reshape(-1)
        if self.dim is not None and vector.shape[0] != self.dim:
            raise ValueError(
                f"Embedding dimension mismatch: expected {self.dim}, got {vector.shape[0]}"
            )
        return vector

    # ==================== WRITE PATH ====================

    def add_example(self, embedding, label: str):
        """Add one embedding to a class

        Args:
            embedding: 1-D vector; its length fixes D on the first call
            label: NOT_TOUCH_LABEL or TOUCHED_LABEL
        """
        self._check_label(label)
        vector = self._as_vector(embedding)
        if self.dim is None:
            self.dim = vector.shape[0]

        record = self._records[label]
        if isinstance(record, CentroidRecord):
            if record.mean is None or record.count == 0:
                record.mean = vector.copy()
            else:
                record.mean = ((record.mean * record.count + vector) / (record.count + 1)).astype(np.float32)
            record.count += 1
        else:
            record.vectors.append(vector.copy())

        self._invalidate_cache()

    def clear_all(self):
        """Reset both classes to empty records of the configured kind"""
        self._records = {label: self._empty_record() for label in LABELS}
        self._invalidate_cache()

    # ==================== READ PATH ====================

    def get_class_counts(self) -> Dict[str, int]:
        """Examples per label, as shown to the user"""
        return {label: record.count for label, record in self._records.items()}

    def total_examples(self) -> int:
        return sum(self.get_class_counts().values())

    def get_record(self, label: str) -> ClassRecord:
        self._check_label(label)
        return self._records[label]

    def _representatives(self) -> Tuple[np.ndarray, List[str], List[int]]:
        """Stack every representative in label order, then insertion order

        A centroid stands in for every example folded into it, so it carries
        a weight equal to its count; raw vectors weigh 1.
        """
        if self._cache is None:
            vectors: List[np.ndarray] = []
            labels: List[str] = []
            weights: List[int] = []
            for label in LABELS:
                record = self._records[label]
                weight = record.count if isinstance(record, CentroidRecord) else 1
                for vector in record.representatives():
                    vectors.append(vector)
                    labels.append(label)
                    weights.append(weight)
            matrix = np.vstack(vectors) if vectors else np.zeros((0, self.dim or 0), dtype=np.float32)
            self._cache = (matrix, labels, weights)
        return self._cache

    def classify(self, embedding) -> Prediction:
        """Predict the label of an embedding by K-nearest-neighbor vote

        Args:
            embedding: Query vector of dimension D

        Returns:
            Prediction with the plurality label and per-label vote fractions

        Raises:
            RuntimeError: If the store holds no examples
        """
        matrix, labels, weights = self._representatives()
        if matrix.shape[0] == 0:
            raise RuntimeError("Cannot classify: no examples stored")

        query = self._as_vector(embedding)
        distances = np.linalg.norm(matrix - query, axis=1)

        # Stable sort keeps the first-seen representative ahead on equal distance
        order = np.argsort(distances, kind='stable')
        k = min(self.k, sum(weights))

        votes = {label: 0 for label in LABELS}
        voters: List[int] = []
        remaining = k
        for idx in order:
            if remaining == 0:
                break
            take = min(weights[idx], remaining)
            votes[labels[idx]] += take
            voters.append(idx)
            remaining -= take

        confidences = {label: votes[label] / k for label in LABELS}

        # Plurality; on a tie the label of the nearest tied representative wins
        best = max(votes.values())
        tied = {label for label, count in votes.items() if count == best}
        winner = next(labels[idx] for idx in voters if labels[idx] in tied)

        return Prediction(label=winner, confidences=confidences)

    # ==================== SNAPSHOTS ====================

    def export_snapshot(self) -> Dict:
        """Export the store as a versioned, label-keyed, JSON-ready dict

        Both labels are always present; an untrained class is exported as an
        empty centroid-flagged placeholder so the layout never changes shape.
        """
        classes = {}
        for label in LABELS:
            classes[label] = _record_to_entry(self._records[label])
        return {'version': SNAPSHOT_VERSION, 'mode': self.kind, 'classes': classes}

    def import_snapshot(self, data: Dict):
        """Replace the whole store with the contents of a snapshot

        Entries of the other kind are adapted to this store's kind: a centroid
        becomes a single raw vector, raw vectors fold into their mean.

        Raises:
            ValueError: If an entry is malformed or dimensions disagree
        """
        classes = data.get('classes', {})
        records: Dict[str, ClassRecord] = {label: self._empty_record() for label in LABELS}
        dim: Optional[int] = None

        for label, entry in classes.items():
            if label not in records:
                logger.debug(f"Skipping unknown label in snapshot: {label}")
                continue
            vectors, count = _entry_to_vectors(entry)
            if not vectors:
                continue
            entry_dim = vectors[0].shape[0]
            if dim is not None and entry_dim != dim:
                raise ValueError(f"Snapshot dimension mismatch: {entry_dim} != {dim}")
            dim = entry_dim

            if self.compress_to_centroid:
                if len(vectors) == 1:
                    mean = vectors[0]
                else:
                    mean = np.mean(np.vstack(vectors), axis=0).astype(np.float32)
                    count = len(vectors)
                records[label] = CentroidRecord(mean=mean, count=max(1, count))
            else:
                records[label] = RawRecord(vectors=vectors)

        self._records = records
        self.dim = dim if dim is not None else self.dim
        self._invalidate_cache()


def _record_to_entry(record: ClassRecord) -> Dict:
    if record.count == 0:
        return {'kind': 'centroid', 'centroid': True, 'data': [], 'shape': [0, 0], 'count': 0}

    if isinstance(record, CentroidRecord):
        return {
            'kind': 'centroid',
            'centroid': True,
            'data': record.mean.astype(np.float32).tolist(),
            'shape': [int(record.mean.shape[0])],
            'count': record.count,
        }

    matrix = np.vstack(record.vectors).astype(np.float32)
    return {
        'kind': 'raw',
        'centroid': False,
        'data': matrix.reshape(-1).tolist(),
        'shape': [int(matrix.shape[0]), int(matrix.shape[1])],
        'count': record.count,
    }


def _entry_to_vectors(entry: Dict) -> Tuple[List[np.ndarray], int]:
    """Rebuild representatives from a snapshot entry

    Returns:
        Tuple of (vectors, count)
    """
    data: Sequence[float] = entry.get('data') or []
    if len(data) == 0:
        return [], 0

    flat = np.asarray(data, dtype=np.float32)
    shape = entry.get('shape') or []
    count = int(entry.get('count', 0) or 0)

    if entry.get('centroid', entry.get('kind') == 'centroid'):
        dim = int(shape[0]) if shape else flat.shape[0]
        if dim != flat.shape[0]:
            raise ValueError(f"Centroid shape {shape} does not match {flat.shape[0]} values")
        return [flat], count

    if len(shape) != 2 or int(shape[0]) * int(shape[1]) != flat.shape[0]:
        raise ValueError(f"Raw shape {shape} does not match {flat.shape[0]} values")
    matrix = flat.reshape(int(shape[0]), int(shape[1]))
    return [row.copy() for row in matrix], int(shape[0])
