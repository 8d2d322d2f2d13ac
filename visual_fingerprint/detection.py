"""
Object detection post-processing around a Darknet-style detector.

Pipeline for one image:
    1. make_blob          resize to 608×608, scale by 1/255, RGB order
    2. backend.forward    one inference pass, one matrix per output layer
    3. decode_predictions rows -> canonical Frames with label/confidence
    4. group_by_box       explicit grouping of candidates sharing a Frame
    5. NMS                score floor 0.6, IoU threshold 0.5
    6. assemble           per kept box, ascending confidence, capped

The detector has two states. When the label list or the network cannot
be loaded it stays UNINITIALIZED and detect() returns [] without touching
the backend. A READY detector owns its backend handle and serialises
forward passes with a lock, so one instance can be shared across threads.
"""

import os
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

import cv2
import numpy as np

from .pixel_buffer import PixelBuffer
from .preprocessing import decode_image, to_uint8, rgb_planes

logger = logging.getLogger(__name__)

INPUT_SIZE = int(os.environ.get("DETECTOR_INPUT_SIZE", "608"))
CONF_THRESHOLD = float(os.environ.get("DETECTOR_CONF_THRESHOLD", "0.5"))
SCORE_THRESHOLD = float(os.environ.get("DETECTOR_SCORE_THRESHOLD", "0.6"))
NMS_THRESHOLD = float(os.environ.get("DETECTOR_NMS_THRESHOLD", "0.5"))
MAX_LABELS = int(os.environ.get("DETECTOR_MAX_LABELS", "1"))
USE_CUDA = os.environ.get("DETECTOR_USE_CUDA", "0") == "1"

LABELS_PATH = os.environ.get("DETECTOR_LABELS_PATH", "models/yolov3-608/coco.names")
WEIGHTS_PATH = os.environ.get("DETECTOR_WEIGHTS_PATH", "models/yolov3-608/yolov3.weights")
CONFIG_PATH = os.environ.get("DETECTOR_CONFIG_PATH", "models/yolov3-608/yolov3.cfg")


@dataclass(frozen=True)
class Frame:
    """
    Axis-aligned box stored as (min corner, max corner).

    Corners are sorted on construction, so Frame(10, 50, 5, 5) and
    Frame(5, 5, 10, 50) are the same box and hash the same.
    """

    x1: int
    y1: int
    x2: int
    y2: int

    def __post_init__(self):
        xs = sorted((int(self.x1), int(self.x2)))
        ys = sorted((int(self.y1), int(self.y2)))
        object.__setattr__(self, "x1", xs[0])
        object.__setattr__(self, "x2", xs[1])
        object.__setattr__(self, "y1", ys[0])
        object.__setattr__(self, "y2", ys[1])

    @classmethod
    def from_points(cls, first, second) -> "Frame":
        return cls(first[0], first[1], second[0], second[1])

    @property
    def width(self) -> int:
        return self.x2 - self.x1

    @property
    def height(self) -> int:
        return self.y2 - self.y1

    @property
    def area(self) -> int:
        return self.width * self.height

    def to_xywh(self) -> List[int]:
        return [self.x1, self.y1, self.width, self.height]

    def iou(self, other: "Frame") -> float:
        """Intersection-over-union with another frame."""
        iw = min(self.x2, other.x2) - max(self.x1, other.x1)
        ih = min(self.y2, other.y2) - max(self.y1, other.y1)
        if iw <= 0 or ih <= 0:
            return 0.0
        inter = iw * ih
        union = self.area + other.area - inter
        return float(inter / union) if union > 0 else 0.0


@dataclass(frozen=True)
class DetectionRecord:
    """One labelled detection on one canonical box."""

    frame: Frame
    label: str
    confidence: float

    @property
    def width(self) -> int:
        return self.frame.width

    @property
    def height(self) -> int:
        return self.frame.height

    @property
    def pos_x(self) -> int:
        return self.frame.x1

    @property
    def pos_y(self) -> int:
        return self.frame.y1

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "confidence": float(self.confidence),
            "width": self.width,
            "height": self.height,
            "pos_x": self.pos_x,
            "pos_y": self.pos_y,
        }


class InferenceBackend(Protocol):
    def forward(self, blob: np.ndarray) -> List[np.ndarray]:
        ...


class DarknetBackend:
    """OpenCV DNN wrapper around a Darknet config + weights pair."""

    def __init__(self, config_path: str, weights_path: str,
                 use_cuda: bool = USE_CUDA):
        self.net = cv2.dnn.readNetFromDarknet(config_path, weights_path)
        if use_cuda:
            self.net.setPreferableBackend(cv2.dnn.DNN_BACKEND_CUDA)
            self.net.setPreferableTarget(cv2.dnn.DNN_TARGET_CUDA)
        self.output_layers = list(self.net.getUnconnectedOutLayersNames())
        logger.info(
            f"Loaded Darknet network from {config_path}: "
            f"{len(self.output_layers)} output layers"
        )

    def forward(self, blob: np.ndarray) -> List[np.ndarray]:
        self.net.setInput(blob)
        return list(self.net.forward(self.output_layers))

    def close(self):
        self.net = None


def load_labels(path: str) -> List[str]:
    """Read a newline-delimited label vocabulary, one class per line."""
    with open(path, "r", encoding="utf-8") as f:
        return f.read().splitlines()


def make_blob(buffer: PixelBuffer, size: int = INPUT_SIZE) -> np.ndarray:
    """
    Build the detector input tensor.

    Returns:
        Float32 array of shape (1, 3, size, size), RGB channel order,
        values in [0, 1], no mean subtraction.
    """
    rgb = to_uint8(np.stack(rgb_planes(buffer), axis=-1))
    return cv2.dnn.blobFromImage(rgb, 1 / 255.0, (size, size),
                                 (0, 0, 0), swapRB=False, crop=False)


def decode_predictions(outputs: Sequence[np.ndarray],
                       width: int,
                       height: int,
                       labels: Sequence[str],
                       conf_threshold: float = CONF_THRESHOLD
                       ) -> List[DetectionRecord]:
    """
    Decode raw detector rows into candidate detections.

    Each row is [cx, cy, w, h, objectness, class scores...] with geometry
    as fractions of the image size. The class is the argmax of the class
    scores and its score is the confidence; rows below conf_threshold are
    dropped. Pixel values are truncated to integers before the corners
    are canonicalised.

    Args:
        outputs: One (rows, 5 + classes) matrix per output layer.
        width: Source image width in pixels.
        height: Source image height in pixels.
        labels: Class vocabulary, index-aligned with the score columns.
        conf_threshold: Minimum class confidence.

    Returns:
        Candidate records in output order.
    """
    candidates = []
    img_w = np.float32(width)
    img_h = np.float32(height)

    for output in outputs:
        rows = np.asarray(output, dtype=np.float32)
        if rows.ndim != 2 or rows.shape[0] == 0 or rows.shape[1] <= 5:
            continue

        scores = rows[:, 5:]
        class_ids = np.argmax(scores, axis=1)
        confidences = scores[np.arange(len(rows)), class_ids]

        for i in np.flatnonzero(confidences >= conf_threshold):
            row = rows[i]
            class_id = int(class_ids[i])
            center_x = int(row[0] * img_w)
            center_y = int(row[1] * img_h)
            box_w = int(row[2] * img_w)
            box_h = int(row[3] * img_h)
            x = center_x - int(box_w / 2)
            y = center_y - int(box_h / 2)

            if class_id < len(labels):
                label = labels[class_id]
            else:
                logger.warning(f"Class id {class_id} outside label vocabulary")
                label = str(class_id)

            candidates.append(DetectionRecord(
                frame=Frame.from_points((x, y), (x + box_w, y + box_h)),
                label=label,
                confidence=float(confidences[i]),
            ))

    return candidates


def group_by_box(records: Sequence[DetectionRecord]) -> Dict[Frame, List[DetectionRecord]]:
    """Group candidates by canonical frame, keeping first-seen order."""
    groups: Dict[Frame, List[DetectionRecord]] = {}
    for record in records:
        groups.setdefault(record.frame, []).append(record)
    return groups


def non_max_suppression(frames: Sequence[Frame],
                        scores: Sequence[float],
                        score_threshold: float = SCORE_THRESHOLD,
                        iou_threshold: float = NMS_THRESHOLD) -> List[int]:
    """
    Greedy non-maximum suppression.

    Boxes scoring at or below score_threshold are discarded. The rest are
    visited by descending score (ties keep input order) and a box is
    dropped when its IoU with an already kept box exceeds iou_threshold.

    Returns:
        Indices of kept boxes, highest score first.
    """
    order = sorted(
        (i for i, s in enumerate(scores) if s > score_threshold),
        key=lambda i: scores[i], reverse=True,
    )
    kept: List[int] = []
    for i in order:
        if all(frames[i].iou(frames[k]) <= iou_threshold for k in kept):
            kept.append(i)
    return kept


class ObjectDetector:
    """
    Detector state machine: UNINITIALIZED or READY.

    Args:
        labels_path: Newline-delimited class names file.
        weights_path: Darknet weights file.
        config_path: Darknet network config file.
        backend: Optional pre-built inference backend (skips Darknet loading).
        labels: Optional label list (skips reading labels_path).
    """

    def __init__(self,
                 labels_path: str = LABELS_PATH,
                 weights_path: str = WEIGHTS_PATH,
                 config_path: str = CONFIG_PATH,
                 backend: Optional[InferenceBackend] = None,
                 labels: Optional[Sequence[str]] = None,
                 input_size: int = INPUT_SIZE,
                 conf_threshold: float = CONF_THRESHOLD,
                 score_threshold: float = SCORE_THRESHOLD,
                 nms_threshold: float = NMS_THRESHOLD):
        self.input_size = input_size
        self.conf_threshold = conf_threshold
        self.score_threshold = score_threshold
        self.nms_threshold = nms_threshold
        self._lock = threading.Lock()
        self.labels: List[str] = []
        self._backend: Optional[InferenceBackend] = None

        try:
            self.labels = list(labels) if labels is not None else load_labels(labels_path)
            self._backend = backend if backend is not None else DarknetBackend(
                config_path, weights_path)
            logger.info(f"Object detector ready with {len(self.labels)} labels")
        except Exception as e:
            logger.error(f"Object detector not loaded properly: {e}")
            self.labels = []
            self._backend = None

    @property
    def is_ready(self) -> bool:
        return self._backend is not None

    def detect(self, buffer: PixelBuffer,
               max_labels: int = MAX_LABELS) -> List[DetectionRecord]:
        """
        Detect objects in a decoded image.

        Args:
            buffer: Decoded RGB(A) image.
            max_labels: Maximum records kept per surviving box. Entries are
                sorted by ascending confidence before the cap is applied.

        Returns:
            Detection records, grouped per box in first-seen order. Empty
            when the detector is not ready, the image is empty, or nothing
            survives decoding and suppression.
        """
        if not self.is_ready:
            return []
        if buffer.is_empty:
            return []

        try:
            blob = make_blob(buffer, self.input_size)
            with self._lock:
                if self._backend is None:
                    return []
                outputs = self._backend.forward(blob)
        except Exception as e:
            logger.error(f"Forward pass failed: {e}")
            return []

        candidates = decode_predictions(outputs, buffer.width, buffer.height,
                                        self.labels, self.conf_threshold)
        if not candidates:
            return []

        groups = group_by_box(candidates)
        frames = list(groups)
        scores = [max(r.confidence for r in groups[f]) for f in frames]

        kept = non_max_suppression(frames, scores, self.score_threshold,
                                   self.nms_threshold)
        if not kept:
            return []

        results = []
        for i in sorted(kept):
            entries = sorted(groups[frames[i]], key=lambda r: r.confidence)
            results.extend(entries[:max_labels])

        logger.debug(
            f"Detection: {len(candidates)} candidates, {len(frames)} boxes, "
            f"{len(kept)} kept"
        )
        return results

    def detect_bytes(self, data: bytes,
                     max_labels: int = MAX_LABELS) -> List[DetectionRecord]:
        """Decode image bytes, then detect. Undecodable input yields []."""
        if not self.is_ready:
            return []
        return self.detect(decode_image(data), max_labels)

    def close(self):
        """Release the backend handle; the detector becomes UNINITIALIZED."""
        with self._lock:
            if self._backend is not None and hasattr(self._backend, "close"):
                self._backend.close()
            self._backend = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
