"""
Visual fingerprint engine.

Orchestrates the per-image analysis pipeline:
    1. Decode the compressed bytes once into a PixelBuffer
    2. Hue/saturation and RGB histograms
    3. Object detection (when a ready detector is attached)

Fingerprints are kept in an insertion-ordered in-memory catalog keyed by
ids from an IdentityAllocator. Similarity queries rank the catalog on
either descriptor. Each signal is independent: an image the detector
cannot handle still gets histograms, and an undecodable image still gets
a (descriptor-less) catalog entry that similarity ranking skips.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

from .detection import ObjectDetector, DetectionRecord, MAX_LABELS
from .histograms import compute_hsv_histogram, compute_rgb_histogram
from .identity import IdentityAllocator
from .preprocessing import decode_image, guess_media_type
from .similarity import rank

logger = logging.getLogger(__name__)

DESCRIPTORS = {
    "hshist": "hsv_histogram",
    "rgbhist": "rgb_histogram",
}


@dataclass
class Fingerprint:
    """All descriptors computed for one image."""

    id: Optional[int]
    name: str
    width: int
    height: int
    media_type: str
    hsv_histogram: np.ndarray
    rgb_histogram: np.ndarray
    objects: List[DetectionRecord] = field(default_factory=list)

    @property
    def size_string(self) -> str:
        return f"{self.width}x{self.height}"

    @property
    def is_empty(self) -> bool:
        return self.width == 0 and self.height == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.media_type,
            "size": self.size_string,
            "objects": [o.to_dict() for o in self.objects],
            "hsv_histogram": self.hsv_histogram.tolist(),
            "rgb_histogram": self.rgb_histogram.tolist(),
        }


class FingerprintEngine:
    """
    Computes fingerprints and answers similarity queries over a catalog.

    Args:
        detector: Optional ObjectDetector; detection is skipped when it is
            missing or not ready.
        allocator: Identity source for added images. A fresh allocator
            starting at 0 is created when omitted.
        max_labels: Per-box label cap passed to the detector.
    """

    def __init__(self,
                 detector: Optional[ObjectDetector] = None,
                 allocator: Optional[IdentityAllocator] = None,
                 max_labels: int = MAX_LABELS):
        self.detector = detector
        self.allocator = allocator or IdentityAllocator()
        self.max_labels = max_labels
        self._catalog: Dict[int, Fingerprint] = {}

        if detector is not None and not detector.is_ready:
            logger.warning("Detector not ready, object detection disabled")

    def fingerprint(self, name: str, data: bytes,
                    identity: Optional[int] = None) -> Fingerprint:
        """Compute every descriptor for one encoded image."""
        buffer = decode_image(data)

        objects: List[DetectionRecord] = []
        if self.detector is not None and self.detector.is_ready:
            objects = self.detector.detect(buffer, self.max_labels)

        result = Fingerprint(
            id=identity,
            name=name,
            width=buffer.width,
            height=buffer.height,
            media_type=guess_media_type(data),
            hsv_histogram=compute_hsv_histogram(buffer),
            rgb_histogram=compute_rgb_histogram(buffer),
            objects=objects,
        )
        logger.info(
            f"Fingerprinted {name}: {result.size_string}, "
            f"{len(objects)} objects"
        )
        return result

    def add(self, name: str, data: bytes) -> Fingerprint:
        """Fingerprint an image and store it under a newly allocated id."""
        result = self.fingerprint(name, data, self.allocator.allocate())
        self._catalog[result.id] = result
        return result

    def get(self, identity: int) -> Optional[Fingerprint]:
        return self._catalog.get(identity)

    def remove(self, identity: int) -> bool:
        return self._catalog.pop(identity, None) is not None

    def all(self) -> List[Fingerprint]:
        return list(self._catalog.values())

    def __contains__(self, identity: int) -> bool:
        return identity in self._catalog

    def __len__(self) -> int:
        return len(self._catalog)

    def similar(self, query_id: int, descriptor: str = "hshist",
                number: int = 10) -> List[Dict[str, Any]]:
        """
        Find the catalog entries closest to a catalogued image.

        Args:
            query_id: Id of the reference image.
            descriptor: "hshist" (hue/saturation) or "rgbhist".
            number: Maximum number of results.

        Returns:
            List of result dicts sorted by distance (nearest first), each
            containing id, name, type, size and distance.

        Raises:
            ValueError: Unknown descriptor name.
            UnknownReferenceError: query_id is not catalogued or has no
                descriptor.
        """
        if descriptor not in DESCRIPTORS:
            raise ValueError(f"Unknown descriptor: {descriptor}")
        attribute = DESCRIPTORS[descriptor]

        candidates = {
            identity: getattr(fp, attribute)
            for identity, fp in self._catalog.items()
        }
        ranked = rank(query_id, candidates, number)

        results = []
        for identity, distance in ranked:
            fp = self._catalog[identity]
            results.append({
                "id": identity,
                "name": fp.name,
                "type": fp.media_type,
                "size": fp.size_string,
                "distance": round(distance, 6),
            })

        logger.info(
            f"Similarity ({descriptor}) for {query_id}: "
            f"{len(candidates) - 1} candidates -> {len(results)} results"
        )
        return results
