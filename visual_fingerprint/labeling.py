"""Draw detection boxes and labels onto an encoded image."""

import logging
from typing import Iterable, Union

import cv2
import numpy as np

from .detection import DetectionRecord
from .pixel_buffer import PixelBuffer
from .preprocessing import decode_image, encode_image, to_uint8, rgb_planes

logger = logging.getLogger(__name__)

BOX_COLOR = (255, 0, 0)  # red, RGB order
BOX_THICKNESS = 4
FONT_SCALE = 2
TEXT_THICKNESS = 2


def _as_dict(obj: Union[DetectionRecord, dict]) -> dict:
    return obj.to_dict() if isinstance(obj, DetectionRecord) else obj


def draw_detections(data: bytes,
                    objects: Iterable[Union[DetectionRecord, dict]]) -> bytes:
    """
    Draw every detection's box and label onto the image.

    Boxes are pulled inside a margin of 1% of the image width so that
    edges touching the border stay visible; the label sits just above the
    top-left corner.

    Args:
        data: Encoded source image.
        objects: DetectionRecords or their serialized dicts.

    Returns:
        The annotated image, or the original bytes if it could not be
        decoded or re-encoded.
    """
    buffer = decode_image(data)
    if buffer.is_empty:
        return data

    img = np.ascontiguousarray(to_uint8(np.stack(rgb_planes(buffer), axis=-1)))
    w, h = buffer.width, buffer.height
    min_margin = int(np.floor(0.01 * w + 0.5))

    for obj in objects:
        obj = _as_dict(obj)
        base_x, base_y = int(obj["pos_x"]), int(obj["pos_y"])
        new_x = max(base_x, min_margin)
        new_y = max(base_y, min_margin)
        bottom_x = min(base_x + int(obj["width"]), w - min_margin)
        bottom_y = min(base_y + int(obj["height"]), h - min_margin)

        cv2.rectangle(img, (bottom_x, bottom_y), (new_x, new_y),
                      BOX_COLOR, BOX_THICKNESS)
        cv2.putText(img, str(obj["label"]), (new_x, new_y - 5),
                    cv2.FONT_HERSHEY_SIMPLEX, FONT_SCALE, BOX_COLOR,
                    TEXT_THICKNESS)

    encoded = encode_image(PixelBuffer.from_array(img))
    if not encoded:
        logger.warning("Annotated image could not be encoded, returning original")
        return data
    return encoded
