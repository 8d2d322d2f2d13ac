"""
Batch FAISS index construction over persisted histogram descriptors.

Walks a directory of JPEG/PNG images, decodes each file once and computes
every requested histogram descriptor from the same pixels. For each
descriptor it writes:
    - faiss_<descriptor>.index: L2 index over that histogram type
    - histogram_filenames.npy: index position -> image file (shared)

Undecodable files yield no descriptor and are reported as errors, so all
indexes written by one build share the same row order.
"""

import os
import logging
from typing import Dict, List, Sequence, Tuple

import faiss
import numpy as np

from .histograms import compute_hsv_histogram, compute_rgb_histogram
from .preprocessing import decode_image

logger = logging.getLogger(__name__)

# Catalog size at which exact search gives way to IVF clustering
IVF_THRESHOLD = int(os.environ.get("IVF_THRESHOLD", "1000"))
MIN_IVF_LISTS = 100

IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png'}
FILENAMES_FILE = "histogram_filenames.npy"

EXTRACTORS = {
    "hshist": compute_hsv_histogram,
    "rgbhist": compute_rgb_histogram,
}


def index_path(output_dir: str, descriptor: str) -> str:
    return os.path.join(output_dir, f"faiss_{descriptor}.index")


def list_images(image_dir: str) -> List[str]:
    """Image file names in a directory, sorted for a stable row order."""
    return sorted(
        name for name in os.listdir(image_dir)
        if os.path.splitext(name)[1].lower() in IMAGE_EXTENSIONS
    )


def collect_descriptors(image_dir: str,
                        descriptors: Sequence[str]
                        ) -> Tuple[List[str], Dict[str, np.ndarray], int]:
    """
    Compute the requested descriptors for every image in a directory.

    Returns:
        (names, vectors, errors): names of the decodable images, a
        descriptor -> (n, dim) float32 matrix mapping in the same row
        order, and the number of files that could not be decoded.
    """
    names = list_images(image_dir)
    logger.info(f"Computing {', '.join(descriptors)} for {len(names)} images in {image_dir}")

    kept: List[str] = []
    rows: Dict[str, list] = {d: [] for d in descriptors}
    errors = 0

    for position, name in enumerate(names, start=1):
        try:
            with open(os.path.join(image_dir, name), 'rb') as f:
                buffer = decode_image(f.read())
        except Exception as e:
            logger.warning(f"Skipping unreadable entry {name}: {e}")
            errors += 1
            continue

        if buffer.is_empty:
            logger.warning(f"Skipping undecodable image: {name}")
            errors += 1
            continue

        kept.append(name)
        for descriptor in descriptors:
            rows[descriptor].append(EXTRACTORS[descriptor](buffer))

        if position % 500 == 0:
            logger.info(f"Described {position}/{len(names)} images")

    vectors = {
        d: np.vstack(r).astype(np.float32) if r else np.empty((0, 0), np.float32)
        for d, r in rows.items()
    }
    return kept, vectors, errors


def create_faiss_index(vectors: np.ndarray) -> faiss.Index:
    """
    Exact FlatL2 index for small catalogs, trained IVFFlat for large ones.
    """
    count, dim = vectors.shape
    if count < IVF_THRESHOLD:
        index = faiss.IndexFlatL2(dim)
        index.add(vectors)
        logger.info(f"FlatL2 index over {count} {dim}d vectors")
        return index

    nlist = max(MIN_IVF_LISTS, int(np.sqrt(count)))
    index = faiss.IndexIVFFlat(faiss.IndexFlatL2(dim), dim, nlist)
    index.train(vectors)
    index.add(vectors)
    logger.info(f"IVFFlat index over {count} {dim}d vectors, {nlist} lists")
    return index


def build_index(image_dir: str,
                output_dir: str,
                descriptors: Sequence[str] = ("hshist", "rgbhist")) -> dict:
    """
    Build and persist one FAISS index per histogram descriptor.

    Args:
        image_dir: Directory containing JPEG/PNG images.
        output_dir: Where the index files and filename mapping are written.
        descriptors: Any of "hshist" and "rgbhist".

    Returns:
        Summary dict with 'success', 'processed', 'errors' and, per
        descriptor, its 'dimensions' and 'index_path'.

    Raises:
        ValueError: Unknown descriptor name.
    """
    if isinstance(descriptors, str):
        descriptors = [descriptors]
    unknown = [d for d in descriptors if d not in EXTRACTORS]
    if unknown:
        raise ValueError(f"Unknown descriptor: {', '.join(unknown)}")

    names, vectors, errors = collect_descriptors(image_dir, descriptors)
    if not names:
        return {"success": False, "error": "No valid images processed",
                "errors": errors}

    os.makedirs(output_dir, exist_ok=True)
    summary = {"success": True, "processed": len(names), "errors": errors,
               "indexes": {}}

    for descriptor in descriptors:
        path = index_path(output_dir, descriptor)
        faiss.write_index(create_faiss_index(vectors[descriptor]), path)
        summary["indexes"][descriptor] = {
            "dimensions": int(vectors[descriptor].shape[1]),
            "index_path": path,
        }

    np.save(os.path.join(output_dir, FILENAMES_FILE), np.array(names))
    logger.info(f"Indexed {len(names)} images ({errors} unreadable) into {output_dir}")
    return summary


def load_index(output_dir: str,
               descriptor: str = "hshist") -> Tuple[faiss.Index, List[str]]:
    """Load an index written by build_index() with its filename mapping."""
    index = faiss.read_index(index_path(output_dir, descriptor))
    names = [str(n) for n in np.load(os.path.join(output_dir, FILENAMES_FILE))]
    logger.info(f"Loaded {descriptor} index: {index.ntotal} vectors, {index.d}d")
    return index, names
