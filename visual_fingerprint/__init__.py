"""
visual_fingerprint — Per-image visual fingerprints and similarity ranking.

Decodes images into planar pixel buffers, computes colour histograms,
runs YOLO-style object detection with non-maximum suppression, applies
pixel filters, and ranks catalogued images by histogram distance.

Modules:
    engine          Main FingerprintEngine class and in-memory catalog
    pixel_buffer    Planar float32 raster container
    preprocessing   Decode/encode boundary and HSV conversion
    histograms      RGB and hue/saturation histograms + FAISS search
    filters         Gray, Mean, Sobel, Color and histogram renders
    detection       Object detector, prediction decoding and NMS
    labeling        Draw detection boxes onto images
    similarity      Euclidean nearest-neighbour ranking
    identity        Thread-safe id allocation
    index_builder   Batch index construction
"""

__version__ = "1.0.0"
