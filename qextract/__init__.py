"""
Exam Question Extractor
=======================
Turns a multi-page exam PDF into an ordered set of cropped question images
ready for answer-key entry.

Architecture:
    - Rasterizer: Renders each PDF page to a normalized page image
    - Boundary Detector: Finds question blocks via a vision model, with a
      deterministic equal-strip fallback
    - Cropper: Cuts each question block into its own stored image
    - Engine: Drives the pipeline, numbers questions globally, cleans up

Version: 1.0.0
"""

__version__ = "1.0.0"
