"""
Image Processing Pipeline

Two-stage cancellable pipeline, published to a UI callback:
1. Fetch - read an http(s)/file URL and decode it (I/O pool)
2. Filter - apply a pixel effect, snow by default (CPU pool)
"""
