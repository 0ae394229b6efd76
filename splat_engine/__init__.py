"""
Splat Engine

Turns uploaded media (a video or a set of images) into a Gaussian Splat
point cloud by driving external tools through a per-job workspace.

Pipeline stages:
1. Extract Frames - Video → images (ffmpeg, video uploads only)
2. Convert - Structure-from-motion preprocessing (COLMAP via convert.py)
3. Train - Gaussian Splat training (train.py)

After every run the workspace is pruned and the point cloud is moved to
a fixed ``result/`` location where it can be downloaded.
"""

__version__ = "0.1.0"
