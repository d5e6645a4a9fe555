"""
FLIM: Feature Learning from Image Markers

Learns convolutional feature extractors layer by layer from user-drawn
markers, without backpropagation.
"""

__version__ = '0.1.0'
