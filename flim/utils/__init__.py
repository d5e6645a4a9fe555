# Utility functions for FLIM

from .memory import (
    estimate_patch_matrix_bytes,
    estimate_layer_bytes,
    estimate_image_peak_bytes,
    estimate_batch_size,
    estimate_slab_voxels,
)
from .device import resolve_device, CPU_DEVICE

__all__ = [
    "estimate_patch_matrix_bytes",
    "estimate_layer_bytes",
    "estimate_image_peak_bytes",
    "estimate_batch_size",
    "estimate_slab_voxels",
    "resolve_device",
    "CPU_DEVICE",
]
