"""
PatchSampler: flattened neighbourhood vectors at marker voxels.

Border policy: the raw input is zero padded.  The ConvolutionEngine pads the
same way, so a patch sampled here is exactly the patch convolved at that
voxel during extraction.
"""

from collections import OrderedDict
from typing import Dict, Optional

import numpy as np

from .adjacency import AdjacencyRelation
from .image import MarkerSet, MultibandImage


class PatchSampler:
    """
    Gather patches of a MultibandImage through an adjacency relation.

    Usage:
        sampler = PatchSampler(adjacency_from_kernel(layer, dim3d=False))
        patches = sampler.sample_markers(image, markers)   # {label: (N, ntaps * C)}
    """

    def __init__(self, adjacency: AdjacencyRelation):
        self.adjacency = adjacency

    def patch_size(self, nchannels: int) -> int:
        """Patch dimensionality for an image with `nchannels` bands."""
        return self.adjacency.ntaps * nchannels

    def sample(self, image: MultibandImage, coords: np.ndarray) -> np.ndarray:
        """
        Sample one patch per voxel.

        Args:
            image: Input image (C, Z, Y, X).
            coords: (N, 3) in-bounds voxel coordinates (z, y, x).

        Returns:
            (N, ntaps * C) float32 matrix, row layout tap * C + channel.
        """
        coords = np.asarray(coords, dtype=np.int64).reshape(-1, 3)
        padding = self.adjacency.padding
        padded = np.pad(image.data, ((0, 0),) + padding)

        before = np.array([p[0] for p in padding], dtype=np.int64)
        positions = coords[:, None, :] + self.adjacency.offsets[None, :, :] + before
        values = padded[:, positions[..., 0], positions[..., 1], positions[..., 2]]  # (C, N, T)

        n = coords.shape[0]
        return np.ascontiguousarray(values.transpose(1, 2, 0).reshape(n, -1))

    def sample_markers(
        self,
        image: MultibandImage,
        markers: MarkerSet,
        image_name: Optional[str] = None,
        layer: Optional[int] = None,
    ) -> Dict[int, np.ndarray]:
        """
        Sample the patches of every marker class.

        Returns:
            Ordered {label: (N_label, ntaps * C)} in ascending label order.

        Raises:
            InsufficientMarkersError: if a class has no voxel inside the image.
        """
        groups = markers.by_class(image.spatial_shape, image=image_name, layer=layer)
        patches: Dict[int, np.ndarray] = OrderedDict()
        for label, coords in groups.items():
            patches[label] = self.sample(image, coords)
        return patches
