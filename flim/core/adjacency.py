"""
Adjacency relations (receptive fields) for FLIM layers.

An AdjacencyRelation is the set of (dz, dy, dx) offsets sampled by a kernel.
Offsets are generated z-major, then y, then x; this order defines the row
layout of patches and kernel columns (row = tap * nchannels + channel).
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .architecture import LayerSpec


@dataclass(frozen=True)
class AdjacencyRelation:
    """
    Immutable receptive field.

    Args:
        size: Taps per axis as (z, y, x).
        step: Spacing between taps per axis as (z, y, x).
    """

    size: Tuple[int, int, int]
    step: Tuple[int, int, int]

    @property
    def offsets(self) -> np.ndarray:
        """(ntaps, 3) integer offsets (dz, dy, dx), centred at the origin."""
        axes = [
            (np.arange(k) - k // 2) * s
            for k, s in zip(self.size, self.step)
        ]
        dz, dy, dx = np.meshgrid(*axes, indexing='ij')
        return np.stack([dz.ravel(), dy.ravel(), dx.ravel()], axis=1).astype(np.int64)

    @property
    def ntaps(self) -> int:
        z, y, x = self.size
        return z * y * x

    @property
    def span(self) -> Tuple[int, int, int]:
        """Spatial extent per axis (z, y, x): (k - 1) * step + 1."""
        return tuple((k - 1) * s + 1 for k, s in zip(self.size, self.step))

    @property
    def padding(self) -> Tuple[Tuple[int, int], ...]:
        """Zero padding (before, after) per axis (z, y, x) that keeps the grid size."""
        return tuple(
            ((k // 2) * s, (k - 1 - k // 2) * s)
            for k, s in zip(self.size, self.step)
        )


def _adjacency(size_xyz, step_xyz, atrous_factor: int, dim3d: bool) -> AdjacencyRelation:
    if atrous_factor < 1:
        raise ValueError(f"atrous_factor must be >= 1, got {atrous_factor}")
    kx, ky, kz = (int(k) for k in size_xyz)
    if kx < 1 or ky < 1 or kz < 1:
        raise ValueError(f"Kernel sizes must be positive, got {(kx, ky, kz)}")
    sx, sy, sz = (int(s) * atrous_factor for s in step_xyz)
    if not dim3d:
        kz, sz = 1, 1
    return AdjacencyRelation(size=(kz, ky, kx), step=(sz, sy, sx))


def adjacency_from_kernel(
    layer: LayerSpec,
    dim3d: bool,
    atrous_factor: int = 1,
) -> AdjacencyRelation:
    """
    Build the receptive field of a layer's kernels.

    Args:
        layer: Layer specification (kernel_size and dilation_rate in x, y, z).
        dim3d: If False, the z axis contributes a single tap.
        atrous_factor: Cumulative stride correction (>= 1) applied on top of
            the dilation rate.

    Returns:
        AdjacencyRelation with kx * ky * kz taps (kz = 1 in 2D).
    """
    return _adjacency(layer.kernel_size, layer.dilation_rate, atrous_factor, dim3d)


def adjacency_from_pooling(
    pool_size: Tuple[int, int, int],
    atrous_factor: int = 1,
    dim3d: bool = True,
) -> AdjacencyRelation:
    """Build a pooling window (x, y, z sizes) with taps spaced by `atrous_factor`."""
    return _adjacency(pool_size, (1, 1, 1), atrous_factor, dim3d)
