"""
Activation and atrous pooling.

Pooling windows have `size` taps per axis spaced by `atrous_factor`, so the
window span is (size - 1) * atrous_factor + 1.

Two geometries:
    - "valid" (default): output extent floor((dim - span) / stride) + 1.
    - "same": window anchored at each output voxel like "valid", padded
      positions past the end are ignored, output extent ceil(dim / stride).
      Used when training at full resolution: sampling its stride-1 output
      every `stride` voxels gives the "valid" output wherever that exists.
"""

from typing import Optional, Tuple

import numpy as np

from .adjacency import adjacency_from_pooling
from .errors import InvalidPoolingGeometryError
from .image import MultibandImage


def relu(image: MultibandImage) -> MultibandImage:
    """Element-wise max(x, 0) over all channels."""
    return MultibandImage(np.maximum(image.data, 0.0))


def pooled_extent(dim: int, span: int, stride: int, same: bool = False) -> int:
    """Output extent of one axis."""
    if same:
        return -(-dim // stride)
    return (dim - span) // stride + 1


def atrous_pool(
    image: MultibandImage,
    kind: str,
    size: Tuple[int, int, int],
    stride: int,
    atrous_factor: int = 1,
    same: bool = False,
    layer: Optional[int] = None,
) -> MultibandImage:
    """
    Pool a multiband image.

    Args:
        image: Input image (C, Z, Y, X).
        kind: "no_pool", "avg_pool" or "max_pool".
        size: Window taps as (x, y, z); z is ignored for 2D images.
        stride: Pooling stride, applied to every axis.
        atrous_factor: Spacing between window taps.
        same: Use the anchored, size-preserving geometry.
        layer: Optional layer index for error messages.

    Returns:
        New pooled image.
    """
    if kind == "no_pool":
        return image.copy()
    if kind not in ("avg_pool", "max_pool"):
        raise ValueError(f"Unknown pooling type: {kind}")
    if stride < 1:
        raise InvalidPoolingGeometryError(f"Pooling stride must be >= 1, got {stride}", layer=layer)

    window = adjacency_from_pooling(size, atrous_factor, dim3d=image.is3d)
    out_shape = tuple(
        pooled_extent(dim, span, stride, same)
        for dim, span in zip(image.spatial_shape, window.span)
    )
    if any(extent <= 0 for extent in out_shape):
        raise InvalidPoolingGeometryError(
            f"Pooling window span {window.span} with stride {stride} does not fit "
            f"an image of shape {image.spatial_shape}", layer=layer)

    data = image.data
    if same:
        # Pad after the end only; windows start at their output voxel.
        tail = tuple((0, span - 1) for span in window.span)
        fill = -np.inf if kind == "max_pool" else 0.0
        data = np.pad(data, ((0, 0),) + tail, constant_values=fill)
        valid = np.pad(np.ones(image.spatial_shape, dtype=np.float32), tail)
    else:
        valid = None

    # Window taps relative to the first voxel of each window.
    taps = window.offsets - window.offsets.min(axis=0)
    oz, oy, ox = out_shape
    result = None
    count = None
    for dz, dy, dx in taps:
        index = (
            slice(dz, dz + stride * (oz - 1) + 1, stride),
            slice(dy, dy + stride * (oy - 1) + 1, stride),
            slice(dx, dx + stride * (ox - 1) + 1, stride),
        )
        view = data[(slice(None),) + index]
        if result is None:
            result = view.copy()
        elif kind == "max_pool":
            np.maximum(result, view, out=result)
        else:
            result += view
        if valid is not None:
            count = valid[index].copy() if count is None else count + valid[index]

    if kind == "avg_pool":
        if count is None:
            result = result / np.float32(len(taps))
        else:
            result = result / count[None]
    return MultibandImage(result)


def atrous_average_pooling(
    image: MultibandImage,
    width: int,
    height: int,
    depth: int,
    atrous_factor: int = 1,
    stride: int = 1,
) -> MultibandImage:
    """Average pooling with a (width, height, depth) window."""
    return atrous_pool(image, "avg_pool", (width, height, depth), stride, atrous_factor)


def atrous_max_pooling(
    image: MultibandImage,
    width: int,
    height: int,
    depth: int,
    atrous_factor: int = 1,
    stride: int = 1,
) -> MultibandImage:
    """Max pooling with a (width, height, depth) window."""
    return atrous_pool(image, "max_pool", (width, height, depth), stride, atrous_factor)
