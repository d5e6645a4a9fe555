"""
Memory estimation formulas for FLIM feature extraction planning.

All functions are pure (no side effects, no file I/O, no GPU access).
They can be unit-tested with known expected values.

Usage:
    from flim.utils.memory import estimate_image_peak_bytes, estimate_batch_size
"""

from ..core.architecture import Architecture


def estimate_patch_matrix_bytes(
    nvoxels: int,
    ntaps: int,
    nchannels: int,
    dtype_bytes: int = 4,
) -> int:
    """
    Memory of the patch matrix of one layer (one row of ntaps * nchannels
    values per voxel).  This is the dominant term of a convolution.
    """
    return nvoxels * ntaps * nchannels * dtype_bytes


def estimate_layer_bytes(
    nvoxels_in: int,
    nchannels_in: int,
    ntaps: int,
    nchannels_out: int,
    nvoxels_out: int,
    dtype_bytes: int = 4,
) -> int:
    """
    Peak memory of one layer: input image, patch matrix, convolution output
    and pooled output.

    Args:
        nvoxels_in: Voxels of the layer input.
        nchannels_in: Channels of the layer input.
        ntaps: Kernel taps.
        nchannels_out: Kernels of the layer.
        nvoxels_out: Voxels after pooling.
        dtype_bytes: Bytes per element.

    Returns:
        Memory in bytes.
    """
    input_bytes = nvoxels_in * nchannels_in * dtype_bytes
    patch_bytes = estimate_patch_matrix_bytes(nvoxels_in, ntaps, nchannels_in, dtype_bytes)
    conv_bytes = nvoxels_in * nchannels_out * dtype_bytes
    pooled_bytes = nvoxels_out * nchannels_out * dtype_bytes
    return input_bytes + patch_bytes + conv_bytes + pooled_bytes


def estimate_image_peak_bytes(
    arch: Architecture,
    nvoxels: int,
    nchannels: int,
    dim3d: bool = False,
    dtype_bytes: int = 4,
) -> int:
    """
    Peak memory to push one image through every layer of an architecture.

    Voxel counts shrink by stride^ndims after each pooling; outputs targeted
    by skip connections stay resident until the end.

    Args:
        arch: FLIM architecture.
        nvoxels: Voxels of the input image.
        nchannels: Channels of the input image.
        dim3d: Whether pooling strides apply along z.
        dtype_bytes: Bytes per element.

    Returns:
        Estimated peak memory in bytes.
    """
    ndims = 3 if dim3d else 2
    retained = {j for layer in arch.layers for j in layer.skip_connection}

    peak = 0
    resident = 0
    voxels_in = nvoxels
    for index, layer in enumerate(arch.layers):
        channels_in = arch.input_channels(index, nchannels)
        voxels_out = max(1, voxels_in // (layer.effective_stride ** ndims))
        layer_bytes = estimate_layer_bytes(
            voxels_in, channels_in, layer.ntaps, layer.noutput_channels,
            voxels_out, dtype_bytes)
        peak = max(peak, layer_bytes + resident)
        if index in retained:
            resident += voxels_out * arch.output_channels(index) * dtype_bytes
        voxels_in = voxels_out
    return peak


def estimate_batch_size(peak_bytes: int, budget_bytes: int) -> int:
    """Number of images whose peak memory fits in the budget (at least 1)."""
    if peak_bytes <= 0:
        return 1
    return max(1, budget_bytes // peak_bytes)


def estimate_slab_voxels(
    nchannels: int,
    ntaps: int,
    nchannels_out: int,
    budget_bytes: int,
    dtype_bytes: int = 4,
) -> int:
    """Output voxels per convolution slab that keep one slab under the budget."""
    per_voxel = (nchannels * (ntaps + 1) + nchannels_out) * dtype_bytes
    return max(1, budget_bytes // per_voxel)
