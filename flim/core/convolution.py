"""
ConvolutionEngine: apply a kernel bank to a multiband image.

For every voxel the zero-padded patch, normalized by the bank's mean and
stdev, is projected onto each kernel column.  The normalization is folded
into the weights and a bias, which is exact under zero padding, so the
projection runs as a single dilated conv3d.

The computation can be split into slabs along the outermost non-singleton
axis; each slab reads its own halo, so slabs are independent and the result
does not depend on the slab size.
"""

from typing import Optional

import numpy as np
import torch
import torch.nn.functional as F

from .adjacency import AdjacencyRelation
from .errors import DimensionMismatchError
from .image import MultibandImage
from .kernels import KernelBank


class ConvolutionEngine:
    """
    Convolve MultibandImages with KernelBanks.

    Usage:
        engine = ConvolutionEngine(device=torch.device("cpu"))
        out = engine.apply(image, bank, adjacency)   # out.nchannels == bank.ncols
    """

    def __init__(self, device: torch.device = torch.device("cpu")):
        self.device = device

    def apply(
        self,
        image: MultibandImage,
        bank: KernelBank,
        adjacency: AdjacencyRelation,
        bias: Optional[np.ndarray] = None,
        normalize: bool = True,
        max_voxels: Optional[int] = None,
        layer: Optional[int] = None,
    ) -> MultibandImage:
        """
        Convolve an image with a kernel bank.

        Args:
            image: Input image (C, Z, Y, X).
            bank: Kernel bank with ntaps * C rows.
            adjacency: Receptive field the bank was learned with.
            bias: Optional (ncols,) vector added after projection.
            normalize: Apply the bank's mean / stdev normalization.
            max_voxels: Optional upper bound of output voxels per slab.
            layer: Optional layer index for error messages.

        Returns:
            New image with bank.ncols channels and the input's spatial shape.
        """
        expected = adjacency.ntaps * image.nchannels
        if bank.dim != expected:
            raise DimensionMismatchError(
                f"Kernel bank has {bank.dim} rows but patches have {expected} "
                f"components ({adjacency.ntaps} taps x {image.nchannels} channels)",
                layer=layer)

        if normalize:
            bank = bank.folded()
        total_bias = np.zeros(bank.ncols, dtype=np.float32)
        if bank.bias is not None:
            total_bias += bank.bias
        if bias is not None:
            bias = np.asarray(bias, dtype=np.float32).reshape(-1)
            if bias.shape[0] != bank.ncols:
                raise DimensionMismatchError(
                    f"Bias length {bias.shape[0]} does not match {bank.ncols} kernels",
                    layer=layer)
            total_bias += bias

        weight = bank.to_weight(adjacency, image.nchannels, self.device)
        bias_t = torch.from_numpy(total_bias).to(self.device)

        with torch.no_grad():
            x = image.to_tensor(self.device)
            (zb, za), (yb, ya), (xb, xa) = adjacency.padding
            padded = F.pad(x, (xb, xa, yb, ya, zb, za))
            out = self._convolve_slabs(padded, weight, bias_t, adjacency, image, max_voxels)

        return MultibandImage.from_tensor(out)

    def _convolve_slabs(
        self,
        padded: torch.Tensor,
        weight: torch.Tensor,
        bias: torch.Tensor,
        adjacency: AdjacencyRelation,
        image: MultibandImage,
        max_voxels: Optional[int],
    ) -> torch.Tensor:
        """Run conv3d over the whole padded input or over independent slabs."""
        dilation = adjacency.step
        if max_voxels is None or max_voxels >= image.nvoxels:
            return F.conv3d(padded, weight, bias, dilation=dilation)

        z, y, x = image.spatial_shape
        axis = 0 if z > 1 else 1
        extent = image.spatial_shape[axis]
        voxels_per_row = image.nvoxels // extent
        rows = max(1, max_voxels // voxels_per_row)
        halo = adjacency.span[axis] - 1

        slabs = []
        for start in range(0, extent, rows):
            stop = min(start + rows, extent)
            # Spatial axis `axis` is tensor dim 2 + axis.
            chunk = padded.narrow(2 + axis, start, stop - start + halo)
            slabs.append(F.conv3d(chunk, weight, bias, dilation=dilation))
        return torch.cat(slabs, dim=2 + axis)
