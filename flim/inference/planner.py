"""
BatchPlanner: memory-bounded fan-out for feature extraction.

Design:
    - Stateless apart from the byte budget.
    - Pure: all estimation formulas live in flim/utils/memory.py.
    - The batch size governs how many images are processed concurrently;
      any value up to the computed bound gives the same features.
"""

from dataclasses import dataclass

from ..core.architecture import Architecture
from ..utils.memory import (
    estimate_batch_size,
    estimate_image_peak_bytes,
    estimate_slab_voxels,
)


DEFAULT_MEMORY_BUDGET = 2 * 1024 ** 3


@dataclass
class BatchPlan:
    """Result of planning one extraction run."""

    batch_size: int
    peak_bytes_per_image: int
    budget_bytes: int


class BatchPlanner:
    """
    Plan batch sizes under a memory budget.

    Usage:
        planner = BatchPlanner(budget_bytes=4 * 1024**3)
        batch = planner.batch_size_cpu(arch, input_image_nvoxels=512 * 512,
                                       input_image_nchannels=3)
    """

    def __init__(self, budget_bytes: int = DEFAULT_MEMORY_BUDGET, dtype_bytes: int = 4):
        if budget_bytes <= 0:
            raise ValueError(f"budget_bytes must be positive, got {budget_bytes}")
        self.budget_bytes = budget_bytes
        self.dtype_bytes = dtype_bytes

    def plan(
        self,
        arch: Architecture,
        input_image_nvoxels: int,
        input_image_nchannels: int,
        dim3d: bool = False,
    ) -> BatchPlan:
        """Estimate the per-image peak memory and the resulting batch size."""
        peak = estimate_image_peak_bytes(
            arch, input_image_nvoxels, input_image_nchannels, dim3d, self.dtype_bytes)
        return BatchPlan(
            batch_size=estimate_batch_size(peak, self.budget_bytes),
            peak_bytes_per_image=peak,
            budget_bytes=self.budget_bytes,
        )

    def batch_size_cpu(
        self,
        arch: Architecture,
        input_image_nvoxels: int,
        input_image_nchannels: int,
        dim3d: bool = False,
    ) -> int:
        """Maximum number of images processed concurrently within the budget."""
        return self.plan(arch, input_image_nvoxels, input_image_nchannels, dim3d).batch_size

    def max_voxels_per_slab(self, nchannels: int, ntaps: int, nchannels_out: int) -> int:
        """Output voxels per convolution slab within the budget."""
        return estimate_slab_voxels(
            nchannels, ntaps, nchannels_out, self.budget_bytes, self.dtype_bytes)
