# Feature extraction engine for FLIM
#
# Public API:
#   LayerPipeline     -- forward pass of a learned network over one image
#   FeatureExtractor  -- folder extraction with object masks and batching
#   BatchPlanner      -- memory-bounded batch and slab sizes

from .planner import BatchPlanner, BatchPlan, DEFAULT_MEMORY_BUDGET
from .pipeline import (
    LayerPipeline,
    FeatureExtractor,
    apply_object_mask,
    resample_nearest,
    extract_features,
    extract_features_with_bias,
    extract_features_from_layer,
)

__all__ = [
    "BatchPlanner",
    "BatchPlan",
    "DEFAULT_MEMORY_BUDGET",
    "LayerPipeline",
    "FeatureExtractor",
    "apply_object_mask",
    "resample_nearest",
    "extract_features",
    "extract_features_with_bias",
    "extract_features_from_layer",
]
