"""
FLIM: Feature Learning from Image Markers
Core module package
"""

from .errors import (
    FLIMError,
    InsufficientMarkersError,
    EmptyPatchSetError,
    ArchitectureMismatchError,
    DimensionMismatchError,
    InvalidPoolingGeometryError,
    IndexOutOfRangeError,
)
from .architecture import LayerSpec, Architecture, read_architecture, write_architecture
from .image import MultibandImage, MarkerSet
from .adjacency import AdjacencyRelation, adjacency_from_kernel, adjacency_from_pooling
from .patches import PatchSampler
from .kernels import (
    KernelBank,
    KernelEstimator,
    select_kernels,
    select_kernels_manual,
    read_kernel_selection,
)
from .convolution import ConvolutionEngine
from .pooling import relu, atrous_pool, atrous_average_pooling, atrous_max_pooling

__all__ = [
    'FLIMError',
    'InsufficientMarkersError',
    'EmptyPatchSetError',
    'ArchitectureMismatchError',
    'DimensionMismatchError',
    'InvalidPoolingGeometryError',
    'IndexOutOfRangeError',
    'LayerSpec',
    'Architecture',
    'read_architecture',
    'write_architecture',
    'MultibandImage',
    'MarkerSet',
    'AdjacencyRelation',
    'adjacency_from_kernel',
    'adjacency_from_pooling',
    'PatchSampler',
    'KernelBank',
    'KernelEstimator',
    'select_kernels',
    'select_kernels_manual',
    'read_kernel_selection',
    'ConvolutionEngine',
    'relu',
    'atrous_pool',
    'atrous_average_pooling',
    'atrous_max_pooling',
]
