"""
FLIM network architecture.

An Architecture is an immutable, validated sequence of LayerSpec values plus
the two global hyperparameters of marker-based learning (stdev_factor and the
intrinsic atrous flag).  It is read from / written to JSON (the original
``layer1 .. layerN`` layout) or YAML.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

import yaml

from .errors import ArchitectureMismatchError


POOL_TYPES = ("no_pool", "avg_pool", "max_pool")


def _triple(values: Sequence[int], name: str) -> Tuple[int, int, int]:
    """Convert a 2- or 3-element size to (x, y, z); a z of 0 means 2D (read as 1)."""
    values = list(values)
    if len(values) == 2:
        values.append(1)
    if len(values) != 3:
        raise ArchitectureMismatchError(f"{name} must have 2 or 3 entries, got {values}")
    x, y, z = (int(v) for v in values)
    if z == 0:
        z = 1
    return (x, y, z)


@dataclass(frozen=True)
class LayerSpec:
    """Hyperparameters of one FLIM convolutional layer."""

    kernel_size: Tuple[int, int, int] = (3, 3, 1)       # (x, y, z)
    dilation_rate: Tuple[int, int, int] = (1, 1, 1)     # (x, y, z)
    nkernels_per_image: int = 16
    nkernels_per_marker: int = 8
    noutput_channels: int = 16
    relu: bool = True
    pool_type: str = "no_pool"
    pool_size: Tuple[int, int, int] = (1, 1, 1)         # (x, y, z)
    pool_stride: int = 1
    skip_connection: Tuple[int, ...] = field(default_factory=tuple)

    def __post_init__(self):
        # Accept lists from config files while keeping the instance hashable.
        object.__setattr__(self, "kernel_size", _triple(self.kernel_size, "kernel_size"))
        object.__setattr__(self, "dilation_rate", _triple(self.dilation_rate, "dilation_rate"))
        object.__setattr__(self, "pool_size", _triple(self.pool_size, "pool_size"))
        object.__setattr__(self, "skip_connection", tuple(int(j) for j in self.skip_connection))

    @property
    def ntaps(self) -> int:
        """Number of kernel taps (kx * ky * kz)."""
        kx, ky, kz = self.kernel_size
        return kx * ky * kz

    @property
    def effective_stride(self) -> int:
        """Stride applied to the spatial grid by this layer's pooling."""
        return 1 if self.pool_type == "no_pool" else self.pool_stride

    def validate(self, index: int) -> None:
        """Check the per-layer invariants; raise ArchitectureMismatchError."""
        if any(k < 1 for k in self.kernel_size):
            raise ArchitectureMismatchError(
                f"kernel_size must be positive, got {self.kernel_size}", layer=index)
        if any(d < 1 for d in self.dilation_rate):
            raise ArchitectureMismatchError(
                f"dilation_rate must be positive, got {self.dilation_rate}", layer=index)
        if self.nkernels_per_marker < 1:
            raise ArchitectureMismatchError(
                "nkernels_per_marker must be >= 1", layer=index)
        if self.nkernels_per_image < self.nkernels_per_marker:
            raise ArchitectureMismatchError(
                f"nkernels_per_image ({self.nkernels_per_image}) is smaller than "
                f"nkernels_per_marker ({self.nkernels_per_marker})", layer=index)
        if not 1 <= self.noutput_channels <= self.nkernels_per_image:
            raise ArchitectureMismatchError(
                f"noutput_channels ({self.noutput_channels}) must be in "
                f"[1, nkernels_per_image={self.nkernels_per_image}]", layer=index)
        if self.pool_type not in POOL_TYPES:
            raise ArchitectureMismatchError(
                f"Unknown pool_type '{self.pool_type}', expected one of {POOL_TYPES}",
                layer=index)
        if any(p < 1 for p in self.pool_size) or self.pool_stride < 1:
            raise ArchitectureMismatchError(
                f"pool_size {self.pool_size} and pool_stride {self.pool_stride} "
                f"must be positive", layer=index)
        if len(set(self.skip_connection)) != len(self.skip_connection):
            raise ArchitectureMismatchError(
                f"Duplicate skip connection in {self.skip_connection}", layer=index)
        for j in self.skip_connection:
            if not 0 <= j < index:
                raise ArchitectureMismatchError(
                    f"Skip connection to layer {j} is not an earlier layer", layer=index)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the nested layout used in architecture files."""
        return {
            'conv': {
                'kernel_size': list(self.kernel_size),
                'dilation_rate': list(self.dilation_rate),
                'nkernels_per_image': self.nkernels_per_image,
                'nkernels_per_marker': self.nkernels_per_marker,
                'noutput_channels': self.noutput_channels,
            },
            'relu': self.relu,
            'pooling': {
                'type': self.pool_type,
                'size': list(self.pool_size),
                'stride': self.pool_stride,
            },
            'skip_connection': list(self.skip_connection),
        }

    @classmethod
    def from_dict(cls, layer_dict: Dict[str, Any]) -> 'LayerSpec':
        """Create a layer from the nested layout used in architecture files."""
        conv = layer_dict.get('conv', {})
        pooling = layer_dict.get('pooling', {})
        nkernels_per_image = conv.get('nkernels_per_image', 16)
        return cls(
            kernel_size=conv.get('kernel_size', (3, 3, 1)),
            dilation_rate=conv.get('dilation_rate', (1, 1, 1)),
            nkernels_per_image=nkernels_per_image,
            nkernels_per_marker=conv.get('nkernels_per_marker', 8),
            noutput_channels=conv.get('noutput_channels', nkernels_per_image),
            relu=bool(layer_dict.get('relu', True)),
            pool_type=pooling.get('type', 'no_pool'),
            pool_size=pooling.get('size', (1, 1, 1)),
            pool_stride=pooling.get('stride', 1),
            skip_connection=layer_dict.get('skip_connection', ()) or (),
        )


@dataclass(frozen=True)
class Architecture:
    """
    A FLIM network: an ordered sequence of layers plus global hyperparameters.

    Args:
        layers: Layer specifications in execution order.
        stdev_factor: Regularizer added to the marker-based standard deviation.
        apply_intrinsic_atrous: Fold pooling strides into the dilation of the
            following layers when training at full resolution.
    """

    layers: Tuple[LayerSpec, ...]
    stdev_factor: float = 0.01
    apply_intrinsic_atrous: bool = False

    def __post_init__(self):
        object.__setattr__(self, "layers", tuple(self.layers))
        if not self.layers:
            raise ArchitectureMismatchError("An architecture needs at least one layer")
        if self.stdev_factor < 0:
            raise ArchitectureMismatchError(
                f"stdev_factor must be non-negative, got {self.stdev_factor}")
        for index, layer in enumerate(self.layers):
            layer.validate(index)

    @property
    def nlayers(self) -> int:
        return len(self.layers)

    def output_channels(self, index: int) -> int:
        """Channels produced by layer `index` after skip-connection concatenation."""
        layer = self.layers[index]
        return layer.noutput_channels + sum(self.output_channels(j) for j in layer.skip_connection)

    def input_channels(self, index: int, image_channels: int) -> int:
        """Channels consumed by layer `index` for an input with `image_channels` bands."""
        if index == 0:
            return image_channels
        return self.output_channels(index - 1)

    def stride_product(self, index: int) -> int:
        """Cumulative pooling stride of all layers before `index`."""
        product = 1
        for layer in self.layers[:index]:
            product *= layer.effective_stride
        return product

    def atrous_factor(self, index: int) -> int:
        """Atrous factor of layer `index` when training at full resolution."""
        if not self.apply_intrinsic_atrous:
            return 1
        return self.stride_product(index)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the original ``layer1 .. layerN`` dictionary layout."""
        arch_dict: Dict[str, Any] = {
            'stdev_factor': self.stdev_factor,
            'nlayers': self.nlayers,
            'apply_intrinsic_atrous': self.apply_intrinsic_atrous,
        }
        for index, layer in enumerate(self.layers):
            arch_dict[f'layer{index + 1}'] = layer.to_dict()
        return arch_dict

    @classmethod
    def from_dict(cls, arch_dict: Dict[str, Any]) -> 'Architecture':
        """Create an architecture from the ``layer1 .. layerN`` dictionary layout."""
        if 'nlayers' not in arch_dict:
            raise ArchitectureMismatchError("Architecture is missing 'nlayers'")
        nlayers = int(arch_dict['nlayers'])
        layers: List[LayerSpec] = []
        for index in range(nlayers):
            key = f'layer{index + 1}'
            if key not in arch_dict:
                raise ArchitectureMismatchError(
                    f"Architecture declares {nlayers} layers but '{key}' is missing")
            layers.append(LayerSpec.from_dict(arch_dict[key]))
        return cls(
            layers=tuple(layers),
            stdev_factor=float(arch_dict.get('stdev_factor', 0.01)),
            apply_intrinsic_atrous=bool(arch_dict.get('apply_intrinsic_atrous', False)),
        )


def read_architecture(path: str) -> Architecture:
    """
    Read a FLIM architecture from a .json or .yaml/.yml file.

    Args:
        path: Architecture file.

    Returns:
        Validated Architecture.
    """
    path = Path(path)
    ext = path.suffix.lower()

    with open(path, 'r') as f:
        if ext == '.json':
            arch_dict = json.load(f)
        elif ext in ['.yaml', '.yml']:
            arch_dict = yaml.safe_load(f)
        else:
            raise ValueError(f"Unsupported architecture format: {ext}")

    return Architecture.from_dict(arch_dict)


def write_architecture(arch: Architecture, path: str) -> None:
    """Write a FLIM architecture to a .json or .yaml/.yml file."""
    path = Path(path)
    ext = path.suffix.lower()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, 'w') as f:
        if ext == '.json':
            json.dump(arch.to_dict(), f, indent=2)
        elif ext in ['.yaml', '.yml']:
            yaml.safe_dump(arch.to_dict(), f, sort_keys=False)
        else:
            raise ValueError(f"Unsupported architecture format: {ext}")
