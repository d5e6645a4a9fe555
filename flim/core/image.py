"""
Image and marker containers.

MultibandImage stores a (C, Z, Y, X) float32 grid; 2D images have Z == 1.
MarkerSet stores labeled voxel coordinates as (z, y, x) rows.
"""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np
import torch

from .errors import InsufficientMarkersError


@dataclass
class MultibandImage:
    """
    A 2D or 3D grid of voxels, each holding a vector of channel values.

    Args:
        data: Array of shape (C, Z, Y, X).  Copied to float32 on construction.
    """

    data: np.ndarray

    def __post_init__(self):
        data = np.asarray(self.data)
        if data.ndim != 4:
            raise ValueError(f"MultibandImage expects (C, Z, Y, X), got shape {data.shape}")
        self.data = np.ascontiguousarray(data, dtype=np.float32)

    @classmethod
    def from_array(cls, array: np.ndarray, channels_last: bool = True) -> 'MultibandImage':
        """
        Build an image from a 2D or 3D array.

        Accepted shapes: (Y, X), (Y, X, C) when channels_last, (C, Y, X)
        otherwise, and (C, Z, Y, X).
        """
        array = np.asarray(array)
        if array.ndim == 2:
            array = array[None, None]
        elif array.ndim == 3:
            if channels_last:
                array = np.moveaxis(array, -1, 0)
            array = array[:, None]
        elif array.ndim != 4:
            raise ValueError(f"Unsupported image shape: {array.shape}")
        return cls(array.copy())

    @classmethod
    def from_tensor(cls, tensor: torch.Tensor) -> 'MultibandImage':
        """Build an image from a (C, Z, Y, X) or (1, C, Z, Y, X) tensor."""
        if tensor.ndim == 5:
            tensor = tensor[0]
        return cls(tensor.detach().cpu().numpy())

    def to_tensor(self, device: torch.device = torch.device("cpu")) -> torch.Tensor:
        """Return a (1, C, Z, Y, X) tensor on `device`."""
        return torch.from_numpy(self.data).unsqueeze(0).to(device)

    @property
    def nchannels(self) -> int:
        return self.data.shape[0]

    @property
    def spatial_shape(self) -> Tuple[int, int, int]:
        """(Z, Y, X)."""
        return tuple(self.data.shape[1:])

    @property
    def nvoxels(self) -> int:
        z, y, x = self.spatial_shape
        return z * y * x

    @property
    def is3d(self) -> bool:
        return self.data.shape[1] > 1

    def copy(self) -> 'MultibandImage':
        return MultibandImage(self.data.copy())


@dataclass
class MarkerSet:
    """
    Labeled marker voxels of one training image.

    Args:
        coords: Integer array (N, 3) of (z, y, x) voxel coordinates.
        labels: Integer array (N,) of class labels.
        classes: Optional declared class labels; every declared class must
            keep at least one marker when patches are sampled.
    """

    coords: np.ndarray
    labels: np.ndarray
    classes: Optional[Tuple[int, ...]] = None

    def __post_init__(self):
        coords = np.asarray(self.coords, dtype=np.int64).reshape(-1, 3)
        labels = np.asarray(self.labels, dtype=np.int64).reshape(-1)
        if coords.shape[0] != labels.shape[0]:
            raise ValueError(
                f"Got {coords.shape[0]} marker coordinates but {labels.shape[0]} labels")
        self.coords = coords
        self.labels = labels
        if self.classes is not None:
            self.classes = tuple(sorted(int(c) for c in self.classes))

    def __len__(self) -> int:
        return self.coords.shape[0]

    @property
    def class_labels(self) -> Tuple[int, ...]:
        """Declared classes, or the labels present, in ascending order."""
        if self.classes is not None:
            return self.classes
        return tuple(int(c) for c in np.unique(self.labels))

    def scaled(self, factor: int) -> 'MarkerSet':
        """
        Map markers onto a grid subsampled by `factor` along every non-singleton axis.

        Duplicate voxels of the same class are merged; the declared classes
        are preserved so that a class vanishing here is still reported.
        """
        if factor == 1:
            return MarkerSet(self.coords.copy(), self.labels.copy(), self.class_labels)
        coords = self.coords // factor
        stacked = np.concatenate([coords, self.labels[:, None]], axis=1)
        stacked = np.unique(stacked, axis=0)
        return MarkerSet(stacked[:, :3], stacked[:, 3], self.class_labels)

    def by_class(
        self,
        spatial_shape: Tuple[int, int, int],
        image: Optional[str] = None,
        layer: Optional[int] = None,
    ) -> Dict[int, np.ndarray]:
        """
        Group in-bounds marker coordinates by class, in ascending label order.

        Raises:
            InsufficientMarkersError: if there are no markers or a class
                has no voxel inside the image.
        """
        if len(self) == 0:
            raise InsufficientMarkersError("Marker set is empty", image=image, layer=layer)

        inside = np.all((self.coords >= 0) & (self.coords < np.asarray(spatial_shape)), axis=1)
        groups: Dict[int, np.ndarray] = OrderedDict()
        for label in self.class_labels:
            selected = self.coords[inside & (self.labels == label)]
            if selected.shape[0] == 0:
                raise InsufficientMarkersError(
                    "Marker class has no voxel inside the image",
                    image=image, layer=layer, label=label)
            groups[label] = selected
        return groups
