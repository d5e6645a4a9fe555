"""
Marker-driven kernel estimation.

Pipeline for one layer:
    marker patches of all images -> population mean / stdev
    per image, per class: k-means on normalized patches -> centroids
    per image: concatenate classes, reduce to nkernels_per_image
    all images: consensus k-means to noutput_channels (or PCA)

Kernels are stored as columns of a (ntaps * Cin, ncols) matrix and scaled to
unit L2 norm.  Consensus columns are ordered by the lowest concatenation
index (image index, then class) among their cluster members, so learning is
reproducible for a fixed seed.
"""

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch
from sklearn.cluster import KMeans
from sklearn.decomposition import PCA

from .adjacency import AdjacencyRelation
from .architecture import LayerSpec
from .errors import (
    ArchitectureMismatchError,
    DimensionMismatchError,
    EmptyPatchSetError,
    IndexOutOfRangeError,
)


logger = logging.getLogger('FLIM')


# ---------------------------------------------------------------------------
# Kernel bank
# ---------------------------------------------------------------------------

@dataclass
class KernelBank:
    """
    Learned kernels of one layer plus the marker-based input normalization.

    Args:
        kernels: (dim, ncols) matrix, one flattened kernel per column.
        mean: (dim,) mean subtracted from every patch.
        stdev: (dim,) divisor applied after centering.
        bias: Optional (ncols,) vector added after projection.
    """

    kernels: np.ndarray
    mean: np.ndarray
    stdev: np.ndarray
    bias: Optional[np.ndarray] = None

    def __post_init__(self):
        self.kernels = np.ascontiguousarray(self.kernels, dtype=np.float32)
        self.mean = np.ascontiguousarray(self.mean, dtype=np.float32).reshape(-1)
        self.stdev = np.ascontiguousarray(self.stdev, dtype=np.float32).reshape(-1)
        if self.kernels.ndim != 2:
            raise DimensionMismatchError(
                f"Kernel bank must be a 2D matrix, got shape {self.kernels.shape}")
        if self.mean.shape[0] != self.dim or self.stdev.shape[0] != self.dim:
            raise DimensionMismatchError(
                f"Normalization vectors ({self.mean.shape[0]}, {self.stdev.shape[0]}) "
                f"do not match kernel length {self.dim}")
        if self.bias is not None:
            self.bias = np.ascontiguousarray(self.bias, dtype=np.float32).reshape(-1)
            if self.bias.shape[0] != self.ncols:
                raise DimensionMismatchError(
                    f"Bias length {self.bias.shape[0]} does not match {self.ncols} kernels")

    @property
    def dim(self) -> int:
        """Patch dimensionality (ntaps * input channels)."""
        return self.kernels.shape[0]

    @property
    def ncols(self) -> int:
        """Number of kernels, i.e. output channels."""
        return self.kernels.shape[1]

    def folded(self) -> 'KernelBank':
        """
        Fold the normalization into the kernels and a bias.

        w' = w / stdev, b' = b - sum(w * mean / stdev); convolving raw input
        with the folded bank equals convolving normalized input with this one.
        """
        scaled = self.kernels / self.stdev[:, None]
        bias = -(scaled * self.mean[:, None]).sum(axis=0)
        if self.bias is not None:
            bias = bias + self.bias
        return KernelBank(
            kernels=scaled,
            mean=np.zeros(self.dim, dtype=np.float32),
            stdev=np.ones(self.dim, dtype=np.float32),
            bias=bias,
        )

    def select(self, indices: Sequence[int]) -> 'KernelBank':
        """Keep only the kernels at `indices`, in the requested order."""
        kernels = select_kernels(self.kernels, indices)
        bias = None
        if self.bias is not None:
            bias = self.bias[[int(i) for i in indices]]
        return KernelBank(
            kernels=kernels,
            mean=self.mean.copy(),
            stdev=self.stdev.copy(),
            bias=bias,
        )

    def to_weight(
        self,
        adjacency: AdjacencyRelation,
        nchannels: int,
        device: torch.device = torch.device("cpu"),
    ) -> torch.Tensor:
        """
        Reshape the kernel columns into a conv3d weight.

        Returns:
            Tensor of shape (ncols, C, kz, ky, kx).
        """
        if self.dim != adjacency.ntaps * nchannels:
            raise DimensionMismatchError(
                f"Kernel bank has {self.dim} rows but the layer samples "
                f"{adjacency.ntaps} taps x {nchannels} channels = "
                f"{adjacency.ntaps * nchannels}")
        kz, ky, kx = adjacency.size
        weight = self.kernels.T.reshape(self.ncols, kz, ky, kx, nchannels)
        weight = np.ascontiguousarray(weight.transpose(0, 4, 1, 2, 3))
        return torch.from_numpy(weight).to(device)


def select_kernels(kernels: np.ndarray, indices: Sequence[int]) -> np.ndarray:
    """
    Select kernel columns, preserving the order of `indices`.

    Args:
        kernels: (dim, ncols) kernel matrix.
        indices: Column indices.

    Returns:
        (dim, len(indices)) matrix whose column i is kernels[:, indices[i]].

    Raises:
        IndexOutOfRangeError: for an index outside [0, ncols).
    """
    kernels = np.asarray(kernels)
    ncols = kernels.shape[1]
    for index in indices:
        if not 0 <= int(index) < ncols:
            raise IndexOutOfRangeError(
                f"Kernel index {index} is out of range for a bank of {ncols} kernels")
    return np.ascontiguousarray(kernels[:, [int(i) for i in indices]])


def select_kernels_manual(kernel_bank_path: str, selected_kernels_path: str) -> np.ndarray:
    """
    Select kernels of a saved bank from a JSON list of indices.

    Args:
        kernel_bank_path: Kernel bank (.npy, shape (dim, ncols)).
        selected_kernels_path: JSON file holding a list of indices, or an
            object with a "selected_kernels" list.

    Returns:
        Reduced kernel matrix.
    """
    kernels = np.load(str(kernel_bank_path))
    return select_kernels(kernels, read_kernel_selection(selected_kernels_path))


def read_kernel_selection(path: str) -> List[int]:
    """Read kernel indices from a JSON list or a {"selected_kernels": [...]} object."""
    with open(path, 'r') as f:
        selection = json.load(f)
    if isinstance(selection, dict):
        selection = selection['selected_kernels']
    return [int(i) for i in selection]


# ---------------------------------------------------------------------------
# Estimation helpers
# ---------------------------------------------------------------------------

def unit_norm_columns(kernels: np.ndarray) -> np.ndarray:
    """Scale every column to unit L2 norm; all-zero columns are left unchanged."""
    norms = np.linalg.norm(kernels, axis=0)
    norms[norms == 0] = 1.0
    return kernels / norms


def ordered_kmeans(
    data: np.ndarray,
    n_clusters: int,
    seed: int = 42,
    n_init: int = 10,
) -> np.ndarray:
    """
    K-means centroids ordered by the lowest index of their members.

    Args:
        data: (N, dim) samples, N >= n_clusters.
        n_clusters: Number of centroids.
        seed: Random state of the clustering.
        n_init: Number of k-means restarts.

    Returns:
        (n_clusters, dim) centroids.
    """
    if n_clusters == data.shape[0]:
        return data.copy()

    kmeans = KMeans(n_clusters=n_clusters, random_state=seed, n_init=n_init)
    labels = kmeans.fit_predict(data)
    centers = kmeans.cluster_centers_

    first_member = np.full(n_clusters, data.shape[0], dtype=np.int64)
    for index in range(data.shape[0] - 1, -1, -1):
        first_member[labels[index]] = index
    order = np.argsort(first_member, kind='stable')
    return centers[order]


# ---------------------------------------------------------------------------
# Estimator
# ---------------------------------------------------------------------------

class KernelEstimator:
    """
    Learn one layer's kernel bank from marker patches.

    Args:
        layer: Layer specification.
        stdev_factor: Regularizer added to the population standard deviation.
        seed: Random state for every clustering step.
        n_init: K-means restarts.
        max_workers: Threads used for per-image clustering.

    Usage:
        estimator = KernelEstimator(layer, arch.stdev_factor, seed=42)
        bank = estimator.estimate(patch_sets, image_names, layer_index=0)
    """

    def __init__(
        self,
        layer: LayerSpec,
        stdev_factor: float = 0.01,
        seed: int = 42,
        n_init: int = 10,
        max_workers: Optional[int] = None,
    ):
        self.layer = layer
        self.stdev_factor = stdev_factor
        self.seed = seed
        self.n_init = n_init
        self.max_workers = max_workers

    def population_statistics(
        self,
        patch_sets: Sequence[Dict[int, np.ndarray]],
        layer_index: Optional[int] = None,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Mean and regularized standard deviation over all marker patches.

        Returns:
            (mean, stdev), both of length dim; stdev = std + stdev_factor.
        """
        patches = [p for patch_set in patch_sets for p in patch_set.values() if p.shape[0] > 0]
        if not patches:
            raise EmptyPatchSetError("No marker patches to compute statistics", layer=layer_index)
        dims = {p.shape[1] for p in patches}
        if len(dims) != 1:
            raise DimensionMismatchError(
                f"Training images produce patches of different lengths {sorted(dims)}",
                layer=layer_index)

        union = np.concatenate(patches, axis=0).astype(np.float64)
        mean = union.mean(axis=0)
        stdev = union.std(axis=0) + self.stdev_factor
        stdev[stdev == 0] = 1.0
        return mean, stdev

    def cluster(
        self,
        patches: np.ndarray,
        n_clusters: int,
        image: Optional[str] = None,
        layer_index: Optional[int] = None,
        label: Optional[int] = None,
    ) -> np.ndarray:
        """
        Cluster normalized patches into at most `n_clusters` kernels.

        Returns:
            (dim, k) kernel columns with k = min(n_clusters, N).
        """
        if patches.shape[0] == 0:
            raise EmptyPatchSetError(
                "Cannot cluster an empty patch set", image=image, layer=layer_index, label=label)
        k = min(n_clusters, patches.shape[0])
        return ordered_kmeans(patches, k, seed=self.seed, n_init=self.n_init).T

    def image_kernels(
        self,
        class_patches: Dict[int, np.ndarray],
        mean: np.ndarray,
        stdev: np.ndarray,
        image: Optional[str] = None,
        layer_index: Optional[int] = None,
    ) -> np.ndarray:
        """
        Learn the kernel bank of one training image.

        Returns:
            (dim, width) unit-norm kernels, width <= nkernels_per_image.
        """
        columns = []
        for label, patches in class_patches.items():
            normalized = (patches.astype(np.float64) - mean) / stdev
            columns.append(self.cluster(
                normalized, self.layer.nkernels_per_marker,
                image=image, layer_index=layer_index, label=label))
        if not columns:
            raise EmptyPatchSetError("Image has no marker classes", image=image, layer=layer_index)
        kernels = np.concatenate(columns, axis=1)

        if kernels.shape[1] > self.layer.nkernels_per_image:
            logger.debug(
                f"Reducing {kernels.shape[1]} kernels of {image} to "
                f"{self.layer.nkernels_per_image}")
            kernels = ordered_kmeans(
                kernels.T, self.layer.nkernels_per_image,
                seed=self.seed, n_init=self.n_init).T
        elif kernels.shape[1] < self.layer.nkernels_per_image:
            logger.info(
                f"Image {image} yields {kernels.shape[1]} kernels, fewer than "
                f"nkernels_per_image={self.layer.nkernels_per_image}")

        return unit_norm_columns(kernels)

    def consensus(
        self,
        image_banks: Sequence[np.ndarray],
        layer_index: Optional[int] = None,
    ) -> np.ndarray:
        """
        Merge per-image kernel banks into noutput_channels kernels.

        Banks are concatenated in image order; ties are broken towards the
        lowest concatenation index.
        """
        if not image_banks:
            raise EmptyPatchSetError("No per-image kernel banks to merge", layer=layer_index)
        union = np.concatenate(image_banks, axis=1)
        target = self.layer.noutput_channels
        if union.shape[1] < target:
            raise ArchitectureMismatchError(
                f"noutput_channels={target} exceeds the {union.shape[1]} kernels "
                f"learned across {len(image_banks)} training images", layer=layer_index)
        if union.shape[1] == target:
            return union
        merged = ordered_kmeans(union.T, target, seed=self.seed, n_init=self.n_init).T
        return unit_norm_columns(merged)

    def estimate(
        self,
        patch_sets: Sequence[Dict[int, np.ndarray]],
        image_names: Optional[Sequence[str]] = None,
        layer_index: Optional[int] = None,
    ) -> KernelBank:
        """
        Learn the consensus kernel bank of a layer.

        Args:
            patch_sets: Per training image, {label: (N, dim) raw patches}.
            image_names: Optional names used in error messages and logs.
            layer_index: Optional layer index used in error messages.

        Returns:
            KernelBank with noutput_channels columns.
        """
        if image_names is None:
            image_names = [str(i) for i in range(len(patch_sets))]
        mean, stdev = self.population_statistics(patch_sets, layer_index)

        def learn(item: Tuple[Dict[int, np.ndarray], str]) -> np.ndarray:
            class_patches, name = item
            return self.image_kernels(class_patches, mean, stdev, image=name, layer_index=layer_index)

        # Executor.map keeps image order, which the consensus tie-break relies on.
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            image_banks: List[np.ndarray] = list(executor.map(learn, zip(patch_sets, image_names)))

        kernels = self.consensus(image_banks, layer_index)
        logger.info(
            f"Layer {layer_index}: {sum(b.shape[1] for b in image_banks)} image kernels "
            f"-> {kernels.shape[1]} consensus kernels of length {kernels.shape[0]}")
        return KernelBank(kernels=kernels, mean=mean, stdev=stdev)

    def estimate_pca(
        self,
        patch_sets: Sequence[Dict[int, np.ndarray]],
        layer_index: Optional[int] = None,
    ) -> KernelBank:
        """
        Learn a layer's kernels as the top principal components of the
        normalized marker patches.
        """
        mean, stdev = self.population_statistics(patch_sets, layer_index)
        union = np.concatenate(
            [p for patch_set in patch_sets for p in patch_set.values()], axis=0)
        normalized = (union.astype(np.float64) - mean) / stdev

        target = self.layer.noutput_channels
        available = min(normalized.shape)
        if target > available:
            raise ArchitectureMismatchError(
                f"noutput_channels={target} exceeds the {available} principal "
                f"components available", layer=layer_index)

        pca = PCA(n_components=target, svd_solver='full')
        pca.fit(normalized)
        logger.info(
            f"Layer {layer_index}: PCA keeps {target} components explaining "
            f"{pca.explained_variance_ratio_.sum():.3f} of the variance")
        return KernelBank(kernels=pca.components_.T, mean=mean, stdev=stdev)
