"""
LayerPipeline and FeatureExtractor: run a learned FLIM network.

The pipeline composes the core stages for every layer:
    AdjacencyBuilder -> ConvolutionEngine -> relu -> pooling -> skip concatenation

Design:
    - Every stage returns a new image; banks and architecture are read-only,
      so one pipeline can serve many images concurrently.
    - Extraction mode applies the real pooling strides.  Full-resolution
      mode (keep_resolution=True) pools with stride 1 and folds the
      cumulative stride into the atrous factor of the following layers;
      training uses it when the architecture enables intrinsic atrous.
    - FeatureExtractor adds folder I/O, object masks and batched fan-out.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np
import torch
import torch.nn.functional as F
from tqdm import tqdm

from ..core.adjacency import adjacency_from_kernel
from ..core.architecture import Architecture
from ..core.convolution import ConvolutionEngine
from ..core.errors import ArchitectureMismatchError
from ..core.image import MultibandImage
from ..core.kernels import KernelBank
from ..core.pooling import atrous_pool, relu
from ..utils import io
from ..utils.device import CPU_DEVICE, resolve_device
from .planner import BatchPlanner


logger = logging.getLogger('FLIM')


def resample_nearest(image: MultibandImage, spatial_shape) -> MultibandImage:
    """Nearest-neighbour resampling of an image onto a (Z, Y, X) grid."""
    if tuple(image.spatial_shape) == tuple(spatial_shape):
        return image
    tensor = torch.from_numpy(image.data).unsqueeze(0)
    resized = F.interpolate(tensor, size=tuple(spatial_shape), mode='nearest')
    return MultibandImage.from_tensor(resized)


# ---------------------------------------------------------------------------
# Layer pipeline
# ---------------------------------------------------------------------------

class LayerPipeline:
    """
    Forward pass of a FLIM network.

    Args:
        arch: Network architecture.
        banks: Kernel banks of the first len(banks) layers; None marks a
            layer that this pipeline will not run.
        device: Torch device of the convolutions.
        keep_resolution: Pool with stride 1 and use atrous correction.
        normalize: Apply each bank's mean / stdev before projecting.  With
            False the kernels and stored bias act on the raw layer input.
        planner: Optional BatchPlanner bounding the voxels per convolution slab.

    Usage:
        pipeline = LayerPipeline(arch, banks)
        outputs = pipeline.run(image)    # one MultibandImage per layer
    """

    def __init__(
        self,
        arch: Architecture,
        banks: Sequence[Optional[KernelBank]],
        device: torch.device = torch.device("cpu"),
        keep_resolution: bool = False,
        planner: Optional[BatchPlanner] = None,
        normalize: bool = True,
    ):
        if len(banks) > arch.nlayers:
            raise ArchitectureMismatchError(
                f"Got {len(banks)} kernel banks for {arch.nlayers} layers")
        for index, bank in enumerate(banks):
            if bank is not None and bank.ncols != arch.layers[index].noutput_channels:
                raise ArchitectureMismatchError(
                    f"Kernel bank has {bank.ncols} kernels but the layer declares "
                    f"noutput_channels={arch.layers[index].noutput_channels}", layer=index)
        self.arch = arch
        self.banks = list(banks)
        self.keep_resolution = keep_resolution
        self.planner = planner
        self.normalize = normalize
        self.engine = ConvolutionEngine(device)

    def atrous_factor(self, index: int) -> int:
        """Atrous factor of layer `index` in the current resolution mode."""
        return self.arch.stride_product(index) if self.keep_resolution else 1

    def run_layer(
        self,
        index: int,
        image: MultibandImage,
        skip_sources: Optional[Dict[int, MultibandImage]] = None,
        dim3d: Optional[bool] = None,
    ) -> MultibandImage:
        """
        Run one layer.

        Args:
            index: Layer index.
            image: Layer input.
            skip_sources: Outputs of the layers listed in the layer's
                skip_connection, keyed by layer index.
            dim3d: 3D adjacency; defaults to whether the input is 3D.

        Returns:
            Layer output after skip concatenation.
        """
        if index >= len(self.banks) or self.banks[index] is None:
            raise ArchitectureMismatchError(f"No kernel bank for layer {index}", layer=index)
        layer = self.arch.layers[index]
        bank = self.banks[index]
        dim3d = image.is3d if dim3d is None else dim3d
        atrous = self.atrous_factor(index)

        adjacency = adjacency_from_kernel(layer, dim3d, atrous)
        max_voxels = None
        if self.planner is not None:
            max_voxels = self.planner.max_voxels_per_slab(
                image.nchannels, adjacency.ntaps, bank.ncols)
        out = self.engine.apply(image, bank, adjacency, normalize=self.normalize,
                                max_voxels=max_voxels, layer=index)

        if layer.relu:
            out = relu(out)

        if self.keep_resolution:
            out = atrous_pool(out, layer.pool_type, layer.pool_size, 1, atrous,
                              same=True, layer=index)
        else:
            out = atrous_pool(out, layer.pool_type, layer.pool_size, layer.pool_stride,
                              layer=index)

        if layer.skip_connection:
            skip_sources = skip_sources or {}
            parts = [out.data]
            for j in layer.skip_connection:
                if j not in skip_sources:
                    raise ArchitectureMismatchError(
                        f"Skip connection needs the output of layer {j}", layer=index)
                parts.append(resample_nearest(skip_sources[j], out.spatial_shape).data)
            out = MultibandImage(np.concatenate(parts, axis=0))

        return out

    def run(self, image: MultibandImage, nlayers: Optional[int] = None) -> List[MultibandImage]:
        """
        Run the first `nlayers` layers (default: every layer with a bank).

        Returns:
            Output of each executed layer, in order.
        """
        nlayers = len(self.banks) if nlayers is None else nlayers
        dim3d = image.is3d
        outputs: List[MultibandImage] = []
        current = image
        for index in range(nlayers):
            skip_sources = {j: outputs[j] for j in self.arch.layers[index].skip_connection}
            current = self.run_layer(index, current, skip_sources, dim3d)
            outputs.append(current)
        return outputs


def apply_object_mask(features: MultibandImage, mask: MultibandImage) -> MultibandImage:
    """Zero the features outside the object (non-zero voxels of any mask channel)."""
    binary = MultibandImage((mask.data != 0).any(axis=0, keepdims=True).astype(np.float32))
    binary = resample_nearest(binary, features.spatial_shape)
    return MultibandImage(features.data * binary.data)


# ---------------------------------------------------------------------------
# Feature extractor
# ---------------------------------------------------------------------------

class FeatureExtractor:
    """
    Extract features of image folders with a learned FLIM model.

    Usage:
        extractor = FeatureExtractor(arch, io.load_kernel_banks(param_dir, arch.nlayers))
        extractor.extract_folder(orig_dir, feat_dir)
    """

    def __init__(
        self,
        arch: Architecture,
        banks: Sequence[KernelBank],
        device: int = CPU_DEVICE,
        planner: Optional[BatchPlanner] = None,
        with_bias: bool = False,
    ):
        if with_bias:
            # Kernels plus stored bias on the raw input; a bank saved without
            # a bias gets its normalization folded into one.
            banks = [bank if bank.bias is not None else bank.folded() for bank in banks]
        self.arch = arch
        self.planner = planner or BatchPlanner()
        self.pipeline = LayerPipeline(
            arch, banks, device=resolve_device(device), planner=self.planner,
            normalize=not with_bias)

    def extract(
        self,
        image: MultibandImage,
        object_mask: Optional[MultibandImage] = None,
    ) -> List[MultibandImage]:
        """Features of every layer for one image, masked by the object if given."""
        outputs = self.pipeline.run(image)
        if object_mask is not None:
            outputs = [apply_object_mask(out, object_mask) for out in outputs]
        return outputs

    def extract_folder(
        self,
        orig_dir: str,
        feat_dir: str,
        image_list: Optional[str] = None,
        object_dir: Optional[str] = None,
        layers: Optional[Sequence[int]] = None,
    ) -> List[Path]:
        """
        Extract and save features of every image of a folder.

        Args:
            orig_dir: Folder of input images.
            feat_dir: Output folder (<stem>_layer{l}.npy).
            image_list: Optional CSV restricting the images.
            object_dir: Optional folder of object masks named like the images.
            layers: Layers to save (default: the last one).

        Returns:
            Paths of the written feature files.
        """
        paths = io.resolve_images(orig_dir, image_list)
        if not paths:
            logger.warning(f"No images found in {orig_dir}")
            return []
        layers = [self.arch.nlayers - 1] if layers is None else list(layers)

        first = io.load_image(str(paths[0]))
        batch_size = self.planner.batch_size_cpu(
            self.arch, first.nvoxels, first.nchannels, first.is3d)
        logger.info(f"Extracting features of {len(paths)} images in batches of {batch_size}")

        def process(path: Path) -> List[Path]:
            image = io.load_image(str(path))
            mask = None
            if object_dir is not None:
                mask_path = io.find_file(object_dir, path.stem)
                if mask_path is not None:
                    mask = io.load_image(str(mask_path))
            outputs = self.extract(image, mask)
            written = []
            for index in layers:
                out_path = io.feature_path(feat_dir, path.stem, index)
                io.save_features(str(out_path), outputs[index])
                written.append(out_path)
            return written

        written: List[Path] = []
        with ThreadPoolExecutor(max_workers=min(batch_size, len(paths))) as executor:
            for start in tqdm(range(0, len(paths), batch_size), desc="Extracting"):
                for files in executor.map(process, paths[start:start + batch_size]):
                    written.extend(files)
        return written


# ---------------------------------------------------------------------------
# Folder-level entry points
# ---------------------------------------------------------------------------

def extract_features(
    orig_dir: str,
    image_list: Optional[str],
    arch: Architecture,
    param_dir: str,
    feat_dir: str,
    object_dir: Optional[str] = None,
    device: int = CPU_DEVICE,
    with_bias: bool = False,
    layers: Optional[Sequence[int]] = None,
) -> List[Path]:
    """Extract features of a folder with the model saved in `param_dir`."""
    banks = io.load_kernel_banks(param_dir, arch.nlayers)
    extractor = FeatureExtractor(arch, banks, device=device, with_bias=with_bias)
    return extractor.extract_folder(orig_dir, feat_dir, image_list, object_dir, layers)


def extract_features_with_bias(
    orig_dir: str,
    image_list: Optional[str],
    arch: Architecture,
    param_dir: str,
    feat_dir: str,
    object_dir: Optional[str] = None,
    device: int = CPU_DEVICE,
) -> List[Path]:
    """
    Extract features by applying each layer's kernels and conv{l}-bias.npy
    directly to the raw layer input, without the mean / stdev normalization.

    Layers saved without a bias have their normalization folded into the
    kernels and a bias first, so such a model gives the same features as
    extract_features().
    """
    return extract_features(orig_dir, image_list, arch, param_dir, feat_dir,
                            object_dir, device, with_bias=True)


def extract_features_from_layer(
    activ_dir: str,
    image_list: Optional[str],
    arch: Architecture,
    param_dir: str,
    layer_index: int,
    feat_dir: str,
    object_dir: Optional[str] = None,
    device: int = CPU_DEVICE,
) -> List[Path]:
    """
    Apply a single layer to saved activations.

    Layer 0 reads the original images of `activ_dir`; a later layer reads
    <stem>_layer{layer_index}.npy and, for skip connections, the outputs of
    the earlier layers from the same folder.
    """
    if not 0 <= layer_index < arch.nlayers:
        raise ArchitectureMismatchError(
            f"Layer {layer_index} does not exist in a {arch.nlayers}-layer network")
    banks = [None] * layer_index + [io.load_kernel_bank(param_dir, layer_index)]
    pipeline = LayerPipeline(arch, banks, device=resolve_device(device))
    layer = arch.layers[layer_index]

    written: List[Path] = []
    for stem in tqdm(io.list_layer_stems(activ_dir, layer_index, image_list), desc="Extracting"):
        image = io.load_layer_input(activ_dir, stem, layer_index)
        skip_sources = {
            j: io.load_features(str(io.feature_path(activ_dir, stem, j)))
            for j in layer.skip_connection
        }
        out = pipeline.run_layer(layer_index, image, skip_sources)
        if object_dir is not None:
            mask_path = io.find_file(object_dir, stem)
            if mask_path is not None:
                out = apply_object_mask(out, io.load_image(str(mask_path)))
        out_path = io.feature_path(feat_dir, stem, layer_index)
        io.save_features(str(out_path), out)
        written.append(out_path)
    return written
