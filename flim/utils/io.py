"""
File I/O for FLIM.

Centralizes all file format handling so that other modules
never import tifffile / PIL / h5py directly.

Images: .npy, .tif/.tiff, .png/.jpg/.jpeg/.pgm/.bmp, .h5/.hdf5
Markers: <stem>-seeds.txt
Parameters: conv{l}-kernels.npy, conv{l}-mean.npy, conv{l}-stdev.npy, conv{l}-bias.npy
Features: <stem>_layer{l}.npy
"""

import csv
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
import tifffile
from PIL import Image

from ..core.image import MarkerSet, MultibandImage
from ..core.kernels import KernelBank


IMAGE_EXTS = ('.npy', '.tif', '.tiff', '.png', '.jpg', '.jpeg', '.pgm', '.bmp', '.h5', '.hdf5')
MARKERS_SUFFIX = '-seeds.txt'


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

def load_image(path: str) -> MultibandImage:
    """
    Load a 2D or 3D image from disk.

    .npy arrays may be (Y, X), (Z, Y, X) or (C, Z, Y, X); like TIFF and HDF5
    stacks, a 3D array is a single-channel volume.  PNG-like files are
    (Y, X) or (Y, X, C).

    Args:
        path: File path (any supported format).

    Returns:
        MultibandImage of shape (C, Z, Y, X).
    """
    path = Path(path)
    ext = path.suffix.lower()
    if not path.exists():
        raise FileNotFoundError(f"Image not found: {path}")

    if ext == '.npy':
        array = np.load(str(path))
        if array.ndim == 3:
            return MultibandImage(array[None].astype(np.float32))
        return MultibandImage.from_array(array)
    elif ext in ['.tif', '.tiff']:
        array = tifffile.imread(str(path))
        if array.ndim == 3:
            return MultibandImage(array[None].astype(np.float32))
        return MultibandImage.from_array(array)
    elif ext in ['.png', '.jpg', '.jpeg', '.pgm', '.bmp']:
        with Image.open(str(path)) as img:
            array = np.asarray(img)
        return MultibandImage.from_array(array)
    elif ext in ['.h5', '.hdf5']:
        import h5py
        with h5py.File(str(path), 'r') as f:
            key = list(f.keys())[0]
            array = f[key][:]
        if array.ndim == 3:
            return MultibandImage(array[None].astype(np.float32))
        return MultibandImage.from_array(array)
    else:
        raise ValueError(f"Unsupported image format: {ext}")


def save_features(path: str, image: MultibandImage) -> None:
    """Save a feature map as a (C, Z, Y, X) .npy array."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.save(str(path), image.data)


def load_features(path: str) -> MultibandImage:
    """Load a feature map saved by save_features()."""
    return MultibandImage(np.load(str(path)))


def feature_path(feat_dir: str, stem: str, layer_index: int) -> Path:
    """Output path of the features of image `stem` at layer `layer_index` (0-based)."""
    return Path(feat_dir) / f"{stem}_layer{layer_index + 1}.npy"


def list_images(folder: str) -> List[Path]:
    """All supported images of a folder, sorted by name."""
    folder = Path(folder)
    if not folder.exists():
        raise FileNotFoundError(f"Image directory not found: {folder}")
    return sorted(p for p in folder.iterdir() if p.suffix.lower() in IMAGE_EXTS)


def read_image_list(csv_path: str) -> List[str]:
    """
    Read image file names from a CSV file (first column, header optional).
    """
    names = []
    with open(csv_path, 'r', newline='') as f:
        for row in csv.reader(f):
            if not row or not row[0].strip():
                continue
            name = row[0].strip()
            if Path(name).suffix.lower() not in IMAGE_EXTS:
                continue  # header or comment
            names.append(name)
    return names


def resolve_images(orig_dir: str, image_list: Optional[str] = None) -> List[Path]:
    """Images of `orig_dir`, restricted to the names of `image_list` when given."""
    if image_list is None:
        return list_images(orig_dir)
    paths = [Path(orig_dir) / name for name in read_image_list(image_list)]
    missing = [str(p) for p in paths if not p.exists()]
    if missing:
        raise FileNotFoundError(f"Images listed in {image_list} not found: {missing}")
    return paths


def find_file(folder: str, stem: str) -> Optional[Path]:
    """First supported image in `folder` named `stem`.<ext>, or None."""
    for ext in IMAGE_EXTS:
        candidate = Path(folder) / f"{stem}{ext}"
        if candidate.exists():
            return candidate
    return None


# ---------------------------------------------------------------------------
# Markers
# ---------------------------------------------------------------------------

def markers_path(markers_dir: str, stem: str) -> Path:
    return Path(markers_dir) / f"{stem}{MARKERS_SUFFIX}"


def read_markers(path: str) -> MarkerSet:
    """
    Read a seeds file.

    Format:
        nseeds xsize ysize [zsize]
        x y [z] id label          (one line per seed)

    Returns:
        MarkerSet with (z, y, x) coordinates.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Markers not found: {path}")

    with open(path, 'r') as f:
        lines = [line.split() for line in f if line.strip()]
    header, rows = lines[0], lines[1:]
    nseeds = int(header[0])
    is3d = len(header) >= 4
    if len(rows) != nseeds:
        raise ValueError(f"{path} declares {nseeds} seeds but contains {len(rows)}")

    coords = np.zeros((nseeds, 3), dtype=np.int64)
    labels = np.zeros(nseeds, dtype=np.int64)
    for i, row in enumerate(rows):
        values = [int(float(v)) for v in row]
        if is3d:
            x, y, z, label = values[0], values[1], values[2], values[-1]
        else:
            x, y, z, label = values[0], values[1], 0, values[-1]
        coords[i] = (z, y, x)
        labels[i] = label
    return MarkerSet(coords, labels)


def write_markers(path: str, markers: MarkerSet, spatial_shape: Tuple[int, int, int]) -> None:
    """Write a seeds file for an image of (Z, Y, X) shape `spatial_shape`."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    zsize, ysize, xsize = spatial_shape
    is3d = zsize > 1
    with open(path, 'w') as f:
        if is3d:
            f.write(f"{len(markers)} {xsize} {ysize} {zsize}\n")
        else:
            f.write(f"{len(markers)} {xsize} {ysize}\n")
        for seed_id, ((z, y, x), label) in enumerate(zip(markers.coords, markers.labels)):
            if is3d:
                f.write(f"{x} {y} {z} {seed_id} {label}\n")
            else:
                f.write(f"{x} {y} {seed_id} {label}\n")


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------

def save_kernel_bank(param_dir: str, layer_index: int, bank: KernelBank) -> None:
    """Save a layer's kernels, mean, stdev (and bias, if any)."""
    param_dir = Path(param_dir)
    param_dir.mkdir(parents=True, exist_ok=True)
    prefix = f"conv{layer_index + 1}"
    np.save(str(param_dir / f"{prefix}-kernels.npy"), bank.kernels)
    np.save(str(param_dir / f"{prefix}-mean.npy"), bank.mean)
    np.save(str(param_dir / f"{prefix}-stdev.npy"), bank.stdev)
    if bank.bias is not None:
        np.save(str(param_dir / f"{prefix}-bias.npy"), bank.bias)


def load_kernel_bank(param_dir: str, layer_index: int) -> KernelBank:
    """Load a layer's kernel bank saved by save_kernel_bank()."""
    param_dir = Path(param_dir)
    prefix = f"conv{layer_index + 1}"
    kernels_file = param_dir / f"{prefix}-kernels.npy"
    if not kernels_file.exists():
        raise FileNotFoundError(f"Kernel bank not found: {kernels_file}")
    bias_file = param_dir / f"{prefix}-bias.npy"
    return KernelBank(
        kernels=np.load(str(kernels_file)),
        mean=np.load(str(param_dir / f"{prefix}-mean.npy")),
        stdev=np.load(str(param_dir / f"{prefix}-stdev.npy")),
        bias=np.load(str(bias_file)) if bias_file.exists() else None,
    )


def load_kernel_banks(param_dir: str, nlayers: int) -> List[KernelBank]:
    return [load_kernel_bank(param_dir, i) for i in range(nlayers)]


# ---------------------------------------------------------------------------
# Layer inputs
# ---------------------------------------------------------------------------

def list_layer_stems(
    activ_dir: str,
    layer_index: int,
    image_list: Optional[str] = None,
) -> List[str]:
    """
    Image stems available as input of layer `layer_index`.

    Layer 0 reads original images; later layers read the features of the
    previous layer, saved as <stem>_layer{layer_index}.npy.
    """
    if image_list is not None:
        return [Path(name).stem for name in read_image_list(image_list)]
    if layer_index == 0:
        return [p.stem for p in list_images(activ_dir)]
    suffix = f"_layer{layer_index}.npy"
    folder = Path(activ_dir)
    if not folder.exists():
        raise FileNotFoundError(f"Activation directory not found: {folder}")
    return sorted(p.name[:-len(suffix)] for p in folder.iterdir() if p.name.endswith(suffix))


def load_layer_input(activ_dir: str, stem: str, layer_index: int) -> MultibandImage:
    """Load the input of layer `layer_index` for image `stem`."""
    if layer_index == 0:
        path = find_file(activ_dir, stem)
        if path is None:
            raise FileNotFoundError(f"No image named '{stem}' in {activ_dir}")
        return load_image(str(path))
    return load_features(str(feature_path(activ_dir, stem, layer_index - 1)))
