"""
Error taxonomy for FLIM.

Every error is raised eagerly at the boundary of the component that would
otherwise produce a malformed kernel bank or feature map.  Errors carry
optional image / layer / class context so an operator can fix markers or the
architecture and re-run.
"""

from typing import Optional


class FLIMError(Exception):
    """Base class for all FLIM errors."""

    def __init__(
        self,
        message: str,
        image: Optional[str] = None,
        layer: Optional[int] = None,
        label: Optional[int] = None,
    ):
        self.message = message
        self.image = image
        self.layer = layer
        self.label = label
        super().__init__(self._format())

    def _format(self) -> str:
        context = []
        if self.image is not None:
            context.append(f"image={self.image}")
        if self.layer is not None:
            context.append(f"layer={self.layer}")
        if self.label is not None:
            context.append(f"class={self.label}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class InsufficientMarkersError(FLIMError):
    """A marker class has no marked voxels for a layer that requires it."""


class EmptyPatchSetError(FLIMError):
    """Clustering was asked to run on an empty patch matrix."""


class ArchitectureMismatchError(FLIMError):
    """Declared channel counts disagree with the available kernels or inputs."""


class DimensionMismatchError(FLIMError):
    """Kernel bank rows disagree with the patch dimensionality at apply time."""


class InvalidPoolingGeometryError(FLIMError):
    """Pooling would produce a non-positive output extent."""


class IndexOutOfRangeError(FLIMError):
    """A kernel selection index does not address a column of the bank."""
