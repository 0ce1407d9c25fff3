"""
Utility functions for image I/O and conversion between SimpleITK and PyTorch.
"""

from pathlib import Path

import numpy as np
import SimpleITK as sitk
import torch

from .geometry import ImageGeometry


def sitk_to_torch(
    image: sitk.Image, dtype: torch.dtype = torch.float64
) -> tuple[torch.Tensor, ImageGeometry]:
    """
    Convert SimpleITK image to PyTorch tensor and its geometry.

    Args:
        image: SimpleITK image (scalar pixels)
        dtype: Tensor data type

    Returns:
        Tuple of (tensor, geometry)
        - tensor: indexed as [i0, i1, ..., iN-1], i.e. in SimpleITK index order
        - geometry: ImageGeometry with spacing, origin and direction of the image

    Note:
        - SimpleITK arrays use reversed (..., z, y, x) ordering, so the axes are
          transposed. The last tensor axis is the last (slowest varying) dimension.
    """
    if image.GetNumberOfComponentsPerPixel() != 1:
        raise ValueError(
            f"Only scalar images are supported, got "
            f"{image.GetNumberOfComponentsPerPixel()} components per pixel"
        )

    array = sitk.GetArrayFromImage(image)
    array = np.ascontiguousarray(array.transpose())
    tensor = torch.from_numpy(array).to(dtype)

    return tensor, ImageGeometry.from_sitk(image)


def load_image(filepath: str | Path) -> sitk.Image:
    """
    Load image from file using SimpleITK.

    Args:
        filepath: Path to image file

    Returns:
        SimpleITK image
    """
    try:
        image = sitk.ReadImage(str(filepath))
        return image
    except Exception as e:
        raise OSError(f"Failed to load image from {filepath}: {str(e)}") from e
