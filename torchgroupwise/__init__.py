"""
TorchGroupwise: groupwise image registration metrics using PyTorch

Computes the variance of moving image intensities over the last image
dimension (time, repetition or channel), and its analytic gradient with
respect to the parameters of a spatial transform.

Quick Example:
    >>> import torch
    >>> import torchgroupwise
    >>> from torchgroupwise.geometry import ImageGeometry
    >>> from torchgroupwise.interpolation import LinearInterpolator
    >>> from torchgroupwise.sampling import FullSampler
    >>> from torchgroupwise.transforms import TranslationTransform
    >>>
    >>> image = torch.rand(16, 16, 5)  # [x, y, t]
    >>> geometry = ImageGeometry(image.shape)
    >>> metric = torchgroupwise.VarianceOverLastDimensionMetric(
    ...     geometry,
    ...     LinearInterpolator(image, geometry),
    ...     TranslationTransform(3),
    ...     FullSampler(geometry),
    ... )
    >>> value, gradient = metric.value_and_gradient(torch.zeros(3, dtype=torch.float64))
"""

__version__ = "0.1.0"

# Import submodules to make them available as torchgroupwise.submodule
from . import geometry, interpolation, io, metrics, sampling, transforms

# Only expose the most essential classes/functions at the top level
from .metrics import (
    InsufficientSamplesError,
    VarianceOverLastDimensionLoss,
    VarianceOverLastDimensionMetric,
)

__all__ = [
    # Essential metric classes (top-level access)
    "InsufficientSamplesError",
    "VarianceOverLastDimensionLoss",
    "VarianceOverLastDimensionMetric",
    # Submodules
    "geometry",
    "interpolation",
    "io",
    "metrics",
    "sampling",
    "transforms",
]
