"""
Test configuration and fixtures for torchgroupwise tests.
"""

import numpy as np
import pytest
import SimpleITK as sitk
import torch

from torchgroupwise.geometry import ImageGeometry
from torchgroupwise.interpolation import LinearInterpolator


@pytest.fixture
def random_seed():
    """Set random seed for reproducible tests."""
    seed = 42
    torch.manual_seed(seed)
    np.random.seed(seed)
    return seed


@pytest.fixture
def generator():
    """Seeded random source for reproducible last-dimension sampling."""
    return torch.Generator().manual_seed(1234)


@pytest.fixture
def sequence_shape():
    """Standard 2D+t image shape [x, y, t] for testing."""
    return (12, 10, 6)


@pytest.fixture
def sequence_geometry(sequence_shape):
    """Geometry of the 2D+t test sequence with anisotropic spacing and an offset origin."""
    return ImageGeometry(sequence_shape, spacing=(1.5, 2.0, 1.0), origin=(-3.0, 4.0, 0.0))


@pytest.fixture
def create_sequence(sequence_shape):
    """Create a synthetic 2D+t sequence from a function of the grid indices."""

    def _create_sequence(function=None, shape=None):
        if shape is None:
            shape = sequence_shape

        i, j, t = torch.meshgrid(
            *[torch.arange(s, dtype=torch.float64) for s in shape], indexing="ij"
        )
        if function is None:
            # Smooth pattern that shifts with t, so the variance over t is nonzero
            return torch.sin(0.3 * i + 0.2 * t) + torch.cos(0.25 * j - 0.1 * t)
        return function(i, j, t)

    return _create_sequence


@pytest.fixture
def interior_points(sequence_geometry):
    """Fixed-space points well inside the sequence, at non-integer spatial indices."""

    def _interior_points(count=20, margin=2.0):
        generator = torch.Generator().manual_seed(7)
        size = torch.tensor(sequence_geometry.size[:-1], dtype=torch.float64)
        spatial = margin + torch.rand(
            count, 2, generator=generator, dtype=torch.float64
        ) * (size - 1 - 2 * margin)
        index = torch.cat([spatial, torch.zeros(count, 1, dtype=torch.float64)], dim=1)
        return sequence_geometry.index_to_physical(index)

    return _interior_points


@pytest.fixture
def create_interpolator(sequence_geometry):
    """Linear interpolator over a sequence in the test geometry."""

    def _create_interpolator(image):
        return LinearInterpolator(image, sequence_geometry)

    return _create_interpolator


@pytest.fixture
def create_sitk_image():
    """Create SimpleITK test images."""

    def _create_sitk_image(array: np.ndarray, spacing=None, origin=None):
        image = sitk.GetImageFromArray(array)

        if spacing is not None:
            image.SetSpacing(spacing)
        if origin is not None:
            image.SetOrigin(origin)

        return image

    return _create_sitk_image


@pytest.fixture
def tolerance():
    """Default tolerance for numerical comparisons."""
    return {"rtol": 1e-6, "atol": 1e-9}
