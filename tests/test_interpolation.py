"""
Tests for interpolation module (moving image accessors and masks).
"""

import pytest
import torch

from torchgroupwise.geometry import ImageGeometry
from torchgroupwise.interpolation import (
    BinaryImageMask,
    ImageInterpolator,
    ImageMask,
    LinearInterpolator,
)


class TestBaseClasses:
    """Test the abstract accessor interfaces."""

    def test_interpolator_is_abstract(self):
        """ImageInterpolator requires an evaluate implementation."""
        geometry = ImageGeometry((3, 3))
        interpolator = ImageInterpolator(torch.zeros(3, 3), geometry)
        with pytest.raises(NotImplementedError, match="evaluate"):
            interpolator.evaluate(torch.zeros(1, 2))

    def test_mask_is_abstract(self):
        """ImageMask requires an is_inside implementation."""
        with pytest.raises(NotImplementedError, match="is_inside"):
            ImageMask().is_inside(torch.zeros(1, 2))

    def test_shape_mismatch(self):
        """Image and geometry must agree."""
        with pytest.raises(ValueError, match="does not match"):
            LinearInterpolator(torch.zeros(3, 4), ImageGeometry((4, 3)))


class TestLinearInterpolator:
    """Test multilinear interpolation."""

    def test_values_at_grid_points(self, sequence_geometry, create_sequence, tolerance):
        """Interpolating at voxel centers returns the voxel values."""
        image = create_sequence()
        interpolator = LinearInterpolator(image, sequence_geometry)
        index = sequence_geometry.grid_indices()

        values, derivatives, valid = interpolator.evaluate(
            sequence_geometry.index_to_physical(index)
        )

        assert valid.all()
        assert derivatives is None
        expected = image.permute(2, 1, 0).reshape(-1)
        assert torch.allclose(values, expected, **tolerance)

    def test_linear_function_is_exact(self, sequence_geometry, create_sequence, tolerance):
        """A multilinear image is reproduced exactly, including its derivative."""
        image = create_sequence(lambda i, j, t: 2.0 * i - 3.0 * j + 0.5 * t + 1.0)
        interpolator = LinearInterpolator(image, sequence_geometry)
        index = torch.tensor([[2.3, 4.7, 1.5], [0.0, 0.0, 0.0], [11.0, 9.0, 5.0]], dtype=torch.float64)

        values, derivatives, valid = interpolator.evaluate(
            sequence_geometry.index_to_physical(index), with_derivative=True
        )

        assert valid.all()
        expected = 2.0 * index[:, 0] - 3.0 * index[:, 1] + 0.5 * index[:, 2] + 1.0
        assert torch.allclose(values, expected, **tolerance)
        # Derivatives are with respect to physical coordinates: divide by spacing
        expected_derivative = torch.tensor([2.0 / 1.5, -3.0 / 2.0, 0.5], dtype=torch.float64)
        assert torch.allclose(derivatives, expected_derivative.expand(3, 3), **tolerance)

    def test_derivative_with_rotated_direction(self, tolerance):
        """Derivatives account for the direction cosines of the image."""
        geometry = ImageGeometry((5, 5), direction=[0.0, -1.0, 1.0, 0.0])
        i, j = torch.meshgrid(
            torch.arange(5, dtype=torch.float64),
            torch.arange(5, dtype=torch.float64),
            indexing="ij",
        )
        interpolator = LinearInterpolator(3.0 * i, geometry)

        # x = -j, y = i, so the image equals 3 * y
        point = geometry.index_to_physical(torch.tensor([[2.5, 1.5]], dtype=torch.float64))
        values, derivatives, _ = interpolator.evaluate(point, with_derivative=True)

        assert torch.allclose(values, torch.tensor([7.5], dtype=torch.float64), **tolerance)
        assert torch.allclose(derivatives, torch.tensor([[0.0, 3.0]], dtype=torch.float64), **tolerance)

    def test_values_do_not_depend_on_derivative_flag(
        self, random_seed, sequence_geometry, create_sequence
    ):
        """Value-only and value-and-derivative evaluation give identical values."""
        interpolator = LinearInterpolator(create_sequence(), sequence_geometry)
        index = torch.rand(50, 3, dtype=torch.float64) * torch.tensor([11.0, 9.0, 5.0])
        points = sequence_geometry.index_to_physical(index)

        values, _, valid = interpolator.evaluate(points)
        values_with_derivative, _, valid_with_derivative = interpolator.evaluate(
            points, with_derivative=True
        )

        assert torch.equal(values, values_with_derivative)
        assert torch.equal(valid, valid_with_derivative)

    def test_outside_buffer_is_invalid(self, sequence_geometry, create_sequence):
        """Points outside the buffer are invalid with zero value and derivative."""
        interpolator = LinearInterpolator(create_sequence() + 10.0, sequence_geometry)
        index = torch.tensor(
            [[-0.5, 3.0, 2.0], [3.0, 9.5, 2.0], [3.0, 3.0, 5.2], [3.0, 3.0, 5.0]],
            dtype=torch.float64,
        )

        values, derivatives, valid = interpolator.evaluate(
            sequence_geometry.index_to_physical(index), with_derivative=True
        )

        assert valid.tolist() == [False, False, False, True]
        assert torch.all(values[:3] == 0)
        assert torch.all(derivatives[:3] == 0)
        assert values[3] != 0

    def test_singleton_axis(self):
        """Axes of size one can be interpolated at index 0."""
        geometry = ImageGeometry((4, 1))
        image = torch.tensor([[1.0], [2.0], [3.0], [4.0]])
        interpolator = LinearInterpolator(image, geometry)

        values, derivatives, valid = interpolator.evaluate(
            torch.tensor([[1.5, 0.0]], dtype=torch.float64), with_derivative=True
        )

        assert valid.all()
        assert values.item() == pytest.approx(2.5)
        assert derivatives.tolist() == [[1.0, 0.0]]


class TestBinaryImageMask:
    """Test nearest-voxel image masks."""

    def test_is_inside(self):
        """Points map to the nearest voxel; outside the buffer is outside the mask."""
        geometry = ImageGeometry((4, 4), spacing=(2.0, 2.0))
        mask = torch.zeros(4, 4)
        mask[1:3, 1:3] = 1
        image_mask = BinaryImageMask(mask, geometry)

        points = torch.tensor(
            [[2.0, 2.0], [2.9, 4.9], [0.9, 2.0], [1.1, 2.0], [-5.0, 2.0], [100.0, 100.0]],
            dtype=torch.float64,
        )

        assert image_mask.is_inside(points).tolist() == [True, True, False, True, False, False]

    def test_shape_mismatch(self):
        """Mask and geometry must agree."""
        with pytest.raises(ValueError, match="does not match"):
            BinaryImageMask(torch.ones(3, 3), ImageGeometry((3, 4)))
