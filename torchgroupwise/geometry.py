"""
Image geometry: conversion between physical points and continuous grid indices.

Indices follow the SimpleITK/ITK convention: index axis 0 is x, and the last
index axis is the slowest varying one (time, repetition or channel).
"""

from collections.abc import Sequence

import SimpleITK as sitk
import torch


class ImageGeometry:
    """
    Grid geometry of an N-dimensional image.

    Maps continuous indices ``i`` to physical points ``x`` via
    ``x = origin + direction @ diag(spacing) @ i`` and back.
    """

    def __init__(
        self,
        size: Sequence[int],
        spacing: Sequence[float] | None = None,
        origin: Sequence[float] | None = None,
        direction: Sequence[float] | torch.Tensor | None = None,
        dtype: torch.dtype = torch.float64,
    ):
        """
        Args:
            size: Number of voxels per axis, in index order
            spacing: Voxel spacing per axis (default: 1.0)
            origin: Physical position of index 0 (default: 0.0)
            direction: Direction cosines, [N, N] or flattened row-major (default: identity)
            dtype: Floating point type used for coordinates
        """
        ndim = len(size)
        if ndim < 2:
            raise ValueError(
                f"Image geometry needs at least 2 dimensions, got {ndim}"
            )

        self.size = tuple(int(s) for s in size)
        if any(s < 1 for s in self.size):
            raise ValueError(f"All sizes must be positive, got {self.size}")

        self.dtype = dtype
        self.spacing = torch.as_tensor(
            [1.0] * ndim if spacing is None else spacing, dtype=dtype
        )
        self.origin = torch.as_tensor(
            [0.0] * ndim if origin is None else origin, dtype=dtype
        )
        if direction is None:
            self.direction = torch.eye(ndim, dtype=dtype)
        else:
            self.direction = torch.as_tensor(direction, dtype=dtype).reshape(
                ndim, ndim
            )

        if self.spacing.shape != (ndim,) or self.origin.shape != (ndim,):
            raise ValueError(
                f"spacing and origin must have {ndim} elements. "
                f"Got {tuple(self.spacing.shape)} and {tuple(self.origin.shape)}."
            )
        if torch.any(self.spacing <= 0):
            raise ValueError(f"Spacing must be positive, got {self.spacing.tolist()}")

        # index -> physical and physical -> index matrices
        self.index_to_physical_matrix = self.direction * self.spacing
        if torch.linalg.matrix_rank(self.index_to_physical_matrix) < ndim:
            raise ValueError("Direction matrix must be invertible")
        self.physical_to_index_matrix = torch.linalg.inv(self.index_to_physical_matrix)

    @classmethod
    def from_sitk(cls, image: sitk.Image) -> "ImageGeometry":
        """Create the geometry of a SimpleITK image."""
        return cls(
            size=image.GetSize(),
            spacing=image.GetSpacing(),
            origin=image.GetOrigin(),
            direction=image.GetDirection(),
        )

    @property
    def dimension(self) -> int:
        return len(self.size)

    @property
    def last_dimension(self) -> int:
        return self.dimension - 1

    @property
    def last_dimension_size(self) -> int:
        return self.size[-1]

    def index_to_physical(self, index: torch.Tensor) -> torch.Tensor:
        """
        Convert continuous indices to physical points.

        Args:
            index: Continuous indices [..., N]

        Returns:
            Physical points [..., N]
        """
        index = index.to(self.dtype)
        return self.origin + index @ self.index_to_physical_matrix.T

    def physical_to_index(self, point: torch.Tensor) -> torch.Tensor:
        """
        Convert physical points to continuous indices.

        Args:
            point: Physical points [..., N]

        Returns:
            Continuous indices [..., N]
        """
        point = point.to(self.dtype)
        return (point - self.origin) @ self.physical_to_index_matrix.T

    def is_inside_buffer(self, index: torch.Tensor) -> torch.Tensor:
        """Check which continuous indices lie within [0, size - 1] on every axis."""
        upper = torch.as_tensor(self.size, dtype=index.dtype) - 1
        return torch.all((index >= 0) & (index <= upper), dim=-1)

    def grid_indices(self) -> torch.Tensor:
        """All integer grid indices [prod(size), N], axis 0 varying fastest."""
        axes = [torch.arange(s, dtype=self.dtype) for s in reversed(self.size)]
        grids = torch.meshgrid(*axes, indexing="ij")
        return torch.stack([g.reshape(-1) for g in reversed(grids)], dim=-1)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(size={self.size}, "
            f"spacing={self.spacing.tolist()}, origin={self.origin.tolist()})"
        )
