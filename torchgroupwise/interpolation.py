"""
Moving image accessors: interpolation of intensities and spatial derivatives,
and moving image masks.

All functions operate on batches of physical points with shape [..., N].
"""

import itertools

import torch

from .geometry import ImageGeometry


class ImageInterpolator:
    """
    Base class for moving image accessors.

    Subclasses implement ``evaluate``, which samples the image at physical
    points and reports which points could be interpolated.
    """

    def __init__(self, image: torch.Tensor, geometry: ImageGeometry):
        """
        Args:
            image: Image tensor indexed as [i0, i1, ..., iN-1]
            geometry: Geometry of the image
        """
        if tuple(image.shape) != geometry.size:
            raise ValueError(
                f"Image shape {tuple(image.shape)} does not match geometry size "
                f"{geometry.size}"
            )
        self.image = image.to(geometry.dtype).contiguous()
        self.geometry = geometry

    def evaluate(
        self, points: torch.Tensor, with_derivative: bool = False
    ) -> tuple[torch.Tensor, torch.Tensor | None, torch.Tensor]:
        """
        Interpolate the image at physical points.

        Args:
            points: Physical points [..., N]
            with_derivative: Whether to compute the spatial derivative

        Returns:
            Tuple of (values [...], derivatives [..., N] or None, valid [...])
        """
        raise NotImplementedError("Subclasses must implement the evaluate method")


class LinearInterpolator(ImageInterpolator):
    """
    N-dimensional multilinear interpolator.

    A point is valid if its continuous index lies within [0, size - 1] on every
    axis. Derivatives are the analytic derivatives of the interpolant with
    respect to physical coordinates.
    """

    def __init__(self, image: torch.Tensor, geometry: ImageGeometry):
        super().__init__(image, geometry)
        self._flat = self.image.reshape(-1)
        self._strides = torch.as_tensor(self.image.stride(), dtype=torch.long)
        self._size = torch.as_tensor(geometry.size, dtype=torch.long)

    def evaluate(
        self, points: torch.Tensor, with_derivative: bool = False
    ) -> tuple[torch.Tensor, torch.Tensor | None, torch.Tensor]:
        ndim = self.geometry.dimension
        index = self.geometry.physical_to_index(points)
        valid = self.geometry.is_inside_buffer(index)

        # Lower corner, clamped so that the upper corner stays in the buffer
        base = torch.floor(index).long()
        base = torch.minimum(base.clamp(min=0), (self._size - 2).clamp(min=0))
        upper = torch.minimum(base + 1, self._size - 1)
        frac = (index - base.to(index.dtype)).clamp(0.0, 1.0)

        values = torch.zeros(index.shape[:-1], dtype=index.dtype)
        index_derivatives = torch.zeros_like(index) if with_derivative else None

        for corner in itertools.product((False, True), repeat=ndim):
            corner_mask = torch.as_tensor(corner)
            corner_index = torch.where(corner_mask, upper, base)
            voxel = self._flat[(corner_index * self._strides).sum(dim=-1)]

            factors = [
                frac[..., k] if corner[k] else 1.0 - frac[..., k] for k in range(ndim)
            ]
            values += torch.stack(factors, dim=-1).prod(dim=-1) * voxel

            if index_derivatives is not None:
                for k in range(ndim):
                    partial = voxel if corner[k] else -voxel
                    for j in range(ndim):
                        if j != k:
                            partial = partial * factors[j]
                    index_derivatives[..., k] += partial

        values = torch.where(valid, values, torch.zeros_like(values))

        derivatives = None
        if index_derivatives is not None:
            # d/dx = (d/di) @ di/dx
            derivatives = index_derivatives @ self.geometry.physical_to_index_matrix
            derivatives = torch.where(
                valid.unsqueeze(-1), derivatives, torch.zeros_like(derivatives)
            )

        return values, derivatives, valid


class ImageMask:
    """Base class for moving image masks."""

    def is_inside(self, points: torch.Tensor) -> torch.Tensor:
        """
        Args:
            points: Physical points [..., N]

        Returns:
            Boolean tensor [...] that is True for points inside the mask
        """
        raise NotImplementedError("Subclasses must implement the is_inside method")


class BinaryImageMask(ImageMask):
    """Mask defined by the nonzero voxels of an image, using nearest-voxel lookup."""

    def __init__(self, mask: torch.Tensor, geometry: ImageGeometry):
        if tuple(mask.shape) != geometry.size:
            raise ValueError(
                f"Mask shape {tuple(mask.shape)} does not match geometry size "
                f"{geometry.size}"
            )
        self.mask = mask.ne(0).contiguous()
        self.geometry = geometry
        self._flat = self.mask.reshape(-1)
        self._strides = torch.as_tensor(self.mask.stride(), dtype=torch.long)
        self._size = torch.as_tensor(geometry.size, dtype=torch.long)

    def is_inside(self, points: torch.Tensor) -> torch.Tensor:
        index = torch.floor(self.geometry.physical_to_index(points) + 0.5).long()
        in_buffer = torch.all((index >= 0) & (index < self._size), dim=-1)

        index = torch.minimum(index.clamp(min=0), self._size - 1)
        inside = self._flat[(index * self._strides).sum(dim=-1)]
        return in_buffer & inside
