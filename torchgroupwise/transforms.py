"""
Spatial transforms with analytic parameter Jacobians.

A transform maps fixed-space physical points to moving-space physical points,
reports which points it can map, and supplies the Jacobian of the mapped point
with respect to its parameters together with the indices of the parameters
that the Jacobian columns belong to.
"""

import itertools

import torch

from .geometry import ImageGeometry


class Transform:
    """
    Base class for all transforms.

    Subclasses implement ``transform_points`` and ``jacobian`` and store their
    parameters in ``self.parameters``, a 1D float tensor.
    """

    def __init__(self, dimension: int, parameters: torch.Tensor):
        if dimension < 1:
            raise ValueError(f"Unsupported dimension: {dimension}")
        self.dimension = dimension
        self.parameters = parameters

    @property
    def number_of_parameters(self) -> int:
        return self.parameters.numel()

    @property
    def number_of_nonzero_jacobian_indices(self) -> int:
        """Number of Jacobian columns returned for every point."""
        return self.number_of_parameters

    def get_parameters(self) -> torch.Tensor:
        """Get a copy of the current parameter vector."""
        return self.parameters.clone()

    def set_parameters(self, parameters: torch.Tensor) -> None:
        """Set the parameter vector."""
        parameters = torch.as_tensor(parameters, dtype=self.parameters.dtype)
        if parameters.shape != self.parameters.shape:
            raise ValueError(
                f"Expected {self.number_of_parameters} parameters, "
                f"got shape {tuple(parameters.shape)}"
            )
        self.parameters = parameters.detach().clone()

    def transform_points(
        self, points: torch.Tensor
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """
        Map fixed-space points to moving space.

        Args:
            points: Physical points [..., N]

        Returns:
            Tuple of (mapped points [..., N], valid [...])
        """
        raise NotImplementedError(
            "Subclasses must implement the transform_points method"
        )

    def jacobian(self, points: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """
        Jacobian of the mapped points with respect to the parameters.

        Args:
            points: Physical points [..., N]

        Returns:
            Tuple of (jacobian [..., N, K], nonzero_indices [..., K]) where
            K = number_of_nonzero_jacobian_indices and column k of the Jacobian
            belongs to parameter nonzero_indices[..., k]
        """
        raise NotImplementedError("Subclasses must implement the jacobian method")

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(dimension={self.dimension}, "
            f"number_of_parameters={self.number_of_parameters})"
        )


class TranslationTransform(Transform):
    """Translation ``x + t``."""

    def __init__(self, dimension: int, dtype: torch.dtype = torch.float64):
        super().__init__(dimension, torch.zeros(dimension, dtype=dtype))

    def transform_points(
        self, points: torch.Tensor
    ) -> tuple[torch.Tensor, torch.Tensor]:
        mapped = points + self.parameters
        valid = torch.ones(points.shape[:-1], dtype=torch.bool)
        return mapped, valid

    def jacobian(self, points: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        batch_shape = points.shape[:-1]
        eye = torch.eye(self.dimension, dtype=self.parameters.dtype)
        jacobian = eye.expand(*batch_shape, self.dimension, self.dimension)
        indices = torch.arange(self.dimension).expand(*batch_shape, self.dimension)
        return jacobian, indices


class AffineTransform(Transform):
    """
    Affine transformation ``A (x - c) + c + t``.

    Parameters are the matrix A in row-major order followed by the
    translation t, initialized to identity.
    """

    def __init__(
        self,
        dimension: int,
        center: torch.Tensor | None = None,
        dtype: torch.dtype = torch.float64,
    ):
        """
        Args:
            dimension: Number of dimensions of the points
            center: Center of rotation c (default: origin)
            dtype: Floating point type of the parameters
        """
        matrix = torch.eye(dimension, dtype=dtype)
        translation = torch.zeros(dimension, dtype=dtype)
        super().__init__(dimension, torch.cat([matrix.reshape(-1), translation]))

        if center is None:
            self.center = torch.zeros(dimension, dtype=dtype)
        else:
            self.center = torch.as_tensor(center, dtype=dtype)
            if self.center.shape != (dimension,):
                raise ValueError(
                    f"center must have {dimension} elements, "
                    f"got {tuple(self.center.shape)}"
                )

    @property
    def matrix(self) -> torch.Tensor:
        n = self.dimension
        return self.parameters[: n * n].reshape(n, n)

    @property
    def translation(self) -> torch.Tensor:
        n = self.dimension
        return self.parameters[n * n :]

    def transform_points(
        self, points: torch.Tensor
    ) -> tuple[torch.Tensor, torch.Tensor]:
        centered = points - self.center
        mapped = centered @ self.matrix.T + self.center + self.translation
        valid = torch.ones(points.shape[:-1], dtype=torch.bool)
        return mapped, valid

    def jacobian(self, points: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        n = self.dimension
        batch_shape = points.shape[:-1]
        centered = (points - self.center).to(self.parameters.dtype)

        jacobian = torch.zeros(
            *batch_shape, n, self.number_of_parameters, dtype=self.parameters.dtype
        )
        for row in range(n):
            # d x'_row / d A[row, :] = x - c
            jacobian[..., row, row * n : (row + 1) * n] = centered
            # d x'_row / d t_row = 1
            jacobian[..., row, n * n + row] = 1.0

        indices = torch.arange(self.number_of_parameters).expand(
            *batch_shape, self.number_of_parameters
        )
        return jacobian, indices


class LinearFreeFormTransform(Transform):
    """
    Free-form deformation with multilinear interpolation of control point
    displacements: ``x + sum_c w_c(x) d_c``.

    Each point is influenced by the 2^N control points of the cell that
    contains it, so the Jacobian has N * 2^N nonzero columns. Points outside
    the control point grid are not supported: they map to themselves and are
    reported as invalid.

    Parameter layout: ``parameters[dim * num_control_points + control_index]``
    is the displacement along axis ``dim`` of the control point with linear
    index ``control_index`` (axis 0 varying fastest).
    """

    def __init__(self, control_geometry: ImageGeometry):
        """
        Args:
            control_geometry: Geometry of the control point grid
        """
        if any(s < 2 for s in control_geometry.size):
            raise ValueError(
                f"Control point grid needs at least 2 points per axis, "
                f"got {control_geometry.size}"
            )
        self.control_geometry = control_geometry
        self.number_of_control_points = 1
        for s in control_geometry.size:
            self.number_of_control_points *= s

        dimension = control_geometry.dimension
        super().__init__(
            dimension,
            torch.zeros(
                dimension * self.number_of_control_points,
                dtype=control_geometry.dtype,
            ),
        )

        self._size = torch.as_tensor(control_geometry.size, dtype=torch.long)
        # axis 0 varies fastest in the linear control point index
        strides = [1]
        for s in control_geometry.size[:-1]:
            strides.append(strides[-1] * s)
        self._strides = torch.as_tensor(strides, dtype=torch.long)
        self._corners = list(itertools.product((False, True), repeat=dimension))

    @property
    def number_of_nonzero_jacobian_indices(self) -> int:
        return self.dimension * len(self._corners)

    def _weights(
        self, points: torch.Tensor
    ) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Corner weights [..., C], control point indices [..., C] and support flags."""
        index = self.control_geometry.physical_to_index(points)
        valid = self.control_geometry.is_inside_buffer(index)

        base = torch.floor(index).long()
        base = torch.minimum(base.clamp(min=0), self._size - 2)
        frac = (index - base.to(index.dtype)).clamp(0.0, 1.0)

        weights = []
        control_indices = []
        for corner in self._corners:
            corner_index = base + torch.as_tensor(corner, dtype=torch.long)
            factors = [
                frac[..., k] if corner[k] else 1.0 - frac[..., k]
                for k in range(self.dimension)
            ]
            weights.append(torch.stack(factors, dim=-1).prod(dim=-1))
            control_indices.append((corner_index * self._strides).sum(dim=-1))

        return torch.stack(weights, dim=-1), torch.stack(control_indices, dim=-1), valid

    def transform_points(
        self, points: torch.Tensor
    ) -> tuple[torch.Tensor, torch.Tensor]:
        points = points.to(self.parameters.dtype)
        weights, control_indices, valid = self._weights(points)

        coefficients = self.parameters.reshape(
            self.dimension, self.number_of_control_points
        )
        # [N, ..., C] -> [..., N]
        displacement = (coefficients[:, control_indices] * weights).sum(dim=-1)
        displacement = torch.movedim(displacement, 0, -1)

        mapped = torch.where(valid.unsqueeze(-1), points + displacement, points)
        return mapped, valid

    def jacobian(self, points: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        weights, control_indices, valid = self._weights(points)
        weights = torch.where(valid.unsqueeze(-1), weights, torch.zeros_like(weights))

        n = self.dimension
        num_corners = len(self._corners)
        batch_shape = points.shape[:-1]

        jacobian = torch.zeros(
            *batch_shape, n, n * num_corners, dtype=self.parameters.dtype
        )
        indices = []
        for dim in range(n):
            jacobian[..., dim, dim * num_corners : (dim + 1) * num_corners] = weights
            indices.append(dim * self.number_of_control_points + control_indices)

        return jacobian, torch.cat(indices, dim=-1)
