"""
Variance over the last dimension: a groupwise similarity metric.

For every spatial sample of the fixed image, the moving image is evaluated at
all (or a random subset of) positions along the last image dimension, and the
variance of these intensities is computed. The metric is the average of these
variances over all spatial samples that had at least one valid position.

The analytic derivative with respect to the transform parameters is
accumulated sparsely into a dense gradient vector, using the nonzero Jacobian
indices supplied by the transform.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import NamedTuple

import torch
import torch.nn as nn

from .geometry import ImageGeometry
from .interpolation import ImageInterpolator, ImageMask
from .sampling import sample_random
from .transforms import Transform

logger = logging.getLogger(__name__)

ImageSampler = Callable[[], torch.Tensor]


class InsufficientSamplesError(RuntimeError):
    """Raised when too few spatial samples produced a valid variance."""

    def __init__(self, number_of_samples: int, number_counted: int):
        super().__init__(
            f"Too many samples map outside moving image buffer: "
            f"{number_counted} / {number_of_samples}"
        )
        self.number_of_samples = number_of_samples
        self.number_counted = number_counted


class SampleCountPolicy:
    """
    Minimum ratio of valid spatial samples.

    Raises InsufficientSamplesError if no sample was counted, or if fewer than
    ``required_ratio * number_of_samples`` were counted.
    """

    def __init__(self, required_ratio: float = 0.25):
        if not 0.0 <= required_ratio <= 1.0:
            raise ValueError(
                f"required_ratio must be in [0, 1], got {required_ratio}"
            )
        self.required_ratio = required_ratio

    def __call__(self, number_of_samples: int, number_counted: int) -> None:
        if (
            number_counted == 0
            or number_counted < self.required_ratio * number_of_samples
        ):
            raise InsufficientSamplesError(number_of_samples, number_counted)


@dataclass(frozen=True)
class LastDimensionSampling:
    """
    Which last-dimension positions are evaluated for every spatial sample.

    number_of_samples is clamped to last_dimension_size on construction.
    """

    last_dimension_size: int
    sample_randomly: bool = False
    number_of_samples: int = 10

    def __post_init__(self):
        if self.last_dimension_size < 1:
            raise ValueError(
                f"last_dimension_size must be positive, got {self.last_dimension_size}"
            )
        if self.number_of_samples < 1:
            raise ValueError(
                f"number_of_samples must be positive, got {self.number_of_samples}"
            )
        if self.number_of_samples > self.last_dimension_size:
            logger.debug(
                "Clamping number of last dimension samples from %d to %d",
                self.number_of_samples,
                self.last_dimension_size,
            )
            object.__setattr__(self, "number_of_samples", self.last_dimension_size)

    @property
    def positions_per_sample(self) -> int:
        if self.sample_randomly:
            return self.number_of_samples
        return self.last_dimension_size

    def positions(
        self, number_of_spatial_samples: int, generator: torch.Generator | None = None
    ) -> torch.Tensor:
        """
        Last-dimension positions for a batch of spatial samples.

        Returns:
            Long tensor [S, T] with T = positions_per_sample. Random positions
            are drawn independently for every spatial sample.
        """
        if not self.sample_randomly:
            return torch.arange(self.last_dimension_size).expand(
                number_of_spatial_samples, self.positions_per_sample
            )

        rows = [
            sample_random(
                self.number_of_samples, self.last_dimension_size - 1, generator
            )
            for _ in range(number_of_spatial_samples)
        ]
        return torch.tensor(rows, dtype=torch.long).reshape(
            number_of_spatial_samples, self.positions_per_sample
        )


class SampleObservations(NamedTuple):
    """
    Moving image observations for a batch of S spatial samples at T
    last-dimension positions each.

    Invalid observations have zero values, contributions and indices.
    """

    values: torch.Tensor  # [S, T]
    valid: torch.Tensor  # [S, T]
    contributions: torch.Tensor | None = None  # [S, T, K]
    nonzero_indices: torch.Tensor | None = None  # [S, T, K]


class MetricEvaluation(NamedTuple):
    value: float
    gradient: torch.Tensor | None
    number_of_samples: int
    number_counted: int


def transform_jacobian_inner_product(
    jacobian: torch.Tensor, derivative: torch.Tensor
) -> torch.Tensor:
    """
    Inner product of the moving image derivative with the transform Jacobian.

    Args:
        jacobian: Transform Jacobian [..., N, K]
        derivative: Spatial derivative of the moving image [..., N]

    Returns:
        Derivative of the moving intensity per nonzero parameter [..., K]
    """
    return (jacobian * derivative.unsqueeze(-1).to(jacobian.dtype)).sum(dim=-2)


def evaluate_samples(
    fixed_points: torch.Tensor,
    positions: torch.Tensor,
    fixed_geometry: ImageGeometry,
    transform: Transform,
    interpolator: ImageInterpolator,
    moving_mask: ImageMask | None = None,
    need_gradient: bool = False,
) -> SampleObservations:
    """
    Evaluate the moving image along the last dimension of each spatial sample.

    Args:
        fixed_points: Physical fixed-space points [S, N]
        positions: Last-dimension positions to evaluate [S, T]
        fixed_geometry: Geometry of the fixed image
        transform: Transform mapping fixed to moving space
        interpolator: Moving image accessor
        moving_mask: Optional moving image mask
        need_gradient: Whether to compute the per-parameter contributions

    Returns:
        SampleObservations for the batch
    """
    # Replace the last index of every point by the requested positions
    index = fixed_geometry.physical_to_index(fixed_points)
    index = index.unsqueeze(1).expand(-1, positions.shape[1], -1).clone()
    index[..., fixed_geometry.last_dimension] = positions.to(index.dtype)
    points = fixed_geometry.index_to_physical(index)

    mapped, valid = transform.transform_points(points)
    if moving_mask is not None:
        valid = valid & moving_mask.is_inside(mapped)

    values, derivatives, inside = interpolator.evaluate(
        mapped, with_derivative=need_gradient
    )
    valid = valid & inside
    values = torch.where(valid, values, torch.zeros_like(values))

    if not need_gradient:
        return SampleObservations(values, valid)

    # The transform Jacobian is evaluated at the fixed-space point
    jacobian, nonzero_indices = transform.jacobian(points)
    contributions = transform_jacobian_inner_product(jacobian, derivatives)

    valid_k = valid.unsqueeze(-1)
    contributions = torch.where(valid_k, contributions, torch.zeros_like(contributions))
    nonzero_indices = torch.where(
        valid_k, nonzero_indices.long(), torch.zeros_like(nonzero_indices.long())
    )
    return SampleObservations(values, valid, contributions, nonzero_indices)


def accumulate_variance(
    observations: SampleObservations, gradient: torch.Tensor | None = None
) -> tuple[torch.Tensor, int]:
    """
    Sum the variances over the last dimension of a batch of spatial samples.

    Spatial samples without any valid observation contribute nothing. The
    variance is the biased estimate E[v^2] - E[v]^2 and is not clamped.

    Args:
        observations: Observations of the batch
        gradient: Dense gradient accumulator, updated in place at the nonzero
            Jacobian indices with d(variance)/d(parameters)

    Returns:
        Tuple of (sum of variances, number of spatial samples counted)
    """
    valid = observations.valid
    values = torch.where(valid, observations.values, torch.zeros_like(observations.values))

    count = valid.sum(dim=1)
    counted = count > 0
    k = count.clamp(min=1).to(values.dtype)

    mean = values.sum(dim=1) / k
    mean_squared = (values * values).sum(dim=1) / k
    variance = mean_squared - mean * mean
    measure = variance[counted].sum()

    if gradient is not None and observations.contributions is not None:
        # d(variance)/d(mu) = 2 (v_d - mean) / k * dv_d/d(mu)
        weights = 2.0 * (values - mean.unsqueeze(1)) / k.unsqueeze(1)
        weights = torch.where(valid, weights, torch.zeros_like(weights))
        update = weights.unsqueeze(-1) * observations.contributions
        gradient.index_add_(
            0,
            observations.nonzero_indices.reshape(-1),
            update.reshape(-1).to(gradient.dtype),
        )

    return measure, int(counted.sum())


class VarianceOverLastDimensionMetric:
    """
    Average variance of the moving intensities over the last dimension.

    Each evaluation sets the transform parameters, requests a fresh set of
    fixed-space samples from the image sampler and accumulates all running
    totals locally, so no evaluation state is stored on the instance.
    """

    def __init__(
        self,
        fixed_geometry: ImageGeometry,
        moving_interpolator: ImageInterpolator,
        transform: Transform,
        image_sampler: ImageSampler | torch.Tensor,
        moving_mask: ImageMask | None = None,
        sample_last_dimension_randomly: bool = False,
        num_samples_last_dimension: int = 10,
        sample_count_policy: Callable[[int, int], None] | None = None,
        generator: torch.Generator | None = None,
        samples_per_batch: int = 1024,
    ):
        """
        Args:
            fixed_geometry: Geometry of the fixed image; its last axis is the
                dimension over which the variance is computed
            moving_interpolator: Moving image accessor
            transform: Transform mapping fixed to moving space
            image_sampler: Callable returning fixed-space points [S, N], or a
                fixed tensor of points
            moving_mask: Optional moving image mask
            sample_last_dimension_randomly: Evaluate a random subset of the
                last-dimension positions for every spatial sample
            num_samples_last_dimension: Size of the random subset, clamped to
                the last dimension size
            sample_count_policy: Callable (number_of_samples, number_counted)
                raising InsufficientSamplesError (default: SampleCountPolicy())
            generator: Random source for the last-dimension positions. If None,
                a freshly seeded generator is used for every evaluation.
            samples_per_batch: Number of spatial samples processed at once
        """
        if not isinstance(transform, Transform):
            raise TypeError(
                f"transform must be an instance of Transform, "
                f"got {type(transform).__name__}"
            )
        if not isinstance(moving_interpolator, ImageInterpolator):
            raise TypeError(
                f"moving_interpolator must be an instance of ImageInterpolator, "
                f"got {type(moving_interpolator).__name__}"
            )
        if transform.dimension != fixed_geometry.dimension:
            raise ValueError(
                f"Transform dimension {transform.dimension} does not match fixed "
                f"image dimension {fixed_geometry.dimension}"
            )
        if samples_per_batch < 1:
            raise ValueError(
                f"samples_per_batch must be positive, got {samples_per_batch}"
            )

        self.fixed_geometry = fixed_geometry
        self.moving_interpolator = moving_interpolator
        self.transform = transform
        self.image_sampler = image_sampler
        self.moving_mask = moving_mask
        self.sampling = LastDimensionSampling(
            fixed_geometry.last_dimension_size,
            sample_randomly=sample_last_dimension_randomly,
            number_of_samples=num_samples_last_dimension,
        )
        self.sample_count_policy = sample_count_policy or SampleCountPolicy()
        self.generator = generator
        self.samples_per_batch = samples_per_batch

    @property
    def number_of_parameters(self) -> int:
        return self.transform.number_of_parameters

    def _fixed_points(self) -> torch.Tensor:
        if isinstance(self.image_sampler, torch.Tensor):
            points = self.image_sampler
        else:
            points = self.image_sampler()
        points = torch.as_tensor(points, dtype=self.fixed_geometry.dtype)

        if points.ndim != 2 or points.shape[1] != self.fixed_geometry.dimension:
            raise ValueError(
                f"Image sampler must return points of shape "
                f"[S, {self.fixed_geometry.dimension}], got {tuple(points.shape)}"
            )
        return points

    def evaluate(
        self, parameters: torch.Tensor, need_gradient: bool = True
    ) -> MetricEvaluation:
        """
        Evaluate the metric, and optionally its gradient, at the given parameters.

        Raises:
            InsufficientSamplesError: If too few spatial samples were valid
        """
        self.transform.set_parameters(parameters)
        fixed_points = self._fixed_points()
        number_of_samples = fixed_points.shape[0]

        generator = self.generator
        if self.sampling.sample_randomly and generator is None:
            generator = torch.Generator()
            generator.seed()

        measure = torch.zeros((), dtype=self.fixed_geometry.dtype)
        gradient = None
        if need_gradient:
            gradient = torch.zeros(
                self.number_of_parameters, dtype=self.transform.parameters.dtype
            )
        number_counted = 0

        for start in range(0, number_of_samples, self.samples_per_batch):
            batch = fixed_points[start : start + self.samples_per_batch]
            positions = self.sampling.positions(batch.shape[0], generator)
            observations = evaluate_samples(
                batch,
                positions,
                self.fixed_geometry,
                self.transform,
                self.moving_interpolator,
                self.moving_mask,
                need_gradient=need_gradient,
            )
            batch_measure, batch_counted = accumulate_variance(observations, gradient)
            measure = measure + batch_measure
            number_counted += batch_counted

        logger.debug(
            "Variance over last dimension: %d of %d samples counted",
            number_counted,
            number_of_samples,
        )

        self.sample_count_policy(number_of_samples, number_counted)
        if number_counted == 0:
            raise InsufficientSamplesError(number_of_samples, number_counted)

        value = float(measure) / number_counted
        if gradient is not None:
            gradient /= number_counted

        return MetricEvaluation(value, gradient, number_of_samples, number_counted)

    def value(self, parameters: torch.Tensor) -> float:
        """Metric value at the given parameters."""
        return self.evaluate(parameters, need_gradient=False).value

    def value_and_gradient(
        self, parameters: torch.Tensor
    ) -> tuple[float, torch.Tensor]:
        """Metric value and dense gradient at the given parameters."""
        result = self.evaluate(parameters, need_gradient=True)
        return result.value, result.gradient

    def gradient(self, parameters: torch.Tensor) -> torch.Tensor:
        """Dense gradient at the given parameters."""
        return self.value_and_gradient(parameters)[1]

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(sampling={self.sampling}, "
            f"transform={self.transform!r})"
        )


class _VarianceOverLastDimensionFunction(torch.autograd.Function):
    """Autograd bridge using the analytic gradient of the metric."""

    @staticmethod
    def forward(ctx, parameters, metric):
        result = metric.evaluate(parameters.detach(), need_gradient=True)
        ctx.metric_gradient = result.gradient
        return parameters.new_tensor(result.value)

    @staticmethod
    def backward(ctx, grad_output):
        gradient = ctx.metric_gradient.to(grad_output.dtype)
        return grad_output * gradient, None


class VarianceOverLastDimensionLoss(nn.Module):
    """
    Variance over the last dimension as a differentiable loss of the transform
    parameters, for use with torch.optim optimizers.
    """

    def __init__(self, metric: VarianceOverLastDimensionMetric) -> None:
        super().__init__()
        self.name = "variance_over_last_dimension"
        self.metric = metric

    def forward(self, parameters: torch.Tensor) -> torch.Tensor:
        """
        Args:
            parameters: Transform parameters [P]

        Returns:
            Metric value (lower is better)
        """
        return _VarianceOverLastDimensionFunction.apply(parameters, self.metric)

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}')"
