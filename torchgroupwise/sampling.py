"""
Random sampling of last-dimension positions and simple fixed image samplers.

An image sampler is any callable returning the physical fixed-space points
[S, N] at which the metric is evaluated. It is called once per evaluation.
"""

import torch

from .geometry import ImageGeometry


def sample_random(
    n: int, m: int, generator: torch.Generator | None = None
) -> list[int]:
    """
    Draw n distinct integers from the closed range [0, m].

    Candidates are drawn uniformly and rejected while already present.

    Args:
        n: Number of values to draw
        m: Largest value that may be drawn
        generator: Random source. If None, a freshly seeded generator is used,
            so repeated calls are not reproducible.

    Returns:
        List of n distinct integers, in the order they were drawn
    """
    if n > m + 1:
        raise ValueError(
            f"Cannot draw {n} distinct values from the range [0, {m}]"
        )
    if generator is None:
        generator = torch.Generator()
        generator.seed()

    numbers: list[int] = []
    while len(numbers) < n:
        candidate = int(torch.randint(0, m + 1, (1,), generator=generator).item())
        if candidate not in numbers:
            numbers.append(candidate)
    return numbers


class FullSampler:
    """
    Samples every spatial grid position of the fixed image.

    The last index of each point is 0: the metric replaces it with the
    last-dimension positions it evaluates.
    """

    def __init__(self, geometry: ImageGeometry):
        self.geometry = geometry

    def _spatial_indices(self) -> torch.Tensor:
        spatial = ImageGeometry(
            self.geometry.size[:-1] + (1,), dtype=self.geometry.dtype
        )
        return spatial.grid_indices()

    def __call__(self) -> torch.Tensor:
        return self.geometry.index_to_physical(self._spatial_indices())


class RandomSampler(FullSampler):
    """Samples a fresh random subset of the spatial grid positions on every call."""

    def __init__(
        self,
        geometry: ImageGeometry,
        number_of_samples: int,
        generator: torch.Generator | None = None,
    ):
        """
        Args:
            geometry: Fixed image geometry
            number_of_samples: Number of spatial positions per call
            generator: Random source (default: global torch random state)
        """
        super().__init__(geometry)
        if number_of_samples < 1:
            raise ValueError(
                f"number_of_samples must be positive, got {number_of_samples}"
            )
        self.number_of_samples = number_of_samples
        self.generator = generator

    def __call__(self) -> torch.Tensor:
        indices = self._spatial_indices()
        count = min(self.number_of_samples, indices.shape[0])
        selection = torch.randperm(indices.shape[0], generator=self.generator)[:count]
        return self.geometry.index_to_physical(indices[selection])
