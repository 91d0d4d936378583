"""Structural direction data (tangents to geological surfaces)."""

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class DirectionSet:
    """Unit direction vectors attached to 3D locations.

    Each direction is tangent to a geological boundary, so the potential
    field is expected to be constant along it.

    Attributes:
        coordinates: Locations of the measurements (n_directions, 3).
        directions: Direction vectors (n_directions, 3), normalized on creation.
    """

    coordinates: np.ndarray
    directions: np.ndarray

    def __post_init__(self) -> None:
        """Validate DirectionSet parameters."""
        coords = np.atleast_2d(np.asarray(self.coordinates, dtype=float))
        dirs = np.atleast_2d(np.asarray(self.directions, dtype=float))

        if coords.ndim != 2 or coords.shape[1] != 3:
            raise ValueError(
                f"coordinates must have shape (n_directions, 3), got {coords.shape}"
            )
        if dirs.shape != coords.shape:
            raise ValueError(
                f"directions {dirs.shape} must match coordinates {coords.shape}"
            )
        if not (np.all(np.isfinite(coords)) and np.all(np.isfinite(dirs))):
            raise ValueError("coordinates and directions must be finite")

        norms = np.linalg.norm(dirs, axis=1)
        if np.any(norms == 0):
            raise ValueError("directions must have non-zero length")

        object.__setattr__(self, "coordinates", coords)
        object.__setattr__(self, "directions", dirs / norms[:, None])

    @property
    def n_directions(self) -> int:
        return self.coordinates.shape[0]

    def subset(self, indices: np.ndarray) -> "DirectionSet":
        indices = np.asarray(indices, dtype=int)
        return DirectionSet(
            coordinates=self.coordinates[indices],
            directions=self.directions[indices],
        )

    def __len__(self) -> int:
        return self.n_directions

    def __repr__(self) -> str:
        """String representation."""
        return f"DirectionSet(n_directions={self.n_directions})"
