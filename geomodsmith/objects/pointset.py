"""Point set object for scattered 3D observations."""

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd


@dataclass(frozen=True)
class PointSet:
    """Scattered 3D points with optional attribute table.

    Attributes:
        coordinates: Point coordinates (n_points, 3).
        attributes: Optional DataFrame with one row per point.
    """

    coordinates: np.ndarray
    attributes: Optional[pd.DataFrame] = None

    def __post_init__(self) -> None:
        """Validate PointSet parameters."""
        coords = np.asarray(self.coordinates, dtype=float)
        if coords.ndim == 1 and coords.size == 3:
            coords = coords.reshape(1, 3)
        if coords.ndim != 2 or coords.shape[1] != 3:
            raise ValueError(
                f"coordinates must have shape (n_points, 3), got {coords.shape}"
            )
        if not np.all(np.isfinite(coords)):
            raise ValueError("coordinates must be finite")
        object.__setattr__(self, "coordinates", coords)

        if self.attributes is not None:
            if not isinstance(self.attributes, pd.DataFrame):
                raise ValueError(
                    f"attributes must be a pandas DataFrame, got {type(self.attributes)}"
                )
            if len(self.attributes) != len(coords):
                raise ValueError(
                    f"attributes ({len(self.attributes)} rows) must match "
                    f"coordinates ({len(coords)} points)"
                )

    @classmethod
    def from_dataframe(
        cls,
        df: pd.DataFrame,
        coordinate_columns: Sequence[str] = ("X", "Y", "Z"),
    ) -> "PointSet":
        """Create a PointSet from a DataFrame with coordinate columns.

        Args:
            df: DataFrame holding coordinates and attributes.
            coordinate_columns: Names of the three coordinate columns.

        Returns:
            PointSet whose attributes are the remaining columns.
        """
        missing = [c for c in coordinate_columns if c not in df.columns]
        if missing:
            raise ValueError(
                f"Coordinate columns {missing} not found. "
                f"Available columns: {list(df.columns)}"
            )
        coords = df[list(coordinate_columns)].to_numpy(dtype=float)
        attributes = df.drop(columns=list(coordinate_columns)).reset_index(drop=True)
        return cls(coordinates=coords, attributes=attributes)

    @property
    def n_points(self) -> int:
        return self.coordinates.shape[0]

    def bounding_box(self) -> np.ndarray:
        """Return the (2, 3) array of minimum and maximum coordinates."""
        return np.vstack([self.coordinates.min(axis=0), self.coordinates.max(axis=0)])

    def diagonal(self) -> float:
        """Length of the bounding-box diagonal."""
        box = self.bounding_box()
        return float(np.linalg.norm(box[1] - box[0]))

    def __len__(self) -> int:
        return self.n_points

    def __repr__(self) -> str:
        """String representation."""
        n_attr = 0 if self.attributes is None else self.attributes.shape[1]
        return f"PointSet(n_points={self.n_points}, n_attributes={n_attr})"
