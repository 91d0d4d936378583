"""Layer 1: Objects - Immutable data representations.

This layer contains only data structures. Only standard library + numpy + pandas.
"""

from geomodsmith.objects.directionset import DirectionSet
from geomodsmith.objects.pointset import PointSet

__all__ = [
    "DirectionSet",
    "PointSet",
]
