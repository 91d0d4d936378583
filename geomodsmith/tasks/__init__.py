"""Layer 3: Tasks - User intent translation.

Tasks translate user intent into object creation, primitive calls, and model
runs. They accept pandas DataFrames and return DataFrames. Tasks must not
import matplotlib.
"""

from geomodsmith.tasks.geomodeltask import GeoModelTask

__all__ = [
    "GeoModelTask",
]
