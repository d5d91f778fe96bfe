"""Helper functions for the SDM input preparation pipeline."""

import math

import numpy as np
from sklearn.neighbors import BallTree

EARTH_RADIUS_KM = 6371.0088

def within_radius(lats, lons, ref_lats, ref_lons, radius_m):
    """
    Flag points lying within a radius of any reference point.

    Args:
        lats, lons: Coordinates of the points to test (decimal degrees)
        ref_lats, ref_lons: Coordinates of the reference points (decimal degrees)
        radius_m: Radius in meters

    Returns:
        Boolean numpy array, True where a reference point is within the radius
    """
    points = np.radians(np.column_stack([lats, lons]).astype(float))
    if len(points) == 0 or len(ref_lats) == 0:
        return np.zeros(len(points), dtype=bool)

    refs = np.radians(np.column_stack([ref_lats, ref_lons]).astype(float))
    tree = BallTree(refs, metric="haversine")

    # BallTree works in radians on the unit sphere
    radius = (radius_m / 1000.0) / EARTH_RADIUS_KM
    counts = tree.query_radius(points, r=radius, count_only=True)
    return counts > 0

def snap_bounds(bounds, resolution):
    """
    Expand a bounding box outwards to integer multiples of the resolution.

    Args:
        bounds: (minx, miny, maxx, maxy)
        resolution: Cell size in the units of the bounds

    Returns:
        Tuple of snapped bounds plus the number of columns and rows
    """
    minx, miny, maxx, maxy = bounds

    # Round before floor/ceil so float noise (e.g. 11.999999) does not add a cell
    ix_min = math.floor(round(minx / resolution, 9))
    iy_min = math.floor(round(miny / resolution, 9))
    ix_max = math.ceil(round(maxx / resolution, 9))
    iy_max = math.ceil(round(maxy / resolution, 9))

    width = ix_max - ix_min
    height = iy_max - iy_min

    return (
        ix_min * resolution,
        iy_min * resolution,
        ix_max * resolution,
        iy_max * resolution
    ), width, height
