"""Module for range size and range centroid statistics."""

import numpy as np
import pandas as pd
import geopandas as gpd
from pyproj import CRS, Geod
import logging

from utils.errors import GeometryError

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Projection methods that preserve area
EQUAL_AREA_METHODS = ("Equal Area", "Mollweide", "Sinusoidal", "Equal Earth", "Goode")

def _is_equal_area(crs):
    operation = crs.coordinate_operation
    method = operation.method_name if operation is not None else ""
    return any(name in method for name in EQUAL_AREA_METHODS)

def _projected_crs(crs, purpose):
    crs = CRS.from_user_input(crs)
    if crs.is_geographic:
        raise GeometryError(f"{purpose} needs a projected equal-area CRS, got geographic {crs.to_string()}", stage="metrics")
    if not _is_equal_area(crs):
        raise GeometryError(f"{purpose} needs an equal-area CRS, {crs.name} does not preserve area", stage="metrics")
    return crs

def _metres_per_unit(crs):
    return crs.axis_info[0].unit_conversion_factor

class RangeMetrics:
    """
    Range size from the polygons and from the raster, and the range centroid.

    Polygon and raster areas are expected to differ. A raster cell counts as
    fully in range as soon as the range touches it, so the raster area is
    larger by roughly half a cell along the whole boundary; the difference
    shrinks as the resolution gets finer. Raster cell areas are computed per
    row because a one-degree cell shrinks towards the poles.
    """

    def __init__(self, params):
        """
        Initialize the metrics calculator.

        Args:
            params: Dictionary of metric parameters (see config.METRICS_PARAMS)
        """
        self.params = params
        self.geod = Geod(ellps="WGS84")

    def _densify(self, range_gdf):
        # Straight edges in lon/lat are not straight once projected
        if range_gdf.crs.is_geographic:
            return range_gdf.geometry.segmentize(self.params.get("densify_deg", 0.1))
        return range_gdf.geometry

    def polygon_area_km2(self, range_gdf):
        """
        Area of the range polygons in square kilometers.

        Overlapping parts are merged first so no area is counted twice.
        """
        area_crs = _projected_crs(self.params["area_crs"], "Area calculation")

        geometry = gpd.GeoSeries(self._densify(range_gdf), crs=range_gdf.crs).to_crs(area_crs)
        region = geometry.union_all()
        area = region.area * _metres_per_unit(area_crs) ** 2 / 1e6

        logger.info(f"Polygon range area: {area:,.0f} km2")
        return area

    def cell_areas_km2(self, raster):
        """
        True area of one cell in each raster row, in square kilometers.

        Returns:
            numpy array with one value per row
        """
        crs = raster.rio.crs
        if crs is None:
            raise GeometryError("Range raster has no CRS", stage="metrics")

        res_x, res_y = raster.rio.resolution()
        res_x, res_y = abs(res_x), abs(res_y)
        n_rows = raster.sizes["y"]

        if not crs.is_geographic:
            # Every cell has the same area only in an equal-area projection
            projected = _projected_crs(crs, "Raster cell area")
            metres = _metres_per_unit(projected)
            return np.full(n_rows, res_x * res_y * metres ** 2 / 1e6)

        half = res_y / 2
        areas = []
        for y in raster["y"].values:
            lats = [y - half, y - half, y + half, y + half]
            lons = [0.0, res_x, res_x, 0.0]
            area, _ = self.geod.polygon_area_perimeter(lons, lats)
            areas.append(abs(area) / 1e6)
        return np.array(areas)

    def raster_area_km2(self, raster):
        """Sum of the true areas of the in-range cells, no-data cells excluded."""
        in_range = (raster.values == 1)
        cells_per_row = in_range.sum(axis=1)
        area = float((cells_per_row * self.cell_areas_km2(raster)).sum())

        logger.info(f"Raster range area: {area:,.0f} km2 ({int(in_range.sum())} cells)")
        return area

    def area_comparison(self, range_gdf, raster):
        """
        Both area estimates and their relative difference.

        Returns:
            Dictionary with polygon_area_km2, raster_area_km2 and
            relative_difference ((raster - polygon) / polygon)
        """
        polygon_area = self.polygon_area_km2(range_gdf)
        raster_area = self.raster_area_km2(raster)
        if polygon_area == 0:
            raise GeometryError("Range polygons have zero area", stage="metrics")

        relative = (raster_area - polygon_area) / polygon_area
        logger.info(f"Raster area differs from polygon area by {relative:.2%}")
        return {
            "polygon_area_km2": polygon_area,
            "raster_area_km2": raster_area,
            "relative_difference": relative
        }

    def centroid(self, range_gdf):
        """
        Centroid of the whole range, computed in an equal-area projection.

        All parts are merged into one region in the projected CRS, its
        centroid is taken there and transformed back to the CRS of the input.

        Returns:
            shapely Point in the CRS of range_gdf
        """
        centroid_crs = _projected_crs(self.params["centroid_crs"], "Centroid calculation")

        projected = gpd.GeoSeries(self._densify(range_gdf), crs=range_gdf.crs).to_crs(centroid_crs)
        region = projected.union_all()
        if region.is_empty:
            raise GeometryError("Cannot compute the centroid of an empty range", stage="metrics")

        point = gpd.GeoSeries([region.centroid], crs=centroid_crs).to_crs(range_gdf.crs).iloc[0]
        logger.info(f"Range centroid: ({point.y:.4f}, {point.x:.4f})")
        return point

    def metrics_table(self, range_gdf, raster):
        """One-row DataFrame with the area comparison and the centroid."""
        row = self.area_comparison(range_gdf, raster)
        point = self.centroid(range_gdf.to_crs("EPSG:4326"))
        row.update({
            "centroid_latitude": point.y,
            "centroid_longitude": point.x,
            "resolution": raster.attrs.get("resolution"),
            "area_crs": str(self.params["area_crs"]),
            "centroid_crs": str(self.params["centroid_crs"])
        })
        return pd.DataFrame([row])
