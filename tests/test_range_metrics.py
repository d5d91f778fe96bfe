"""
Tests for range area and centroid.

Polygon area vs raster area is expected to disagree by a bounded, non-zero
amount (raster cells touching the boundary count as fully in range).
"""

import numpy as np
import geopandas as gpd
import pytest
from shapely.geometry import box

from data_processing.range_metrics import RangeMetrics
from data_processing.range_rasterizer import RangeRasterizer
from utils.errors import GeometryError


EARTH_RADIUS_KM = 6371.0088


def spherical_band_area(lon_width_deg, lat_south, lat_north):
    return (
        EARTH_RADIUS_KM ** 2
        * np.radians(lon_width_deg)
        * (np.sin(np.radians(lat_north)) - np.sin(np.radians(lat_south)))
    )


@pytest.fixture
def metrics(metrics_params):
    return RangeMetrics(metrics_params)


class TestArea:

    def test_polygon_area_matches_band_formula(self, metrics, box_range):
        expected = spherical_band_area(20.0, 40.05, 50.05)
        assert metrics.polygon_area_km2(box_range) == pytest.approx(expected, rel=0.01)

    def test_raster_area_within_tolerance_but_not_equal(self, metrics, raster_params, box_range):
        raster = RangeRasterizer(raster_params).rasterize(box_range)
        comparison = metrics.area_comparison(box_range, raster)

        assert comparison["raster_area_km2"] != comparison["polygon_area_km2"]
        assert 0 < abs(comparison["relative_difference"]) < 0.05
        # All-touched rasterization can only add area
        assert comparison["raster_area_km2"] > comparison["polygon_area_km2"]

    def test_finer_resolution_reduces_discrepancy(self, metrics, raster_params, box_range):
        rasterizer = RangeRasterizer(raster_params)
        coarse = metrics.area_comparison(box_range, rasterizer.rasterize(box_range, resolution=0.5))
        fine = metrics.area_comparison(box_range, rasterizer.rasterize(box_range, resolution=1 / 12))
        assert abs(fine["relative_difference"]) < abs(coarse["relative_difference"])

    def test_nodata_cells_are_not_counted(self, metrics, raster_params, two_part_range):
        raster = RangeRasterizer(raster_params).rasterize(two_part_range)
        cell_areas = metrics.cell_areas_km2(raster)

        in_range = raster.values == 1
        expected = float((in_range.sum(axis=1) * cell_areas).sum())
        everything = float(cell_areas.sum() * raster.sizes["x"])

        assert metrics.raster_area_km2(raster) == pytest.approx(expected)
        assert metrics.raster_area_km2(raster) < everything

    def test_cell_area_shrinks_towards_pole(self, metrics, raster_params, triangle_range):
        raster = RangeRasterizer(raster_params).rasterize(triangle_range)
        cell_areas = metrics.cell_areas_km2(raster)

        # Rows run north to south
        assert np.all(np.diff(cell_areas) > 0)
        # A 10 arc-minute cell at 35 N is roughly 280 km2
        assert cell_areas[-1] == pytest.approx(spherical_band_area(1 / 6, 35.0, 35.0 + 1 / 6), rel=0.01)

    def test_overlapping_parts_counted_once(self, metrics, box_range):
        doubled = gpd.GeoDataFrame(
            geometry=[box(0.05, 40.05, 20.05, 50.05), box(10.05, 40.05, 20.05, 50.05)],
            crs="EPSG:4326",
        )
        assert metrics.polygon_area_km2(doubled) == pytest.approx(metrics.polygon_area_km2(box_range))

    def test_geographic_area_crs_rejected(self, metrics_params, box_range):
        metrics = RangeMetrics(dict(metrics_params, area_crs="EPSG:4326"))
        with pytest.raises(GeometryError, match="projected"):
            metrics.polygon_area_km2(box_range)

    def test_non_equal_area_projection_rejected(self, metrics_params, box_range):
        metrics = RangeMetrics(dict(metrics_params, area_crs="EPSG:3857"))
        with pytest.raises(GeometryError, match="equal-area"):
            metrics.polygon_area_km2(box_range)

    def test_equal_area_raster_cells_share_one_area(self, metrics, box_range):
        raster = RangeRasterizer({"resolution": 10000}).rasterize(box_range, crs="EPSG:6933")
        cell_areas = metrics.cell_areas_km2(raster)

        assert len(cell_areas) == raster.sizes["y"]
        assert np.allclose(cell_areas, 100.0)

    def test_non_equal_area_raster_rejected(self, metrics, box_range):
        raster = RangeRasterizer({"resolution": 10000}).rasterize(box_range, crs="EPSG:3857")
        with pytest.raises(GeometryError, match="equal-area"):
            metrics.cell_areas_km2(raster)


class TestCentroid:

    def test_centroid_within_bounds(self, metrics, triangle_range):
        point = metrics.centroid(triangle_range)
        minx, miny, maxx, maxy = triangle_range.total_bounds
        assert minx <= point.x <= maxx
        assert miny <= point.y <= maxy

    def test_differs_from_naive_degree_centroid(self, metrics, triangle_range):
        point = metrics.centroid(triangle_range)
        naive = triangle_range.geometry.iloc[0].centroid

        distance = np.hypot(point.x - naive.x, point.y - naive.y)
        assert distance > 0.1

    def test_multi_part_range_is_merged(self, metrics, two_part_range):
        point = metrics.centroid(two_part_range)

        # Between the two parts, not on either one
        assert -8.9 < point.x < -2.1
        assert 37.1 < point.y < 41.9
        assert not two_part_range.geometry.contains(point).any()

    def test_centroid_returned_in_input_crs(self, metrics, triangle_range):
        densified = triangle_range.set_geometry(triangle_range.geometry.segmentize(0.1))
        projected = densified.to_crs("EPSG:3035")
        point = metrics.centroid(projected)
        expected = gpd.GeoSeries([metrics.centroid(triangle_range)], crs="EPSG:4326").to_crs("EPSG:3035").iloc[0]
        assert point.distance(expected) < 1000

    def test_geographic_centroid_crs_rejected(self, metrics_params, triangle_range):
        metrics = RangeMetrics(dict(metrics_params, centroid_crs="EPSG:4326"))
        with pytest.raises(GeometryError):
            metrics.centroid(triangle_range)


def test_metrics_table(metrics, raster_params, box_range):
    raster = RangeRasterizer(raster_params).rasterize(box_range)
    table = metrics.metrics_table(box_range, raster)

    assert len(table) == 1
    assert {
        "polygon_area_km2", "raster_area_km2", "relative_difference",
        "centroid_latitude", "centroid_longitude", "resolution",
    } <= set(table.columns)
    assert 40.05 < table.loc[0, "centroid_latitude"] < 50.05
    assert table.loc[0, "resolution"] == pytest.approx(1 / 6)
