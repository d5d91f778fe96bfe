"""Shared synthetic fixtures for the pipeline tests."""

import numpy as np
import pandas as pd
import geopandas as gpd
import xarray as xr
import rioxarray  # noqa: F401
import pytest
from shapely.geometry import box, Polygon


def make_layer(values, resolution=0.5, west=-10.0, north=50.0, crs="EPSG:4326", name="layer"):
    """North-up grid whose top-left corner sits at (west, north)."""
    values = np.asarray(values, dtype="float32")
    n_rows, n_cols = values.shape
    xs = west + (np.arange(n_cols) + 0.5) * resolution
    ys = north - (np.arange(n_rows) + 0.5) * resolution
    layer = xr.DataArray(values, coords={"y": ys, "x": xs}, dims=("y", "x"), name=name)
    if crs is not None:
        layer = layer.rio.write_crs(crs)
    return layer


def make_occurrences(points, **columns):
    """Occurrence DataFrame from (lat, lon) pairs, with sensible defaults."""
    n = len(points)
    df = pd.DataFrame({
        "gbifID": np.arange(1000, 1000 + n),
        "taxonKey": 2435099,
        "decimalLatitude": [p[0] for p in points],
        "decimalLongitude": [p[1] for p in points],
        "coordinateUncertaintyInMeters": [30.0] * n,
        "year": [2010] * n,
        "basisOfRecord": ["HUMAN_OBSERVATION"] * n,
        "countryCode": ["ES"] * n,
    })
    for col, values in columns.items():
        df[col] = values
    return df


@pytest.fixture
def cleaning_params():
    return {
        "max_uncertainty_m": 10000,
        "min_year": 1970,
        "allowed_basis_of_record": None,
        "capitals_radius_m": 5000,
        "centroids_radius_m": 1000,
        "institutions_radius_m": 100,
        "zero_radius_deg": 0.5,
        "outlier_multiplier": 5.0,
        "outlier_min_records": 7,
        "outlier_min_distance_km": 1000,
        "drop_duplicates": False,
        "checks": [
            "coordinates", "zero", "equal", "precision", "recency", "basis",
            "capitals", "centroids", "institutions", "outliers", "duplicates",
        ],
    }


@pytest.fixture
def line_points():
    """Eight valid points spread along a line across central Spain."""
    return [(38.1 + 0.5 * i, -2.3 - 0.4 * i) for i in range(8)]


@pytest.fixture
def ten_point_occurrences(line_points):
    """8 valid records, one from 1950, one with 50 km uncertainty."""
    points = line_points + [(39.6, -3.4), (40.3, -3.9)]
    df = make_occurrences(points)
    df.loc[8, "year"] = 1950
    df.loc[9, "coordinateUncertaintyInMeters"] = 50000.0
    return df


@pytest.fixture
def raster_params():
    return {"resolution": 1 / 6, "crs": "EPSG:4326", "name_column": "binomial"}


@pytest.fixture
def metrics_params():
    return {"area_crs": "EPSG:6933", "centroid_crs": "EPSG:3035", "densify_deg": 0.1}


@pytest.fixture
def box_range():
    """Single 20 x 10 degree range in Europe, edges off the grid lines."""
    return gpd.GeoDataFrame(
        {"binomial": ["Lynx pardinus"]},
        geometry=[box(0.05, 40.05, 20.05, 50.05)],
        crs="EPSG:4326",
    )


@pytest.fixture
def two_part_range():
    """Two disjoint parts with a gap between them."""
    return gpd.GeoDataFrame(
        {"binomial": ["Lynx pardinus", "Lynx pardinus"]},
        geometry=[box(-8.9, 37.1, -6.1, 38.9), box(-3.9, 40.1, -2.1, 41.9)],
        crs="EPSG:4326",
    )


@pytest.fixture
def triangle_range():
    """Range spanning 35 degrees of latitude."""
    return gpd.GeoDataFrame(
        {"binomial": ["Ursus arctos"]},
        geometry=[Polygon([(0, 35), (30, 35), (0, 70)])],
        crs="EPSG:4326",
    )


@pytest.fixture
def climate_params():
    return {
        "resolution": "10m",
        "layers": ["BIO1", "BIO12"],
        "temperature_scale": 1.0,
        "point_method": "nearest",
        "resampling": "nearest",
        "auto_reproject": True,
        "strict_alignment": True,
        "download_delay": 0,
    }


@pytest.fixture
def iberia_layers():
    """BIO1 and BIO12 over Iberia at 0.5 degrees (-10..4 E, 36..50 N)."""
    n_rows, n_cols = 28, 28
    bio1 = np.arange(n_rows * n_cols, dtype="float32").reshape(n_rows, n_cols)
    bio12 = 1000.0 - bio1
    return {
        "BIO1": make_layer(bio1, name="BIO1"),
        "BIO12": make_layer(bio12, name="BIO12"),
    }
