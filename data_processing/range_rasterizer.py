"""Module for loading expert range maps and converting them to rasters."""

import numpy as np
import geopandas as gpd
import xarray as xr
import rioxarray  # noqa: F401  (registers the .rio accessor)
from rasterio import features
from rasterio.transform import from_origin
import hashlib
import os
import logging

from utils.errors import GeometryError, EmptyRangeError
from utils.helpers import snap_bounds

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

class RangeRasterizer:
    """Class for rasterizing range polygons onto a fixed, origin-aligned grid."""

    def __init__(self, params, cache_dir=None):
        """
        Initialize the rasterizer.

        Args:
            params: Dictionary of raster parameters (see config.RASTER_PARAMS)
            cache_dir: Optional directory for cached range rasters
        """
        self.params = params
        self.cache_dir = cache_dir

    def load_range(self, path, species=None):
        """
        Load a range map from any vector format geopandas can read.

        Args:
            path: Path to the range map (shapefile, GeoPackage, GeoJSON, ...)
            species: Optional species name to select from a multi-species file

        Returns:
            GeoDataFrame with the range polygons
        """
        logger.info(f"Loading range map from {path}")
        range_gdf = gpd.read_file(path)

        if species is not None:
            name_column = self.params.get("name_column", "binomial")
            if name_column not in range_gdf.columns:
                raise GeometryError(f"Range map {path} has no '{name_column}' column to select {species}")
            range_gdf = range_gdf[range_gdf[name_column] == species]

        return self.validate_range(range_gdf, source=path)

    @staticmethod
    def validate_range(range_gdf, source="range map"):
        """
        Check a range GeoDataFrame is usable; repair invalid geometries.

        Returns:
            GeoDataFrame without empty geometries
        """
        if range_gdf.crs is None:
            raise GeometryError(f"{source} has no coordinate reference system")

        range_gdf = range_gdf[range_gdf.geometry.notna() & ~range_gdf.geometry.is_empty]
        if range_gdf.empty:
            raise EmptyRangeError(f"{source} contains no polygons")

        invalid = ~range_gdf.geometry.is_valid
        if invalid.any():
            logger.warning(f"Repairing {int(invalid.sum())} invalid geometries in {source}")
            range_gdf = range_gdf.copy()
            range_gdf["geometry"] = range_gdf.geometry.make_valid()

        logger.info(f"Range has {len(range_gdf)} features")
        return range_gdf

    @staticmethod
    def cache_key(range_gdf, resolution, crs):
        """Key identifying a raster: geometry, target CRS and resolution."""
        digest = hashlib.sha1()
        digest.update(range_gdf.geometry.union_all().wkb)
        digest.update(str(range_gdf.crs).encode())
        digest.update(str(crs).encode())
        digest.update(repr(float(resolution)).encode())
        return digest.hexdigest()[:16]

    def rasterize(self, range_gdf, resolution=None, crs=None):
        """
        Rasterize a range with boolean coverage.

        A cell is in range (1.0) when it touches any part of the range,
        otherwise it is no-data (NaN). The grid edges are integer multiples of
        the resolution, so the same range and resolution always give the same
        grid.

        Args:
            range_gdf: GeoDataFrame with the range polygons
            resolution: Cell size in units of `crs` (overrides config)
            crs: Target CRS (overrides config)

        Returns:
            xarray.DataArray with dims (y, x) and a rioxarray CRS
        """
        resolution = resolution if resolution is not None else self.params["resolution"]
        crs = crs or self.params.get("crs", "EPSG:4326")

        if resolution <= 0:
            raise GeometryError(f"Resolution must be positive, got {resolution}")

        range_gdf = self.validate_range(range_gdf)
        key = self.cache_key(range_gdf, resolution, crs)

        cache_file = None
        if self.cache_dir:
            cache_file = os.path.join(self.cache_dir, "range_rasters", f"range_{key}.tif")
            if os.path.exists(cache_file):
                logger.info(f"Loading range raster from cache ({cache_file})")
                cached = rioxarray.open_rasterio(cache_file, masked=True).squeeze("band", drop=True)
                cached.attrs.update({"resolution": float(resolution), "cache_key": key})
                return cached.rename("range")

        projected = range_gdf.to_crs(crs)
        (minx, miny, maxx, maxy), width, height = snap_bounds(projected.total_bounds, resolution)
        if width <= 0 or height <= 0:
            raise GeometryError(
                f"Resolution {resolution} produces an empty {height}x{width} grid for bounds {projected.total_bounds}"
            )

        logger.info(f"Rasterizing range onto a {height}x{width} grid at resolution {resolution}")
        transform = from_origin(minx, maxy, resolution, resolution)

        burned = features.rasterize(
            ((geom, 1) for geom in projected.geometry),
            out_shape=(height, width),
            transform=transform,
            fill=0,
            all_touched=True,
            dtype="uint8"
        )

        if not burned.any():
            raise GeometryError("Range polygons did not cover a single cell")

        data = np.where(burned == 1, 1.0, np.nan).astype("float32")
        xs = minx + (np.arange(width) + 0.5) * resolution
        ys = maxy - (np.arange(height) + 0.5) * resolution

        raster = xr.DataArray(data, coords={"y": ys, "x": xs}, dims=("y", "x"), name="range")
        raster = raster.rio.write_crs(crs)
        raster = raster.rio.write_transform(transform)
        raster = raster.rio.write_nodata(np.nan, encoded=False)
        raster.attrs.update({"resolution": float(resolution), "cache_key": key})

        logger.info(f"{int(burned.sum())} cells in range")

        if cache_file:
            self.save_raster(raster, cache_file)

        return raster

    @staticmethod
    def save_raster(raster, path):
        """Write a raster to GeoTIFF."""
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        raster.rio.to_raster(path)
        logger.info(f"Raster saved to {path}")
