"""Module for joining occurrences and range rasters with bioclimatic variables."""

import pandas as pd
import numpy as np
import rioxarray
import xarray as xr
from rasterio.crs import CRS
from rasterio.enums import Resampling
import requests
import os
import time
import logging
from tqdm import tqdm

from config import TEMPERATURE_LAYERS
from utils.errors import FetchError, GeometryError, CRSMismatchError, AlignmentError

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

OCCURRENCE_CRS = "EPSG:4326"

class ClimateJoiner:
    """
    Class for attaching bioclimatic variables to points and range rasters.

    Temperature layers (BIO1, BIO2, BIO5-BIO11) are multiplied by
    ``temperature_scale`` when loaded. Grids stored as integer tenths of a
    degree need 0.1 here; WorldClim 2.1 grids are already in degrees C and
    use 1.0. The factor applied is kept in each layer's
    ``attrs["scale_factor_applied"]``.
    """

    def __init__(self, params, worldclim_url, cache_dir="temp"):
        """
        Initialize the climate joiner.

        Args:
            params: Dictionary of climate parameters (see config.CLIMATE_PARAMS)
            worldclim_url: URL template with {resolution} and {index} fields
            cache_dir: Directory where downloaded layers are kept
        """
        self.params = params
        self.worldclim_url = worldclim_url
        self.cache_dir = cache_dir
        self.bioclim_vars = {}

    def layer_path(self, index):
        resolution = self.params["resolution"]
        return os.path.join(
            self.cache_dir, f"wc2.1_{resolution}_bio", f"wc2.1_{resolution}_bio_{index}.tif"
        )

    def add_layer(self, var_name, data_array):
        """
        Register a climate layer, applying the unit scaling for temperature layers.

        Args:
            var_name: Layer name, e.g. "BIO1"
            data_array: 2-D (or single band) DataArray with a rioxarray CRS
        """
        if "band" in data_array.dims:
            data_array = data_array.squeeze("band", drop=True)

        scale = self.params.get("temperature_scale", 1.0) if var_name in TEMPERATURE_LAYERS else 1.0
        if scale != 1.0:
            scaled = data_array * scale
            scaled.attrs = dict(data_array.attrs)
            data_array = scaled

        data_array = data_array.rename(var_name).copy(deep=False)
        data_array.attrs["scale_factor_applied"] = scale
        self.bioclim_vars[var_name] = data_array
        return self.bioclim_vars[var_name]

    def download_bioclim_layers(self, layers=None):
        """
        Download (once per resolution) and load bioclimatic layers from WorldClim.

        Args:
            layers: Layer names to load (defaults to the configured layers)

        Returns:
            Dictionary of xarray.DataArray objects for each bioclimatic variable
        """
        layers = layers or self.params.get("layers", [f"BIO{i}" for i in range(1, 20)])
        logger.info(f"Loading {len(layers)} bioclimatic layers at {self.params['resolution']}")

        for var_name in tqdm(layers, desc="Loading BIO layers", dynamic_ncols=True):
            index = int(var_name.replace("BIO", ""))
            cache_file = self.layer_path(index)

            if os.path.exists(cache_file):
                logger.info(f"Loading {var_name} from cache")
            else:
                url = self.worldclim_url.format(resolution=self.params["resolution"], index=index)
                logger.info(f"Downloading {var_name} from WorldClim")
                try:
                    response = requests.get(url, timeout=300)
                    response.raise_for_status()
                except requests.exceptions.RequestException as e:
                    raise FetchError(f"Could not download {var_name} from {url}: {e}", stage="climate") from e

                # Write under a temporary name so a partial file is never taken for a cached layer
                os.makedirs(os.path.dirname(cache_file), exist_ok=True)
                partial_file = cache_file + ".part"
                with open(partial_file, 'wb') as f:
                    f.write(response.content)
                os.replace(partial_file, cache_file)

                # Sleep briefly to avoid overwhelming the server
                time.sleep(self.params.get("download_delay", 0))

            self.add_layer(var_name, rioxarray.open_rasterio(cache_file, masked=True))

        logger.info(f"Loaded {len(self.bioclim_vars)}/{len(layers)} bioclimatic variables")
        return self.bioclim_vars

    def _match_crs(self, layer, var_name, target_crs):
        """
        Return the layer in the target CRS, or raise when that is not allowed.

        Returns:
            Tuple of (layer, reprojected flag)
        """
        layer_crs = layer.rio.crs
        if layer_crs is None:
            raise CRSMismatchError(target_crs, None, var_name)

        if layer_crs == CRS.from_user_input(target_crs):
            return layer, False

        if not self.params.get("auto_reproject", True):
            raise CRSMismatchError(str(target_crs), layer_crs.to_string(), var_name)

        logger.warning(f"Reprojecting {var_name} from {layer_crs.to_string()} to {target_crs}")
        return layer.rio.reproject(target_crs), True

    @staticmethod
    def _inside(layer, lats, lons):
        left, bottom, right, top = layer.rio.bounds()
        return (lons >= left) & (lons <= right) & (lats >= bottom) & (lats <= top)

    def sample_points(self, layer, lats, lons, method=None):
        """
        Sample one layer at a set of points.

        Points outside the grid extent get NaN.

        Args:
            layer: 2-D DataArray with x/y coordinates
            lats, lons: numpy arrays of coordinates in the layer CRS
            method: "nearest" (cell containing the point) or "linear"

        Returns:
            numpy array of sampled values
        """
        method = method or self.params.get("point_method", "nearest")
        inside = self._inside(layer, lats, lons)

        # NaN coordinates cannot be looked up; they are masked by `inside` anyway
        xs = xr.DataArray(np.where(inside, lons, layer.x.values[0]), dims="points")
        ys = xr.DataArray(np.where(inside, lats, layer.y.values[0]), dims="points")

        if method == "nearest":
            values = layer.sel(x=xs, y=ys, method="nearest").values
        elif method == "linear":
            values = layer.interp(x=xs, y=ys, method="linear").values
        else:
            raise ValueError(f"Unknown point sampling method: {method}")

        return np.where(inside, values.astype(float), np.nan)

    def join_points(self, occurrence_df, method=None, lat_col="decimalLatitude", lon_col="decimalLongitude"):
        """
        Attach one column per loaded layer to every occurrence.

        Args:
            occurrence_df: DataFrame of occurrences in EPSG:4326
            method: Point sampling method (overrides config)

        Returns:
            New DataFrame with the original columns plus one column per layer
        """
        if not self.bioclim_vars:
            raise ValueError("No climate layers loaded; call download_bioclim_layers() first")

        joined = occurrence_df.copy()
        lats = joined[lat_col].to_numpy(dtype=float)
        lons = joined[lon_col].to_numpy(dtype=float)

        for var_name, layer in tqdm(self.bioclim_vars.items(), desc="Sampling bioclimatic variables", dynamic_ncols=True):
            layer, _ = self._match_crs(layer, var_name, OCCURRENCE_CRS)
            joined[var_name] = self.sample_points(layer, lats, lons, method)

        n_missing = int(joined[list(self.bioclim_vars)].isna().all(axis=1).sum())
        if n_missing:
            logger.warning(f"{n_missing} records fall outside the climate grid or on no-data cells")

        logger.info(f"Joined {len(self.bioclim_vars)} layers to {len(joined)} records")
        return joined

    def check_alignment(self, layer, range_raster, var_name=None):
        """
        Raise AlignmentError when the layer grid cannot be nested in the range grid.

        Resolutions must be integer multiples of one another and the grid
        origins must be a whole number of cells apart.
        """
        layer_res = [abs(r) for r in layer.rio.resolution()]
        range_res = [abs(r) for r in range_raster.rio.resolution()]
        layer_origin = layer.rio.bounds()[0], layer.rio.bounds()[3]
        range_origin = range_raster.rio.bounds()[0], range_raster.rio.bounds()[3]

        problems = []
        for axis, a, b, o1, o2 in zip("xy", layer_res, range_res, layer_origin, range_origin):
            ratio = max(a, b) / min(a, b)
            if abs(ratio - round(ratio)) > 1e-6:
                problems.append(f"{axis} resolution {a} does not divide evenly into {b}")
            offset = abs(o1 - o2) / min(a, b)
            if abs(offset - round(offset)) > 1e-6:
                problems.append(f"{axis} origins {o1} and {o2} are not a whole number of cells apart")

        if problems:
            message = f"{var_name or 'layer'} cannot be aligned with the range grid: " + "; ".join(problems)
            if self.params.get("strict_alignment", True):
                raise AlignmentError(message)
            logger.warning(message)

    def join_raster(self, range_raster, var_name):
        """
        Climate values restricted to the range footprint.

        The layer is resampled onto the exact range grid, then kept only in
        the in-range cells; every other cell is NaN.

        Args:
            range_raster: Range raster from RangeRasterizer.rasterize()
            var_name: Name of a loaded layer

        Returns:
            DataArray on the range grid
        """
        if var_name not in self.bioclim_vars:
            raise KeyError(f"Layer {var_name} is not loaded")
        if range_raster.rio.crs is None:
            raise GeometryError("Range raster has no CRS", stage="climate")

        layer, reprojected = self._match_crs(self.bioclim_vars[var_name], var_name, range_raster.rio.crs)
        if not reprojected:
            self.check_alignment(layer, range_raster, var_name)

        resampling = Resampling[self.params.get("resampling", "nearest")]
        resampled = layer.rio.reproject_match(range_raster, resampling=resampling)

        in_range = range_raster.values == 1
        joined = xr.DataArray(
            np.where(in_range, resampled.values, np.nan).astype("float32"),
            coords={"y": range_raster.y.values, "x": range_raster.x.values},
            dims=("y", "x"),
            name=var_name
        )
        joined = joined.rio.write_crs(range_raster.rio.crs)
        joined = joined.rio.write_transform(range_raster.rio.transform())
        joined = joined.rio.write_nodata(np.nan, encoded=False)
        joined.attrs["scale_factor_applied"] = layer.attrs.get("scale_factor_applied", 1.0)

        logger.info(f"{var_name}: {int(np.isfinite(joined.values).sum())} in-range cells with climate values")
        return joined

    def join_raster_all(self, range_raster):
        """join_raster() for every loaded layer."""
        return {
            var_name: self.join_raster(range_raster, var_name)
            for var_name in tqdm(self.bioclim_vars, desc="Masking layers to range", dynamic_ncols=True)
        }

    def extract_variables_for_dataset(self, input_file, output_file):
        """
        Extract bioclimatic variables for all points in an Excel file.

        Returns:
            DataFrame with points and their bioclimatic variables
        """
        input_df = pd.read_excel(input_file)

        if input_df.empty:
            logger.error("Input file is empty")
            return pd.DataFrame()

        for col in ("decimalLatitude", "decimalLongitude"):
            if col not in input_df.columns:
                raise ValueError(f"Input file must contain a '{col}' column")

        logger.info(f"Processing {len(input_df)} points")

        if not self.bioclim_vars:
            self.download_bioclim_layers()

        result_df = self.join_points(input_df)

        result_df.to_excel(output_file, index=False)
        logger.info(f"Results saved to {output_file}")

        return result_df
