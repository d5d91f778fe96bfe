"""Reference tables (capitals, country centroids, institutions) for coordinate checks."""

import pandas as pd
import geopandas as gpd
import requests
import zipfile
import os
import logging
from tqdm import tqdm

from utils.errors import FetchError

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

REFERENCE_COLUMNS = ["name", "decimalLatitude", "decimalLongitude"]

# GRSciColl pages are capped at 1000 records
INSTITUTION_PAGE_SIZE = 1000

def empty_reference():
    return pd.DataFrame(columns=REFERENCE_COLUMNS)

class ReferenceData:
    """Loads and caches the point tables used by the proximity checks."""

    def __init__(self, cache_dir, urls, institutions_file=None, centroid_crs="EPSG:6933"):
        """
        Initialize the reference data loader.

        Args:
            cache_dir: Directory where downloaded layers are kept
            urls: Dictionary with Natural Earth "populated_places" and "countries" zip
                URLs, and the GRSciColl "institutions" endpoint
            institutions_file: Optional CSV with name, decimalLatitude, decimalLongitude,
                used instead of the registry
            centroid_crs: Equal-area CRS used to compute country centroids
        """
        self.cache_dir = cache_dir
        self.urls = urls
        self.institutions_file = institutions_file
        self.centroid_crs = centroid_crs

    def _download_layer(self, key):
        """
        Download a zipped Natural Earth layer once and read it.

        Returns:
            GeoDataFrame of the layer
        """
        url = self.urls[key]
        layer_dir = os.path.join(self.cache_dir, "natural_earth")
        shp_name = os.path.basename(url).replace(".zip", ".shp")
        shp_path = os.path.join(layer_dir, shp_name)

        if os.path.exists(shp_path):
            logger.info(f"Loading {key} from cache")
            return gpd.read_file(shp_path)

        os.makedirs(layer_dir, exist_ok=True)
        zip_path = os.path.join(layer_dir, os.path.basename(url))

        logger.info(f"Downloading {key} from Natural Earth")
        try:
            response = requests.get(url, timeout=120)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise FetchError(f"Could not download reference layer {key}: {e}", stage="clean") from e

        with open(zip_path, 'wb') as f:
            f.write(response.content)

        with zipfile.ZipFile(zip_path, 'r') as zip_ref:
            zip_ref.extractall(layer_dir)

        return gpd.read_file(shp_path)

    def capitals(self):
        """National capitals as a point table."""
        places = self._download_layer("populated_places")
        capitals = places[places["FEATURECLA"].str.startswith("Admin-0 capital")]

        df = pd.DataFrame({
            "name": capitals["NAME"].values,
            "decimalLatitude": capitals.geometry.y.values,
            "decimalLongitude": capitals.geometry.x.values
        })
        logger.info(f"Loaded {len(df)} national capitals")
        return df

    def country_centroids(self):
        """
        Country centroids, computed in an equal-area projection.

        Returns:
            DataFrame of one centroid per country, in decimal degrees
        """
        countries = self._download_layer("countries")
        return polygon_centroids(countries, name_column="ADMIN", centroid_crs=self.centroid_crs)

    def _download_institutions(self):
        """
        Download institution locations from the GBIF GRSciColl registry once.

        Institutions without coordinates are dropped. The table is cached as
        CSV so later runs do not page through the registry again.

        Returns:
            DataFrame with name, decimalLatitude, decimalLongitude
        """
        url = self.urls["institutions"]
        cache_file = os.path.join(self.cache_dir, "grscicoll", "institutions.csv")

        if os.path.exists(cache_file):
            logger.info("Loading institutions from cache")
            return pd.read_csv(cache_file)

        logger.info("Downloading institution locations from GRSciColl")
        rows = []
        offset = 0
        with tqdm(desc="Fetching institutions", dynamic_ncols=True) as pbar:
            while True:
                try:
                    response = requests.get(
                        url, params={"limit": INSTITUTION_PAGE_SIZE, "offset": offset}, timeout=120
                    )
                    response.raise_for_status()
                    page = response.json()
                except requests.exceptions.RequestException as e:
                    raise FetchError(f"Could not download institutions from {url}: {e}", stage="clean") from e

                results = page.get("results") or []
                rows.extend(
                    {
                        "name": record.get("name"),
                        "decimalLatitude": record.get("latitude"),
                        "decimalLongitude": record.get("longitude")
                    }
                    for record in results
                )
                pbar.update(len(results))
                offset += len(results)

                if page.get("endOfRecords", True) or not results:
                    break

        df = pd.DataFrame(rows, columns=REFERENCE_COLUMNS)
        for col in ("decimalLatitude", "decimalLongitude"):
            df[col] = pd.to_numeric(df[col], errors="coerce")
        df = df.dropna(subset=["decimalLatitude", "decimalLongitude"]).reset_index(drop=True)

        os.makedirs(os.path.dirname(cache_file), exist_ok=True)
        df.to_csv(cache_file, index=False)
        return df

    def institutions(self):
        """
        Biodiversity institution locations.

        A user supplied CSV takes precedence; otherwise the GRSciColl registry
        is used. Empty (and the institution check skipped) when neither is
        configured.
        """
        if self.institutions_file:
            df = pd.read_csv(self.institutions_file)
            missing = [col for col in REFERENCE_COLUMNS if col not in df.columns]
            if missing:
                raise ValueError(f"Institutions file is missing columns: {missing}")
            df = df.dropna(subset=["decimalLatitude", "decimalLongitude"])[REFERENCE_COLUMNS]
        elif self.urls.get("institutions"):
            df = self._download_institutions()
        else:
            logger.warning("No institutions file or registry URL configured; institution check will be skipped")
            return empty_reference()

        logger.info(f"Loaded {len(df)} institutions")
        return df.reset_index(drop=True)

    def load_all(self):
        """
        Load every reference table.

        Returns:
            Dictionary with "capitals", "centroids" and "institutions" DataFrames
        """
        return {
            "capitals": self.capitals(),
            "centroids": self.country_centroids(),
            "institutions": self.institutions()
        }

def polygon_centroids(polygons, name_column, centroid_crs):
    """
    Centroid of every polygon, computed in an equal-area CRS and returned in lat/lon.

    Args:
        polygons: GeoDataFrame of (multi)polygons
        name_column: Column used as the centroid name
        centroid_crs: Projected equal-area CRS

    Returns:
        DataFrame with name, decimalLatitude, decimalLongitude
    """
    centroids = polygons.to_crs(centroid_crs).geometry.centroid.to_crs("EPSG:4326")
    return pd.DataFrame({
        "name": polygons[name_column].values,
        "decimalLatitude": centroids.y.values,
        "decimalLongitude": centroids.x.values
    })
