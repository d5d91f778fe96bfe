"""Module for cleaning species occurrence records before modelling."""

import pandas as pd
import numpy as np
from sklearn.metrics.pairwise import haversine_distances
import logging

from utils.helpers import within_radius, EARTH_RADIUS_KM

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

LAT_COL = "decimalLatitude"
LON_COL = "decimalLongitude"
UNCERTAINTY_COL = "coordinateUncertaintyInMeters"
YEAR_COL = "year"
BASIS_COL = "basisOfRecord"

class OccurrenceCleaner:
    """
    Filters an occurrence set with named, configurable checks.

    Every check produces one boolean column in ``flags`` (True means the
    record fails it). A record is kept only when no check flags it. The
    geographic outlier test is run last, against the records that pass
    every other check, so that bad coordinates do not shift the distance
    distribution.
    """

    def __init__(self, params, reference=None):
        """
        Initialize the cleaner.

        Args:
            params: Dictionary of cleaning parameters (see config.CLEANING_PARAMS)
            reference: Optional dictionary with "capitals", "centroids" and
                "institutions" DataFrames (name, decimalLatitude, decimalLongitude)
        """
        self.params = params
        self.reference = reference or {}
        self.flags = None
        self._input = None

        self.checks = {
            "coordinates": self.check_coordinates,
            "zero": self.check_zero,
            "equal": self.check_equal,
            "precision": self.check_precision,
            "recency": self.check_recency,
            "basis": self.check_basis,
            "capitals": lambda df: self.check_proximity(df, "capitals"),
            "centroids": lambda df: self.check_proximity(df, "centroids"),
            "institutions": lambda df: self.check_proximity(df, "institutions"),
            "duplicates": self.check_duplicates
        }

        unknown = set(params.get("checks", [])) - set(self.checks) - {"outliers"}
        if unknown:
            raise ValueError(f"Unknown cleaning checks: {sorted(unknown)}")

    @staticmethod
    def _valid_coordinates(df):
        return (
            df[LAT_COL].between(-90, 90) & df[LON_COL].between(-180, 180)
        ).to_numpy()

    def check_coordinates(self, df):
        """Missing or out-of-range coordinates."""
        return ~self._valid_coordinates(df)

    def check_zero(self, df):
        """Plain zeros and records near the 0/0 point."""
        lat = df[LAT_COL].to_numpy(dtype=float)
        lon = df[LON_COL].to_numpy(dtype=float)
        radius = self.params.get("zero_radius_deg", 0.5)
        return (lat == 0) | (lon == 0) | (np.hypot(lat, lon) <= radius)

    def check_equal(self, df):
        """Latitude and longitude with the same absolute value, a common transcription error."""
        return (df[LAT_COL].abs() == df[LON_COL].abs()).to_numpy()

    def check_precision(self, df):
        """Coordinate uncertainty at or above the configured threshold."""
        if UNCERTAINTY_COL not in df.columns:
            logger.warning(f"No {UNCERTAINTY_COL} column; precision check treats every record as unknown precision")
            return np.zeros(len(df), dtype=bool)

        uncertainty = pd.to_numeric(df[UNCERTAINTY_COL], errors="coerce")
        threshold = self.params["max_uncertainty_m"]
        return (uncertainty.notna() & (uncertainty >= threshold)).to_numpy()

    def check_recency(self, df):
        """Records observed in or before the cutoff year, or with no year."""
        if YEAR_COL not in df.columns:
            raise ValueError(f"Occurrence set has no '{YEAR_COL}' column; cannot apply recency check")

        year = pd.to_numeric(df[YEAR_COL], errors="coerce").astype(float)
        return (year.isna() | (year <= self.params["min_year"])).to_numpy()

    def check_basis(self, df):
        allowed = self.params.get("allowed_basis_of_record")
        if not allowed:
            return None
        return (~df[BASIS_COL].isin(allowed)).to_numpy()

    def check_proximity(self, df, table):
        """
        Records within the configured radius of a reference point.

        Args:
            df: Occurrence DataFrame
            table: Reference table name ("capitals", "centroids" or "institutions")

        Returns:
            Boolean array, or None when the reference table is unavailable
        """
        ref = self.reference.get(table)
        if ref is None or len(ref) == 0:
            logger.warning(f"No {table} reference data; skipping {table} check")
            return None

        radius_m = self.params[f"{table}_radius_m"]
        valid = self._valid_coordinates(df)

        flagged = np.zeros(len(df), dtype=bool)
        flagged[valid] = within_radius(
            df.loc[valid, LAT_COL].to_numpy(),
            df.loc[valid, LON_COL].to_numpy(),
            ref["decimalLatitude"].to_numpy(),
            ref["decimalLongitude"].to_numpy(),
            radius_m
        )
        return flagged

    def check_duplicates(self, df):
        if not self.params.get("drop_duplicates", False):
            return None
        subset = [col for col in ("taxonKey", LAT_COL, LON_COL) if col in df.columns]
        return df.duplicated(subset=subset, keep="first").to_numpy()

    def check_outliers(self, df, reference_mask):
        """
        Geographic outliers by the quantile method.

        For each record, the mean great-circle distance to the reference
        records (itself excluded) is computed. A record is an outlier when
        that mean exceeds Q3 + multiplier * IQR of the reference records'
        own means and also exceeds `outlier_min_distance_km`.

        Args:
            df: Occurrence DataFrame
            reference_mask: Records that passed every other check

        Returns:
            Boolean array, or None when there are too few records to test
        """
        min_records = self.params.get("outlier_min_records", 7)
        reference_mask = reference_mask & self._valid_coordinates(df)
        n_ref = int(reference_mask.sum())
        if n_ref < max(min_records, 2):
            logger.warning(f"Only {n_ref} records available; skipping outlier check (needs {min_records})")
            return None

        valid = self._valid_coordinates(df)
        points = np.radians(df.loc[valid, [LAT_COL, LON_COL]].to_numpy(dtype=float))
        ref_points = np.radians(df.loc[reference_mask, [LAT_COL, LON_COL]].to_numpy(dtype=float))

        distances = haversine_distances(points, ref_points) * EARTH_RADIUS_KM
        is_ref = reference_mask[valid]
        mean_distance = distances.sum(axis=1) / (n_ref - is_ref.astype(int))

        q1, q3 = np.percentile(mean_distance[is_ref], [25, 75])
        threshold = max(
            q3 + self.params.get("outlier_multiplier", 5.0) * (q3 - q1),
            self.params.get("outlier_min_distance_km", 1000.0)
        )
        logger.info(f"Outlier threshold: mean distance above {threshold:.1f} km")

        flagged = np.zeros(len(df), dtype=bool)
        flagged[valid] = mean_distance > threshold
        return flagged

    def clean(self, occurrence_df):
        """
        Apply every configured check and return the records that pass all of them.

        Args:
            occurrence_df: DataFrame of occurrence records

        Returns:
            Subset of the input rows (same index, same order, unchanged values)
        """
        for col in (LAT_COL, LON_COL):
            if col not in occurrence_df.columns:
                raise ValueError(f"Occurrence set must contain a '{col}' column")

        self._input = occurrence_df
        active = self.params.get("checks", list(self.checks) + ["outliers"])

        flags = {}
        for name in active:
            if name == "outliers":
                continue
            result = self.checks[name](occurrence_df)
            if result is None:
                continue
            flags[name] = np.asarray(result, dtype=bool)
            logger.info(f"Check '{name}' flagged {int(flags[name].sum())} records")

        if "outliers" in active:
            passed = np.ones(len(occurrence_df), dtype=bool)
            for flagged in flags.values():
                passed &= ~flagged
            result = self.check_outliers(occurrence_df, passed)
            if result is not None:
                flags["outliers"] = result
                logger.info(f"Check 'outliers' flagged {int(result.sum())} records")

        self.flags = pd.DataFrame(flags, index=occurrence_df.index, dtype=bool)
        kept = ~self.flags.any(axis=1)

        logger.info(f"Kept {int(kept.sum())}/{len(occurrence_df)} records after cleaning")
        return occurrence_df.loc[kept.to_numpy()]

    def dropped_records(self):
        """
        Records removed by the last clean() call.

        Returns:
            DataFrame of dropped rows with a "failed_checks" column naming
            every check the record failed
        """
        if self.flags is None:
            raise RuntimeError("clean() has not been run yet")

        dropped_mask = self.flags.any(axis=1).to_numpy()
        dropped = self._input.loc[dropped_mask].copy()
        dropped["failed_checks"] = [
            ", ".join(self.flags.columns[row]) for row in self.flags.to_numpy()[dropped_mask]
        ]
        return dropped

    def summary(self):
        """Number of records flagged by each check."""
        if self.flags is None:
            raise RuntimeError("clean() has not been run yet")
        return self.flags.sum().astype(int)
