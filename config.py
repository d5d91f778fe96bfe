"""Configuration settings for the SDM input preparation pipeline."""

# GBIF API parameters
GBIF_PARAMS = {
    "hasCoordinate": True,
    "basisOfRecord": None,   # e.g. "HUMAN_OBSERVATION"; None keeps every basis
    "country": None,         # ISO 3166-1 alpha-2 code, None for worldwide
    "max_records": 1000,
    "page_size": 300,        # GBIF refuses pages larger than 300
    "page_delay": 1.0        # Seconds to wait between pages
}

# Occurrence cleaning parameters
CLEANING_PARAMS = {
    "max_uncertainty_m": 10000,      # Keep records with uncertainty below 10 km (or missing)
    "min_year": 1970,                # Keep records observed strictly after this year
    "allowed_basis_of_record": None, # None disables the basis-of-record check
    "capitals_radius_m": 5000,
    "centroids_radius_m": 1000,
    "institutions_radius_m": 100,
    "zero_radius_deg": 0.5,          # Radius around 0/0 flagged as a null island record
    "outlier_multiplier": 5.0,       # IQR multiplier for the quantile outlier test
    "outlier_min_records": 7,        # Outlier test is skipped for smaller sets
    "outlier_min_distance_km": 1000, # Outliers must also lie this far from the rest on average
    "drop_duplicates": False,
    "checks": [
        "coordinates",
        "zero",
        "equal",
        "precision",
        "recency",
        "basis",
        "capitals",
        "centroids",
        "institutions",
        "outliers",
        "duplicates"
    ]
}

# Range rasterization parameters
RASTER_PARAMS = {
    "resolution": 1 / 6,    # Cell size in degrees (10 arc-minutes)
    "crs": "EPSG:4326",
    "name_column": "binomial"
}

# Range metrics parameters
METRICS_PARAMS = {
    "area_crs": "EPSG:6933",       # WGS 84 / NSIDC EASE-Grid 2.0 Global (equal-area)
    "centroid_crs": "EPSG:3035",   # ETRS89 / LAEA Europe, pick one suited to the range
    "densify_deg": 0.1             # Max edge length before projecting polygons
}

# Climate join parameters
CLIMATE_PARAMS = {
    "resolution": "10m",          # WorldClim resolution label: 10m, 5m, 2.5m or 30s
    "layers": [f"BIO{i}" for i in range(1, 20)],
    "temperature_scale": 1.0,     # 0.1 for grids stored as integer tenths of a degree
    "point_method": "nearest",    # "nearest" or "linear"
    "resampling": "nearest",      # Resampling used to put a layer on the range grid
    "auto_reproject": True,
    "strict_alignment": True,
    "download_delay": 1.0
}

# Bioclim layers holding temperatures (degrees C, or tenths of degrees for integer grids)
TEMPERATURE_LAYERS = ["BIO1", "BIO2", "BIO5", "BIO6", "BIO7", "BIO8", "BIO9", "BIO10", "BIO11"]

# File paths and naming templates
FILE_PATHS = {
    "cache_dir": "temp",
    "range_map": "range_map.shp",
    "institutions_file": None,
    "occurrences_output": "occurrences_raw.xlsx",
    "cleaned_output": "occurrences_cleaned.xlsx",
    "flags_output": "occurrences_flags.xlsx",
    "range_raster_output": "range_raster.tif",
    "metrics_output": "range_metrics.xlsx",
    "joined_output": "occurrences_bioclim.xlsx",
    "joined_raster_output": "range_{}.tif"
}

# WorldClim data
WORLDCLIM_BASE_URL = "https://biogeo.ucdavis.edu/data/worldclim/v2.1/base/wc2.1_{resolution}_bio_{index}.tif"

# Reference layers used by the coordinate checks (Natural Earth, GBIF GRSciColl)
REFERENCE_URLS = {
    "populated_places": "https://naturalearth.s3.amazonaws.com/10m_cultural/ne_10m_populated_places.zip",
    "countries": "https://naturalearth.s3.amazonaws.com/10m_cultural/ne_10m_admin_0_countries.zip",
    "institutions": "https://api.gbif.org/v1/grscicoll/institution"
}
