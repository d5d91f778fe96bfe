"""Main module for the SDM input preparation pipeline."""

import argparse
import logging
import os
from config import (
    GBIF_PARAMS,
    CLEANING_PARAMS,
    RASTER_PARAMS,
    METRICS_PARAMS,
    CLIMATE_PARAMS,
    FILE_PATHS,
    WORLDCLIM_BASE_URL,
    REFERENCE_URLS
)
from data_processing.gbif_extractor import GBIFExtractor
from data_processing.reference_data import ReferenceData
from data_processing.occurrence_cleaner import OccurrenceCleaner
from data_processing.range_rasterizer import RangeRasterizer
from data_processing.range_metrics import RangeMetrics
from data_processing.climate_joiner import ClimateJoiner
from utils.errors import PipelineError

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler("pipeline.log"),
        logging.StreamHandler()
    ],
    force=True
)
logger = logging.getLogger(__name__)

def run_pipeline(species_name, range_map=None, output_dir=None, max_records=None, resolution=None,
                 centroid_crs=None, reference=None):
    """
    Run the complete data preparation pipeline for one species.

    Args:
        species_name: Scientific name of the species
        range_map: Path to the expert range map (overrides config)
        output_dir: Directory to save output files (overrides config)
        max_records: Maximum number of GBIF records (overrides config)
        resolution: Range raster cell size in degrees (overrides config)
        centroid_crs: Equal-area CRS for the centroid (overrides config)
        reference: Optional dict of reference tables for the cleaner; loaded
            from Natural Earth when not given

    Returns:
        Dictionary with every stage's artifact
    """
    paths = dict(FILE_PATHS)
    if range_map:
        paths["range_map"] = range_map

    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        for key in paths:
            if key.endswith("_output"):
                paths[key] = os.path.join(output_dir, os.path.basename(paths[key]))

    metrics_params = dict(METRICS_PARAMS)
    if centroid_crs:
        metrics_params["centroid_crs"] = centroid_crs

    raster_params = dict(RASTER_PARAMS)
    if resolution:
        raster_params["resolution"] = resolution

    stage = "fetch"
    try:
        logger.info("=== Starting SDM Input Preparation Pipeline ===")
        logger.info(f"Species: {species_name}")
        logger.info(f"Range map: {paths['range_map']}")

        # Step 1: Fetch occurrences from GBIF
        logger.info("=== Step 1: Fetching Occurrence Records from GBIF ===")
        gbif_extractor = GBIFExtractor(paths["occurrences_output"], GBIF_PARAMS)
        occurrence_df = gbif_extractor.extract(species_name, max_records=max_records)
        if occurrence_df.empty:
            raise PipelineError(f"No occurrence records with coordinates for {species_name}", stage="fetch")
        occurrence_df.to_excel(paths["occurrences_output"], index=False)

        # Step 2: Clean occurrences
        stage = "clean"
        logger.info("=== Step 2: Cleaning Occurrence Records ===")
        if reference is None:
            reference = ReferenceData(
                paths["cache_dir"],
                REFERENCE_URLS,
                institutions_file=paths["institutions_file"],
                centroid_crs=metrics_params["area_crs"]
            ).load_all()

        cleaner = OccurrenceCleaner(CLEANING_PARAMS, reference)
        cleaned_df = cleaner.clean(occurrence_df)
        cleaned_df.to_excel(paths["cleaned_output"], index=False)
        cleaner.dropped_records().to_excel(paths["flags_output"], index=False)
        logger.info(f"Records flagged per check:\n{cleaner.summary().to_string()}")

        if cleaned_df.empty:
            raise PipelineError("Every occurrence record was removed by the cleaning checks", stage="clean")

        # Step 3: Rasterize the range map
        stage = "rasterize"
        logger.info("=== Step 3: Rasterizing Range Map ===")
        rasterizer = RangeRasterizer(raster_params, cache_dir=paths["cache_dir"])
        range_gdf = rasterizer.load_range(paths["range_map"])
        range_raster = rasterizer.rasterize(range_gdf)
        rasterizer.save_raster(range_raster, paths["range_raster_output"])

        # Step 4: Range size and centroid
        stage = "metrics"
        logger.info("=== Step 4: Computing Range Metrics ===")
        metrics = RangeMetrics(metrics_params)
        metrics_df = metrics.metrics_table(range_gdf, range_raster)
        metrics_df.to_excel(paths["metrics_output"], index=False)
        logger.info(f"Metrics saved to {paths['metrics_output']}")

        # Step 5: Join with climate
        stage = "climate"
        logger.info("=== Step 5: Joining Bioclimatic Variables ===")
        climate_joiner = ClimateJoiner(CLIMATE_PARAMS, WORLDCLIM_BASE_URL, cache_dir=paths["cache_dir"])
        climate_joiner.download_bioclim_layers()

        joined_df = climate_joiner.join_points(cleaned_df)
        joined_df.to_excel(paths["joined_output"], index=False)
        logger.info(f"Joined occurrences saved to {paths['joined_output']}")

        joined_rasters = climate_joiner.join_raster_all(range_raster)
        for var_name, joined_raster in joined_rasters.items():
            rasterizer.save_raster(joined_raster, paths["joined_raster_output"].format(var_name))

        logger.info("=== Pipeline completed successfully ===")

        return {
            "occurrences": occurrence_df,
            "cleaned": cleaned_df,
            "flags": cleaner.flags,
            "range": range_gdf,
            "range_raster": range_raster,
            "metrics": metrics_df,
            "joined": joined_df,
            "joined_rasters": joined_rasters
        }

    except Exception as e:
        logger.error(f"Pipeline failed at stage '{getattr(e, 'stage', stage)}': {str(e)}")
        raise

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="SDM Input Data Preparation Pipeline")
    parser.add_argument("--species", required=True, help="Scientific name of the species")
    parser.add_argument("--range-map", help="Vector file with the expert range map")
    parser.add_argument("--output", help="Output directory for results")
    parser.add_argument("--max-records", type=int, help="Maximum number of GBIF records")
    parser.add_argument("--resolution", type=float, help="Range raster resolution in degrees")
    parser.add_argument("--centroid-crs", help="Equal-area CRS used for the range centroid")

    args = parser.parse_args()

    run_pipeline(
        species_name=args.species,
        range_map=args.range_map,
        output_dir=args.output,
        max_records=args.max_records,
        resolution=args.resolution,
        centroid_crs=args.centroid_crs
    )
