"""Module for extracting species occurrence data from GBIF."""

import pandas as pd
from pygbif import occurrences, species
import requests
import time
from tqdm import tqdm
import logging

from utils.errors import FetchError, TaxonNotFoundError, AmbiguousTaxonError

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Fields kept from each GBIF occurrence; anything else is dropped
OCCURRENCE_FIELDS = [
    "gbifID",
    "taxonKey",
    "scientificName",
    "decimalLatitude",
    "decimalLongitude",
    "coordinateUncertaintyInMeters",
    "year",
    "basisOfRecord",
    "country",
    "countryCode",
    "institutionCode",
    "elevation"
]

MAX_PAGE_SIZE = 300

class GBIFExtractor:
    """Class for extracting species occurrence data from GBIF."""

    def __init__(self, output_file, gbif_params):
        """
        Initialize the GBIF extractor.

        Args:
            output_file: Path to save the extracted occurrence data
            gbif_params: Dictionary of parameters for the GBIF API
        """
        self.output_file = output_file
        self.gbif_params = gbif_params
        self.n_missing_coordinates = 0

    def resolve_taxon(self, species_name, rank="SPECIES"):
        """
        Resolve a scientific name to a GBIF backbone taxon key.

        Args:
            species_name: Scientific name of the species
            rank: Taxonomic rank expected for the match

        Returns:
            Accepted usage key of the matching taxon
        """
        logger.info(f"Resolving taxon name: {species_name}")

        try:
            match = species.name_backbone(name=species_name, rank=rank, verbose=True)
        except requests.exceptions.RequestException as e:
            raise FetchError(f"Name lookup for '{species_name}' failed: {e}") from e

        note = match.get("note") or ""
        if match.get("matchType", "NONE") == "NONE":
            if "Multiple equal matches" in note:
                candidates = [alt.get("usageKey") for alt in match.get("alternatives", [])]
                raise AmbiguousTaxonError(species_name, candidates)
            raise TaxonNotFoundError(f"No GBIF backbone match for '{species_name}'")

        if match.get("matchType") == "HIGHERRANK":
            raise TaxonNotFoundError(
                f"'{species_name}' only matched a higher rank ({match.get('rank')} {match.get('canonicalName')})"
            )

        key = match.get("acceptedUsageKey") or match.get("usageKey")

        # Other exact matches of the same name pointing at a different taxon are homonyms
        rivals = {
            alt.get("acceptedUsageKey") or alt.get("usageKey")
            for alt in match.get("alternatives", [])
            if alt.get("matchType") == "EXACT"
            and alt.get("canonicalName") == match.get("canonicalName")
        }
        rivals.discard(key)
        if rivals:
            raise AmbiguousTaxonError(species_name, [key] + sorted(rivals))

        logger.info(f"Resolved {species_name} to taxon key {key} ({match.get('matchType')} match)")
        return key

    def query_gbif(self, taxon_key, max_records=None):
        """
        Query the GBIF API for a single taxon, page by page.

        Args:
            taxon_key: GBIF taxon key
            max_records: Maximum number of records to return (overrides config)

        Returns:
            DataFrame with occurrence records that carry both coordinates
        """
        if max_records is None:
            max_records = self.gbif_params.get("max_records", 1000)
        page_size = min(self.gbif_params.get("page_size", MAX_PAGE_SIZE), MAX_PAGE_SIZE)
        page_delay = self.gbif_params.get("page_delay", 0)

        # Build query parameters, skipping unset filters
        params = {"taxonKey": taxon_key}
        for key in ("hasCoordinate", "basisOfRecord", "country"):
            if self.gbif_params.get(key) is not None:
                params[key] = self.gbif_params[key]

        logger.info(f"Querying GBIF for taxon {taxon_key} (up to {max_records} records)")

        records = []
        offset = 0
        with tqdm(total=max_records, desc=f"Fetching taxon {taxon_key}", dynamic_ncols=True) as pbar:
            while len(records) < max_records:
                limit = min(page_size, max_records - len(records))
                try:
                    response = occurrences.search(limit=limit, offset=offset, **params)
                except requests.exceptions.RequestException as e:
                    raise FetchError(f"Occurrence search for taxon {taxon_key} failed at offset {offset}: {e}") from e

                results = response.get("results") or []
                records.extend(results)
                pbar.update(len(results))
                offset += len(results)

                if response.get("endOfRecords", True) or not results:
                    break

                # Sleep to avoid overwhelming the API
                time.sleep(page_delay)

        df = self.to_dataframe(records[:max_records])
        logger.info(f"Retrieved {len(df)} occurrence records with coordinates for taxon {taxon_key}")
        return df

    def to_dataframe(self, records):
        """
        Convert raw GBIF rows to a DataFrame and drop rows without coordinates.

        Args:
            records: List of occurrence dictionaries as returned by GBIF

        Returns:
            DataFrame restricted to OCCURRENCE_FIELDS
        """
        df = pd.DataFrame(records)
        df = df.reindex(columns=OCCURRENCE_FIELDS)

        for col in ("decimalLatitude", "decimalLongitude", "coordinateUncertaintyInMeters"):
            df[col] = pd.to_numeric(df[col], errors="coerce")
        df["year"] = pd.to_numeric(df["year"], errors="coerce").astype("Int64")

        has_coords = df["decimalLatitude"].notna() & df["decimalLongitude"].notna()
        self.n_missing_coordinates = int((~has_coords).sum())
        if self.n_missing_coordinates:
            logger.info(f"Dropped {self.n_missing_coordinates} records without coordinates")

        return df[has_coords].reset_index(drop=True)

    def extract(self, species_name, max_records=None):
        """
        Resolve a species name and download its occurrences.

        Returns:
            DataFrame with occurrence records
        """
        taxon_key = self.resolve_taxon(species_name)
        df = self.query_gbif(taxon_key, max_records=max_records)
        df["scientificName"] = df["scientificName"].fillna(species_name)
        return df

    def process_and_save(self, species_name):
        """
        Extract a species and save the raw records to an Excel file.

        Returns:
            DataFrame with the extracted records
        """
        occurrence_df = self.extract(species_name)

        if occurrence_df.empty:
            logger.warning(f"No occurrence records with coordinates found for {species_name}")
            return occurrence_df

        occurrence_df.to_excel(self.output_file, index=False)
        logger.info(f"Results saved to {self.output_file}")

        return occurrence_df
