# File: pipeline/curtain_pipeline/ptm_enricher.py
# Fills in missing gene names of PTM site rows from the dataset's UniProt records.

from typing import Any, Dict, Optional

import pandas as pd

from config.logger_config import configure_logger
from pipeline.curtain_pipeline.curtain_models import UniProtExtra, UniProtRecord
from utils.identifier_utils import extract_uniprot_accession

logger = configure_logger(name="PTMGeneNameEnricher", log_file="curtain_ingestion.log", output="both")


class PTMGeneNameEnricher:
    """
    Resolves gene names for PTM rows that carry an accession but no gene name.

    Resolution order for an accession:
        1. direct lookup in the accession -> first gene name map,
        2. the UniProt accession alias map (accMap),
        3. the first UniProt-shaped accession found inside the value, then direct lookup.
    """

    def __init__(self, records: Dict[str, UniProtRecord], acc_map: Optional[Dict[str, Any]] = None,
                 data_map: Optional[Dict[str, Any]] = None):
        self.accession_to_gene = {
            accession: record.primary_gene_name
            for accession, record in records.items()
            if record.primary_gene_name
        }
        self.acc_map = acc_map if isinstance(acc_map, dict) else {}
        self.data_map = data_map if isinstance(data_map, dict) else {}
        logger.info(f"Built accession -> gene name map with {len(self.accession_to_gene)} entries")

    @classmethod
    def from_uniprot(cls, uniprot: Optional[UniProtExtra]) -> "PTMGeneNameEnricher":
        if uniprot is None:
            return cls({})
        return cls(uniprot.records(), acc_map=uniprot.acc_map, data_map=uniprot.data_map)

    def _from_alias(self, accession: str) -> Optional[str]:
        alias = self.acc_map.get(accession)
        if isinstance(alias, str):
            return self.accession_to_gene.get(alias)
        if isinstance(alias, list):
            for candidate in alias:
                if not isinstance(candidate, str):
                    continue
                gene = self.accession_to_gene.get(candidate)
                if gene:
                    return gene
                # dataMap links an alias to the accession of its UniProt record
                mapped = self.data_map.get(candidate)
                if isinstance(mapped, str) and self.accession_to_gene.get(mapped):
                    return self.accession_to_gene[mapped]
        return None

    def resolve(self, accession: Optional[str]) -> Optional[str]:
        """Returns the gene name for an accession, or None."""
        if not isinstance(accession, str) or not accession:
            return None
        gene = self.accession_to_gene.get(accession)
        if gene is None and self.acc_map:
            gene = self._from_alias(accession)
        if gene is None:
            extracted = extract_uniprot_accession(accession)
            if extracted:
                gene = self.accession_to_gene.get(extracted)
        return gene

    def enrich(self, processed: pd.DataFrame) -> pd.DataFrame:
        """
        Returns a copy of the processed frame with gene names filled in where possible.
        Rows that already have a gene name are left untouched.
        """
        if processed.empty or not self.accession_to_gene:
            if not self.accession_to_gene:
                logger.info("No UniProt records available for PTM enrichment")
            return processed

        enriched = processed.copy()
        missing = enriched["gene_names"].isna() | (enriched["gene_names"] == "")
        resolved = enriched.loc[missing, "accession"].map(self.resolve)
        enriched.loc[missing, "gene_names"] = resolved
        logger.info(f"Enriched {int(resolved.notna().sum())} of {int(missing.sum())} PTM rows without gene names")
        return enriched
