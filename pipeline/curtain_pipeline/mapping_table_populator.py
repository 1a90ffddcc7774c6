# File: pipeline/curtain_pipeline/mapping_table_populator.py
# Builds the gene-name and split-ID mapping index of a dataset store from its processed rows.
#
# Mapping failures never abort ingestion or search: every public method returns a
# MappingBuildResult, and callers log its error instead of raising.

import json
from typing import Dict, Optional, Set, Tuple

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.logger_config import configure_logger
from db.dataset_store import DatasetStoreManager
from db.mapping_table import (
    MAPPING_SCHEMA_VERSION,
    MAPPING_SCHEMA_VERSION_KEY,
    GeneNameMapping,
    PrimaryIdMapping,
    ProteinMappingMetadata,
)
from db.schema.proteomics_schema import CurtainMetadata, ProcessedProteomicsData, UniProtDBEntry
from pipeline.curtain_pipeline.curtain_models import CurtainDataset, DifferentialForm
from utils.exceptions import MappingBuildError, StoreUnavailableError
from utils.identifier_utils import first_gene_name, split_gene_tokens, split_primary_id

# Configure logger
logger = configure_logger(name="ProteinMappingBuilder", log_file="mapping_table.log", output="both")

BATCH_SIZE = 5000


class MappingBuildResult(BaseModel):
    """Outcome of a mapping build. ``error`` is set only when success is False."""

    link_id: str
    success: bool
    skipped: bool = False
    gene_name_entries: int = 0
    split_id_entries: int = 0
    error: Optional[str] = None


class ProteinMappingBuilder:
    """
    Maintains the mapping tables of dataset stores.

    Per processed row the index receives:
        - the upper-cased full primary ID and each upper-cased ';' fragment -> primary ID,
        - for PTM datasets, the upper-cased accession -> primary ID,
        - the upper-cased resolved gene-name string and each of its tokens -> primary ID.
    """

    def __init__(self, store_manager: DatasetStoreManager):
        self.store_manager = store_manager

    # ------------------------------------------------------------------ public API

    def ensure_mappings(self, link_id: str, curtain_data: Optional[CurtainDataset] = None) -> MappingBuildResult:
        """
        Builds the mapping index when it is missing, stale, or lacks gene names although
        UniProt records are now available.
        """
        try:
            store = self.store_manager.get_store(link_id)
            with store.session_scope() as session:
                gene_count = session.query(func.count(GeneNameMapping.gene_name)).scalar() or 0
                split_count = session.query(func.count(PrimaryIdMapping.split_id)).scalar() or 0
                version_record = session.get(ProteinMappingMetadata, MAPPING_SCHEMA_VERSION_KEY)
                stored_version = version_record.value if version_record is not None else None
                uniprot_count = session.query(func.count(UniProtDBEntry.accession)).scalar() or 0
        except (SQLAlchemyError, StoreUnavailableError) as e:
            return self._failure(link_id, e)

        has_mappings = gene_count > 0 or split_count > 0
        if has_mappings and stored_version == str(MAPPING_SCHEMA_VERSION):
            has_uniprot = uniprot_count > 0 or bool(curtain_data and curtain_data.uniprot_records())
            if gene_count == 0 and has_uniprot:
                logger.info(f"Rebuilding mappings for {link_id}: gene names now available from UniProt")
            else:
                return MappingBuildResult(
                    link_id=link_id, success=True, skipped=True,
                    gene_name_entries=gene_count, split_id_entries=split_count,
                )
        elif has_mappings:
            logger.info(f"Mapping version for {link_id} is {stored_version}, rebuilding")

        return self.build_mappings(link_id, curtain_data)

    def build_mappings(self, link_id: str, curtain_data: Optional[CurtainDataset] = None) -> MappingBuildResult:
        """Rebuilds both mapping tables from the processed rows and stamps the mapping version."""
        try:
            store = self.store_manager.get_store(link_id)
            with store.session_scope() as session:
                is_ptm = self._is_ptm(session, curtain_data)
                uniprot_genes = self._uniprot_gene_map(session, curtain_data)
                rows = session.query(
                    ProcessedProteomicsData.primary_id,
                    ProcessedProteomicsData.gene_names,
                    ProcessedProteomicsData.accession,
                ).all()
                logger.info(
                    f"Building mappings for {len(rows)} proteins of {link_id}, "
                    f"UniProt entries: {len(uniprot_genes)}, PTM: {is_ptm}"
                )

                gene_pairs, split_pairs = self._collect_pairs(rows, uniprot_genes, is_ptm)

                session.query(GeneNameMapping).delete()
                session.query(PrimaryIdMapping).delete()
                self._insert_pairs(session, GeneNameMapping, "gene_name", gene_pairs)
                self._insert_pairs(session, PrimaryIdMapping, "split_id", split_pairs)
                session.merge(ProteinMappingMetadata(key=MAPPING_SCHEMA_VERSION_KEY, value=str(MAPPING_SCHEMA_VERSION)))
        except (SQLAlchemyError, StoreUnavailableError) as e:
            return self._failure(link_id, e)

        logger.info(
            f"Mappings built for {link_id}: {len(gene_pairs)} gene name entries, "
            f"{len(split_pairs)} split ID entries"
        )
        return MappingBuildResult(
            link_id=link_id, success=True,
            gene_name_entries=len(gene_pairs), split_id_entries=len(split_pairs),
        )

    def clear_mappings(self, link_id: str) -> MappingBuildResult:
        """Deletes the mapping tables and the mapping version stamp."""
        try:
            store = self.store_manager.get_store(link_id)
            with store.session_scope() as session:
                session.query(GeneNameMapping).delete()
                session.query(PrimaryIdMapping).delete()
                session.query(ProteinMappingMetadata).delete()
        except (SQLAlchemyError, StoreUnavailableError) as e:
            return self._failure(link_id, e)
        logger.info(f"Cleared mappings for {link_id}")
        return MappingBuildResult(link_id=link_id, success=True)

    # ------------------------------------------------------------------ helpers

    @staticmethod
    def _failure(link_id: str, cause: Exception) -> MappingBuildResult:
        error = MappingBuildError(link_id, str(cause))
        logger.error(str(error))
        return MappingBuildResult(link_id=link_id, success=False, error=str(error))

    @staticmethod
    def _is_ptm(session: Session, curtain_data: Optional[CurtainDataset]) -> bool:
        if curtain_data is not None:
            return curtain_data.differential_form.is_ptm
        metadata = session.get(CurtainMetadata, 1)
        if metadata is None:
            return False
        try:
            return DifferentialForm.model_validate(json.loads(metadata.differential_form_json)).is_ptm
        except ValueError:
            logger.warning("Stored differential form is not valid JSON; treating dataset as non-PTM")
            return False

    @staticmethod
    def _uniprot_gene_map(session: Session, curtain_data: Optional[CurtainDataset]) -> Dict[str, str]:
        """Accession -> first gene name, from the UniProt table and the in-memory payload."""
        genes: Dict[str, str] = {}
        for accession, gene_names in session.query(UniProtDBEntry.accession, UniProtDBEntry.gene_names):
            gene = first_gene_name(gene_names)
            if gene:
                genes[accession] = gene
        if curtain_data is not None:
            for accession, record in curtain_data.uniprot_records().items():
                gene = record.primary_gene_name
                if gene:
                    genes.setdefault(accession, gene)
        return genes

    @staticmethod
    def _collect_pairs(rows, uniprot_genes: Dict[str, str], is_ptm: bool) -> Tuple[Set[Tuple[str, str]], Set[Tuple[str, str]]]:
        gene_pairs: Set[Tuple[str, str]] = set()
        split_pairs: Set[Tuple[str, str]] = set()

        for primary_id, gene_names, accession in rows:
            fragments = split_primary_id(primary_id)

            split_pairs.add((primary_id.upper(), primary_id))
            for fragment in fragments:
                split_pairs.add((fragment.upper(), primary_id))
            if is_ptm and accession:
                split_pairs.add((accession.strip().upper(), primary_id))

            # Gene name priority: row value, then UniProt by accession (PTM), then by ID fragments
            gene_name = gene_names.strip() if gene_names else None
            if not gene_name and is_ptm and accession:
                gene_name = uniprot_genes.get(accession.strip())
            if not gene_name:
                gene_name = uniprot_genes.get(primary_id)
                for fragment in fragments:
                    if gene_name:
                        break
                    gene_name = uniprot_genes.get(fragment)

            if gene_name:
                gene_pairs.add((gene_name.upper(), primary_id))
                for token in split_gene_tokens(gene_name):
                    gene_pairs.add((token.upper(), primary_id))

        return gene_pairs, split_pairs

    @staticmethod
    def _insert_pairs(session: Session, model, key_column: str, pairs: Set[Tuple[str, str]]) -> None:
        records = [{key_column: key, "primary_id": primary_id} for key, primary_id in sorted(pairs)]
        for start in range(0, len(records), BATCH_SIZE):
            session.execute(insert(model).on_conflict_do_nothing(), records[start:start + BATCH_SIZE])
