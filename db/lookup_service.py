# File: db/lookup_service.py
# Gene-name / protein-ID lookups against the mapping index of a dataset store,
# plus typed access to the UniProt records stored with the dataset.

import json
import logging
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from db.dataset_store import DatasetStoreManager
from db.mapping_table import GeneNameMapping, PrimaryIdMapping
from db.schema.proteomics_schema import UniProtDBEntry
from pipeline.curtain_pipeline.curtain_models import UniProtRecord
from utils.exceptions import StoreUnavailableError
from utils.identifier_utils import first_gene_name, split_primary_id

logger = logging.getLogger(__name__)


class GeneProteinLookupService:
    """
    Read-only lookups on the mapping index.

    Keys are matched upper-cased, so lookups are case-insensitive. Storage errors are
    logged and reported as "no match".
    """

    def __init__(self, store_manager: DatasetStoreManager):
        self.store_manager = store_manager

    def gene_name_for_primary_id(self, link_id: str, primary_id: str) -> Optional[str]:
        """
        Returns a gene name mapped to a primary ID.

        Exact match on the primary ID first; otherwise the first mapping whose primary ID
        contains one of the query's ';' fragments. The full gene string is preferred
        over its tokens.
        """
        if not link_id or not primary_id:
            return None
        try:
            store = self.store_manager.get_store(link_id)
            with store.session_scope() as session:
                mapping = (
                    session.query(GeneNameMapping.gene_name)
                    .filter(GeneNameMapping.primary_id == primary_id)
                    .order_by(func.length(GeneNameMapping.gene_name).desc(), GeneNameMapping.gene_name)
                    .first()
                )
                if mapping is not None:
                    return mapping.gene_name

                for fragment in split_primary_id(primary_id):
                    mapping = (
                        session.query(GeneNameMapping.gene_name)
                        .filter(GeneNameMapping.primary_id.contains(fragment, autoescape=True))
                        .order_by(func.length(GeneNameMapping.gene_name).desc(), GeneNameMapping.gene_name)
                        .first()
                    )
                    if mapping is not None:
                        return mapping.gene_name
        except (SQLAlchemyError, StoreUnavailableError) as e:
            logger.error(f"Error getting gene name for {primary_id} in {link_id}: {e}")
        return None

    def primary_ids_for_gene_name(self, link_id: str, gene_name: str) -> List[str]:
        """All primary IDs mapped to a gene name or gene-name token."""
        if not link_id or not gene_name:
            return []
        try:
            store = self.store_manager.get_store(link_id)
            with store.session_scope() as session:
                rows = (
                    session.query(GeneNameMapping.primary_id)
                    .filter(GeneNameMapping.gene_name == gene_name.strip().upper())
                    .order_by(GeneNameMapping.primary_id)
                    .all()
                )
            return [row.primary_id for row in rows]
        except (SQLAlchemyError, StoreUnavailableError) as e:
            logger.error(f"Error getting primary IDs for gene {gene_name} in {link_id}: {e}")
            return []

    def primary_ids_for_split_id(self, link_id: str, split_id: str) -> List[str]:
        """All primary IDs containing a fragment (or equal to an ID / PTM accession)."""
        if not link_id or not split_id:
            return []
        try:
            store = self.store_manager.get_store(link_id)
            with store.session_scope() as session:
                rows = (
                    session.query(PrimaryIdMapping.primary_id)
                    .filter(PrimaryIdMapping.split_id == split_id.strip().upper())
                    .order_by(PrimaryIdMapping.primary_id)
                    .all()
                )
            return [row.primary_id for row in rows]
        except (SQLAlchemyError, StoreUnavailableError) as e:
            logger.error(f"Error getting primary IDs for split ID {split_id} in {link_id}: {e}")
            return []

    def batch_primary_ids_for_gene_names(self, link_id: str, gene_names: List[str]) -> Dict[str, List[str]]:
        """Gene name -> primary IDs, for the gene names that have at least one match."""
        if not link_id or not gene_names:
            return {}
        result: Dict[str, List[str]] = {}
        try:
            store = self.store_manager.get_store(link_id)
            with store.session_scope() as session:
                keys = {gene_name: gene_name.strip().upper() for gene_name in gene_names}
                rows = (
                    session.query(GeneNameMapping.gene_name, GeneNameMapping.primary_id)
                    .filter(GeneNameMapping.gene_name.in_(set(keys.values())))
                    .order_by(GeneNameMapping.primary_id)
                    .all()
                )
            by_key: Dict[str, List[str]] = {}
            for row in rows:
                by_key.setdefault(row.gene_name, []).append(row.primary_id)
            for gene_name, key in keys.items():
                if key in by_key:
                    result[gene_name] = by_key[key]
        except (SQLAlchemyError, StoreUnavailableError) as e:
            logger.error(f"Error batch getting primary IDs in {link_id}: {e}")
        return result

    def batch_gene_names(self, link_id: str, primary_ids: List[str]) -> Dict[str, str]:
        """Primary ID -> gene name (exact primary ID match only)."""
        if not link_id or not primary_ids:
            return {}
        result: Dict[str, str] = {}
        try:
            store = self.store_manager.get_store(link_id)
            with store.session_scope() as session:
                rows = (
                    session.query(GeneNameMapping.primary_id, GeneNameMapping.gene_name)
                    .filter(GeneNameMapping.primary_id.in_(set(primary_ids)))
                    .order_by(func.length(GeneNameMapping.gene_name).desc(), GeneNameMapping.gene_name)
                    .all()
                )
            for row in rows:
                result.setdefault(row.primary_id, row.gene_name)
        except (SQLAlchemyError, StoreUnavailableError) as e:
            logger.error(f"Error batch getting gene names in {link_id}: {e}")
        return result

    # ------------------------------------------------------------------ UniProt

    def uniprot_record(self, link_id: str, accession: str) -> Optional[UniProtRecord]:
        if not link_id or not accession:
            return None
        try:
            store = self.store_manager.get_store(link_id)
            with store.session_scope() as session:
                entry = session.get(UniProtDBEntry, accession)
                if entry is None:
                    return None
                try:
                    data = json.loads(entry.data_json)
                except ValueError:
                    data = {}
                return UniProtRecord(
                    accession=entry.accession,
                    gene_names=entry.gene_names,
                    organism=entry.organism,
                    sequence=entry.sequence,
                    data=data if isinstance(data, dict) else {},
                )
        except (SQLAlchemyError, StoreUnavailableError) as e:
            logger.error(f"Error reading UniProt record {accession} in {link_id}: {e}")
            return None

    def gene_name_from_accession(self, link_id: str, accession: str) -> Optional[str]:
        """First gene name of the UniProt record for an accession or any of its fragments."""
        for candidate in [accession] + split_primary_id(accession):
            record = self.uniprot_record(link_id, candidate)
            if record is not None and record.primary_gene_name:
                return record.primary_gene_name
        return None

    def sequence_for_accession(self, link_id: str, accession: str) -> Optional[str]:
        record = self.uniprot_record(link_id, accession)
        return record.sequence if record is not None else None

    def accession_gene_names(self, link_id: str) -> Dict[str, str]:
        """Accession -> first gene name for every UniProt record of the dataset."""
        try:
            store = self.store_manager.get_store(link_id)
            with store.session_scope() as session:
                rows = session.query(UniProtDBEntry.accession, UniProtDBEntry.gene_names).all()
        except (SQLAlchemyError, StoreUnavailableError) as e:
            logger.error(f"Error reading UniProt gene names in {link_id}: {e}")
            return {}
        result = {}
        for row in rows:
            gene = first_gene_name(row.gene_names)
            if gene:
                result[row.accession] = gene
        return result
