# File: db/proteomics_repository.py
# Read-side queries over a dataset store: processed and raw rows, counts,
# stored metadata, and PTM site views.

import json
import logging
import re
from typing import List, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from db.dataset_store import DatasetStoreManager
from db.schema.proteomics_schema import (
    AllGenesEntry,
    CurtainMetadata,
    ProcessedProteomicsData,
    RawProteomicsData,
    UniProtDBEntry,
)
from pipeline.curtain_pipeline.curtain_models import CurtainDataset
from utils.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)

POSITION_NUMBER_PATTERN = re.compile(r"(\d+)")
POSITION_RESIDUE_PATTERN = re.compile(r"([A-Z])\d+")
PEPTIDE_ANNOTATION_PATTERN = re.compile(r"\[.*?\]|\(.*?\)")


class ExperimentalPTMSite(BaseModel):
    """A measured modification site of one protein."""

    primary_id: str
    position: int
    residue: str
    peptide_sequence: Optional[str] = None
    fold_change: Optional[float] = None
    p_value: Optional[float] = None
    is_significant: bool = False
    comparison: Optional[str] = None
    score: Optional[float] = None


def parse_position(position: Optional[str]) -> Tuple[Optional[int], Optional[str]]:
    """Parses a site position such as "S15" into (15, "S")."""
    text = (position or "").strip()
    if not text:
        return None, None
    number = POSITION_NUMBER_PATTERN.search(text)
    residue = POSITION_RESIDUE_PATTERN.search(text)
    return (int(number.group(1)) if number else None), (residue.group(1) if residue else None)


def _load_json(text: Optional[str]):
    return json.loads(text) if text else None


def clean_peptide_sequence(peptide: str) -> str:
    """Strips modification annotations and separators, keeping upper-cased residues."""
    cleaned = PEPTIDE_ANNOTATION_PATTERN.sub("", peptide)
    return "".join(char for char in cleaned if char.isalpha()).upper()


class ProteomicsRepository:
    """
    Queries over the rows of a dataset store.

    Storage errors propagate to the caller, except in load_curtain_data and
    get_experimental_ptm_sites, which log and return an empty result.
    """

    def __init__(self, store_manager: DatasetStoreManager):
        self.store_manager = store_manager

    def _session(self, link_id: str):
        return self.store_manager.get_store(link_id).session_scope()

    # ---------------- processed / raw rows ----------------

    def get_processed_data_for_protein(self, link_id: str, primary_id: str) -> List[ProcessedProteomicsData]:
        with self._session(link_id) as session:
            return (
                session.query(ProcessedProteomicsData)
                .filter(ProcessedProteomicsData.primary_id == primary_id)
                .order_by(ProcessedProteomicsData.id)
                .all()
            )

    def get_processed_data_for_proteins(self, link_id: str, primary_ids: List[str]) -> List[ProcessedProteomicsData]:
        if not primary_ids:
            return []
        with self._session(link_id) as session:
            return (
                session.query(ProcessedProteomicsData)
                .filter(ProcessedProteomicsData.primary_id.in_(set(primary_ids)))
                .order_by(ProcessedProteomicsData.id)
                .all()
            )

    def get_raw_data_for_protein(self, link_id: str, primary_id: str) -> List[RawProteomicsData]:
        with self._session(link_id) as session:
            return (
                session.query(RawProteomicsData)
                .filter(RawProteomicsData.primary_id == primary_id)
                .order_by(RawProteomicsData.id)
                .all()
            )

    def get_all_processed_data(self, link_id: str) -> List[ProcessedProteomicsData]:
        with self._session(link_id) as session:
            return session.query(ProcessedProteomicsData).order_by(ProcessedProteomicsData.id).all()

    def get_processed_data_by_comparison(self, link_id: str, comparison: str) -> List[ProcessedProteomicsData]:
        with self._session(link_id) as session:
            return (
                session.query(ProcessedProteomicsData)
                .filter(ProcessedProteomicsData.comparison == comparison)
                .order_by(ProcessedProteomicsData.id)
                .all()
            )

    def get_distinct_primary_ids(self, link_id: str) -> List[str]:
        with self._session(link_id) as session:
            rows = (
                session.query(ProcessedProteomicsData.primary_id)
                .distinct()
                .order_by(ProcessedProteomicsData.primary_id)
                .all()
            )
        return [row.primary_id for row in rows]

    def get_distinct_gene_names(self, link_id: str) -> List[str]:
        """Non-empty gene-name strings of the processed table."""
        with self._session(link_id) as session:
            rows = (
                session.query(ProcessedProteomicsData.gene_names)
                .filter(ProcessedProteomicsData.gene_names.isnot(None), ProcessedProteomicsData.gene_names != "")
                .distinct()
                .all()
            )
        return [row.gene_names for row in rows]

    def get_processed_primary_ids_with_gene_like(self, link_id: str, gene_name: str) -> List[str]:
        """Primary IDs whose gene-name string contains gene_name, case-insensitively."""
        with self._session(link_id) as session:
            rows = (
                session.query(ProcessedProteomicsData.primary_id)
                .filter(func.upper(ProcessedProteomicsData.gene_names).contains(gene_name.upper(), autoescape=True))
                .distinct()
                .all()
            )
        return [row.primary_id for row in rows]

    def get_primary_id_gene_names(self, link_id: str) -> List[Tuple[str, str]]:
        """Distinct (primary ID, gene-name string) pairs of rows that carry gene names."""
        with self._session(link_id) as session:
            rows = (
                session.query(ProcessedProteomicsData.primary_id, ProcessedProteomicsData.gene_names)
                .filter(ProcessedProteomicsData.gene_names.isnot(None))
                .distinct()
                .all()
            )
        return [(row.primary_id, row.gene_names) for row in rows]

    def get_all_genes(self, link_id: str) -> List[str]:
        with self._session(link_id) as session:
            rows = session.query(AllGenesEntry.gene_name).order_by(AllGenesEntry.gene_name).all()
        return [row.gene_name for row in rows]

    # ---------------- counts ----------------

    def get_processed_data_count(self, link_id: str) -> int:
        with self._session(link_id) as session:
            return session.query(func.count(ProcessedProteomicsData.id)).scalar() or 0

    def get_raw_data_count(self, link_id: str) -> int:
        with self._session(link_id) as session:
            return session.query(func.count(RawProteomicsData.id)).scalar() or 0

    def get_distinct_protein_count(self, link_id: str) -> int:
        with self._session(link_id) as session:
            return session.query(func.count(func.distinct(ProcessedProteomicsData.primary_id))).scalar() or 0

    def get_uniprot_entry_count(self, link_id: str) -> int:
        with self._session(link_id) as session:
            return session.query(func.count(UniProtDBEntry.accession)).scalar() or 0

    def get_all_genes_count(self, link_id: str) -> int:
        with self._session(link_id) as session:
            return session.query(func.count(AllGenesEntry.gene_name)).scalar() or 0

    # ---------------- metadata ----------------

    def get_curtain_metadata(self, link_id: str) -> Optional[CurtainMetadata]:
        with self._session(link_id) as session:
            return session.get(CurtainMetadata, 1)

    def load_curtain_data(self, link_id: str) -> Optional[CurtainDataset]:
        """
        Rebuilds the dataset payload from the stored metadata row.

        Returns None when there is no metadata or it cannot be read. Selections and
        annotations are restored; extra data is not, since its maps live in their own
        tables and UniProt records are read from the uniprot_db table.
        """
        try:
            metadata = self.get_curtain_metadata(link_id)
        except (SQLAlchemyError, StoreUnavailableError) as e:
            logger.error(f"Error loading metadata for {link_id}: {e}")
            return None
        if metadata is None:
            logger.warning(f"No metadata found for {link_id}")
            return None

        try:
            payload = json.loads(metadata.raw_json) if metadata.raw_json else {}
            if not isinstance(payload, dict):
                payload = {}
            payload.update({
                "settings": json.loads(metadata.settings_json),
                "rawForm": json.loads(metadata.raw_form_json),
                "differentialForm": json.loads(metadata.differential_form_json),
                "selections": _load_json(metadata.selections_json),
                "selectionsMap": _load_json(metadata.selections_map_json),
                "selectedMap": _load_json(metadata.selected_map_json),
                "selectionsName": _load_json(metadata.selections_name_json),
                "annotatedData": _load_json(metadata.annotated_data_json),
                "password": metadata.password,
                "fetchUniprot": metadata.fetch_uniprot,
                "permanent": metadata.permanent,
                "bypassUniProt": metadata.bypass_uniprot,
            })
            return CurtainDataset.model_validate(payload)
        except ValueError as e:
            logger.error(f"Stored metadata for {link_id} could not be parsed: {e}")
            return None

    # ---------------- PTM ----------------

    def get_ptm_data_for_accession(self, link_id: str, accession: str) -> List[ProcessedProteomicsData]:
        with self._session(link_id) as session:
            return (
                session.query(ProcessedProteomicsData)
                .filter(ProcessedProteomicsData.accession == accession)
                .order_by(ProcessedProteomicsData.id)
                .all()
            )

    def get_distinct_accessions(self, link_id: str) -> List[str]:
        with self._session(link_id) as session:
            rows = (
                session.query(ProcessedProteomicsData.accession)
                .filter(ProcessedProteomicsData.accession.isnot(None), ProcessedProteomicsData.accession != "")
                .distinct()
                .order_by(ProcessedProteomicsData.accession)
                .all()
            )
        return [row.accession for row in rows]

    def get_experimental_ptm_sites(self, link_id: str, accession: str, p_cutoff: float,
                                   fc_cutoff: float) -> List[ExperimentalPTMSite]:
        """
        Sites measured for an accession.

        The residue is read from the cleaned peptide at the 1-based peptide position when
        available, otherwise from the position string ("S15" -> "S"), otherwise "?". A site
        is significant when its significance value is <= p_cutoff and |fold change| >=
        fc_cutoff; missing values count as 1.0 and 0.0.
        """
        if not link_id or not accession:
            return []
        if not self.store_manager.data_exists(link_id):
            logger.warning(f"No data for {link_id}; no PTM sites returned")
            return []
        try:
            rows = self.get_ptm_data_for_accession(link_id, accession)
        except (SQLAlchemyError, StoreUnavailableError) as e:
            logger.error(f"Error getting PTM sites for {accession} in {link_id}: {e}")
            return []

        sites = []
        for row in rows:
            position, position_residue = parse_position(row.position)
            if position is None:
                continue

            residue = position_residue or "?"
            peptide_position = _to_int(row.position_peptide)
            if row.peptide_sequence and peptide_position is not None and peptide_position > 0:
                peptide = clean_peptide_sequence(row.peptide_sequence)
                if peptide_position <= len(peptide):
                    residue = peptide[peptide_position - 1]

            p_value = row.significant
            fold_change = row.fold_change
            is_significant = (
                (p_value if p_value is not None else 1.0) <= p_cutoff
                and abs(fold_change if fold_change is not None else 0.0) >= fc_cutoff
            )
            sites.append(ExperimentalPTMSite(
                primary_id=row.primary_id,
                position=position,
                residue=residue,
                peptide_sequence=row.peptide_sequence,
                fold_change=fold_change,
                p_value=p_value,
                is_significant=is_significant,
                comparison=row.comparison,
                score=row.score,
            ))
        return sites


def _to_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value.strip()) if value else None
    except ValueError:
        return None
