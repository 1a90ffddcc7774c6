# File: pipeline/curtain_pipeline/curtain_data_ingestor.py
# Builds a dataset store from the raw and processed tables of a Curtain dataset:
# parse, enrich PTM gene names, derive the sample structure, write rows, auxiliary
# maps and metadata, stamp the schema version and build the mapping index.

import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.logger_config import configure_logger
from db.dataset_store import DatasetStoreManager
from db.schema.proteomics_schema import (
    AllGenesEntry,
    CurtainMetadata,
    GeneNameToAccEntry,
    GenesMapEntry,
    PrimaryIdsMapEntry,
    ProcessedProteomicsData,
    RawProteomicsData,
    UniProtDBEntry,
)
from pipeline.curtain_pipeline.curtain_models import CurtainDataset, DifferentialForm, RawForm
from pipeline.curtain_pipeline.mapping_table_populator import ProteinMappingBuilder
from pipeline.curtain_pipeline.ptm_enricher import PTMGeneNameEnricher
from pipeline.curtain_pipeline.sample_structure import build_settings_from_samples
from pipeline.curtain_pipeline.tsv_parser import frame_to_records, parse_processed_table, parse_raw_table
from utils.config_utils import get_app_settings
from utils.exceptions import IngestionError, StoreUnavailableError

logger = configure_logger(
    name="CurtainDataIngestor",
    log_file="curtain_ingestion.log",
    level=logging.INFO,
    output="both",
)

ProgressCallback = Callable[[str], None]


def _to_json(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


class CurtainDataIngestor:
    """
    Handles ingestion of one Curtain dataset into its per-dataset store.

    Ingestion is idempotent: when the store already holds rows stamped with the current
    schema version, build() returns without touching it.
    """

    def __init__(self, store_manager: DatasetStoreManager,
                 mapping_builder: Optional[ProteinMappingBuilder] = None,
                 batch_size: Optional[int] = None):
        self.store_manager = store_manager
        self.mapping_builder = mapping_builder or ProteinMappingBuilder(store_manager)
        self.batch_size = batch_size or get_app_settings().insert_batch_size

    def build(
        self,
        link_id: str,
        raw_text: Optional[str],
        processed_text: Optional[str],
        raw_form: Optional[RawForm] = None,
        differential_form: Optional[DifferentialForm] = None,
        curtain_data: Optional[CurtainDataset] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Optional[CurtainDataset]:
        """
        Builds the store for a dataset unless valid data already exists.

        Args:
            link_id (str): Dataset identifier.
            raw_text (Optional[str]): Raw quantification TSV.
            processed_text (Optional[str]): Differential TSV.
            raw_form (Optional[RawForm]): Raw table configuration; defaults to the one in curtain_data.
            differential_form (Optional[DifferentialForm]): Differential table configuration;
                defaults to the one in curtain_data.
            curtain_data (Optional[CurtainDataset]): Dataset payload (settings, flags, extra data).
            on_progress (Optional[ProgressCallback]): Receives short progress messages.

        Returns:
            Optional[CurtainDataset]: The payload with the derived sample structure, or None
            when existing data was kept.

        Raises:
            IngestionError: If writing to the store fails.
        """
        progress = on_progress or (lambda message: None)
        curtain_data = curtain_data or CurtainDataset()
        raw_form = raw_form or curtain_data.raw_form
        differential_form = differential_form or curtain_data.differential_form

        if self.store_manager.data_exists(link_id):
            logger.info(f"Proteomics data already exists for {link_id}")
            return None

        logger.info(f"Building proteomics data for {link_id}")
        self.store_manager.clear_all(link_id)

        progress("Parsing processed data...")
        processed = parse_processed_table(processed_text, differential_form)

        if differential_form.is_ptm:
            progress("Enriching PTM gene names...")
            processed = PTMGeneNameEnricher.from_uniprot(curtain_data.uniprot).enrich(processed)

        progress("Parsing raw data...")
        raw = parse_raw_table(raw_text, raw_form)

        progress("Building settings...")
        settings = build_settings_from_samples(curtain_data.settings, raw_form.samples)
        updated = curtain_data.model_copy(update={
            "settings": settings,
            "raw_form": raw_form,
            "differential_form": differential_form,
        })

        processed_records = frame_to_records(processed)
        raw_records = frame_to_records(raw)

        try:
            store = self.store_manager.get_store(link_id)
            with store.session_scope() as session:
                if processed_records:
                    progress(f"Storing {len(processed_records)} proteins...")
                    self._insert(session, ProcessedProteomicsData, processed_records)
                if raw_records:
                    progress(f"Storing {len(raw_records)} raw data entries...")
                    self._insert(session, RawProteomicsData, raw_records)

                progress("Storing gene mappings...")
                self._store_extra_data_maps(session, updated)

                progress("Storing metadata...")
                session.merge(self._metadata_row(updated))
        except (SQLAlchemyError, StoreUnavailableError) as e:
            logger.error(f"Failed to store data for {link_id}: {e}")
            raise IngestionError(link_id, "storage", str(e)) from e

        try:
            self.store_manager.store_schema_version(link_id)
        except (SQLAlchemyError, StoreUnavailableError) as e:
            logger.error(f"Failed to stamp schema version for {link_id}: {e}")
            raise IngestionError(link_id, "schema version", str(e)) from e

        progress("Building protein mappings...")
        result = self.mapping_builder.build_mappings(link_id, updated)
        if not result.success:
            logger.warning(f"Mapping index for {link_id} was not built: {result.error}")

        logger.info(
            f"Proteomics data build complete for {link_id}: "
            f"{len(processed_records)} processed rows, {len(raw_records)} raw rows"
        )
        return updated

    # ------------------------------------------------------------------ helpers

    def _insert(self, session: Session, model, records: List[Dict[str, Any]]) -> None:
        """Inserts records in batches, ignoring rows that violate a unique constraint."""
        for start in range(0, len(records), self.batch_size):
            batch = records[start:start + self.batch_size]
            session.execute(insert(model).on_conflict_do_nothing(), batch)

    def _store_extra_data_maps(self, session: Session, curtain_data: CurtainDataset) -> None:
        """Stores genes map, primary IDs map, gene vocabulary and UniProt tables."""
        extra = curtain_data.extra_data
        if extra is None:
            return

        data = extra.data
        if data is not None:
            if isinstance(data.genes_map, dict) and data.genes_map:
                self._insert(session, GenesMapEntry, [
                    {"key": key, "value": json.dumps(value)} for key, value in data.genes_map.items()
                ])
            if isinstance(data.primary_ids_map, dict) and data.primary_ids_map:
                self._insert(session, PrimaryIdsMapEntry, [
                    {"primary_id": key, "value": json.dumps(value)} for key, value in data.primary_ids_map.items()
                ])
            if data.all_genes:
                self._insert(session, AllGenesEntry, [{"gene_name": gene} for gene in _unique(data.all_genes)])
            logger.info("Stored gene and primary ID maps")

        uniprot = extra.uniprot
        if uniprot is not None:
            if isinstance(uniprot.gene_name_to_acc, dict) and uniprot.gene_name_to_acc:
                self._insert(session, GeneNameToAccEntry, [
                    {"gene_name": gene, "accession": json.dumps(value)}
                    for gene, value in uniprot.gene_name_to_acc.items()
                ])
            records = uniprot.records()
            if records:
                self._insert(session, UniProtDBEntry, [
                    {
                        "accession": record.accession,
                        "gene_names": record.gene_names,
                        "organism": record.organism,
                        "sequence": record.sequence,
                        "data_json": json.dumps(record.data),
                    }
                    for record in records.values()
                ])
                logger.info(f"Stored {len(records)} UniProt records")

    @staticmethod
    def _metadata_row(curtain_data: CurtainDataset) -> CurtainMetadata:
        return CurtainMetadata(
            id=1,
            settings_json=json.dumps(curtain_data.settings.to_payload()),
            raw_form_json=json.dumps(curtain_data.raw_form.to_payload()),
            differential_form_json=json.dumps(curtain_data.differential_form.to_payload()),
            selections_json=_to_json(curtain_data.selections),
            selections_map_json=_to_json(curtain_data.selections_map),
            selected_map_json=_to_json(curtain_data.selected_map),
            selections_name_json=_to_json(curtain_data.selections_name),
            annotated_data_json=_to_json(curtain_data.annotated_data),
            raw_json=json.dumps(curtain_data.passthrough()),
            password=curtain_data.password,
            fetch_uniprot=curtain_data.fetch_uniprot,
            permanent=curtain_data.permanent,
            bypass_uniprot=curtain_data.bypass_uniprot,
        )


def _unique(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(values))
