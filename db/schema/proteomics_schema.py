"""
Proteomics dataset schema for the per-dataset Curtain stores.

Overview:
    - Every dataset (identified by its link id) lives in its own SQLite file.
    - Holds the differential (processed) table, the raw per-sample quantification table,
      the dataset metadata row and the auxiliary gene/UniProt maps shipped with a dataset.
    - The materialized row schema is stamped in `proteomics_data_metadata`; a mismatch
      against CURRENT_SCHEMA_VERSION causes the whole file to be rebuilt.

Key Features:
    - `ProcessedProteomicsData`: one row per (primary id, comparison).
    - `RawProteomicsData`: one row per (primary id, sample).
    - `CurtainMetadata`: single row holding the serialized dataset configuration.
    - `UniProtDBEntry`: typed UniProt projection (gene names, organism, sequence) plus the record JSON.
    - `GenesMapEntry`, `PrimaryIdsMapEntry`, `GeneNameToAccEntry`, `AllGenesEntry`: auxiliary maps.
"""

from sqlalchemy import Boolean, Column, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

# Base class shared by every table of a dataset store (mapping tables included)
Base = declarative_base()

# Version of the materialized row schema; bumping it forces a destructive rebuild
CURRENT_SCHEMA_VERSION = 6
SCHEMA_VERSION_KEY = "schema_version"


class ProcessedProteomicsData(Base):
    """
    Differential analysis row: fold change and significance of one protein (or PTM site)
    for one comparison.
    """
    __tablename__ = "processed_proteomics_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    primary_id = Column(String, nullable=False, doc="Primary ID, possibly a ';'-joined protein group.")
    gene_names = Column(String, nullable=True, doc="Gene names as provided by the dataset.")
    fold_change = Column(Float, nullable=True, doc="Log2 fold change after configured transforms.")
    significant = Column(Float, nullable=True, doc="Significance, -log10(p) when transformed.")
    comparison = Column(String, nullable=False, default="1", doc="Comparison label, '1' when absent.")

    # PTM-specific fields
    accession = Column(String, nullable=True, doc="Protein accession of a PTM site.")
    position = Column(String, nullable=True, doc="Site position within the protein, e.g. 'S15'.")
    position_peptide = Column(String, nullable=True, doc="Site position within the peptide.")
    peptide_sequence = Column(String, nullable=True, doc="Peptide sequence, possibly with modifications.")
    score = Column(Float, nullable=True, doc="Localization score.")

    __table_args__ = (
        UniqueConstraint("primary_id", "comparison", name="uq_processed_primary_comparison"),
        Index("idx_processed_primary_id", "primary_id"),
        Index("idx_processed_comparison", "comparison"),
        Index("idx_processed_accession", "accession"),
    )

    def __repr__(self):
        return (
            f"<ProcessedProteomicsData(primary_id={self.primary_id}, comparison={self.comparison}, "
            f"fold_change={self.fold_change}, significant={self.significant})>"
        )


class RawProteomicsData(Base):
    """
    Raw quantification of one protein in one sample.
    """
    __tablename__ = "raw_proteomics_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    primary_id = Column(String, nullable=False)
    sample_name = Column(String, nullable=False)
    sample_value = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("primary_id", "sample_name", name="uq_raw_primary_sample"),
        Index("idx_raw_primary_id", "primary_id"),
    )

    def __repr__(self):
        return (
            f"<RawProteomicsData(primary_id={self.primary_id}, sample_name={self.sample_name}, "
            f"sample_value={self.sample_value})>"
        )


class ProteomicsDataMetadata(Base):
    """
    Key/value metadata for the store; holds the schema version record.
    """
    __tablename__ = "proteomics_data_metadata"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)


class CurtainMetadata(Base):
    """
    Dataset configuration. Exactly one row (id = 1) per store.
    JSON columns hold the serialized settings and forms; the flags are typed copies.
    """
    __tablename__ = "curtain_metadata"

    id = Column(Integer, primary_key=True, default=1)
    settings_json = Column(Text, nullable=False, default="{}")
    raw_form_json = Column(Text, nullable=False, default="{}")
    differential_form_json = Column(Text, nullable=False, default="{}")
    selections_json = Column(Text, nullable=True)
    selections_map_json = Column(Text, nullable=True)
    selected_map_json = Column(Text, nullable=True)
    selections_name_json = Column(Text, nullable=True)
    annotated_data_json = Column(Text, nullable=True)
    raw_json = Column(Text, nullable=True, doc="Unrecognized top-level keys of the payload.")
    password = Column(String, nullable=False, default="")
    fetch_uniprot = Column(Boolean, nullable=False, default=True)
    permanent = Column(Boolean, nullable=False, default=False)
    bypass_uniprot = Column(Boolean, nullable=False, default=False)


class GenesMapEntry(Base):
    __tablename__ = "genes_map"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)


class PrimaryIdsMapEntry(Base):
    __tablename__ = "primary_ids_map"

    primary_id = Column(String, primary_key=True)
    value = Column(Text, nullable=False)


class GeneNameToAccEntry(Base):
    __tablename__ = "gene_name_to_acc"

    gene_name = Column(String, primary_key=True)
    accession = Column(Text, nullable=False, doc="JSON payload of accessions for the gene name.")


class AllGenesEntry(Base):
    __tablename__ = "all_genes"

    gene_name = Column(String, primary_key=True)


class UniProtDBEntry(Base):
    """
    UniProt record for one accession, projected into typed columns at ingestion.
    """
    __tablename__ = "uniprot_db"

    accession = Column(String, primary_key=True)
    gene_names = Column(String, nullable=True, doc="Raw 'Gene Names' value of the record.")
    organism = Column(String, nullable=True)
    sequence = Column(Text, nullable=True)
    data_json = Column(Text, nullable=False, doc="Full UniProt record as JSON.")

    def __repr__(self):
        return f"<UniProtDBEntry(accession={self.accession}, gene_names={self.gene_names})>"
