from sqlalchemy import Column, Index, String

from db.schema.proteomics_schema import Base

# Version of the mapping index layout; a stale stamp triggers a mapping rebuild
MAPPING_SCHEMA_VERSION = 1
MAPPING_SCHEMA_VERSION_KEY = "mapping_schema_version"


class GeneNameMapping(Base):
    """
    ORM model mapping an upper-cased gene name (or gene-name token) to a primary ID.
    A gene name may map to many primary IDs.
    """
    __tablename__ = "gene_name_mapping"

    gene_name = Column(String, primary_key=True, doc="Upper-cased gene name or token (e.g., TP53).")
    primary_id = Column(String, primary_key=True, doc="Full primary ID of the processed row.")

    __table_args__ = (
        Index("idx_gene_name_mapping_primary_id", "primary_id"),
    )

    def __repr__(self):
        return f"<GeneNameMapping(gene_name={self.gene_name}, primary_id={self.primary_id})>"


class PrimaryIdMapping(Base):
    """
    ORM model mapping an upper-cased split ID (one ';' fragment, the full ID, or a PTM
    accession) to the full primary ID it belongs to.
    """
    __tablename__ = "primary_id_mapping"

    split_id = Column(String, primary_key=True, doc="Upper-cased fragment of a primary ID (e.g., P04637).")
    primary_id = Column(String, primary_key=True, doc="Full primary ID (e.g., P04637;Q9XYZ1).")

    __table_args__ = (
        Index("idx_primary_id_mapping_primary_id", "primary_id"),
    )

    def __repr__(self):
        return f"<PrimaryIdMapping(split_id={self.split_id}, primary_id={self.primary_id})>"


class ProteinMappingMetadata(Base):
    """
    Key/value metadata of the mapping index; holds the mapping schema version.
    """
    __tablename__ = "protein_mapping_metadata"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)
