import pytest
from sqlalchemy.exc import OperationalError

from conftest import build_curtain_data, processed_table
from db.lookup_service import GeneProteinLookupService
from db.mapping_table import MAPPING_SCHEMA_VERSION_KEY, GeneNameMapping, PrimaryIdMapping, ProteinMappingMetadata
from pipeline.curtain_pipeline.curtain_data_ingestor import CurtainDataIngestor
from pipeline.curtain_pipeline.mapping_table_populator import ProteinMappingBuilder


# ---------------- Test Fixtures ----------------

@pytest.fixture
def builder(store_manager):
    return ProteinMappingBuilder(store_manager)


@pytest.fixture
def lookup(store_manager):
    return GeneProteinLookupService(store_manager)


@pytest.fixture
def grouped_dataset(make_dataset):
    """One protein group "A;B" with two gene names "G1 G2"."""
    return make_dataset("grouped", [("A;B", "G1 G2", 1.0, 0.01)])


def _pairs(store_manager, link_id, model, key_column):
    store = store_manager.get_store(link_id)
    with store.session_scope() as session:
        return {(getattr(row, key_column), row.primary_id) for row in session.query(model)}


# ---------------- Test Cases ----------------

def test_split_id_index_is_complete(store_manager, grouped_dataset):
    pairs = _pairs(store_manager, grouped_dataset, PrimaryIdMapping, "split_id")
    assert pairs == {("A;B", "A;B"), ("A", "A;B"), ("B", "A;B")}


def test_gene_name_index_is_complete(store_manager, grouped_dataset):
    pairs = _pairs(store_manager, grouped_dataset, GeneNameMapping, "gene_name")
    assert pairs == {("G1 G2", "A;B"), ("G1", "A;B"), ("G2", "A;B")}


def test_lookups_are_case_insensitive(lookup, grouped_dataset):
    assert lookup.primary_ids_for_split_id(grouped_dataset, "a") == ["A;B"]
    assert lookup.primary_ids_for_gene_name(grouped_dataset, "g2") == ["A;B"]
    assert lookup.primary_ids_for_gene_name(grouped_dataset, "G3") == []


def test_mapping_version_is_stamped(store_manager, grouped_dataset):
    store = store_manager.get_store(grouped_dataset)
    with store.session_scope() as session:
        assert session.get(ProteinMappingMetadata, MAPPING_SCHEMA_VERSION_KEY) is not None


def test_ensure_mappings_skips_current_index(builder, grouped_dataset):
    result = builder.ensure_mappings(grouped_dataset)
    assert result.success
    assert result.skipped
    assert result.split_id_entries == 3


def test_ensure_mappings_rebuilds_after_clear(builder, lookup, grouped_dataset):
    assert builder.clear_mappings(grouped_dataset).success
    assert lookup.primary_ids_for_split_id(grouped_dataset, "A") == []

    result = builder.ensure_mappings(grouped_dataset)
    assert result.success
    assert not result.skipped
    assert lookup.primary_ids_for_split_id(grouped_dataset, "A") == ["A;B"]


def test_ensure_mappings_rebuilds_stale_version(store_manager, builder, grouped_dataset):
    store = store_manager.get_store(grouped_dataset)
    with store.session_scope() as session:
        session.merge(ProteinMappingMetadata(key=MAPPING_SCHEMA_VERSION_KEY, value="0"))
    result = builder.ensure_mappings(grouped_dataset)
    assert result.success and not result.skipped


def test_gene_names_fall_back_to_uniprot(store_manager, lookup):
    data = build_curtain_data(
        differentialForm={"primaryIDs": "Index", "geneNames": "Gene Names", "foldChange": "logFC",
                          "significant": "pvalue"},
        extraData={"uniprot": {"db": {"P04637": {"Gene Names": "TP53 P53"}}}},
    )
    processed = processed_table([("P04637;P04637-2", None, 1.0, 0.01)])
    CurtainDataIngestor(store_manager).build("uni", None, processed, curtain_data=data)

    assert lookup.primary_ids_for_gene_name("uni", "TP53") == ["P04637;P04637-2"]
    assert lookup.gene_name_for_primary_id("uni", "P04637;P04637-2") == "TP53"


def test_ptm_accession_is_indexed(store_manager, lookup):
    data = build_curtain_data(differentialForm={
        "primaryIDs": "Index", "foldChange": "logFC", "significant": "pvalue",
        "accession": "Accession", "position": "Position",
    })
    processed = "Index\tAccession\tPosition\tlogFC\tpvalue\nP04637_S15\tP04637\tS15\t1.0\t0.01\n"
    CurtainDataIngestor(store_manager).build("ptm", None, processed, curtain_data=data)

    assert lookup.primary_ids_for_split_id("ptm", "P04637") == ["P04637_S15"]


def test_accession_only_ptm_dataset(store_manager, lookup):
    data = build_curtain_data(
        differentialForm={
            "primaryIDs": "Index", "foldChange": "logFC", "significant": "pvalue", "accession": "Accession",
        },
        extraData={"uniprot": {"db": {"P04637": {"Gene Names": "TP53 P53"}}}},
    )
    processed = "Index\tAccession\tlogFC\tpvalue\nsite_S15\tP04637\t1.0\t0.01\n"
    CurtainDataIngestor(store_manager).build("acc_only", None, processed, curtain_data=data)

    assert lookup.primary_ids_for_split_id("acc_only", "P04637") == ["site_S15"]
    assert lookup.primary_ids_for_gene_name("acc_only", "TP53") == ["site_S15"]


def test_storage_error_is_reported_not_raised(store_manager, builder, grouped_dataset, monkeypatch):
    def failing_get_store(link_id):
        raise OperationalError("SELECT", {}, Exception("locked"))

    monkeypatch.setattr(store_manager, "get_store", failing_get_store)
    result = builder.build_mappings(grouped_dataset)
    assert result.success is False
    assert grouped_dataset in result.error
