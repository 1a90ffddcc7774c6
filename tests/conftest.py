# tests/conftest.py
import pytest
import sys
import os
import tempfile

# Add the parent directory to the system path to ensure correct module import
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
# Keep test runs from writing into the project's logs directory
os.environ.setdefault("CURTAIN_LOG_DIR", tempfile.mkdtemp(prefix="curtain_test_logs_"))

from db.dataset_store import DatasetStoreManager
from pipeline.curtain_pipeline.curtain_data_ingestor import CurtainDataIngestor
from pipeline.curtain_pipeline.curtain_models import CurtainDataset

SAMPLES = ["Ctrl.1", "Ctrl.2", "Treat.1", "Treat.2"]

DIFFERENTIAL_FORM = {
    "primaryIDs": "Index",
    "geneNames": "Gene Names",
    "foldChange": "logFC",
    "significant": "pvalue",
    "comparison": "Comparison",
}

RAW_FORM = {"primaryIDs": "Index", "samples": SAMPLES, "log2": False}

PROCESSED_TSV = (
    "Index\tGene Names\tlogFC\tpvalue\tComparison\n"
    "P04637\tTP53\t1.5\t0.01\tTreat-Ctrl\n"
    "P00533;P00533-2\tEGFR\t-2.0\t0.001\tTreat-Ctrl\n"
    "Q9Y6K9\tIKBKG NEMO\t0.2\t0.5\tTreat-Ctrl\n"
    "P31749\t\t0.8\tnot-a-number\tTreat-Ctrl\n"
)

RAW_TSV = (
    "Index\tCtrl.1\tCtrl.2\tTreat.1\tTreat.2\n"
    "P04637\t10\t12\t20\t22\n"
    "P00533;P00533-2\t5\t6\t1\t2\n"
    "Q9Y6K9\t7\t7\t8\t8\n"
    "P31749\t3\t3\t3\t3\n"
)


def build_curtain_data(**overrides) -> CurtainDataset:
    """Dataset payload using the test column layout."""
    payload = {
        "rawForm": RAW_FORM,
        "differentialForm": DIFFERENTIAL_FORM,
        "fetchUniprot": False,
        "settings": {"pCutoff": 0.05, "log2FCCutoff": 0.6},
    }
    payload.update(overrides)
    return CurtainDataset.model_validate(payload)


def processed_table(rows) -> str:
    """Builds a processed TSV from (primary_id, gene_names, fold_change, p_value) tuples."""
    lines = ["Index\tGene Names\tlogFC\tpvalue"]
    for primary_id, gene_names, fold_change, p_value in rows:
        lines.append("\t".join([primary_id, gene_names or "", str(fold_change), str(p_value)]))
    return "\n".join(lines) + "\n"


@pytest.fixture
def store_manager(tmp_path):
    """
    Provide a DatasetStoreManager writing into a temporary data directory.
    """
    manager = DatasetStoreManager(str(tmp_path))
    yield manager
    manager.close_all()


@pytest.fixture
def curtain_data():
    return build_curtain_data()


@pytest.fixture
def ingested_dataset(store_manager, curtain_data):
    """
    Ingest the sample tables under link id "ds1" and return the link id.
    """
    CurtainDataIngestor(store_manager).build("ds1", RAW_TSV, PROCESSED_TSV, curtain_data=curtain_data)
    return "ds1"


@pytest.fixture
def make_dataset(store_manager):
    """
    Factory ingesting a processed table built from (id, gene, fc, p) tuples.
    """
    def _make(link_id, rows, **overrides):
        data = build_curtain_data(
            differentialForm={key: value for key, value in DIFFERENTIAL_FORM.items() if key != "comparison"},
            **overrides,
        )
        CurtainDataIngestor(store_manager).build(link_id, None, processed_table(rows), curtain_data=data)
        return link_id

    return _make
