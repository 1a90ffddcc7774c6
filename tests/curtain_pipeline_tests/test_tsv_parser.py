import math

import pandas as pd
import pytest

from pipeline.curtain_pipeline.curtain_models import DifferentialForm, RawForm
from pipeline.curtain_pipeline.tsv_parser import (
    PROCESSED_COLUMNS,
    RAW_COLUMNS,
    frame_to_records,
    parse_processed_table,
    parse_raw_table,
    tokenize_tsv,
)


# ---------------- Test Fixtures ----------------

@pytest.fixture
def differential_form():
    return DifferentialForm.model_validate({
        "primaryIDs": "Index",
        "geneNames": "Gene",
        "foldChange": "FC",
        "significant": "P",
    })


def _processed(text, form):
    return parse_processed_table(text, form).set_index("primary_id")


# ---------------- Tokenizing ----------------

def test_tokenize_skips_blank_lines():
    header, rows = tokenize_tsv("A\tB\n\n1\t2\n   \n3\t4\n")
    assert header == ["A", "B"]
    assert rows == [["1", "2"], ["3", "4"]]


def test_tokenize_empty_input():
    assert tokenize_tsv(None) == ([], [])
    assert tokenize_tsv("\n\n") == ([], [])


def test_tokenize_breaks_lines_only_at_line_feeds():
    header, rows = tokenize_tsv("A\tB\r\nx\x0cy\t1\r\nz\x1ew\t2\n")
    assert header == ["A", "B"]
    assert rows == [["x\x0cy", "1"], ["z\x1ew", "2"]]


# ---------------- Processed table ----------------

def test_fold_change_log2_and_reverse(differential_form):
    form = differential_form.model_copy(update={"transform_fc": True, "reverse_fold_change": True})
    frame = _processed("Index\tGene\tFC\tP\nA\tG1\t4.0\t0.5\n", form)
    assert frame.loc["A", "fold_change"] == pytest.approx(-2.0)


def test_fold_change_log2_only(differential_form):
    form = differential_form.model_copy(update={"transform_fc": True})
    frame = _processed("Index\tGene\tFC\tP\nA\tG1\t4.0\t0.5\n", form)
    assert frame.loc["A", "fold_change"] == pytest.approx(2.0)


def test_significance_negative_log10(differential_form):
    form = differential_form.model_copy(update={"transform_significant": True})
    frame = _processed("Index\tGene\tFC\tP\nA\tG1\t1.0\t0.01\n", form)
    assert frame.loc["A", "significant"] == pytest.approx(2.0)


def test_transforms_skip_non_positive_values(differential_form):
    form = differential_form.model_copy(update={"transform_fc": True, "transform_significant": True})
    frame = _processed("Index\tGene\tFC\tP\nA\tG1\t-1.5\t0\n", form)
    assert frame.loc["A", "fold_change"] == pytest.approx(-1.5)
    assert frame.loc["A", "significant"] == pytest.approx(0.0)


def test_unparseable_number_keeps_row(differential_form):
    frame = _processed("Index\tGene\tFC\tP\nA\tG1\tn/a\t0.2\n", differential_form)
    assert "A" in frame.index
    assert math.isnan(frame.loc["A", "fold_change"])
    assert frame.loc["A", "significant"] == pytest.approx(0.2)


def test_missing_primary_column_yields_empty_frame(differential_form):
    frame = parse_processed_table("Accession\tGene\tFC\tP\nA\tG1\t1\t0.1\n", differential_form)
    assert frame.empty
    assert list(frame.columns) == PROCESSED_COLUMNS


def test_short_lines_are_skipped():
    form = DifferentialForm.model_validate({"primaryIDs": "Index", "foldChange": "FC"})
    frame = parse_processed_table("FC\tIndex\n1.0\tA\n2.0\n", form)
    assert frame["primary_id"].tolist() == ["A"]


def test_comparison_defaults_to_one(differential_form):
    frame = parse_processed_table("Index\tGene\tFC\tP\nA\tG1\t1\t0.1\n", differential_form)
    assert frame["comparison"].tolist() == ["1"]


def test_comparison_column_values_are_used(differential_form):
    form = differential_form.model_copy(update={"comparison": "Cmp"})
    text = "Index\tGene\tFC\tP\tCmp\nA\tG1\t1\t0.1\tB-A\nA\tG1\t2\t0.1\t\n"
    frame = parse_processed_table(text, form)
    assert frame["comparison"].tolist() == ["B-A", "1"]


def test_duplicate_primary_id_and_comparison_keeps_first(differential_form):
    text = "Index\tGene\tFC\tP\nA\tG1\t1.0\t0.1\nA\tG1\t9.0\t0.9\nB\tG2\t2.0\t0.2\n"
    frame = parse_processed_table(text, differential_form)
    assert frame["primary_id"].tolist() == ["A", "B"]
    assert frame.loc[frame["primary_id"] == "A", "fold_change"].item() == pytest.approx(1.0)


def test_ptm_columns_are_copied():
    form = DifferentialForm.model_validate({
        "primaryIDs": "Index", "accession": "Acc", "position": "Pos",
        "positionPeptide": "PepPos", "peptideSequence": "Peptide", "score": "Score",
    })
    text = "Index\tAcc\tPos\tPepPos\tPeptide\tScore\nP1_S15\tP12345\tS15\t3\tAK(ph)SR\t0.98\n"
    record = frame_to_records(parse_processed_table(text, form))[0]
    assert record["accession"] == "P12345"
    assert record["position"] == "S15"
    assert record["position_peptide"] == "3"
    assert record["peptide_sequence"] == "AK(ph)SR"
    assert record["score"] == pytest.approx(0.98)
    assert record["gene_names"] is None


# ---------------- Raw table ----------------

def test_raw_table_uses_declared_and_present_samples():
    form = RawForm.model_validate({"primaryIDs": "Index", "samples": ["S.1", "S.2", "Missing.1"]})
    text = "Index\tS.1\tS.2\tOther\nA\t1\t2\t3\nB\t4\t5\t6\n"
    frame = parse_raw_table(text, form)
    assert list(frame.columns) == RAW_COLUMNS
    assert len(frame) == 4
    assert set(frame["sample_name"]) == {"S.1", "S.2"}


def test_raw_table_log2_transform():
    form = RawForm.model_validate({"primaryIDs": "Index", "samples": ["S.1", "S.2"], "log2": True})
    frame = parse_raw_table("Index\tS.1\tS.2\nA\t8\t0\n", form)
    values = dict(zip(frame["sample_name"], frame["sample_value"]))
    assert values["S.1"] == pytest.approx(3.0)
    assert values["S.2"] == pytest.approx(0.0)


def test_raw_table_missing_primary_column():
    form = RawForm.model_validate({"primaryIDs": "Protein", "samples": ["S.1"]})
    assert parse_raw_table("Index\tS.1\nA\t1\n", form).empty


def test_frame_to_records_converts_nan_to_none():
    frame = pd.DataFrame({"primary_id": ["A"], "fold_change": [float("nan")]})
    assert frame_to_records(frame) == [{"primary_id": "A", "fold_change": None}]
