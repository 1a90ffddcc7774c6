import threading

import pytest

from conftest import build_curtain_data
from pipeline.curtain_pipeline.curtain_data_ingestor import CurtainDataIngestor
from pipeline.search_pipeline.cross_dataset_search import (
    CrossDatasetSearchService,
    aggregate_results,
    passes_advanced_filter,
    passes_matrix_filter,
    sort_summaries,
)
from pipeline.search_pipeline.search_models import (
    AdvancedFilterParams,
    CrossDatasetSearchConfig,
    DatasetSearchResult,
    MatrixCell,
    MatrixFilterOptions,
    ProcessingState,
    ProteinDatasetResult,
    ProteinSearchSummary,
    ProteinSortOption,
    SearchType,
)


# ---------------- Test Fixtures ----------------

@pytest.fixture
def three_datasets(make_dataset):
    """TP53 is measured in ds1 (fc 1.0) and ds3 (fc 3.0) but not in ds2."""
    make_dataset("ds1", [("P04637", "TP53", 1.0, 0.01), ("P00533", "EGFR", -0.2, 0.5)])
    make_dataset("ds2", [("P00533", "EGFR", 0.3, 0.5)])
    make_dataset("ds3", [("P04637;P04637-2", "TP53", 3.0, 0.2)])
    return ["ds1", "ds2", "ds3"]


@pytest.fixture
def service(store_manager):
    return CrossDatasetSearchService(store_manager, dataset_names={"ds1": "First dataset"})


def _config(link_ids, terms=("TP53",), **values):
    return CrossDatasetSearchConfig(
        search_terms=list(terms), search_type=SearchType.GENE_NAME, dataset_link_ids=link_ids, **values,
    )


# ---------------- Cross-dataset search ----------------

def test_tp53_aggregation(service, three_datasets):
    result = service.search_across_datasets(_config(three_datasets))
    assert len(result.protein_summaries) == 1

    summary = result.protein_summaries[0]
    assert summary.search_term == "TP53"
    assert summary.primary_id == "P04637"
    assert summary.gene_name == "TP53"
    assert summary.datasets_found_in == 2
    assert summary.total_datasets_searched == 3
    assert summary.average_fold_change == pytest.approx(2.0)
    # Only ds1 meets p < 0.05 and |fc| > 0.6
    assert summary.has_significant_result is True


def test_terms_are_sorted_by_datasets_found(service, three_datasets):
    result = service.search_across_datasets(_config(three_datasets, terms=["TP53", "EGFR", "MISSING"]))
    # Both terms are found in two datasets, so the input order is kept
    assert [summary.search_term for summary in result.protein_summaries] == ["TP53", "EGFR"]
    egfr = next(summary for summary in result.protein_summaries if summary.search_term == "EGFR")
    assert egfr.datasets_found_in == 2
    assert egfr.average_fold_change == pytest.approx(0.05)
    assert egfr.has_significant_result is False


def test_significant_only_drops_terms(service, three_datasets):
    result = service.search_across_datasets(_config(three_datasets, terms=["TP53", "EGFR"], significant_only=True))
    assert [summary.search_term for summary in result.protein_summaries] == ["TP53"]


def test_statuses_reach_terminal_states(service, three_datasets):
    seen = []
    result = service.search_across_datasets(_config(three_datasets + ["absent"]), on_status=seen.append)

    assert result.statuses["ds1"].state == ProcessingState.COMPLETED
    assert result.statuses["ds1"].dataset_name == "First dataset"
    assert result.statuses["absent"].state == ProcessingState.FAILED
    assert result.statuses["absent"].error == "No data downloaded"

    ds2_states = [status.state for status in seen if status.id == "ds2"]
    assert ds2_states == [
        ProcessingState.LOADING, ProcessingState.BUILDING, ProcessingState.SEARCHING, ProcessingState.COMPLETED,
    ]
    assert result.protein_summaries[0].total_datasets_searched == 4


def test_failing_dataset_does_not_abort_others(service, three_datasets, monkeypatch):
    original = service.repository.get_processed_data_for_protein

    def flaky(link_id, primary_id):
        if link_id == "ds3":
            raise RuntimeError("disk I/O error")
        return original(link_id, primary_id)

    monkeypatch.setattr(service.repository, "get_processed_data_for_protein", flaky)
    result = service.search_across_datasets(_config(three_datasets))

    assert result.statuses["ds3"].state == ProcessingState.FAILED
    assert result.statuses["ds3"].error == "disk I/O error"
    summary = result.protein_summaries[0]
    assert summary.datasets_found_in == 1
    assert summary.average_fold_change == pytest.approx(1.0)


def test_unloadable_metadata_fails_dataset(service, three_datasets, monkeypatch):
    original = service.repository.load_curtain_data
    monkeypatch.setattr(service.repository, "load_curtain_data",
                        lambda link_id: None if link_id == "ds1" else original(link_id))
    result = service.search_across_datasets(_config(three_datasets))
    assert result.statuses["ds1"].error == "Failed to load dataset"
    assert result.protein_summaries[0].datasets_found_in == 1


def test_cancelled_search_reports_failed(service, three_datasets):
    cancel_event = threading.Event()
    cancel_event.set()
    result = service.search_across_datasets(_config(three_datasets), cancel_event=cancel_event)
    assert result.cancelled is True
    assert result.protein_summaries == []
    assert all(status.error == "Cancelled" for status in result.statuses.values())


def test_uniprot_gene_name_is_preferred_when_fetched(store_manager, make_dataset):
    make_dataset("uni", [("P04637", "tp53-row", 1.0, 0.01)], fetchUniprot=True,
                 extraData={"uniprot": {"db": {"P04637": {"Gene Names": "TP53 P53"}}}})
    service = CrossDatasetSearchService(store_manager)
    config = CrossDatasetSearchConfig(search_terms=["P04637"], search_type=SearchType.PRIMARY_ID,
                                      dataset_link_ids=["uni"])
    summary = service.search_across_datasets(config).protein_summaries[0]
    assert summary.gene_name == "TP53"


# ---------------- Aggregation and filters ----------------

def _dataset(link_id, fold_change, significant=False):
    return DatasetSearchResult(link_id=link_id, results={
        "T": ProteinDatasetResult(primary_id="P", gene_name="B;A", found=True,
                                  has_significant=significant, average_fold_change=fold_change),
    })


def test_aggregate_results_unions_gene_names():
    summaries = aggregate_results(["T", "U"], [_dataset("d1", 1.0), DatasetSearchResult(link_id="d2"),
                                               _dataset("d3", 2.0, True)], total_datasets=3)
    assert len(summaries) == 1
    assert summaries[0].gene_name == "A;B"
    assert summaries[0].average_fold_change == pytest.approx(1.5)
    assert summaries[0].has_significant_result is True


def test_aggregate_results_applies_advanced_filter():
    params = AdvancedFilterParams(min_fc_right=2.0, search_left=False)
    assert aggregate_results(["T"], [_dataset("d1", 1.0)], 1, advanced_filtering=params) == []
    assert len(aggregate_results(["T"], [_dataset("d1", 2.5)], 1, advanced_filtering=params)) == 1


@pytest.mark.parametrize("fold_change, params, expected", [
    (-2.0, AdvancedFilterParams(min_fc_left=1.0, min_fc_right=5.0), True),
    (2.0, AdvancedFilterParams(min_fc_right=5.0, search_left=False), False),
    (-0.5, AdvancedFilterParams(min_fc_left=1.0, search_right=False), False),
    (3.0, AdvancedFilterParams(min_fc_right=1.0, max_fc_right=2.0, search_left=False), False),
    (3.0, AdvancedFilterParams(max_fc_right=4.0, search_left=False), True),
    (None, AdvancedFilterParams(min_fc_right=9.0), True),
    (1.0, None, True),
])
def test_passes_advanced_filter(fold_change, params, expected):
    assert passes_advanced_filter(fold_change, params) is expected


def test_passes_matrix_filter():
    found = MatrixCell(fold_change=0.5, p_value=0.2, is_significant=False, found=True)
    assert passes_matrix_filter(found, MatrixFilterOptions())
    assert not passes_matrix_filter(found, MatrixFilterOptions(show_significant_only=True))
    assert not passes_matrix_filter(found, MatrixFilterOptions(min_fold_change=1.0))
    assert not passes_matrix_filter(found, MatrixFilterOptions(max_p_value=0.05))
    assert not passes_matrix_filter(MatrixCell(), MatrixFilterOptions(hide_not_found=True))


def test_sort_summaries():
    summaries = [
        ProteinSearchSummary(search_term="b", gene_name="BETA", datasets_found_in=1, total_datasets_searched=2,
                             average_fold_change=2.0),
        ProteinSearchSummary(search_term="a", gene_name="alpha", datasets_found_in=2, total_datasets_searched=2),
        ProteinSearchSummary(search_term="c", gene_name="Gamma", datasets_found_in=1, total_datasets_searched=2,
                             average_fold_change=-1.0),
    ]
    assert [s.search_term for s in sort_summaries(summaries, ProteinSortOption.NAME_ASC)] == ["a", "b", "c"]
    assert [s.search_term for s in sort_summaries(summaries, ProteinSortOption.NAME_DESC)] == ["c", "b", "a"]
    assert [s.search_term for s in sort_summaries(summaries, ProteinSortOption.MATCH_COUNT_DESC)] == ["a", "b", "c"]
    assert [s.search_term for s in sort_summaries(summaries, ProteinSortOption.AVG_FC_ASC)] == ["c", "b", "a"]
    assert [s.search_term for s in sort_summaries(summaries, ProteinSortOption.AVG_FC_DESC)] == ["b", "c", "a"]


# ---------------- Detailed report ----------------

def test_protein_detailed_report(service, three_datasets):
    report = service.get_protein_detailed_report("TP53", None, three_datasets + ["absent"], SearchType.GENE_NAME)

    assert report.primary_id == "P04637"
    assert report.gene_name == "TP53"
    assert report.datasets_found_in == 2
    assert report.total_datasets_searched == 4

    by_dataset = {result.info.link_id: result for result in report.results}
    assert by_dataset["ds1"].found and by_dataset["ds1"].is_significant
    assert by_dataset["ds1"].info.dataset_description == "First dataset"
    assert by_dataset["ds1"].info.comparison == "1"
    assert by_dataset["ds3"].fold_change == pytest.approx(3.0)
    assert not by_dataset["ds2"].found and by_dataset["ds2"].info.comparison == "N/A"
    assert not by_dataset["absent"].found and by_dataset["absent"].info.comparison == "N/A"


def test_report_lists_every_ptm_site(store_manager, service):
    data = build_curtain_data(differentialForm={
        "primaryIDs": "Index", "geneNames": "Gene", "foldChange": "logFC", "significant": "pvalue",
        "accession": "Accession", "position": "Position",
    })
    processed = (
        "Index\tGene\tAccession\tPosition\tlogFC\tpvalue\n"
        "P04637_S15\tTP53\tP04637\tS15\t1.2\t0.01\n"
        "P04637_T18\tTP53\tP04637\tT18\t-0.4\t0.3\n"
        "P00533_Y1068\tEGFR\tP00533\tY1068\t2.0\t0.01\n"
    )
    CurtainDataIngestor(store_manager).build("sites", None, processed, curtain_data=data)

    report = service.get_protein_detailed_report("P04637", None, ["sites"], SearchType.ACCESSION_ID)

    assert [result.found for result in report.results] == [True, True]
    assert sorted(result.fold_change for result in report.results) == pytest.approx([-0.4, 1.2])
    assert report.datasets_found_in == 1


def test_report_matched_ids_without_rows(service, three_datasets, monkeypatch):
    monkeypatch.setattr(service.repository, "get_processed_data_for_protein", lambda link_id, primary_id: [])

    report = service.get_protein_detailed_report("TP53", None, ["ds1"], SearchType.GENE_NAME)

    assert len(report.results) == 1
    assert not report.results[0].found
    assert report.results[0].info.comparison == "1"
    assert report.datasets_found_in == 0


# ---------------- Matrix ----------------

def test_matrix_is_rectangular(service, three_datasets, monkeypatch):
    result = service.search_across_datasets(_config(three_datasets, terms=["TP53", "EGFR"]))

    # A dataset whose metadata cannot be loaded still yields a full row
    original = service.repository.load_curtain_data
    monkeypatch.setattr(service.repository, "load_curtain_data",
                        lambda link_id: None if link_id == "ds2" else original(link_id))
    matrix = service.build_cross_dataset_matrix(result, MatrixFilterOptions())

    assert len(matrix.rows) == 3
    assert matrix.cell_count == len(matrix.protein_ids) * 3
    assert all(set(row.cells) == set(matrix.protein_ids) for row in matrix.rows)
    assert [row.dataset_link_id for row in matrix.rows] == three_datasets

    ds3 = matrix.rows[2]
    assert ds3.cells["P04637"].found
    assert ds3.cells["P04637"].fold_change == pytest.approx(3.0)
    assert not ds3.cells["P00533"].found


def test_matrix_filter_keeps_filtered_cells(service, three_datasets):
    result = service.search_across_datasets(_config(three_datasets))
    matrix = service.build_cross_dataset_matrix(result, MatrixFilterOptions(show_significant_only=True))

    ds3_cell = matrix.rows[2].cells["P04637"]
    assert ds3_cell.found is False
    assert ds3_cell.fold_change == pytest.approx(3.0)
    assert matrix.rows[0].cells["P04637"].found is True


def test_matrix_selected_datasets_and_condition_labels(store_manager, make_dataset):
    make_dataset("labels", [("P04637", "TP53", 1.0, 0.01)], settings={
        "currentComparison": "B-A",
        "volcanoConditionLabels": {"enabled": True, "leftCondition": "A", "rightCondition": ""},
    })
    make_dataset("other", [("P04637", "TP53", 1.0, 0.01)])
    service = CrossDatasetSearchService(store_manager)
    result = service.search_across_datasets(_config(["labels", "other"]))

    matrix = service.build_cross_dataset_matrix(result, MatrixFilterOptions(selected_datasets=["labels"]))
    assert len(matrix.rows) == 1
    row = matrix.rows[0]
    assert row.comparison == "B-A"
    assert row.condition_left == "A"
    assert row.condition_right is None
