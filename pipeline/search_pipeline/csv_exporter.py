# File: pipeline/search_pipeline/csv_exporter.py
# Renders cross-dataset search results, protein reports and comparison matrices as CSV text.

from typing import Iterable, Optional

from pipeline.search_pipeline.search_models import (
    CrossDatasetMatrix,
    CrossDatasetSearchResult,
    ProteinDetailedReport,
)

SUMMARY_HEADER = "Search Term,Primary ID,Gene Name,Datasets Found,Total Datasets,Average FC,Has Significant"
REPORT_HEADER = "Search Term,Primary ID,Gene Name,Dataset,Comparison,Fold Change,P-Value,Significant,Found"
MATRIX_HEADER = "Dataset,Comparison,Condition Left,Condition Right"
NOT_FOUND = "N/F"


def escape_csv(value: Optional[str]) -> str:
    """Quotes a field containing a comma, quote or newline, doubling internal quotes."""
    value = value or ""
    if "," in value or '"' in value or "\n" in value:
        return '"' + value.replace('"', '""') + '"'
    return value


def _number(value: Optional[float], fmt: str) -> str:
    return "" if value is None else fmt % value


def _yes_no(flag: bool) -> str:
    return "Yes" if flag else "No"


def _join(fields: Iterable[str]) -> str:
    return ",".join(fields)


def export_results_as_csv(result: CrossDatasetSearchResult) -> str:
    """Summary table: one line per protein summary, no trailing newline."""
    lines = [SUMMARY_HEADER]
    for summary in result.protein_summaries:
        lines.append(_join([
            escape_csv(summary.search_term),
            escape_csv(summary.primary_id),
            escape_csv(summary.gene_name),
            str(summary.datasets_found_in),
            str(summary.total_datasets_searched),
            _number(summary.average_fold_change, "%.4f"),
            _yes_no(summary.has_significant_result),
        ]))
    return "\n".join(lines)


def export_protein_report(report: ProteinDetailedReport) -> str:
    """Detailed report: one line per dataset comparison result, no trailing newline."""
    lines = [REPORT_HEADER]
    for result in report.results:
        lines.append(_join([
            escape_csv(report.search_term),
            escape_csv(report.primary_id),
            escape_csv(report.gene_name),
            escape_csv(result.info.dataset_description),
            escape_csv(result.info.comparison),
            _number(result.fold_change, "%.4f"),
            _number(result.p_value, "%.6f"),
            _yes_no(result.is_significant),
            _yes_no(result.found),
        ]))
    return "\n".join(lines)


def export_matrix_as_csv(matrix: CrossDatasetMatrix) -> str:
    """
    Matrix table: one column per protein (headed by its gene name, else its ID) and one
    line per dataset. Cells hold the fold change, or "N/F" when not found. Every line,
    the last included, ends with a newline.
    """
    header = [MATRIX_HEADER] + [
        escape_csv(matrix.protein_gene_names.get(protein_id) or protein_id)
        for protein_id in matrix.protein_ids
    ]
    lines = [_join(header)]
    for row in matrix.rows:
        fields = [
            escape_csv(row.dataset_name),
            escape_csv(row.comparison),
            escape_csv(row.condition_left),
            escape_csv(row.condition_right),
        ]
        for protein_id in matrix.protein_ids:
            cell = row.cells.get(protein_id)
            if cell is not None and cell.found and cell.fold_change is not None:
                fields.append("%.4f" % cell.fold_change)
            else:
                fields.append(NOT_FOUND)
        lines.append(_join(fields))
    return "\n".join(lines) + "\n"
