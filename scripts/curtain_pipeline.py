# File: scripts/curtain_pipeline.py
# Command-line entry point: ingest a dataset from local files, search proteins across
# datasets, and export reports and comparison matrices as CSV.

import argparse
import sys
from pathlib import Path

from config.logger_config import configure_logger
from db.dataset_store import DatasetStoreManager
from pipeline.curtain_pipeline.curtain_data_ingestor import CurtainDataIngestor
from pipeline.curtain_pipeline.curtain_models import CurtainDataset
from pipeline.search_pipeline.cross_dataset_search import CrossDatasetSearchService
from pipeline.search_pipeline.csv_exporter import export_matrix_as_csv, export_protein_report, export_results_as_csv
from pipeline.search_pipeline.search_models import (
    CrossDatasetSearchConfig,
    MatrixFilterOptions,
    SearchType,
)
from utils.exceptions import IngestionError

logger = configure_logger(name="CurtainPipeline", log_file="curtain_pipeline.log", output="both")


def _read_text(path):
    return Path(path).read_text(encoding="utf-8") if path else None


def _write_output(text, output):
    if output:
        Path(output).write_text(text, encoding="utf-8")
        logger.info(f"Wrote {output}")
    else:
        sys.stdout.write(text if text.endswith("\n") else text + "\n")


def run_ingest(args, manager):
    metadata_text = _read_text(args.metadata)
    curtain_data = CurtainDataset.from_json(metadata_text) if metadata_text else CurtainDataset()
    raw_text = _read_text(args.raw) or curtain_data.raw
    processed_text = _read_text(args.processed) or curtain_data.processed

    ingestor = CurtainDataIngestor(manager)
    try:
        result = ingestor.build(args.link_id, raw_text, processed_text, curtain_data=curtain_data,
                                on_progress=logger.info)
    except IngestionError as e:
        logger.error(str(e))
        return 1

    if result is None:
        logger.info(f"Dataset {args.link_id} already ingested; nothing to do")
    return 0


def _search_config(args):
    return CrossDatasetSearchConfig(
        search_terms=args.terms,
        search_type=SearchType(args.search_type),
        dataset_link_ids=args.link_ids,
        significant_only=args.significant_only,
        use_regex=args.regex,
    )


def _log_status(status):
    suffix = f" ({status.error})" if status.error else ""
    logger.info(f"[{status.dataset_name}] {status.state.value}{suffix}")


def run_search(args, manager):
    service = CrossDatasetSearchService(manager)
    result = service.search_across_datasets(_search_config(args), on_status=_log_status)
    _write_output(export_results_as_csv(result), args.output)
    return 0


def run_report(args, manager):
    service = CrossDatasetSearchService(manager)
    report = service.get_protein_detailed_report(args.term, None, args.link_ids, SearchType(args.search_type))
    _write_output(export_protein_report(report), args.output)
    return 0


def run_matrix(args, manager):
    service = CrossDatasetSearchService(manager)
    result = service.search_across_datasets(_search_config(args), on_status=_log_status)
    options = MatrixFilterOptions(
        show_significant_only=args.matrix_significant_only,
        hide_not_found=args.hide_not_found,
        min_fold_change=args.min_fold_change,
        max_p_value=args.max_p_value,
    )
    matrix = service.build_cross_dataset_matrix(result, options)
    _write_output(export_matrix_as_csv(matrix), args.output)
    return 0


def _add_search_arguments(parser):
    parser.add_argument("--terms", nargs="+", required=True, help="Search terms; ';' separates several in one entry.")
    parser.add_argument("--link-ids", nargs="+", required=True, help="Datasets to search.")
    parser.add_argument("--search-type", choices=[t.value for t in SearchType], default=SearchType.GENE_NAME.value)
    parser.add_argument("--regex", action="store_true", help="Treat each term as a regular expression.")
    parser.add_argument("--significant-only", action="store_true", help="Keep only proteins significant somewhere.")
    parser.add_argument("--output", default=None, help="CSV file to write (defaults to stdout).")


def build_parser():
    parser = argparse.ArgumentParser(description="Curtain proteomics dataset pipeline.")
    parser.add_argument("--data-dir", default=None, help="Base data directory (defaults to CURTAIN_DATA_DIR).")
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", help="Ingest a dataset from local TSV and metadata files.")
    ingest.add_argument("--link-id", required=True)
    ingest.add_argument("--raw", default=None, help="Raw quantification TSV.")
    ingest.add_argument("--processed", default=None, help="Differential analysis TSV.")
    ingest.add_argument("--metadata", default=None, help="Dataset metadata JSON.")
    ingest.set_defaults(handler=run_ingest)

    search = subparsers.add_parser("search", help="Search proteins across datasets.")
    _add_search_arguments(search)
    search.set_defaults(handler=run_search)

    report = subparsers.add_parser("report", help="Per-dataset report for one protein.")
    report.add_argument("--term", required=True)
    report.add_argument("--link-ids", nargs="+", required=True)
    report.add_argument("--search-type", choices=[t.value for t in SearchType], default=SearchType.GENE_NAME.value)
    report.add_argument("--output", default=None)
    report.set_defaults(handler=run_report)

    matrix = subparsers.add_parser("matrix", help="Protein x dataset fold-change matrix.")
    _add_search_arguments(matrix)
    matrix.add_argument("--matrix-significant-only", action="store_true")
    matrix.add_argument("--hide-not-found", action="store_true")
    matrix.add_argument("--min-fold-change", type=float, default=None)
    matrix.add_argument("--max-p-value", type=float, default=None)
    matrix.set_defaults(handler=run_matrix)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    manager = DatasetStoreManager(args.data_dir)
    try:
        return args.handler(args, manager)
    finally:
        manager.close_all()


if __name__ == "__main__":
    sys.exit(main())
