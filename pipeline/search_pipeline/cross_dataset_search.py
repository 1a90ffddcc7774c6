# File: pipeline/search_pipeline/cross_dataset_search.py
# Searches proteins across several dataset stores in parallel, aggregates per-protein
# statistics, and builds per-protein reports and the protein x dataset matrix.
#
# Each dataset is searched on its own worker thread. One dataset failing never aborts
# the others: its task ends with a "failed" status and contributes no matches.

import threading
from typing import Callable, Dict, Iterable, List, Optional

from config.logger_config import configure_logger
from db.dataset_store import DatasetStoreManager
from db.lookup_service import GeneProteinLookupService
from db.proteomics_repository import ProteomicsRepository
from pipeline.curtain_pipeline.curtain_models import CurtainDataset, CurtainSettings
from pipeline.curtain_pipeline.mapping_table_populator import ProteinMappingBuilder
from pipeline.search_pipeline.protein_search import ProteinSearchService
from pipeline.search_pipeline.query_parser import parse_search_input
from pipeline.search_pipeline.search_models import (
    AdvancedFilterParams,
    CrossDatasetMatrix,
    CrossDatasetSearchConfig,
    CrossDatasetSearchResult,
    DatasetComparisonInfo,
    DatasetComparisonResult,
    DatasetProcessingStatus,
    DatasetSearchResult,
    MatrixCell,
    MatrixFilterOptions,
    MatrixRow,
    ProcessingState,
    ProteinDatasetResult,
    ProteinDetailedReport,
    ProteinSearchSummary,
    ProteinSortOption,
    SearchType,
)
from utils.parallel_processing import ParallelProcessor

logger = configure_logger(name="CrossDatasetSearchService", log_file="cross_dataset_search.log", output="both")

StatusCallback = Callable[[DatasetProcessingStatus], None]

NO_DATA_REASON = "No data downloaded"
LOAD_FAILED_REASON = "Failed to load dataset"
CANCELLED_REASON = "Cancelled"
NOT_AVAILABLE = "N/A"


class SearchCancelled(Exception):
    """Raised inside a dataset task when the search's cancel event is set."""


def is_significant(fold_change: Optional[float], p_value: Optional[float], settings: CurtainSettings) -> bool:
    """p < pCutoff and |fc| > log2FC cutoff; a missing value is never significant."""
    if fold_change is None or p_value is None:
        return False
    return p_value < settings.p_cutoff and abs(fold_change) > settings.log2fc_cutoff


def split_gene_names(gene_name: Optional[str]) -> List[str]:
    if not gene_name:
        return []
    return [part.strip() for part in gene_name.split(";") if part.strip()]


def passes_advanced_filter(fold_change: Optional[float], params: Optional[AdvancedFilterParams]) -> bool:
    """
    Applies the left (negative) and right (positive) fold-change windows.

    Terms without an average fold change always pass. With both sides enabled a term
    passes when either side accepts it; with one side enabled it must pass that side.
    """
    if params is None or fold_change is None:
        return True

    if params.search_left and fold_change < 0:
        magnitude = abs(fold_change)
        passes_left = (
            (params.min_fc_left is None or magnitude >= params.min_fc_left)
            and (params.max_fc_left is None or magnitude <= params.max_fc_left)
        )
    else:
        passes_left = not params.search_left or fold_change >= 0

    if params.search_right and fold_change > 0:
        passes_right = (
            (params.min_fc_right is None or fold_change >= params.min_fc_right)
            and (params.max_fc_right is None or fold_change <= params.max_fc_right)
        )
    else:
        passes_right = not params.search_right or fold_change <= 0

    if params.search_left and params.search_right:
        return passes_left or passes_right
    if params.search_left:
        return passes_left
    if params.search_right:
        return passes_right
    return True


def passes_matrix_filter(cell: MatrixCell, options: MatrixFilterOptions) -> bool:
    if not cell.found:
        return not options.hide_not_found
    if options.show_significant_only and not cell.is_significant:
        return False
    if options.min_fold_change is not None and cell.fold_change is not None \
            and abs(cell.fold_change) < options.min_fold_change:
        return False
    if options.max_p_value is not None and cell.p_value is not None and cell.p_value > options.max_p_value:
        return False
    return True


def aggregate_results(
    search_terms: List[str],
    dataset_results: List[DatasetSearchResult],
    total_datasets: int,
    significant_only: bool = False,
    advanced_filtering: Optional[AdvancedFilterParams] = None,
) -> List[ProteinSearchSummary]:
    """
    Combines per-dataset results into one summary per search term.

    Args:
        search_terms (List[str]): Parsed search terms, in output order before sorting.
        dataset_results (List[DatasetSearchResult]): Per-dataset results; the first dataset
            that found a term provides its representative primary ID.
        total_datasets (int): Number of datasets requested.
        significant_only (bool): Drop terms without a significant dataset.
        advanced_filtering (Optional[AdvancedFilterParams]): Fold-change windows.

    Returns:
        List[ProteinSearchSummary]: Summaries of terms found in at least one dataset,
        sorted by datasets found, descending. Ties keep the search-term order.
    """
    summaries = []
    for term in search_terms:
        primary_id = None
        gene_names = set()
        datasets_found_in = 0
        has_significant = False
        fold_changes = []

        for dataset_result in dataset_results:
            result = dataset_result.results.get(term)
            if result is None or not result.found:
                continue
            datasets_found_in += 1
            if primary_id is None:
                primary_id = result.primary_id
            gene_names.update(split_gene_names(result.gene_name))
            has_significant = has_significant or result.has_significant
            if result.average_fold_change is not None:
                fold_changes.append(result.average_fold_change)

        if datasets_found_in == 0:
            continue

        average_fold_change = sum(fold_changes) / len(fold_changes) if fold_changes else None
        if significant_only and not has_significant:
            continue
        if not passes_advanced_filter(average_fold_change, advanced_filtering):
            continue

        summaries.append(ProteinSearchSummary(
            search_term=term,
            primary_id=primary_id,
            gene_name=";".join(sorted(gene_names)) if gene_names else None,
            datasets_found_in=datasets_found_in,
            total_datasets_searched=total_datasets,
            average_fold_change=average_fold_change,
            has_significant_result=has_significant,
        ))

    return sorted(summaries, key=lambda summary: summary.datasets_found_in, reverse=True)


def sort_summaries(summaries: List[ProteinSearchSummary], option: ProteinSortOption) -> List[ProteinSearchSummary]:
    """Reorders summaries for display. Missing fold changes sort last."""
    def name(summary: ProteinSearchSummary) -> str:
        return (summary.gene_name or summary.primary_id or summary.search_term).lower()

    if option == ProteinSortOption.NAME_ASC:
        return sorted(summaries, key=name)
    if option == ProteinSortOption.NAME_DESC:
        return sorted(summaries, key=name, reverse=True)
    if option == ProteinSortOption.MATCH_COUNT_DESC:
        return sorted(summaries, key=lambda summary: summary.datasets_found_in, reverse=True)

    with_fc = [summary for summary in summaries if summary.average_fold_change is not None]
    without_fc = [summary for summary in summaries if summary.average_fold_change is None]
    with_fc.sort(key=lambda summary: summary.average_fold_change, reverse=option == ProteinSortOption.AVG_FC_DESC)
    return with_fc + without_fc


class DatasetSearchProcessor(ParallelProcessor):
    """Runs the per-dataset search of one cross-dataset search on a thread pool."""

    def __init__(self, service: "CrossDatasetSearchService", config: CrossDatasetSearchConfig,
                 search_terms: List[str], report_status: StatusCallback,
                 cancel_event: Optional[threading.Event] = None):
        super().__init__(config.dataset_link_ids, cancel_event=cancel_event)
        self.service = service
        self.config = config
        self.search_terms = search_terms
        self.report_status = report_status

    def process_resource(self, resource_id: str) -> DatasetSearchResult:
        return self.service.search_in_dataset(
            resource_id, self.search_terms, self.config, self.report_status, self.cancel_event,
        )

    def handle_failure(self, resource_id: str, error: Exception) -> DatasetSearchResult:
        reason = CANCELLED_REASON if isinstance(error, SearchCancelled) else _short_reason(error)
        self.report_status(DatasetProcessingStatus(
            id=resource_id,
            dataset_name=self.service.dataset_display_name(resource_id),
            state=ProcessingState.FAILED,
            error=reason,
        ))
        return DatasetSearchResult(link_id=resource_id)


class CrossDatasetSearchService:
    """
    Cross-dataset protein search.

    Dataset display names come from ``dataset_names`` (link ID -> description) and
    default to the link ID.
    """

    def __init__(
        self,
        store_manager: DatasetStoreManager,
        dataset_names: Optional[Dict[str, str]] = None,
        repository: Optional[ProteomicsRepository] = None,
        lookup_service: Optional[GeneProteinLookupService] = None,
        mapping_builder: Optional[ProteinMappingBuilder] = None,
        search_service: Optional[ProteinSearchService] = None,
    ):
        self.store_manager = store_manager
        self.dataset_names = dict(dataset_names or {})
        self.repository = repository or ProteomicsRepository(store_manager)
        self.lookup_service = lookup_service or GeneProteinLookupService(store_manager)
        self.mapping_builder = mapping_builder or ProteinMappingBuilder(store_manager)
        self.search_service = search_service or ProteinSearchService(
            store_manager, self.lookup_service, self.repository,
        )

    def dataset_display_name(self, link_id: str) -> str:
        return self.dataset_names.get(link_id) or link_id

    # ------------------------------------------------------------------ search

    def search_across_datasets(
        self,
        config: CrossDatasetSearchConfig,
        on_status: Optional[StatusCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> CrossDatasetSearchResult:
        """
        Searches all configured datasets in parallel and aggregates the results.

        Args:
            config (CrossDatasetSearchConfig): Terms, search type, datasets and filters.
            on_status (Optional[StatusCallback]): Receives every status change. It is
                called from worker threads.
            cancel_event (Optional[threading.Event]): When set, dataset tasks stop at their
                next check and end as failed with reason "Cancelled".

        Returns:
            CrossDatasetSearchResult: Summaries plus the last status of every dataset.
        """
        search_terms = parse_search_input(config.search_terms)
        statuses: Dict[str, DatasetProcessingStatus] = {
            link_id: DatasetProcessingStatus(id=link_id, dataset_name=self.dataset_display_name(link_id))
            for link_id in config.dataset_link_ids
        }
        status_lock = threading.Lock()

        def report_status(status: DatasetProcessingStatus) -> None:
            with status_lock:
                statuses[status.id] = status
            if on_status is not None:
                on_status(status)

        logger.info(
            f"Searching {len(search_terms)} terms ({config.search_type.value}) "
            f"across {len(config.dataset_link_ids)} datasets"
        )
        processor = DatasetSearchProcessor(self, config, search_terms, report_status, cancel_event)
        results_by_id = processor.execute()

        # Aggregation follows the configured dataset order, not completion order
        dataset_results = [
            results_by_id[link_id] for link_id in dict.fromkeys(config.dataset_link_ids)
            if link_id in results_by_id
        ]
        summaries = aggregate_results(
            search_terms,
            dataset_results,
            total_datasets=len(config.dataset_link_ids),
            significant_only=config.significant_only,
            advanced_filtering=config.advanced_filtering,
        )
        logger.info(f"Cross-dataset search finished with {len(summaries)} protein summaries")
        return CrossDatasetSearchResult(
            config=config,
            protein_summaries=summaries,
            statuses=statuses,
            cancelled=processor.cancelled,
        )

    def search_in_dataset(
        self,
        link_id: str,
        search_terms: List[str],
        config: CrossDatasetSearchConfig,
        report_status: StatusCallback,
        cancel_event: Optional[threading.Event] = None,
    ) -> DatasetSearchResult:
        """
        Resolves every search term within one dataset.

        For each term all matched primary IDs with processed rows are used: the first
        becomes the representative, fold changes of every matching row are averaged, and
        the term is significant when any row is.
        """
        cancel_event = cancel_event or threading.Event()
        dataset_name = self.dataset_display_name(link_id)

        def status(state: ProcessingState, error: Optional[str] = None) -> None:
            report_status(DatasetProcessingStatus(id=link_id, dataset_name=dataset_name, state=state, error=error))

        def check_cancelled() -> None:
            if cancel_event.is_set():
                raise SearchCancelled(link_id)

        check_cancelled()
        if not self.store_manager.data_exists(link_id):
            status(ProcessingState.FAILED, NO_DATA_REASON)
            return DatasetSearchResult(link_id=link_id)

        status(ProcessingState.LOADING)
        curtain_data = self.repository.load_curtain_data(link_id)
        if curtain_data is None:
            status(ProcessingState.FAILED, LOAD_FAILED_REASON)
            return DatasetSearchResult(link_id=link_id)

        check_cancelled()
        status(ProcessingState.BUILDING)
        mapping_result = self.mapping_builder.ensure_mappings(link_id, curtain_data)
        if not mapping_result.success:
            logger.warning(f"Searching {link_id} without a fresh mapping index: {mapping_result.error}")

        check_cancelled()
        status(ProcessingState.SEARCHING)
        search_results = self.search_service.perform_batch_search(
            "\n".join(search_terms),
            config.search_type,
            link_id,
            id_column=curtain_data.differential_form.primary_ids,
            gene_column=curtain_data.differential_form.gene_names,
            use_regex=config.use_regex,
        )

        results: Dict[str, ProteinDatasetResult] = {}
        settings = curtain_data.settings
        for search_result in search_results:
            check_cancelled()
            resolved_id = None
            resolved_gene = None
            fold_changes = []
            any_significant = False

            for primary_id in search_result.matched_proteins:
                rows = self.repository.get_processed_data_for_protein(link_id, primary_id)
                if not rows:
                    continue
                if resolved_id is None:
                    resolved_id = primary_id
                    resolved_gene = self.gene_name_for_protein(link_id, primary_id, curtain_data, rows)
                for row in rows:
                    if row.fold_change is not None:
                        fold_changes.append(row.fold_change)
                    any_significant = any_significant or is_significant(row.fold_change, row.significant, settings)
                    if not resolved_gene and row.gene_names:
                        resolved_gene = row.gene_names

            if resolved_id is None:
                continue
            results[search_result.search_term] = ProteinDatasetResult(
                primary_id=resolved_id,
                gene_name=resolved_gene,
                found=True,
                has_significant=any_significant,
                average_fold_change=sum(fold_changes) / len(fold_changes) if fold_changes else None,
            )

        status(ProcessingState.COMPLETED)
        logger.info(f"{link_id}: {len(results)} of {len(search_terms)} terms found")
        return DatasetSearchResult(link_id=link_id, results=results)

    def gene_name_for_protein(self, link_id: str, primary_id: str, curtain_data: CurtainDataset,
                              rows=None) -> Optional[str]:
        """UniProt gene name when the dataset fetches UniProt, else the first row's gene names."""
        gene_name = None
        if curtain_data.fetch_uniprot:
            gene_name = self.lookup_service.gene_name_from_accession(link_id, primary_id)
        if not gene_name:
            if rows is None:
                rows = self.repository.get_processed_data_for_protein(link_id, primary_id)
            if rows and rows[0].gene_names:
                gene_name = rows[0].gene_names
        return gene_name

    # ------------------------------------------------------------------ report

    def get_protein_detailed_report(
        self,
        search_term: str,
        primary_id: Optional[str],
        dataset_link_ids: List[str],
        search_type: SearchType,
    ) -> ProteinDetailedReport:
        """
        One row per matching processed entry in every dataset.

        Datasets without data, without loadable metadata or without a matched ID get a
        single not-found row with comparison "N/A". A dataset whose matched IDs have no
        processed rows gets one not-found row with its comparison label.
        """
        results: List[DatasetComparisonResult] = []
        resolved_id = primary_id
        gene_names = set()

        for link_id in dataset_link_ids:
            dataset_name = self.dataset_display_name(link_id)

            def not_found(comparison: str) -> DatasetComparisonResult:
                return DatasetComparisonResult(
                    info=DatasetComparisonInfo(link_id=link_id, dataset_description=dataset_name, comparison=comparison),
                )

            if not self.store_manager.data_exists(link_id):
                results.append(not_found(NOT_AVAILABLE))
                continue
            curtain_data = self.repository.load_curtain_data(link_id)
            if curtain_data is None:
                results.append(not_found(NOT_AVAILABLE))
                continue

            self.mapping_builder.ensure_mappings(link_id, curtain_data)
            comparison = curtain_data.settings.comparison_label
            search_results = self.search_service.perform_batch_search(
                search_term,
                search_type,
                link_id,
                id_column=curtain_data.differential_form.primary_ids,
                gene_column=curtain_data.differential_form.gene_names,
            )
            matched_ids = [pid for result in search_results for pid in result.matched_proteins]
            if not matched_ids:
                results.append(not_found(NOT_AVAILABLE))
                continue

            info = DatasetComparisonInfo(link_id=link_id, dataset_description=dataset_name, comparison=comparison)
            any_found = False
            for matched_id in matched_ids:
                rows = self.repository.get_processed_data_for_protein(link_id, matched_id)
                if not rows:
                    continue
                if resolved_id is None:
                    resolved_id = matched_id
                gene_names.update(split_gene_names(
                    self.gene_name_for_protein(link_id, matched_id, curtain_data, rows)
                ))
                for row in rows:
                    results.append(DatasetComparisonResult(
                        info=info,
                        fold_change=row.fold_change,
                        p_value=row.significant,
                        is_significant=is_significant(row.fold_change, row.significant, curtain_data.settings),
                        found=True,
                    ))
                    any_found = True

            if not any_found:
                results.append(not_found(comparison))

        return ProteinDetailedReport(
            search_term=search_term,
            primary_id=resolved_id,
            gene_name=";".join(sorted(gene_names)) if gene_names else None,
            results=results,
            datasets_found_in=len({result.info.link_id for result in results if result.found}),
            total_datasets_searched=len(dataset_link_ids),
        )

    # ------------------------------------------------------------------ matrix

    def build_cross_dataset_matrix(
        self,
        search_result: CrossDatasetSearchResult,
        filter_options: Optional[MatrixFilterOptions] = None,
    ) -> CrossDatasetMatrix:
        """
        Builds the protein x dataset grid for a finished search.

        Each cell holds the first processed row of the first matched ID with data, not an
        average. Cells rejected by the filter stay in the grid with found=False, and a
        dataset whose metadata cannot be loaded yields a row of not-found cells, so the
        matrix always has one cell per protein and dataset.
        """
        filter_options = filter_options or MatrixFilterOptions()
        config = search_result.config
        link_ids = filter_options.selected_datasets or config.dataset_link_ids

        protein_ids: List[str] = []
        protein_gene_names: Dict[str, Optional[str]] = {}
        for summary in search_result.protein_summaries:
            key = summary.primary_id or summary.search_term
            if key not in protein_gene_names:
                protein_ids.append(key)
                protein_gene_names[key] = summary.gene_name

        rows = []
        for link_id in dict.fromkeys(link_ids):
            dataset_name = self.dataset_display_name(link_id)
            curtain_data = self.repository.load_curtain_data(link_id)
            if curtain_data is None:
                logger.warning(f"Matrix row for {link_id} has no data: metadata could not be loaded")
                rows.append(MatrixRow(
                    dataset_link_id=link_id,
                    dataset_name=dataset_name,
                    comparison=NOT_AVAILABLE,
                    cells={key: MatrixCell() for key in protein_ids},
                ))
                continue

            cells = {key: MatrixCell() for key in protein_ids}
            for summary in search_result.protein_summaries:
                key = summary.primary_id or summary.search_term
                cells[key] = self._matrix_cell(link_id, summary.search_term, config, curtain_data, filter_options)

            labels = curtain_data.settings.volcano_condition_labels
            rows.append(MatrixRow(
                dataset_link_id=link_id,
                dataset_name=dataset_name,
                comparison=curtain_data.settings.comparison_label,
                condition_left=labels.left_condition if labels.enabled and labels.left_condition else None,
                condition_right=labels.right_condition if labels.enabled and labels.right_condition else None,
                cells=cells,
            ))

        return CrossDatasetMatrix(protein_ids=protein_ids, rows=rows, protein_gene_names=protein_gene_names)

    def _matrix_cell(self, link_id: str, search_term: str, config: CrossDatasetSearchConfig,
                     curtain_data: CurtainDataset, filter_options: MatrixFilterOptions) -> MatrixCell:
        search_results = self.search_service.perform_batch_search(
            search_term,
            config.search_type,
            link_id,
            id_column=curtain_data.differential_form.primary_ids,
            gene_column=curtain_data.differential_form.gene_names,
            use_regex=config.use_regex,
        )
        for matched_id in _flatten_matches(search_results):
            rows = self.repository.get_processed_data_for_protein(link_id, matched_id)
            if not rows:
                continue
            entry = rows[0]
            cell = MatrixCell(
                fold_change=entry.fold_change,
                p_value=entry.significant,
                is_significant=is_significant(entry.fold_change, entry.significant, curtain_data.settings),
                found=True,
            )
            if not passes_matrix_filter(cell, filter_options):
                cell = cell.model_copy(update={"found": False})
            return cell
        return MatrixCell()


def _flatten_matches(search_results) -> Iterable[str]:
    for result in search_results:
        yield from result.matched_proteins


def _short_reason(error: Exception) -> str:
    text = str(error).splitlines()[0] if str(error) else type(error).__name__
    return text[:200]
