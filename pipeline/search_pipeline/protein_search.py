# File: pipeline/search_pipeline/protein_search.py
# Resolves search input lines to primary IDs within a single dataset store, either by
# exact lookups on the mapping index or by a case-insensitive regular expression.

import re
from typing import List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from config.logger_config import configure_logger
from db.dataset_store import DatasetStoreManager
from db.lookup_service import GeneProteinLookupService
from db.proteomics_repository import ProteomicsRepository
from pipeline.search_pipeline.query_parser import process_batch_search_input
from pipeline.search_pipeline.search_models import SearchResult, SearchType
from utils.exceptions import StoreUnavailableError

logger = configure_logger(name="ProteinSearchService", log_file="protein_search.log", output="both")


class ProteinSearchService:
    """
    Batch protein search over one dataset.

    Exact mode tries each input line as a whole and then its ';' parts against the
    mapping index: the gene-name index for GENE_NAME searches, the split-ID index for
    PRIMARY_ID and ACCESSION_ID searches. A hit on the whole line stops the search for
    that line. Regex mode treats each line as a pattern.
    """

    def __init__(self, store_manager: DatasetStoreManager,
                 lookup_service: Optional[GeneProteinLookupService] = None,
                 repository: Optional[ProteomicsRepository] = None):
        self.store_manager = store_manager
        self.lookup_service = lookup_service or GeneProteinLookupService(store_manager)
        self.repository = repository or ProteomicsRepository(store_manager)

    def perform_batch_search(
        self,
        input_text: str,
        search_type: SearchType,
        link_id: str,
        id_column: str = "Index",
        gene_column: str = "Gene Names",
        use_regex: bool = False,
    ) -> List[SearchResult]:
        """
        Resolves every line of the input to matching primary IDs.

        Args:
            input_text (str): Newline-separated search lines.
            search_type (SearchType): Which identifier the lines hold.
            link_id (str): Dataset to search.
            id_column (str): Primary-ID column declared by the dataset.
            gene_column (str): Gene-name column declared by the dataset.
            use_regex (bool): Treat each line as a case-insensitive regular expression.

        Returns:
            List[SearchResult]: One result per line with at least one match, in input order.
            Matched primary IDs are sorted.
        """
        if not link_id:
            return []

        logger.debug(
            f"Batch search in {link_id} ({search_type.value}, regex={use_regex}) "
            f"on columns '{id_column}' / '{gene_column}'"
        )
        results = []
        for line, parts in process_batch_search_input(input_text).items():
            if use_regex:
                matched = self.perform_regex_search(line, search_type, link_id)
            else:
                matched = self._exact_lookup(line, parts, search_type, link_id)

            if matched:
                results.append(SearchResult(
                    search_term=line,
                    matched_proteins=sorted(matched),
                    search_type=search_type,
                    is_exact_match=not use_regex,
                ))
        return results

    def _exact_lookup(self, line: str, parts: List[str], search_type: SearchType, link_id: str) -> Set[str]:
        matched: Set[str] = set()
        candidates = [line] + [part for part in parts if part != line.upper()]
        for term in candidates:
            term = term.strip()
            if not term:
                continue
            if search_type == SearchType.GENE_NAME:
                primary_ids = self.lookup_service.primary_ids_for_gene_name(link_id, term)
            else:
                primary_ids = self.lookup_service.primary_ids_for_split_id(link_id, term)
            matched.update(primary_ids)

            # Whole-line hit: the individual parts are not needed
            if primary_ids and term == line:
                break
        return matched

    def perform_regex_search(self, pattern: str, search_type: SearchType, link_id: str) -> Set[str]:
        """
        Primary IDs matching a case-insensitive pattern anywhere in the searched text.

        ID searches scan the distinct primary IDs. Gene searches scan the dataset's gene
        vocabulary (each hit expands to the rows whose gene names contain it) and the
        ';' tokens of every processed gene-name string. An invalid pattern matches nothing.
        """
        pattern = (pattern or "").strip()
        if not link_id or not pattern:
            return set()
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            logger.warning(f"Invalid search pattern '{pattern}': {e}")
            return set()

        matched: Set[str] = set()
        try:
            if search_type == SearchType.GENE_NAME:
                for gene in self.repository.get_all_genes(link_id):
                    if regex.search(gene):
                        matched.update(self.repository.get_processed_primary_ids_with_gene_like(link_id, gene))
                for primary_id, gene_names in self.repository.get_primary_id_gene_names(link_id):
                    if any(regex.search(gene.strip()) for gene in gene_names.split(";")):
                        matched.add(primary_id)
            else:
                matched.update(
                    primary_id for primary_id in self.repository.get_distinct_primary_ids(link_id)
                    if regex.search(primary_id)
                )
        except (SQLAlchemyError, StoreUnavailableError) as e:
            logger.error(f"Regex search error in {link_id}: {e}")
            return set()
        return matched
