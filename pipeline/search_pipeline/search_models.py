# File: pipeline/search_pipeline/search_models.py
# Description: Pydantic models for batch protein search, cross-dataset search results,
# per-protein reports and the protein x dataset comparison matrix.

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class SearchType(str, Enum):
    PRIMARY_ID = "PRIMARY_ID"
    GENE_NAME = "GENE_NAME"
    ACCESSION_ID = "ACCESSION_ID"

    @property
    def display_name(self) -> str:
        return {
            SearchType.PRIMARY_ID: "Primary ID",
            SearchType.GENE_NAME: "Gene Name",
            SearchType.ACCESSION_ID: "Accession ID",
        }[self]


class ProcessingState(str, Enum):
    """Lifecycle of one dataset inside a cross-dataset search."""
    PENDING = "pending"
    LOADING = "loading"
    BUILDING = "building"
    SEARCHING = "searching"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingState.COMPLETED, ProcessingState.FAILED)


class ProteinSortOption(str, Enum):
    NAME_ASC = "nameAsc"
    NAME_DESC = "nameDesc"
    MATCH_COUNT_DESC = "matchCountDesc"
    AVG_FC_ASC = "avgFCAsc"
    AVG_FC_DESC = "avgFCDesc"


class SearchResult(BaseModel):
    """Primary IDs matched by one input line in one dataset."""
    search_term: str
    matched_proteins: List[str] = Field(default_factory=list)
    search_type: SearchType = SearchType.PRIMARY_ID
    is_exact_match: bool = True


class AdvancedFilterParams(BaseModel):
    """
    Fold-change windows applied to the aggregated average fold change.

    The left window bounds |fc| of negative values, the right window bounds positive
    values. With both sides enabled a term passes when either side accepts it.
    """
    min_p: Optional[float] = None
    max_p: Optional[float] = None
    min_fc_left: Optional[float] = None
    max_fc_left: Optional[float] = None
    min_fc_right: Optional[float] = None
    max_fc_right: Optional[float] = None
    search_left: bool = True
    search_right: bool = True


class CrossDatasetSearchConfig(BaseModel):
    search_terms: List[str]
    search_type: SearchType = SearchType.PRIMARY_ID
    dataset_link_ids: List[str]
    significant_only: bool = False
    use_regex: bool = False
    advanced_filtering: Optional[AdvancedFilterParams] = None


class DatasetProcessingStatus(BaseModel):
    id: str
    dataset_name: str
    state: ProcessingState = ProcessingState.PENDING
    error: Optional[str] = None


class ProteinDatasetResult(BaseModel):
    """What one dataset contributed for one search term."""
    primary_id: Optional[str] = None
    gene_name: Optional[str] = None
    found: bool = False
    has_significant: bool = False
    average_fold_change: Optional[float] = None


class DatasetSearchResult(BaseModel):
    link_id: str
    results: Dict[str, ProteinDatasetResult] = Field(default_factory=dict)


class ProteinSearchSummary(BaseModel):
    search_term: str
    primary_id: Optional[str] = None
    gene_name: Optional[str] = None
    datasets_found_in: int
    total_datasets_searched: int
    average_fold_change: Optional[float] = None
    has_significant_result: bool = False


class CrossDatasetSearchResult(BaseModel):
    config: CrossDatasetSearchConfig
    protein_summaries: List[ProteinSearchSummary] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=datetime.now)
    statuses: Dict[str, DatasetProcessingStatus] = Field(default_factory=dict)
    cancelled: bool = False


class DatasetComparisonInfo(BaseModel):
    link_id: str
    dataset_description: str
    comparison: str


class DatasetComparisonResult(BaseModel):
    info: DatasetComparisonInfo
    fold_change: Optional[float] = None
    p_value: Optional[float] = None
    is_significant: bool = False
    found: bool = False


class ProteinDetailedReport(BaseModel):
    search_term: str
    primary_id: Optional[str] = None
    gene_name: Optional[str] = None
    results: List[DatasetComparisonResult] = Field(default_factory=list)
    datasets_found_in: int = 0
    total_datasets_searched: int = 0


class MatrixCell(BaseModel):
    fold_change: Optional[float] = None
    p_value: Optional[float] = None
    is_significant: bool = False
    found: bool = False


class MatrixRow(BaseModel):
    dataset_link_id: str
    dataset_name: str
    comparison: str
    condition_left: Optional[str] = None
    condition_right: Optional[str] = None
    cells: Dict[str, MatrixCell] = Field(default_factory=dict)


class CrossDatasetMatrix(BaseModel):
    protein_ids: List[str] = Field(default_factory=list)
    rows: List[MatrixRow] = Field(default_factory=list)
    protein_gene_names: Dict[str, Optional[str]] = Field(default_factory=dict)

    @property
    def cell_count(self) -> int:
        return sum(len(row.cells) for row in self.rows)


class MatrixFilterOptions(BaseModel):
    """Per-cell filter; cells that fail it stay in the matrix with found=False."""
    show_significant_only: bool = False
    hide_not_found: bool = False
    min_fold_change: Optional[float] = None
    max_p_value: Optional[float] = None
    selected_datasets: Optional[List[str]] = None
