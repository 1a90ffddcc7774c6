# File: pipeline/curtain_pipeline/curtain_models.py
# Pydantic models for the Curtain dataset payload.
#
# Only the values the data layer reads are declared as fields. Every other key is kept
# as an extra (model_config extra="allow") and written back untouched, so a payload
# survives a store round trip. Keys are accepted both in their plain form ("primaryIDs")
# and in the underscore form produced by the Curtain backend ("_primaryIDs").

import json
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from utils.config_utils import get_app_settings
from utils.identifier_utils import first_gene_name


def unwrap_map_data(value: Any) -> Any:
    """
    Unwraps the backend's serialized JavaScript Map.

    ``{"dataType": "Map", "value": [[k1, v1], [k2, v2]]}`` becomes ``{k1: v1, k2: v2}``.
    Any other value is returned unchanged.
    """
    if isinstance(value, dict) and value.get("dataType") == "Map" and isinstance(value.get("value"), list):
        result = {}
        for pair in value["value"]:
            if isinstance(pair, (list, tuple)) and len(pair) >= 2 and isinstance(pair[0], str):
                result[pair[0]] = pair[1]
        return result
    return value


def _key(name: str, default: Any = None, default_factory=None) -> Any:
    """Field accepting ``name`` and ``_name`` on input and emitting ``name``."""
    aliases = dict(validation_alias=AliasChoices(name, f"_{name}"), serialization_alias=name)
    if default_factory is not None:
        return Field(default_factory=default_factory, **aliases)
    return Field(default, **aliases)


class CurtainModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        """Dictionary with the original JSON key names."""
        return self.model_dump(by_alias=True, mode="json")


# ---------------- Forms ----------------

class RawForm(CurtainModel):
    """Column configuration of the raw quantification table."""

    primary_ids: str = _key("primaryIDs", "")
    samples: List[str] = _key("samples", default_factory=list)
    log2: bool = _key("log2", False)

    @field_validator("primary_ids", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value

    @field_validator("samples", mode="before")
    @classmethod
    def _samples_list(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value else []
        return value


class DifferentialForm(CurtainModel):
    """Column configuration of the differential (processed) table."""

    primary_ids: str = _key("primaryIDs", "")
    gene_names: str = _key("geneNames", "")
    fold_change: str = _key("foldChange", "")
    transform_fc: bool = _key("transformFC", False)
    significant: str = _key("significant", "")
    transform_significant: bool = _key("transformSignificant", False)
    comparison: str = _key("comparison", "")
    comparison_select: List[str] = _key("comparisonSelect", default_factory=list)
    reverse_fold_change: bool = _key("reverseFoldChange", False)

    # PTM columns
    accession: str = _key("accession", "")
    position: str = _key("position", "")
    position_peptide: str = _key("positionPeptide", "")
    peptide_sequence: str = _key("peptideSequence", "")
    score: str = _key("score", "")

    @field_validator(
        "primary_ids", "gene_names", "fold_change", "significant", "comparison",
        "accession", "position", "position_peptide", "peptide_sequence", "score",
        mode="before",
    )
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value

    @field_validator("comparison_select", mode="before")
    @classmethod
    def _comparison_list(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value else []
        return value

    @property
    def is_ptm(self) -> bool:
        """A PTM dataset declares the accession or the site position column."""
        return bool(self.accession.strip()) or bool(self.position.strip())


# ---------------- Settings ----------------

class VolcanoConditionLabels(CurtainModel):
    enabled: bool = False
    left_condition: str = _key("leftCondition", "")
    right_condition: str = _key("rightCondition", "")


def _default_colors() -> List[str]:
    return list(get_app_settings().default_color_list)


class CurtainSettings(CurtainModel):
    """
    Dataset settings. Cutoffs, current comparison and the sample/condition structure
    are typed; the many presentation settings pass through as extras.
    """

    fetch_uniprot: bool = _key("fetchUniprot", True)
    p_cutoff: float = _key("pCutoff", 0.05)
    log2fc_cutoff: float = _key("log2FCCutoff", 0.6)
    current_comparison: str = _key("currentComparison", "")
    color_map: Dict[str, Any] = _key("colorMap", default_factory=dict)
    sample_order: Dict[str, List[str]] = _key("sampleOrder", default_factory=dict)
    sample_visible: Dict[str, bool] = _key("sampleVisible", default_factory=dict)
    condition_order: List[str] = _key("conditionOrder", default_factory=list)
    sample_map: Dict[str, Dict[str, Any]] = _key("sampleMap", default_factory=dict)
    default_color_list: List[str] = _key("defaultColorList", default_factory=_default_colors)
    volcano_condition_labels: VolcanoConditionLabels = _key(
        "volcanoConditionLabels", default_factory=VolcanoConditionLabels
    )

    @field_validator("color_map", "sample_order", "sample_visible", "sample_map", mode="before")
    @classmethod
    def _unwrap_maps(cls, value):
        value = unwrap_map_data(value)
        return {} if value is None else value

    @field_validator("condition_order", mode="before")
    @classmethod
    def _none_to_list(cls, value):
        return [] if value is None else value

    @field_validator("default_color_list", mode="before")
    @classmethod
    def _palette(cls, value):
        return value if value else _default_colors()

    @field_validator("current_comparison", mode="before")
    @classmethod
    def _comparison_str(cls, value):
        return "" if value is None else str(value)

    @field_validator("volcano_condition_labels", mode="before")
    @classmethod
    def _labels(cls, value):
        return {} if value is None else value

    @property
    def comparison_label(self) -> str:
        """The current comparison, "1" when none is selected."""
        return self.current_comparison or get_app_settings().default_comparison


# ---------------- Extra data ----------------

class UniProtExtra(CurtainModel):
    """UniProt block of the extra data. Map-serialized values are unwrapped on load."""

    results: Any = None
    data_map: Any = _key("dataMap", None)
    db: Any = None
    organism: Optional[str] = None
    acc_map: Any = _key("accMap", None)
    gene_name_to_acc: Any = _key("geneNameToAcc", None)

    @field_validator("results", "data_map", "db", "acc_map", "gene_name_to_acc", mode="before")
    @classmethod
    def _unwrap(cls, value):
        return unwrap_map_data(value)

    @field_validator("organism", mode="before")
    @classmethod
    def _organism(cls, value):
        return value if isinstance(value, str) else None

    def records(self) -> Dict[str, "UniProtRecord"]:
        """Typed projection of every record in ``db``, keyed by accession."""
        if not isinstance(self.db, dict):
            return {}
        return {
            accession: UniProtRecord.from_record(accession, record)
            for accession, record in self.db.items()
            if isinstance(record, dict)
        }


class DataMapContainer(CurtainModel):
    data_map: Any = _key("dataMap", None)
    genes_map: Any = _key("genesMap", None)
    primary_ids_map: Any = _key("primaryIDsMap", None)
    all_genes: List[str] = _key("allGenes", default_factory=list)

    @field_validator("data_map", "genes_map", "primary_ids_map", mode="before")
    @classmethod
    def _unwrap(cls, value):
        return unwrap_map_data(value)

    @field_validator("all_genes", mode="before")
    @classmethod
    def _genes(cls, value):
        if not isinstance(value, list):
            return []
        return [gene for gene in value if isinstance(gene, str) and gene]


class ExtraData(CurtainModel):
    uniprot: Optional[UniProtExtra] = None
    data: Optional[DataMapContainer] = None


# ---------------- UniProt projection ----------------

class UniProtRecord(BaseModel):
    """
    Typed view of one UniProt record.

    Attributes:
        accession: UniProt accession the record is keyed by.
        gene_names: Raw "Gene Names" value (space separated).
        organism: Organism name, when present.
        sequence: Canonical amino-acid sequence, when present.
        data: The record as received.
    """

    accession: str
    gene_names: Optional[str] = None
    organism: Optional[str] = None
    sequence: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_record(cls, accession: str, record: Dict[str, Any]) -> "UniProtRecord":
        # Tabular UniProt exports use "Gene Names"/"Sequence"/"Organism"; the JSON API uses nested objects
        gene_names = record.get("Gene Names")
        if not isinstance(gene_names, str) or not gene_names:
            gene_names = None
            genes = record.get("genes")
            if isinstance(genes, list) and genes and isinstance(genes[0], dict):
                gene_name = genes[0].get("geneName")
                if isinstance(gene_name, dict) and isinstance(gene_name.get("value"), str):
                    gene_names = gene_name["value"]

        sequence = record.get("Sequence")
        if not isinstance(sequence, str) or not sequence:
            nested = record.get("sequence")
            if isinstance(nested, dict):
                sequence = nested.get("value") if isinstance(nested.get("value"), str) else None
            elif isinstance(nested, str):
                sequence = nested
            else:
                sequence = None

        organism = record.get("Organism")
        if not isinstance(organism, str):
            nested = record.get("organism")
            if isinstance(nested, dict):
                organism = nested.get("scientificName")
            elif isinstance(nested, str):
                organism = nested
            else:
                organism = None

        return cls(accession=accession, gene_names=gene_names, organism=organism, sequence=sequence, data=record)

    @property
    def primary_gene_name(self) -> Optional[str]:
        return first_gene_name(self.gene_names)


# ---------------- Dataset payload ----------------

class CurtainDataset(CurtainModel):
    """
    A Curtain dataset payload: the two table configurations, settings, flags and
    extra data. The raw and processed tables may be embedded as TSV text.
    """

    raw_form: RawForm = _key("rawForm", default_factory=RawForm)
    differential_form: DifferentialForm = _key("differentialForm", default_factory=DifferentialForm)
    settings: CurtainSettings = Field(default_factory=CurtainSettings)
    password: str = ""
    fetch_uniprot: bool = _key("fetchUniprot", True)
    permanent: bool = False
    bypass_uniprot: bool = _key("bypassUniProt", False)
    selections: Any = None
    selections_map: Any = _key("selectionsMap", None)
    selected_map: Any = _key("selectedMap", None)
    selections_name: Any = _key("selectionsName", None)
    extra_data: Optional[ExtraData] = _key("extraData", None)
    annotated_data: Any = _key("annotatedData", None)
    raw: Optional[str] = None
    processed: Optional[str] = None

    @field_validator("password", mode="before")
    @classmethod
    def _password(cls, value):
        return "" if value is None else value

    @field_validator("raw_form", "differential_form", "settings", mode="before")
    @classmethod
    def _object_or_default(cls, value):
        return {} if value is None else value

    @classmethod
    def from_json(cls, text: str) -> "CurtainDataset":
        return cls.model_validate(json.loads(text))

    @property
    def uniprot(self) -> Optional[UniProtExtra]:
        return self.extra_data.uniprot if self.extra_data else None

    def uniprot_records(self) -> Dict[str, UniProtRecord]:
        uniprot = self.uniprot
        return uniprot.records() if uniprot else {}

    def passthrough(self) -> Dict[str, Any]:
        """Top-level keys that are not declared fields."""
        return dict(self.model_extra or {})
