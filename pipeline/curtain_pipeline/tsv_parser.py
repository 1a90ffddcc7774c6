# File: pipeline/curtain_pipeline/tsv_parser.py
# Parses the tab-separated raw and processed tables of a Curtain dataset into pandas
# DataFrames whose columns match the store tables.

from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from config.logger_config import configure_logger
from pipeline.curtain_pipeline.curtain_models import DifferentialForm, RawForm
from utils.config_utils import get_app_settings

logger = configure_logger(name="CurtainTsvParser", log_file="curtain_ingestion.log", output="both")

PROCESSED_COLUMNS = [
    "primary_id", "gene_names", "fold_change", "significant", "comparison",
    "accession", "position", "position_peptide", "peptide_sequence", "score",
]
RAW_COLUMNS = ["primary_id", "sample_name", "sample_value"]


def tokenize_tsv(text: Optional[str]) -> Tuple[List[str], List[List[str]]]:
    """
    Splits TSV text into a header and data lines.

    Lines end at a line feed, optionally preceded by a carriage return. Other control
    characters such as form feeds stay inside their field. Blank lines are ignored.
    Fields are not unquoted; a tab always separates fields.

    Returns:
        Tuple[List[str], List[List[str]]]: Header names (trimmed) and the split data lines.
    """
    if not text:
        return [], []
    lines = [line.rstrip("\r") for line in text.split("\n")]
    lines = [line for line in lines if line.strip()]
    if not lines:
        return [], []
    header = [name.strip() for name in lines[0].split("\t")]
    rows = [line.split("\t") for line in lines[1:]]
    return header, rows


def _column_indices(header: List[str], columns: Dict[str, str]) -> Dict[str, int]:
    """Maps target column -> header index for every configured column present in the header."""
    indices = {}
    for target, name in columns.items():
        name = (name or "").strip()
        if not name:
            continue
        if name in header:
            indices[target] = header.index(name)
        else:
            logger.warning(f"Configured column '{name}' ({target}) not found in header")
    return indices


def _field(fields: List[str], index: Optional[int]) -> Optional[str]:
    if index is None or index >= len(fields):
        return None
    value = fields[index].strip()
    return value or None


def frame_to_records(frame: pd.DataFrame) -> List[dict]:
    """Converts a parsed frame to dictionaries, turning NaN into None."""
    if frame.empty:
        return []
    cleaned = frame.astype(object).where(pd.notna(frame), None)
    return cleaned.to_dict(orient="records")


def _log_transform(series: pd.Series, func) -> pd.Series:
    """Applies func to the strictly positive values of a numeric series."""
    positive = series > 0
    result = series.copy()
    result[positive] = func(series[positive])
    return result


def parse_processed_table(text: Optional[str], form: DifferentialForm) -> pd.DataFrame:
    """
    Parses the differential table.

    Args:
        text (Optional[str]): TSV text, header first.
        form (DifferentialForm): Column names and transform flags.

    Returns:
        pd.DataFrame: One row per (primary_id, comparison) with PROCESSED_COLUMNS.
        Empty when the primary ID column is missing. Unparseable numbers become NaN.
    """
    header, rows = tokenize_tsv(text)
    if not header:
        logger.info("No processed data supplied")
        return pd.DataFrame(columns=PROCESSED_COLUMNS)

    indices = _column_indices(header, {
        "primary_id": form.primary_ids,
        "gene_names": form.gene_names,
        "fold_change": form.fold_change,
        "significant": form.significant,
        "comparison": form.comparison,
        "accession": form.accession,
        "position": form.position,
        "position_peptide": form.position_peptide,
        "peptide_sequence": form.peptide_sequence,
        "score": form.score,
    })
    primary_index = indices.get("primary_id")
    if primary_index is None:
        logger.error(f"Primary ID column '{form.primary_ids}' not found; processed table left empty")
        return pd.DataFrame(columns=PROCESSED_COLUMNS)

    records = []
    for fields in rows:
        if len(fields) <= primary_index:
            continue
        primary_id = fields[primary_index].strip()
        if not primary_id:
            continue
        record = {column: _field(fields, indices.get(column)) for column in PROCESSED_COLUMNS}
        record["primary_id"] = primary_id
        records.append(record)

    frame = pd.DataFrame.from_records(records, columns=PROCESSED_COLUMNS)
    if frame.empty:
        return frame

    # Fold change: log2 when configured (positive values only), then optional sign flip
    frame["fold_change"] = pd.to_numeric(frame["fold_change"], errors="coerce")
    if form.transform_fc:
        frame["fold_change"] = _log_transform(frame["fold_change"], np.log2)
    if form.reverse_fold_change:
        frame["fold_change"] = -frame["fold_change"]

    # Significance: -log10 when configured (positive values only)
    frame["significant"] = pd.to_numeric(frame["significant"], errors="coerce")
    if form.transform_significant:
        frame["significant"] = _log_transform(frame["significant"], lambda values: -np.log10(values))

    frame["score"] = pd.to_numeric(frame["score"], errors="coerce")
    frame["comparison"] = frame["comparison"].fillna(get_app_settings().default_comparison)

    before = len(frame)
    frame = frame.drop_duplicates(subset=["primary_id", "comparison"], keep="first").reset_index(drop=True)
    if len(frame) < before:
        logger.warning(f"Dropped {before - len(frame)} duplicate (primary_id, comparison) rows")

    logger.info(f"Parsed {len(frame)} processed rows")
    return frame


def parse_raw_table(text: Optional[str], form: RawForm) -> pd.DataFrame:
    """
    Parses the raw quantification table into long format.

    Only samples that are both configured and present in the header produce rows.

    Returns:
        pd.DataFrame: RAW_COLUMNS, one row per (primary_id, sample_name).
    """
    header, rows = tokenize_tsv(text)
    if not header:
        logger.info("No raw data supplied")
        return pd.DataFrame(columns=RAW_COLUMNS)

    primary_name = form.primary_ids.strip()
    if not primary_name or primary_name not in header:
        logger.error(f"Primary ID column '{form.primary_ids}' not found; raw table left empty")
        return pd.DataFrame(columns=RAW_COLUMNS)
    primary_index = header.index(primary_name)

    samples = []
    for sample in form.samples:
        if sample in header:
            samples.append((sample, header.index(sample)))
        else:
            logger.warning(f"Sample column '{sample}' not found in raw header")
    if not samples:
        logger.warning("No configured sample columns present in raw header")
        return pd.DataFrame(columns=RAW_COLUMNS)

    wide_records = []
    for fields in rows:
        if len(fields) <= primary_index:
            continue
        primary_id = fields[primary_index].strip()
        if not primary_id:
            continue
        record = {"primary_id": primary_id}
        for sample, index in samples:
            record[sample] = _field(fields, index)
        wide_records.append(record)

    sample_names = [sample for sample, _ in samples]
    wide = pd.DataFrame.from_records(wide_records, columns=["primary_id"] + sample_names)
    if wide.empty:
        return pd.DataFrame(columns=RAW_COLUMNS)

    # Wide (one column per sample) to long (one row per sample value)
    long_frame = wide.melt(
        id_vars=["primary_id"],
        value_vars=sample_names,
        var_name="sample_name",
        value_name="sample_value",
    )
    long_frame["sample_value"] = pd.to_numeric(long_frame["sample_value"], errors="coerce")
    if form.log2:
        long_frame["sample_value"] = _log_transform(long_frame["sample_value"], np.log2)

    before = len(long_frame)
    long_frame = long_frame.drop_duplicates(subset=["primary_id", "sample_name"], keep="first").reset_index(drop=True)
    if len(long_frame) < before:
        logger.warning(f"Dropped {before - len(long_frame)} duplicate (primary_id, sample_name) rows")

    logger.info(f"Parsed {len(long_frame)} raw rows for {len(sample_names)} samples")
    return long_frame[RAW_COLUMNS]
