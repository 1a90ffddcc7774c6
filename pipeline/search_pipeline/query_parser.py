# File: pipeline/search_pipeline/query_parser.py
# Description: Splits free-text search input into search terms.

from typing import Dict, Iterable, List


def _lines(text: str) -> List[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def parse_search_input(terms: Iterable[str]) -> List[str]:
    """
    Flattens user search input into unique terms.

    Each entry may hold several newline-separated lines; a line containing ';' is
    split into its parts. Terms are trimmed, empty ones dropped and duplicates removed
    keeping the first occurrence.

    Args:
        terms (Iterable[str]): Raw search entries.

    Returns:
        List[str]: Unique terms in first-seen order.

    Example:
        >>> parse_search_input(["TP53\\nEGFR; TP53", "AKT1"])
        ['TP53', 'EGFR', 'AKT1']
    """
    parsed: List[str] = []
    for entry in terms:
        for line in _lines(entry or ""):
            parts = [part.strip() for part in line.split(";")] if ";" in line else [line]
            for part in parts:
                if part and part not in parsed:
                    parsed.append(part)
    return parsed


def process_batch_search_input(input_text: str) -> Dict[str, List[str]]:
    """
    Maps each non-empty input line to its upper-cased ';' parts.

    Line order is preserved; a repeated line keeps a single entry.
    """
    processed: Dict[str, List[str]] = {}
    for line in _lines(input_text or ""):
        processed[line] = [part.strip().upper() for part in line.split(";") if part.strip()]
    return processed
