# File: utils/identifier_utils.py
# Description: Helpers for splitting protein group identifiers and gene-name strings.

import re
from typing import List, Optional

# Gene-name strings are separated by spaces, semicolons or backslashes
GENE_SPLIT_PATTERN = re.compile(r"[ ;\\]")

# UniProt accession format (https://www.uniprot.org/help/accession_numbers)
UNIPROT_ACCESSION_PATTERN = re.compile(
    r"[OPQ][0-9][A-Z0-9]{3}[0-9]|[A-NR-Z][0-9]([A-Z][A-Z0-9]{2}[0-9]){1,2}"
)


def split_gene_tokens(gene_names: Optional[str]) -> List[str]:
    """Splits a gene-name string into its non-empty tokens."""
    if not gene_names:
        return []
    return [token.strip() for token in GENE_SPLIT_PATTERN.split(gene_names) if token.strip()]


def first_gene_name(gene_names: Optional[str]) -> Optional[str]:
    """Returns the first token of a gene-name string, or None when it has none."""
    tokens = split_gene_tokens(gene_names)
    return tokens[0] if tokens else None


def split_primary_id(primary_id: Optional[str]) -> List[str]:
    """
    Splits a protein group identifier such as "P04637;Q9XYZ1" into its fragments.

    Fragments are trimmed and empty ones dropped; case is preserved.
    """
    if not primary_id:
        return []
    return [part.strip() for part in primary_id.split(";") if part.strip()]


def extract_uniprot_accession(text: Optional[str]) -> Optional[str]:
    """Returns the first UniProt-shaped accession found in text."""
    if not text:
        return None
    match = UNIPROT_ACCESSION_PATTERN.search(text)
    return match.group(0) if match else None
