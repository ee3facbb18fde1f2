"""
Gene Annotation Module

Maps Ensembl gene identifiers in result tables to gene symbols, either from a
local reference table (GTF-derived or BioMart export) or from the Ensembl REST
service. Unresolved identifiers keep an empty symbol and are never dropped.
"""

import re
import time
import warnings
import pandas as pd
import requests
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .validation import AnnotationLookupError

_VERSION_SUFFIX = re.compile(r"^(ENS[A-Z]*G\d+)\.\d+$")


@dataclass
class AnnotationConfig:
    """Configuration for gene symbol lookups.

    Attributes
    ----------
    ensembl_url : str
        Base URL of the Ensembl REST service
    batch_size : int
        Identifiers per POST request (the service accepts up to 1000)
    rate_limit_delay : float
        Delay between requests (seconds)
    timeout : int
        Request timeout in seconds
    """

    ensembl_url: str = "https://rest.ensembl.org"
    batch_size: int = 500
    rate_limit_delay: float = 0.2
    timeout: int = 30


def strip_version(gene_id: str) -> str:
    """
    Remove an Ensembl version suffix, ``ENSG00000139618.15`` -> ``ENSG00000139618``.
    Other identifiers are returned unchanged.
    """
    if pd.isna(gene_id):
        return gene_id
    gene_id = str(gene_id).strip()
    match = _VERSION_SUFFIX.match(gene_id)
    return match.group(1) if match else gene_id


def build_symbol_map(
    annotation_table: pd.DataFrame,
    id_column: str = "gene_id",
    symbol_column: str = "gene_name"
) -> Dict[str, str]:
    """
    Build an identifier -> symbol mapping from a reference table.

    When an identifier appears more than once the first row wins. Rows with a
    missing symbol are ignored.

    Parameters
    ----------
    annotation_table : pd.DataFrame
        Reference table with one row per (identifier, symbol) pair
    id_column : str
        Column holding Ensembl gene identifiers
    symbol_column : str
        Column holding gene symbols

    Returns
    -------
    Dict[str, str]
    """
    for col in (id_column, symbol_column):
        if col not in annotation_table.columns:
            raise ValueError(f"Annotation column '{col}' not found")

    table = annotation_table[[id_column, symbol_column]].dropna()
    table = table[table[symbol_column].astype(str).str.strip() != ""]
    ids = table[id_column].map(strip_version)
    symbols = table[symbol_column].astype(str).str.strip()

    symbol_map = {}
    for gene_id, symbol in zip(ids, symbols):
        if gene_id not in symbol_map:
            symbol_map[gene_id] = symbol
    return symbol_map


def query_ensembl_symbols(
    gene_ids: Iterable[str],
    config: Optional[AnnotationConfig] = None,
    verbose: bool = True
) -> Dict[str, str]:
    """
    Look up gene symbols for Ensembl identifiers through the Ensembl REST API.

    Identifiers are version-stripped and sent in batches to
    ``POST /lookup/id``. A failed batch is reported with a warning and its
    identifiers are left unresolved; lookups never raise.

    Parameters
    ----------
    gene_ids : iterable of str
        Ensembl gene identifiers
    config : AnnotationConfig, optional
        Service settings

    Returns
    -------
    Dict[str, str]
        Version-stripped identifier -> symbol, for the identifiers resolved
    """
    if config is None:
        config = AnnotationConfig()

    ids = list(dict.fromkeys(strip_version(g) for g in gene_ids if pd.notna(g)))
    if not ids:
        return {}

    url = f"{config.ensembl_url}/lookup/id"
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    symbol_map = {}
    n_batches = (len(ids) + config.batch_size - 1) // config.batch_size

    if verbose:
        print(f"Querying Ensembl for {len(ids)} gene ids ({n_batches} requests)...", flush=True)

    for start in range(0, len(ids), config.batch_size):
        batch = ids[start:start + config.batch_size]
        if start > 0:
            time.sleep(config.rate_limit_delay)
        try:
            response = requests.post(
                url, headers=headers, json={"ids": batch}, timeout=config.timeout
            )
            if not response.ok:
                raise AnnotationLookupError(
                    f"Ensembl lookup returned status {response.status_code}"
                )
            data = response.json()
        except (requests.exceptions.RequestException, ValueError, AnnotationLookupError) as e:
            warnings.warn(
                f"Symbol lookup failed for {len(batch)} ids: {e}", RuntimeWarning
            )
            continue

        for gene_id, record in data.items():
            if isinstance(record, dict) and record.get("display_name"):
                symbol_map[gene_id] = record["display_name"]

    if verbose:
        print(f"  Resolved {len(symbol_map)}/{len(ids)} ids", flush=True)
    return symbol_map


def annotate_results(
    results: pd.DataFrame,
    annotation,
    id_column: str = "gene_id",
    symbol_column: str = "Symbol"
) -> pd.DataFrame:
    """
    Add a gene symbol column to a result table.

    Parameters
    ----------
    results : pd.DataFrame
        Table with a gene identifier column (e.g. a ModelResult)
    annotation : dict or pd.DataFrame
        Identifier -> symbol mapping, or a reference table with ``gene_id``
        and ``gene_name`` columns
    id_column : str
        Identifier column in ``results``
    symbol_column : str
        Name of the added column

    Returns
    -------
    pd.DataFrame
        Copy of ``results`` with ``symbol_column``; identifiers without a
        symbol get an empty string and all rows are kept
    """
    if id_column not in results.columns:
        raise ValueError(f"Identifier column '{id_column}' not found in results")

    if isinstance(annotation, pd.DataFrame):
        symbol_map = build_symbol_map(annotation)
    else:
        symbol_map = dict(annotation)

    annotated = results.copy()
    annotated[symbol_column] = (
        annotated[id_column].map(strip_version).map(symbol_map).fillna("").astype(str)
    )

    n_missing = int((annotated[symbol_column] == "").sum())
    if n_missing:
        print(f"  {n_missing}/{len(annotated)} genes without a symbol")
    return annotated


def symbols_for(gene_ids: List[str], symbol_map: Dict[str, str]) -> List[str]:
    """Symbols for the given identifiers, skipping unresolved ones."""
    symbols = []
    for gene_id in gene_ids:
        symbol = symbol_map.get(strip_version(gene_id), "")
        if symbol:
            symbols.append(symbol)
    return symbols
