"""
Data Import Module for FAMe Transcriptomics Toolkit

Functions for loading count matrices and phenotype tables and for merging
the two collection batches into one aligned dataset.
"""

import os
import re
import pandas as pd
import numpy as np
from typing import Dict, List, Optional, Tuple

from .validation import align_metadata_to_counts, validate_count_matrix

# Cell values that the phenotype spreadsheets use for "not measured"
PHENOTYPE_NA_VALUES = ["", "NA", "?", "#VALUE!"]


def _detect_separator(path: str) -> str:
    """Guess the field separator from the file extension."""
    lower = path.lower()
    if lower.endswith(('.tsv', '.tsv.gz', '.txt', '.txt.gz', '.tab')):
        return "\t"
    return ","


def load_count_matrix(
    path: str,
    gene_column: Optional[str] = None,
    sep: Optional[str] = None,
    drop_columns: Optional[List[str]] = None,
    round_counts: bool = False
) -> pd.DataFrame:
    """
    Load a gene x sample read count table.

    The table must already hold complete, non-negative integer counts.
    Missing cells and fractional values are errors unless ``round_counts``
    is set, in which case missing cells become 0 and fractional values
    (e.g. estimated counts from a pseudo-aligner) are rounded.

    Parameters:
    -----------
    path : str
        Delimited text file, one row per gene
    gene_column : str, optional
        Column holding gene identifiers. Defaults to the first column.
    sep : str, optional
        Field separator; guessed from the extension if not given
    drop_columns : list, optional
        Non-count columns to discard (e.g. gene length, biotype)
    round_counts : bool
        Zero-fill missing cells and round to whole counts before validation

    Returns:
    --------
    pd.DataFrame
        Integer counts indexed by gene id
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Count file not found: {path}")

    if sep is None:
        sep = _detect_separator(path)

    try:
        raw = pd.read_csv(path, sep=sep)
    except Exception as e:
        raise ValueError(f"Error loading count file: {e}")

    if gene_column is None:
        gene_column = raw.columns[0]
    if gene_column not in raw.columns:
        raise ValueError(f"Gene column '{gene_column}' not found in {path}")

    counts = raw.set_index(gene_column)
    if drop_columns:
        counts = counts.drop(columns=[c for c in drop_columns if c in counts.columns])

    # Anything non-numeric left over is annotation, not counts
    non_numeric = counts.select_dtypes(exclude=[np.number]).columns.tolist()
    if non_numeric:
        print(f"  Ignoring non-numeric columns: {non_numeric}")
        counts = counts.drop(columns=non_numeric)

    counts.index = counts.index.astype(str)
    counts.index.name = "gene_id"
    if round_counts:
        counts = counts.fillna(0).round()
    validate_count_matrix(counts)
    counts = counts.astype(np.int64)

    print(f"✓ Loaded count matrix: {counts.shape[0]} genes x {counts.shape[1]} samples")
    return counts


def load_phenotype_table(
    path: str,
    sample_column: str,
    sheet_name=0,
    columns: Optional[List[str]] = None
) -> pd.DataFrame:
    """
    Load a phenotype spreadsheet or delimited table indexed by sample id.

    Empty cells, "NA", "?" and "#VALUE!" are read as missing and string
    cells are whitespace-trimmed.

    Parameters:
    -----------
    path : str
        .xlsx/.xls spreadsheet or delimited text file
    sample_column : str
        Column holding sample identifiers
    sheet_name : str or int
        Spreadsheet sheet to read
    columns : list, optional
        Subset of columns to keep (sample_column is always kept)
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Phenotype file not found: {path}")

    if path.lower().endswith(('.xlsx', '.xls')):
        pheno = pd.read_excel(path, sheet_name=sheet_name, na_values=PHENOTYPE_NA_VALUES)
    else:
        pheno = pd.read_csv(
            path, sep=_detect_separator(path), na_values=PHENOTYPE_NA_VALUES,
            skipinitialspace=True
        )

    pheno.columns = [str(c).strip() for c in pheno.columns]
    for col in pheno.select_dtypes(include=["object"]).columns:
        pheno[col] = pheno[col].map(lambda v: v.strip() if isinstance(v, str) else v)
        pheno[col] = pheno[col].replace(PHENOTYPE_NA_VALUES, np.nan)
        # Columns that were text only because of padding become numeric again
        converted = pd.to_numeric(pheno[col], errors="coerce")
        if col != sample_column and converted.notna().sum() == pheno[col].notna().sum():
            pheno[col] = converted

    if sample_column not in pheno.columns:
        raise ValueError(f"Sample column '{sample_column}' not found in {path}")

    if columns:
        missing = [c for c in columns if c not in pheno.columns]
        if missing:
            raise ValueError(f"Requested phenotype columns not found: {missing}")
        keep = [sample_column] + [c for c in columns if c != sample_column]
        pheno = pheno[keep]

    pheno = pheno.dropna(subset=[sample_column])
    pheno[sample_column] = pheno[sample_column].astype(str).str.strip()
    pheno = pheno.set_index(sample_column)

    if pheno.index.duplicated().any():
        dups = pheno.index[pheno.index.duplicated()].unique().tolist()
        raise ValueError(f"Duplicated sample ids in phenotype table: {dups[:5]}")

    print(f"✓ Loaded phenotype table: {pheno.shape[0]} samples x {pheno.shape[1]} columns")
    return pheno


def merge_count_matrices(
    counts_a: pd.DataFrame,
    counts_b: pd.DataFrame
) -> pd.DataFrame:
    """
    Full outer join of two count matrices on gene id.

    A gene measured in only one batch gets 0 counts in the other batch's
    samples; absence of reads is treated as a true zero.

    Parameters:
    -----------
    counts_a, counts_b : pd.DataFrame
        Count matrices (genes x samples) with disjoint sample ids

    Returns:
    --------
    pd.DataFrame
        Integer count matrix over the union of genes, columns of ``counts_a``
        followed by those of ``counts_b``
    """
    validate_count_matrix(counts_a)
    validate_count_matrix(counts_b)
    overlap = set(counts_a.columns) & set(counts_b.columns)
    if overlap:
        raise ValueError(f"Sample ids present in both count matrices: {sorted(overlap)[:5]}")

    # Cells missing after the join are genes absent from one batch
    merged = counts_a.join(counts_b, how="outer")
    merged = merged.fillna(0).astype(np.int64)
    merged.index.name = counts_a.index.name or "gene_id"

    only_a = len(counts_a.index.difference(counts_b.index))
    only_b = len(counts_b.index.difference(counts_a.index))
    print("Merging count matrices:")
    print(f"  Batch A: {counts_a.shape[0]} genes x {counts_a.shape[1]} samples")
    print(f"  Batch B: {counts_b.shape[0]} genes x {counts_b.shape[1]} samples")
    print(f"  Genes only in A: {only_a}, only in B: {only_b} (zero-filled)")
    print(f"  Merged: {merged.shape[0]} genes x {merged.shape[1]} samples")

    return merged


def merge_phenotype_tables(
    pheno_a: pd.DataFrame,
    pheno_b: pd.DataFrame,
    batch_labels: Tuple[str, str] = ("batch1", "batch2"),
    batch_column: str = "batch"
) -> pd.DataFrame:
    """
    Stack two phenotype tables and record which collection batch each sample
    came from. Columns present in only one table are kept and left missing
    for the other batch.
    """
    overlap = set(pheno_a.index) & set(pheno_b.index)
    if overlap:
        raise ValueError(f"Sample ids present in both phenotype tables: {sorted(overlap)[:5]}")

    a = pheno_a.copy()
    b = pheno_b.copy()
    a[batch_column] = batch_labels[0]
    b[batch_column] = batch_labels[1]

    merged = pd.concat([a, b], axis=0, sort=False)
    merged[batch_column] = pd.Categorical(merged[batch_column], categories=list(batch_labels))
    return merged


def merge_cohorts(
    counts_a: pd.DataFrame,
    pheno_a: pd.DataFrame,
    counts_b: pd.DataFrame,
    pheno_b: pd.DataFrame,
    batch_labels: Tuple[str, str] = ("batch1", "batch2"),
    batch_column: str = "batch",
    drop_unmatched: bool = True
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Merge two cohorts into one count matrix and an aligned metadata table.

    Returns:
    --------
    counts : pd.DataFrame
        Merged integer count matrix
    metadata : pd.DataFrame
        Metadata whose index equals ``counts.columns`` in order
    """
    print("=== MERGING COHORTS ===\n")
    counts = merge_count_matrices(counts_a, counts_b)
    pheno = merge_phenotype_tables(pheno_a, pheno_b, batch_labels, batch_column)
    metadata = align_metadata_to_counts(counts, pheno, drop_unmatched=drop_unmatched)
    return counts, metadata


def load_deconvolution_fractions(
    path: str,
    sample_column: str,
    normalize: bool = True
) -> pd.DataFrame:
    """
    Load estimated cell-type fractions (one row per sample, one column per
    cell type). With ``normalize`` the fractions of each sample sum to 1.
    """
    fractions = load_phenotype_table(path, sample_column)
    fractions = fractions.select_dtypes(include=[np.number])
    if (fractions < 0).any().any():
        raise ValueError("Cell-type fractions must be non-negative")
    if normalize:
        totals = fractions.sum(axis=1).replace(0, np.nan)
        fractions = fractions.div(totals, axis=0)
    return fractions


def load_motif_enrichment_table(path: str) -> pd.DataFrame:
    """
    Read a known-motif enrichment table produced by an external tool
    (HOMER ``knownResults.txt`` layout) into a tidy frame.

    Returns:
    --------
    pd.DataFrame
        Columns: term, regulator, p_value, log_p_value, q_value, plus any
        target/background percentage columns present in the input
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Motif enrichment file not found: {path}")

    raw = pd.read_csv(path, sep="\t")

    rename = {}
    for col in raw.columns:
        lower = col.lower()
        if lower.startswith("motif name"):
            rename[col] = "term"
        elif lower == "p-value":
            rename[col] = "p_value_text"
        elif lower.startswith("log p-value"):
            rename[col] = "log_p_value"
        elif lower.startswith("q-value"):
            rename[col] = "q_value"
        elif lower.startswith("% of target"):
            rename[col] = "target_percent"
        elif lower.startswith("% of background"):
            rename[col] = "background_percent"
    table = raw.rename(columns=rename)

    if "term" not in table.columns:
        raise ValueError("Motif enrichment table has no 'Motif Name' column")

    # HOMER writes p-values as strings like "1e-30"; log p-value is natural log
    if "log_p_value" in table.columns:
        table["log_p_value"] = pd.to_numeric(table["log_p_value"], errors="coerce")
        table["p_value"] = np.exp(table["log_p_value"])
    elif "p_value_text" in table.columns:
        table["p_value"] = pd.to_numeric(table["p_value_text"], errors="coerce")
        table["log_p_value"] = np.log(table["p_value"])
    if "q_value" in table.columns:
        table["q_value"] = pd.to_numeric(table["q_value"], errors="coerce")
    for col in ["target_percent", "background_percent"]:
        if col in table.columns:
            table[col] = pd.to_numeric(
                table[col].astype(str).str.rstrip("%"), errors="coerce"
            )

    table["regulator"] = table["term"].map(parse_motif_regulator)

    keep = [c for c in ["term", "regulator", "p_value", "log_p_value", "q_value",
                        "target_percent", "background_percent"] if c in table.columns]
    return table[keep].reset_index(drop=True)


def parse_motif_regulator(motif_name: str) -> str:
    """
    Extract the transcription factor name from a HOMER motif label, e.g.
    ``"ERE(NR),IR3/MCF7-ERa-ChIP-Seq(Unpublished)/Homer"`` -> ``"ERE"``.
    """
    if pd.isna(motif_name):
        return ""
    first = str(motif_name).split("/")[0]
    match = re.match(r"^([^(,]+)", first)
    return match.group(1).strip() if match else first.strip()


def summarize_dataset(counts: pd.DataFrame, metadata: pd.DataFrame) -> Dict[str, object]:
    """Short numeric description of a loaded dataset."""
    library_sizes = counts.sum(axis=0)
    return {
        "n_genes": counts.shape[0],
        "n_samples": counts.shape[1],
        "min_library_size": int(library_sizes.min()) if len(library_sizes) else 0,
        "max_library_size": int(library_sizes.max()) if len(library_sizes) else 0,
        "zero_genes": int((counts.sum(axis=1) == 0).sum()),
        "metadata_columns": metadata.columns.tolist(),
    }
