"""
Tests for fame_toolkit.data_import module
"""

import os

import numpy as np
import pandas as pd
import pytest

from fame_toolkit.data_import import (
    load_count_matrix,
    load_phenotype_table,
    merge_count_matrices,
    merge_phenotype_tables,
    merge_cohorts,
    load_deconvolution_fractions,
    load_motif_enrichment_table,
    parse_motif_regulator,
    summarize_dataset,
)


class TestLoadCountMatrix:
    """Test count matrix loading"""

    def test_load_csv(self, temp_count_files):
        counts = load_count_matrix(temp_count_files["counts_a"])
        assert counts.shape == (3, 2)
        assert counts.index.name == "gene_id"
        assert counts.loc["G1", "A2"] == 12
        assert counts.dtypes.eq(np.int64).all()

    def test_load_tsv_by_extension(self, temp_count_files):
        counts = load_count_matrix(temp_count_files["counts_b"])
        assert list(counts.columns) == ["B1"]
        assert list(counts.index) == ["G2", "G3", "G4"]

    def test_non_numeric_columns_ignored(self, temp_dir):
        path = os.path.join(temp_dir, "annotated.csv")
        pd.DataFrame({
            "gene_id": ["G1", "G2"],
            "biotype": ["protein_coding", "lncRNA"],
            "S1": [1, 2],
        }).to_csv(path, index=False)
        counts = load_count_matrix(path)
        assert list(counts.columns) == ["S1"]

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_count_matrix("/nonexistent/counts.csv")

    def test_negative_counts_rejected(self, temp_dir):
        path = os.path.join(temp_dir, "bad.csv")
        pd.DataFrame({"gene_id": ["G1"], "S1": [-3]}).to_csv(path, index=False)
        with pytest.raises(ValueError, match="negative"):
            load_count_matrix(path)

    @pytest.fixture
    def estimated_counts_file(self, temp_dir):
        path = os.path.join(temp_dir, "estimated.csv")
        pd.DataFrame({"gene_id": ["G1", "G2"], "S1": [3.7, np.nan], "S2": [4.0, 2.0]}).to_csv(
            path, index=False
        )
        return path

    def test_missing_cells_rejected(self, temp_dir):
        path = os.path.join(temp_dir, "gaps.csv")
        pd.DataFrame({"gene_id": ["G1", "G2"], "S1": [3, np.nan]}).to_csv(path, index=False)
        with pytest.raises(ValueError, match="missing values"):
            load_count_matrix(path)

    def test_fractional_counts_rejected(self, temp_dir):
        path = os.path.join(temp_dir, "fractional.csv")
        pd.DataFrame({"gene_id": ["G1", "G2"], "S1": [3.7, 1.0]}).to_csv(path, index=False)
        with pytest.raises(ValueError, match="non-integer"):
            load_count_matrix(path)

    def test_round_counts_opt_in(self, estimated_counts_file):
        with pytest.raises(ValueError):
            load_count_matrix(estimated_counts_file)
        counts = load_count_matrix(estimated_counts_file, round_counts=True)
        assert counts.loc["G1", "S1"] == 4
        assert counts.loc["G2", "S1"] == 0
        assert counts.dtypes.eq(np.int64).all()


class TestLoadPhenotypeTable:
    """Test phenotype loading and cell cleaning"""

    def test_na_tokens_and_trimming(self, temp_count_files):
        pheno = load_phenotype_table(temp_count_files["pheno_a"], sample_column="sample")
        assert list(pheno.index) == ["A1", "A2"]
        assert pheno.loc["A1", "age"] == 25
        assert np.isnan(pheno.loc["A2", "age"])
        assert pd.api.types.is_numeric_dtype(pheno["age"])
        assert pheno["menopause"].tolist() == ["pre", "pre"]

    def test_column_subset(self, temp_count_files):
        pheno = load_phenotype_table(temp_count_files["pheno_a"], "sample", columns=["age"])
        assert list(pheno.columns) == ["age"]

    def test_missing_sample_column(self, temp_count_files):
        with pytest.raises(ValueError, match="Sample column"):
            load_phenotype_table(temp_count_files["pheno_a"], sample_column="participant")

    def test_duplicate_samples(self, temp_dir):
        path = os.path.join(temp_dir, "dups.csv")
        pd.DataFrame({"sample": ["X", "X"], "age": [1, 2]}).to_csv(path, index=False)
        with pytest.raises(ValueError, match="Duplicated"):
            load_phenotype_table(path, "sample")


class TestMerging:
    """Test merging of the two collection batches"""

    def test_count_merge_zero_fills(self, temp_count_files):
        a = load_count_matrix(temp_count_files["counts_a"])
        b = load_count_matrix(temp_count_files["counts_b"])
        merged = merge_count_matrices(a, b)

        assert merged.shape == (4, 3)
        assert merged.loc["G4", "A1"] == 0
        assert merged.loc["G1", "B1"] == 0
        assert merged.loc["G3", "B1"] == 6
        assert merged.dtypes.eq(np.int64).all()

    def test_overlapping_samples_rejected(self, temp_count_files):
        a = load_count_matrix(temp_count_files["counts_a"])
        with pytest.raises(ValueError, match="both count matrices"):
            merge_count_matrices(a, a)

    def test_invalid_inputs_rejected(self, temp_count_files):
        a = load_count_matrix(temp_count_files["counts_a"])
        negative = pd.DataFrame({"B1": [-1, 4]}, index=pd.Index(["G1", "G2"], name="gene_id"))
        with pytest.raises(ValueError, match="negative"):
            merge_count_matrices(a, negative)
        duplicated = pd.DataFrame({"B1": [1, 4]}, index=pd.Index(["G1", "G1"], name="gene_id"))
        with pytest.raises(ValueError, match="Duplicated gene ids"):
            merge_count_matrices(a, duplicated)

    def test_phenotype_merge_adds_batch(self, temp_count_files):
        a = load_phenotype_table(temp_count_files["pheno_a"], "sample")
        b = load_phenotype_table(temp_count_files["pheno_b"], "sample")
        merged = merge_phenotype_tables(a, b)
        assert merged.loc["B1", "batch"] == "batch2"
        assert list(merged["batch"].cat.categories) == ["batch1", "batch2"]

    def test_merge_cohorts_aligned(self, temp_count_files):
        counts, metadata = merge_cohorts(
            load_count_matrix(temp_count_files["counts_a"]),
            load_phenotype_table(temp_count_files["pheno_a"], "sample"),
            load_count_matrix(temp_count_files["counts_b"]),
            load_phenotype_table(temp_count_files["pheno_b"], "sample"),
        )
        assert list(metadata.index) == list(counts.columns)
        assert metadata.loc["B1", "menopause"] == "post"

    def test_summarize_dataset(self, temp_count_files):
        counts = load_count_matrix(temp_count_files["counts_a"])
        summary = summarize_dataset(counts, pd.DataFrame(index=counts.columns))
        assert summary["n_genes"] == 3
        assert summary["min_library_size"] == 15


class TestExternalTables:
    """Test deconvolution and motif table loaders"""

    def test_deconvolution_fractions_normalized(self, temp_dir):
        path = os.path.join(temp_dir, "fractions.csv")
        pd.DataFrame({
            "sample": ["S1", "S2"],
            "type_I": [2.0, 1.0],
            "type_II": [2.0, 3.0],
        }).to_csv(path, index=False)
        fractions = load_deconvolution_fractions(path, "sample")
        assert fractions.sum(axis=1).tolist() == pytest.approx([1.0, 1.0])
        assert fractions.loc["S2", "type_II"] == pytest.approx(0.75)

    def test_motif_table(self, temp_dir):
        path = os.path.join(temp_dir, "knownResults.txt")
        pd.DataFrame({
            "Motif Name": [
                "ERE(NR),IR3/MCF7-ERa-ChIP-Seq(Unpublished)/Homer",
                "MyoD(bHLH)/Myotube-MyoD-ChIP-Seq(GSE21614)/Homer",
            ],
            "Consensus": ["VAGGTCACNSTGACCTB", "RRCAGCTGYTSY"],
            "P-value": ["1e-10", "1e-3"],
            "Log P-value": [-23.03, -6.908],
            "q-value (Benjamini)": [0.0, 0.05],
            "% of Target Sequences with Motif": ["12.5%", "30.0%"],
        }).to_csv(path, sep="\t", index=False)

        table = load_motif_enrichment_table(path)
        assert table["regulator"].tolist() == ["ERE", "MyoD"]
        assert table.loc[0, "p_value"] == pytest.approx(1e-10, rel=0.01)
        assert table.loc[1, "target_percent"] == 30.0

    @pytest.mark.parametrize("name,expected", [
        ("ERE(NR),IR3/MCF7-ERa-ChIP-Seq(Unpublished)/Homer", "ERE"),
        ("Mef2c(MADS)/HL1-Mef2c.biotin-ChIP-Seq(GSE21529)/Homer", "Mef2c"),
        ("Sp1/Promoter", "Sp1"),
    ])
    def test_parse_motif_regulator(self, name, expected):
        assert parse_motif_regulator(name) == expected
