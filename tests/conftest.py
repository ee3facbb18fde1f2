"""
Pytest configuration and fixtures for fame_toolkit tests
"""

import os
import shutil
import tempfile

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from fame_toolkit.statistical_analysis import StatisticalConfig, ModelDesign, fit_negative_binomial_glm

N_GENES = 100
N_SAMPLES = 20
DE_GENES = [f"ENSG{i:011d}" for i in range(1, 11)]


def _nb_draw(rng, mean, dispersion, size):
    """Negative binomial counts with variance mean + dispersion * mean^2."""
    n = 1.0 / dispersion
    p = 1.0 / (1.0 + dispersion * mean)
    return rng.negative_binomial(n, p, size=size)


def make_de_dataset(seed=42):
    """
    100 genes x 20 samples, groups A and B of 10.

    Genes 1-10 have a 4-fold higher mean in group B. For all other genes the
    group B counts are a shuffled copy of the group A counts, so the two
    groups have identical count distributions.
    """
    rng = np.random.default_rng(seed)
    gene_ids = [f"ENSG{i:011d}" for i in range(1, N_GENES + 1)]
    samples = [f"S{i:02d}" for i in range(1, N_SAMPLES + 1)]
    half = N_SAMPLES // 2

    values = np.zeros((N_GENES, N_SAMPLES), dtype=np.int64)
    for g in range(N_GENES):
        if g < 10:
            values[g, :half] = _nb_draw(rng, 100.0, 0.1, half)
            values[g, half:] = _nb_draw(rng, 400.0, 0.1, half)
        else:
            mean = rng.uniform(50, 500)
            group_a = _nb_draw(rng, mean, 0.1, half)
            values[g, :half] = group_a
            values[g, half:] = rng.permutation(group_a)

    counts = pd.DataFrame(values, index=pd.Index(gene_ids, name="gene_id"), columns=samples)
    metadata = pd.DataFrame(
        {
            "group": ["A"] * half + ["B"] * half,
            "age": rng.uniform(20, 70, N_SAMPLES).round(1),
            "batch": ["batch1", "batch2"] * half,
        },
        index=samples,
    )
    return counts, metadata


@pytest.fixture
def de_dataset():
    """Synthetic count matrix with ten differentially expressed genes"""
    return make_de_dataset()


@pytest.fixture(scope="session")
def group_wald_results():
    """Wald results for the group predictor, fitted once per session"""
    counts, metadata = make_de_dataset()
    design = ModelDesign(predictor="group", test="wald")
    return fit_negative_binomial_glm(counts, metadata, design, StatisticalConfig(), verbose=False)


@pytest.fixture(scope="session")
def group_lrt_results():
    """LRT results for the group predictor, fitted once per session"""
    counts, metadata = make_de_dataset()
    design = ModelDesign(predictor="group", test="lrt")
    return fit_negative_binomial_glm(counts, metadata, design, StatisticalConfig(), verbose=False)


@pytest.fixture
def statistical_config():
    """Default statistical configuration"""
    return StatisticalConfig()


@pytest.fixture
def pattern_dataset():
    """
    Expression matrix with 50 genes rising across five ordered groups and 50
    flat genes, 8 samples per group.
    """
    rng = np.random.default_rng(7)
    levels = ["18-30", "31-40", "41-50", "51-60", "61-70"]
    samples = [f"P{i:02d}" for i in range(len(levels) * 8)]
    groups = [level for level in levels for _ in range(8)]
    group_index = np.repeat(np.arange(len(levels)), 8).astype(float)

    rising = group_index[None, :] + rng.normal(0, 0.1, (50, len(samples)))
    flat = 5.0 + rng.normal(0, 0.1, (50, len(samples)))

    genes = [f"rise_{i}" for i in range(50)] + [f"flat_{i}" for i in range(50)]
    expression = pd.DataFrame(np.vstack([rising, flat]), index=genes, columns=samples)
    metadata = pd.DataFrame(
        {"age_category": pd.Categorical(groups, categories=levels, ordered=True)},
        index=samples,
    )
    return expression, metadata, levels


@pytest.fixture
def model_results():
    """Small ModelResult-shaped table"""
    return pd.DataFrame({
        "gene_id": ["ENSG00000000001.3", "ENSG00000000002", "ENSG00000000003", "ENSG00000000004"],
        "baseMean": [120.0, 80.0, 300.0, 50.0],
        "logFC": [2.1, -1.5, 0.1, np.nan],
        "lfcSE": [0.2, 0.3, 0.2, np.nan],
        "stat": [10.5, -5.0, 0.5, np.nan],
        "P.Value": [1e-20, 1e-6, 0.6, np.nan],
        "adj.P.Val": [4e-20, 2e-6, 0.6, np.nan],
        "Significant": [True, True, False, False],
        "test_method": ["NB GLM Wald"] * 3 + ["Failed: All-zero counts"],
        "predictor": ["age"] * 4,
    })


@pytest.fixture
def temp_dir():
    """Temporary directory removed after the test"""
    path = tempfile.mkdtemp()
    yield path
    shutil.rmtree(path)


@pytest.fixture
def temp_count_files(temp_dir):
    """Two batches of count and phenotype files"""
    counts_a = pd.DataFrame({
        "gene_id": ["G1", "G2", "G3"],
        "A1": [10, 0, 5],
        "A2": [12, 3, 7],
    })
    counts_b = pd.DataFrame({
        "gene_id": ["G2", "G3", "G4"],
        "B1": [4, 6, 9],
    })
    pheno_a = pd.DataFrame({
        "sample": ["A1", "A2"],
        "age": [25, "?"],
        "menopause": [" pre", "pre "],
    })
    pheno_b = pd.DataFrame({
        "sample": ["B1"],
        "age": [55],
        "menopause": ["post"],
    })

    paths = {
        "counts_a": os.path.join(temp_dir, "counts_a.csv"),
        "counts_b": os.path.join(temp_dir, "counts_b.tsv"),
        "pheno_a": os.path.join(temp_dir, "pheno_a.csv"),
        "pheno_b": os.path.join(temp_dir, "pheno_b.csv"),
    }
    counts_a.to_csv(paths["counts_a"], index=False)
    counts_b.to_csv(paths["counts_b"], sep="\t", index=False)
    pheno_a.to_csv(paths["pheno_a"], index=False)
    pheno_b.to_csv(paths["pheno_b"], index=False)
    return paths
