"""
Tests for fame_toolkit.normalization module
"""

import numpy as np
import pandas as pd
import pytest
from scipy.stats import spearmanr

from fame_toolkit.normalization import (
    get_transform_characteristics,
    is_transform_log_scale,
    variance_stabilizing_transform,
    log_transform,
    remove_batch_effect,
)
from fame_toolkit.preprocessing import normalize_counts


class TestTransformCharacteristics:

    def test_known_transforms(self):
        assert set(get_transform_characteristics()) == {"vst", "log2", "normalized"}
        assert is_transform_log_scale("vst")
        assert not is_transform_log_scale("normalized")

    def test_unknown_transform(self):
        with pytest.raises(ValueError):
            is_transform_log_scale("rlog")


class TestTransforms:
    """Test expression transforms"""

    def test_vst_shape_and_monotone(self, de_dataset):
        counts, _ = de_dataset
        vst = variance_stabilizing_transform(counts, verbose=False)
        assert vst.shape == counts.shape
        assert list(vst.columns) == list(counts.columns)
        assert np.isfinite(vst.to_numpy()).all()

        gene = counts.index[20]
        order = normalize_counts(counts).loc[gene].sort_values().index
        assert vst.loc[gene, order].is_monotonic_increasing

    def test_vst_decouples_spread_from_mean(self, de_dataset):
        counts, _ = de_dataset
        null_counts = counts.iloc[10:]
        normalized = normalize_counts(null_counts)
        vst = variance_stabilizing_transform(null_counts, verbose=False)

        raw_rho, _ = spearmanr(normalized.mean(axis=1), normalized.std(axis=1))
        vst_rho, _ = spearmanr(vst.mean(axis=1), vst.std(axis=1))
        assert raw_rho > 0.85
        assert vst_rho < 0.6

    def test_vst_with_design_formula(self, de_dataset):
        counts, metadata = de_dataset
        vst = variance_stabilizing_transform(
            counts, metadata=metadata, design_formula="~ batch + group", verbose=False
        )
        assert vst.shape == counts.shape
        assert np.isfinite(vst.to_numpy()).all()

    def test_vst_formula_needs_metadata(self, de_dataset):
        counts, _ = de_dataset
        with pytest.raises(ValueError, match="metadata is required"):
            variance_stabilizing_transform(counts, design_formula="~ group", verbose=False)

    def test_log_transform(self):
        data = pd.DataFrame({"S1": [0.0, 1.0, 3.0]})
        assert log_transform(data, verbose=False)["S1"].tolist() == pytest.approx([0.0, 1.0, 2.0])
        assert log_transform(data, base="ln", verbose=False)["S1"].iloc[1] == pytest.approx(np.log(2))
        with pytest.raises(ValueError):
            log_transform(data, base="log3")


class TestRemoveBatchEffect:
    """Test regression of a batch factor out of expression values"""

    def test_batch_shift_removed_design_kept(self, de_dataset):
        _, metadata = de_dataset
        rng = np.random.default_rng(9)
        expression = pd.DataFrame(
            rng.normal(0, 0.1, (30, len(metadata))), columns=metadata.index
        )
        expression.loc[:, metadata["batch"] == "batch2"] += 3.0
        expression.loc[:, metadata["group"] == "B"] += 1.0

        corrected = remove_batch_effect(expression, metadata, "batch", design_columns=["group"])

        by_batch = corrected.T.groupby(metadata["batch"]).mean().T
        assert (by_batch["batch1"] - by_batch["batch2"]).abs().max() < 0.2
        by_group = corrected.T.groupby(metadata["group"]).mean().T
        assert (by_group["B"] - by_group["A"]).mean() == pytest.approx(1.0, abs=0.1)

    def test_single_level_unchanged(self, de_dataset):
        _, metadata = de_dataset
        metadata = metadata.assign(batch="batch1")
        expression = pd.DataFrame(np.ones((3, len(metadata))), columns=metadata.index)
        pd.testing.assert_frame_equal(remove_batch_effect(expression, metadata, "batch"), expression)

    def test_missing_batch_column(self, de_dataset):
        _, metadata = de_dataset
        expression = pd.DataFrame(np.ones((3, len(metadata))), columns=metadata.index)
        with pytest.raises(ValueError, match="not found"):
            remove_batch_effect(expression, metadata, "plate")
