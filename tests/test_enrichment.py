"""
Tests for fame_toolkit.enrichment module
"""

import json
import os
from unittest.mock import MagicMock, patch

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest
from matplotlib.figure import Figure

from fame_toolkit.enrichment import (
    EnrichmentConfig,
    load_gene_sets,
    gene_sets_from_table,
    rank_genes,
    storey_qvalues,
    run_over_representation,
    run_ranked_enrichment,
    query_enrichr,
    parse_enrichr_results,
    run_enrichment_analysis,
    run_enrichment_by_group,
    split_by_direction,
    merge_enrichment_results,
    plot_enrichment_barplot,
    plot_enrichment_dotplot,
)
from fame_toolkit.validation import EnrichmentUniverseEmptyError


UNIVERSE = [f"G{i:03d}" for i in range(200)]


@pytest.fixture
def gene_sets():
    return {
        "muscle_contraction": UNIVERSE[:20],
        "estrogen_response": UNIVERSE[20:40],
        "mixed": UNIVERSE[10:30],
        "tiny": UNIVERSE[50:53],
        "huge": UNIVERSE[:190],
        "outside": [f"X{i}" for i in range(30)],
    }


class TestGeneSetLoading:
    """Test GMT and table gene set loaders"""

    def test_load_gmt(self, temp_dir):
        path = os.path.join(temp_dir, "sets.gmt")
        with open(path, "w") as handle:
            handle.write("HALLMARK_ESTROGEN\thttp://x\tESR1\tPGR\tPGR\tGREB1\n")
            handle.write("HALLMARK_MYOGENESIS\tna\tMYOD1\tMYH7\n")
            handle.write("HALLMARK_ESTROGEN\tdup\tXXX\n")
            handle.write("broken_line\n")
        gene_sets = load_gene_sets(path)
        assert gene_sets == {
            "HALLMARK_ESTROGEN": ["ESR1", "PGR", "GREB1"],
            "HALLMARK_MYOGENESIS": ["MYOD1", "MYH7"],
        }

    def test_missing_gmt(self):
        with pytest.raises(FileNotFoundError):
            load_gene_sets("/nonexistent/sets.gmt")

    def test_from_table(self):
        table = pd.DataFrame({
            "term": ["A", "A", "B", "A"],
            "gene": ["g1", "g2", "g3", "g1"],
        })
        assert gene_sets_from_table(table) == {"A": ["g1", "g2"], "B": ["g3"]}


class TestRankGenes:

    def test_logfc_ranking(self, model_results):
        ranking = rank_genes(model_results)
        assert ranking.index[0] == "ENSG00000000001.3"
        assert ranking.index[-1] == "ENSG00000000002"
        # Untested genes are excluded
        assert "ENSG00000000004" not in ranking.index

    def test_signed_p_ranking(self, model_results):
        ranking = rank_genes(model_results, metric="signed_p")
        assert ranking.iloc[0] == pytest.approx(20.0)
        assert ranking.iloc[-1] < 0

    def test_unknown_metric(self, model_results):
        with pytest.raises(ValueError):
            rank_genes(model_results, metric="stat")


class TestOverRepresentation:
    """Test the hypergeometric over-representation test"""

    def test_identical_set_most_significant(self, gene_sets):
        result = run_over_representation(UNIVERSE[:20], UNIVERSE, gene_sets, filter_results=False)
        top = result.iloc[0]
        assert top["Term"] == "muscle_contraction"
        assert top["Overlap"] == 20
        assert top["GeneRatio"] == "20/20"
        assert top["BgRatio"] == "20/200"
        assert top["Fold_Enrichment"] == pytest.approx(10.0)
        assert top["P_Value"] < 1e-20

    def test_disjoint_set_not_enriched(self, gene_sets):
        result = run_over_representation(UNIVERSE[:20], UNIVERSE, gene_sets, filter_results=False)
        disjoint = result.set_index("Term").loc["estrogen_response"]
        assert disjoint["Overlap"] == 0
        assert disjoint["P_Value"] == pytest.approx(1.0)
        assert disjoint["Genes"] == ""

    def test_size_bounds(self, gene_sets):
        result = run_over_representation(UNIVERSE[:20], UNIVERSE, gene_sets, filter_results=False)
        terms = set(result["Term"])
        assert "tiny" not in terms
        assert "outside" not in terms
        config = EnrichmentConfig(max_size_ora=100)
        result = run_over_representation(UNIVERSE[:20], UNIVERSE, gene_sets, config, filter_results=False)
        assert "huge" not in set(result["Term"])

    def test_query_restricted_to_universe(self, gene_sets):
        result = run_over_representation(
            UNIVERSE[:20] + ["NOT_IN_UNIVERSE"], UNIVERSE, gene_sets, filter_results=False
        )
        assert (result["Query_Size"] == 20).all()

    def test_filtering(self, gene_sets):
        result = run_over_representation(UNIVERSE[:20], UNIVERSE, gene_sets)
        assert (result["P_Value"] <= 0.05).all()
        assert (result["Q_Value"] <= 0.2).all()
        assert "estrogen_response" not in set(result["Term"])

    def test_qvalues_bounded(self, gene_sets):
        result = run_over_representation(UNIVERSE[:15], UNIVERSE, gene_sets, filter_results=False)
        assert (result["Q_Value"] <= 1).all()
        assert (result["Q_Value"] <= result["Adj_P_Value"] + 1e-12).all()

    def test_empty_universe(self, gene_sets):
        with pytest.raises(EnrichmentUniverseEmptyError):
            run_over_representation(UNIVERSE[:20], [], gene_sets)

    def test_no_testable_sets(self):
        result = run_over_representation(UNIVERSE[:20], UNIVERSE, {"tiny": UNIVERSE[:2]})
        assert result.empty
        assert "Q_Value" in result.columns

    def test_storey_pi0(self):
        pvalues = np.array([0.001, 0.01, 0.9, 0.95])
        q = storey_qvalues(pvalues)
        expected = np.array([0.004, 0.02, 0.95, 0.95])
        # pi0 = (2/4) / 0.5 = 1
        assert q == pytest.approx(expected)
        assert len(storey_qvalues(np.array([]))) == 0


class TestRankedEnrichment:
    """Test preranked enrichment with a mocked gseapy backend"""

    @patch("fame_toolkit.enrichment.gp.prerank")
    def test_columns_renamed(self, mock_prerank, gene_sets):
        mock_prerank.return_value = MagicMock(res2d=pd.DataFrame({
            "Name": ["prerank", "prerank"],
            "Term": ["muscle_contraction", "estrogen_response"],
            "ES": ["0.8", "-0.5"],
            "NES": ["2.1", "-1.4"],
            "NOM p-val": ["0.001", "0.04"],
            "FDR q-val": ["0.002", "0.1"],
            "Lead_genes": ["G000;G001", "G020"],
        }))
        ranking = pd.Series(np.linspace(3, -3, 200), index=UNIVERSE)

        result = run_ranked_enrichment(ranking, gene_sets, EnrichmentConfig(permutations=100), verbose=False)

        assert list(result.columns) == ["Term", "ES", "NES", "P_Value", "Q_Value", "Lead_Genes"]
        assert result.loc[0, "Term"] == "muscle_contraction"
        assert result["NES"].dtype == float
        kwargs = mock_prerank.call_args.kwargs
        assert kwargs["max_size"] == 2000
        assert kwargs["permutation_num"] == 100
        assert kwargs["outdir"] is None

    def test_empty_ranking(self, gene_sets):
        with pytest.raises(EnrichmentUniverseEmptyError):
            run_ranked_enrichment(pd.Series(dtype=float), gene_sets, verbose=False)


class TestEnrichr:
    """Test the Enrichr backend with mocked HTTP calls"""

    ENRICHR_RESPONSE = {
        "KEGG_2021_Human": [
            [1, "Estrogen signaling pathway", 1e-5, 3.2, 40.5, ["ESR1", "PGR"], 1e-4],
            [2, "Unrelated pathway", 0.3, 1.0, 1.2, ["MYH7"], 0.6],
        ]
    }

    @patch("fame_toolkit.enrichment.requests.get")
    @patch("fame_toolkit.enrichment.requests.post")
    def test_query_and_parse(self, mock_post, mock_get):
        mock_post.return_value = MagicMock(ok=True, text=json.dumps({"userListId": 7}))
        mock_get.return_value = MagicMock(ok=True, text=json.dumps(self.ENRICHR_RESPONSE))
        config = EnrichmentConfig(enrichr_libraries=["KEGG_2021_Human"], rate_limit_delay=0)

        result = run_enrichment_analysis(["ESR1", "PGR", "MYH7", "GREB1", "ACTA1"], config, verbose=False)

        assert len(result) == 1
        assert result.iloc[0]["Term"] == "Estrogen signaling pathway"
        assert result.iloc[0]["Genes"] == "ESR1;PGR"
        assert mock_get.call_args.kwargs["params"]["userListId"] == 7

    def test_too_few_genes(self):
        assert query_enrichr(["ESR1", None, ""]) == {}

    @patch("fame_toolkit.enrichment.requests.post")
    def test_submission_failure(self, mock_post):
        mock_post.return_value = MagicMock(ok=False, status_code=500)
        config = EnrichmentConfig(rate_limit_delay=0)
        assert query_enrichr(["A", "B", "C", "D", "E"], config) == {}

    def test_parse_empty(self):
        assert parse_enrichr_results({}).empty


class TestGroupedEnrichment:
    """Test per-group enrichment and helpers"""

    def test_by_group(self, gene_sets):
        assignments = pd.DataFrame({
            "gene_id": UNIVERSE[:20] + UNIVERSE[20:40] + UNIVERSE[100:103],
            "Cluster_Name": ["Cluster 1"] * 20 + ["Cluster 2"] * 20 + ["Cluster 3"] * 3,
        })
        results, failures = run_enrichment_by_group(
            assignments, "Cluster_Name", UNIVERSE, gene_sets, verbose=False
        )
        assert failures == {}
        assert results["Cluster 1"].iloc[0]["Term"] == "muscle_contraction"
        assert results["Cluster 2"].iloc[0]["Term"] == "estrogen_response"
        # Too small to test
        assert results["Cluster 3"].empty

    def test_by_group_empty_universe_recorded(self, gene_sets):
        assignments = pd.DataFrame({"gene_id": UNIVERSE[:20], "Cluster_Name": ["Cluster 1"] * 20})
        results, failures = run_enrichment_by_group(
            assignments, "Cluster_Name", [], gene_sets, verbose=False
        )
        assert "Cluster 1" in failures
        assert "Cluster 1" not in results

    def test_split_and_merge(self, model_results, gene_sets):
        split = split_by_direction(model_results)
        assert split["Direction"].tolist() == ["Up", "Down"]

        merged = merge_enrichment_results({
            "Up": run_over_representation(UNIVERSE[:20], UNIVERSE, gene_sets),
            "Down": pd.DataFrame(),
        })
        assert set(merged["Group"]) == {"Up"}


class TestEnrichmentPlots:

    def test_barplot(self, gene_sets):
        result = run_over_representation(UNIVERSE[:20], UNIVERSE, gene_sets, filter_results=False)
        fig = plot_enrichment_barplot(result, title="Cluster 1")
        assert isinstance(fig, Figure)
        plt.close(fig)

    def test_barplot_empty(self):
        assert plot_enrichment_barplot(pd.DataFrame()) is None

    def test_dotplot(self, gene_sets):
        fig = plot_enrichment_dotplot({
            "Cluster 1": run_over_representation(UNIVERSE[:20], UNIVERSE, gene_sets, filter_results=False),
            "Cluster 2": run_over_representation(UNIVERSE[20:40], UNIVERSE, gene_sets, filter_results=False),
        })
        assert isinstance(fig, Figure)
        plt.close(fig)
