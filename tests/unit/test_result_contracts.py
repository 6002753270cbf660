from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from ctsvg.core.result import (
    CellTypeTestResult,
    IndividualTestResult,
    OverallTestResult,
    TopGenesResult,
    VarianceComponentResult,
)


def _overall() -> OverallTestResult:
    return OverallTestResult(
        gene_names=["a", "b", "c", "d"],
        statistics=np.array([3.0, np.nan, 10.0, 1.0]),
        pvalues=np.array([0.04, np.nan, 0.001, 0.6]),
        pvalues_adj=np.array([0.08, np.nan, 0.004, 0.6]),
        status=np.array(["ok", "degenerate", "ok", "ok"], dtype=object),
    )


def test_spatial_result_counts_and_significance() -> None:
    result = _overall()
    assert result.n_tested == 3
    assert result.n_failed == 1
    assert result.status_counts() == {"ok": 3, "degenerate": 1}
    assert result.significant_genes() == ["c"]
    assert result.significant_genes(adjusted=False) == ["a", "c"]


def test_to_dataframe_sorted_with_nan_last() -> None:
    df = _overall().to_dataframe()
    assert list(df.index) == ["c", "a", "d", "b"]
    assert list(df.columns) == ["gene", "statistic", "p_value", "p_value_adj", "status"]
    assert list(_overall().to_dataframe(sort=False).index) == ["a", "b", "c", "d"]


def test_length_mismatch_raises() -> None:
    with pytest.raises(ValueError, match="pvalues length"):
        OverallTestResult(
            gene_names=["a", "b"],
            statistics=np.ones(2),
            pvalues=np.ones(3),
            pvalues_adj=np.ones(2),
            status=np.array(["ok", "ok"], dtype=object),
        )


def _cell_type(cell_type: str, genes: list[str]) -> CellTypeTestResult:
    n = len(genes)
    return CellTypeTestResult(
        gene_names=genes,
        statistics=np.ones(n),
        pvalues=np.full(n, 0.5),
        pvalues_adj=np.full(n, 0.5),
        status=np.array(["ok"] * n, dtype=object),
        cell_type=cell_type,
    )


def test_individual_merge_replaces_rerun_cell_types() -> None:
    first = IndividualTestResult({"A": _cell_type("A", ["g1"]), "B": _cell_type("B", ["g1"])})
    second = IndividualTestResult({"B": _cell_type("B", ["g1", "g2"]), "C": _cell_type("C", ["g2"])})
    merged = first.merge(second)
    assert merged.cell_types == ["A", "B", "C"]
    assert merged["B"].gene_names == ["g1", "g2"]
    assert IndividualTestResult({}).to_dataframe().empty


def test_cell_type_merge_keeps_earlier_genes_and_readjusts() -> None:
    first = CellTypeTestResult(
        gene_names=["g1", "g2"], statistics=np.array([5.0, 1.0]),
        pvalues=np.array([0.001, 0.5]), pvalues_adj=np.array([0.002, 0.5]),
        status=np.array(["ok", "ok"], dtype=object), adjust_method="bh", cell_type="A",
    )
    second = CellTypeTestResult(
        gene_names=["g2", "g3"], statistics=np.array([2.0, np.nan]),
        pvalues=np.array([0.02, np.nan]), pvalues_adj=np.array([0.04, np.nan]),
        status=np.array(["ok", "degenerate"], dtype=object), adjust_method="bh", cell_type="A",
    )
    merged = first.merge(second)

    assert merged.gene_names == ["g1", "g2", "g3"]
    np.testing.assert_allclose(merged.statistics, [5.0, 2.0, np.nan])
    np.testing.assert_allclose(merged.pvalues_adj, [0.002, 0.02, np.nan])
    assert list(merged.status) == ["ok", "ok", "degenerate"]
    assert merged.n_tested == 2
    with pytest.raises(ValueError, match="Cannot merge"):
        first.merge(_cell_type("B", ["g1"]))


def _varcomp(genes: list[str], components: np.ndarray) -> VarianceComponentResult:
    n = len(genes)
    return VarianceComponentResult(
        gene_names=genes,
        cell_types=["A", "B"],
        components=components,
        scale=np.array([0.5, 0.25, 1.0]),
        n_iter=np.full(n, 3),
        status=np.array(["ok"] * n, dtype=object),
    )


def test_variance_component_contributions_and_shares() -> None:
    result = _varcomp(["g1"], np.array([[2.0, 4.0, 1.0]]))
    np.testing.assert_allclose(result.contributions, [[1.0, 1.0, 1.0]])
    np.testing.assert_allclose(result.shares, [[1 / 3, 1 / 3, 1 / 3]])
    assert result.component_names == ["A", "B", "residual"]

    df = result.to_dataframe("contributions")
    assert list(df.columns) == ["A", "B", "residual", "status"]
    assert df.index.name == "gene"
    with pytest.raises(ValueError, match="Unknown kind"):
        result.to_dataframe("bad")


def test_variance_component_validation() -> None:
    with pytest.raises(ValueError, match="non-negative"):
        _varcomp(["g1"], np.array([[-0.1, 0.0, 1.0]]))
    with pytest.raises(ValueError, match="shape"):
        _varcomp(["g1"], np.array([[0.1, 1.0]]))


def test_variance_component_merge() -> None:
    first = _varcomp(["g1", "g2"], np.array([[1.0, 0.0, 1.0], [0.0, 1.0, 1.0]]))
    second = _varcomp(["g2", "g3"], np.array([[2.0, 2.0, 2.0], [0.0, 0.0, 1.0]]))
    merged = first.merge(second)
    assert merged.gene_names == ["g1", "g2", "g3"]
    np.testing.assert_allclose(merged.components[1], [2.0, 2.0, 2.0])


def test_top_genes_result_validates_row_order() -> None:
    decomposition = pd.DataFrame({"A": [0.7, 0.2]}, index=["g2", "g1"])
    top = TopGenesResult(cell_type="A", genes=["g2", "g1"], decomposition=decomposition)
    assert len(top) == 2
    assert list(top.to_dataframe()["rank"]) == [1, 2]
    with pytest.raises(ValueError, match="gene order"):
        TopGenesResult(cell_type="A", genes=["g1", "g2"], decomposition=decomposition)
