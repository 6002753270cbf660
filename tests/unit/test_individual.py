from __future__ import annotations

import logging
import threading

import numpy as np
import pytest

from ctsvg.core.errors import ConfigurationError, InputValidationError, UnknownCellTypeError
from ctsvg.core.result import IndividualTestResult
from ctsvg.model import engine
from ctsvg.model.engine import run_individual_test


def test_unknown_cell_type_fails_before_any_work(
    dataset, bundle, monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _fail(*args, **kwargs):  # noqa: ANN002, ANN003
        raise AssertionError("work dispatched before validation")

    monkeypatch.setattr(engine, "residualize", _fail)
    monkeypatch.setattr(engine, "null_spectrum", _fail)

    with pytest.raises(UnknownCellTypeError, match="Neuron"):
        run_individual_test(bundle, dataset["expression"], cell_types=["Tumor", "Neuron"])


def test_individual_results_per_cell_type_in_request_order(dataset, bundle) -> None:
    genes = ["Noise_1", "Pattern", "Tumor_gp"]
    result = run_individual_test(
        bundle, dataset["expression"], genes=genes, cell_types=["Immune", "Tumor"],
    )

    assert isinstance(result, IndividualTestResult)
    assert result.cell_types == ["Immune", "Tumor"]
    assert "Stroma" not in result
    for cell_type in result.cell_types:
        res = result[cell_type]
        assert res.cell_type == cell_type
        assert res.gene_names == genes
        assert np.all((res.pvalues >= 0) & (res.pvalues <= 1))
        assert np.all(res.pvalues_adj >= res.pvalues - 1e-15)


def test_individual_test_flags_tumor_specific_gene(dataset, bundle) -> None:
    result = run_individual_test(bundle, dataset["expression"], genes=["Pattern", "Tumor_gp"])
    tumor = result["Tumor"].to_dataframe()
    assert tumor.loc["Pattern", "p_value"] < 0.01
    assert tumor.loc["Tumor_gp", "p_value"] < 0.01


def test_individual_test_all_genes_by_default(dataset, bundle) -> None:
    result = run_individual_test(bundle, dataset["expression"], cell_types=["Stroma"])
    res = result["Stroma"]
    assert res.gene_names == list(dataset["expression"].index)
    assert res.status_counts() == {"ok": 6, "degenerate": 2}


def test_individual_test_rejects_unknown_gene_and_method(dataset, bundle) -> None:
    with pytest.raises(InputValidationError, match="not in expression"):
        run_individual_test(bundle, dataset["expression"], genes=["Pattern", "Missing"])
    with pytest.raises(ConfigurationError, match="Unknown method"):
        run_individual_test(bundle, dataset["expression"], adjust_method="sidak")


def test_individual_test_cancelled_before_start(
    dataset, bundle, caplog: pytest.LogCaptureFixture,
) -> None:
    event = threading.Event()
    event.set()
    with caplog.at_level(logging.WARNING, logger="ctsvg"):
        result = run_individual_test(
            bundle, dataset["expression"], genes=["Pattern", "Noise_0"],
            n_workers=2, cancel_event=event,
        )

    for cell_type in result.cell_types:
        res = result[cell_type]
        assert list(res.status) == ["cancelled", "cancelled"]
        assert np.all(np.isnan(res.pvalues))
    assert result.n_failed == 6
    assert "not dispatched" in caplog.text
    assert "flagged" in caplog.text


def test_individual_long_table(dataset, bundle) -> None:
    result = run_individual_test(bundle, dataset["expression"], genes=["Pattern"])
    df = result.to_dataframe()
    assert list(df["cell_type"]) == ["Tumor", "Stroma", "Immune"]
    assert list(df.columns) == [
        "cell_type", "gene", "statistic", "p_value", "p_value_adj", "status",
    ]
