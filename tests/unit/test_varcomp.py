from __future__ import annotations

import logging

import numpy as np
import pytest

from ctsvg.core.errors import ConfigurationError
from ctsvg.core.varcomp import (
    VarCompConfig,
    VarCompOutcome,
    estimate_gene,
    moment_estimate,
    prepare_components,
)
from ctsvg.model import engine
from ctsvg.model.engine import estimate_variance_components


@pytest.mark.parametrize(
    ("kwargs", "match"),
    [
        ({"method": "ml"}, "Unknown method"),
        ({"max_iter": 0}, "max_iter"),
        ({"tol": 0.0}, "tol"),
        ({"min_residual": 0.0}, "min_residual"),
    ],
)
def test_varcomp_config_validation(kwargs: dict, match: str) -> None:
    with pytest.raises(ConfigurationError, match=match):
        VarCompConfig(**kwargs)


def test_component_structure_shapes(bundle) -> None:
    structure = prepare_components(bundle)
    df = bundle.df_resid
    assert structure.projected.shape == (3, df, df)
    assert structure.gram.shape == (4, 4)
    np.testing.assert_allclose(structure.gram, structure.gram.T)
    assert structure.gram[-1, -1] == df
    assert structure.scale[-1] == 1.0
    np.testing.assert_allclose(
        structure.scale[:-1], np.trace(bundle.sigmas, axis1=1, axis2=2) / bundle.n_spots,
    )


def test_variance_components_are_non_negative(dataset, bundle) -> None:
    result = estimate_variance_components(bundle, dataset["expression"])
    ok = result.status != "degenerate"

    assert result.components.shape == (8, 4)
    assert np.all(np.isfinite(result.components[ok]))
    assert np.all(result.components[ok] >= 0)
    assert np.all(result.components[ok, -1] > 0)
    np.testing.assert_allclose(np.nansum(result.shares[ok], axis=1), 1.0)


def test_degenerate_genes_get_nan_components(dataset, bundle) -> None:
    result = estimate_variance_components(
        bundle, dataset["expression"], genes=["Constant", "Noise_0"],
    )
    assert list(result.status) == ["degenerate", "ok"]
    assert np.all(np.isnan(result.components[0]))
    assert result.n_failed == 1


def test_reml_attributes_tumor_gene_to_tumor(dataset, bundle) -> None:
    result = estimate_variance_components(bundle, dataset["expression"], genes=["Tumor_gp"])
    shares = result.to_dataframe("shares").loc["Tumor_gp"]
    assert result.status[0] in ("ok", "not_converged")
    assert shares["Tumor"] == max(shares[["Tumor", "Stroma", "Immune"]])
    assert shares["Tumor"] > shares["residual"]


def test_moment_method_skips_iterations(dataset, bundle) -> None:
    result = estimate_variance_components(
        bundle, dataset["expression"], genes=["Pattern", "Noise_1"], method="moment",
    )
    assert result.method == "moment"
    np.testing.assert_array_equal(result.n_iter, [0, 0])
    assert np.all(result.components >= 0)


def test_reml_does_not_decrease_likelihood_from_moment_start(dataset, bundle) -> None:
    structure = prepare_components(bundle)
    y = dataset["expression"].loc["Tumor_gp"].to_numpy()
    r = bundle.residual_basis.T @ y

    start = moment_estimate(r, structure)
    assert np.all(start >= 0)
    outcome = estimate_gene(r, structure)
    assert outcome.n_iter >= 1
    assert np.isfinite(outcome.loglik)
    assert np.all(outcome.components >= 0)


def test_timeout_keeps_best_estimate(
    dataset, bundle, caplog: pytest.LogCaptureFixture,
) -> None:
    with caplog.at_level(logging.WARNING, logger="ctsvg.model.engine"):
        result = estimate_variance_components(
            bundle, dataset["expression"], genes=["Pattern"], timeout=1e-9,
        )
    assert list(result.status) == ["timeout"]
    assert np.all(np.isfinite(result.components))
    assert np.all(result.components >= 0)
    assert "timed out" in caplog.text


def test_non_convergence_is_logged_per_gene(
    dataset, bundle, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture,
) -> None:
    def _stuck(r, structure, config, deadline):  # noqa: ANN001
        return VarCompOutcome(np.full(structure.n_components, 0.5), config.max_iter, "not_converged")

    monkeypatch.setattr(engine, "estimate_gene", _stuck)
    with caplog.at_level(logging.WARNING, logger="ctsvg.model.engine"):
        result = estimate_variance_components(
            bundle, dataset["expression"], genes=["Pattern", "Noise_2"],
        )

    assert list(result.status) == ["not_converged", "not_converged"]
    np.testing.assert_allclose(result.components, 0.5)
    assert "Pattern did not converge" in caplog.text
    assert "Noise_2 did not converge" in caplog.text


def test_linear_algebra_failure_becomes_failed_status(
    dataset, bundle, monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _broken(r, structure, config, deadline):  # noqa: ANN001
        raise np.linalg.LinAlgError("not positive definite")

    monkeypatch.setattr(engine, "estimate_gene", _broken)
    result = estimate_variance_components(bundle, dataset["expression"], genes=["Pattern"])
    assert list(result.status) == ["failed"]
    assert np.all(np.isnan(result.components))


def test_nnls_failure_keeps_unconstrained_start(
    dataset, bundle, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture,
) -> None:
    from ctsvg.core import varcomp

    def _limit(*args, **kwargs):  # noqa: ANN002, ANN003
        raise RuntimeError("too many iterations")

    monkeypatch.setattr(varcomp, "nnls", _limit)
    with caplog.at_level(logging.WARNING, logger="ctsvg.model.engine"):
        result = estimate_variance_components(
            bundle, dataset["expression"], genes=["Pattern", "Noise_0"], method="moment",
        )

    assert list(result.status) == ["not_converged", "not_converged"]
    assert np.all(np.isfinite(result.components))
    assert np.all(result.components >= 0)
    assert "Pattern did not converge" in caplog.text


def test_singular_start_returns_moment_estimate(
    dataset, bundle, monkeypatch: pytest.MonkeyPatch,
) -> None:
    from ctsvg.core import varcomp

    structure = prepare_components(bundle)
    r = bundle.residual_basis.T @ dataset["expression"].loc["Pattern"].to_numpy()
    expected = estimate_gene(r, structure, VarCompConfig(method="moment")).components

    def _singular(tau, r, structure):  # noqa: ANN001
        raise np.linalg.LinAlgError("not positive definite")

    monkeypatch.setattr(varcomp, "_reml_terms", _singular)
    outcome = estimate_gene(r, structure)

    assert outcome.status == "not_converged"
    assert outcome.n_iter == 0
    np.testing.assert_allclose(outcome.components, expected)
