from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from ctsvg.core.errors import (
    ConfigurationError,
    DimensionMismatchError,
    InputValidationError,
    SingularKernelError,
    UnknownCellTypeError,
)
from ctsvg.core.kernel import (
    build_kernel,
    check_kernel,
    gaussian_kernel,
    residual_basis,
)


def test_gaussian_kernel_symmetric_unit_diagonal_and_formula(small_coords) -> None:
    h = 1.5
    K = gaussian_kernel(small_coords, h)

    assert K.shape == (200, 200)
    assert np.array_equal(K, K.T)
    np.testing.assert_array_equal(np.diag(K), 1.0)
    d2 = np.sum((small_coords[3] - small_coords[17]) ** 2)
    assert K[3, 17] == pytest.approx(np.exp(-d2 / (2 * h * h)))
    assert np.all((K > 0) & (K <= 1))


def test_gaussian_kernel_is_positive_semidefinite(small_coords) -> None:
    K = gaussian_kernel(small_coords, 0.8)
    checked, min_eig = check_kernel(K)
    assert checked is K
    assert min_eig >= -1e-8 * np.linalg.eigvalsh(K)[-1]


@pytest.mark.parametrize("bandwidth", [0.0, -1.0])
def test_gaussian_kernel_rejects_non_positive_bandwidth(small_coords, bandwidth: float) -> None:
    with pytest.raises(ConfigurationError, match="bandwidth"):
        gaussian_kernel(small_coords, bandwidth)


def test_check_kernel_indefinite_raises_without_regularization() -> None:
    K = np.array([[1.0, 2.0], [2.0, 1.0]])
    with pytest.raises(SingularKernelError, match="indefinite"):
        check_kernel(K)


@pytest.mark.parametrize("policy", ["jitter", "clip"])
def test_check_kernel_regularization_repairs_indefinite_matrix(policy: str) -> None:
    K = np.array([[1.0, 2.0], [2.0, 1.0]])
    repaired, min_eig = check_kernel(K, regularization=policy)
    assert min_eig == pytest.approx(0.0, abs=1e-12)
    assert np.linalg.eigvalsh(repaired)[0] >= -1e-12
    np.testing.assert_allclose(repaired, repaired.T)


def test_check_kernel_rejects_non_finite_and_unknown_policy() -> None:
    with pytest.raises(SingularKernelError, match="non-finite"):
        check_kernel(np.array([[1.0, np.nan], [np.nan, 1.0]]))
    with pytest.raises(ConfigurationError, match="regularization"):
        check_kernel(np.eye(2), regularization="bad")  # type: ignore[arg-type]


def test_residual_basis_is_orthonormal_complement() -> None:
    rng = np.random.default_rng(0)
    props = rng.dirichlet(np.ones(3), size=30)
    X = np.hstack([np.ones((30, 1)), props])

    q0, rank = residual_basis(X)
    assert rank == 3
    assert q0.shape == (30, 27)
    np.testing.assert_allclose(q0.T @ q0, np.eye(27), atol=1e-10)
    np.testing.assert_allclose(q0.T @ X, 0.0, atol=1e-10)


def test_build_kernel_260_spots_12_cell_types() -> None:
    rng = np.random.default_rng(260)
    coords = rng.random((260, 2))
    props = rng.dirichlet(np.ones(12), size=260)

    bundle = build_kernel(coords, props, bandwidth=0.3)

    assert bundle.n_spots == 260
    assert bundle.n_cell_types == 12
    assert bundle.sigmas.shape == (12, 260, 260)
    np.testing.assert_allclose(bundle.proportions.sum(axis=1), 1.0, atol=1e-6)
    assert bundle.design.shape == (260, 13)
    assert bundle.design_rank == 12
    assert bundle.df_resid == 248
    assert bundle.cell_types == [f"celltype_{j}" for j in range(12)]
    assert bundle.spot_ids[:2] == ["0", "1"]


def test_sigma_k_is_scaled_kernel(dataset, bundle) -> None:
    pi = dataset["proportions"]["Stroma"].to_numpy()
    expected = pi[:, None] * bundle.kernel * pi[None, :]
    np.testing.assert_allclose(bundle.sigma("Stroma"), expected)
    np.testing.assert_allclose(bundle.kernel_sum(), bundle.sigmas.sum(axis=0))
    for k in range(bundle.n_cell_types):
        np.testing.assert_allclose(bundle.sigmas[k], bundle.sigmas[k].T)


def test_build_kernel_aligns_labelled_inputs_by_spot_id(dataset) -> None:
    shuffled = dataset["proportions"].sample(frac=1.0, random_state=0)
    a = build_kernel(dataset["coords"], dataset["proportions"], bandwidth=0.2)
    b = build_kernel(dataset["coords"], shuffled, bandwidth=0.2)

    assert b.spot_ids == list(dataset["coords"].index)
    np.testing.assert_array_equal(a.proportions, b.proportions)
    np.testing.assert_array_equal(a.sigmas, b.sigmas)


def test_build_kernel_dimension_mismatch(dataset) -> None:
    with pytest.raises(DimensionMismatchError, match="proportions has 79 spots"):
        build_kernel(dataset["coords"], dataset["proportions"].iloc[:79], bandwidth=0.2)

    renamed = dataset["proportions"].rename(index={"spot_0": "other"})
    with pytest.raises(DimensionMismatchError, match="do not match"):
        build_kernel(dataset["coords"], renamed, bandwidth=0.2)


def test_build_kernel_rejects_proportions_off_simplex(dataset) -> None:
    props = dataset["proportions"].copy()
    props.iloc[5] *= 2.0
    with pytest.raises(InputValidationError, match="sum to 1"):
        build_kernel(dataset["coords"], props, bandwidth=0.2)

    props = dataset["proportions"].copy()
    props.iloc[0, 0] = np.nan
    with pytest.raises(InputValidationError, match="non-finite"):
        build_kernel(dataset["coords"], props, bandwidth=0.2)


def test_build_kernel_auto_bandwidth(dataset) -> None:
    bundle = build_kernel(
        dataset["coords"], dataset["proportions"], expression=dataset["expression"],
    )
    assert bundle.bandwidth > 0
    assert bundle.bandwidth_result is not None
    assert bundle.bandwidth_result.rule == "sj"
    assert bundle.bandwidth == bundle.bandwidth_result.bandwidth

    with pytest.raises(ConfigurationError, match="requires the expression"):
        build_kernel(dataset["coords"], dataset["proportions"])


def test_build_kernel_with_covariates(dataset) -> None:
    cov = pd.DataFrame(
        {"depth": np.linspace(0, 1, 80)}, index=dataset["coords"].index
    )
    bundle = build_kernel(
        dataset["coords"], dataset["proportions"], bandwidth=0.2, covariates=cov,
    )
    assert bundle.design_columns == ["intercept", "depth", "Tumor", "Stroma", "Immune"]
    assert bundle.design_rank == 4
    assert bundle.df_resid == 76


def test_cell_type_indices_unknown_label(bundle) -> None:
    assert bundle.cell_type_indices(None) == [0, 1, 2]
    assert bundle.cell_type_indices(["Immune", "Tumor", "Immune"]) == [2, 0]
    with pytest.raises(UnknownCellTypeError) as excinfo:
        bundle.cell_type_indices(["Tumor", "Neuron"])
    assert excinfo.value.unknown == ["Neuron"]
    assert excinfo.value.available == ["Tumor", "Stroma", "Immune"]
    assert isinstance(excinfo.value, ValueError)
