from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

CELL_TYPES = ["Tumor", "Stroma", "Immune"]


def simulate_dataset(
    rng: np.random.Generator,
    n_spots: int = 80,
    cell_types: list[str] | None = None,
    n_noise: int = 4,
    bandwidth: float = 0.2,
) -> dict:
    """
    Small spot-level dataset with known structure.

    Genes:
    - ``Pattern``: smooth wave modulated by the first cell type's proportion
    - ``Tumor_gp``: draw from the mixed model with only the first cell
      type's spatial component
    - ``Noise_i``: independent Gaussian noise
    - ``Constant``: constant across spots
    - ``PropLinear``: exact linear function of the proportions
    """
    cell_types = list(cell_types or CELL_TYPES)
    spot_ids = [f"spot_{i}" for i in range(n_spots)]
    coords = rng.random((n_spots, 2))
    props = rng.dirichlet(np.ones(len(cell_types)), size=n_spots)

    d2 = np.sum((coords[:, None, :] - coords[None, :, :]) ** 2, axis=-1)
    kernel = np.exp(-d2 / (2 * bandwidth ** 2))
    chol = np.linalg.cholesky(kernel + 1e-6 * np.eye(n_spots))

    genes = {
        "Pattern": 4.0 * props[:, 0] * np.sin(2 * np.pi * coords[:, 0])
        + 0.3 * rng.standard_normal(n_spots),
        "Tumor_gp": props[:, 0] * (2.0 * chol @ rng.standard_normal(n_spots))
        + 0.3 * rng.standard_normal(n_spots),
    }
    for i in range(n_noise):
        genes[f"Noise_{i}"] = rng.standard_normal(n_spots)
    genes["Constant"] = np.full(n_spots, 3.0)
    genes["PropLinear"] = 1.0 + 2.0 * props[:, -1]

    return {
        "coords": pd.DataFrame(coords, index=spot_ids, columns=["x", "y"]),
        "proportions": pd.DataFrame(props, index=spot_ids, columns=cell_types),
        "expression": pd.DataFrame(genes, index=spot_ids).T,
        "bandwidth": bandwidth,
    }


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(42)


@pytest.fixture
def dataset(rng: np.random.Generator) -> dict:
    return simulate_dataset(rng)


@pytest.fixture
def bundle(dataset: dict):
    from ctsvg.core.kernel import build_kernel

    return build_kernel(
        dataset["coords"], dataset["proportions"], bandwidth=dataset["bandwidth"],
    )


@pytest.fixture
def small_coords(rng: np.random.Generator) -> np.ndarray:
    return rng.random((200, 2)) * 10.0


@pytest.fixture
def make_dataset():
    return simulate_dataset
