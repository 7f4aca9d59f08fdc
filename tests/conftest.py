import matplotlib

matplotlib.use("Agg")

import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

# Three populations with strong PBMC markers
POPULATION_MARKERS = {
    "mono": ["CD14", "LYZ", "S100A8", "S100A9"],
    "bcell": ["MS4A1", "CD79A", "CD79B"],
    "nk": ["GNLY", "NKG7", "GZMB", "KLRD1"],
}
MT_GENES = ["MT-CO1", "MT-ND1"]
N_BACKGROUND = 400


def make_pbmc_like(n_per_population=60, n_low_quality=10, seed=0, name="pbmc"):
    """Synthetic raw counts: three marker-defined populations plus QC failures.

    The first n_low_quality // 2 extra cells have a high mitochondrial
    fraction and the rest detect too few genes.
    """
    rng = np.random.default_rng(seed)

    marker_genes = [g for genes in POPULATION_MARKERS.values() for g in genes]
    background = [f"GENE{i}" for i in range(N_BACKGROUND)]
    var_names = MT_GENES + marker_genes + background
    n_genes = len(var_names)

    rows = []
    labels = []
    for population, genes in POPULATION_MARKERS.items():
        for _ in range(n_per_population):
            lam = np.full(n_genes, 1.5)
            lam[: len(MT_GENES)] = 3.0
            lam[2 : 2 + len(marker_genes)] = 0.1
            for gene in genes:
                lam[var_names.index(gene)] = 30.0
            rows.append(rng.poisson(lam))
            labels.append(population)

    for i in range(n_low_quality):
        lam = np.full(n_genes, 1.5)
        if i < n_low_quality // 2:
            lam[: len(MT_GENES)] = 200.0
        else:
            lam[:] = 0.0
            lam[len(MT_GENES) + len(marker_genes) : len(MT_GENES) + len(marker_genes) + 60] = 2.0
        rows.append(rng.poisson(lam))
        labels.append("low_quality")

    X = sparse.csr_matrix(np.vstack(rows).astype(np.float32))
    obs = pd.DataFrame(
        {"population": labels, "dataset": name},
        index=[f"CELL{i:04d}-1" for i in range(len(rows))],
    )
    var = pd.DataFrame(index=var_names)

    return ad.AnnData(X=X, obs=obs, var=var)


@pytest.fixture
def raw_adata():
    return make_pbmc_like()


@pytest.fixture(scope="session")
def clustered_adata():
    """Synthetic data run through QC, normalization, PCA and clustering."""
    from pbmc_utils.processing import (
        cluster_cells,
        normalize_and_log,
        run_embeddings,
        run_pca,
        scale_data,
        select_variable_genes,
    )
    from pbmc_utils.qc_utils import calculate_qc_metrics, filter_cells_and_genes

    adata = make_pbmc_like()
    adata = calculate_qc_metrics(adata)
    adata = filter_cells_and_genes(adata)
    adata = normalize_and_log(adata)
    adata = select_variable_genes(adata, n_top_genes=300)
    adata = scale_data(adata)
    adata = run_pca(adata, n_comps=20)
    adata = cluster_cells(adata, n_pcs=10, resolution=0.5)
    adata = run_embeddings(adata, n_pcs=10, tsne=True)
    return adata
