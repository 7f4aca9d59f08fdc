#!/usr/bin/env python3
"""
Processing utilities for single-cell RNA-seq analysis
Handles normalization, variable genes, scaling, PCA, clustering and embeddings
"""

import scanpy as sc
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from pathlib import Path
from sklearn.metrics import silhouette_score

from pbmc_utils.config import (
    CLUSTERING,
    EMBEDDING,
    HVG_PARAMS,
    NORMALIZATION,
    PCA_PARAMS,
    SCALING,
)
from pbmc_utils.plotting import save_or_show


def normalize_and_log(adata, target_sum=NORMALIZATION["target_sum"]):
    """Normalize library size and log transform

    Raw counts are kept in layers["counts"] and the log-normalized full gene
    space is frozen in adata.raw for marker testing.

    Args:
        adata: AnnData object with raw counts
        target_sum: Counts per cell after normalization

    Returns:
        Normalized AnnData object
    """
    print("Normalizing data...")

    adata.layers["counts"] = adata.X.copy()

    # Normalize to target_sum reads per cell, then log transform
    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)

    adata.raw = adata

    return adata


def select_variable_genes(
    adata,
    flavor=HVG_PARAMS["flavor"],
    n_top_genes=HVG_PARAMS["n_top_genes"],
    subset=True,
    batch_key=None,
    save_dir=None,
):
    """Find highly variable genes and optionally keep only those

    Args:
        adata: Log-normalized AnnData object
        flavor: scanpy highly_variable_genes flavor
        n_top_genes: Number of genes to select (capped at the number of genes)
        subset: If True, return only the highly variable genes
        batch_key: obs column; genes are ranked within each batch (merged data)
        save_dir: Directory to save the dispersion plot (optional)

    Returns:
        AnnData object (a subset copy when subset=True)
    """
    n_top = min(int(n_top_genes), adata.n_vars)
    print(f"Finding {n_top} highly variable genes...")

    sc.pp.highly_variable_genes(
        adata, flavor=flavor, n_top_genes=n_top, batch_key=batch_key
    )

    sc.pl.highly_variable_genes(adata, show=False)
    save_or_show(plt.gcf(), save_dir, "highly_variable_genes.png")

    if subset:
        adata = adata[:, adata.var["highly_variable"]].copy()

    return adata


def scale_data(
    adata, max_value=SCALING["max_value"], regress_out=SCALING["regress_out"]
):
    """Optionally regress out covariates, then scale to unit variance

    Args:
        adata: AnnData object
        max_value: Clip scaled values above this
        regress_out: obs keys to regress out before scaling (optional)

    Returns:
        Scaled AnnData object
    """
    print("Scaling data...")

    if regress_out:
        sc.pp.regress_out(adata, list(regress_out))

    sc.pp.scale(adata, max_value=max_value)

    return adata


def run_pca(
    adata,
    n_comps=PCA_PARAMS["n_comps"],
    svd_solver=PCA_PARAMS["svd_solver"],
    save_dir=None,
):
    """Run PCA and plot the elbow and top loadings

    Args:
        adata: Scaled AnnData object
        n_comps: Number of components (capped by the matrix shape)
        svd_solver: Solver passed to scanpy
        save_dir: Directory to save plots (optional)

    Returns:
        AnnData object with X_pca
    """
    n_comps = min(int(n_comps), adata.n_obs - 1, adata.n_vars - 1)
    print(f"Running PCA ({n_comps} components)...")

    sc.tl.pca(adata, n_comps=n_comps, svd_solver=svd_solver)

    # Elbow plot
    sc.pl.pca_variance_ratio(adata, n_pcs=n_comps, log=True, show=False)
    save_or_show(plt.gcf(), save_dir, "pca_elbow_plot.png")

    sc.pl.pca_loadings(adata, components="1,2", show=False)
    save_or_show(plt.gcf(), save_dir, "pca_loadings.png")

    return adata


def cluster_cells(
    adata,
    n_neighbors=CLUSTERING["n_neighbors"],
    n_pcs=PCA_PARAMS["n_pcs"],
    resolution=CLUSTERING["resolution"],
    random_state=CLUSTERING["random_state"],
    key_added="leiden",
):
    """Build the kNN graph on PCA space and run Leiden clustering

    Args:
        adata: AnnData object with X_pca
        n_neighbors: Neighbors per cell in the kNN graph
        n_pcs: Number of principal components used for the graph
        resolution: Leiden resolution
        random_state: Seed for the graph and the community detection
        key_added: obs column receiving the cluster labels

    Returns:
        AnnData object with cluster labels in obs[key_added]
    """
    if "X_pca" not in adata.obsm:
        raise KeyError("X_pca not found in adata.obsm; run run_pca first")

    n_pcs = min(int(n_pcs), adata.obsm["X_pca"].shape[1])

    print("Computing neighborhood graph...")
    sc.pp.neighbors(
        adata, n_neighbors=n_neighbors, n_pcs=n_pcs, random_state=random_state
    )

    print("Clustering...")
    sc.tl.leiden(
        adata,
        resolution=resolution,
        random_state=random_state,
        key_added=key_added,
        flavor="igraph",
        n_iterations=2,
        directed=False,
    )

    # Each cell must carry exactly one label
    if adata.obs[key_added].isna().any():
        raise RuntimeError(f"Leiden left cells without a label in '{key_added}'")

    n_clusters = adata.obs[key_added].nunique()
    print(f"  Found {n_clusters} clusters at resolution {resolution}")

    return adata


def run_embeddings(
    adata,
    n_pcs=PCA_PARAMS["n_pcs"],
    random_state=CLUSTERING["random_state"],
    tsne=EMBEDDING["tsne"],
    perplexity=EMBEDDING["perplexity"],
):
    """Compute UMAP and, optionally, t-SNE

    Args:
        adata: AnnData object with a neighbors graph
        n_pcs: Principal components used by t-SNE
        random_state: Seed for both embeddings
        tsne: Whether to run t-SNE as well
        perplexity: t-SNE perplexity (lowered for small datasets)

    Returns:
        AnnData object with X_umap (and X_tsne)
    """
    print("Running UMAP...")
    sc.tl.umap(adata, random_state=random_state)

    if tsne:
        print("Running t-SNE...")
        n_pcs = min(int(n_pcs), adata.obsm["X_pca"].shape[1])
        # sklearn requires perplexity < n_samples
        perplexity = min(float(perplexity), max(1.0, (adata.n_obs - 1) / 3))
        sc.tl.tsne(
            adata, n_pcs=n_pcs, perplexity=perplexity, random_state=random_state
        )

    return adata


def plot_embeddings(adata, color=("leiden",), basis="umap", save_dir=None, title=None):
    """Plot an embedding colored by obs columns or genes

    Args:
        adata: AnnData object with the embedding in obsm
        color: obs keys or gene names to color by
        basis: "umap", "tsne" or "pca"
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
        title: Optional figure title prefix used in the filename

    Returns:
        Path of the saved figure, or None
    """
    if f"X_{basis}" not in adata.obsm:
        raise KeyError(f"X_{basis} not found in adata.obsm")

    genes = adata.raw.var_names if adata.raw is not None else adata.var_names
    color = [c for c in color if c in adata.obs or c in genes]
    if not color:
        raise KeyError("None of the requested colors exist in adata")

    print(f"Plotting {basis} embedding...")

    fig = sc.pl.embedding(
        adata,
        basis=basis,
        color=color,
        legend_loc="on data",
        show=False,
        return_fig=True,
    )

    name = f"{title}_{basis}" if title else basis
    return save_or_show(fig, save_dir, f"{name}_embeddings.png")


def choose_leiden_resolution(
    adata,
    resolution_grid=None,
    min_cluster_size=CLUSTERING["min_cluster_size"],
    random_state=CLUSTERING["random_state"],
    save_dir=None,
):
    """Sweep Leiden resolutions and pick a robust choice.

    Strategy:
    - Compute Leiden for a grid of resolutions on the existing kNN graph
    - Evaluate silhouette on PCA space and fraction of cells in small clusters
    - Select the resolution with highest silhouette; among ties within 0.02 of max,
      prefer lower small-cluster fraction, then fewer clusters, then lower resolution

    Side effects:
    - Adds columns `leiden_{res}` to `adata.obs` for each tested resolution
    - Sets `adata.obs["leiden"]` to the labels of the chosen resolution
    - Writes sweep metrics CSV and a diagnostic plot if `save_dir` set

    Returns:
    - chosen resolution (float)
    """
    if "neighbors" not in adata.uns:
        raise KeyError("No neighbors graph found; run cluster_cells first")

    if resolution_grid is None:
        resolution_grid = np.round(np.arange(0.2, 1.45, 0.1), 2)

    X = adata.obsm["X_pca"]

    metrics = []
    for res in resolution_grid:
        key = f"leiden_{res:.2f}"
        sc.tl.leiden(
            adata,
            resolution=float(res),
            key_added=key,
            random_state=random_state,
            flavor="igraph",
            n_iterations=2,
            directed=False,
        )
        labels = adata.obs[key].astype(str)

        # Silhouette is only defined for 2 <= n_clusters <= n_cells - 1
        n_clusters = labels.nunique()
        small_frac = 0.0
        sil = np.nan
        if 1 < n_clusters < len(labels):
            counts = labels.value_counts()
            small_frac = float(
                counts[counts < max(2, int(min_cluster_size))].sum() / len(labels)
            )
            sil = float(silhouette_score(X, labels))

        metrics.append(
            {
                "resolution": float(res),
                "n_clusters": int(n_clusters),
                "silhouette": sil,
                "small_cluster_fraction": small_frac,
            }
        )

    metrics_df = pd.DataFrame(metrics)

    if metrics_df["silhouette"].notna().any():
        max_sil = metrics_df["silhouette"].max()
        near = metrics_df[np.abs(metrics_df["silhouette"] - max_sil) <= 0.02]
        chosen = near.sort_values(
            by=["small_cluster_fraction", "n_clusters", "resolution"]
        ).iloc[0]
    else:
        # Fallback: lowest resolution
        chosen = metrics_df.sort_values("resolution").iloc[0]

    chosen_res = float(chosen["resolution"])

    if save_dir:
        save_dir = Path(save_dir)
        save_dir.mkdir(parents=True, exist_ok=True)
        metrics_path = save_dir / "leiden_resolution_sweep.csv"
        metrics_df.to_csv(metrics_path, index=False)
        print(f"  Saved: {metrics_path}")

        fig, ax1 = plt.subplots(figsize=(7, 4))
        ax2 = ax1.twinx()
        ax1.plot(
            metrics_df["resolution"], metrics_df["silhouette"], "-o", color="#1f77b4"
        )
        ax2.plot(
            metrics_df["resolution"], metrics_df["n_clusters"], "-s", color="#ff7f0e"
        )
        ax1.set_xlabel("Leiden resolution")
        ax1.set_ylabel("Silhouette (PCA)", color="#1f77b4")
        ax2.set_ylabel("# clusters", color="#ff7f0e")
        ax1.axvline(chosen_res, color="gray", linestyle="--", linewidth=1)
        fig.tight_layout()
        save_or_show(fig, save_dir, "leiden_sweep_diagnostics.png")

    adata.obs["leiden"] = adata.obs[f"leiden_{chosen_res:.2f}"].copy()
    adata.uns["leiden_optimal_resolution"] = chosen_res
    print(f"Chosen Leiden resolution: {chosen_res}")

    return chosen_res
