#!/usr/bin/env python3
"""
Cell type annotation utilities for single-cell RNA-seq analysis
Handles marker panel scoring and cluster label assignment
"""

import scanpy as sc
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from pbmc_utils.plotting import save_or_show

# Canonical PBMC marker panels
PBMC_MARKERS = {
    "Naive CD4 T": ["IL7R", "CCR7", "LEF1", "TCF7"],
    "Memory CD4 T": ["IL7R", "S100A4", "CD2"],
    "CD8 T": ["CD8A", "CD8B"],
    "NK": ["GNLY", "NKG7", "GZMB", "KLRD1"],
    "B": ["MS4A1", "CD79A", "CD79B"],
    "CD14+ Mono": ["CD14", "LYZ", "S100A8", "S100A9"],
    "FCGR3A+ Mono": ["FCGR3A", "MS4A7"],
    "DC": ["FCER1A", "CST3"],
    "Platelet": ["PPBP", "PF4"],
}

UNASSIGNED = "Unassigned"


def annotate_by_scores(
    adata,
    marker_genes=PBMC_MARKERS,
    cluster_col="leiden",
    mode="cluster",
    agg="median",
    min_margin=0.0,
    key_added="celltype",
):
    """Assign cell types from marker panel scores.

    Each panel is scored per cell with sc.tl.score_genes on the full gene
    space. In "cluster" mode the scores are aggregated per cluster (median is
    more robust than mean) and every cell of a cluster receives the
    best-scoring panel; in "cell" mode every cell is labeled on its own.
    The difference between the best and second-best score is stored in
    obs[f"{key_added}_score_margin"]; labels whose margin is below
    min_margin become "Unassigned".

    Args:
        adata: AnnData object (log-normalized data in .raw or .X)
        marker_genes: Dictionary of cell type -> marker genes
        cluster_col: obs column with cluster labels (cluster mode only)
        mode: "cluster" or "cell"
        agg: Aggregation of per-cell scores within a cluster
        min_margin: Minimum best-minus-second score to keep a label
        key_added: obs column receiving the labels

    Returns:
        AnnData object with labels in obs[key_added]
    """
    if mode not in ("cluster", "cell"):
        raise ValueError(f"mode must be 'cluster' or 'cell', got '{mode}'")
    if mode == "cluster" and cluster_col not in adata.obs:
        raise KeyError(f"Cluster key '{cluster_col}' not found in adata.obs")

    print(f"Annotating cell types by marker scores ({mode} level)...")

    var_names = adata.raw.var_names if adata.raw is not None else adata.var_names

    score_cols = []
    labels = []
    for cell_type, genes in marker_genes.items():
        present = [g for g in genes if g in var_names]
        if not present:
            print(f"  Warning: no markers for {cell_type} in data, skipping")
            continue
        score_name = f"score_{cell_type}"
        sc.tl.score_genes(adata, gene_list=present, score_name=score_name)
        score_cols.append(score_name)
        labels.append(cell_type)

    if not score_cols:
        raise ValueError("None of the marker genes are present in adata")

    labels = np.array(labels)
    if mode == "cluster":
        scores = adata.obs.groupby(cluster_col, observed=True)[score_cols].agg(agg)
    else:
        scores = adata.obs[score_cols]

    values = scores.to_numpy()
    best_idx = np.argmax(values, axis=1)
    best = values[np.arange(len(values)), best_idx]
    if values.shape[1] > 1:
        second = np.partition(values, -2, axis=1)[:, -2]
    else:
        second = np.zeros(len(values))
    margin = best - second

    assigned = np.where(margin >= min_margin, labels[best_idx], UNASSIGNED)
    if mode == "cluster":
        cluster_ids = scores.index.astype(str)
        assigned = dict(zip(cluster_ids, assigned))
        margin = dict(zip(cluster_ids, margin))

        clusters = adata.obs[cluster_col].astype(str)
        adata.obs[key_added] = clusters.map(assigned).values
        adata.obs[f"{key_added}_score_margin"] = clusters.map(margin).astype(float).values
        for cluster_id in cluster_ids:
            print(
                f"  Cluster {cluster_id}: {assigned[cluster_id]} "
                f"(margin {margin[cluster_id]:.3f})"
            )
    else:
        adata.obs[key_added] = assigned
        adata.obs[f"{key_added}_score_margin"] = margin

    adata.obs[key_added] = adata.obs[key_added].astype("category")

    return adata


def rename_clusters(adata, mapping, cluster_col="leiden", key_added="celltype"):
    """Label clusters from a manual cluster id -> cell type mapping

    Clusters missing from the mapping keep their id as the label.
    """
    if cluster_col not in adata.obs:
        raise KeyError(f"Cluster key '{cluster_col}' not found in adata.obs")

    mapping = {str(k): v for k, v in mapping.items()}
    clusters = adata.obs[cluster_col].astype(str)
    adata.obs[key_added] = pd.Categorical(
        [mapping.get(cluster_id, cluster_id) for cluster_id in clusters]
    )

    unmapped = sorted(set(clusters) - set(mapping))
    if unmapped:
        print(f"  Clusters without a label: {', '.join(unmapped)}")

    return adata


def plot_cell_type_summary(adata, groupby="dataset", celltype_col="celltype", save_dir=None):
    """Plot summary of cell types across datasets

    Args:
        adata: AnnData object with cell type annotations
        groupby: obs column for the bars; a single bar is drawn if absent
        celltype_col: obs column with cell type labels
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.

    Returns:
        DataFrame of cell counts (groups x cell types)
    """
    if celltype_col not in adata.obs:
        raise KeyError(f"Cell type key '{celltype_col}' not found in adata.obs")

    groups = (
        adata.obs[groupby].astype(str)
        if groupby in adata.obs
        else pd.Series("all", index=adata.obs.index, name=groupby)
    )
    celltype_counts = pd.crosstab(groups, adata.obs[celltype_col].astype(str))

    # Plot stacked bar chart
    fig, ax = plt.subplots(figsize=(10, 6))
    celltype_counts.plot(kind="bar", stacked=True, ax=ax)
    ax.set_title("Cell type distribution")
    ax.set_xlabel(groupby)
    ax.set_ylabel("Number of cells")
    ax.tick_params(axis="x", rotation=45)
    ax.legend(bbox_to_anchor=(1.05, 1), loc="upper left")
    plt.tight_layout()

    save_or_show(fig, save_dir, "celltype_distribution.png")

    # Print summary table
    print("\nCell type summary:")
    print(adata.obs[celltype_col].value_counts().sort_index())

    return celltype_counts
