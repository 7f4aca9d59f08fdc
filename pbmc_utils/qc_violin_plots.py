#!/usr/bin/env python3
"""
QC violin plots comparing datasets, drawn with seaborn
"""

import matplotlib.pyplot as plt
import seaborn as sns

from pbmc_utils.config import CELL_FILTERS
from pbmc_utils.plotting import save_or_show


def plot_qc_distributions(adata, groupby="dataset", save_dir=None, thresholds=None):
    """Create violin plots comparing QC distributions across groups

    Args:
        adata: AnnData object with QC metrics
        groupby: Column to group by (e.g., 'dataset')
        save_dir: Directory to save plots
        thresholds: Filter settings drawn as reference lines; defaults to CELL_FILTERS

    Returns:
        The matplotlib figure
    """
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")

    if thresholds is None:
        thresholds = CELL_FILTERS

    plot_data = adata.obs[
        [groupby, "n_genes_by_counts", "total_counts", "percent_mt"]
    ].copy()
    plot_data[groupby] = plot_data[groupby].astype(str)

    fig, axes = plt.subplots(1, 3, figsize=(15, 5))

    metrics = [
        ("n_genes_by_counts", "Genes per cell"),
        ("total_counts", "Total counts per cell"),
        ("percent_mt", "Mitochondrial %"),
    ]

    for ax, (metric, title) in zip(axes, metrics):
        sns.violinplot(data=plot_data, x=groupby, y=metric, ax=ax, inner="box")
        ax.set_title(title)
        ax.set_xlabel("")
        ax.tick_params(axis="x", rotation=45)

        if metric == "n_genes_by_counts":
            ax.axhline(y=thresholds["min_genes"], color="red", linestyle="--", alpha=0.5)
            ax.axhline(y=thresholds["max_genes"], color="red", linestyle="--", alpha=0.5)
        elif metric == "percent_mt":
            ax.axhline(y=thresholds["max_mt_pct"], color="red", linestyle="--", alpha=0.5)

    plt.tight_layout()

    save_or_show(fig, save_dir, f"qc_violin_by_{groupby}.png")

    return fig
