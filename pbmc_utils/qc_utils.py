#!/usr/bin/env python3
"""
Quality control utilities for single-cell RNA-seq analysis
Handles QC metrics calculation, summaries and threshold filtering
"""

import scanpy as sc
import matplotlib.pyplot as plt
import pandas as pd

from pbmc_utils.config import CELL_FILTERS, GENE_FILTERS, GENE_PATTERNS
from pbmc_utils.plotting import save_or_show

QC_METRICS = ["n_genes_by_counts", "total_counts", "percent_mt"]


def calculate_qc_metrics(adata, mt_pattern=GENE_PATTERNS["mt_pattern"]):
    """Calculate QC metrics

    Args:
        adata: AnnData object with raw counts
        mt_pattern: Gene name prefix marking mitochondrial genes

    Returns:
        AnnData object with QC metrics added
    """
    print("Calculating QC metrics...")

    # Mitochondrial genes
    adata.var["mt"] = adata.var_names.str.startswith(mt_pattern)
    if not adata.var["mt"].any():
        print(f"  Warning: no genes start with '{mt_pattern}', percent_mt will be 0")

    sc.pp.calculate_qc_metrics(
        adata, qc_vars=["mt"], percent_top=None, log1p=False, inplace=True
    )

    # Short alias used by the filters and plots
    adata.obs["percent_mt"] = adata.obs["pct_counts_mt"]

    return adata


def filter_cells_and_genes(
    adata,
    min_genes=CELL_FILTERS["min_genes"],
    max_genes=CELL_FILTERS["max_genes"],
    max_mt_pct=CELL_FILTERS["max_mt_pct"],
    min_counts=CELL_FILTERS["min_counts"],
    max_counts=CELL_FILTERS["max_counts"],
    min_cells=GENE_FILTERS["min_cells"],
):
    """Apply QC filtering

    Cells are kept when min_genes < n_genes_by_counts < max_genes and
    percent_mt < max_mt_pct. Genes detected in fewer than min_cells cells
    are dropped.

    Args:
        adata: AnnData object with QC metrics
        min_genes: Exclusive lower bound on genes per cell
        max_genes: Exclusive upper bound on genes per cell
        max_mt_pct: Exclusive upper bound on mitochondrial percentage
        min_counts: Minimum total counts per cell (optional)
        max_counts: Maximum total counts per cell (optional)
        min_cells: Minimum cells expressing a gene

    Returns:
        Filtered AnnData object (a copy)
    """
    missing = [m for m in QC_METRICS if m not in adata.obs]
    if missing:
        raise KeyError(
            f"QC metrics {missing} not found in adata.obs; run calculate_qc_metrics first"
        )

    print("Applying QC filters...")
    print(f"Starting with {adata.n_obs} cells and {adata.n_vars} genes")

    adata = adata.copy()

    # Filter genes expressed in at least min_cells
    if min_cells:
        sc.pp.filter_genes(adata, min_cells=min_cells)

    obs = adata.obs
    keep = (
        (obs["n_genes_by_counts"] > min_genes)
        & (obs["n_genes_by_counts"] < max_genes)
        & (obs["percent_mt"] < max_mt_pct)
    )

    # Optional count filters
    if min_counts is not None:
        keep &= obs["total_counts"] >= min_counts
    if max_counts is not None:
        keep &= obs["total_counts"] <= max_counts

    if not keep.any():
        raise ValueError(
            f"No cells pass QC (genes in ({min_genes}, {max_genes}), mt < {max_mt_pct}%)"
        )

    adata = adata[keep.values].copy()

    print(f"After filtering: {adata.n_obs} cells and {adata.n_vars} genes")

    return adata


def summarize_qc(adata, groupby="dataset"):
    """Per-group table of cell counts and median QC metrics

    Args:
        adata: AnnData object with QC metrics
        groupby: obs column to group by; all cells form one group if absent

    Returns:
        DataFrame indexed by group
    """
    obs = adata.obs
    if groupby in obs:
        groups = obs[groupby].astype(str)
    else:
        groups = pd.Series("all", index=obs.index)

    summary = obs.groupby(groups)[QC_METRICS].median()
    summary.columns = [f"median_{col}" for col in summary.columns]
    summary.insert(0, "n_cells", groups.value_counts())
    summary.index.name = groupby

    return summary


def plot_qc_metrics(adata, save_dir=None):
    """Plot QC metrics

    Args:
        adata: AnnData object with QC metrics
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting QC metrics...")

    # First figure: violin plots
    sc.pl.violin(adata, QC_METRICS, jitter=0.4, multi_panel=True, show=False)
    save_or_show(plt.gcf(), save_dir, "qc_violin_plots.png")

    # Second figure: scatter plots
    fig, axes = plt.subplots(1, 2, figsize=(12, 5))

    sc.pl.scatter(adata, x="total_counts", y="percent_mt", ax=axes[0], show=False)
    sc.pl.scatter(
        adata, x="total_counts", y="n_genes_by_counts", ax=axes[1], show=False
    )

    plt.tight_layout()

    save_or_show(fig, save_dir, "qc_scatter_plots.png")
