#!/usr/bin/env python3
"""
Marker gene utilities for single-cell RNA-seq analysis
Handles Wilcoxon rank-sum testing per cluster, threshold filtering and marker plots
"""

import scanpy as sc
import matplotlib.pyplot as plt
import pandas as pd
from pathlib import Path

from pbmc_utils.config import DE_PARAMS
from pbmc_utils.plotting import save_or_show

MARKER_COLUMNS = [
    "group",
    "names",
    "scores",
    "logfoldchanges",
    "pvals",
    "pvals_adj",
    "pct_nz_group",
    "pct_nz_reference",
]

PLOT_KINDS = ("dotplot", "heatmap", "violin", "feature")


def _as_categorical(adata, groupby):
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")
    if not isinstance(adata.obs[groupby].dtype, pd.CategoricalDtype):
        adata.obs[groupby] = adata.obs[groupby].astype(str).astype("category")


def filter_markers(
    markers_df,
    min_pct=DE_PARAMS["min_pct"],
    logfc_threshold=DE_PARAMS["logfc_threshold"],
    pval_adj_cutoff=DE_PARAMS["pval_adj_cutoff"],
    only_positive=DE_PARAMS["only_positive"],
):
    """Apply detection, fold-change and significance thresholds to a marker table

    A gene is kept when it is detected in at least min_pct of the cells of
    either group, its log fold-change passes logfc_threshold (signed when
    only_positive, absolute otherwise) and its adjusted p-value is at most
    pval_adj_cutoff.
    """
    detected = markers_df[["pct_nz_group", "pct_nz_reference"]].max(axis=1) >= min_pct

    if only_positive:
        enriched = markers_df["logfoldchanges"] >= logfc_threshold
    else:
        enriched = markers_df["logfoldchanges"].abs() >= logfc_threshold

    keep = detected & enriched
    if pval_adj_cutoff is not None:
        keep &= markers_df["pvals_adj"] <= float(pval_adj_cutoff)

    return markers_df[keep].reset_index(drop=True)


def find_all_markers(
    adata,
    groupby="leiden",
    method=DE_PARAMS["method"],
    min_pct=DE_PARAMS["min_pct"],
    logfc_threshold=DE_PARAMS["logfc_threshold"],
    pval_adj_cutoff=DE_PARAMS["pval_adj_cutoff"],
    only_positive=DE_PARAMS["only_positive"],
):
    """Find marker genes of every cluster against all other cells.

    Args:
        adata: AnnData object with clustering results (log-normalized data in .raw).
        groupby: Column in adata.obs to group by (default: "leiden").
        method: DE method passed to scanpy (e.g., "wilcoxon", "t-test").
        min_pct: Minimum detection fraction in either group.
        logfc_threshold: Minimum log2 fold-change.
        pval_adj_cutoff: Maximum adjusted p-value (None disables the filter).
        only_positive: Keep only genes up-regulated in the cluster.

    Returns:
        Pandas DataFrame with one row per (cluster, marker gene).
    """
    _as_categorical(adata, groupby)

    print(f"Finding markers for each '{groupby}' group ({method})...")

    key = f"rank_genes_{groupby}"
    sc.tl.rank_genes_groups(
        adata, groupby=groupby, method=method, pts=True, key_added=key
    )

    markers_df = sc.get.rank_genes_groups_df(adata, group=None, key=key)
    markers_df = markers_df[MARKER_COLUMNS]

    markers_df = filter_markers(
        markers_df,
        min_pct=min_pct,
        logfc_threshold=logfc_threshold,
        pval_adj_cutoff=pval_adj_cutoff,
        only_positive=only_positive,
    )

    print(f"  {len(markers_df)} markers across {markers_df['group'].nunique()} groups")

    return markers_df


def find_markers(
    adata,
    group,
    reference="rest",
    groupby="leiden",
    method=DE_PARAMS["method"],
    min_pct=DE_PARAMS["min_pct"],
    logfc_threshold=DE_PARAMS["logfc_threshold"],
    pval_adj_cutoff=DE_PARAMS["pval_adj_cutoff"],
    only_positive=False,
):
    """Compare one cluster against the rest or against chosen clusters

    Args:
        adata: AnnData object with clustering results
        group: Cluster to test
        reference: "rest", a single cluster, or a list of clusters pooled together
        groupby: obs column holding the clusters
        method, min_pct, logfc_threshold, pval_adj_cutoff, only_positive:
            as in find_all_markers

    Returns:
        DataFrame of markers for `group`
    """
    _as_categorical(adata, groupby)

    labels = adata.obs[groupby].astype(str)
    group = str(group)
    if group not in set(labels):
        raise KeyError(f"Group '{group}' not found in adata.obs['{groupby}']")

    if isinstance(reference, str) and reference == "rest":
        reference_groups = sorted(set(labels) - {group})
    elif isinstance(reference, (list, tuple, set)):
        reference_groups = [str(r) for r in reference]
    else:
        reference_groups = [str(reference)]

    unknown = set(reference_groups) - set(labels)
    if unknown:
        raise KeyError(f"Reference groups {sorted(unknown)} not found in '{groupby}'")
    if group in reference_groups:
        raise ValueError(f"Group '{group}' cannot also be a reference group")

    print(f"Finding markers for '{group}' vs {reference}...")

    mask = labels.isin([group] + reference_groups).values
    sub = adata[mask].copy()
    sub.obs["comparison"] = pd.Categorical(
        [
            "target" if label == group else "reference"
            for label in labels[mask]
        ],
        categories=["target", "reference"],
    )

    sc.tl.rank_genes_groups(
        sub,
        groupby="comparison",
        groups=["target"],
        reference="reference",
        method=method,
        pts=True,
    )

    markers_df = sc.get.rank_genes_groups_df(sub, group="target")
    # With an explicit reference scanpy only stores per-group detection rates
    pts = sub.uns["rank_genes_groups"]["pts"]
    markers_df["pct_nz_group"] = markers_df["names"].map(pts["target"])
    markers_df["pct_nz_reference"] = markers_df["names"].map(pts["reference"])
    markers_df["group"] = group
    markers_df = markers_df[MARKER_COLUMNS]

    return filter_markers(
        markers_df,
        min_pct=min_pct,
        logfc_threshold=logfc_threshold,
        pval_adj_cutoff=pval_adj_cutoff,
        only_positive=only_positive,
    )


def top_markers(markers_df, n=DE_PARAMS["n_top"], by="logfoldchanges"):
    """Return the top-n markers of each group ranked by `by`"""
    ranked = markers_df.sort_values(by, ascending=False)
    top = ranked.groupby("group", observed=True, sort=False).head(int(n))
    return top.sort_values(["group", by], ascending=[True, False]).reset_index(
        drop=True
    )


def save_markers(markers_df, path):
    """Write a marker table to CSV"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    markers_df.to_csv(path, index=False)
    print(f"  Saved: {path}")
    return path


def plot_marker_genes(
    adata, genes, groupby="leiden", kind="dotplot", save_dir=None, prefix="markers"
):
    """Plot marker genes across clusters

    Args:
        adata: AnnData object with clustering results
        genes: Gene names to plot; names missing from the data are skipped
        groupby: obs column for the cluster axis
        kind: "dotplot", "heatmap", "violin" or "feature" (UMAP colored by gene)
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
        prefix: Filename prefix

    Returns:
        List of genes that were plotted
    """
    if kind not in PLOT_KINDS:
        raise ValueError(f"kind must be one of {PLOT_KINDS}, got '{kind}'")

    var_names = adata.raw.var_names if adata.raw is not None else adata.var_names
    # Dedupe while preserving order
    seen = set()
    available = [
        g for g in genes if g in var_names and not (g in seen or seen.add(g))
    ]

    if not available:
        print(f"  Warning: none of {list(genes)[:5]}... found, skipping {kind}")
        return []

    if kind == "dotplot":
        sc.pl.dotplot(adata, available, groupby=groupby, show=False)
        fig = plt.gcf()
    elif kind == "heatmap":
        sc.pl.heatmap(adata, available, groupby=groupby, show=False)
        fig = plt.gcf()
    elif kind == "violin":
        sc.pl.stacked_violin(adata, available, groupby=groupby, show=False)
        fig = plt.gcf()
    else:
        fig = sc.pl.umap(adata, color=available, show=False, return_fig=True)

    save_or_show(fig, save_dir, f"{prefix}_{kind}.png")

    return available
