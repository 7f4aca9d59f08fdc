#!/usr/bin/env python3
"""
Stage sequencing for the PBMC exploration

Each dataset goes through QC -> filtering -> normalization, then the
downstream stages (variable genes -> scaling -> PCA -> clustering ->
embeddings -> markers -> annotation). The normalized datasets are then
merged and the downstream stages run again on the merged object.
"""

import pandas as pd
from pathlib import Path

from pbmc_utils.annotation import (
    PBMC_MARKERS,
    annotate_by_scores,
    plot_cell_type_summary,
)
from pbmc_utils.config import (
    CELL_FILTERS,
    CLUSTERING,
    DE_PARAMS,
    EMBEDDING,
    HVG_PARAMS,
    PCA_PARAMS,
)
from pbmc_utils.data_loader import load_datasets, merge_datasets, save_dataset
from pbmc_utils.markers import (
    find_all_markers,
    plot_marker_genes,
    save_markers,
    top_markers,
)
from pbmc_utils.processing import (
    choose_leiden_resolution,
    cluster_cells,
    normalize_and_log,
    plot_embeddings,
    run_embeddings,
    run_pca,
    scale_data,
    select_variable_genes,
)
from pbmc_utils.qc_utils import (
    calculate_qc_metrics,
    filter_cells_and_genes,
    plot_qc_metrics,
    summarize_qc,
)
from pbmc_utils.qc_violin_plots import plot_qc_distributions


def _subdir(base, name):
    return Path(base) / name if base else None


def _banner(text):
    print(f"\n{'=' * 60}")
    print(text)
    print(f"{'=' * 60}")


def preprocess_dataset(adata, name, plots_dir=None, cell_filters=CELL_FILTERS):
    """QC, filter and normalize one dataset

    Args:
        adata: Raw-count AnnData object
        name: Dataset name (used for plot subdirectories)
        plots_dir: Base plot directory (optional)
        cell_filters: Threshold dictionary, see config.CELL_FILTERS

    Returns:
        Tuple of (normalized AnnData, QC summary DataFrame before/after filtering)
    """
    _banner(f"PREPROCESSING: {name}")

    save_dir = _subdir(plots_dir, name)

    adata = calculate_qc_metrics(adata)
    plot_qc_metrics(adata, save_dir=save_dir)
    before = summarize_qc(adata).assign(stage="before_filtering")

    adata = filter_cells_and_genes(
        adata,
        min_genes=cell_filters["min_genes"],
        max_genes=cell_filters["max_genes"],
        max_mt_pct=cell_filters["max_mt_pct"],
        min_counts=cell_filters.get("min_counts"),
        max_counts=cell_filters.get("max_counts"),
    )
    after = summarize_qc(adata).assign(stage="after_filtering")

    adata = normalize_and_log(adata)

    return adata, pd.concat([before, after])


def analyze_dataset(
    adata,
    name,
    plots_dir=None,
    output_dir=None,
    n_pcs=PCA_PARAMS["n_pcs"],
    resolution=CLUSTERING["resolution"],
    auto_resolution=False,
    tsne=EMBEDDING["tsne"],
    label_mode="cluster",
    n_top_genes=HVG_PARAMS["n_top_genes"],
    batch_key=None,
    extra_colors=(),
):
    """Run the downstream stages on a normalized dataset

    Args:
        adata: Normalized AnnData object (from preprocess_dataset or a merge)
        name: Name used for plot subdirectories and output files
        plots_dir: Base plot directory (optional)
        output_dir: Directory for marker tables and the .h5ad (optional)
        n_pcs: Principal components used for the graph and t-SNE
        resolution: Leiden resolution (ignored when auto_resolution is set)
        auto_resolution: Pick the resolution with choose_leiden_resolution
        tsne: Also compute a t-SNE embedding
        label_mode: "cluster" or "cell" level cell type labeling
        n_top_genes: Number of highly variable genes
        batch_key: obs column passed to variable gene selection
        extra_colors: Additional obs columns drawn on the embeddings

    Returns:
        Tuple of (annotated AnnData, marker DataFrame)
    """
    _banner(f"CLUSTERING & MARKERS: {name}")

    save_dir = _subdir(plots_dir, name)

    adata = select_variable_genes(
        adata, n_top_genes=n_top_genes, batch_key=batch_key, save_dir=save_dir
    )
    adata = scale_data(adata)
    adata = run_pca(adata, save_dir=save_dir)

    adata = cluster_cells(adata, n_pcs=n_pcs, resolution=resolution)
    if auto_resolution:
        choose_leiden_resolution(adata, save_dir=save_dir)

    adata = run_embeddings(adata, n_pcs=n_pcs, tsne=tsne)

    markers_df = find_all_markers(adata, groupby="leiden")
    top_df = top_markers(markers_df, n=DE_PARAMS["n_top"])

    adata = annotate_by_scores(adata, cluster_col="leiden", mode=label_mode)

    # Plots
    colors = ["leiden", "celltype", *extra_colors]
    plot_embeddings(adata, color=colors, basis="umap", save_dir=save_dir)
    if tsne:
        plot_embeddings(adata, color=colors, basis="tsne", save_dir=save_dir)

    canonical = [g for genes in PBMC_MARKERS.values() for g in genes]
    plot_marker_genes(adata, canonical, kind="dotplot", save_dir=save_dir, prefix="canonical")
    plot_marker_genes(adata, canonical, kind="feature", save_dir=save_dir, prefix="canonical")
    plot_marker_genes(
        adata, top_df["names"].tolist(), kind="heatmap", save_dir=save_dir, prefix="top"
    )
    plot_marker_genes(
        adata, top_df["names"].tolist(), kind="violin", save_dir=save_dir, prefix="top"
    )
    plot_cell_type_summary(adata, save_dir=save_dir)

    if output_dir:
        output_dir = Path(output_dir)
        save_markers(markers_df, output_dir / f"{name}_markers.csv")
        save_markers(top_df, output_dir / f"{name}_top_markers.csv")
        save_dataset(adata, output_dir / f"{name}.h5ad")

    return adata, markers_df


def analyze_merged(normalized, plots_dir=None, output_dir=None, **kwargs):
    """Merge normalized datasets and re-run the downstream stages

    Args:
        normalized: Dict of name -> normalized AnnData
        plots_dir: Base plot directory (optional)
        output_dir: Output directory (optional)
        **kwargs: Forwarded to analyze_dataset

    Returns:
        Tuple of (annotated merged AnnData, marker DataFrame)
    """
    merged = merge_datasets(normalized)

    # Log-normalized full gene space of the merged data, for marker testing
    merged.raw = merged

    plot_qc_distributions(merged, groupby="dataset", save_dir=_subdir(plots_dir, "merged"))

    return analyze_dataset(
        merged,
        "merged",
        plots_dir=plots_dir,
        output_dir=output_dir,
        batch_key="dataset",
        extra_colors=("dataset",),
        **kwargs,
    )


def run_pipeline(
    datasets=None,
    base_dir="data",
    plots_dir="plots",
    output_dir="outputs",
    merge=True,
    adatas=None,
    **kwargs,
):
    """Run the full exploration on every dataset, then on the merged pair

    Args:
        datasets: Mapping of name -> {"path": ...}; defaults to config.DATASETS
        base_dir: Directory that relative dataset paths are resolved against
        plots_dir: Base plot directory
        output_dir: Directory for tables and .h5ad files
        merge: Also analyze the merged datasets
        adatas: Already loaded raw-count datasets (skips loading)
        **kwargs: Forwarded to analyze_dataset

    Returns:
        Dict of name -> (annotated AnnData, marker DataFrame), including "merged"
    """
    if adatas is None:
        adatas = load_datasets(datasets, base_dir=base_dir)

    results = {}
    normalized = {}
    qc_tables = []

    for name, adata in adatas.items():
        adata, qc_table = preprocess_dataset(adata, name, plots_dir=plots_dir)
        qc_tables.append(qc_table)
        results[name] = analyze_dataset(
            adata.copy(), name, plots_dir=plots_dir, output_dir=output_dir, **kwargs
        )

        # The merge only needs X and layers; drop the second gene-space copy
        del adata.raw
        normalized[name] = adata

    if output_dir and qc_tables:
        qc_path = Path(output_dir) / "qc_summary.csv"
        qc_path.parent.mkdir(parents=True, exist_ok=True)
        pd.concat(qc_tables).to_csv(qc_path)
        print(f"  Saved: {qc_path}")

    if merge and len(normalized) > 1:
        results["merged"] = analyze_merged(
            normalized, plots_dir=plots_dir, output_dir=output_dir, **kwargs
        )

    print("\nAnalysis complete!")
    return results
