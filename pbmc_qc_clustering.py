#!/usr/bin/env python3
"""
PBMC single-cell RNA-seq exploration: QC, clustering and marker genes

This script performs, for each configured 10x dataset:
1. Matrix loading and QC metric calculation
2. Threshold filtering and normalization
3. Variable genes, scaling and PCA
4. Leiden clustering, UMAP and t-SNE
5. Marker gene testing and cell type annotation

and then repeats steps 3-5 on the normalized datasets merged together.

uv run python pbmc_qc_clustering.py --data-dir data
"""

import warnings
import argparse
import matplotlib
import scanpy as sc

from pbmc_utils.config import CLUSTERING, DATASETS, EMBEDDING, PCA_PARAMS, get_settings_summary
from pbmc_utils.pipeline import run_pipeline

# Configure scanpy
sc.settings.verbosity = 3  # verbosity level
sc.settings.set_figure_params(dpi=80, facecolor="white")

# Suppress warnings
warnings.filterwarnings("ignore")


def main(
    data_dir="data",
    dataset_names=None,
    plots_dir_path="plots",
    output_dir_path="outputs",
    merge=True,
    resolution=CLUSTERING["resolution"],
    n_pcs=PCA_PARAMS["n_pcs"],
    tsne=EMBEDDING["tsne"],
    label_mode="cluster",
    auto_resolution=False,
):
    """Main analysis pipeline

    Args:
        data_dir: Directory holding the 10x datasets.
        dataset_names: Names from config.DATASETS to analyze (default: all).
        plots_dir_path: Directory where plots will be saved.
        output_dir_path: Directory where tables and .h5ad files will be saved.
        merge: Also analyze the merged datasets.
        resolution: Leiden resolution.
        n_pcs: Principal components used downstream.
        tsne: Also compute t-SNE embeddings.
        label_mode: "cluster" or "cell" level cell type labeling.
        auto_resolution: Pick the Leiden resolution with a silhouette sweep.
    """
    print("Starting PBMC single-cell exploration...")

    # Set matplotlib backend to non-interactive for save-only mode
    matplotlib.use("Agg")
    print("Running in save-only mode - plots will not be displayed")

    # Print settings
    print("\n" + get_settings_summary() + "\n")

    if dataset_names:
        datasets = {name: DATASETS[name] for name in dataset_names}
    else:
        datasets = DATASETS

    return run_pipeline(
        datasets=datasets,
        base_dir=data_dir,
        plots_dir=plots_dir_path,
        output_dir=output_dir_path,
        merge=merge,
        resolution=resolution,
        n_pcs=n_pcs,
        tsne=tsne,
        label_mode=label_mode,
        auto_resolution=auto_resolution,
    )


def build_parser():
    parser = argparse.ArgumentParser(
        description="PBMC scRNA-seq QC, clustering, and marker genes"
    )
    parser.add_argument(
        "--data-dir",
        default="data",
        help="Directory holding the 10x datasets (default: 'data')",
    )
    parser.add_argument(
        "--datasets",
        nargs="+",
        choices=sorted(DATASETS),
        default=None,
        help="Datasets to analyze (default: all configured)",
    )
    parser.add_argument(
        "--plots-dir",
        default="plots",
        help="Directory to write plots to (default: 'plots')",
    )
    parser.add_argument(
        "--output-dir",
        default="outputs",
        help="Directory to write tables and .h5ad files to (default: 'outputs')",
    )
    parser.add_argument(
        "--resolution",
        type=float,
        default=CLUSTERING["resolution"],
        help=f"Leiden resolution (default: {CLUSTERING['resolution']})",
    )
    parser.add_argument(
        "--n-pcs",
        type=int,
        default=PCA_PARAMS["n_pcs"],
        help=f"Principal components used downstream (default: {PCA_PARAMS['n_pcs']})",
    )
    parser.add_argument(
        "--no-merge",
        action="store_true",
        help="Skip the merged analysis",
    )
    parser.add_argument(
        "--no-tsne",
        action="store_true",
        help="Skip t-SNE embeddings",
    )
    parser.add_argument(
        "--label-mode",
        choices=["cell", "cluster"],
        default="cluster",
        help="Cell type labeling mode: 'cell' for per-cell or 'cluster' for cluster-level",
    )
    parser.add_argument(
        "--auto-resolution",
        action="store_true",
        help="Choose the Leiden resolution with a silhouette sweep",
    )
    return parser


if __name__ == "__main__":
    args = build_parser().parse_args()

    if args.resolution <= 0:
        raise SystemExit("--resolution must be positive")

    results = main(
        data_dir=args.data_dir,
        dataset_names=args.datasets,
        plots_dir_path=args.plots_dir,
        output_dir_path=args.output_dir,
        merge=not args.no_merge,
        resolution=args.resolution,
        n_pcs=args.n_pcs,
        tsne=not args.no_tsne,
        label_mode=args.label_mode,
        auto_resolution=args.auto_resolution,
    )
