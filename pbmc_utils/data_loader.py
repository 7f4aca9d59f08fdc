#!/usr/bin/env python3
"""
Data loading utilities for single-cell RNA-seq analysis
Handles 10x matrix loading, dataset merging and h5ad serialization
"""

import anndata
import scanpy as sc
from pathlib import Path

from pbmc_utils.config import DATASETS, MERGE_PARAMS


def load_10x_dataset(path, name):
    """Load a 10x Genomics feature/barcode matrix

    Args:
        path: Directory with matrix.mtx, genes.tsv/features.tsv and barcodes.tsv
            (optionally gzipped), or a 10x .h5 file
        name: Dataset name stored in obs["dataset"]

    Returns:
        AnnData object with raw counts (cells x genes)
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"10x data not found for '{name}': {path}")

    print(f"Loading {name} from {path}")

    if path.is_file() and path.suffix == ".h5":
        adata = sc.read_10x_h5(path)
    else:
        adata = sc.read_10x_mtx(path, var_names="gene_symbols", cache=False)

    # Gene symbols are not unique across Ensembl ids
    adata.var_names_make_unique()
    adata.obs["dataset"] = name

    print(f"  {name}: {adata.n_obs:,} cells x {adata.n_vars:,} genes")

    return adata


def load_datasets(datasets=None, base_dir="data"):
    """Load every configured dataset

    Args:
        datasets: Mapping of name -> {"path": ...}; defaults to config.DATASETS
        base_dir: Directory that relative dataset paths are resolved against

    Returns:
        Dict of name -> AnnData, in configuration order
    """
    if datasets is None:
        datasets = DATASETS

    print("Loading 10x data...")

    adatas = {}
    for name, spec in datasets.items():
        path = Path(spec["path"])
        if not path.is_absolute():
            path = Path(base_dir) / path
        adatas[name] = load_10x_dataset(path, name)

    return adatas


def merge_datasets(
    adatas,
    join=MERGE_PARAMS["join"],
    label=MERGE_PARAMS["label"],
    index_unique=MERGE_PARAMS["index_unique"],
):
    """Concatenate several datasets into one AnnData

    Expects normalized objects. Only X, layers and the obs/var tables are
    carried over; .raw, embeddings and graphs are dropped so a single
    gene-space copy of each dataset is held while merging.

    Args:
        adatas: Dict of name -> AnnData
        join: "inner" keeps shared genes only, "outer" fills missing with zeros
        label: obs column recording the source dataset
        index_unique: Separator used to prefix barcodes with the dataset name

    Returns:
        Merged AnnData object
    """
    if not adatas:
        raise ValueError("merge_datasets needs at least one dataset")

    print(f"Merging {len(adatas)} datasets: {', '.join(adatas)}")

    parts = {}
    for name, adata in adatas.items():
        obs = adata.obs.copy()
        # Prefix barcodes with the dataset name
        obs.index = [f"{name}{index_unique}{barcode}" for barcode in obs.index]
        parts[name] = anndata.AnnData(
            X=adata.X.copy(),
            obs=obs,
            var=adata.var.copy(),
            layers={key: layer.copy() for key, layer in adata.layers.items()},
        )

    merged = anndata.concat(
        parts,
        join=join,
        label=label,
        index_unique=None,
        fill_value=0,
        merge="same",
    )
    merged.obs_names_make_unique()

    print(f"Merged data: {merged.n_obs:,} cells x {merged.n_vars:,} genes")

    return merged


def save_dataset(adata, path):
    """Write an AnnData object to .h5ad, creating parent directories"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    adata.write_h5ad(path)
    print(f"  Saved: {path}")
    return path


def load_saved_dataset(path):
    """Read an .h5ad written by save_dataset"""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"No saved dataset at {path}")
    return sc.read_h5ad(path)
