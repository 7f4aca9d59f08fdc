#!/usr/bin/env python3
"""
Analysis parameters for the PBMC single-cell exploration

This file centralizes all thresholds and library parameters used in the pipeline.
Modify these values to adjust filtering stringency or clustering granularity.
"""

# Public 10x datasets analyzed by default (paths relative to --data-dir)
DATASETS = {
    "pbmc3k": {
        "path": "pbmc3k/filtered_gene_bc_matrices/hg19",
        "genome": "hg19",
    },
    "pbmc4k": {
        "path": "pbmc4k/filtered_gene_bc_matrices/GRCh38",
        "genome": "GRCh38",
    },
}

# Cell-level filters (gene bounds are exclusive)
CELL_FILTERS = {
    "min_genes": 200,  # Cells must detect more than this many genes
    "max_genes": 2500,  # ...and fewer than this many (likely multiplets above)
    "max_mt_pct": 5,  # Mitochondrial percentage must stay below this
    "min_counts": None,  # Optional total count bounds (None = no filter)
    "max_counts": None,
}

# Gene-level filters
GENE_FILTERS = {
    "min_cells": 3,  # Minimum cells expressing a gene
}

# Mitochondrial gene prefix (human datasets)
GENE_PATTERNS = {
    "mt_pattern": "MT-",
}

NORMALIZATION = {
    "target_sum": 1e4,
}

HVG_PARAMS = {
    "flavor": "seurat",
    "n_top_genes": 2000,
}

SCALING = {
    "max_value": 10,
    "regress_out": None,  # e.g. ["total_counts", "percent_mt"]
}

PCA_PARAMS = {
    "n_comps": 50,
    "n_pcs": 10,  # PCs used downstream, picked from the elbow plot
    "svd_solver": "arpack",
}

CLUSTERING = {
    "n_neighbors": 10,
    "resolution": 0.5,
    "random_state": 0,
    "min_cluster_size": 10,  # Used by the resolution sweep only
}

EMBEDDING = {
    "tsne": True,
    "perplexity": 30,
}

# Marker detection (Wilcoxon rank-sum, each cluster against the rest)
DE_PARAMS = {
    "method": "wilcoxon",
    "min_pct": 0.25,  # Detection fraction required in either group
    "logfc_threshold": 0.25,
    "pval_adj_cutoff": 0.05,
    "only_positive": True,
    "n_top": 5,
}

# Merging normalized objects avoids holding two raw count matrices plus their
# dense intermediates in memory at the same time
MERGE_PARAMS = {
    "join": "inner",
    "label": "dataset",
    "index_unique": "_",
}


def get_settings_summary():
    """Return a formatted summary of current analysis settings"""
    summary = [
        "=== Analysis Settings ===",
        "\nCell-level filters:",
        f"  - Genes per cell: ({CELL_FILTERS['min_genes']}, {CELL_FILTERS['max_genes']})",
        f"  - Max mitochondrial %: {CELL_FILTERS['max_mt_pct']}%",
    ]

    if CELL_FILTERS["min_counts"] is not None or CELL_FILTERS["max_counts"] is not None:
        summary.append(
            f"  - Counts per cell: {CELL_FILTERS['min_counts']} - {CELL_FILTERS['max_counts']}"
        )

    summary.extend(
        [
            "\nGene-level filters:",
            f"  - Min cells expressing: {GENE_FILTERS['min_cells']}",
            "\nClustering:",
            f"  - PCs: {PCA_PARAMS['n_pcs']} of {PCA_PARAMS['n_comps']}",
            f"  - Neighbors: {CLUSTERING['n_neighbors']}",
            f"  - Leiden resolution: {CLUSTERING['resolution']}",
            "\nMarkers:",
            f"  - Test: {DE_PARAMS['method']}",
            f"  - Min detection fraction: {DE_PARAMS['min_pct']}",
            f"  - Min log fold-change: {DE_PARAMS['logfc_threshold']}",
        ]
    )

    return "\n".join(summary)


# Validation function
def validate_settings():
    """Validate that analysis parameters make sense"""
    errors = []

    # Check min/max relationships
    if CELL_FILTERS["min_genes"] >= CELL_FILTERS["max_genes"]:
        errors.append("min_genes must be less than max_genes")

    if (
        CELL_FILTERS["min_counts"] is not None
        and CELL_FILTERS["max_counts"] is not None
        and CELL_FILTERS["min_counts"] >= CELL_FILTERS["max_counts"]
    ):
        errors.append("min_counts must be less than max_counts")

    # Check percentage bounds
    if not 0 <= CELL_FILTERS["max_mt_pct"] <= 100:
        errors.append("max_mt_pct must be between 0 and 100")

    if PCA_PARAMS["n_pcs"] > PCA_PARAMS["n_comps"]:
        errors.append("n_pcs must not exceed n_comps")

    if CLUSTERING["resolution"] <= 0:
        errors.append("resolution must be positive")

    if CLUSTERING["n_neighbors"] < 2:
        errors.append("n_neighbors must be at least 2")

    if not 0 <= DE_PARAMS["min_pct"] <= 1:
        errors.append("min_pct must be between 0 and 1")

    if not 0 < DE_PARAMS["pval_adj_cutoff"] <= 1:
        errors.append("pval_adj_cutoff must be between 0 and 1")

    if MERGE_PARAMS["join"] not in ("inner", "outer"):
        errors.append("merge join must be 'inner' or 'outer'")

    if errors:
        raise ValueError("Settings validation failed:\n" + "\n".join(errors))

    return True


# Run validation on import
validate_settings()
