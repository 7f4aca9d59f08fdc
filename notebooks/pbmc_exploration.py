# %% [markdown]
# # PBMC Exploration
#
# **Datasets:** 10x PBMC 3k (hg19) and PBMC 4k (GRCh38)
# **📥 Input:** `data/<dataset>/filtered_gene_bc_matrices/<genome>/`
# **📤 Output:** `outputs/pbmc3k.h5ad`, `outputs/pbmc4k.h5ad`, `outputs/merged.h5ad`
#
# Interactive version of `pbmc_qc_clustering.py`: one dataset step by step,
# then the merged pair.
#
# ---

# %%
import scanpy as sc
import matplotlib.pyplot as plt
from pathlib import Path

from pbmc_utils.config import CELL_FILTERS, DATASETS, get_settings_summary
from pbmc_utils.data_loader import load_10x_dataset, merge_datasets, save_dataset
from pbmc_utils.qc_utils import calculate_qc_metrics, filter_cells_and_genes, plot_qc_metrics, summarize_qc
from pbmc_utils.processing import (
    cluster_cells,
    normalize_and_log,
    plot_embeddings,
    run_embeddings,
    run_pca,
    scale_data,
    select_variable_genes,
)
from pbmc_utils.markers import find_all_markers, find_markers, plot_marker_genes, top_markers
from pbmc_utils.annotation import PBMC_MARKERS, annotate_by_scores, plot_cell_type_summary

sc.settings.verbosity = 3
sc.settings.set_figure_params(dpi=80, facecolor="white")

DATA_DIR = Path("data")
OUTPUT_DIR = Path("outputs")
OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

print(get_settings_summary())

# %% [markdown]
# ## 1. Load PBMC 3k

# %%
adata = load_10x_dataset(DATA_DIR / DATASETS["pbmc3k"]["path"], "pbmc3k")
adata

# %% [markdown]
# ## 2. Quality control
#
# Keep cells with 200 < genes < 2500 and mitochondrial fraction below 5%.

# %%
adata = calculate_qc_metrics(adata)
plot_qc_metrics(adata)
summarize_qc(adata)

# %%
adata = filter_cells_and_genes(
    adata,
    min_genes=CELL_FILTERS["min_genes"],
    max_genes=CELL_FILTERS["max_genes"],
    max_mt_pct=CELL_FILTERS["max_mt_pct"],
)
summarize_qc(adata)

# %% [markdown]
# ## 3. Normalization, variable genes, scaling, PCA

# %%
adata = normalize_and_log(adata)
pbmc3k_normalized = adata.copy()

adata = select_variable_genes(adata)
adata = scale_data(adata)
adata = run_pca(adata)

# %% [markdown]
# Pick the number of PCs from the elbow plot above (default: 10).

# %%
adata = cluster_cells(adata, n_pcs=10, resolution=0.5)
adata = run_embeddings(adata, n_pcs=10, tsne=True)

plot_embeddings(adata, color=["leiden"], basis="umap")
plot_embeddings(adata, color=["leiden"], basis="tsne")

# %% [markdown]
# ## 4. Marker genes

# %%
markers = find_all_markers(adata)
top = top_markers(markers, n=5)
top

# %%
# One cluster against two others instead of the rest
find_markers(adata, group="1", reference=["0", "2"]).head(10)

# %%
plot_marker_genes(adata, top["names"].tolist(), kind="heatmap")
plot_marker_genes(adata, [g for genes in PBMC_MARKERS.values() for g in genes], kind="dotplot")

# %% [markdown]
# ## 5. Cell types

# %%
adata = annotate_by_scores(adata)
plot_embeddings(adata, color=["celltype"], basis="umap")
plot_cell_type_summary(adata)

save_dataset(adata, OUTPUT_DIR / "pbmc3k.h5ad")

# %% [markdown]
# ## 6. Merged PBMC 3k + 4k
#
# Merging the raw count matrices runs out of memory on a laptop, so the
# already-normalized objects are merged instead.

# %%
pbmc4k = load_10x_dataset(DATA_DIR / DATASETS["pbmc4k"]["path"], "pbmc4k")
pbmc4k = calculate_qc_metrics(pbmc4k)
pbmc4k = filter_cells_and_genes(pbmc4k)
pbmc4k = normalize_and_log(pbmc4k)

merged = merge_datasets({"pbmc3k": pbmc3k_normalized, "pbmc4k": pbmc4k})
merged.raw = merged

merged = select_variable_genes(merged, batch_key="dataset")
merged = scale_data(merged)
merged = run_pca(merged)
merged = cluster_cells(merged)
merged = run_embeddings(merged, tsne=False)
merged = annotate_by_scores(merged)

plot_embeddings(merged, color=["leiden", "dataset", "celltype"], basis="umap")
plot_cell_type_summary(merged, groupby="dataset")
plt.show()

# %%
save_dataset(merged, OUTPUT_DIR / "merged.h5ad")
