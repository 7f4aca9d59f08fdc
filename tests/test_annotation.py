import pytest

from pbmc_utils.annotation import (
    UNASSIGNED,
    annotate_by_scores,
    plot_cell_type_summary,
    rename_clusters,
)

EXPECTED = {"mono": "CD14+ Mono", "bcell": "B", "nk": "NK"}


def test_annotate_clusters_by_marker_scores(clustered_adata):
    adata = annotate_by_scores(clustered_adata.copy())

    assert adata.obs["celltype"].notna().all()
    for population, label in EXPECTED.items():
        labels = adata.obs.loc[adata.obs["population"] == population, "celltype"]
        assert (labels == label).mean() > 0.9, population

    # one label per cluster
    per_cluster = adata.obs.groupby("leiden", observed=True)["celltype"].nunique()
    assert (per_cluster == 1).all()
    assert (adata.obs["celltype_score_margin"] >= 0).all()


def test_annotate_cells_individually(clustered_adata):
    adata = annotate_by_scores(clustered_adata.copy(), mode="cell")

    nk = adata.obs.loc[adata.obs["population"] == "nk", "celltype"]
    assert (nk == "NK").mean() > 0.9
    assert adata.obs["celltype"].notna().all()
    assert adata.obs["celltype"].dtype == "category"
    assert (adata.obs["celltype_score_margin"] >= 0).all()


def test_annotate_min_margin_marks_unassigned(clustered_adata):
    adata = annotate_by_scores(clustered_adata.copy(), min_margin=1e6)

    assert set(adata.obs["celltype"]) == {UNASSIGNED}


def test_annotate_validates_inputs(clustered_adata):
    adata = clustered_adata.copy()

    with pytest.raises(ValueError):
        annotate_by_scores(adata, mode="sample")
    with pytest.raises(KeyError):
        annotate_by_scores(adata, cluster_col="louvain")
    with pytest.raises(ValueError):
        annotate_by_scores(adata, marker_genes={"Ghost": ["NOT_A_GENE"]})


def test_rename_clusters_keeps_unmapped_ids(clustered_adata):
    adata = clustered_adata.copy()
    clusters = adata.obs["leiden"].cat.categories.tolist()

    rename_clusters(adata, {clusters[0]: "Naive CD4 T"}, key_added="manual")

    first = adata.obs["leiden"] == clusters[0]
    assert (adata.obs.loc[first, "manual"] == "Naive CD4 T").all()
    assert set(adata.obs.loc[~first, "manual"]) == set(clusters[1:])


def test_plot_cell_type_summary(clustered_adata, tmp_path):
    adata = annotate_by_scores(clustered_adata.copy())

    counts = plot_cell_type_summary(adata, groupby="dataset", save_dir=tmp_path)

    assert counts.values.sum() == adata.n_obs
    assert (tmp_path / "celltype_distribution.png").exists()

    with pytest.raises(KeyError):
        plot_cell_type_summary(adata, celltype_col="missing")
