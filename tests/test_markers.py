import pandas as pd
import pytest

from pbmc_utils.markers import (
    MARKER_COLUMNS,
    filter_markers,
    find_all_markers,
    find_markers,
    plot_marker_genes,
    save_markers,
    top_markers,
)


def _marker_table():
    return pd.DataFrame(
        {
            "group": ["0", "0", "0", "1", "1"],
            "names": ["LYZ", "CD14", "GENE1", "MS4A1", "GENE2"],
            "scores": [9.0, 8.0, 1.0, 7.0, -3.0],
            "logfoldchanges": [4.0, 3.0, 0.1, 5.0, -2.0],
            "pvals": [1e-10, 1e-8, 0.2, 1e-9, 1e-4],
            "pvals_adj": [1e-9, 1e-7, 0.4, 1e-8, 1e-3],
            "pct_nz_group": [0.9, 0.8, 0.9, 0.1, 0.05],
            "pct_nz_reference": [0.1, 0.1, 0.9, 0.3, 0.6],
        }
    )


def test_filter_markers_thresholds():
    filtered = filter_markers(_marker_table())

    # GENE1 fails fold-change/p-value, GENE2 is down-regulated
    assert filtered["names"].tolist() == ["LYZ", "CD14", "MS4A1"]


def test_filter_markers_detection_in_either_group():
    table = _marker_table()

    filtered = filter_markers(table, min_pct=0.35)

    # MS4A1 is detected in 10% / 30% of cells only
    assert "MS4A1" not in filtered["names"].tolist()


def test_filter_markers_keeps_negative_when_requested():
    filtered = filter_markers(_marker_table(), only_positive=False)

    assert "GENE2" in filtered["names"].tolist()


def test_top_markers_per_group():
    top = top_markers(_marker_table(), n=1)

    assert top["names"].tolist() == ["LYZ", "MS4A1"]


def test_find_all_markers_respects_thresholds(clustered_adata):
    adata = clustered_adata.copy()

    markers = find_all_markers(adata)

    assert list(markers.columns) == MARKER_COLUMNS
    assert not markers.empty
    assert (markers[["pct_nz_group", "pct_nz_reference"]].max(axis=1) >= 0.25).all()
    assert (markers["logfoldchanges"] >= 0.25).all()
    assert (markers["pvals_adj"] <= 0.05).all()
    assert {"CD14", "MS4A1", "NKG7"} <= set(markers["names"])


def test_find_all_markers_unknown_groupby(clustered_adata):
    with pytest.raises(KeyError, match="celltype_missing"):
        find_all_markers(clustered_adata.copy(), groupby="celltype_missing")


def test_find_markers_against_chosen_clusters(clustered_adata):
    adata = clustered_adata.copy()
    clusters = adata.obs["leiden"].cat.categories.tolist()

    markers = find_markers(adata, group=clusters[0], reference=clusters[1:3])

    assert list(markers.columns) == MARKER_COLUMNS
    assert set(markers["group"]) <= {clusters[0]}
    assert markers["pct_nz_reference"].notna().all()


def test_find_markers_rejects_bad_groups(clustered_adata):
    adata = clustered_adata.copy()
    first = adata.obs["leiden"].cat.categories[0]

    with pytest.raises(KeyError):
        find_markers(adata, group="not-a-cluster")
    with pytest.raises(KeyError):
        find_markers(adata, group=first, reference=["not-a-cluster"])
    with pytest.raises(ValueError):
        find_markers(adata, group=first, reference=[first])


def test_save_markers(tmp_path):
    out = save_markers(_marker_table(), tmp_path / "tables" / "markers.csv")

    assert out.exists()
    assert pd.read_csv(out).shape == (5, 8)


def test_plot_marker_genes(clustered_adata, tmp_path):
    adata = clustered_adata.copy()

    plotted = plot_marker_genes(
        adata, ["CD14", "LYZ", "CD14", "NOT_A_GENE"], kind="dotplot", save_dir=tmp_path
    )

    assert plotted == ["CD14", "LYZ"]
    assert (tmp_path / "markers_dotplot.png").exists()
    assert plot_marker_genes(adata, ["NOT_A_GENE"], save_dir=tmp_path) == []
    with pytest.raises(ValueError):
        plot_marker_genes(adata, ["CD14"], kind="ridge")
