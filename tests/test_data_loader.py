import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy import io, sparse

from pbmc_utils.data_loader import (
    load_10x_dataset,
    load_datasets,
    load_saved_dataset,
    merge_datasets,
    save_dataset,
)


def _write_10x_legacy(directory, n_cells=4):
    """Write a tiny CellRanger v2 style matrix directory (genes x cells)."""
    directory.mkdir(parents=True)
    genes = pd.DataFrame(
        {
            "id": ["ENSG01", "ENSG02", "ENSG03", "ENSG04"],
            # duplicated symbol on purpose
            "symbol": ["CD3E", "MT-CO1", "LYZ", "LYZ"],
        }
    )
    counts = sparse.coo_matrix(
        np.arange(len(genes) * n_cells, dtype=np.int64).reshape(len(genes), n_cells)
    )
    io.mmwrite(str(directory / "matrix.mtx"), counts)
    genes.to_csv(directory / "genes.tsv", sep="\t", header=False, index=False)
    pd.Series([f"AAAC{i}-1" for i in range(n_cells)]).to_csv(
        directory / "barcodes.tsv", header=False, index=False
    )
    return directory


def test_load_10x_dataset_reads_cells_by_genes(tmp_path):
    path = _write_10x_legacy(tmp_path / "hg19")

    adata = load_10x_dataset(path, "pbmc3k")

    assert adata.shape == (4, 4)
    assert adata.var_names.is_unique
    assert "CD3E" in adata.var_names
    assert list(adata.obs["dataset"].unique()) == ["pbmc3k"]
    assert list(adata.obs_names) == ["AAAC0-1", "AAAC1-1", "AAAC2-1", "AAAC3-1"]


def test_load_10x_dataset_missing_path(tmp_path):
    with pytest.raises(FileNotFoundError, match="pbmc4k"):
        load_10x_dataset(tmp_path / "nope", "pbmc4k")


def test_load_datasets_resolves_relative_paths(tmp_path):
    _write_10x_legacy(tmp_path / "a" / "hg19")
    _write_10x_legacy(tmp_path / "b" / "hg19", n_cells=3)
    datasets = {
        "first": {"path": "a/hg19"},
        "second": {"path": "b/hg19"},
    }

    adatas = load_datasets(datasets, base_dir=tmp_path)

    assert list(adatas) == ["first", "second"]
    assert adatas["second"].n_obs == 3


def _small(name, genes, n_cells=3):
    X = sparse.csr_matrix(np.ones((n_cells, len(genes)), dtype=np.float32))
    adata = ad.AnnData(
        X=X,
        obs=pd.DataFrame(
            {"dataset": name}, index=[f"AAAC{i}-1" for i in range(n_cells)]
        ),
        var=pd.DataFrame(index=genes),
    )
    adata.layers["counts"] = X.copy()
    adata.raw = adata
    return adata


def test_merge_datasets_inner_join_and_unique_barcodes():
    a = _small("pbmc3k", ["CD3E", "LYZ", "MS4A1"])
    b = _small("pbmc4k", ["LYZ", "MS4A1", "NKG7"], n_cells=2)

    merged = merge_datasets({"pbmc3k": a, "pbmc4k": b})

    assert merged.n_obs == 5
    assert sorted(merged.var_names) == ["LYZ", "MS4A1"]
    assert merged.obs_names.is_unique
    assert merged.obs["dataset"].value_counts().to_dict() == {"pbmc3k": 3, "pbmc4k": 2}
    assert "counts" in merged.layers
    assert merged.raw is None


def test_merge_datasets_prefixes_barcodes_with_dataset_name():
    a = _small("pbmc3k", ["CD3E", "LYZ"], n_cells=2)
    b = _small("pbmc4k", ["CD3E", "LYZ"], n_cells=2)

    merged = merge_datasets({"pbmc3k": a, "pbmc4k": b})

    assert list(merged.obs_names) == [
        "pbmc3k_AAAC0-1",
        "pbmc3k_AAAC1-1",
        "pbmc4k_AAAC0-1",
        "pbmc4k_AAAC1-1",
    ]
    # inputs keep their own barcodes
    assert list(a.obs_names) == ["AAAC0-1", "AAAC1-1"]


def test_merge_datasets_outer_join_fills_zeros():
    a = _small("pbmc3k", ["CD3E", "LYZ"])
    b = _small("pbmc4k", ["LYZ", "NKG7"])

    merged = merge_datasets({"pbmc3k": a, "pbmc4k": b}, join="outer")

    assert set(merged.var_names) == {"CD3E", "LYZ", "NKG7"}
    nkg7 = merged[merged.obs["dataset"] == "pbmc3k", "NKG7"].X
    assert nkg7.sum() == 0


def test_merge_datasets_requires_input():
    with pytest.raises(ValueError):
        merge_datasets({})


def test_save_dataset_creates_parent_dirs(tmp_path):
    adata = _small("pbmc3k", ["CD3E", "LYZ"])
    out = tmp_path / "nested" / "pbmc3k.h5ad"

    save_dataset(adata, out)
    loaded = load_saved_dataset(out)

    assert out.exists()
    assert loaded.shape == adata.shape
    assert list(loaded.obs["dataset"].unique()) == ["pbmc3k"]


def test_load_saved_dataset_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_saved_dataset(tmp_path / "missing.h5ad")
