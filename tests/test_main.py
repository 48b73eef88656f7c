import json

import matplotlib

matplotlib.use("Agg")

import pandas as pd
import pytest

from ligerpy.main import main, run_walkthrough
from prepare_test_sample import simulate_datasets


def write_sample(tmp_path):
    paths = {}
    for name, adata in simulate_datasets().items():
        path = tmp_path / f"{name}.tsv"
        pd.DataFrame(
            adata.X.toarray().T.astype(int), index=adata.var_names, columns=adata.obs_names
        ).to_csv(path, sep="\t")
        paths[name] = path

        labels_path = tmp_path / f"{name}_labels.tsv"
        adata.obs["cell_type"].to_csv(labels_path, sep="\t", header=False)
        paths[f"{name}_labels"] = labels_path

    labels = pd.concat(
        [pd.read_csv(paths[f"{name}_labels"], sep="\t", header=None) for name in ("ctrl", "stim")]
    )
    paths["labels"] = tmp_path / "labels.tsv"
    labels.to_csv(paths["labels"], sep="\t", header=False, index=False)
    return paths


class TestWalkthrough:
    params = dict(
        k=4,
        max_iters=5,
        resolution=0.4,
        small_clust_thresh=10,
        knn_k=10,
        k2=50,
        embedding="umap",
    )

    def test_run_walkthrough(self, tmp_path):
        paths = write_sample(tmp_path)
        out = tmp_path / "results"

        liger = run_walkthrough(
            ctrl_path=paths["ctrl"],
            stim_path=paths["stim"],
            output_dir=out,
            cluster_labels_path=paths["labels"],
            **self.params,
        )

        assert liger.k == 4
        assert liger.H_norm.shape == (liger.n_cells, 4)
        for name in (
            "by_dataset_and_cluster.png",
            "by_dataset_and_published_labels.png",
            "river_plot.png",
            "cluster_markers.tsv",
            "liger_clusters.tsv",
        ):
            assert (out / name).exists()

        clusters = pd.read_csv(out / "liger_clusters.tsv", sep="\t", index_col=0)
        assert len(clusters) == liger.n_cells

    def test_unknown_embedding(self, tmp_path):
        paths = write_sample(tmp_path)
        params = {**self.params, "embedding": "pca"}
        with pytest.raises(ValueError, match="embedding"):
            run_walkthrough(paths["ctrl"], paths["stim"], tmp_path / "results", **params)

    def test_main_with_config(self, tmp_path):
        paths = write_sample(tmp_path)
        config = {
            "ctrl_path": str(paths["ctrl"]),
            "stim_path": str(paths["stim"]),
            "output_dir": str(tmp_path / "results"),
            **self.params,
        }
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps(config), encoding="utf-8")

        main([str(config_path)])
        assert (tmp_path / "results" / "liger_clusters.tsv").exists()
