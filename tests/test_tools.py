import logging

import numpy as np
import pandas as pd
import pytest

from scipy.optimize import nnls

import ligerpy as lp

from ligerpy._utils import (
    _nnlsm_blockpivot,
    _quantile_align,
    _quantile_warp,
    _scale_l2_norm,
)
from prepare_test_sample import prepare_aligned_liger, prepare_liger, simulate_datasets


class TestKernels:
    def test_nnlsm_blockpivot_matches_nnls(self):
        rng = np.random.default_rng(0)
        A = rng.normal(size=(30, 6))
        B = rng.normal(size=(30, 4))

        X = _nnlsm_blockpivot(A.T @ A, A.T @ B)

        assert X.shape == (6, 4)
        assert (X >= 0).all()
        for j in range(B.shape[1]):
            expected, _ = nnls(A, B[:, j])
            assert np.allclose(X[:, j], expected, atol=1e-6)

    def test_nnlsm_blockpivot_warm_start(self):
        rng = np.random.default_rng(1)
        A = rng.uniform(size=(25, 5))
        B = rng.uniform(size=(25, 3))

        cold = _nnlsm_blockpivot(A.T @ A, A.T @ B)
        warm = _nnlsm_blockpivot(A.T @ A, A.T @ B, init=rng.uniform(size=(5, 3)))
        assert np.allclose(cold, warm, atol=1e-6)

    def test_quantile_warp(self):
        values = np.arange(101) / 100
        mapped = _quantile_warp(values, 2 * values, quantiles=100)
        assert np.allclose(mapped, 2 * values)

    def test_quantile_warp_degenerate(self):
        values = np.linspace(0, 1, 20)
        assert (_quantile_warp(values, np.zeros(30), quantiles=10) == 0).all()
        assert (_quantile_warp(np.zeros(20), values, quantiles=10) == 0).all()

    def test_quantile_align_small_clusters(self):
        rng = np.random.default_rng(0)
        Hs = {"ref": rng.uniform(size=(8, 2)), "other": rng.uniform(size=(4, 2))}
        clusters = {
            "ref": np.array([0, 0, 0, 0, 0, 1, 1, 1]),
            "other": np.array([0, 1, 1, 1]),
        }

        aligned = _quantile_align(
            Hs, clusters, ref_dataset="ref", quantiles=10, min_cells=1, dims_use=np.arange(2)
        )
        # a single cell takes the reference mean
        assert np.allclose(aligned["other"][0], Hs["ref"][:5].mean(axis=0))
        assert np.allclose(aligned["ref"], Hs["ref"])

        aligned = _quantile_align(
            Hs, clusters, ref_dataset="ref", quantiles=10, min_cells=4, dims_use=np.arange(2)
        )
        assert np.allclose(aligned["other"], Hs["other"])


class TestFactorization:
    def test_optimize_als(self):
        liger = prepare_liger(k=4)
        n_genes = len(liger.var_genes)

        assert liger.k == 4
        assert liger.W.shape == (4, n_genes)
        assert (liger.W >= 0).all()
        for name, adata in liger.datasets.items():
            assert adata.obsm["H"].shape == (adata.n_obs, 4)
            assert (adata.obsm["H"] >= 0).all()
            assert liger.V[name].shape == (4, n_genes)
            assert (liger.V[name] >= 0).all()

        history = np.array(liger.obj_history)
        assert history[-1] < history[0]
        assert np.all(np.diff(history) <= 1e-6 * history[:-1])
        assert np.isclose(lp.tl.calc_objective(liger), liger.objective)

    def test_optimize_als_nrep(self):
        liger = prepare_liger(k=3, max_iters=3)
        objectives = []
        for seed in (1, 2):
            lp.tl.optimize_als(liger, k=3, max_iters=3, rand_seed=seed)
            objectives.append(liger.objective)

        lp.tl.optimize_als(liger, k=3, max_iters=3, nrep=2, rand_seed=1)
        assert np.isclose(liger.objective, min(objectives))

    def test_optimize_als_init(self):
        liger = prepare_liger(k=3, max_iters=5)
        objective = liger.objective
        names = liger.dataset_names

        lp.tl.optimize_als(
            liger,
            k=3,
            max_iters=1,
            H_init=[liger.datasets[name].obsm["H"] for name in names],
            W_init=liger.W,
            V_init=[liger.V[name] for name in names],
        )
        assert liger.objective <= objective * (1 + 1e-8)

    def test_optimize_als_errors(self):
        liger = prepare_liger(k=2, max_iters=1)
        with pytest.raises(ValueError, match="lower than the number of variable genes"):
            lp.tl.optimize_als(liger, k=len(liger.var_genes) + 1)

        liger.datasets["ctrl"].obsm["scale_data"][0, 0] = -1
        with pytest.raises(ValueError, match="nonnegative"):
            lp.tl.optimize_als(liger, k=2)

    def test_optimize_als_k_above_cells(self):
        liger = lp.create_liger(simulate_datasets(n_cells=(150, 5)))
        lp.pp.normalize(liger)
        lp.pp.select_genes(liger, var_thresh=0.1)
        lp.pp.scale_not_center(liger)
        assert len(liger.var_genes) > 6

        with pytest.raises(ValueError, match="smallest dataset"):
            lp.tl.optimize_als(liger, k=6)

    def test_optimize_als_not_converged(self, caplog):
        liger = prepare_liger(k=3, max_iters=1)
        with caplog.at_level(logging.WARNING, logger="ligerpy"):
            lp.tl.optimize_als(liger, k=3, max_iters=1, thresh=1e-12)
        assert "didn't converge in 1 iterations" in caplog.text

        caplog.clear()
        with caplog.at_level(logging.WARNING, logger="ligerpy"):
            lp.tl.optimize_als(liger, k=3, max_iters=1, thresh=1e6)
        assert "didn't converge" not in caplog.text

    def test_optimize_als_nrep_with_init(self):
        liger = prepare_liger(k=3, max_iters=3)
        names = liger.dataset_names
        init = dict(
            H_init=[liger.datasets[name].obsm["H"] for name in names],
            W_init=liger.W,
            V_init=[liger.V[name] for name in names],
        )

        lp.tl.optimize_als(liger, k=3, max_iters=2, **init)
        from_init = liger.objective
        # the second restart starts at random with seed rand_seed + 1
        lp.tl.optimize_als(liger, k=3, max_iters=2, rand_seed=2)
        from_random = liger.objective

        lp.tl.optimize_als(liger, k=3, max_iters=2, nrep=2, rand_seed=1, **init)
        assert np.isclose(liger.objective, min(from_init, from_random))


class TestAlignment:
    def test_quantile_norm(self):
        liger = prepare_liger(k=4)
        lp.tl.quantile_norm(liger, min_cells=5, knn_k=10)

        assert liger.H_norm.shape == (liger.n_cells, 4)
        # the largest dataset is the reference and is only L2-normalized
        ref = liger.datasets["ctrl"]
        assert liger.parameters["quantile_norm"]["ref_dataset"] == "ctrl"
        assert np.allclose(ref.obsm["H_norm"], _scale_l2_norm(ref.obsm["H"]))

        clusters = liger.clusters
        assert len(clusters) == liger.n_cells
        assert not clusters.isna().any()
        assert (
            liger.datasets["ctrl"].obs["liger_clusters"].cat.categories.equals(
                liger.datasets["stim"].obs["liger_clusters"].cat.categories
            )
        )

    def test_quantile_norm_min_cells(self):
        liger = prepare_liger(k=4)
        lp.tl.quantile_norm(liger, min_cells=10**6, knn_k=10)

        # no cluster is large enough to be aligned
        for adata in liger.datasets.values():
            assert np.allclose(adata.obsm["H_norm"], _scale_l2_norm(adata.obsm["H"]))

    def test_quantile_norm_ref_dataset(self):
        liger = prepare_liger(k=4)
        lp.tl.quantile_norm(liger, ref_dataset="stim", min_cells=5, knn_k=10)
        stim = liger.datasets["stim"]
        assert np.allclose(stim.obsm["H_norm"], _scale_l2_norm(stim.obsm["H"]))

        with pytest.raises(KeyError):
            lp.tl.quantile_norm(liger, ref_dataset="unknown")

    def test_quantile_align_snf(self):
        liger = prepare_liger(k=4)
        lp.tl.quantile_align_snf(
            liger, knn_k=10, k2=50, resolution=0.4, small_clust_thresh=10
        )

        assert liger.H_norm.shape == (liger.n_cells, 4)
        ref = liger.datasets["ctrl"]
        assert np.allclose(ref.obsm["H_norm"], _scale_l2_norm(ref.obsm["H"]))

        sizes = liger.clusters.value_counts()
        assert sizes.sum() == liger.n_cells
        assert (sizes >= 10).all()

    def test_leiden_cluster(self):
        liger = prepare_aligned_liger()
        lp.tl.leiden_cluster(liger, resolution=0.5, k=15)
        assert len(liger.clusters) == liger.n_cells
        assert liger.parameters["leiden_cluster"]["k"] == 15

    def test_requires_factorization(self):
        liger = prepare_liger(k=2, max_iters=1)
        del liger.datasets["stim"].obsm["H"]
        with pytest.raises(AssertionError):
            lp.tl.quantile_norm(liger)


class TestMetrics:
    def test_calc_alignment_separated(self):
        liger = prepare_aligned_liger()
        rng = np.random.default_rng(0)
        for i, adata in enumerate(liger.datasets.values()):
            H = np.zeros((adata.n_obs, 4))
            H[:, i] = 1 + rng.uniform(0, 0.1, adata.n_obs)
            adata.obsm["H_norm"] = H

        assert np.isclose(lp.tl.calc_alignment(liger, k=10), 0)

    def test_calc_alignment_mixed(self):
        liger = prepare_aligned_liger()
        rng = np.random.default_rng(0)
        for adata in liger.datasets.values():
            adata.obsm["H_norm"] = rng.uniform(size=(adata.n_obs, 4))

        assert lp.tl.calc_alignment(liger) > 0.7

        by_cell = lp.tl.calc_alignment(liger, by_cell=True)
        assert isinstance(by_cell, pd.Series)
        assert len(by_cell) == 2 * 120

    def test_calc_dataset_specificity(self):
        liger = prepare_aligned_liger()
        specificity = lp.tl.calc_dataset_specificity(liger, "ctrl", "stim")

        assert list(specificity.columns) == ["pct1", "pct2", "specificity"]
        assert len(specificity) == 4
        assert np.allclose(
            specificity["specificity"], 100 * (1 - specificity["pct1"] / specificity["pct2"])
        )

        liger.V["stim"] = liger.V["ctrl"].copy()
        specificity = lp.tl.calc_dataset_specificity(liger, "ctrl", "stim")
        assert np.allclose(specificity["specificity"], 0)

    def test_get_factor_markers(self):
        liger = prepare_aligned_liger()
        markers = lp.tl.get_factor_markers(
            liger, "ctrl", "stim", factor_share_thresh=1000, num_genes=10
        )

        assert set(markers) == {"ctrl", "shared", "stim"}
        for table in markers.values():
            assert list(table.columns) == [
                "factor_num", "gene", "counts1", "counts2",
                "fracs1", "fracs2", "log2fc", "p_value",
            ]
            assert table["gene"].isin(liger.var_genes).all()
        assert (markers["ctrl"]["log2fc"] > 1).all()
        assert (markers["stim"]["log2fc"] < -1).all()

    def test_run_wilcoxon(self):
        liger = prepare_aligned_liger()

        by_dataset = lp.tl.run_wilcoxon(liger, compare_method="datasets")
        assert set(by_dataset["group"]) == {"ctrl", "stim"}
        assert {"names", "pvals", "pvals_adj", "logfoldchanges"} <= set(by_dataset.columns)

        by_cluster = lp.tl.run_wilcoxon(liger, compare_method="clusters")
        assert set(by_cluster["group"]) == set(liger.clusters.cat.categories)

        with pytest.raises(ValueError):
            lp.tl.run_wilcoxon(liger, compare_method="cells")

    def test_run_wilcoxon_all_shared_genes(self):
        liger = prepare_aligned_liger()
        var_genes = liger.var_genes.copy()

        markers = lp.tl.run_wilcoxon(liger, compare_method="datasets")
        assert set(markers["names"]) == set(liger.shared_genes)
        assert liger.var_genes.equals(var_genes)

    def test_calc_alignment_requires_alignment(self):
        liger = prepare_liger(k=2, max_iters=1)
        with pytest.raises(AssertionError, match="H_norm"):
            lp.tl.calc_alignment(liger)


class TestEmbedding:
    def test_run_umap(self):
        liger = prepare_aligned_liger()
        lp.tl.run_umap(liger, n_neighbors=10)
        for adata in liger.datasets.values():
            assert adata.obsm["X_umap"].shape == (adata.n_obs, 2)

    def test_run_tsne(self, tmp_path):
        pytest.importorskip("openTSNE")
        liger = prepare_aligned_liger()
        model = lp.tl.run_tsne(
            liger, perplexity=20, save_path=str(tmp_path / "tsne.pkl"), return_model=True
        )

        assert model is not None
        assert (tmp_path / "tsne.pkl").exists()
        for adata in liger.datasets.values():
            assert adata.obsm["X_tsne"].shape == (adata.n_obs, 2)
