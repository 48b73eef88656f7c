import numpy as np
import pytest

import ligerpy as lp

from prepare_test_sample import simulate_datasets


class TestLiger:
    def test_create_liger(self):
        adata_dict = simulate_datasets()
        liger = lp.create_liger(adata_dict)

        assert liger.dataset_names == ["ctrl", "stim"]
        assert liger.n_cells == 270
        for name, adata in liger.datasets.items():
            assert (adata.obs["dataset"] == name).all()
            assert np.allclose(adata.obs["nUMI"], np.asarray(adata.X.sum(axis=1)).ravel())
            assert (np.asarray(adata.X.sum(axis=0)).ravel() > 0).all()

    def test_create_liger_copies_input(self):
        adata_dict = simulate_datasets()
        liger = lp.create_liger(adata_dict)
        liger.datasets["ctrl"].obs["extra"] = 1

        assert "extra" not in adata_dict["ctrl"].obs

    def test_repeated_cell_names(self):
        adata_dict = simulate_datasets()
        adata_dict["stim"].obs_names = adata_dict["ctrl"].obs_names[: adata_dict["stim"].n_obs]

        with pytest.raises(ValueError, match="repeated"):
            lp.create_liger(adata_dict)

    def test_remove_missing(self):
        adata_dict = simulate_datasets()
        X = adata_dict["ctrl"].X.toarray()
        X[:, 0] = 0
        X[0, :] = 0
        adata_dict["ctrl"].X = X

        liger = lp.create_liger(adata_dict)
        assert "gene0" not in liger.datasets["ctrl"].var_names
        assert "ctrl_cell0" not in liger.datasets["ctrl"].obs_names

        liger = lp.create_liger(adata_dict, remove_missing=False)
        assert "gene0" in liger.datasets["ctrl"].var_names
        assert liger.datasets["ctrl"].n_obs == 150

    def test_to_anndata(self):
        liger = lp.create_liger(simulate_datasets())
        lp.pp.normalize(liger)
        lp.pp.select_genes(liger)

        adata = lp.to_anndata(liger)
        assert adata.n_obs == liger.n_cells
        assert list(adata.var_names) == list(liger.var_genes)
        assert list(adata.obs["dataset"].cat.categories) == ["ctrl", "stim"]

    def test_to_anndata_genes(self):
        liger = lp.create_liger(simulate_datasets())
        lp.pp.normalize(liger)
        var_genes = lp.pp.select_genes(liger)

        adata = lp.to_anndata(liger, genes=liger.shared_genes)
        assert adata.n_vars == len(liger.shared_genes) > len(var_genes)
        assert liger.var_genes.equals(var_genes)

        with pytest.raises(KeyError):
            lp.to_anndata(liger, genes=["not_a_gene"])


class TestPreprocessing:
    def prepare(self):
        liger = lp.create_liger(simulate_datasets())
        lp.pp.normalize(liger)
        return liger

    def test_normalize(self):
        liger = self.prepare()
        for adata in liger.datasets.values():
            totals = np.asarray(adata.layers["norm_data"].sum(axis=1)).ravel()
            assert np.allclose(totals, 1)

    def test_select_genes(self):
        liger = self.prepare()
        genes = lp.pp.select_genes(liger, var_thresh=0.1)

        assert len(genes) > 0
        assert genes.equals(liger.var_genes)
        for adata in liger.datasets.values():
            assert genes.isin(adata.var_names).all()
            assert adata.var["liger_var_gene"].sum() == len(genes)

        # marker genes of the simulated cell types vary the most
        markers = [f"gene{j}" for j in range(100)]
        assert genes.isin(markers).mean() > 0.5

    def test_select_genes_thresholds(self):
        liger = self.prepare()
        loose = lp.pp.select_genes(liger, var_thresh=0.1)
        strict = lp.pp.select_genes(liger, var_thresh=0.5)
        assert len(strict) <= len(loose)

        union = lp.pp.select_genes(liger, combine="union")
        intersection = lp.pp.select_genes(liger, combine="intersection")
        assert intersection.isin(union).all()

        per_dataset = lp.pp.select_genes(liger, var_thresh=[0.1, 0.5])
        assert len(per_dataset) <= len(loose)

    def test_select_genes_num_genes(self):
        liger = self.prepare()
        # more genes than any threshold could select: the lowest threshold is used
        tuned = lp.pp.select_genes(liger, num_genes=10**6)
        lowest = lp.pp.select_genes(liger, var_thresh=0)
        assert tuned.equals(lowest)

    def test_select_genes_num_genes_tuned(self):
        liger = self.prepare()
        lowest = lp.pp.select_genes(liger, var_thresh=0, datasets_use=["ctrl"])
        assert len(lowest) > 20

        tuned = lp.pp.select_genes(liger, num_genes=20, datasets_use=["ctrl"])
        assert 15 <= len(tuned) <= 20
        assert tuned.isin(lowest).all()

        both = lp.pp.select_genes(liger, num_genes=[20, 40], combine="intersection")
        assert 0 < len(both) <= 20

    def test_select_genes_errors(self):
        liger = self.prepare()
        with pytest.raises(ValueError):
            lp.pp.select_genes(liger, combine="both")
        with pytest.raises(ValueError):
            lp.pp.select_genes(liger, var_thresh=[0.1, 0.2, 0.3])
        with pytest.raises(KeyError):
            lp.pp.select_genes(liger, datasets_use=["unknown"])

    def test_scale_not_center(self):
        liger = self.prepare()
        lp.pp.select_genes(liger)
        lp.pp.scale_not_center(liger)

        for adata in liger.datasets.values():
            E = adata.obsm["scale_data"]
            assert E.shape == (adata.n_obs, len(liger.var_genes))
            assert (E >= 0).all()
            rms = np.sqrt((E**2).sum(axis=0) / (E.shape[0] - 1))
            assert np.allclose(rms[rms > 0], 1)

    def test_scale_not_center_requires_genes(self):
        liger = self.prepare()
        with pytest.raises(AssertionError):
            lp.pp.scale_not_center(liger)
