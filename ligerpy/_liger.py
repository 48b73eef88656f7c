# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging

from collections import OrderedDict
from typing import Sequence

import numpy as np
import pandas as pd

from anndata import AnnData
from scipy.sparse import csr_matrix, issparse, vstack

logger = logging.getLogger("ligerpy")


class Liger:
    """
    Container for the datasets being aligned and the results of every step.

    Per-cell results live in the slots of each dataset's AnnData
    (``layers["norm_data"]``, ``obsm["scale_data"]``, ``obsm["H"]``,
    ``obsm["H_norm"]``, ``obs["liger_clusters"]``), while the gene loadings
    shared by all datasets are kept on the object itself.
    """

    def __init__(self, datasets: "OrderedDict[str, AnnData]") -> None:

        self.datasets = datasets

        # gene selection area
        self.var_genes = None

        # factorization area
        # [k, genes]
        self.W = None
        # dataset -> [k, genes]
        self.V = {}
        self.objective = None
        self.obj_history = []

        # parameters of every step
        self.parameters = {}

    def __repr__(self) -> str:
        descr = f"Liger object with {len(self.datasets)} datasets"
        for name, adata in self.datasets.items():
            descr += f"\n    {name}: {adata.n_obs} cells x {adata.n_vars} genes"
        if self.var_genes is not None:
            descr += f"\n    var_genes: {len(self.var_genes)}"
        if self.W is not None:
            descr += f"\n    factors: {self.k}"
        return descr

    @property
    def dataset_names(self) -> list[str]:
        return list(self.datasets.keys())

    @property
    def n_cells(self) -> int:
        return sum(adata.n_obs for adata in self.datasets.values())

    @property
    def k(self) -> int | None:
        return None if self.W is None else self.W.shape[0]

    @property
    def cell_data(self) -> pd.DataFrame:
        return pd.concat(
            [adata.obs[["dataset", "nUMI", "nGene"]] for adata in self.datasets.values()]
        )

    @property
    def H(self) -> dict[str, np.ndarray]:
        self._check_obsm("H", "Run ligerpy.tl.optimize_als first.")
        return {name: adata.obsm["H"] for name, adata in self.datasets.items()}

    @property
    def H_norm(self) -> np.ndarray:
        self._check_obsm(
            "H_norm", "Run ligerpy.tl.quantile_norm or ligerpy.tl.quantile_align_snf first."
        )
        # [cells, k]
        return np.vstack([adata.obsm["H_norm"] for adata in self.datasets.values()])

    @property
    def clusters(self) -> pd.Series:
        for adata in self.datasets.values():
            assert (
                "liger_clusters" in adata.obs
            ), "Joint clusters not found. Run ligerpy.tl.quantile_norm first."
        labels = pd.concat(
            [adata.obs["liger_clusters"].astype(str) for adata in self.datasets.values()]
        )
        return labels.astype(
            pd.CategoricalDtype(sorted(labels.unique(), key=_natural_key))
        )

    @property
    def shared_genes(self) -> pd.Index:
        names = self.dataset_names
        genes = self.datasets[names[0]].var_names
        for name in names[1:]:
            genes = genes.intersection(self.datasets[name].var_names, sort=False)
        return genes

    @property
    def dataset_labels(self) -> pd.Series:
        return pd.concat(
            [adata.obs["dataset"].astype(str) for adata in self.datasets.values()]
        ).astype(pd.CategoricalDtype(self.dataset_names))

    def embedding(self, basis: str = "X_tsne") -> np.ndarray:
        self._check_obsm(
            basis, f"Embedding '{basis}' not found. Run ligerpy.tl.run_tsne or ligerpy.tl.run_umap first."
        )
        return np.vstack([adata.obsm[basis] for adata in self.datasets.values()])

    def _check_obsm(self, key: str, hint: str) -> None:
        for name, adata in self.datasets.items():
            assert key in adata.obsm, f"'{key}' not found for dataset '{name}'. {hint}"

    def set_clusters(self, labels: np.ndarray | pd.Series) -> None:
        """Split concatenated cluster labels back onto the datasets."""
        labels = np.asarray(labels).astype(str)
        assert labels.shape[0] == self.n_cells, "one cluster label per cell is expected"

        categories = pd.CategoricalDtype(sorted(np.unique(labels), key=_natural_key))
        start = 0
        for adata in self.datasets.values():
            end = start + adata.n_obs
            adata.obs["liger_clusters"] = pd.Categorical(
                labels[start:end], dtype=categories
            )
            start = end

    def split(self, X: np.ndarray) -> dict[str, np.ndarray]:
        """Split an array with a row per cell into per-dataset blocks."""
        assert X.shape[0] == self.n_cells, "one row per cell is expected"
        blocks = {}
        start = 0
        for name, adata in self.datasets.items():
            blocks[name] = X[start : start + adata.n_obs]
            start += adata.n_obs
        return blocks


def _natural_key(label: str):
    return (0, int(label), "") if str(label).isdigit() else (1, 0, str(label))


def create_liger(
    adata_dict: dict[str, AnnData],
    remove_missing: bool = True,
) -> Liger:
    """
    Create a Liger object from raw counts of several datasets.

    Args:
        adata_dict (dict[str, AnnData]): dataset name -> AnnData with raw counts (cells x genes).
        remove_missing (bool, optional): if to remove genes and cells without any counts
            in each dataset. Defaults to True.

    Returns:
        Liger: analysis object with copies of the datasets.
    """
    if len(adata_dict) < 1:
        raise ValueError("At least one dataset is required.")

    seen = pd.Index([])
    for adata in adata_dict.values():
        repeated = seen.intersection(adata.obs_names)
        if len(repeated) > 0:
            raise ValueError(
                "At least one cell name is repeated across datasets "
                f"(e.g. '{repeated[0]}'); please make sure all cell names are unique."
            )
        seen = seen.append(adata.obs_names)

    datasets = OrderedDict()
    for name, adata in adata_dict.items():
        adata = adata.copy()
        adata.X = csr_matrix(adata.X) if not issparse(adata.X) else adata.X.tocsr()
        adata.var_names_make_unique()

        if remove_missing:
            gene_counts = np.asarray(adata.X.sum(axis=0)).ravel()
            cell_counts = np.asarray(adata.X.sum(axis=1)).ravel()
            missing_genes = gene_counts == 0
            missing_cells = cell_counts == 0
            if missing_genes.any():
                logger.info(
                    "Removing %i genes not expressing in dataset '%s'.",
                    missing_genes.sum(),
                    name,
                )
            if missing_cells.any():
                logger.info(
                    "Removing %i cells not expressing any genes in dataset '%s'.",
                    missing_cells.sum(),
                    name,
                )
            adata = adata[~missing_cells, ~missing_genes].copy()

        adata.obs["dataset"] = name
        adata.obs["nUMI"] = np.asarray(adata.X.sum(axis=1)).ravel()
        adata.obs["nGene"] = np.asarray((adata.X > 0).sum(axis=1)).ravel()
        datasets[name] = adata

    return Liger(datasets)


def to_anndata(liger: Liger, genes: Sequence[str] | None = None) -> AnnData:
    """
    Concatenate the datasets of ``liger`` into a single AnnData for use with scanpy.

    ``X`` holds normalized expressions of ``genes`` (``var_genes`` if genes were
    selected, else the genes shared by all datasets), ``obs`` holds dataset and
    cluster labels, ``obsm`` holds every representation present in all datasets
    (``H``, ``H_norm``, embeddings).
    """
    if genes is None:
        genes = liger.var_genes if liger.var_genes is not None else liger.shared_genes
    genes = pd.Index(genes)
    for name, adata in liger.datasets.items():
        missing = genes.difference(adata.var_names)
        if len(missing) > 0:
            raise KeyError(f"Genes not found in dataset '{name}': {', '.join(missing[:5])}")

    blocks = []
    for adata in liger.datasets.values():
        layer = "norm_data" if "norm_data" in adata.layers else None
        sub = adata[:, genes]
        X = sub.layers[layer] if layer is not None else sub.X
        blocks.append(csr_matrix(X))

    obs = pd.concat(
        [
            adata.obs[[c for c in ("dataset", "nUMI", "nGene", "liger_clusters") if c in adata.obs]]
            for adata in liger.datasets.values()
        ]
    )
    obs["dataset"] = liger.dataset_labels.values
    if "liger_clusters" in obs:
        obs["liger_clusters"] = liger.clusters.values

    combined = AnnData(X=vstack(blocks).tocsr(), obs=obs, var=pd.DataFrame(index=genes))

    shared_keys = set.intersection(
        *[set(adata.obsm.keys()) for adata in liger.datasets.values()]
    )
    for key in shared_keys:
        if key == "scale_data":
            continue
        combined.obsm[key] = np.vstack(
            [np.asarray(adata.obsm[key]) for adata in liger.datasets.values()]
        )

    return combined
