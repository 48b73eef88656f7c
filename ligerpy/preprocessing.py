# pylint: disable=C0103, W0511, C0114
from __future__ import annotations

import logging
import warnings

from typing import Sequence

import numpy as np
import pandas as pd
import scanpy as sc

from scipy.sparse import csr_matrix
from scipy.stats import norm

from ._liger import Liger


logger = logging.getLogger("ligerpy")


def normalize(liger: Liger, verbose: bool = False) -> None:
    """
    Normalize raw counts of each cell by its total counts (no log-transform, no scaling factor),
    save the result to ``adata.layers["norm_data"]`` of every dataset.

    :param liger: Liger object with raw counts in ``adata.X``
    :type liger: Liger
    :param verbose: if to print progress, defaults to False
    :type verbose: bool, optional
    """
    for name, adata in liger.datasets.items():
        if verbose:
            print(f"Normalizing dataset '{name}'.")
        adata.layers["norm_data"] = csr_matrix(adata.X, dtype=np.float64)
        sc.pp.normalize_total(adata, target_sum=1, layer="norm_data")

    liger.parameters["normalize"] = {}


def _select_genes_dataset(
    adata,
    var_thresh: float,
    alpha_thresh: float,
) -> pd.Index:
    X = adata.layers["norm_data"]
    n_cells, n_genes = X.shape

    # [genes]
    gene_mean = np.asarray(X.mean(axis=0)).ravel()
    gene_sq_mean = np.asarray(X.multiply(X).mean(axis=0)).ravel()
    gene_var = (gene_sq_mean - gene_mean**2) * n_cells / max(n_cells - 1, 1)

    nolan_constant = np.mean(1 / adata.obs["nUMI"].to_numpy(dtype=float))
    alpha_corrected = alpha_thresh / n_genes
    gene_mean_upper = gene_mean + norm.ppf(1 - alpha_corrected / 2) * np.sqrt(
        gene_mean * nolan_constant / n_cells
    )

    with np.errstate(divide="ignore", invalid="ignore"):
        selected = (gene_var / nolan_constant > gene_mean_upper) & (
            np.log10(gene_var) > np.log10(gene_mean) + np.log10(nolan_constant) + var_thresh
        )

    return adata.var_names[selected]


def _var_thresh_for_num_genes(
    adata,
    num_genes: int,
    alpha_thresh: float,
    tol: float,
    interval: tuple[float, float] = (0.0, 1.5),
) -> float:
    # number of selected genes decreases with var_thresh
    lo, hi = interval
    if len(_select_genes_dataset(adata, lo, alpha_thresh)) <= num_genes:
        return lo

    while hi - lo > tol:
        mid = (lo + hi) / 2
        if len(_select_genes_dataset(adata, mid, alpha_thresh)) > num_genes:
            lo = mid
        else:
            hi = mid

    return hi


def select_genes(
    liger: Liger,
    var_thresh: float | Sequence[float] = 0.1,
    alpha_thresh: float = 0.99,
    combine: str = "union",
    num_genes: int | Sequence[int] | None = None,
    tol: float = 1e-4,
    datasets_use: Sequence[str] | None = None,
    verbose: bool = False,
) -> pd.Index:
    """
    Select variable genes from each dataset and combine them.
    Genes are selected when their variance is above the variance expected
    from sampling noise (``var_thresh`` on log10 scale, with significance ``alpha_thresh``
    Bonferroni-corrected over genes).

    Saves selected genes to ``liger.var_genes``
    and marks them in ``adata.var["liger_var_gene"]``.

    :param liger: normalized Liger object
    :type liger: Liger
    :param var_thresh: variance threshold, a single value or one per dataset, defaults to 0.1
    :type var_thresh: float | Sequence[float], optional
    :param alpha_thresh: alpha threshold controlling the upper bound for gene expression means, defaults to 0.99
    :type alpha_thresh: float, optional
    :param combine: how to combine genes selected in each dataset, ``union`` or ``intersection``, defaults to "union"
    :type combine: str, optional
    :param num_genes: if set, ``var_thresh`` is tuned so that about ``num_genes`` genes are selected
        from each dataset, defaults to None
    :type num_genes: int | Sequence[int] | None, optional
    :param tol: tolerance of ``var_thresh`` tuning, defaults to 1e-4
    :type tol: float, optional
    :param datasets_use: names of datasets to select genes from, defaults to all
    :type datasets_use: Sequence[str] | None, optional
    :param verbose: if to print the number of genes selected in each dataset, defaults to False
    :type verbose: bool, optional
    :return: selected genes
    :rtype: pd.Index
    """
    for name, adata in liger.datasets.items():
        assert (
            "norm_data" in adata.layers
        ), f"Normalized data not found for dataset '{name}'. Run ligerpy.pp.normalize first."

    if combine not in ("union", "intersection"):
        raise ValueError("`combine` argument should be `union` or `intersection`.")

    if datasets_use is None:
        datasets_use = liger.dataset_names
    for name in datasets_use:
        if name not in liger.datasets:
            raise KeyError(f"Dataset '{name}' not found in the Liger object.")

    var_threshs = _per_dataset(var_thresh, len(datasets_use), "var_thresh")
    num_genes_list = (
        [None] * len(datasets_use)
        if num_genes is None
        else _per_dataset(num_genes, len(datasets_use), "num_genes")
    )

    genes = None
    for name, thresh, n_genes in zip(datasets_use, var_threshs, num_genes_list):
        adata = liger.datasets[name]
        if n_genes is not None:
            thresh = _var_thresh_for_num_genes(adata, n_genes, alpha_thresh, tol)
            logger.info("var_thresh for dataset '%s' tuned to %.4f", name, thresh)

        genes_dataset = _select_genes_dataset(adata, thresh, alpha_thresh)
        if verbose:
            print(f"Selected {len(genes_dataset)} genes from dataset '{name}'.")

        if genes is None:
            genes = genes_dataset
        elif combine == "union":
            genes = genes.union(genes_dataset, sort=False)
        else:
            genes = genes.intersection(genes_dataset, sort=False)

    # genes are to be present in all datasets
    present = np.ones(len(genes), dtype=bool)
    for adata in liger.datasets.values():
        present &= genes.isin(adata.var_names)
    if not present.all():
        logger.warning(
            "%i selected genes are not present in all datasets and were removed.",
            (~present).sum(),
        )
    genes = genes[present]

    if len(genes) == 0:
        warnings.warn(
            "No genes were selected; lower `var_thresh` or `alpha_thresh` values."
        )

    liger.var_genes = genes
    for adata in liger.datasets.values():
        adata.var["liger_var_gene"] = adata.var_names.isin(genes)

    liger.parameters["select_genes"] = {
        "var_thresh": var_thresh,
        "alpha_thresh": alpha_thresh,
        "combine": combine,
        "num_genes": num_genes,
    }

    return genes


def _per_dataset(value, n: int, arg: str) -> list:
    if isinstance(value, (int, float, np.integer, np.floating)):
        return [value] * n
    value = list(value)
    if len(value) != n:
        raise ValueError(f"`{arg}` should be a single value or one value per dataset.")
    return value


def scale_not_center(
    liger: Liger,
    remove_missing: bool = True,
) -> None:
    """
    Scale normalized expressions of ``liger.var_genes`` by their root-mean-square
    without centering (keeps the data nonnegative for the factorization).
    Saves dense scaled matrix to ``adata.obsm["scale_data"]``.

    :param liger: Liger object with selected genes
    :type liger: Liger
    :param remove_missing: if to remove cells without expression of any selected gene, defaults to True
    :type remove_missing: bool, optional
    """
    assert (
        liger.var_genes is not None
    ), "Variable genes not found. Run ligerpy.pp.select_genes first."

    if len(liger.var_genes) == 0:
        raise ValueError("No variable genes selected; nothing to scale.")

    for name in liger.dataset_names:
        adata = liger.datasets[name]
        assert (
            "norm_data" in adata.layers
        ), f"Normalized data not found for dataset '{name}'. Run ligerpy.pp.normalize first."

        X = adata[:, liger.var_genes].layers["norm_data"]
        X = csr_matrix(X)

        if remove_missing:
            expressed = np.asarray((X > 0).sum(axis=1)).ravel() > 0
            if not expressed.all():
                logger.warning(
                    "Removing %i cells without expression of selected genes from dataset '%s'.",
                    (~expressed).sum(),
                    name,
                )
                adata = adata[expressed].copy()
                liger.datasets[name] = adata
                X = X[expressed]

        n_cells = X.shape[0]
        # [genes]
        rms = np.sqrt(np.asarray(X.multiply(X).sum(axis=0)).ravel() / max(n_cells - 1, 1))
        scale = np.zeros_like(rms)
        scale[rms > 0] = 1 / rms[rms > 0]

        adata.obsm["scale_data"] = np.asarray(X.multiply(scale[np.newaxis]).todense())

    liger.parameters["scale_not_center"] = {"remove_missing": remove_missing}
