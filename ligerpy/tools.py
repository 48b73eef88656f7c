# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import warnings

from typing import Sequence

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData
from scipy.stats import false_discovery_control, mannwhitneyu
from sklearn.neighbors import NearestNeighbors

from ._liger import Liger, to_anndata
from ._utils import (
    _check_scale_data,
    _inmf_objective,
    _leiden,
    _merge_small_clusters,
    _quantile_align,
    _refine_clusters_knn,
    _relabel_by_size,
    _run_inmf,
    _scale_l2_norm,
    _snn_graph,
    _to_dense,
)


logger = logging.getLogger("ligerpy")


def optimize_als(
    liger: Liger,
    k: int,
    lambda_: float = 5.0,
    thresh: float = 1e-6,
    max_iters: int = 30,
    nrep: int = 1,
    H_init: Sequence[np.ndarray] | None = None,
    W_init: np.ndarray | None = None,
    V_init: Sequence[np.ndarray] | None = None,
    rand_seed: int = 1,
    print_obj: bool = False,
    verbose: bool = False,
) -> None:
    """
    Factorize scaled datasets with integrative non-negative matrix factorization.

    Minimizes ``sum_i ||E_i - H_i (W + V_i)||^2 + lambda * sum_i ||H_i V_i||^2``
    over nonnegative H_i (cells x k), shared W (k x genes) and dataset-specific V_i (k x genes)
    by alternating nonnegative least squares.

    Saves cell factor loadings to ``adata.obsm["H"]`` of every dataset,
    and gene loadings to ``liger.W`` and ``liger.V``.

    Args:
        liger (Liger): Liger object with scaled data (run ``ligerpy.pp.scale_not_center`` first).
        k (int): inner dimension of the factorization (number of factors).
        lambda_ (float, optional): regularization parameter; larger values penalize
            dataset-specific effects more strongly. Defaults to 5.0.
        thresh (float, optional): convergence threshold on the relative change
            of the objective. Defaults to 1e-6.
        max_iters (int, optional): maximum number of block coordinate descent iterations. Defaults to 30.
        nrep (int, optional): number of restarts; the factorization with the lowest
            objective is kept. Defaults to 1.
        H_init (Sequence[np.ndarray] | None, optional): initial H matrices, one per dataset. Defaults to None.
        W_init (np.ndarray | None, optional): initial W matrix. Defaults to None.
        V_init (Sequence[np.ndarray] | None, optional): initial V matrices, one per dataset. Defaults to None.
        rand_seed (int, optional): random seed; restart ``i`` uses ``rand_seed + i``. Defaults to 1.
            Given initial matrices are used by the first restart only, the others start at random.
        print_obj (bool, optional): if to print the objective at every iteration. Defaults to False.
        verbose (bool, optional): if to print progress. Defaults to False.
    """
    names = liger.dataset_names
    E = [_check_scale_data(liger.datasets[name], name) for name in names]

    n_genes = E[0].shape[1]
    min_cells = min(E_i.shape[0] for E_i in E)
    if k > n_genes:
        raise ValueError(
            f"Select k lower than the number of variable genes ({n_genes})."
        )
    if k > min_cells:
        raise ValueError(
            f"Select k lower than the number of cells in the smallest dataset ({min_cells})."
        )

    best = None
    for rep in range(nrep):
        if verbose:
            print(f"Running iNMF, repetition {rep + 1} of {nrep}.")
        rng = np.random.default_rng(rand_seed + rep)
        H, W, V, history, iters = _run_inmf(
            E,
            k=k,
            lamb=lambda_,
            thresh=thresh,
            max_iters=max_iters,
            rng=rng,
            H_init=H_init if rep == 0 else None,
            W_init=W_init if rep == 0 else None,
            V_init=V_init if rep == 0 else None,
            print_obj=print_obj,
        )
        logger.info(
            "iNMF repetition %i finished after %i iterations, objective %.6g",
            rep + 1,
            iters,
            history[-1],
        )
        if best is None or history[-1] < best[3][-1]:
            best = (H, W, V, history, iters)

    H, W, V, history, iters = best

    if iters >= max_iters and len(history) > 1:
        delta = abs(history[-2] - history[-1]) / np.mean(history[-2:])
        if delta > thresh:
            logger.warning(
                "iNMF didn't converge in %i iterations (relative change %.3g). "
                "Consider increasing max_iters parameter value",
                max_iters,
                delta,
            )

    for name, H_i, V_i in zip(names, H, V):
        liger.datasets[name].obsm["H"] = H_i
        liger.V[name] = V_i
    liger.W = W
    liger.objective = history[-1]
    liger.obj_history = history
    liger.parameters["optimize_als"] = {
        "k": k,
        "lambda": lambda_,
        "thresh": thresh,
        "max_iters": max_iters,
        "nrep": nrep,
        "rand_seed": rand_seed,
        "iterations": iters,
    }


def calc_objective(liger: Liger) -> float:
    """Value of the iNMF objective for the current factorization of ``liger``."""
    assert (
        "optimize_als" in liger.parameters
    ), "Factorization not found. Run ligerpy.tl.optimize_als first."

    names = liger.dataset_names
    E = [_check_scale_data(liger.datasets[name], name) for name in names]
    H = [liger.datasets[name].obsm["H"] for name in names]
    V = [liger.V[name] for name in names]

    return _inmf_objective(E, H, liger.W, V, liger.parameters["optimize_als"]["lambda"])


def _default_ref_dataset(liger: Liger, ref_dataset: str | None) -> str:
    if ref_dataset is None:
        sizes = {name: adata.n_obs for name, adata in liger.datasets.items()}
        return max(sizes, key=sizes.get)
    if ref_dataset not in liger.datasets:
        raise KeyError(f"Reference dataset '{ref_dataset}' not found in the Liger object.")
    return ref_dataset


def _dims_use(liger: Liger, dims_use: Sequence[int] | None) -> np.ndarray:
    if dims_use is None:
        return np.arange(liger.k)
    dims_use = np.asarray(dims_use, dtype=int)
    if dims_use.size == 0 or dims_use.min() < 0 or dims_use.max() >= liger.k:
        raise ValueError(f"`dims_use` should index factors in [0, {liger.k}).")
    return dims_use


def quantile_norm(
    liger: Liger,
    quantiles: int = 50,
    ref_dataset: str | None = None,
    min_cells: int = 20,
    knn_k: int = 20,
    dims_use: Sequence[int] | None = None,
    max_sample: int = 1000,
    refine_knn: bool = True,
    rand_seed: int = 1,
) -> None:
    """
    Quantile align factor loadings of all datasets to a reference dataset.

    Each cell is assigned to the factor with its largest L2-normalized loading
    (optionally refined by a kNN majority vote within its dataset), then
    within each of these clusters the distribution of every factor's loadings is
    mapped onto the reference dataset's distribution.

    Saves aligned loadings to ``adata.obsm["H_norm"]``
    and joint clusters to ``adata.obs["liger_clusters"]``.

    Args:
        liger (Liger): factorized Liger object.
        quantiles (int, optional): number of quantiles to align. Defaults to 50.
        ref_dataset (str | None, optional): name of the reference dataset;
            the dataset with the most cells if None. Defaults to None.
        min_cells (int, optional): clusters with fewer cells in a dataset are not aligned. Defaults to 20.
        knn_k (int, optional): number of neighbors for cluster refinement. Defaults to 20.
        dims_use (Sequence[int] | None, optional): factors to align; all if None. Defaults to None.
        max_sample (int, optional): at most this many cells of a cluster are used to estimate quantiles. Defaults to 1000.
        refine_knn (bool, optional): if to refine factor clusters by kNN majority vote. Defaults to True.
        rand_seed (int, optional): random seed for subsampling. Defaults to 1.
    """
    H = liger.H
    ref_dataset = _default_ref_dataset(liger, ref_dataset)
    dims_use = _dims_use(liger, dims_use)
    rng = np.random.default_rng(rand_seed)

    Hs = {name: _scale_l2_norm(H_i) for name, H_i in H.items()}

    clusters = {}
    for name, H_i in Hs.items():
        labels = dims_use[np.argmax(H_i[:, dims_use], axis=1)]
        if refine_knn:
            labels = _refine_clusters_knn(H_i, labels, knn_k)
        clusters[name] = labels

    Hs = _quantile_align(
        Hs,
        clusters,
        ref_dataset=ref_dataset,
        quantiles=quantiles,
        min_cells=min_cells,
        dims_use=dims_use,
        max_sample=max_sample,
        rng=rng,
    )

    for name, adata in liger.datasets.items():
        adata.obsm["H_norm"] = Hs[name]
    liger.set_clusters(np.concatenate([clusters[name] for name in liger.dataset_names]))

    liger.parameters["quantile_norm"] = {
        "quantiles": quantiles,
        "ref_dataset": ref_dataset,
        "min_cells": min_cells,
        "knn_k": knn_k,
        "max_sample": max_sample,
        "refine_knn": refine_knn,
    }


def quantile_align_snf(
    liger: Liger,
    knn_k: int = 20,
    k2: int = 500,
    prune_thresh: float = 0.2,
    ref_dataset: str | None = None,
    min_cells: int = 2,
    quantiles: int = 50,
    resolution: float = 1.0,
    dims_use: Sequence[int] | None = None,
    small_clust_thresh: int | None = None,
    random_state: int = 1,
    verbose: bool = False,
) -> None:
    """
    Joint clustering by shared factor neighborhoods followed by quantile alignment
    of factor loadings within the joint clusters.

    1. L2-normalize each cell's factor loadings.
    2. Describe every cell by the distribution of maximal factors among its
       ``knn_k`` nearest neighbors in its own dataset.
    3. Build shared nearest neighbor graph (``k2`` neighbors, Jaccard index,
       edges below ``prune_thresh`` removed) on these descriptions and
       cluster it with Leiden algorithm at ``resolution``.
    4. Merge clusters smaller than ``small_clust_thresh`` into their neighbors' clusters.
    5. Within each cluster, quantile align every factor to the reference dataset.

    Saves aligned loadings to ``adata.obsm["H_norm"]``
    and joint clusters to ``adata.obs["liger_clusters"]``.

    Args:
        liger (Liger): factorized Liger object.
        knn_k (int, optional): neighbors used to describe factor neighborhoods. Defaults to 20.
        k2 (int, optional): neighbors of the shared nearest neighbor graph. Defaults to 500.
        prune_thresh (float, optional): minimal Jaccard index of a graph edge. Defaults to 0.2.
        ref_dataset (str | None, optional): reference dataset; the largest if None. Defaults to None.
        min_cells (int, optional): clusters with fewer cells in a dataset are not aligned. Defaults to 2.
        quantiles (int, optional): number of quantiles to align. Defaults to 50.
        resolution (float, optional): Leiden resolution, higher values give more clusters. Defaults to 1.0.
        dims_use (Sequence[int] | None, optional): factors to use; all if None. Defaults to None.
        small_clust_thresh (int | None, optional): minimal cluster size; ``knn_k`` if None. Defaults to None.
        random_state (int, optional): random seed of Leiden clustering. Defaults to 1.
        verbose (bool, optional): if to print progress. Defaults to False.
    """
    H = liger.H
    ref_dataset = _default_ref_dataset(liger, ref_dataset)
    dims_use = _dims_use(liger, dims_use)
    if small_clust_thresh is None:
        small_clust_thresh = knn_k

    Hs = {name: _scale_l2_norm(H_i) for name, H_i in H.items()}

    if verbose:
        print("Building factor neighborhood signatures.")
    signatures = []
    for H_i in Hs.values():
        H_dims = H_i[:, dims_use]
        max_factor = np.argmax(H_dims, axis=1)
        n_neighbors = min(knn_k, H_dims.shape[0])
        nn = NearestNeighbors(n_neighbors=n_neighbors)
        nn.fit(H_dims)
        # [N_i, knn_k]
        idx = nn.kneighbors(H_dims, return_distance=False)
        # [N_i, dims]
        signature = np.zeros((H_dims.shape[0], len(dims_use)))
        np.add.at(signature, (np.repeat(np.arange(idx.shape[0]), n_neighbors), max_factor[idx].ravel()), 1)
        signatures.append(signature / n_neighbors)
    signatures = np.vstack(signatures)

    if verbose:
        print("Clustering shared nearest neighbor graph.")
    graph = _snn_graph(signatures, k2, prune_thresh)
    obs_names = pd.Index(
        np.concatenate([adata.obs_names.to_numpy() for adata in liger.datasets.values()])
    )
    labels = _leiden(graph, resolution=resolution, random_state=random_state, obs_names=obs_names)
    labels = _merge_small_clusters(signatures, labels, small_clust_thresh, knn_k)
    labels = _relabel_by_size(labels)

    clusters = liger.split(labels)

    if verbose:
        print("Aligning factor loadings within clusters.")
    Hs = _quantile_align(
        Hs,
        clusters,
        ref_dataset=ref_dataset,
        quantiles=quantiles,
        min_cells=min_cells,
        dims_use=dims_use,
    )

    for name, adata in liger.datasets.items():
        adata.obsm["H_norm"] = Hs[name]
    liger.set_clusters(labels)

    logger.info("Found %i joint clusters", np.unique(labels).size)

    liger.parameters["quantile_align_snf"] = {
        "knn_k": knn_k,
        "k2": k2,
        "prune_thresh": prune_thresh,
        "ref_dataset": ref_dataset,
        "min_cells": min_cells,
        "quantiles": quantiles,
        "resolution": resolution,
        "small_clust_thresh": small_clust_thresh,
    }


def leiden_cluster(
    liger: Liger,
    resolution: float = 1.0,
    k: int = 20,
    prune: float = 1 / 15,
    random_state: int = 1,
) -> None:
    """
    Cluster cells by Leiden algorithm on shared nearest neighbor graph of aligned loadings,
    overwriting ``adata.obs["liger_clusters"]``.

    Args:
        liger (Liger): aligned Liger object.
        resolution (float, optional): Leiden resolution. Defaults to 1.0.
        k (int, optional): number of neighbors of the graph. Defaults to 20.
        prune (float, optional): minimal Jaccard index of a graph edge. Defaults to 1/15.
        random_state (int, optional): random seed. Defaults to 1.
    """
    H_norm = liger.H_norm
    graph = _snn_graph(H_norm, k, prune)
    labels = _leiden(graph, resolution=resolution, random_state=random_state)
    liger.set_clusters(_relabel_by_size(labels))

    liger.parameters["leiden_cluster"] = {"resolution": resolution, "k": k, "prune": prune}


def calc_alignment(
    liger: Liger,
    k: int | None = None,
    rand_seed: int = 1,
    by_cell: bool = False,
) -> float | pd.Series:
    """
    Alignment metric: how uniformly datasets are mixed among nearest neighbors in
    the aligned factor space. 1 means perfect mixing, 0 means no mixing.
    Datasets are downsampled to the size of the smallest one.

    Args:
        liger (Liger): aligned Liger object.
        k (int | None, optional): number of neighbors; ``max(floor(0.01 * n), 10)`` if None. Defaults to None.
        rand_seed (int, optional): random seed for downsampling. Defaults to 1.
        by_cell (bool, optional): if to return per-cell values. Defaults to False.

    Returns:
        float | pd.Series: alignment, or per-cell alignment indexed by sampled cells.
    """
    N = len(liger.datasets)
    if N < 2:
        raise ValueError("Alignment can be calculated only for two or more datasets.")

    liger._check_obsm(
        "H_norm", "Run ligerpy.tl.quantile_norm or ligerpy.tl.quantile_align_snf first."
    )
    rng = np.random.default_rng(rand_seed)
    min_cells = min(adata.n_obs for adata in liger.datasets.values())

    H_sample, labels, cells = [], [], []
    for name, adata in liger.datasets.items():
        idx = np.sort(rng.choice(adata.n_obs, size=min_cells, replace=False))
        H_sample.append(adata.obsm["H_norm"][idx])
        labels.append(np.repeat(name, min_cells))
        cells.append(adata.obs_names[idx].to_numpy())
    H_sample = np.vstack(H_sample)
    labels = np.concatenate(labels)

    n = H_sample.shape[0]
    if k is None:
        k = max(int(np.floor(0.01 * n)), 10)
    k = min(k, n - 1)

    nn = NearestNeighbors(n_neighbors=k)
    nn.fit(H_sample)
    # neighbors of the fitted points exclude the points themselves
    idx = nn.kneighbors(return_distance=False)
    same = (labels[idx] == labels[:, np.newaxis]).sum(axis=1)

    expected = k / N
    if by_cell:
        return pd.Series(
            1 - (same - expected) / (k - expected),
            index=np.concatenate(cells),
            name="alignment",
        )
    return float(1 - (same.mean() - expected) / (k - expected))


def calc_dataset_specificity(
    liger: Liger, dataset1: str, dataset2: str
) -> pd.DataFrame:
    """
    Relative contribution of two datasets to every factor: norms of
    the dataset gene loadings ``W + V_i`` and ``100 * (1 - pct1 / pct2)``.
    Values near 0 mark shared factors, large absolute values mark dataset-specific ones.
    """
    assert liger.W is not None, "Factorization not found. Run ligerpy.tl.optimize_als first."
    for name in (dataset1, dataset2):
        if name not in liger.V:
            raise KeyError(f"Dataset '{name}' not found in the Liger object.")

    # [k]
    pct1 = np.linalg.norm(liger.W + liger.V[dataset1], axis=1)
    pct2 = np.linalg.norm(liger.W + liger.V[dataset2], axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        specificity = 100 * (1 - pct1 / pct2)

    return pd.DataFrame(
        {"pct1": pct1, "pct2": pct2, "specificity": specificity},
        index=pd.RangeIndex(liger.k, name="factor"),
    )


def run_wilcoxon(liger: Liger, compare_method: str = "clusters") -> pd.DataFrame:
    """
    Wilcoxon rank-sum test for marker genes of joint clusters or datasets
    on normalized expressions of all genes shared by the datasets.

    Args:
        liger (Liger): Liger object.
        compare_method (str, optional): ``clusters`` to compare each cluster to the rest,
            ``datasets`` to compare each dataset to the rest. Defaults to "clusters".

    Returns:
        pd.DataFrame: test results (``group``, ``names``, ``scores``,
        ``logfoldchanges``, ``pvals``, ``pvals_adj``).
    """
    if compare_method == "clusters":
        groupby = "liger_clusters"
    elif compare_method == "datasets":
        groupby = "dataset"
    else:
        raise ValueError("`compare_method` argument should be `clusters` or `datasets`.")

    adata = to_anndata(liger, genes=liger.shared_genes)

    if groupby not in adata.obs:
        raise KeyError("Joint clusters not found. Run ligerpy.tl.quantile_norm first.")

    # rank statistics don't depend on the log-transform,
    # it only puts fold changes to the scale scanpy expects
    adata.X = adata.X * 1e4
    sc.pp.log1p(adata)
    sc.tl.rank_genes_groups(adata, groupby=groupby, method="wilcoxon", use_raw=False)

    return sc.get.rank_genes_groups_df(adata, group=None)


def _wilcoxon_between(X1: np.ndarray, X2: np.ndarray) -> np.ndarray:
    with warnings.catch_warnings(), np.errstate(divide="ignore", invalid="ignore"):
        warnings.simplefilter("ignore", RuntimeWarning)
        p = mannwhitneyu(X1, X2, axis=0, alternative="two-sided").pvalue
    return np.nan_to_num(np.atleast_1d(p), nan=1.0)


def get_factor_markers(
    liger: Liger,
    dataset1: str,
    dataset2: str,
    factor_share_thresh: float = 10,
    num_genes: int = 30,
    log_fc_thresh: float = 1,
    pval_thresh: float = 0.05,
) -> dict[str, pd.DataFrame]:
    """
    Marker genes of shared factors: genes loading a factor in both datasets,
    and genes loading it specifically in one of them.

    Factors with ``|specificity| > factor_share_thresh`` are skipped
    (see :func:`calc_dataset_specificity`). For every other factor, top ``num_genes``
    genes of ``W + V1``, ``min(W + V1, W + V2)`` and ``W + V2`` are taken;
    dataset-specific candidates are tested with Wilcoxon rank-sum test between
    the cells of the two datasets that load mostly on the factor
    (Benjamini-Hochberg corrected).

    Returns:
        dict[str, pd.DataFrame]: ``{dataset1: ..., "shared": ..., dataset2: ...}``,
        each with columns ``factor_num, gene, counts1, counts2, fracs1, fracs2, log2fc, p_value``.
    """
    specificity = calc_dataset_specificity(liger, dataset1, dataset2)["specificity"]
    factors_use = np.nonzero(np.abs(specificity.to_numpy()) <= factor_share_thresh)[0]
    if len(factors_use) < 2:
        logger.warning(
            "Only %i factors passed the dataset specificity threshold.",
            len(factors_use),
        )

    genes = liger.var_genes
    num_genes = min(num_genes, len(genes))

    adatas = {name: liger.datasets[name] for name in (dataset1, dataset2)}
    labels = {}
    for name, adata in adatas.items():
        H = adata.obsm["H"]
        with np.errstate(divide="ignore", invalid="ignore"):
            H_scaled = (H - H.mean(axis=0)) / H.std(axis=0, ddof=1)
        H_scaled = np.nan_to_num(H_scaled)
        labels[name] = (
            factors_use[np.argmax(H_scaled[:, factors_use], axis=1)]
            if len(factors_use) > 0
            else np.zeros(adata.n_obs, dtype=int) - 1
        )

    W1 = liger.W + liger.V[dataset1]
    W2 = liger.W + liger.V[dataset2]
    W_shared = np.minimum(W1, W2)

    columns = ["factor_num", "gene", "counts1", "counts2", "fracs1", "fracs2", "log2fc", "p_value"]
    tables = {dataset1: [], "shared": [], dataset2: []}

    for i in factors_use:
        cells1 = labels[dataset1] == i
        cells2 = labels[dataset2] == i
        if cells1.sum() <= 1 or cells2.sum() <= 1:
            logger.info("Factor %i did not appear as max in any cell in either dataset", i)
            continue

        top1 = genes[np.argsort(-W1[i], kind="stable")[:num_genes]]
        top_shared = genes[np.argsort(-W_shared[i], kind="stable")[:num_genes]]
        top2 = genes[np.argsort(-W2[i], kind="stable")[:num_genes]]
        candidates = top1.union(top_shared, sort=False).union(top2, sort=False)

        X1 = _to_dense(adatas[dataset1][cells1, candidates].layers["norm_data"])
        X2 = _to_dense(adatas[dataset2][cells2, candidates].layers["norm_data"])

        mean1, mean2 = X1.mean(axis=0), X2.mean(axis=0)
        stats = pd.DataFrame(
            {
                "factor_num": i,
                "gene": candidates,
                "counts1": (X1 > 0).sum(axis=0),
                "counts2": (X2 > 0).sum(axis=0),
                "fracs1": (X1 > 0).mean(axis=0),
                "fracs2": (X2 > 0).mean(axis=0),
                "log2fc": np.log2((mean1 + 1e-10) / (mean2 + 1e-10)),
                "p_value": false_discovery_control(_wilcoxon_between(X1, X2)),
            },
            index=candidates,
        )

        significant = stats["p_value"] < pval_thresh
        specific1 = stats.loc[top1][
            significant.loc[top1] & (stats.loc[top1, "log2fc"] > log_fc_thresh)
        ]
        specific2 = stats.loc[top2][
            significant.loc[top2] & (stats.loc[top2, "log2fc"] < -log_fc_thresh)
        ]
        shared = stats.loc[top_shared][
            ~top_shared.isin(specific1.index) & ~top_shared.isin(specific2.index)
        ]

        tables[dataset1].append(specific1)
        tables["shared"].append(shared)
        tables[dataset2].append(specific2)

    return {
        key: (
            pd.concat(frames, ignore_index=True)
            if frames
            else pd.DataFrame(columns=columns)
        )[columns]
        for key, frames in tables.items()
    }


def run_tsne(
    liger: Liger,
    use_raw: bool = False,
    dims_use: Sequence[int] | None = None,
    perplexity: float = 30,
    random_state: int = 1,
    t_sne_slot: str = "X_tsne",
    save_path: str | None = None,
    return_model: bool = False,
    **kwargs,
):
    """
    Run openTSNE dimension reduction on aligned factor loadings
    (or raw loadings ``H`` if ``use_raw``), save it to ``adata.obsm[t_sne_slot]``.

    Args:
        liger (Liger): aligned Liger object.
        use_raw (bool): if to embed the unaligned loadings. Defaults to False.
        dims_use (Sequence[int] | None): factors to use; all if None. Defaults to None.
        perplexity (float): t-SNE perplexity. Defaults to 30.
        random_state (int): random seed. Defaults to 1.
        t_sne_slot (str): to adata.obsm[t_sne_slot] embedding will be saved.
        save_path (str, None): Filepath to save pickle of the `openTSNE` model. Defaults to None.
        return_model (bool): If to return `openTSNE` model. Defaults to False.
        kwargs: will be forwarded to the `openTSNE.TSNE` init function.

    Returns:
        if return_model is True, returns `openTSNE` model
    """
    import pickle

    try:
        from openTSNE import TSNE
    except ImportError as exc:
        raise ImportError(
            "\nPlease install openTSNE:\n\n\tpip install openTSNE"
        ) from exc

    if use_raw:
        X = np.vstack([_scale_l2_norm(H_i) for H_i in liger.H.values()])
    else:
        X = liger.H_norm
    X = X[:, _dims_use(liger, dims_use)]

    perplexity = min(perplexity, (X.shape[0] - 1) / 3)
    model = TSNE(perplexity=perplexity, random_state=random_state, **kwargs).fit(X)

    for name, block in liger.split(np.array(model)).items():
        liger.datasets[name].obsm[t_sne_slot] = block

    if save_path:
        with open(save_path, "wb") as model_file:
            pickle.dump(model, model_file, protocol=pickle.HIGHEST_PROTOCOL)
            logger.info("Model is saved in %s", save_path)

    if return_model:
        return model
    return None


def run_umap(
    liger: Liger,
    use_raw: bool = False,
    dims_use: Sequence[int] | None = None,
    n_neighbors: int = 10,
    min_dist: float = 0.1,
    random_state: int = 1,
) -> None:
    """
    UMAP of aligned factor loadings with scanpy, saved to ``adata.obsm["X_umap"]``.

    Args:
        liger (Liger): aligned Liger object.
        use_raw (bool, optional): if to embed the unaligned loadings. Defaults to False.
        dims_use (Sequence[int] | None, optional): factors to use; all if None. Defaults to None.
        n_neighbors (int, optional): size of local neighborhood. Defaults to 10.
        min_dist (float, optional): minimal distance between embedded points. Defaults to 0.1.
        random_state (int, optional): random seed. Defaults to 1.
    """
    if use_raw:
        X = np.vstack([_scale_l2_norm(H_i) for H_i in liger.H.values()])
    else:
        X = liger.H_norm
    X = X[:, _dims_use(liger, dims_use)]

    adata = AnnData(obs=pd.DataFrame(index=pd.RangeIndex(X.shape[0]).astype(str)))
    adata.obsm["X_liger"] = X
    sc.pp.neighbors(
        adata, n_neighbors=n_neighbors, use_rep="X_liger", random_state=random_state
    )
    sc.tl.umap(adata, min_dist=min_dist, random_state=random_state)

    for name, block in liger.split(adata.obsm["X_umap"]).items():
        liger.datasets[name].obsm["X_umap"] = block
