# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from anndata import AnnData
from scipy.sparse import csr_matrix, issparse
from sklearn.neighbors import KNeighborsClassifier, NearestNeighbors

logger = logging.getLogger("ligerpy")


def _to_dense(X) -> np.ndarray:
    return X.toarray() if issparse(X) else np.asarray(X)


def _nnlsm_blockpivot(
    AtA: np.ndarray, AtB: np.ndarray, init: np.ndarray | None = None
) -> np.ndarray:
    """
    Nonnegative least squares with multiple right-hand sides
    by block principal pivoting (Kim & Park, 2011).

    Solves min ||AX - B||_F s.t. X >= 0, given the normal equations
    AtA = A.T @ A and AtB = A.T @ B.

    Args:
        AtA (np.ndarray): [n, n] gram matrix
        AtB (np.ndarray): [n, k] right-hand sides
        init (np.ndarray | None): [n, k] previous solution to warm start from

    Returns:
        np.ndarray: [n, k] nonnegative solution
    """
    n, k = AtB.shape
    max_iter = n * 5

    if init is None:
        passive = np.zeros((n, k), dtype=bool)
        X = np.zeros((n, k))
        Y = -AtB
    else:
        passive = init > 0
        X = _solve_passive(AtA, AtB, passive)
        Y = AtA @ X - AtB

    p_bar = 3
    p_vec = np.full(k, p_bar)
    ninf_vec = np.full(k, n + 1)

    non_opt = (Y < 0) & ~passive
    infea = (X < 0) & passive
    not_good = non_opt.sum(axis=0) + infea.sum(axis=0)
    not_opt_colset = not_good > 0
    not_opt_cols = not_opt_colset.nonzero()[0]

    big_iter = 0
    while not_opt_cols.size > 0:
        big_iter += 1
        if big_iter > max_iter:
            logger.debug("Block principal pivoting reached %i iterations", max_iter)
            break

        cols_set1 = not_opt_colset & (not_good < ninf_vec)
        temp1 = not_opt_colset & (not_good >= ninf_vec)
        temp2 = p_vec >= 1
        cols_set2 = temp1 & temp2
        cols_set3 = temp1 & ~temp2

        # full exchange rule
        if cols_set1.any():
            p_vec[cols_set1] = p_bar
            ninf_vec[cols_set1] = not_good[cols_set1]
            passive[non_opt & cols_set1] = True
            passive[infea & cols_set1] = False

        # full exchange while the backup counter lasts
        if cols_set2.any():
            p_vec[cols_set2] -= 1
            passive[non_opt & cols_set2] = True
            passive[infea & cols_set2] = False

        # single exchange of the last infeasible variable
        for col in cols_set3.nonzero()[0]:
            candidates = (non_opt[:, col] | infea[:, col]).nonzero()[0]
            to_change = candidates.max()
            passive[to_change, col] = ~passive[to_change, col]

        X[:, not_opt_cols] = _solve_passive(
            AtA, AtB[:, not_opt_cols], passive[:, not_opt_cols]
        )
        X[np.abs(X) < 1e-12] = 0
        Y[:, not_opt_cols] = AtA @ X[:, not_opt_cols] - AtB[:, not_opt_cols]
        Y[np.abs(Y) < 1e-12] = 0

        non_opt = not_opt_colset & (Y < 0) & ~passive
        infea = not_opt_colset & (X < 0) & passive
        not_good = non_opt.sum(axis=0) + infea.sum(axis=0)
        not_opt_colset = not_good > 0
        not_opt_cols = not_opt_colset.nonzero()[0]

    X[X < 0] = 0
    return X


def _solve_passive(
    AtA: np.ndarray, AtB: np.ndarray, passive: np.ndarray
) -> np.ndarray:
    # unconstrained least squares on the passive variables,
    # columns sharing a passive set are solved together
    X = np.zeros(AtB.shape)
    if AtB.shape[1] == 0:
        return X

    patterns, inverse = np.unique(passive.T, axis=0, return_inverse=True)
    inverse = np.asarray(inverse).reshape(-1)

    for i, pattern in enumerate(patterns):
        if not pattern.any():
            continue
        cols = (inverse == i).nonzero()[0]
        X[np.ix_(pattern, cols)] = np.linalg.lstsq(
            AtA[np.ix_(pattern, pattern)], AtB[np.ix_(pattern, cols)], rcond=None
        )[0]

    return X


def _inmf_objective(
    E: list[np.ndarray],
    H: list[np.ndarray],
    W: np.ndarray,
    V: list[np.ndarray],
    lamb: float,
) -> float:
    obj = 0.0
    for E_i, H_i, V_i in zip(E, H, V):
        # [N_i, genes] = [N_i, k] x [k, genes]
        obj += np.linalg.norm(E_i - H_i @ (W + V_i)) ** 2
        obj += lamb * np.linalg.norm(H_i @ V_i) ** 2
    return float(obj)


def _run_inmf(
    E: list[np.ndarray],
    k: int,
    lamb: float,
    thresh: float,
    max_iters: int,
    rng: np.random.Generator,
    H_init: list[np.ndarray] | None = None,
    W_init: np.ndarray | None = None,
    V_init: list[np.ndarray] | None = None,
    print_obj: bool = False,
):
    """
    One run of the alternating nonnegative least squares for integrative NMF.

    Each block (H, then V, then W) is an exact NNLS solve on its normal equations,
    so the objective never increases.
    """
    n_genes = E[0].shape[1]

    # [k, genes]
    W = rng.uniform(0, 2, (k, n_genes)) if W_init is None else np.array(W_init, dtype=float)
    V = (
        [rng.uniform(0, 2, (k, n_genes)) for _ in E]
        if V_init is None
        else [np.array(v, dtype=float) for v in V_init]
    )
    H = (
        [rng.uniform(0, 2, (E_i.shape[0], k)) for E_i in E]
        if H_init is None
        else [np.array(h, dtype=float) for h in H_init]
    )

    sqrt_lamb = np.sqrt(lamb)
    obj0 = _inmf_objective(E, H, W, V, lamb)
    history = [obj0]
    delta = np.inf
    iters = 0

    while delta > thresh and iters < max_iters:
        # H_i: min ||[(W + V_i).T; sqrt(lamb) V_i.T] H_i.T - [E_i.T; 0]||
        for i, E_i in enumerate(E):
            WV = W + V[i]
            AtA = WV @ WV.T + (sqrt_lamb * V[i]) @ (sqrt_lamb * V[i]).T
            AtB = WV @ E_i.T
            H[i] = _nnlsm_blockpivot(AtA, AtB, init=H[i].T).T

        # V_i: min ||[H_i; sqrt(lamb) H_i] V_i - [E_i - H_i W; 0]||
        for i, E_i in enumerate(E):
            AtA = (1 + lamb) * (H[i].T @ H[i])
            AtB = H[i].T @ (E_i - H[i] @ W)
            V[i] = _nnlsm_blockpivot(AtA, AtB, init=V[i])

        # W: min ||[H_1; ...; H_N] W - [E_1 - H_1 V_1; ...]||
        AtA = sum(H_i.T @ H_i for H_i in H)
        AtB = sum(H_i.T @ (E_i - H_i @ V_i) for E_i, H_i, V_i in zip(E, H, V))
        W = _nnlsm_blockpivot(AtA, AtB, init=W)

        obj = _inmf_objective(E, H, W, V, lamb)
        delta = abs(obj0 - obj) / np.mean([obj0, obj]) if obj0 + obj > 0 else 0.0
        obj0 = obj
        history.append(obj)
        iters += 1

        if print_obj:
            print(f"Iteration {iters}: objective {obj:.6g}, delta {delta:.3g}")

    return H, W, V, history, iters


def _scale_l2_norm(H: np.ndarray) -> np.ndarray:
    # each cell's loadings to unit L2 norm, cells without loadings stay zero
    norms = np.linalg.norm(H, ord=2, axis=1, keepdims=True)
    norms[norms == 0] = 1
    return H / norms


def _quantile_warp(
    values: np.ndarray,
    ref_values: np.ndarray,
    quantiles: int,
    values_sample: np.ndarray | None = None,
) -> np.ndarray:
    """
    Map values onto the distribution of ref_values
    through piecewise-linear interpolation between their quantiles.
    Quantiles of values are estimated on values_sample when it is given.
    """
    probs = np.linspace(0, 1, quantiles + 1)
    # same quantile definition as R's default (type 7)
    q1 = np.quantile(values if values_sample is None else values_sample, probs)
    q2 = np.quantile(ref_values, probs)

    if q1.sum() == 0 or q2.sum() == 0 or np.unique(q1).size < 2 or np.unique(q2).size < 2:
        return np.zeros_like(values)

    # ties in the source quantiles are collapsed to their mean target
    q1_unique, inverse = np.unique(q1, return_inverse=True)
    inverse = np.asarray(inverse).reshape(-1)
    q2_mean = np.bincount(inverse, weights=q2) / np.bincount(inverse)

    # values outside [q1_min, q1_max] are clamped to the end targets
    return np.interp(values, q1_unique, q2_mean)


def _quantile_align(
    Hs: dict[str, np.ndarray],
    clusters: dict[str, np.ndarray],
    ref_dataset: str,
    quantiles: int,
    min_cells: int,
    dims_use: np.ndarray,
    max_sample: int | None = None,
    rng: np.random.Generator | None = None,
) -> dict[str, np.ndarray]:
    """
    Quantile normalize factor loadings of each dataset to the reference dataset
    within every cluster and for every factor in dims_use.
    """
    Hs = {name: H.copy() for name, H in Hs.items()}
    ref_H = Hs[ref_dataset]
    ref_clusters = clusters[ref_dataset]
    labels = np.unique(np.concatenate(list(clusters.values())))

    for name, H in Hs.items():
        if name == ref_dataset:
            continue
        for label in labels:
            cells = clusters[name] == label
            ref_cells = ref_clusters == label
            n_cells = cells.sum()
            if n_cells < min_cells or ref_cells.sum() < min_cells:
                continue

            for j in dims_use:
                if n_cells == 1:
                    H[cells, j] = ref_H[ref_cells, j].mean()
                    continue

                values = H[cells, j]
                ref_values = ref_H[ref_cells, j]
                values_sample = None
                if max_sample is not None:
                    values_sample = _subsample(values, max_sample, rng)
                    ref_values = _subsample(ref_values, max_sample, rng)

                H[cells, j] = _quantile_warp(
                    values, ref_values, quantiles, values_sample=values_sample
                )

    return Hs


def _subsample(values: np.ndarray, max_sample: int, rng: np.random.Generator):
    if values.shape[0] <= max_sample:
        return values
    return rng.choice(values, size=max_sample, replace=False)


def _refine_clusters_knn(
    H: np.ndarray, clusters: np.ndarray, k: int
) -> np.ndarray:
    # majority vote of cluster labels among each cell's k nearest neighbors
    n_neighbors = min(k, H.shape[0])
    knn = KNeighborsClassifier(n_neighbors)
    knn.fit(H, clusters)
    return knn.predict(H)


def _snn_graph(X: np.ndarray, k: int, prune: float) -> csr_matrix:
    """
    Shared nearest neighbor graph: Jaccard index of k-neighborhoods
    (each cell counted as its own neighbor), edges below prune are removed.
    """
    N = X.shape[0]
    k = int(min(k, N))

    nn = NearestNeighbors(n_neighbors=k)
    nn.fit(X)
    # [N, k], the cell itself is the first neighbor
    idx = nn.kneighbors(X, return_distance=False)

    rows = np.repeat(np.arange(N), k)
    # [N, N] binary neighborhood membership
    A = csr_matrix((np.ones(N * k), (rows, idx.ravel())), shape=(N, N))

    # shared neighbors of every pair of cells
    snn = (A @ A.T).tocoo()
    jaccard = snn.data / (2 * k - snn.data)
    keep = jaccard >= prune

    return csr_matrix(
        (jaccard[keep], (snn.row[keep], snn.col[keep])), shape=(N, N)
    )


def _leiden(
    adjacency: csr_matrix,
    resolution: float = 1.0,
    random_state: int = 1,
    obs_names: pd.Index | None = None,
) -> np.ndarray:
    import scanpy as sc

    adata = AnnData(
        obs=pd.DataFrame(
            index=obs_names
            if obs_names is not None
            else pd.Index([str(i) for i in range(adjacency.shape[0])])
        )
    )
    sc.tl.leiden(
        adata,
        resolution=resolution,
        random_state=random_state,
        adjacency=adjacency,
        flavor="igraph",
        n_iterations=2,
        directed=False,
    )
    return np.asarray(adata.obs["leiden"]).astype(str)


def _merge_small_clusters(
    X: np.ndarray, clusters: np.ndarray, min_size: int, k: int
) -> np.ndarray:
    """Reassign cells of clusters smaller than min_size to the majority cluster of their neighbors."""
    clusters = np.asarray(clusters).astype(str)
    labels, counts = np.unique(clusters, return_counts=True)
    small = labels[counts < min_size]
    if small.size == 0 or small.size == labels.size:
        return clusters

    is_small = np.isin(clusters, small)
    logger.info(
        "Reassigning %i cells from %i clusters smaller than %i cells",
        is_small.sum(),
        small.size,
        min_size,
    )
    knn = KNeighborsClassifier(min(k, (~is_small).sum()))
    knn.fit(X[~is_small], clusters[~is_small])
    clusters = clusters.copy()
    clusters[is_small] = knn.predict(X[is_small])
    return clusters


def _relabel_by_size(clusters: np.ndarray) -> np.ndarray:
    # clusters renamed "0", "1", ... in decreasing order of size
    labels, counts = np.unique(clusters, return_counts=True)
    order = labels[np.argsort(-counts, kind="stable")]
    mapping = {label: str(i) for i, label in enumerate(order)}
    return np.array([mapping[c] for c in clusters])


def _check_scale_data(adata: AnnData, name: str) -> np.ndarray:
    assert (
        "scale_data" in adata.obsm
    ), f"Scaled data not found for dataset '{name}'. Run ligerpy.pp.scale_not_center first."
    E = _to_dense(adata.obsm["scale_data"]).astype(float)
    if (E < 0).any():
        raise ValueError(
            f"Scaled data of dataset '{name}' contains negative values; "
            "integrative NMF requires nonnegative input."
        )
    return E
