# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging

from pathlib import Path

import matplotlib
import numpy as np
import pandas as pd

from matplotlib.backends.backend_pdf import PdfPages
from matplotlib.figure import Figure
from matplotlib.lines import Line2D
from matplotlib.patches import PathPatch, Rectangle
from matplotlib.path import Path as MplPath

from ._liger import Liger, _natural_key
from ._utils import _to_dense
from .tools import get_factor_markers


logger = logging.getLogger("ligerpy")


def _palette(n: int) -> list:
    cmap = matplotlib.colormaps["tab20" if n > 10 else "tab10"]
    return [cmap(i % cmap.N) for i in range(n)]


def _save(figs: Figure | list[Figure], save_path: str | Path | None) -> None:
    if save_path is None:
        return
    save_path = Path(save_path)
    save_path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(figs, Figure):
        figs.savefig(save_path, dpi=200, facecolor="white", bbox_inches="tight")
    else:
        # several figures go to the pages of a single pdf
        with PdfPages(save_path) as pdf:
            for fig in figs:
                pdf.savefig(fig, facecolor="white", bbox_inches="tight")
    logger.info("Plot is saved in %s", save_path)


def _categorical_scatter(
    ax,
    coords: np.ndarray,
    labels: pd.Series,
    pt_size: float,
    order: np.ndarray,
    annotate: bool = False,
    text_size: float = 10,
    do_legend: bool = True,
    legend_size: float = 8,
) -> None:
    categories = sorted(labels.unique(), key=_natural_key)
    colors = dict(zip(categories, _palette(len(categories))))
    point_colors = np.array([colors[label] for label in labels])

    ax.scatter(
        coords[order, 0],
        coords[order, 1],
        c=point_colors[order],
        s=pt_size,
        linewidths=0,
        rasterized=True,
    )

    if annotate:
        for label in categories:
            center = np.median(coords[(labels == label).to_numpy()], axis=0)
            ax.text(center[0], center[1], str(label), fontsize=text_size, ha="center", va="center")

    if do_legend:
        handles = [
            Line2D([], [], marker="o", linestyle="", color=colors[label], label=str(label))
            for label in categories
        ]
        ax.legend(
            handles=handles,
            fontsize=legend_size,
            frameon=False,
            loc="center left",
            bbox_to_anchor=(1.0, 0.5),
            ncol=1 if len(categories) <= 20 else 2,
        )

    ax.set_xticks([])
    ax.set_yticks([])


def plot_by_dataset_and_cluster(
    liger: Liger,
    clusters: pd.Series | None = None,
    basis: str = "X_tsne",
    title: str | list[str] | None = None,
    pt_size: float = 2,
    text_size: float = 10,
    do_shuffle: bool = True,
    rand_seed: int = 1,
    do_labels: bool = True,
    do_legend: bool = True,
    legend_size: float = 8,
    save_path: str | Path | None = None,
) -> Figure:
    """
    Two scatter plots of the embedding: cells colored by dataset and by cluster.

    Args:
        liger (Liger): Liger object with an embedding (``ligerpy.tl.run_tsne``).
        clusters (pd.Series | None, optional): cluster labels indexed by cell names to use
            instead of joint clusters; cells without a label are shown as "NA". Defaults to None.
        basis (str, optional): embedding to plot. Defaults to "X_tsne".
        title (str | list[str] | None, optional): title of both panels or one per panel. Defaults to None.
        pt_size (float, optional): point size. Defaults to 2.
        text_size (float, optional): size of cluster labels. Defaults to 10.
        do_shuffle (bool, optional): if to plot cells in random order. Defaults to True.
        rand_seed (int, optional): random seed of shuffling. Defaults to 1.
        do_labels (bool, optional): if to print cluster labels at cluster centers. Defaults to True.
        do_legend (bool, optional): if to draw legends. Defaults to True.
        legend_size (float, optional): legend font size. Defaults to 8.
        save_path (str | Path | None, optional): where to save the figure. Defaults to None.

    Returns:
        Figure: figure with two panels.
    """
    coords = liger.embedding(basis)
    datasets = liger.dataset_labels

    if clusters is None:
        clusters = liger.clusters
    else:
        clusters = pd.Series(clusters).astype(str)
        clusters.index = clusters.index.astype(str)
        clusters = clusters.reindex(datasets.index).fillna("NA")
    clusters = clusters.astype(str)

    order = np.arange(coords.shape[0])
    if do_shuffle:
        order = np.random.default_rng(rand_seed).permutation(order)

    fig = Figure(figsize=(13, 5.5))
    axes = fig.subplots(1, 2)
    _categorical_scatter(
        axes[0], coords, datasets.astype(str), pt_size, order,
        do_legend=do_legend, legend_size=legend_size,
    )
    _categorical_scatter(
        axes[1], coords, clusters, pt_size, order,
        annotate=do_labels, text_size=text_size,
        do_legend=do_legend, legend_size=legend_size,
    )

    if title is not None:
        titles = [title, title] if isinstance(title, str) else list(title)
        for ax, panel_title in zip(axes, titles):
            ax.set_title(panel_title)

    fig.tight_layout()
    _save(fig, save_path)
    return fig


def _ribbon(ax, x0, y0_bottom, y0_top, x1, y1_bottom, y1_top, color, alpha):
    xm = (x0 + x1) / 2
    verts = [
        (x0, y0_bottom),
        (xm, y0_bottom),
        (xm, y1_bottom),
        (x1, y1_bottom),
        (x1, y1_top),
        (xm, y1_top),
        (xm, y0_top),
        (x0, y0_top),
        (x0, y0_bottom),
    ]
    codes = [
        MplPath.MOVETO,
        MplPath.CURVE4,
        MplPath.CURVE4,
        MplPath.CURVE4,
        MplPath.LINETO,
        MplPath.CURVE4,
        MplPath.CURVE4,
        MplPath.CURVE4,
        MplPath.CLOSEPOLY,
    ]
    ax.add_patch(
        PathPatch(MplPath(verts, codes), facecolor=color, edgecolor="none", alpha=alpha)
    )


def _stack(heights: pd.Series, gap: float) -> pd.DataFrame:
    # node heights stacked top-down into [0, 1] with gaps in between
    total = heights.sum()
    n = len(heights)
    unit = (1 - gap * max(n - 1, 0)) / total if total > 0 else 0
    tops, bottoms = [], []
    top = 1.0
    for height in heights:
        tops.append(top)
        bottoms.append(top - height * unit)
        top = top - height * unit - gap
    return pd.DataFrame({"top": tops, "bottom": bottoms, "unit": unit}, index=heights.index)


def make_river_plot(
    liger: Liger,
    cluster1: pd.Series,
    cluster2: pd.Series,
    cluster_consensus: pd.Series | None = None,
    min_frac: float = 0.05,
    min_cells: int = 10,
    label_size: float = 9,
    gap: float = 0.01,
    alpha: float = 0.5,
    save_path: str | Path | None = None,
) -> Figure:
    """
    River (Sankey) plot of correspondence between original cluster labels of two
    datasets and joint clusters.

    Left column holds ``cluster1`` labels of the first dataset's cells,
    middle column holds joint clusters, right column holds ``cluster2`` labels
    of the second dataset's cells. Ribbon widths are proportional to the number of shared cells.

    Args:
        liger (Liger): clustered Liger object.
        cluster1 (pd.Series): labels of cells of the first dataset, indexed by cell names.
        cluster2 (pd.Series): labels of cells of the second dataset, indexed by cell names.
        cluster_consensus (pd.Series | None, optional): labels for the middle column; joint clusters if None.
        min_frac (float, optional): ribbons carrying less than this fraction of their label node
            are not drawn. Defaults to 0.05.
        min_cells (int, optional): nodes with fewer cells are not drawn. Defaults to 10.
        label_size (float, optional): node label font size. Defaults to 9.
        gap (float, optional): vertical gap between nodes. Defaults to 0.01.
        alpha (float, optional): ribbon opacity. Defaults to 0.5.
        save_path (str | Path | None, optional): where to save the figure. Defaults to None.

    Returns:
        Figure: river plot.
    """
    consensus = liger.clusters if cluster_consensus is None else pd.Series(cluster_consensus)
    consensus = consensus.astype(str)

    names = liger.dataset_names
    if len(names) < 2:
        raise ValueError("Two datasets are needed for a river plot.")

    cluster1 = pd.Series(cluster1).astype(str)
    cluster2 = pd.Series(cluster2).astype(str)
    cells1 = liger.datasets[names[0]].obs_names.intersection(consensus.index)
    cells2 = liger.datasets[names[1]].obs_names.intersection(consensus.index)
    cluster1 = cluster1[cluster1.index.isin(cells1)]
    cluster2 = cluster2[cluster2.index.isin(cells2)]
    if cluster1.empty:
        raise ValueError(
            f"`cluster1` should be indexed by cell names of dataset '{names[0]}'."
        )
    if cluster2.empty:
        raise ValueError(
            f"`cluster2` should be indexed by cell names of dataset '{names[1]}'."
        )

    # [labels1, consensus], [consensus, labels2]
    flows_left = pd.crosstab(cluster1, consensus[cluster1.index])
    flows_right = pd.crosstab(consensus[cluster2.index], cluster2)

    # drop small nodes
    flows_left = flows_left.loc[flows_left.sum(axis=1) >= min_cells]
    flows_right = flows_right.loc[:, flows_right.sum(axis=0) >= min_cells]
    middle_sizes = consensus.value_counts()
    middle = [c for c in middle_sizes.index if middle_sizes[c] >= min_cells]
    flows_left = flows_left.reindex(columns=middle, fill_value=0)
    flows_right = flows_right.reindex(index=middle, fill_value=0)

    # drop thin ribbons
    flows_left = flows_left.where(
        flows_left.div(flows_left.sum(axis=1), axis=0) >= min_frac, 0
    )
    flows_right = flows_right.where(flows_right.div(flows_right.sum(axis=0), axis=1) >= min_frac, 0)

    flows_left = flows_left.loc[flows_left.sum(axis=1) > 0]
    flows_right = flows_right.loc[:, flows_right.sum(axis=0) > 0]
    middle_height = pd.concat(
        [flows_left.sum(axis=0), flows_right.sum(axis=1)], axis=1
    ).max(axis=1)
    middle_height = middle_height[middle_height > 0]
    if middle_height.empty:
        raise ValueError("No flows left to plot; lower `min_frac` or `min_cells`.")

    # middle nodes in label order, side nodes by the mean position of their flows
    middle_order = sorted(middle_height.index, key=_natural_key)
    middle_rank = pd.Series(np.arange(len(middle_order)), index=middle_order)
    flows_left = flows_left[middle_order]
    flows_right = flows_right.loc[middle_order]
    left_order = (flows_left @ middle_rank / flows_left.sum(axis=1)).sort_values().index
    right_order = (middle_rank @ flows_right / flows_right.sum(axis=0)).sort_values().index
    flows_left = flows_left.loc[left_order]
    flows_right = flows_right[right_order]

    left_nodes = _stack(flows_left.sum(axis=1), gap)
    middle_nodes = _stack(middle_height[middle_order], gap)
    right_nodes = _stack(flows_right.sum(axis=0), gap)

    colors_left = dict(zip(left_order, _palette(len(left_order))))
    colors_right = dict(zip(right_order, _palette(len(right_order))))

    fig = Figure(figsize=(8, 8))
    ax = fig.subplots()
    x_left, x_middle, x_right, width = 0.0, 1.0, 2.0, 0.06

    # ribbons from the left column to the middle one
    middle_filled = {c: middle_nodes.loc[c, "top"] for c in middle_order}
    for label in left_order:
        y = left_nodes.loc[label, "top"]
        for c in middle_order:
            count = flows_left.loc[label, c]
            if count == 0:
                continue
            h0 = count * left_nodes.loc[label, "unit"]
            h1 = count * middle_nodes.loc[c, "unit"]
            _ribbon(
                ax,
                x_left + width / 2, y - h0, y,
                x_middle - width / 2, middle_filled[c] - h1, middle_filled[c],
                colors_left[label], alpha,
            )
            y -= h0
            middle_filled[c] -= h1

    # ribbons from the middle column to the right one
    middle_filled = {c: middle_nodes.loc[c, "top"] for c in middle_order}
    right_filled = {label: right_nodes.loc[label, "top"] for label in right_order}
    for c in middle_order:
        for label in right_order:
            count = flows_right.loc[c, label]
            if count == 0:
                continue
            h0 = count * middle_nodes.loc[c, "unit"]
            h1 = count * right_nodes.loc[label, "unit"]
            _ribbon(
                ax,
                x_middle + width / 2, middle_filled[c] - h0, middle_filled[c],
                x_right - width / 2, right_filled[label] - h1, right_filled[label],
                colors_right[label], alpha,
            )
            middle_filled[c] -= h0
            right_filled[label] -= h1

    for x, nodes, ha, x_text in (
        (x_left, left_nodes, "right", x_left - width),
        (x_middle, middle_nodes, "center", x_middle),
        (x_right, right_nodes, "left", x_right + width),
    ):
        for label, node in nodes.iterrows():
            ax.add_patch(
                Rectangle(
                    (x - width / 2, node["bottom"]),
                    width,
                    node["top"] - node["bottom"],
                    facecolor="lightgrey",
                    edgecolor="black",
                    linewidth=0.5,
                )
            )
            ax.text(
                x_text,
                (node["top"] + node["bottom"]) / 2,
                str(label),
                ha=ha,
                va="center",
                fontsize=label_size,
            )

    ax.set_xlim(x_left - 0.8, x_right + 0.8)
    ax.set_ylim(-0.02, 1.05)
    for x, text in zip(
        (x_left, x_middle, x_right),
        (names[0], "joint", names[1]),
    ):
        ax.text(x, 1.03, text, ha="center", va="bottom", fontsize=label_size + 1)
    ax.axis("off")

    _save(fig, save_path)
    return fig


def _word_panel(ax, genes: pd.Index, loadings: np.ndarray, min_size, max_size, rng, color, title):
    ax.set_title(title, fontsize=10)
    ax.set_xlim(0, 1)
    ax.set_ylim(0, 1)
    ax.axis("off")
    if len(genes) == 0:
        return

    span = loadings.max() - loadings.min()
    rel = (loadings - loadings.min()) / span if span > 0 else np.ones_like(loadings)
    # sizes on the ggplot scale, 1 mm text is about 2.85 pt
    sizes = (min_size + rel * (max_size - min_size)) * 2.85
    xs = rng.uniform(0.1, 0.9, len(genes))
    ys = rng.uniform(0.05, 0.95, len(genes))
    for gene, size, x, y in zip(genes, sizes, xs, ys):
        ax.text(x, y, str(gene), fontsize=size, ha="center", va="center", color=color)


def _loading_scatter(ax, coords: np.ndarray, values: np.ndarray, pt_size: float, title: str):
    order = np.argsort(values, kind="stable")
    sca = ax.scatter(
        coords[order, 0],
        coords[order, 1],
        c=values[order],
        s=pt_size,
        cmap="viridis",
        linewidths=0,
        rasterized=True,
    )
    ax.set_title(title)
    ax.set_xticks([])
    ax.set_yticks([])
    return sca


def _resolve_pair(liger: Liger, dataset1: str | None, dataset2: str | None) -> tuple[str, str]:
    names = liger.dataset_names
    if len(names) < 2 and (dataset1 is None or dataset2 is None):
        raise ValueError("Two datasets are needed to compare factor loadings.")
    dataset1 = names[0] if dataset1 is None else dataset1
    dataset2 = names[1] if dataset2 is None else dataset2
    for name in (dataset1, dataset2):
        if name not in liger.datasets:
            raise KeyError(f"Dataset '{name}' not found in the Liger object.")
    return dataset1, dataset2


def plot_word_clouds(
    liger: Liger,
    dataset1: str | None = None,
    dataset2: str | None = None,
    num_genes: int = 30,
    min_size: float = 1,
    max_size: float = 4,
    factor_share_thresh: float = 10,
    log_fc_thresh: float = 1,
    pval_thresh: float = 0.05,
    basis: str = "X_tsne",
    pt_size: float = 2,
    rand_seed: int = 1,
    save_path: str | Path | None = None,
) -> list[Figure]:
    """
    For each shared factor: embedding colored by aligned factor loadings, and
    word clouds of genes loading the factor specifically in ``dataset1``, in both
    datasets, and specifically in ``dataset2``, sized by their loadings.

    Args:
        liger (Liger): aligned Liger object with an embedding.
        dataset1 (str | None, optional): first dataset; the first one if None. Defaults to None.
        dataset2 (str | None, optional): second dataset; the second one if None. Defaults to None.
        num_genes (int, optional): genes considered for each factor. Defaults to 30.
        min_size (float, optional): smallest word size. Defaults to 1.
        max_size (float, optional): largest word size. Defaults to 4.
        factor_share_thresh (float, optional): only factors with smaller absolute dataset
            specificity are plotted. Defaults to 10.
        log_fc_thresh (float, optional): log2 fold change threshold of dataset-specific genes. Defaults to 1.
        pval_thresh (float, optional): adjusted p-value threshold of dataset-specific genes. Defaults to 0.05.
        basis (str, optional): embedding to plot. Defaults to "X_tsne".
        pt_size (float, optional): point size. Defaults to 2.
        rand_seed (int, optional): random seed of word layout. Defaults to 1.
        save_path (str | Path | None, optional): pdf to save the figures to. Defaults to None.

    Returns:
        list[Figure]: one figure per factor.
    """
    dataset1, dataset2 = _resolve_pair(liger, dataset1, dataset2)
    coords = liger.embedding(basis)
    H_norm = liger.H_norm
    rng = np.random.default_rng(rand_seed)

    markers = get_factor_markers(
        liger,
        dataset1,
        dataset2,
        factor_share_thresh=factor_share_thresh,
        num_genes=num_genes,
        log_fc_thresh=log_fc_thresh,
        pval_thresh=pval_thresh,
    )
    gene_pos = pd.Series(np.arange(len(liger.var_genes)), index=liger.var_genes)
    W1 = liger.W + liger.V[dataset1]
    W2 = liger.W + liger.V[dataset2]
    loadings = {dataset1: W1, "shared": np.minimum(W1, W2), dataset2: W2}

    factors = sorted(
        set(markers[dataset1]["factor_num"])
        | set(markers["shared"]["factor_num"])
        | set(markers[dataset2]["factor_num"])
    )

    figs = []
    for i in factors:
        fig = Figure(figsize=(10, 9))
        grid = fig.add_gridspec(2, 3, height_ratios=[1.4, 1])
        ax = fig.add_subplot(grid[0, :])
        sca = _loading_scatter(ax, coords, H_norm[:, i], pt_size, f"Factor {i}")
        fig.colorbar(sca, ax=ax, shrink=0.8)

        for col, (key, color) in enumerate(
            ((dataset1, "tab:blue"), ("shared", "black"), (dataset2, "tab:red"))
        ):
            table = markers[key]
            genes = pd.Index(table.loc[table["factor_num"] == i, "gene"])
            values = loadings[key][i, gene_pos[genes].to_numpy()] if len(genes) else np.array([])
            title = f"{key} specific" if key != "shared" else "shared"
            _word_panel(fig.add_subplot(grid[1, col]), genes, values, min_size, max_size, rng, color, title)

        figs.append(fig)

    if figs:
        _save(figs, save_path)
    return figs


def plot_gene_loadings(
    liger: Liger,
    dataset1: str | None = None,
    dataset2: str | None = None,
    num_genes_show: int = 12,
    num_genes: int = 30,
    mark_top_genes: bool = True,
    factor_share_thresh: float = 10,
    log_fc_thresh: float = 1,
    pval_thresh: float = 0.05,
    basis: str = "X_tsne",
    pt_size: float = 2,
    save_path: str | Path | None = None,
) -> list[Figure]:
    """
    For each shared factor: embedding colored by aligned factor loadings,
    and bar plots of the top ``num_genes_show`` gene loadings in ``dataset1``
    (``W + V1``), in both datasets (``min(W + V1, W + V2)``) and in ``dataset2``
    (``W + V2``). Marker genes found by :func:`ligerpy.tl.get_factor_markers`
    are highlighted when ``mark_top_genes``.

    Returns:
        list[Figure]: one figure per factor.
    """
    dataset1, dataset2 = _resolve_pair(liger, dataset1, dataset2)
    coords = liger.embedding(basis)
    H_norm = liger.H_norm

    markers = get_factor_markers(
        liger,
        dataset1,
        dataset2,
        factor_share_thresh=factor_share_thresh,
        num_genes=num_genes,
        log_fc_thresh=log_fc_thresh,
        pval_thresh=pval_thresh,
    )
    genes = liger.var_genes
    W1 = liger.W + liger.V[dataset1]
    W2 = liger.W + liger.V[dataset2]
    loadings = {dataset1: W1, "shared": np.minimum(W1, W2), dataset2: W2}
    colors = {dataset1: "tab:blue", "shared": "dimgrey", dataset2: "tab:red"}

    factors = sorted(
        set(markers[dataset1]["factor_num"])
        | set(markers["shared"]["factor_num"])
        | set(markers[dataset2]["factor_num"])
    )

    figs = []
    for i in factors:
        fig = Figure(figsize=(12, 9))
        grid = fig.add_gridspec(2, 3, height_ratios=[1.3, 1])
        ax = fig.add_subplot(grid[0, :])
        sca = _loading_scatter(ax, coords, H_norm[:, i], pt_size, f"Factor {i}")
        fig.colorbar(sca, ax=ax, shrink=0.8)

        for col, key in enumerate((dataset1, "shared", dataset2)):
            ax = fig.add_subplot(grid[1, col])
            top = np.argsort(-loadings[key][i], kind="stable")[:num_genes_show]
            table = markers[key]
            marked = set(table.loc[table["factor_num"] == i, "gene"]) if mark_top_genes else set()
            bar_colors = [colors[key] if genes[j] in marked else "lightgrey" for j in top]
            ax.barh(np.arange(len(top))[::-1], loadings[key][i, top], color=bar_colors)
            ax.set_yticks(np.arange(len(top))[::-1])
            ax.set_yticklabels(genes[top], fontsize=8)
            ax.set_title(f"{key} loadings" if key == "shared" else f"{key} specific loadings", fontsize=10)
            ax.set_xlabel("loading")

        fig.tight_layout()
        figs.append(fig)

    if figs:
        _save(figs, save_path)
    return figs


def plot_gene(
    liger: Liger,
    gene: str,
    basis: str = "X_tsne",
    scale_factor: float = 1e4,
    pt_size: float = 2,
    cmap: str = "viridis",
    save_path: str | Path | None = None,
) -> Figure:
    """
    Embedding of every dataset colored by ``log1p(scale_factor * normalized expression)`` of ``gene``.
    """
    for name, adata in liger.datasets.items():
        if gene not in adata.var_names:
            raise KeyError(f"Gene '{gene}' not found in dataset '{name}'.")
        assert (
            "norm_data" in adata.layers
        ), f"Normalized data not found for dataset '{name}'. Run ligerpy.pp.normalize first."

    blocks = liger.split(liger.embedding(basis))
    values = {
        name: np.log1p(
            scale_factor * _to_dense(adata[:, gene].layers["norm_data"]).ravel()
        )
        for name, adata in liger.datasets.items()
    }
    vmax = max(v.max() for v in values.values()) or 1

    n = len(liger.datasets)
    fig = Figure(figsize=(5 * n, 4.5))
    axes = fig.subplots(1, n, squeeze=False)
    for ax, name in zip(axes[0], liger.dataset_names):
        order = np.argsort(values[name], kind="stable")
        sca = ax.scatter(
            blocks[name][order, 0],
            blocks[name][order, 1],
            c=values[name][order],
            s=pt_size,
            cmap=cmap,
            vmin=0,
            vmax=vmax,
            linewidths=0,
            rasterized=True,
        )
        ax.set_title(f"{name}: {gene}")
        ax.set_xticks([])
        ax.set_yticks([])
    fig.colorbar(sca, ax=axes[0].tolist(), shrink=0.8)

    _save(fig, save_path)
    return fig
