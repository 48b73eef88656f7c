# pylint: disable=E1123, W0621, C0116, W0511, E1121

from __future__ import annotations

import argparse
import logging

from pathlib import Path

import pandas as pd

import ligerpy as lp

from ligerpy.config import DEFAULT_CONFIG, load_json_config


logger = logging.getLogger("ligerpy")


def run_walkthrough(
    ctrl_path: str | Path,
    stim_path: str | Path,
    output_dir: str | Path,
    cluster_labels_path: str | Path | None = None,
    var_thresh: float = 0.1,
    k: int = 20,
    lambda_: float = 5.0,
    max_iters: int = 30,
    nrep: int = 1,
    resolution: float = 0.4,
    small_clust_thresh: int = 20,
    knn_k: int = 20,
    k2: int = 500,
    embedding: str = "tsne",
    rand_seed: int = 1,
) -> lp.Liger:
    """
    Align control and interferon-stimulated PBMCs and draw the figures of the walkthrough
    1. load the two expression matrices, create Liger object
    2. normalize, select variable genes, scale
    3. iNMF factorization
    4. quantile alignment with joint clustering
    5. figures
        - embedding by dataset and by cluster
        - river plot of published labels vs joint clusters (if labels are given)
        - word clouds and gene loadings of shared factors
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    adata_dict = lp.datasets.pbmc_alignment(ctrl_path=ctrl_path, stim_path=stim_path)
    liger = lp.create_liger(adata_dict)
    logger.info("%s", liger)

    lp.pp.normalize(liger)
    lp.pp.select_genes(liger, var_thresh=var_thresh)
    lp.pp.scale_not_center(liger)

    lp.tl.optimize_als(liger, k=k, lambda_=lambda_, max_iters=max_iters, nrep=nrep, rand_seed=rand_seed)
    lp.tl.quantile_align_snf(
        liger,
        knn_k=knn_k,
        k2=k2,
        resolution=resolution,
        small_clust_thresh=small_clust_thresh,
        random_state=rand_seed,
    )
    logger.info("Alignment: %.3f", lp.tl.calc_alignment(liger, rand_seed=rand_seed))

    if embedding == "tsne":
        lp.tl.run_tsne(liger, random_state=rand_seed)
        basis = "X_tsne"
    elif embedding == "umap":
        lp.tl.run_umap(liger, random_state=rand_seed)
        basis = "X_umap"
    else:
        raise ValueError("`embedding` should be `tsne` or `umap`.")

    lp.pl.plot_by_dataset_and_cluster(
        liger, basis=basis, save_path=output_dir / "by_dataset_and_cluster.png"
    )

    if cluster_labels_path is not None:
        labels = lp.datasets.read_cluster_labels(cluster_labels_path)
        ctrl_cells = liger.datasets["ctrl"].obs_names
        stim_cells = liger.datasets["stim"].obs_names
        lp.pl.make_river_plot(
            liger,
            cluster1=labels[labels.index.isin(ctrl_cells)],
            cluster2=labels[labels.index.isin(stim_cells)],
            save_path=output_dir / "river_plot.png",
        )
        lp.pl.plot_by_dataset_and_cluster(
            liger,
            clusters=labels,
            basis=basis,
            save_path=output_dir / "by_dataset_and_published_labels.png",
        )

    lp.pl.plot_word_clouds(
        liger, "ctrl", "stim", basis=basis, save_path=output_dir / "word_clouds.pdf"
    )
    lp.pl.plot_gene_loadings(
        liger, "ctrl", "stim", basis=basis, save_path=output_dir / "gene_loadings.pdf"
    )

    markers = lp.tl.run_wilcoxon(liger, compare_method="clusters")
    markers.to_csv(output_dir / "cluster_markers.tsv", sep="\t", index=False)
    pd.Series(liger.clusters, name="liger_clusters").to_csv(
        output_dir / "liger_clusters.tsv", sep="\t"
    )

    return liger


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Align control and stimulated PBMC datasets with integrative NMF."
    )
    parser.add_argument("config", nargs="?", help="JSON config file")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    config = load_json_config(args.config) if args.config else dict(DEFAULT_CONFIG)
    config["lambda_"] = config.pop("lambda")

    run_walkthrough(**config)


if __name__ == "__main__":
    main()
