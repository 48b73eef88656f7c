from __future__ import annotations

import pickle

from pathlib import Path

import pandas as pd

from anndata import AnnData
from scipy.sparse import csr_matrix


def read_dge(file_path: str | Path, sep: str = "\t") -> AnnData:
    """
    Read a digital gene expression matrix with genes in rows and cells in columns
    (first column holds gene names, header holds cell barcodes).

    Returns AnnData of cells x genes with sparse counts.
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Expression matrix not found: {file_path}")

    dge = pd.read_csv(file_path, sep=sep, index_col=0)
    dge.index = dge.index.astype(str)
    dge.columns = dge.columns.astype(str)

    adata = AnnData(
        X=csr_matrix(dge.to_numpy().T),
        obs=pd.DataFrame(index=dge.columns),
        var=pd.DataFrame(index=dge.index),
    )
    adata.var_names_make_unique()
    return adata


def read_cluster_labels(file_path: str | Path) -> pd.Series:
    """
    Read serialized cell cluster labels: a pickled ``pd.Series`` or dict
    (``.pkl``, ``.pickle``), or a two-column table of cell and label
    (``.csv``, ``.tsv``, ``.txt``, header optional).

    Returns categorical ``pd.Series`` indexed by cell names.
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Cluster labels not found: {file_path}")

    suffix = file_path.suffix.lower()
    if suffix in (".pkl", ".pickle"):
        with open(file_path, "rb") as labels_file:
            labels = pickle.load(labels_file)
        labels = pd.Series(labels)
    elif suffix in (".csv", ".tsv", ".txt"):
        sep = "," if suffix == ".csv" else "\t"
        table = pd.read_csv(file_path, sep=sep, header=None, dtype=str)
        if table.shape[1] != 2:
            raise ValueError(
                f"Expected two columns (cell, label) in '{file_path}', got {table.shape[1]}."
            )
        labels = pd.Series(table[1].to_numpy(), index=table[0].to_numpy())
        if labels.index[0].lower() in ("cell", "cells", "barcode"):
            labels = labels.iloc[1:]
    else:
        raise ValueError(
            f"Unsupported cluster labels format '{suffix}'. Use .pkl, .csv, .tsv or .txt"
        )

    labels.index = labels.index.astype(str)
    return labels.astype(str).astype("category")


def pbmc_alignment(
    ctrl_path: str | Path = "data/pbmc_alignment/PBMC_control.tsv",
    stim_path: str | Path = "data/pbmc_alignment/PBMC_interferon-stimulated.tsv",
) -> dict[str, AnnData]:
    """
    Control and interferon-stimulated PBMC datasets (Kang et al., 2017)
    used in the walkthrough, as ``{"ctrl": ..., "stim": ...}``.
    """
    return {"ctrl": read_dge(ctrl_path), "stim": read_dge(stim_path)}
