"""
LIGER algorithm (linked inference of genomic experimental relationships):

1. Preprocessing:
    - library size normalization of the cells (counts divided by total counts, no log)
    - selection of variable genes in each dataset
        (variance above the sampling noise expected from library sizes),
        union of genes selected in each dataset
    - scaling of the genes by root-mean-square, without centering
        (the data stays nonnegative)

2. Integrative non-negative matrix factorization (iNMF)
    - E_i ~ H_i (W + V_i) for each dataset i
        W -- gene loadings shared by the datasets,
        V_i -- dataset-specific gene loadings,
        H_i -- cell factor loadings
    - lambda * ||H_i V_i||^2 penalizes dataset-specific effects
    - alternating nonnegative least squares (block principal pivoting)

3. Joint clustering and quantile alignment
    - cells described by their factor neighborhoods,
        shared nearest neighbor graph, Leiden clustering
    - within each joint cluster, distributions of factor loadings
        of every dataset are quantile normalized to the reference dataset

4. Visualization and interpretation
    - t-SNE / UMAP of the aligned factors by dataset and by cluster
    - river plot of the correspondence between original and joint clusters
    - word clouds and gene loading plots of shared and dataset-specific genes
    - alignment metric, dataset specificity of factors, Wilcoxon markers
"""

from ._liger import Liger, create_liger, to_anndata
from . import preprocessing as pp
from . import tools as tl
from . import plotting as pl
from . import datasets

__version__ = "0.1.0"
