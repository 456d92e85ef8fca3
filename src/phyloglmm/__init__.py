"""phyloglmm: phylogenetic random effects for mixed models.

Turns a rooted phylogeny into a sparse tip-by-branch design matrix
whose branch-length weights encode Brownian-motion correlation, and
splices that matrix into a generic random-effects structure so that
any mixed-model solver can fit a phylogenetic GLMM without knowing
about trees.

Public API:
    .. autosummary::
        Tree
        build_z
        brownian_covariance
        clear_z_cache
        RandomEffectsStructure
        TermId
        build_random_effects
        splice_term
        add_phylogeny
        get_n_jobs
        set_n_jobs
        get_cache_size
        set_cache_size
        PhyloGLMMError
        MalformedTreeError
        UnknownTermError
        StructuralMismatchError
"""

from ._config import get_cache_size, get_n_jobs, set_cache_size, set_n_jobs
from ._exceptions import (
    MalformedTreeError,
    PhyloGLMMError,
    StructuralMismatchError,
    UnknownTermError,
)
from .reterms import RandomEffectsStructure, TermId, build_random_effects
from .splice import add_phylogeny, splice_term
from .tree import Tree
from .zmatrix import brownian_covariance, build_z, clear_z_cache

__all__ = [
    "Tree",
    "build_z",
    "brownian_covariance",
    "clear_z_cache",
    "RandomEffectsStructure",
    "TermId",
    "build_random_effects",
    "splice_term",
    "add_phylogeny",
    "get_n_jobs",
    "set_n_jobs",
    "get_cache_size",
    "set_cache_size",
    "PhyloGLMMError",
    "MalformedTreeError",
    "UnknownTermError",
    "StructuralMismatchError",
]

__version__ = "0.1.0"
