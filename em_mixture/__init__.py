# em_mixture/__init__.py
"""K-means-seeded Gaussian mixture EM in PyTorch."""

from ._errors import (
    MixtureError,
    MalformedInputError,
    SizeMismatchError,
    SingularityError,
    EmptyClusterError,
    DegenerateComponentError,
    NonConvergenceWarning,
)

from ._kmeans import (
    KMeansResult,
    kmeans,
    kmeans_plusplus_centroids,
    cluster_member_counts,
    total_distortion,
)

from ._gmm_em import (
    Component,
    MixtureParams,
    EStepResult,
    MStepResult,
    EMResult,
    GaussianMixtureEM,
    estimate_log_gaussian_prob,
    expectation_step,
    maximization_step,
)

from ._loader import load_csv

__version__ = "0.1.0"

__all__ = [
    # errors
    "MixtureError",
    "MalformedInputError",
    "SizeMismatchError",
    "SingularityError",
    "EmptyClusterError",
    "DegenerateComponentError",
    "NonConvergenceWarning",
    # k-means
    "KMeansResult",
    "kmeans",
    "kmeans_plusplus_centroids",
    "cluster_member_counts",
    "total_distortion",
    # em
    "Component",
    "MixtureParams",
    "EStepResult",
    "MStepResult",
    "EMResult",
    "GaussianMixtureEM",
    "estimate_log_gaussian_prob",
    "expectation_step",
    "maximization_step",
    # io
    "load_csv",
]
