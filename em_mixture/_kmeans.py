# em_mixture/_kmeans.py
"""K-means (Lloyd) initializer for the EM engine.

The caller's centroids are the starting point and are never replaced;
k-means++ seeding (sklearn) is only used when the caller has none.

Each round:
- assign every point to its nearest centroid (lowest index wins ties)
- recompute centroids as member means, reseeding empty clusters first
- roll back and stop if the total distortion got worse
- stop when no point changed cluster, or after max_iter rounds
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import numpy as np
import torch
from sklearn.cluster import kmeans_plusplus

from ._errors import EmptyClusterError, MalformedInputError
from ._linalg import check_shape

KMeansCallback = Callable[[int, float, int], None]


# ---------------------------
# Input checks
# ---------------------------

def check_points(X, dtype: Optional[torch.dtype] = None, device=None) -> torch.Tensor:
    """Return X as an (N, M) floating tensor; 1-D input is read as M=1."""
    try:
        X = torch.as_tensor(X, device=device)
    except (TypeError, ValueError, RuntimeError) as exc:
        raise MalformedInputError(f"data is not a numeric array: {exc}") from exc
    if not (X.is_floating_point() or X.dtype in (torch.int32, torch.int64)):
        raise MalformedInputError(f"data must be numeric, got dtype {X.dtype}")
    if dtype is not None:
        X = X.to(dtype)
    elif not X.is_floating_point():
        X = X.to(torch.float64)

    if X.dim() == 1:
        X = X.unsqueeze(1)
    if X.dim() != 2:
        raise MalformedInputError(f"data must be (N, M), got shape {tuple(X.shape)}")
    if X.shape[0] == 0 or X.shape[1] == 0:
        raise MalformedInputError(f"data set is empty: shape {tuple(X.shape)}")
    if not bool(torch.isfinite(X).all()):
        raise MalformedInputError("data contains NaN or Inf")
    return X


def check_n_clusters(n_clusters: int, n_samples: int) -> None:
    if not 1 <= n_clusters <= n_samples:
        raise MalformedInputError(
            f"number of clusters must be in [1, N={n_samples}], got {n_clusters}"
        )


# ---------------------------
# Helpers
# ---------------------------

def squared_distances(X: torch.Tensor, centroids: torch.Tensor) -> torch.Tensor:
    """Squared Euclidean distances, shape (N, K)."""
    diff = X.unsqueeze(1) - centroids.unsqueeze(0)  # (N,K,M)
    return torch.sum(diff * diff, dim=2)


def cluster_member_counts(labels: torch.Tensor, n_clusters: int) -> torch.Tensor:
    return torch.bincount(labels, minlength=n_clusters)


def total_distortion(X: torch.Tensor, centroids: torch.Tensor, labels: torch.Tensor) -> float:
    """Total within-cluster squared distance."""
    diff = X - centroids[labels]
    return float(torch.sum(diff * diff).item())


def _update_centroids(X: torch.Tensor, labels: torch.Tensor, n_clusters: int) -> torch.Tensor:
    N, M = X.shape
    counts = cluster_member_counts(labels, n_clusters).to(X.dtype)
    sums = torch.zeros((n_clusters, M), device=X.device, dtype=X.dtype)
    sums.index_add_(0, labels, X)
    return sums / counts.unsqueeze(1)


def _reseed_empty_clusters(
    labels: torch.Tensor,
    point_d2: torch.Tensor,
    n_clusters: int,
    policy: str,
) -> Tuple[torch.Tensor, List[int]]:
    """Move the farthest points into empty clusters.

    point_d2[n] is the squared distance of point n to its assigned centroid.
    Points are only taken from clusters with more than one member, so no
    cluster is emptied by reseeding another. N >= K guarantees a donor.
    """
    counts = cluster_member_counts(labels, n_clusters)
    empty = torch.nonzero(counts == 0).flatten().tolist()
    if not empty:
        return labels, []
    if policy == "raise":
        raise EmptyClusterError(f"empty clusters: {empty}", clusters=empty)

    labels = labels.clone()
    score = point_d2.clone()
    neg_inf = torch.full_like(score, float("-inf"))
    for k in empty:
        movable = counts[labels] > 1
        idx = int(torch.argmax(torch.where(movable, score, neg_inf)).item())
        counts[labels[idx]] -= 1
        labels[idx] = k
        counts[k] = 1
        score[idx] = float("-inf")
    return labels, empty


# ---------------------------
# Seeding
# ---------------------------

def kmeans_plusplus_centroids(X: torch.Tensor, n_clusters: int, random_state=None) -> torch.Tensor:
    """k-means++ seeding via sklearn. Returns centroids (K, M) on X's device."""
    X = check_points(X)
    check_n_clusters(n_clusters, X.shape[0])
    X_np = X.detach().cpu().numpy().astype(np.float64)
    centers, _ = kmeans_plusplus(X_np, n_clusters, random_state=random_state)
    return torch.from_numpy(centers).to(device=X.device, dtype=X.dtype)


# ---------------------------
# Lloyd iteration
# ---------------------------

@dataclass
class KMeansResult:
    labels: torch.Tensor          # (N,) cluster index per point
    centroids: torch.Tensor       # (K, M)
    distortions: List[float] = field(default_factory=list)  # accepted rounds only
    n_iter: int = 0
    converged: bool = False
    n_reseeded: int = 0

    @property
    def n_clusters(self) -> int:
        return int(self.centroids.shape[0])

    @property
    def member_counts(self) -> torch.Tensor:
        return cluster_member_counts(self.labels, self.n_clusters)


@torch.no_grad()
def kmeans(
    X,
    centroids,
    max_iter: int = 100,
    empty_cluster: str = "reseed",
    callback: Optional[KMeansCallback] = None,
) -> KMeansResult:
    """Run Lloyd iterations starting from the given centroids.

    empty_cluster:
      'reseed' - give each empty cluster the point farthest from its centroid
      'raise'  - raise EmptyClusterError
    callback(round, distortion, n_changed) is called after every accepted round.
    """
    if max_iter <= 0:
        raise ValueError("max_iter must be positive")
    if empty_cluster not in ("reseed", "raise"):
        raise ValueError(f"empty_cluster must be 'reseed' or 'raise', got {empty_cluster!r}")

    X = check_points(X)
    N, M = X.shape
    centroids = torch.as_tensor(centroids, device=X.device, dtype=X.dtype)
    if centroids.dim() == 1 and M == 1:
        centroids = centroids.unsqueeze(1)
    if centroids.dim() != 2:
        check_shape("centroids", centroids, (None, M))
    K = centroids.shape[0]
    check_n_clusters(K, N)
    check_shape("centroids", centroids, (K, M))
    if not bool(torch.isfinite(centroids).all()):
        raise MalformedInputError("initial centroids contain NaN or Inf")

    centroids = centroids.clone()
    d2 = squared_distances(X, centroids)
    labels = torch.argmin(d2, dim=1)

    best_labels, best_centroids = labels.clone(), centroids.clone()
    prev_distortion = float("inf")
    distortions: List[float] = []
    converged = False
    n_reseeded = 0
    n_iter = 0

    for n_iter in range(1, max_iter + 1):
        point_d2 = d2.gather(1, labels.unsqueeze(1)).squeeze(1)
        labels, reseeded = _reseed_empty_clusters(labels, point_d2, K, empty_cluster)
        n_reseeded += len(reseeded)

        new_centroids = _update_centroids(X, labels, K)
        distortion = total_distortion(X, new_centroids, labels)

        if distortion > prev_distortion:
            # worse than last round: keep the last accepted round and stop
            break

        centroids = new_centroids
        distortions.append(distortion)
        best_labels, best_centroids, prev_distortion = labels.clone(), centroids.clone(), distortion

        d2 = squared_distances(X, centroids)
        new_labels = torch.argmin(d2, dim=1)
        n_changed = int((new_labels != labels).sum().item())

        if callback is not None:
            callback(n_iter, distortion, n_changed)

        if n_changed == 0:
            converged = True
            break
        labels = new_labels

    # centroids are always the member means of the returned labels
    return KMeansResult(
        labels=best_labels,
        centroids=best_centroids,
        distortions=distortions,
        n_iter=n_iter,
        converged=converged,
        n_reseeded=n_reseeded,
    )
