# em_mixture/_linalg.py
"""Dense linear algebra used by the K-means and EM code, over torch.linalg.

Every operation checks its shapes up front and raises SizeMismatchError with
the offending dimensions. Operations that need an invertible matrix raise
SingularityError instead of returning inf/nan.

Covariances are stored full, one (M, M) matrix per component:
- covariances:         (K, M, M)
- precisions_cholesky: (K, M, M) lower-triangular, precision = P^T P

For a covariance cov = L L^T (L lower), precision_chol = inv(L), so
inv(cov) = precision_chol^T precision_chol and
log|cov| = -2 * sum(log(diag(precision_chol))).

The EM code itself only needs the batched Cholesky path and the covariance
estimators. The single-matrix operations (add, subtract, dot, inverse,
determinant, log_determinant) complete the provider interface for callers
working with individual components.
"""

from __future__ import annotations

from typing import Optional, Sequence

import torch

from ._errors import DegenerateComponentError, SingularityError, SizeMismatchError


# ---------------------------
# Shape checks
# ---------------------------

def check_shape(name: str, tensor: torch.Tensor, expected: Sequence[Optional[int]]) -> None:
    """Raise SizeMismatchError unless tensor.shape matches expected (None = any)."""
    shape = tuple(tensor.shape)
    if len(shape) != len(expected) or any(
        e is not None and s != e for s, e in zip(shape, expected)
    ):
        want = "(" + ", ".join("*" if e is None else str(e) for e in expected) + ")"
        raise SizeMismatchError(f"{name} must have shape {want}, got {shape}")


def _check_square(name: str, mat: torch.Tensor) -> None:
    if mat.dim() not in (2, 3) or mat.shape[-1] != mat.shape[-2]:
        raise SizeMismatchError(
            f"{name} must be (M,M) or (K,M,M), got {tuple(mat.shape)}"
        )


def _first_failure(info: torch.Tensor) -> Optional[int]:
    if info.dim() == 0:
        return None
    bad = torch.nonzero(info != 0)
    return int(bad[0, 0].item()) if bad.numel() else None


# ---------------------------
# Elementwise / products
# ---------------------------

def add(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    if a.shape != b.shape:
        raise SizeMismatchError(f"cannot add {tuple(a.shape)} and {tuple(b.shape)}")
    return a + b


def subtract(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    if a.shape != b.shape:
        raise SizeMismatchError(f"cannot subtract {tuple(b.shape)} from {tuple(a.shape)}")
    return a - b


def dot(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    """Vector dot product, matrix-vector or matrix-matrix product."""
    if a.dim() == 0 or b.dim() == 0 or a.dim() > 2 or b.dim() > 2:
        raise SizeMismatchError(
            f"dot expects vectors or matrices, got {tuple(a.shape)} and {tuple(b.shape)}"
        )
    inner_a = a.shape[-1]
    inner_b = b.shape[0]
    if inner_a != inner_b:
        raise SizeMismatchError(
            f"inner dimensions differ: {tuple(a.shape)} . {tuple(b.shape)}"
        )
    return a @ b


def add_reg_diag(cov: torch.Tensor, reg_covar: float) -> torch.Tensor:
    """Add reg_covar to the diagonal (works for (M,M) or (K,M,M))."""
    _check_square("cov", cov)
    if reg_covar == 0.0:
        return cov
    eye = torch.eye(cov.shape[-1], device=cov.device, dtype=cov.dtype)
    return cov + reg_covar * eye


# ---------------------------
# Inverse / determinant
# ---------------------------

def inverse(mat: torch.Tensor) -> torch.Tensor:
    """Inverse of an (M,M) matrix or a (K,M,M) stack."""
    _check_square("mat", mat)
    inv, info = torch.linalg.inv_ex(mat)
    if bool((info != 0).any()):
        k = _first_failure(info)
        where = "" if k is None else f" (component {k})"
        raise SingularityError(f"matrix is singular{where}", component=k)
    if not bool(torch.isfinite(inv).all()):
        raise SingularityError("matrix is numerically singular", component=None)
    return inv


def determinant(mat: torch.Tensor) -> torch.Tensor:
    _check_square("mat", mat)
    return torch.linalg.det(mat)


def log_determinant(mat: torch.Tensor) -> torch.Tensor:
    """log|mat|; raises SingularityError if the determinant is not positive."""
    _check_square("mat", mat)
    sign, logabsdet = torch.linalg.slogdet(mat)
    bad = (sign <= 0) | ~torch.isfinite(logabsdet)
    if bool(bad.any()):
        k = None if bad.dim() == 0 else int(torch.nonzero(bad)[0, 0].item())
        raise SingularityError("determinant is not positive", component=k)
    return logabsdet


# ---------------------------
# Precision-Cholesky helpers
# ---------------------------

@torch.no_grad()
def compute_precisions_cholesky(cov: torch.Tensor) -> torch.Tensor:
    """Compute precisions_cholesky from a (K,M,M) covariance stack.

    Raises SingularityError naming the first component whose covariance is
    not positive definite.
    """
    _check_square("cov", cov)
    if cov.dim() == 2:
        return compute_precisions_cholesky(cov.unsqueeze(0)).squeeze(0)

    K, M, _ = cov.shape
    if not bool(torch.isfinite(cov).all()):
        raise SingularityError("covariance contains NaN/Inf")
    L, info = torch.linalg.cholesky_ex(cov)
    k = _first_failure(info)
    if k is not None:
        raise SingularityError(
            f"covariance of component {k} is not positive definite "
            f"(collapsed onto a lower-dimensional subspace)",
            component=k,
        )
    eye = torch.eye(M, device=cov.device, dtype=cov.dtype).expand(K, M, M)
    return torch.linalg.solve_triangular(L, eye, upper=False)


@torch.no_grad()
def compute_precisions(prec_chol: torch.Tensor) -> torch.Tensor:
    """Compute precisions (inverse covariances) from precisions_cholesky."""
    _check_square("prec_chol", prec_chol)
    return prec_chol.transpose(-1, -2) @ prec_chol


def log_det_cholesky(prec_chol: torch.Tensor) -> torch.Tensor:
    """0.5 * log|precision| = sum log diag(prec_chol); shape (K,)."""
    return torch.sum(torch.log(torch.diagonal(prec_chol, dim1=-2, dim2=-1)), dim=-1)


# ---------------------------
# Covariance estimation
# ---------------------------

def weighted_covariances(
    X: torch.Tensor,
    resp: torch.Tensor,
    means: torch.Tensor,
    nk: torch.Tensor,
) -> torch.Tensor:
    """Responsibility-weighted scatter for every component; shape (K,M,M).

    cov[k] = sum_n resp[n,k] (x_n - mu_k)(x_n - mu_k)^T / nk[k]
    """
    N, M = X.shape
    check_shape("resp", resp, (N, None))
    K = resp.shape[1]
    check_shape("means", means, (K, M))
    check_shape("nk", nk, (K,))

    diff = X.unsqueeze(1) - means.unsqueeze(0)  # (N,K,M)
    cov_sum = torch.einsum("nk,nkd,nke->kde", resp, diff, diff)  # (K,M,M)
    cov = cov_sum / nk.view(K, 1, 1)
    # symmetrize round-off
    return 0.5 * (cov + cov.transpose(-1, -2))


def weighted_covariance(
    X: torch.Tensor,
    weights: torch.Tensor,
    mean: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """Weighted covariance of the rows of X, normalized by the weight mass."""
    N, M = X.shape
    check_shape("weights", weights, (N,))
    mass = weights.sum()
    if not bool(mass > 0):
        raise DegenerateComponentError("weighted covariance of zero total weight")
    if mean is None:
        mean = (weights @ X) / mass
    check_shape("mean", mean, (M,))
    return weighted_covariances(X, weights.unsqueeze(1), mean.unsqueeze(0), mass.view(1))[0]


def pooled_covariance(X: torch.Tensor) -> torch.Tensor:
    """Biased (1/N) sample covariance of the whole data set; shape (M,M)."""
    return weighted_covariance(X, torch.ones(X.shape[0], device=X.device, dtype=X.dtype))
