# em_mixture/_gmm_em.py
"""Gaussian Mixture Model (GMM) EM in PyTorch, seeded by K-means.

Every component carries a full (M, M) covariance. The E-step evaluates
log-densities through the precision Cholesky factor (sklearn-style), which
supplies both the inverse covariance and the log-determinant without forming
either explicitly.

Phases are pure functions returning typed records:
- expectation_step:   params -> EStepResult (responsibilities, log-likelihood)
- maximization_step:  responsibilities -> MStepResult (new MixtureParams)

GaussianMixtureEM drives them:
- K-means (caller centroids, or k-means++) gives the initial means
- initial weights and covariances come from one M-step over the K-means
  assignment; singular clusters start from the pooled data covariance
- E-step / M-step alternate until |L_t - L_{t-1}| < tol or max_iter M-steps

The log-likelihood L = sum_n log sum_k w_k N(x_n | mu_k, Sigma_k) is a SUM
over points. Without recovery events it never decreases.

Degenerate components (no responsibility mass) and singular covariances raise
unless a recovery policy is configured:
- recovery=None:         raise DegenerateComponentError / SingularityError
- recovery='regularize': add a growing diagonal jitter; keep empty components
                         at their previous parameters with a lifted weight
- recovery='reseed':     restart the component at the worst-explained point
                         with the pooled data covariance

Exposed sklearn-like attributes after fit:
- weights_, means_, covariances_, precisions_cholesky_, precisions_
- resp_, log_likelihoods_ (trace), log_likelihood_
- converged_, n_iter_, n_recoveries_, kmeans_
"""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import torch

from ._errors import (
    DegenerateComponentError,
    MalformedInputError,
    NonConvergenceWarning,
    SingularityError,
)
from ._kmeans import (
    KMeansResult,
    check_n_clusters,
    check_points,
    kmeans,
    kmeans_plusplus_centroids,
)
from ._linalg import (
    add_reg_diag,
    check_shape,
    compute_precisions,
    compute_precisions_cholesky,
    log_det_cholesky,
    pooled_covariance,
    weighted_covariances,
)

EMCallback = Callable[[int, float, float], None]

_RECOVERY_POLICIES = (None, "regularize", "reseed")
_JITTER_START = 1e-6
_JITTER_TRIES = 10
_WEIGHT_FLOOR = 1e-9


# ---------------------------
# Utilities
# ---------------------------

def _check_recovery(recovery: Optional[str]) -> None:
    if recovery not in _RECOVERY_POLICIES:
        raise ValueError(f"recovery must be one of {_RECOVERY_POLICIES}, got {recovery!r}")


def _nk_eps(dtype: torch.dtype) -> float:
    """10 * machine epsilon for dtype."""
    return float(10.0 * torch.finfo(dtype).eps)


def _safe_log(x: torch.Tensor) -> torch.Tensor:
    tiny = torch.finfo(x.dtype).tiny
    return torch.log(x.clamp_min(tiny))


def _is_positive_definite(cov: torch.Tensor) -> bool:
    _, info = torch.linalg.cholesky_ex(cov)
    return bool((info == 0).all())


def _data_scale(X: torch.Tensor) -> float:
    """Mean per-dimension variance of X, or 1.0 when X has no spread."""
    scale = float(X.var(dim=0, unbiased=False).mean().item())
    return scale if scale > 0.0 else 1.0


# ---------------------------
# Parameter records
# ---------------------------

@dataclass
class Component:
    mean: torch.Tensor        # (M,)
    covariance: torch.Tensor  # (M, M)
    weight: float


@dataclass
class MixtureParams:
    weights: torch.Tensor              # (K,)
    means: torch.Tensor                # (K, M)
    covariances: torch.Tensor          # (K, M, M)
    precisions_cholesky: torch.Tensor  # (K, M, M)

    @classmethod
    def from_covariances(
        cls,
        weights: torch.Tensor,
        means: torch.Tensor,
        covariances: torch.Tensor,
    ) -> "MixtureParams":
        K, M = means.shape
        check_shape("weights", weights, (K,))
        check_shape("covariances", covariances, (K, M, M))
        prec_chol = compute_precisions_cholesky(covariances)
        return cls(weights=weights, means=means, covariances=covariances, precisions_cholesky=prec_chol)

    @property
    def n_components(self) -> int:
        return int(self.means.shape[0])

    @property
    def n_features(self) -> int:
        return int(self.means.shape[1])

    def component(self, k: int) -> Component:
        return Component(
            mean=self.means[k],
            covariance=self.covariances[k],
            weight=float(self.weights[k].item()),
        )


@dataclass
class EStepResult:
    resp: torch.Tensor           # (N, K) responsibilities, rows sum to 1
    log_resp: torch.Tensor       # (N, K)
    log_prob_norm: torch.Tensor  # (N,) log p(x_n)
    log_likelihood: float        # sum_n log p(x_n)


@dataclass
class MStepResult:
    params: MixtureParams
    recovered: List[int] = field(default_factory=list)


@dataclass
class EMResult:
    weights: torch.Tensor
    means: torch.Tensor
    covariances: torch.Tensor
    resp: torch.Tensor
    log_likelihoods: List[float]
    converged: bool
    n_iter: int
    kmeans: Optional[KMeansResult] = None
    n_recoveries: int = 0


# ---------------------------
# E-step
# ---------------------------

def estimate_log_gaussian_prob(
    X: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
) -> torch.Tensor:
    """log N(x_n | mu_k, Sigma_k) for all n, k using precision_cholesky (K,M,M lower)."""
    N, M = X.shape
    K = means.shape[0]
    check_shape("means", means, (K, M))
    check_shape("precisions_cholesky", precisions_chol, (K, M, M))

    diff = X.unsqueeze(1) - means.unsqueeze(0)  # (N,K,M)

    # y[n,k,:] = diff[n,k,:] @ P[k]^T
    y = torch.einsum("nkd,ked->nke", diff, precisions_chol)  # (N,K,M)
    mahal = torch.sum(y * y, dim=2)  # (N,K)

    return -0.5 * (M * math.log(2 * math.pi) + mahal) + log_det_cholesky(precisions_chol).unsqueeze(0)


@torch.no_grad()
def expectation_step(X: torch.Tensor, params: MixtureParams) -> EStepResult:
    """Responsibilities and total log-likelihood under params (read-only)."""
    log_prob = estimate_log_gaussian_prob(X, params.means, params.precisions_cholesky)  # (N,K)
    weighted_log_prob = log_prob + _safe_log(params.weights).unsqueeze(0)  # (N,K)

    log_prob_norm = torch.logsumexp(weighted_log_prob, dim=1)  # (N,)
    if not bool(torch.isfinite(log_prob_norm).all()):
        raise DegenerateComponentError("log-likelihood is not finite; mixture parameters are degenerate")
    log_resp = weighted_log_prob - log_prob_norm.unsqueeze(1)  # (N,K)

    return EStepResult(
        resp=log_resp.exp(),
        log_resp=log_resp,
        log_prob_norm=log_prob_norm,
        log_likelihood=float(log_prob_norm.sum().item()),
    )


# ---------------------------
# M-step
# ---------------------------

def _reseed_order(X: torch.Tensor, log_prob_norm: Optional[torch.Tensor]) -> torch.Tensor:
    """Point indices from worst to best explained by the current mixture."""
    if log_prob_norm is not None:
        return torch.argsort(log_prob_norm)
    d2 = torch.sum((X - X.mean(dim=0, keepdim=True)) ** 2, dim=1)
    return torch.argsort(d2, descending=True)


def _regularize(cov: torch.Tensor, start: float, component: int) -> torch.Tensor:
    eye = torch.eye(cov.shape[-1], device=cov.device, dtype=cov.dtype)
    jitter = start
    for _ in range(_JITTER_TRIES):
        candidate = cov + jitter * eye
        if _is_positive_definite(candidate):
            return candidate
        jitter *= 10.0
    raise SingularityError(
        f"covariance of component {component} stayed singular after regularization (last jitter {jitter / 10.0:.1e})",
        component=component,
    )


@torch.no_grad()
def maximization_step(
    X: torch.Tensor,
    resp: torch.Tensor,
    reg_covar: float = 0.0,
    recovery: Optional[str] = None,
    previous: Optional[MixtureParams] = None,
    log_prob_norm: Optional[torch.Tensor] = None,
) -> MStepResult:
    """Re-estimate weights, means and covariances from responsibilities."""
    _check_recovery(recovery)
    N, M = X.shape
    check_shape("resp", resp, (N, None))
    K = resp.shape[1]
    if previous is not None:
        check_shape("previous means", previous.means, (K, M))

    nk = resp.sum(dim=0)  # (K,)
    degenerate = nk < _nk_eps(resp.dtype) * N
    safe_nk = torch.where(degenerate, torch.ones_like(nk), nk)

    means = (resp.T @ X) / safe_nk.unsqueeze(1)  # (K,M)
    cov = add_reg_diag(weighted_covariances(X, resp, means, safe_nk), reg_covar)  # (K,M,M)
    weights = nk / nk.sum()

    recovered: List[int] = []
    reseed_order = None
    n_reseeded = 0

    def reseed(k: int) -> None:
        nonlocal reseed_order, n_reseeded
        if reseed_order is None:
            reseed_order = _reseed_order(X, log_prob_norm)
        idx = reseed_order[n_reseeded % N]
        n_reseeded += 1
        pooled = add_reg_diag(pooled_covariance(X), reg_covar)
        if not _is_positive_definite(pooled):
            raise SingularityError(
                f"cannot reseed component {k}: pooled data covariance is singular",
                component=k,
            )
        means[k] = X[idx]
        cov[k] = pooled
        weights[k] = 1.0 / N

    # components without responsibility mass
    for k in torch.nonzero(degenerate).flatten().tolist():
        if recovery is None:
            raise DegenerateComponentError(
                f"component {k} lost its responsibility mass (n_k={float(nk[k]):.3e})",
                component=k,
            )
        if recovery == "regularize" and previous is not None:
            means[k] = previous.means[k]
            cov[k] = previous.covariances[k]
        else:
            reseed(k)
        recovered.append(k)

    if recovery == "regularize" and bool(degenerate.any()):
        # lift the priors so no component sits at zero weight
        weights = (weights + _WEIGHT_FLOOR) / (1.0 + K * _WEIGHT_FLOOR)

    # singular covariances: each component is repaired at most once
    jitter_start = max(reg_covar, _JITTER_START * _data_scale(X))
    repaired: List[int] = []
    while True:
        try:
            prec_chol = compute_precisions_cholesky(cov)
            break
        except SingularityError as exc:
            k = exc.component
            if recovery is None or k is None or k in repaired:
                raise
            if recovery == "regularize":
                cov[k] = _regularize(cov[k], jitter_start, k)
            else:
                reseed(k)
            repaired.append(k)
            if k not in recovered:
                recovered.append(k)

    weights = weights / weights.sum()

    if not (bool(torch.isfinite(means).all()) and bool(torch.isfinite(weights).all())):
        raise DegenerateComponentError("M-step produced non-finite parameters")

    params = MixtureParams(weights=weights, means=means, covariances=cov, precisions_cholesky=prec_chol)
    return MStepResult(params=params, recovered=sorted(recovered))


# ---------------------------
# Model wrapper
# ---------------------------

class GaussianMixtureEM:
    """Sklearn-shaped Gaussian mixture fitted by K-means-seeded EM."""

    def __init__(
        self,
        n_components: int,
        tol: float = 1e-6,
        tol_type: str = "absolute",
        max_iter: int = 100,
        kmeans_max_iter: int = 100,
        reg_covar: float = 0.0,
        recovery: Optional[str] = None,
        empty_cluster: str = "reseed",
        means_init=None,
        weights_init=None,
        covariances_init=None,
        warm_start: bool = False,
        random_state=None,
        device=None,
        dtype: Optional[torch.dtype] = torch.float64,
        callback: Optional[EMCallback] = None,
        verbose: int = 0,
    ) -> None:
        if not isinstance(n_components, int) or n_components <= 0:
            raise ValueError("n_components must be a positive integer")
        if tol < 0:
            raise ValueError("tol must be non-negative")
        if tol_type not in ("absolute", "relative"):
            raise ValueError("tol_type must be 'absolute' or 'relative'")
        if max_iter <= 0:
            raise ValueError("max_iter must be positive")
        if kmeans_max_iter <= 0:
            raise ValueError("kmeans_max_iter must be positive")
        if reg_covar < 0:
            raise ValueError("reg_covar must be non-negative")
        _check_recovery(recovery)
        if empty_cluster not in ("reseed", "raise"):
            raise ValueError("empty_cluster must be 'reseed' or 'raise'")

        self.n_components = n_components
        self.tol = tol
        self.tol_type = tol_type
        self.max_iter = max_iter
        self.kmeans_max_iter = kmeans_max_iter
        self.reg_covar = reg_covar
        self.recovery = recovery
        self.empty_cluster = empty_cluster
        self.warm_start = warm_start
        self.random_state = random_state
        self.device = device
        self.dtype = dtype
        self.callback = callback
        self.verbose = verbose

        # User init
        self.means_init = means_init
        self.weights_init = weights_init
        self.covariances_init = covariances_init

        # sklearn-like fitted attributes
        self.weights_: Optional[torch.Tensor] = None
        self.means_: Optional[torch.Tensor] = None
        self.covariances_: Optional[torch.Tensor] = None
        self.precisions_cholesky_: Optional[torch.Tensor] = None
        self.precisions_: Optional[torch.Tensor] = None
        self.resp_: Optional[torch.Tensor] = None

        self.converged_: bool = False
        self.n_iter_: int = 0
        self.n_recoveries_: int = 0
        self.log_likelihood_: float = float("-inf")
        self.log_likelihoods_: List[float] = []
        self.kmeans_: Optional[KMeansResult] = None

        self._params: Optional[MixtureParams] = None

    def _to_device_dtype(self, X) -> torch.Tensor:
        return check_points(X, dtype=self.dtype, device=self.device)

    def _as_param(self, value, like: torch.Tensor) -> torch.Tensor:
        return torch.as_tensor(value, device=like.device, dtype=like.dtype)

    # -----------------------
    # Diagnostics
    # -----------------------

    def _em_observer(self) -> Optional[EMCallback]:
        if not self.verbose and self.callback is None:
            return None

        def observe(iteration: int, log_likelihood: float, delta: float) -> None:
            if self.verbose:
                print(f"Iteration {iteration:3d}: log-likelihood = {log_likelihood:14.6f} (delta = {delta:+.6e})")
            if self.callback is not None:
                self.callback(iteration, log_likelihood, delta)

        return observe

    def _kmeans_observer(self):
        if self.verbose < 2:
            return None

        def observe(round_: int, distortion: float, n_changed: int) -> None:
            print(f"  k-means round {round_:3d}: distortion = {distortion:14.6f}  changed = {n_changed}")

        return observe

    # -----------------------
    # Initialization
    # -----------------------

    def _fallback_covariance(self, X: torch.Tensor) -> torch.Tensor:
        """Pooled data covariance, or an isotropic one of the same scale.

        The isotropic form is only used when the pooled covariance is itself
        singular (e.g. duplicated points), so the collapse surfaces in the
        first M-step.
        """
        M = X.shape[1]
        cov = add_reg_diag(pooled_covariance(X), self.reg_covar)
        if not _is_positive_definite(cov):
            cov = _data_scale(X) * torch.eye(M, device=X.device, dtype=X.dtype)
        return cov

    def _params_from_labels(self, X: torch.Tensor, labels: torch.Tensor, means: torch.Tensor):
        """One M-step over the hard K-means assignment.

        Clusters whose scatter is singular start from the fallback covariance.
        """
        K = self.n_components
        resp = torch.nn.functional.one_hot(labels, K).to(X.dtype)  # (N,K)
        nk = resp.sum(dim=0)
        weights = nk / nk.sum()

        cov = add_reg_diag(weighted_covariances(X, resp, means, nk.clamp_min(1.0)), self.reg_covar)
        fallback = None
        for k in range(K):
            if nk[k] > 0 and _is_positive_definite(cov[k]):
                continue
            if fallback is None:
                fallback = self._fallback_covariance(X)
            cov[k] = fallback
        return weights, cov

    @torch.no_grad()
    def _initialize(self, X: torch.Tensor) -> MixtureParams:
        N, M = X.shape
        K = self.n_components

        if self.means_init is not None:
            centroids = self._as_param(self.means_init, X)
            if centroids.dim() == 1 and M == 1:
                centroids = centroids.unsqueeze(1)
            check_shape("means_init", centroids, (K, M))
        else:
            centroids = kmeans_plusplus_centroids(X, K, random_state=self.random_state)

        if self.verbose:
            print(f"Running k-means: N={N}, M={M}, K={K}")
        self.kmeans_ = kmeans(
            X,
            centroids,
            max_iter=self.kmeans_max_iter,
            empty_cluster=self.empty_cluster,
            callback=self._kmeans_observer(),
        )
        means = self.kmeans_.centroids.clone()
        weights, cov = self._params_from_labels(X, self.kmeans_.labels, means)

        if self.weights_init is not None:
            weights = self._as_param(self.weights_init, X)
            check_shape("weights_init", weights, (K,))
            if bool((weights <= 0).any()):
                raise MalformedInputError("weights_init must be strictly positive")
            weights = weights / weights.sum()

        if self.covariances_init is not None:
            cov = self._as_param(self.covariances_init, X)
            check_shape("covariances_init", cov, (K, M, M))

        return MixtureParams.from_covariances(weights, means, cov)

    # -----------------------
    # Public API
    # -----------------------

    def _has_converged(self, previous: float, current: float) -> bool:
        change = abs(current - previous)
        if self.tol_type == "relative":
            return change < self.tol * abs(previous)
        return change < self.tol

    @torch.no_grad()
    def fit(self, X) -> "GaussianMixtureEM":
        X = self._to_device_dtype(X)
        N, M = X.shape
        check_n_clusters(self.n_components, N)

        if self.warm_start and self._params is not None:
            params = self._params
            check_shape("data", X, (None, params.n_features))
            params = MixtureParams(
                weights=params.weights.to(X.device, X.dtype),
                means=params.means.to(X.device, X.dtype),
                covariances=params.covariances.to(X.device, X.dtype),
                precisions_cholesky=params.precisions_cholesky.to(X.device, X.dtype),
            )
        else:
            params = self._initialize(X)

        observer = self._em_observer()
        history: List[float] = []
        n_recoveries = 0
        converged = False

        e_step = expectation_step(X, params)
        history.append(e_step.log_likelihood)
        if self.verbose:
            print(f"Initial log-likelihood = {history[-1]:.6f}")

        n_iter = 0
        for n_iter in range(1, self.max_iter + 1):
            m_step = maximization_step(
                X,
                e_step.resp,
                reg_covar=self.reg_covar,
                recovery=self.recovery,
                previous=params,
                log_prob_norm=e_step.log_prob_norm,
            )
            params = m_step.params
            n_recoveries += len(m_step.recovered)
            if m_step.recovered and self.verbose:
                print(f"  recovered components {m_step.recovered} ({self.recovery})")

            e_step = expectation_step(X, params)
            history.append(e_step.log_likelihood)

            if observer is not None:
                observer(n_iter, history[-1], history[-1] - history[-2])

            if self._has_converged(history[-2], history[-1]):
                converged = True
                break

        if converged:
            if self.verbose:
                print(f"Converged at iter {n_iter}: LL={history[-1]:.6f}")
        else:
            warnings.warn(
                f"EM did not converge in {self.max_iter} iterations "
                f"(last change {history[-1] - history[-2]:+.3e}, tol={self.tol})",
                NonConvergenceWarning,
                stacklevel=2,
            )

        self._params = params

        self.weights_ = params.weights
        self.means_ = params.means
        self.covariances_ = params.covariances
        self.precisions_cholesky_ = params.precisions_cholesky
        self.precisions_ = compute_precisions(params.precisions_cholesky)
        self.resp_ = e_step.resp

        self.log_likelihoods_ = history
        self.log_likelihood_ = history[-1]
        self.n_iter_ = n_iter
        self.converged_ = converged
        self.n_recoveries_ = n_recoveries

        return self

    def _check_fitted(self) -> MixtureParams:
        if self._params is None:
            raise RuntimeError("Model is not fitted yet.")
        return self._params

    @property
    def params(self) -> MixtureParams:
        return self._check_fitted()

    def result(self) -> EMResult:
        self._check_fitted()
        return EMResult(
            weights=self.weights_,
            means=self.means_,
            covariances=self.covariances_,
            resp=self.resp_,
            log_likelihoods=list(self.log_likelihoods_),
            converged=self.converged_,
            n_iter=self.n_iter_,
            kmeans=self.kmeans_,
            n_recoveries=self.n_recoveries_,
        )

    def _check_features(self, X) -> torch.Tensor:
        p = self._check_fitted()
        X = check_points(X, dtype=p.means.dtype, device=p.means.device)
        check_shape("X", X, (None, p.n_features))
        return X

    @torch.no_grad()
    def score_samples(self, X) -> torch.Tensor:
        """Per-sample log-likelihood (N,)."""
        return expectation_step(self._check_features(X), self._params).log_prob_norm

    @torch.no_grad()
    def score(self, X) -> float:
        """Mean log-likelihood per sample."""
        return float(self.score_samples(X).mean().item())

    @torch.no_grad()
    def predict_proba(self, X) -> torch.Tensor:
        """Posterior responsibilities (N,K)."""
        return expectation_step(self._check_features(X), self._params).resp

    @torch.no_grad()
    def predict(self, X) -> torch.Tensor:
        return torch.argmax(self.predict_proba(X), dim=1)

    @torch.no_grad()
    def sample(self, n_samples: int, seed: Optional[int] = None) -> Tuple[torch.Tensor, torch.Tensor]:
        """Sample from the mixture.

        Returns:
          X: (n_samples, M)
          labels: (n_samples,)
        """
        p = self._check_fitted()
        if n_samples <= 0:
            raise ValueError("n_samples must be positive")

        gen = torch.Generator(device=p.means.device)
        if seed is not None:
            gen.manual_seed(seed)
        else:
            gen.seed()

        labels = torch.multinomial(p.weights, n_samples, replacement=True, generator=gen)
        L = torch.linalg.cholesky(p.covariances)  # (K,M,M)
        z = torch.randn((n_samples, p.n_features), generator=gen, device=p.means.device, dtype=p.means.dtype)
        X_out = p.means[labels] + torch.einsum("nd,ned->ne", z, L[labels])
        return X_out, labels

    # ---- Display ----
    @staticmethod
    def _format_component(idx: int, comp: Component) -> str:
        mean = ", ".join(f"{v:.3f}" for v in comp.mean.tolist())
        var = ", ".join(f"{v:.3f}" for v in torch.diagonal(comp.covariance).tolist())
        return f"  ├─ ({idx}) w={comp.weight:0.3f}  mean=[{mean}]  var=[{var}]"

    def __repr__(self) -> str:
        header = f"{self.__class__.__name__}(n_components={self.n_components})"
        if self._params is None:
            return header + "  [not fitted]"
        lines = [self._format_component(k, self._params.component(k)) for k in range(self.n_components)]
        lines[-1] = lines[-1].replace("├─", "└─", 1)
        return "\n".join([header, *lines])
