# tests/conftest.py
import numpy as np
import pytest
import torch


class RandomData:
    """Generate random full-covariance GMM data for testing."""
    def __init__(self, rng, n_samples=200, n_components=2, n_features=2, spread=50.0):
        self.n_samples = int(n_samples)
        self.n_components = int(n_components)
        self.n_features = int(n_features)

        # weights on simplex, kept away from zero
        w = 0.5 + rng.rand(self.n_components)
        self.weights = w / w.sum()

        # means spread out
        self.means = rng.rand(self.n_components, self.n_features) * spread

        self.cov = self._make_covariance(rng)  # (K,M,M)
        self.labels, self.X = self._generate_samples(rng)

    def _make_covariance(self, rng):
        K, D = self.n_components, self.n_features
        covs = []
        for _ in range(K):
            A = rng.randn(D, D)
            C = A @ A.T
            C /= (np.trace(C) / D)
            C += 0.1 * np.eye(D)
            covs.append(C)
        return np.stack(covs, axis=0)

    def _generate_samples(self, rng):
        L = np.linalg.cholesky(self.cov)  # (K,D,D)
        labels = rng.choice(self.n_components, size=self.n_samples, p=self.weights)
        z = rng.randn(self.n_samples, self.n_features)
        X = self.means[labels] + np.einsum("nij,nj->ni", L[labels], z)
        return labels, X

    def tensors(self):
        return (
            torch.from_numpy(self.X),
            torch.from_numpy(self.means),
            torch.from_numpy(self.cov),
            torch.from_numpy(self.weights),
        )


@pytest.fixture
def random_data():
    def make(seed=0, **kwargs):
        return RandomData(np.random.RandomState(seed), **kwargs)
    return make


@pytest.fixture
def two_blobs():
    """50 points tightly around (0,0) and 50 around (10,10)."""
    rng = np.random.RandomState(7)
    a = rng.randn(50, 2) * 0.5
    b = rng.randn(50, 2) * 0.5 + 10.0
    return torch.from_numpy(np.vstack([a, b]))
