# em_mixture/__main__.py
"""Fit a K-means-seeded Gaussian mixture to a CSV file.

    python -m em_mixture data.csv -k 3 --dimension 1 --centroids "0;5;10"
"""

from __future__ import annotations

import argparse
import sys
import warnings
from typing import List, Optional, Sequence

import torch

from ._errors import MixtureError, NonConvergenceWarning
from ._gmm_em import GaussianMixtureEM
from ._loader import load_csv


def parse_centroids(text: str) -> List[List[float]]:
    """'0,0;10,10' -> [[0.0, 0.0], [10.0, 10.0]] (points split by ';')."""
    try:
        return [[float(v) for v in point.split(",")] for point in text.split(";") if point.strip()]
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"bad centroid list {text!r}: {exc}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="em_mixture",
        description="Fit a Gaussian mixture with K-means initialization and EM",
    )
    parser.add_argument("data", type=str, help="CSV file, one point per record")
    parser.add_argument("-k", "--n-components", type=int, required=True, help="Number of mixture components")
    parser.add_argument("--dimension", type=int, default=None,
                        help="Use the first M fields of every record (default: all)")
    parser.add_argument("--centroids", type=parse_centroids, default=None,
                        help="Initial K-means centroids, points separated by ';' and coordinates by ','")
    parser.add_argument("--tol", type=float, default=1e-6, help="Log-likelihood change threshold")
    parser.add_argument("--relative-tol", action="store_true", help="Treat --tol as a relative change")
    parser.add_argument("--max-iter", type=int, default=100, help="Maximum EM iterations")
    parser.add_argument("--kmeans-max-iter", type=int, default=100, help="Maximum K-means rounds")
    parser.add_argument("--reg-covar", type=float, default=0.0, help="Added to every covariance diagonal")
    parser.add_argument("--recovery", choices=("regularize", "reseed"), default=None,
                        help="Recovery policy for singular / empty components (default: abort)")
    parser.add_argument("--seed", type=int, default=None, help="Seed for k-means++ seeding")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Print EM progress (-vv adds K-means rounds)")
    return parser


def _fmt(values: torch.Tensor) -> str:
    return "(" + ", ".join(f"{v:.4f}" for v in values.tolist()) + ")"


def report(model: GaussianMixtureEM) -> None:
    km = model.kmeans_
    if km is not None:
        print("  Final clusters")
        counts = km.member_counts.tolist()
        for k in range(km.n_clusters):
            print(f"   cluster {k}:       members: {counts[k]:8d}, centroid{_fmt(km.centroids[k])}")
        status = "converged" if km.converged else "stopped"
        print(f"  k-means {status} after {km.n_iter} rounds\n")

    print("  Mixture components")
    for k in range(model.n_components):
        comp = model.params.component(k)
        print(f"   component {k}: weight {comp.weight:.4f}, mean{_fmt(comp.mean)}, "
              f"variance{_fmt(torch.diagonal(comp.covariance))}")
    status = "converged" if model.converged_ else "NOT converged"
    print(f"\n  log-likelihood: {model.log_likelihood_:.6f}  ({status} after {model.n_iter_} iterations)")
    if model.n_recoveries_:
        print(f"  recovered components: {model.n_recoveries_}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        X = load_csv(args.data, dimension=args.dimension)
        model = GaussianMixtureEM(
            n_components=args.n_components,
            tol=args.tol,
            tol_type="relative" if args.relative_tol else "absolute",
            max_iter=args.max_iter,
            kmeans_max_iter=args.kmeans_max_iter,
            reg_covar=args.reg_covar,
            recovery=args.recovery,
            means_init=args.centroids,
            random_state=args.seed,
            verbose=args.verbose,
        )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", NonConvergenceWarning)
            model.fit(X)
    except (ValueError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except MixtureError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    report(model)
    return 0


if __name__ == "__main__":
    sys.exit(main())
