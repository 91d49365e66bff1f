"""
Conditional inference regression tree.

Recursive partitioning in which the splitting variable is chosen by a test of
independence between each covariate and the response, and a node is split
only when the Bonferroni-adjusted test is significant (Hothorn, Hornik and
Zeileis, 2006).

For a numeric covariate x and response z the quadratic form of the linear
statistic sum(x * z), standardized by its conditional permutation moments,
reduces to (n - 1) * corr(x, z)**2 and is compared with a chi-squared
distribution on one degree of freedom. With m covariates the adjusted
p-value of covariate j is 1 - (1 - p_j) ** m.

The node criterion is held on a log scale, ``score = -log(p_adj)``, so that
strong associations whose p-values underflow double precision stay ordered.
A node is split when the largest score with an admissible cut point exceeds
``min_score``. The classical ``mincriterion = 1 - p_adj`` is
``mincriterion_from_score(score)``.
"""

from typing import List, Optional

import numpy as np
from scipy import stats

# below this log p-value, 1 - (1 - p) ** m equals m * p to double precision
_LOG_P_SMALL = -20.0

DEFAULT_MIN_SCORE = float(-np.log(0.05))


class _Node:
    def __init__(self, n, value):
        self.n = n
        self.value = value
        self.feature = None
        self.threshold = None
        self.criterion = None
        self.left = None
        self.right = None

    @property
    def is_leaf(self):
        return self.left is None


def score_from_mincriterion(mincriterion: float) -> float:
    """Score equivalent of ``mincriterion = 1 - p_adj``."""
    if not 0 <= mincriterion < 1:
        raise ValueError(f"mincriterion must be in [0, 1), got {mincriterion!r}")
    return float(-np.log1p(-mincriterion))


def mincriterion_from_score(score: float) -> float:
    """``1 - p_adj`` for a score ``-log(p_adj)``; rounds to 1 for large scores."""
    return float(-np.expm1(-score))


def _log_adjusted(logp: np.ndarray, m: int) -> np.ndarray:
    """log(1 - (1 - p) ** m) computed from log(p)."""
    small = logp < _LOG_P_SMALL
    out = np.empty_like(logp)
    out[small] = np.log(m) + logp[small]
    p = np.exp(logp[~small])
    with np.errstate(divide="ignore"):
        out[~small] = np.log(-np.expm1(m * np.log1p(-np.minimum(p, 1.0))))
    return np.minimum(out, 0.0)


def _criteria(X: np.ndarray, z: np.ndarray) -> np.ndarray:
    """Score -log(p_adj) for each column of X; 0 for untestable columns."""
    n, m = X.shape
    zc = z - z.mean()
    Xc = X - X.mean(axis=0)
    szz = zc @ zc
    sxx = np.einsum("ij,ij->j", Xc, Xc)
    sxz = Xc.T @ zc

    score = np.zeros(m)
    if n < 2 or szz <= 0:
        return score
    ok = sxx > 0
    if not ok.any():
        return score
    r2 = np.clip(sxz[ok] ** 2 / (sxx[ok] * szz), 0.0, 1.0)
    # chi-squared(1) upper tail through the normal tail, accurate far out
    logp = np.log(2.0) + stats.norm.logsf(np.sqrt((n - 1) * r2))
    score[ok] = -_log_adjusted(logp, m)
    return score


def _best_cut(x: np.ndarray, z: np.ndarray, minbucket: int):
    """
    Cut point maximizing the standardized two-sample statistic.

    Returns None when no cut leaves at least ``minbucket`` observations on
    each side.
    """
    n = len(z)
    order = np.argsort(x, kind="mergesort")
    xs = x[order]
    zs = z[order]

    n_left = np.arange(1, n)
    # positions where the next sorted value differs
    valid = (xs[1:] > xs[:-1]) & (n_left >= minbucket) & (n - n_left >= minbucket)
    if not valid.any():
        return None

    zbar = z.mean()
    vh = np.mean((z - zbar) ** 2)
    t = np.cumsum(zs)[:-1] - n_left * zbar
    var = vh * n_left * (n - n_left) / (n - 1)
    stat = np.full(n - 1, -np.inf)
    if vh > 0:
        stat[valid] = t[valid] ** 2 / var[valid]
    else:
        stat[valid] = 0.0
    i = int(np.argmax(stat))
    return (xs[i] + xs[i + 1]) / 2.0


class ConditionalInferenceTree:
    """
    Conditional inference tree for a continuous response.

    Parameters
    ----------
    min_score : float, default=-log(0.05)
        A node is split only if -log(adjusted p-value) exceeds this value.
        The default matches a significance level of 0.05.
    minsplit : int, default=20
        Minimum number of observations in a node for a split to be tried.
    minbucket : int, default=7
        Minimum number of observations in each child node.
    max_depth : int or None, default=None
        Maximum depth of the tree.

    Attributes
    ----------
    root_ : _Node
        Root of the fitted tree.
    n_splits_ : int
        Number of internal nodes.
    feature_names_ : list of str
    """

    def __init__(self, min_score=DEFAULT_MIN_SCORE, minsplit=20, minbucket=7,
                 max_depth=None):
        self.min_score = min_score
        self.minsplit = minsplit
        self.minbucket = minbucket
        self.max_depth = max_depth

        self.root_ = None
        self.n_splits_ = None
        self.feature_names_ = None

    def node_criterion(self, X: np.ndarray, z: np.ndarray) -> float:
        """
        Largest score over covariates that have an admissible cut.

        This is the smallest ``min_score`` at which a node holding (X, z)
        is left unsplit; 0.0 when the node cannot be split at all.
        """
        n = len(z)
        if n < self.minsplit or n < 2 * self.minbucket:
            return 0.0
        crit = _criteria(X, z)
        for j in np.argsort(-crit, kind="mergesort"):
            if crit[j] <= 0:
                break
            if _best_cut(X[:, j], z, self.minbucket) is not None:
                return float(crit[j])
        return 0.0

    def _grow(self, X, z, depth):
        node = _Node(len(z), float(z.mean()))
        if len(z) < self.minsplit or len(z) < 2 * self.minbucket:
            return node
        if self.max_depth is not None and depth >= self.max_depth:
            return node

        crit = _criteria(X, z)
        for j in np.argsort(-crit, kind="mergesort"):
            if not crit[j] > self.min_score:
                break
            cut = _best_cut(X[:, j], z, self.minbucket)
            if cut is None:
                continue
            left = X[:, j] <= cut
            node.feature = int(j)
            node.threshold = float(cut)
            node.criterion = float(crit[j])
            node.left = self._grow(X[left], z[left], depth + 1)
            node.right = self._grow(X[~left], z[~left], depth + 1)
            break
        return node

    def fit(self, X, z, feature_names: Optional[List[str]] = None):
        X = np.asarray(X, dtype=float)
        z = np.asarray(z, dtype=float)
        if X.ndim != 2 or X.shape[0] != len(z):
            raise ValueError("X must be 2-dimensional with one row per response")
        self.feature_names_ = (
            list(feature_names)
            if feature_names is not None
            else [f"x{j}" for j in range(X.shape[1])]
        )
        self.root_ = self._grow(X, z, 0)
        self.n_splits_ = self._count_splits(self.root_)
        return self

    def _count_splits(self, node):
        if node.is_leaf:
            return 0
        return 1 + self._count_splits(node.left) + self._count_splits(node.right)

    def predict(self, X) -> np.ndarray:
        if self.root_ is None:
            raise ValueError("Model must be fitted first")
        X = np.asarray(X, dtype=float)
        out = np.empty(len(X))
        for i, row in enumerate(X):
            node = self.root_
            while not node.is_leaf:
                node = node.left if row[node.feature] <= node.threshold else node.right
            out[i] = node.value
        return out

    def export_text(self, digits: int = 4) -> str:
        """Indented text rendering of the fitted tree."""
        if self.root_ is None:
            raise ValueError("Model must be fitted first")
        lines = []

        def walk(node, indent):
            pad = "|   " * indent
            if node.is_leaf:
                lines.append(f"{pad}[n = {node.n}] value: {node.value:.{digits}g}")
                return
            name = self.feature_names_[node.feature]
            thr = f"{node.threshold:.{digits}g}"
            pval = f"{np.exp(-node.criterion):.{digits}g}"
            lines.append(f"{pad}{name} <= {thr} (p = {pval})")
            walk(node.left, indent + 1)
            lines.append(f"{pad}{name} >  {thr}")
            walk(node.right, indent + 1)

        walk(self.root_, 0)
        return "\n".join(lines)

    def __str__(self):
        if self.root_ is None:
            return "ConditionalInferenceTree (not fitted)"
        return self.export_text()
