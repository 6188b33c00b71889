# cca.py
import logging
from collections import defaultdict
from collections.abc import Mapping

import numpy as np

from svd import SparseSVDSolver


def _dense(values, size):
    """Turn a {index: value} mapping or a sequence into a float array of `size`."""
    array = np.zeros(size, dtype=np.float64)
    if isinstance(values, Mapping):
        for index, value in values.items():
            array[index] = value
    else:
        values = np.asarray(values, dtype=np.float64)
        array[:len(values)] = values
    return array


def _max_index(values):
    if isinstance(values, Mapping):
        return max(values, default=-1)
    return len(values) - 1


class SparseCCASolver:
    """
    CCA between two views given their cross-covariance and variances.

    The cross-covariance is a column map {y: {x: value}}. It is normalized into
    the correlation matrix

        M[x][y] = Cxy[x][y] / sqrt((var_x[x] + smoothing) * (var_y[y] + smoothing))

    whose top singular values are the canonical correlations. Entries with a
    zero denominator carry no signal and are dropped.
    """

    def __init__(self, cca_dim, smoothing_term=0.0, max_iterations=None):
        if cca_dim < 1:
            raise ValueError(f"CCA dimension must be at least 1, got {cca_dim}")
        if smoothing_term < 0:
            raise ValueError(f"Smoothing term must be non-negative, got {smoothing_term}")
        self.cca_dim = cca_dim
        self.smoothing_term = smoothing_term
        self._svd_solver = SparseSVDSolver(max_iterations=max_iterations)
        self._correlations = np.zeros(0)
        self._projection_x = None
        self._projection_y = None

    def perform_cca(self, covariance_xy, variance_x, variance_y):
        num_x = 1 + max(_max_index(variance_x),
                        max((max(rows, default=-1) for rows in covariance_xy.values()), default=-1))
        num_y = 1 + max(_max_index(variance_y), max(covariance_xy, default=-1))
        scale_x = np.sqrt(_dense(variance_x, num_x) + self.smoothing_term)
        scale_y = np.sqrt(_dense(variance_y, num_y) + self.smoothing_term)

        correlation = {}
        num_skipped = 0
        for y, rows in covariance_xy.items():
            column = {}
            for x, value in rows.items():
                denominator = scale_x[x] * scale_y[y]
                if denominator == 0:
                    num_skipped += 1
                    continue
                column[x] = value / denominator
            correlation[y] = column
        if num_skipped:
            logging.warning(f"Skipped {num_skipped} entries with zero variance")

        self._svd_solver.load_sparse_matrix(correlation, num_x, num_y)
        self._svd_solver.solve_sparse_svd(min(self.cca_dim, num_x, num_y))
        self._correlations = self._svd_solver.singular_values
        self._projection_x = _rescale_rows(self._svd_solver.left_singular_vectors, scale_x)
        self._projection_y = _rescale_rows(self._svd_solver.right_singular_vectors, scale_y)
        return self._correlations

    def perform_cca_on_samples(self, examples_x, examples_y):
        """CCA from paired samples, each a sparse {index: value} feature dict."""
        if len(examples_x) != len(examples_y):
            raise ValueError(f"Got {len(examples_x)} samples for x but {len(examples_y)} for y")
        covariance_xy = defaultdict(lambda: defaultdict(float))
        variance_x = defaultdict(float)
        variance_y = defaultdict(float)
        for x, y in zip(examples_x, examples_y):
            for j, y_value in y.items():
                for i, x_value in x.items():
                    covariance_xy[j][i] += x_value * y_value
            for i, x_value in x.items():
                variance_x[i] += x_value * x_value
            for j, y_value in y.items():
                variance_y[j] += y_value * y_value
        covariance_xy = {j: dict(rows) for j, rows in covariance_xy.items()}
        return self.perform_cca(covariance_xy, dict(variance_x), dict(variance_y))

    @property
    def rank(self):
        return len(self._correlations)

    @property
    def cca_correlations(self):
        return self._correlations

    @property
    def projection_x(self):
        return self._projection_x

    @property
    def projection_y(self):
        return self._projection_y


def _rescale_rows(vectors, scale):
    # rows with zero scale were never part of the correlation matrix
    safe = np.where(scale > 0, scale, 1.0)
    return np.where(scale[:, None] > 0, vectors / safe[:, None], 0.0)
