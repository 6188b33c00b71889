# svd.py
import logging
import os

import numpy as np
from scipy.linalg import eigh_tridiagonal
from scipy.sparse import csc_matrix
from scipy.sparse.linalg import LinearOperator

from config import SVD_SEED
from helper import atomic_write

# Relative thresholds, all scaled by the largest eigenvalue estimate of the
# Gram operator.
BREAKDOWN_TOL = 1e-10
RESIDUAL_TOL = 1e-8
ZERO_TOL = 1e-12

# Lanczos steps between convergence checks.
CHECK_INTERVAL = 10


def write_sparse_matrix(column_map, path, num_columns=None):
    """
    Write a column map {column: {row: value}} in column-block text format.

    Every column 0..num_columns-1 gets a "<column> <nonzeros>" header, empty
    ones included, followed by its "<row> <value>" lines in row order.
    """
    if num_columns is None:
        num_columns = max(column_map, default=-1) + 1
    if any(column >= num_columns for column in column_map):
        raise ValueError(f"Column map has columns beyond num_columns={num_columns}")
    with atomic_write(path) as f:
        for column in range(num_columns):
            entries = {row: value for row, value in column_map.get(column, {}).items() if value != 0}
            f.write(f"{column} {len(entries)}\n")
            for row in sorted(entries):
                f.write(f"{row} {entries[row]}\n")


def read_sparse_matrix(path):
    """Read the column-block format back; returns (column_map, num_columns)."""
    column_map = {}
    with open(path, "r", encoding="utf-8") as f:
        lines = (line.split() for line in f)
        lines = (fields for fields in lines if fields)
        for header in lines:
            if len(header) != 2 or int(header[0]) != len(column_map):
                raise ValueError(f"{path}: expected header for column {len(column_map)}, got {' '.join(header)!r}")
            entries = {}
            for _ in range(int(header[1])):
                fields = next(lines, None)
                if fields is None or len(fields) != 2:
                    raise ValueError(f"{path}: column {header[0]} is truncated")
                entries[int(fields[0])] = float(fields[1])
            column_map[len(column_map)] = entries
    return column_map, len(column_map)


def to_csc(column_map, num_rows=None, num_columns=None):
    rows, columns, values = [], [], []
    for column, entries in column_map.items():
        for row, value in entries.items():
            if value != 0:
                rows.append(row)
                columns.append(column)
                values.append(value)
    if num_rows is None:
        num_rows = max(rows, default=-1) + 1
    if num_columns is None:
        num_columns = max(column_map, default=-1) + 1
    return csc_matrix((values, (rows, columns)), shape=(num_rows, num_columns), dtype=np.float64)


def lanczos(operator, num_steps, start, converged=None):
    """
    Lanczos tridiagonalization of a symmetric operator with full
    reorthogonalization.

    Stops early when the Krylov space becomes invariant. That happens as soon
    as the start vector has been spread over all distinct eigenvalues, so a
    spectrum with repeated eigenvalues yields fewer Ritz pairs than its size.
    If given, converged(alphas, betas) is asked every CHECK_INTERVAL steps and
    ends the run when it returns True.
    Returns (alphas, betas, basis) with len(betas) == len(alphas); the last
    beta is the residual norm of the final step.
    """
    dim = operator.shape[0]
    basis = np.zeros((min(num_steps, 2 * CHECK_INTERVAL), dim))
    alphas, betas = [], []
    q = start / np.linalg.norm(start)
    norm_estimate = 0.0
    for step in range(num_steps):
        if step == len(basis):
            basis = np.vstack([basis, np.zeros((min(len(basis), num_steps - step), dim))])
        basis[step] = q
        w = operator.matvec(q)
        alpha = float(q @ w)
        w = w - alpha * q
        if step > 0:
            w -= betas[-1] * basis[step - 1]
        for _ in range(2):
            w -= basis[:step + 1].T @ (basis[:step + 1] @ w)
        beta = float(np.linalg.norm(w))
        alphas.append(alpha)
        betas.append(beta)
        norm_estimate = max(norm_estimate, abs(alpha) + beta)
        if beta <= BREAKDOWN_TOL * norm_estimate:
            break
        if converged is not None and (step + 1) % CHECK_INTERVAL == 0 \
                and converged(np.array(alphas), np.array(betas)):
            break
        q = w / beta
    return np.array(alphas), np.array(betas), basis[:len(alphas)]


def ritz_pairs(alphas, betas):
    """Eigenpairs of the Lanczos tridiagonal matrix and their residual bounds."""
    if len(alphas) == 1:
        ritz_values, ritz_vectors = alphas.copy(), np.ones((1, 1))
    else:
        ritz_values, ritz_vectors = eigh_tridiagonal(alphas, betas[:-1])
    residuals = np.abs(betas[-1] * ritz_vectors[-1, :])
    return ritz_values, ritz_vectors, residuals


def leading_ritz_pairs(ritz_values, residuals, rank):
    """
    Indices of the top Ritz pairs, in decreasing order, up to the first one
    that is unconverged or zero. At most `rank` of them.
    """
    scale = max(float(np.abs(ritz_values).max()), np.finfo(np.float64).tiny)
    accepted = []
    for i in np.argsort(ritz_values)[::-1][:rank]:
        if residuals[i] > RESIDUAL_TOL * scale or ritz_values[i] <= ZERO_TOL * scale:
            break
        accepted.append(i)
    return np.array(accepted, dtype=int)


def sparse_svd(matrix, rank, max_iterations=None, seed=SVD_SEED):
    """
    Truncated SVD of a sparse matrix through Lanczos on its smaller Gram matrix.

    Returns (achieved_rank, singular_values, left_vectors, right_vectors) with
    singular values in decreasing order. Lanczos keeps extending its basis
    until the top `rank` Ritz pairs converge, the space becomes invariant or
    max_iterations steps (default: the Gram dimension) are taken. The
    achieved rank can be below `rank`: only a leading run of converged,
    nonzero pairs is kept, and without gaps between the leading singular
    values the Krylov space collapses early (an identity matrix yields
    rank 1). Callers must check it.
    """
    matrix = csc_matrix(matrix, dtype=np.float64)
    num_rows, num_columns = matrix.shape
    dim = min(num_rows, num_columns)
    if rank < 0 or rank > dim:
        raise ValueError(f"Requested rank {rank} for a {num_rows}x{num_columns} matrix")
    if rank == 0:
        return 0, np.zeros(0), np.zeros((num_rows, 0)), np.zeros((num_columns, 0))

    transpose = num_rows < num_columns
    if transpose:
        gram = LinearOperator((dim, dim), matvec=lambda v: matrix @ (matrix.T @ v), dtype=np.float64)
    else:
        gram = LinearOperator((dim, dim), matvec=lambda v: matrix.T @ (matrix @ v), dtype=np.float64)

    def converged(alphas, betas):
        ritz_values, _, residuals = ritz_pairs(alphas, betas)
        return len(leading_ritz_pairs(ritz_values, residuals, rank)) == rank

    num_steps = dim if max_iterations is None else min(dim, max_iterations)
    start = np.random.default_rng(seed).standard_normal(dim)
    alphas, betas, basis = lanczos(gram, num_steps, start, converged)
    logging.debug(f"Lanczos ran {len(alphas)} of {num_steps} steps")

    ritz_values, ritz_vectors, residuals = ritz_pairs(alphas, betas)
    accepted = leading_ritz_pairs(ritz_values, residuals, rank)

    singular_values = np.sqrt(ritz_values[accepted])
    eigenvectors = basis.T @ ritz_vectors[:, accepted]
    if transpose:
        left = eigenvectors
        right = np.asarray(matrix.T @ left) / singular_values
    else:
        right = eigenvectors
        left = np.asarray(matrix @ right) / singular_values

    if len(accepted) < rank:
        logging.warning(f"SVD achieved rank {len(accepted)} of the requested {rank} "
                        f"after {len(alphas)} Lanczos steps")
    return len(accepted), singular_values, left, right


class SparseSVDSolver:
    """Loads a sparse matrix (in memory or from file) and solves truncated SVDs of it."""

    def __init__(self, max_iterations=None, seed=SVD_SEED):
        self.max_iterations = max_iterations
        self.seed = seed
        self._matrix = None
        self._rank = 0
        self._singular_values = np.zeros(0)
        self._left = None
        self._right = None

    def load_sparse_matrix(self, source, num_rows=None, num_columns=None):
        if isinstance(source, (str, os.PathLike)):
            column_map, file_columns = read_sparse_matrix(source)
            if num_columns is None:
                num_columns = file_columns
        else:
            column_map = source
        self._matrix = to_csc(column_map, num_rows, num_columns)
        logging.info(f"Loaded a {self._matrix.shape[0]}x{self._matrix.shape[1]} sparse matrix "
                     f"with {self._matrix.nnz} nonzeros")

    @staticmethod
    def write_sparse_matrix(column_map, path, num_columns=None):
        write_sparse_matrix(column_map, path, num_columns)

    def solve_sparse_svd(self, rank):
        if self._matrix is None:
            raise RuntimeError("No sparse matrix loaded")
        self._rank, self._singular_values, self._left, self._right = sparse_svd(
            self._matrix, rank, self.max_iterations, self.seed)
        return self._rank

    @property
    def shape(self):
        return None if self._matrix is None else self._matrix.shape

    @property
    def rank(self):
        return self._rank

    @property
    def singular_values(self):
        return self._singular_values

    @property
    def left_singular_vectors(self):
        return self._left

    @property
    def right_singular_vectors(self):
        return self._right
