"""Gaussian-process surrogate used by the Bayesian optimizer.

Observed targets are standardized before fitting so that the kernel variance
is expressed on the scale of the data; predictions are available both on the
standardized scale (for acquisition functions) and on the original scale.
"""

import numpy as np

PIVOT_TOLERANCE = 1e-10
PIVOT_REGULARIZATION = 1e-6


def rbf_kernel(x1, x2, variance: float = 1.0, length_scale: float = 0.1) -> np.ndarray:
    """Radial-basis kernel ``variance * exp(-||x1 - x2||^2 / (2 * length_scale^2))``.

    Parameters
    ----------
    x1 : array-like, shape (n, d)
    x2 : array-like, shape (m, d)
    variance : float
    length_scale : float

    Returns
    -------
    numpy.ndarray, shape (n, m)
    """
    x1 = np.atleast_2d(np.asarray(x1, dtype=float))
    x2 = np.atleast_2d(np.asarray(x2, dtype=float))
    squared = ((x1[:, None, :] - x2[None, :, :]) ** 2).sum(axis=-1)
    return variance * np.exp(-squared / (2 * length_scale**2))


def invert_matrix(
    matrix,
    pivot_tolerance: float = PIVOT_TOLERANCE,
    regularization: float = PIVOT_REGULARIZATION,
) -> np.ndarray:
    """Invert a square matrix by Gauss-Jordan elimination with partial pivoting.

    A pivot whose magnitude falls below ``pivot_tolerance`` after row
    exchange is shifted by ``regularization`` instead of failing.

    Raises
    ------
    ValueError
        If the matrix is not square.
    """
    a = np.array(matrix, dtype=float)
    if a.ndim != 2 or a.shape[0] != a.shape[1]:
        raise ValueError("Matrix must be square.")
    n = a.shape[0]
    augmented = np.hstack([a, np.eye(n)])

    for col in range(n):
        pivot_row = col + int(np.argmax(np.abs(augmented[col:, col])))
        if pivot_row != col:
            augmented[[col, pivot_row]] = augmented[[pivot_row, col]]
        if abs(augmented[col, col]) < pivot_tolerance:
            augmented[col, col] += regularization
        augmented[col] /= augmented[col, col]
        others = np.arange(n) != col
        augmented[others] -= np.outer(augmented[others, col], augmented[col])

    return augmented[:, n:]


class GaussianProcess:
    """Exact GP regression with an RBF kernel and Gaussian noise.

    Parameters
    ----------
    length_scale : float
        Kernel length scale over allocation shares.
    variance : float
        Kernel variance on the standardized target scale.
    noise_variance : float
        Added to the diagonal of the training kernel matrix.
    """

    def __init__(self, length_scale: float = 0.1, variance: float = 1.0, noise_variance: float = 0.01) -> None:
        if length_scale <= 0 or variance <= 0 or noise_variance < 0:
            raise ValueError("Kernel parameters must be positive.")
        self.length_scale = length_scale
        self.variance = variance
        self.noise_variance = noise_variance
        self.y_mean = 0.0
        self.y_scale = 1.0
        self._x: np.ndarray | None = None

    def fit(self, x, y) -> "GaussianProcess":
        """Condition on observations ``x`` (n, d) with targets ``y`` (n,)."""
        x = np.atleast_2d(np.asarray(x, dtype=float))
        y = np.asarray(y, dtype=float)
        self.y_mean = float(y.mean())
        self.y_scale = float(y.std()) or 1.0
        z = (y - self.y_mean) / self.y_scale

        kernel = rbf_kernel(x, x, self.variance, self.length_scale)
        kernel[np.diag_indices_from(kernel)] += self.noise_variance
        # Inverted once, reused for every prediction.
        self._kernel_inv = invert_matrix(kernel)
        self._alpha = self._kernel_inv @ z
        self._x = x
        return self

    def standardize(self, y):
        return (np.asarray(y, dtype=float) - self.y_mean) / self.y_scale

    def predict_standardized(self, x) -> tuple[np.ndarray, np.ndarray]:
        """Posterior mean and variance on the standardized target scale."""
        if self._x is None:
            raise RuntimeError("GaussianProcess.fit must be called before predicting.")
        k = rbf_kernel(x, self._x, self.variance, self.length_scale)
        mean = k @ self._alpha
        variance = self.variance - np.einsum("ij,jk,ik->i", k, self._kernel_inv, k)
        return mean, np.maximum(variance, 0.0)

    def predict(self, x) -> tuple[np.ndarray, np.ndarray]:
        """Posterior mean and variance in the units of the observed targets."""
        mean, variance = self.predict_standardized(x)
        return mean * self.y_scale + self.y_mean, variance * self.y_scale**2
