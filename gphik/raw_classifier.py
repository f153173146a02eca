"""
Raw HIK-GP Classifier (scikit-learn Estimator)
==============================================

The stripped-down sibling of :class:`gphik.core.model.HIKGPModel`:
identity transform, fixed noise, no hyperparameter search and no
variance tables.  Training solves one linear system per binary problem
and compiles the solutions into A/B tables (plus LUTs when quantization
is enabled).

Follows the scikit-learn estimator API so it can be used in pipelines,
``cross_val_score`` and grid searches.

Usage:
    >>> from gphik.raw_classifier import GPHIKRawClassifier
    >>> clf = GPHIKRawClassifier(noise=0.1).fit(X_train, y_train)
    >>> clf.predict(X_test)
"""

import logging

import numpy as np
from scipy import sparse
from sklearn.base import BaseEstimator, ClassifierMixin
from sklearn.utils.multiclass import check_classification_targets
from sklearn.utils.validation import check_array, check_is_fitted, check_X_y

from gphik.core.feature_store import FeatureStore
from gphik.core.kernels import HIKDataTerm, KernelSum, NoiseTerm
from gphik.core.parameterized_functions import IdentityFunction
from gphik.core.quantization import QuantizationConfig, build_quantizer
from gphik.core.solvers import IterativeLinearSolver
from gphik.core.tables import ClassificationTableBuilder
from gphik.exceptions import DataError

logger = logging.getLogger(__name__)


class GPHIKRawClassifier(ClassifierMixin, BaseEstimator):
    """GP classifier with a plain histogram intersection kernel.

    Args:
        noise: Noise σ added to the kernel diagonal.
        use_quantization: Build lookup tables for O(1)-per-dimension scores.
        number_of_bins: Quantization bins per dimension.
        quantization_type: ``'1d_equidistant'`` or ``'nd_equidistant'``.
        ils_max_iterations: Conjugate-gradient iteration cap.
        ils_tolerance: Conjugate-gradient relative tolerance.
        n_jobs: joblib threads for per-class table builds.
    """

    def __init__(
        self,
        noise=0.01,
        use_quantization=False,
        number_of_bins=100,
        quantization_type='1d_equidistant',
        ils_max_iterations=1000,
        ils_tolerance=1e-8,
        n_jobs=1,
    ):
        self.noise = noise
        self.use_quantization = use_quantization
        self.number_of_bins = number_of_bins
        self.quantization_type = quantization_type
        self.ils_max_iterations = ils_max_iterations
        self.ils_tolerance = ils_tolerance
        self.n_jobs = n_jobs

    def fit(self, X, y):
        X, y = check_X_y(X, y, accept_sparse='csr')
        check_classification_targets(y)
        classes = np.unique(y)
        if len(classes) < 2:
            raise DataError(
                f"Classification needs at least two classes, got {classes.tolist()}"
            )

        # Binary: one problem for classes[1]; otherwise one-vs-rest
        if len(classes) == 2:
            targets = {1: np.where(y == classes[1], 1.0, -1.0)}
        else:
            targets = {i: np.where(y == c, 1.0, -1.0) for i, c in enumerate(classes)}
        return self._fit_targets(X, classes, targets)

    def fit_binary(self, X, binary_labels, negative_class=None):
        """Fit from prepared binary label vectors (entries in {+1, −1, 0}).

        Args:
            X: Training features, shape (n, d).
            binary_labels: Mapping class id -> label vector of length n.
            negative_class: Required with a single vector; the class
                represented by ``−1``.

        Returns:
            self
        """
        X = check_array(X, accept_sparse='csr')
        if not binary_labels:
            raise DataError("No binary label vectors given")

        vectors = {}
        for class_id, y in binary_labels.items():
            y = np.asarray(y, dtype=float).ravel()
            if len(y) != X.shape[0]:
                raise DataError(
                    f"Label vector of class {class_id} has {len(y)} entries, expected {X.shape[0]}"
                )
            if not np.all(np.isin(y, (-1.0, 0.0, 1.0))):
                raise DataError(f"Label vector of class {class_id} must only contain -1, 0, +1")
            vectors[class_id] = y

        if len(vectors) == 1:
            if negative_class is None:
                raise DataError("A single label vector needs negative_class")
            (positive, y), = vectors.items()
            if negative_class == positive:
                raise DataError(f"negative_class equals the positive class {positive!r}")
            classes = np.array(sorted([positive, negative_class]))
            # decision_function scores classes[1]
            targets = {1: y if positive == classes[1] else -y}
        else:
            classes = np.array(sorted(vectors))
            targets = {i: vectors[c] for i, c in enumerate(classes)}
        return self._fit_targets(X, classes, targets)

    def _fit_targets(self, X, classes, targets):
        self.classes_ = classes
        store = FeatureStore(X)
        self.n_features_in_ = store.n_dims
        kernel_sum = KernelSum(
            HIKDataTerm(store, IdentityFunction()),
            NoiseTerm(store.n_examples, self.noise),
        )
        solver = IterativeLinearSolver(self.ils_max_iterations, self.ils_tolerance)
        alphas = {i: solver.solve(kernel_sum, t) for i, t in targets.items()}

        quantizer = build_quantizer(QuantizationConfig(
            use_quantization=self.use_quantization,
            number_of_bins=self.number_of_bins,
            quantization_type=self.quantization_type,
        ))
        if quantizer is not None:
            quantizer.fit(store.raw_features)

        self.builder_ = ClassificationTableBuilder(store, quantizer, self.n_jobs)
        self.tables_ = self.builder_.build(alphas)
        logger.info(
            f"GPHIKRawClassifier fitted: {store.n_examples} examples, "
            f"{len(self.classes_)} classes, {solver.n_failures} solver warnings"
        )
        return self

    def _rows(self, X):
        X = check_array(X, accept_sparse='csr')
        if X.shape[1] != self.n_features_in_:
            raise DataError(
                f"X has {X.shape[1]} features, classifier was fitted with {self.n_features_in_}"
            )
        values = X.data if sparse.issparse(X) else X
        if values.size and values.min() < 0:
            raise DataError("Histogram intersection kernel requires non-negative features")
        if sparse.issparse(X):
            for i in range(X.shape[0]):
                row = X.getrow(i)
                yield row.indices.astype(int), row.data.astype(float)
        else:
            for row in X:
                dims = np.flatnonzero(row)
                yield dims, row[dims]

    def decision_function(self, X):
        """Scores of shape (n,) for binary problems, else (n, n_classes)."""
        check_is_fitted(self, 'tables_')
        class_ids = sorted(self.tables_)
        scores = np.array([
            [self.builder_.score(self.tables_[c], dims, values) for c in class_ids]
            for dims, values in self._rows(X)
        ]).reshape(-1, len(class_ids))
        if len(self.classes_) == 2:
            return scores[:, 0]
        return scores

    def predict(self, X):
        scores = self.decision_function(X)
        if scores.ndim == 1:
            return self.classes_[(scores > 0).astype(int)]
        # argmax returns the first maximum, i.e. the lowest class on ties
        return self.classes_[np.argmax(scores, axis=1)]
