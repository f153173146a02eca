"""Tests for the scikit-learn raw HIK-GP classifier and synthetic data."""

import numpy as np
import pytest
from scipy import sparse
from sklearn.base import clone

from gphik.core.feature_store import FeatureStore
from gphik.core.model import HIKGPConfig, HIKGPModel
from gphik.raw_classifier import GPHIKRawClassifier
from gphik.exceptions import DataError
from gphik.utils.data_generator import DataGenerator


# ---------------------------------------------------------------------------
# DataGenerator
# ---------------------------------------------------------------------------

class TestDataGenerator:
    def test_shapes_and_normalisation(self):
        X, y = DataGenerator.generate_histograms(n_per_class=5, n_dims=8, n_classes=3, seed=0)
        assert X.shape == (15, 8)
        np.testing.assert_array_equal(np.bincount(y), [5, 5, 5])
        assert np.all(X >= 0)
        np.testing.assert_allclose(X.sum(axis=1), 1.0)

    def test_seed_is_deterministic(self):
        a, _ = DataGenerator.generate_histograms(seed=3)
        b, _ = DataGenerator.generate_histograms(seed=3)
        np.testing.assert_array_equal(a, b)

    def test_sparsity(self):
        X, _ = DataGenerator.generate_histograms(n_per_class=20, n_dims=10, seed=1, sparsity=0.5)
        assert np.mean(X == 0) > 0.2


# ---------------------------------------------------------------------------
# GPHIKRawClassifier
# ---------------------------------------------------------------------------

class TestGPHIKRawClassifier:
    def test_binary(self):
        X, y = DataGenerator.generate_histograms(n_per_class=15, n_dims=6, n_classes=2, seed=2)
        clf = GPHIKRawClassifier(noise=0.1).fit(X, y)
        np.testing.assert_array_equal(clf.classes_, [0, 1])
        assert clf.decision_function(X).shape == (30,)
        assert clf.score(X, y) >= 0.9

    def test_multiclass(self):
        X, y = DataGenerator.generate_histograms(n_per_class=10, n_dims=9, n_classes=3, seed=4)
        clf = GPHIKRawClassifier(noise=0.1).fit(X, y)
        assert clf.decision_function(X).shape == (30, 3)
        assert clf.score(X, y) >= 0.9

    def test_string_labels(self):
        X, y = DataGenerator.generate_histograms(n_per_class=6, n_dims=4, n_classes=2, seed=5)
        labels = np.where(y == 0, 'cat', 'dog')
        predictions = GPHIKRawClassifier(noise=0.1).fit(X, labels).predict(X)
        assert set(predictions) <= {'cat', 'dog'}

    def test_matches_model_scores(self):
        X, y = DataGenerator.generate_histograms(n_per_class=8, n_dims=5, n_classes=2, seed=6)
        clf = GPHIKRawClassifier(noise=0.1, ils_tolerance=1e-12).fit(X, y)
        model = HIKGPModel(HIKGPConfig(noise=0.1, ils_tolerance=1e-12), FeatureStore(X))
        model.optimize(y)
        q = X[3] * 0.7
        _, scores = model.classify(q)
        assert clf.decision_function(q[None, :])[0] == pytest.approx(scores[1], abs=1e-8)

    def test_sparse_input(self):
        X, y = DataGenerator.generate_histograms(n_per_class=10, n_dims=8, seed=7, sparsity=0.5)
        dense = GPHIKRawClassifier(noise=0.1).fit(X, y)
        from_sparse = GPHIKRawClassifier(noise=0.1).fit(sparse.csr_matrix(X), y)
        np.testing.assert_allclose(
            from_sparse.decision_function(sparse.csr_matrix(X)),
            dense.decision_function(X),
            atol=1e-8,
        )

    def test_quantized(self):
        X, y = DataGenerator.generate_histograms(n_per_class=10, n_dims=6, seed=8)
        exact = GPHIKRawClassifier(noise=0.1).fit(X, y)
        quantized = GPHIKRawClassifier(noise=0.1, use_quantization=True, number_of_bins=5000).fit(X, y)
        np.testing.assert_allclose(
            quantized.decision_function(X), exact.decision_function(X), atol=0.1
        )

    def test_clone_keeps_parameters(self):
        clf = GPHIKRawClassifier(noise=0.3, number_of_bins=7)
        params = clone(clf).get_params()
        assert params['noise'] == 0.3
        assert params['number_of_bins'] == 7

    def test_single_class_raises(self):
        with pytest.raises(DataError):
            GPHIKRawClassifier().fit(np.ones((3, 2)), [1, 1, 1])

    def test_negative_query_raises(self):
        X, y = DataGenerator.generate_histograms(n_per_class=4, n_dims=3, seed=9)
        clf = GPHIKRawClassifier().fit(X, y)
        with pytest.raises(DataError):
            clf.predict(-np.ones((1, 3)))

    def test_wrong_feature_count(self):
        X, y = DataGenerator.generate_histograms(n_per_class=4, n_dims=3, seed=9)
        clf = GPHIKRawClassifier().fit(X, y)
        with pytest.raises(DataError):
            clf.predict(np.ones((1, 5)))

    def test_fit_binary_matches_fit(self):
        X, y = DataGenerator.generate_histograms(n_per_class=8, n_dims=5, n_classes=2, seed=10)
        labels = y + 4
        fitted = GPHIKRawClassifier(noise=0.1).fit(X, labels)
        from_map = GPHIKRawClassifier(noise=0.1).fit_binary(
            X, {5: np.where(labels == 5, 1.0, -1.0)}, negative_class=4
        )
        np.testing.assert_array_equal(from_map.classes_, [4, 5])
        np.testing.assert_allclose(from_map.decision_function(X), fitted.decision_function(X))
        np.testing.assert_array_equal(from_map.predict(X), fitted.predict(X))

    def test_fit_binary_positive_below_negative(self):
        X, y = DataGenerator.generate_histograms(n_per_class=8, n_dims=5, n_classes=2, seed=11)
        clf = GPHIKRawClassifier(noise=0.1).fit_binary(
            X, {0: np.where(y == 0, 1.0, -1.0)}, negative_class=1
        )
        np.testing.assert_array_equal(clf.classes_, [0, 1])
        assert clf.score(X, y) >= 0.9

    def test_fit_binary_one_vs_rest(self):
        X, y = DataGenerator.generate_histograms(n_per_class=10, n_dims=9, n_classes=3, seed=4)
        fitted = GPHIKRawClassifier(noise=0.1).fit(X, y)
        from_map = GPHIKRawClassifier(noise=0.1).fit_binary(
            X, {c: np.where(y == c, 1.0, -1.0) for c in (2, 0, 1)}
        )
        np.testing.assert_array_equal(from_map.classes_, [0, 1, 2])
        np.testing.assert_allclose(from_map.decision_function(X), fitted.decision_function(X))

    def test_fit_binary_validation(self):
        X = np.ones((3, 2))
        with pytest.raises(DataError, match="negative_class"):
            GPHIKRawClassifier().fit_binary(X, {1: [1, -1, 1]})
        with pytest.raises(DataError, match="entries"):
            GPHIKRawClassifier().fit_binary(X, {1: [1, -1]}, negative_class=0)
        with pytest.raises(DataError, match="-1, 0, \\+1"):
            GPHIKRawClassifier().fit_binary(X, {1: [1, 2, 1]}, negative_class=0)
        with pytest.raises(DataError):
            GPHIKRawClassifier().fit_binary(X, {})
