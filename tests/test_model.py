"""Tests for the HIK-GP model: training, classification, increments, persistence."""

import numpy as np
import pandas as pd
import pytest

from gphik.core.feature_store import FeatureStore
from gphik.core.model import HIKGPConfig, HIKGPModel, prepare_binary_labels
from gphik.core.optimization import OptimizationConfig
from gphik.core.quantization import QuantizationConfig
from gphik.core.variance import VarianceEstimator
from gphik.exceptions import ConfigurationError, DataError, StateError
from gphik.utils.data_generator import DataGenerator


def _config(**kwargs):
    defaults = dict(noise=0.1, ils_tolerance=1e-12)
    defaults.update(kwargs)
    return HIKGPConfig(**defaults)


def _trained(X, y, **kwargs):
    model = HIKGPModel(_config(**kwargs), FeatureStore(X))
    model.optimize(y)
    return model


@pytest.fixture
def three_class_data():
    X, y = DataGenerator.generate_histograms(n_per_class=8, n_dims=6, n_classes=3, seed=5)
    return X, y + 1


@pytest.fixture
def separable_data():
    X = np.array([
        [0.9, 0.1, 0.0],
        [0.8, 0.2, 0.0],
        [0.1, 0.9, 0.0],
        [0.2, 0.8, 0.0],
    ])
    return X, np.array([1, 1, 2, 2])


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class TestHIKGPConfig:
    def test_defaults(self):
        config = HIKGPConfig()
        assert config.noise == 0.01
        assert config.ils_max_iterations == 1000
        assert config.n_eigenvalues == 1
        assert config.n_eigenvalues_var_approx == 1
        assert config.optimization.parameter_lower_bound == 1.0
        assert config.optimization.parameter_upper_bound == 5.0

    def test_from_flat_dict(self):
        config = HIKGPConfig.from_dict({
            'noise': 0.5,
            'method': 'downhillsimplex',
            'use_quantization': True,
            'number_of_bins': 50,
        })
        assert config.noise == 0.5
        assert config.optimization.method == 'downhillsimplex'
        assert config.quantization.number_of_bins == 50

    def test_from_nested_dict(self):
        config = HIKGPConfig.from_dict({
            'optimization': {'parameter_upper_bound': 3.0},
            'quantization': {'use_quantization': True},
        })
        assert config.optimization.parameter_upper_bound == 3.0
        assert config.quantization.use_quantization

    def test_top_level_n_jobs_reaches_optimizer(self):
        config = HIKGPConfig.from_dict({'n_jobs': 4, 'verbose': True})
        assert config.n_jobs == 4
        assert config.optimization.n_jobs == 4
        assert config.optimization.verbose

    def test_nested_n_jobs_wins(self):
        config = HIKGPConfig.from_dict({'n_jobs': 4, 'optimization': {'n_jobs': 2}})
        assert config.n_jobs == 4
        assert config.optimization.n_jobs == 2

    def test_model_copies_config(self):
        config = HIKGPConfig(n_jobs=3, verbose=True)
        model = HIKGPModel(config)
        assert model.config.optimization.n_jobs == 3
        assert model.config.optimization.verbose
        assert config.optimization.n_jobs == 1
        assert not config.optimization.verbose
        assert model.config.optimization is not config.optimization

    def test_unknown_key(self):
        with pytest.raises(ConfigurationError, match="Unknown configuration key"):
            HIKGPConfig.from_dict({'learning_rate': 0.1})

    @pytest.mark.parametrize("kwargs", [
        dict(noise=0.0),
        dict(variance_approximation='medium'),
        dict(parameterized_function='sigmoid'),
        dict(optimization=OptimizationConfig(method='lbfgs')),
        dict(quantization=QuantizationConfig(use_quantization=True, quantization_type='kmeans')),
    ])
    def test_invalid_configs_fail_fast(self, kwargs):
        with pytest.raises(ConfigurationError):
            HIKGPModel(HIKGPConfig(**kwargs))


# ---------------------------------------------------------------------------
# Binary label preparation
# ---------------------------------------------------------------------------

class TestPrepareBinaryLabels:
    def test_two_classes(self):
        binary, positive, negative = prepare_binary_labels(np.array([3, 7, 3]))
        assert (positive, negative) == (7, 3)
        assert list(binary) == [7]
        np.testing.assert_array_equal(binary[7], [-1, 1, -1])

    def test_one_vs_rest(self):
        binary, positive, negative = prepare_binary_labels(np.array([0, 1, 2, 1]))
        assert positive is None and negative is None
        assert sorted(binary) == [0, 1, 2]
        np.testing.assert_array_equal(binary[1], [-1, 1, -1, 1])

    def test_single_class_raises(self):
        with pytest.raises(DataError, match="at least two classes"):
            prepare_binary_labels(np.array([4, 4, 4]))

    def test_non_integer_labels_raise(self):
        with pytest.raises(DataError):
            prepare_binary_labels(np.array([0.5, 1.0]))


# ---------------------------------------------------------------------------
# Concrete scenarios
# ---------------------------------------------------------------------------

class TestScenarios:
    def test_one_dimensional_nearest_cluster(self):
        """Values {0.1, 0.5, 0.9} labelled {1, 1, 2}; query 0.4 belongs to class 1."""
        X = np.array([[0.1], [0.5], [0.9]])
        config = _config(optimization=OptimizationConfig(
            method='greedy', parameter_lower_bound=1.0, parameter_upper_bound=2.0,
            parameter_step_size=1.0,
        ))
        model = HIKGPModel(config, FeatureStore(X))
        model.optimize(np.array([1, 1, 2]))

        best, scores = model.classify(np.array([0.4]))
        assert best == 1
        assert set(scores) == {1, 2}
        assert all(np.isfinite(s) for s in scores.values())
        assert scores[1] != scores[2]
        # α = (K + 0.1 I)⁻¹ y for y = (−1, −1, +1), score = Σ α_i min(0.4, x_i)
        assert scores[1] == pytest.approx(0.609375, abs=1e-8)

    def test_third_class_increment(self, separable_data):
        X, y = separable_data
        model = _trained(X, y)
        model.add_example(np.array([0.0, 0.0, 1.0]), 3, perform_optimization_after_increment=False)

        assert model.get_known_class_numbers() == {1, 2, 3}
        best, scores = model.classify(np.array([0.0, 0.0, 1.0]))
        assert best == 3
        assert set(scores) == {1, 2, 3}


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

class TestClassification:
    def test_best_class_has_max_score(self, three_class_data):
        X, y = three_class_data
        model = _trained(X, y)
        rng = np.random.default_rng(9)
        for q in rng.random((10, 6)):
            best, scores = model.classify(q)
            top = max(scores.values())
            assert scores[best] == top
            assert best == min(c for c, s in scores.items() if s == top)

    def test_tie_breaks_to_lowest_class(self, three_class_data, separable_data):
        X, y = three_class_data
        best, scores = _trained(X, y).classify(np.zeros(6))
        assert all(s == 0.0 for s in scores.values())
        assert best == 1

        X, y = separable_data
        best, _ = _trained(X, y).classify(np.zeros(3))
        assert best == 1

    def test_binary_scores_are_antisymmetric(self, separable_data):
        X, y = separable_data
        model = _trained(X, y)
        _, scores = model.classify(np.array([0.5, 0.5, 0.0]))
        assert scores[1] == pytest.approx(-scores[2])
        assert model.is_binary

    def test_training_accuracy(self, three_class_data):
        X, y = three_class_data
        model = _trained(X, y)
        predictions = [model.classify(x)[0] for x in X]
        assert np.mean(np.array(predictions) == y) >= 0.9

    def test_dict_and_dense_queries_agree(self, three_class_data):
        X, y = three_class_data
        model = _trained(X, y)
        q = X[3]
        _, dense_scores = model.classify(q)
        _, dict_scores = model.classify({d: v for d, v in enumerate(q) if v})
        for c in dense_scores:
            assert dict_scores[c] == pytest.approx(dense_scores[c])

    def test_classify_many(self, three_class_data):
        X, y = three_class_data
        model = _trained(X, y)
        frame = model.classify_many(X[:5])
        assert isinstance(frame, pd.DataFrame)
        assert list(frame.columns) == [1, 2, 3, 'predicted_class']
        assert len(frame) == 5
        assert frame['predicted_class'].iloc[0] == model.classify(X[0])[0]

    def test_classify_many_dataframe(self, three_class_data):
        X, y = three_class_data
        model = _trained(X, y)
        from_frame = model.classify_many(pd.DataFrame(X[:5]))
        from_array = model.classify_many(X[:5])
        assert len(from_frame) == 5
        pd.testing.assert_frame_equal(from_frame, from_array)

    def test_quantized_close_to_exact(self, three_class_data):
        X, y = three_class_data
        exact = _trained(X, y)
        quantized = _trained(X, y, quantization=QuantizationConfig(
            use_quantization=True, number_of_bins=5000
        ))
        for q in X[:5]:
            _, exact_scores = exact.classify(q)
            _, lut_scores = quantized.classify(q)
            for c in exact_scores:
                assert lut_scores[c] == pytest.approx(exact_scores[c], abs=0.1)

    def test_query_with_too_many_dimensions(self, separable_data):
        X, y = separable_data
        with pytest.raises(DataError):
            _trained(X, y).classify(np.ones(5))

    def test_optimize_binary_labels(self, separable_data):
        X, y = separable_data
        reference = _trained(X, y)
        model = HIKGPModel(_config(), FeatureStore(X))
        model.optimize_binary_labels({2: np.where(y == 2, 1.0, -1.0)}, negative_class=1)
        assert model.get_known_classes() == {1, 2}
        q = np.array([0.3, 0.6, 0.0])
        _, expected = reference.classify(q)
        _, scores = model.classify(q)
        for c in expected:
            assert scores[c] == pytest.approx(expected[c], abs=1e-8)

    def test_optimize_binary_labels_validates_entries(self, separable_data):
        X, _ = separable_data
        model = HIKGPModel(_config(), FeatureStore(X))
        with pytest.raises(DataError):
            model.optimize_binary_labels({1: np.array([1.0, 2.0, -1.0, -1.0])})


# ---------------------------------------------------------------------------
# Hyperparameter optimisation through the model
# ---------------------------------------------------------------------------

class TestOptimization:
    def test_greedy_absexp(self, three_class_data):
        X, y = three_class_data
        model = _trained(
            X, y,
            parameterized_function='absexp',
            optimization=OptimizationConfig(
                parameter_lower_bound=1.0, parameter_upper_bound=2.0, parameter_step_size=0.5
            ),
        )
        exponent = model.optimization_result.parameters[0]
        assert exponent in (1.0, 1.5, 2.0)
        np.testing.assert_allclose(model.feature_store.transformed_features, X ** exponent)
        assert model.hyperparameters['parameters'] == [exponent]

    def test_hyperparameters(self, separable_data):
        X, y = separable_data
        params = _trained(X, y).hyperparameters
        assert params['noise'] == 0.1
        assert params['n_examples'] == 4
        assert params['function'] == 'identity'
        assert 'neg_log_likelihood' in params


# ---------------------------------------------------------------------------
# Variance
# ---------------------------------------------------------------------------

class TestVariance:
    def test_fine_prepared_from_config(self, three_class_data):
        X, y = three_class_data
        model = _trained(X, y, variance_approximation='fine', n_eigenvalues_var_approx=len(X))
        q = X[0] * 0.5
        assert model.predictive_variance_fine(q) == pytest.approx(
            model.predictive_variance_exact(q), abs=1e-6
        )
        assert model.predictive_variance(q) == model.predictive_variance_fine(q)

    def test_rough_requires_preparation(self, three_class_data):
        X, y = three_class_data
        model = _trained(X, y)
        with pytest.raises(StateError):
            model.predictive_variance_rough(X[0])
        model.prepare_variance_approximation_rough()
        assert model.predictive_variance_rough(X[0]) >= model.predictive_variance_exact(X[0]) - 1e-9

    def test_fine_rank_can_be_raised_after_training(self, three_class_data):
        X, y = three_class_data
        model = _trained(X, y, n_eigenvalues_var_approx=3)
        model.prepare_variance_approximation_fine()
        assert len(model.variance_estimator.eigenvector_tables) == 3

    def test_untrained_raises(self, separable_data):
        X, _ = separable_data
        with pytest.raises(StateError):
            HIKGPModel(_config(), FeatureStore(X)).predictive_variance_exact(X[0])


# ---------------------------------------------------------------------------
# Errors and setters
# ---------------------------------------------------------------------------

class TestStateHandling:
    def test_optimize_without_feature_store(self):
        with pytest.raises(ConfigurationError, match="FeatureStore"):
            HIKGPModel(_config()).optimize(np.array([0, 1]))

    def test_label_count_mismatch(self, separable_data):
        X, _ = separable_data
        with pytest.raises(DataError):
            HIKGPModel(_config(), FeatureStore(X)).optimize(np.array([1, 2]))

    def test_single_class(self, separable_data):
        X, _ = separable_data
        with pytest.raises(DataError):
            HIKGPModel(_config(), FeatureStore(X)).optimize(np.ones(4))

    def test_classify_untrained(self, separable_data):
        X, _ = separable_data
        with pytest.raises(StateError, match="not trained"):
            HIKGPModel(_config(), FeatureStore(X)).classify(X[0])

    def test_setters_rejected_after_training(self, separable_data):
        X, y = separable_data
        model = _trained(X, y)
        with pytest.raises(StateError):
            model.set_perform_regression(True)
        with pytest.raises(StateError):
            model.set_feature_store(FeatureStore(X))
        with pytest.raises(StateError):
            model.set_n_eigenvalues_for_variance(3)

    def test_setters_before_training(self, separable_data):
        X, y = separable_data
        model = HIKGPModel(_config())
        model.set_feature_store(FeatureStore(X))
        model.set_n_eigenvalues_for_variance(2)
        model.optimize(y)
        assert model.config.n_eigenvalues_var_approx == 2

    def test_bound_setters_validate_each_other(self):
        model = HIKGPModel(_config())
        model.set_parameter_upper_bound(3.0)
        with pytest.raises(ConfigurationError):
            model.set_parameter_lower_bound(3.0)
        model.set_parameter_lower_bound(0.5)
        with pytest.raises(ConfigurationError):
            model.set_parameter_upper_bound(0.2)
        assert model.config.optimization.parameter_lower_bound == 0.5
        assert model.config.optimization.parameter_upper_bound == 3.0


# ---------------------------------------------------------------------------
# Incremental learning
# ---------------------------------------------------------------------------

class TestIncrements:
    def test_equivalent_to_rebuild(self, three_class_data):
        X, y = three_class_data
        config = dict(quantization=QuantizationConfig(use_quantization=True, number_of_bins=20))
        model = _trained(X[:-1], y[:-1], **config)
        model.add_example(X[-1], y[-1], perform_optimization_after_increment=False)
        rebuilt = _trained(X, y, **config)

        c = int(y[-1])
        np.testing.assert_allclose(model.tables[c].A, rebuilt.tables[c].A, atol=1e-8)
        np.testing.assert_allclose(model.tables[c].B, rebuilt.tables[c].B, atol=1e-8)
        np.testing.assert_allclose(model.tables[c].T, rebuilt.tables[c].T, atol=1e-8)

    def test_multiple_examples(self, three_class_data):
        X, y = three_class_data
        model = _trained(X[:20], y[:20])
        model.add_multiple_examples(X[20:], y[20:], perform_optimization_after_increment=True)
        assert model.feature_store.n_examples == len(X)
        assert len(model.labels) == len(X)
        assert all(len(a) == len(X) for a in model.previous_alphas.values())

    def test_dict_examples(self, separable_data):
        X, y = separable_data
        model = _trained(X, y)
        model.add_multiple_examples([{0: 0.7, 1: 0.3}, {1: 1.0}], [1, 2], False)
        assert model.feature_store.n_examples == 6
        np.testing.assert_allclose(model.feature_store.raw_features[-1], [0.0, 1.0, 0.0])

    def test_binary_stays_binary_for_known_classes(self, separable_data):
        X, y = separable_data
        model = _trained(X, y)
        model.add_example(np.array([0.85, 0.15, 0.0]), 1, False)
        assert model.is_binary
        np.testing.assert_array_equal(model.binary_labels[2], [-1, -1, 1, 1, -1])

    def test_strict_binary_rejects_new_class(self, separable_data):
        X, y = separable_data
        model = _trained(X, y, strict_binary=True)
        tables = model.tables
        with pytest.raises(StateError, match="strict binary"):
            model.add_example(np.array([0.0, 0.0, 1.0]), 3, False)
        assert model.feature_store.n_examples == 4
        assert model.get_known_classes() == {1, 2}
        assert model.tables is tables

    def test_invalid_example_leaves_model_unchanged(self, separable_data):
        X, y = separable_data
        model = _trained(X, y)
        with pytest.raises(DataError):
            model.add_example(np.array([0.5, -0.5, 0.0]), 1)
        with pytest.raises(DataError):
            model.add_multiple_examples(np.ones((2, 3)), [1])
        assert model.feature_store.n_examples == 4

    def test_dataframe_examples(self, separable_data):
        X, y = separable_data
        model = _trained(X, y)
        model.add_multiple_examples(pd.DataFrame([[0.7, 0.3, 0.0], [0.0, 1.0, 0.0]]), [1, 2], False)
        assert model.feature_store.n_examples == 6
        np.testing.assert_allclose(model.feature_store.raw_features[-1], [0.0, 1.0, 0.0])

    def test_failed_variance_preparation_leaves_model_unchanged(self, separable_data, monkeypatch):
        X, y = separable_data
        model = _trained(X, y, variance_approximation='rough')
        tables = model.tables
        binary_labels = model.binary_labels
        estimator = model.variance_estimator
        query = np.array([0.6, 0.4, 0.0])
        scores = model.classify(query)[1]
        variance = model.predictive_variance_rough(query)

        def fail(self, max_eigenvalue):
            raise RuntimeError("variance preparation failed")

        monkeypatch.setattr(VarianceEstimator, 'prepare_rough', fail)
        with pytest.raises(RuntimeError, match="variance preparation failed"):
            model.add_example(np.array([0.0, 0.0, 1.0]), 3, False)
        monkeypatch.undo()

        assert model.feature_store.n_examples == 4
        assert len(model.labels) == 4
        assert model.get_known_classes() == {1, 2}
        assert model.tables is tables
        assert model.binary_labels is binary_labels
        assert model.variance_estimator is estimator
        assert model.classify(query)[1] == scores
        assert model.predictive_variance_rough(query) == pytest.approx(variance)

    def test_new_class_gets_negative_history(self, three_class_data):
        X, y = three_class_data
        model = _trained(X, y)
        model.add_example(X[0], 9, False)
        np.testing.assert_array_equal(model.binary_labels[9][:-1], -np.ones(len(X)))
        assert model.binary_labels[9][-1] == 1.0

    def test_untrained_raises(self, separable_data):
        X, _ = separable_data
        with pytest.raises(StateError):
            HIKGPModel(_config(), FeatureStore(X)).add_example(X[0], 1)


# ---------------------------------------------------------------------------
# Regression
# ---------------------------------------------------------------------------

class TestRegression:
    def test_predictive_mean(self, three_class_data):
        X, _ = three_class_data
        targets = X @ np.arange(6, dtype=float)
        model = _trained(X, targets, perform_regression=True)
        assert model.get_known_classes() == set()

        store = model.feature_store
        alpha = np.linalg.solve(model.kernel_sum.dense_matrix(), targets)
        q = X[2] * 0.8
        assert model.regress(q) == pytest.approx(alpha @ store.kernel_vector(q), abs=1e-8)

    def test_classify_not_available(self, three_class_data):
        X, _ = three_class_data
        model = _trained(X, np.linspace(0, 1, len(X)), perform_regression=True)
        with pytest.raises(StateError):
            model.classify(X[0])

    def test_increment(self, three_class_data):
        X, _ = three_class_data
        targets = np.linspace(0, 1, len(X))
        model = _trained(X[:-1], targets[:-1], perform_regression=True)
        model.add_example(X[-1], targets[-1], False)
        np.testing.assert_allclose(model.binary_labels[0], targets)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class TestPersistence:
    def test_round_trip_scores(self, three_class_data, tmp_path):
        X, y = three_class_data
        model = _trained(
            X, y,
            parameterized_function='absexp',
            variance_approximation='rough',
            quantization=QuantizationConfig(
                use_quantization=True, number_of_bins=50, quantization_type='nd_equidistant'
            ),
            optimization=OptimizationConfig(
                parameter_lower_bound=1.0, parameter_upper_bound=2.0, parameter_step_size=0.5
            ),
        )
        path = tmp_path / "model.joblib"
        model.save(str(path))
        restored = HIKGPModel.load(str(path))

        assert restored.get_known_classes() == model.get_known_classes()
        queries = np.random.default_rng(4).random((8, 6))
        for q in queries:
            best, scores = model.classify(q)
            restored_best, restored_scores = restored.classify(q)
            assert restored_best == best
            for c in scores:
                assert restored_scores[c] == pytest.approx(scores[c], abs=1e-9)
            assert restored.predictive_variance_rough(q) == pytest.approx(
                model.predictive_variance_rough(q), abs=1e-9
            )

    def test_restored_model_accepts_increments(self, separable_data, tmp_path):
        X, y = separable_data
        model = _trained(X, y)
        path = tmp_path / "model.joblib"
        model.save(str(path))
        restored = HIKGPModel.load(str(path))
        restored.add_example(np.array([0.0, 0.1, 0.9]), 3, False)
        assert restored.get_known_classes() == {1, 2, 3}

    def test_save_untrained_raises(self, separable_data, tmp_path):
        X, _ = separable_data
        with pytest.raises(StateError):
            HIKGPModel(_config(), FeatureStore(X)).save(str(tmp_path / "m.joblib"))
