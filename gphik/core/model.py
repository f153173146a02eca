"""
HIK Gaussian-Process Model: Optimisation, Classification, Variance
==================================================================

Ties the components together:

    labels ─► binary label vectors (one-vs-rest / binary)
           ─► GPLikelihoodApprox + HyperparameterOptimizer
           ─► optimal transform written back into the FeatureStore
           ─► ClassificationTableBuilder (A/B, optional LUT T)
           ─► eigen cache + VarianceEstimator preparation

and supports incremental addition of examples and classes.

Key Classes:
    HIKGPConfig: Configuration dataclass (nests OptimizationConfig and
        QuantizationConfig).
    HIKGPModel: The model.

Key Functions:
    prepare_binary_labels: Multi-class label vector -> binary label map.

Usage:
    >>> from gphik.core.model import HIKGPModel, HIKGPConfig
    >>> from gphik.core.feature_store import FeatureStore
    >>> model = HIKGPModel(HIKGPConfig(noise=0.1), FeatureStore(X))
    >>> model.optimize(y)
    >>> best_class, scores = model.classify(x_query)
    >>> variance = model.predictive_variance_rough(x_query)
    >>> model.add_example(x_new, label=3, perform_optimization_after_increment=False)

Design Decisions
----------------
- Invalid state transitions (changing structural settings after
  training, querying an untrained model) raise :class:`StateError`
  rather than silently corrupting tables.
- Training computes tables, eigenpairs and variance tables into locals
  and commits them together at the end.  Increments snapshot the feature
  store and kernel parameters and roll back if anything fails.
- Binary problems keep one label vector (positive = larger class id);
  scores are ``+f`` for the positive and ``−f`` for the negative class.
"""

import logging
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Optional, Set, Tuple

import joblib
import numpy as np
import pandas as pd
from scipy import sparse

from gphik.core.feature_store import FeatureStore
from gphik.core.kernels import HIKDataTerm, KernelSum, NoiseTerm
from gphik.core.likelihood import GPLikelihoodApprox, LikelihoodConfig
from gphik.core.optimization import (
    HyperparameterOptimizer,
    OptimizationConfig,
    OptimizationResult,
)
from gphik.core.parameterized_functions import build_parameterized_function
from gphik.core.quantization import (
    QuantizationConfig,
    build_quantizer,
    quantizer_from_state,
)
from gphik.core.solvers import EigenEstimator, IterativeLinearSolver
from gphik.core.tables import ClassificationTableBuilder, ClassTables, sparse_query
from gphik.core.variance import VarianceEstimator
from gphik.exceptions import ConfigurationError, DataError, StateError

logger = logging.getLogger(__name__)

VARIANCE_APPROXIMATIONS = ('none', 'rough', 'fine', 'exact')
FORMAT_VERSION = 1


@dataclass
class HIKGPConfig:
    """Configuration for :class:`HIKGPModel`.

    Attributes:
        perform_regression: GP regression on real-valued targets instead
            of classification.  Fixed once trained.
        noise: Initial (or fixed) noise σ added to the kernel diagonal.
        parameterized_function: Feature transform (``'identity'``,
            ``'absexp'``, ``'weighted_dim'``).
        initial_parameter_value: Starting value of every transform parameter.
        optimization: Hyperparameter search settings.
        quantization: LUT quantization settings.
        ils_max_iterations: Iteration cap of the conjugate-gradient solver.
        ils_tolerance: Relative residual tolerance of the solver.
        eig_max_iterations: ARPACK iteration cap (None = scipy default).
        n_eigenvalues: Eigenvalues used by the log-determinant approximation.
        n_eigenvalues_var_approx: Eigenpairs used by the fine variance estimate.
        variance_approximation: Variance estimator prepared during training
            (``'none'``, ``'rough'``, ``'fine'``, ``'exact'``).
        verify_approximation: Log exact vs. approximate log-determinants.
        use_previous_alphas: Warm-start the solver with earlier solutions.
        strict_binary: Reject increments that turn a binary model into a
            multi-class one.
        n_jobs: joblib workers (grid evaluation, per-class table builds).
        verbose: Progress bars.
    """
    perform_regression: bool = False
    noise: float = 0.01
    parameterized_function: str = 'identity'
    initial_parameter_value: float = 1.0
    optimization: OptimizationConfig = field(default_factory=OptimizationConfig)
    quantization: QuantizationConfig = field(default_factory=QuantizationConfig)
    ils_max_iterations: int = 1000
    ils_tolerance: float = 1e-8
    eig_max_iterations: Optional[int] = None
    n_eigenvalues: int = 1
    n_eigenvalues_var_approx: int = 1
    variance_approximation: str = 'none'
    verify_approximation: bool = False
    use_previous_alphas: bool = True
    strict_binary: bool = False
    n_jobs: int = 1
    verbose: bool = False

    def validate(self) -> None:
        """Raise ConfigurationError for inconsistent settings."""
        if self.noise <= 0:
            raise ConfigurationError(f"noise must be positive, got {self.noise}")
        if self.n_eigenvalues < 1 or self.n_eigenvalues_var_approx < 1:
            raise ConfigurationError("Eigenvalue counts must be >= 1")
        if self.ils_max_iterations < 1:
            raise ConfigurationError("ils_max_iterations must be >= 1")
        if self.variance_approximation not in VARIANCE_APPROXIMATIONS:
            raise ConfigurationError(
                f"Unknown variance_approximation: {self.variance_approximation!r}. "
                f"Expected one of {VARIANCE_APPROXIMATIONS}."
            )
        self.optimization.validate()
        # Raises for unknown quantizer types or bin counts
        build_quantizer(self.quantization)
        build_parameterized_function(self.parameterized_function)

    @classmethod
    def from_dict(cls, mapping: Mapping[str, Any]) -> 'HIKGPConfig':
        """Build a config from a flat or nested mapping.

        Keys of :class:`OptimizationConfig` and :class:`QuantizationConfig`
        may appear at top level or inside ``'optimization'`` /
        ``'quantization'`` sub-mappings.

        Raises:
            ConfigurationError: On unknown keys.
        """
        own = {f.name for f in fields(cls)} - {'optimization', 'quantization'}
        opt_keys = {f.name for f in fields(OptimizationConfig)}
        quant_keys = {f.name for f in fields(QuantizationConfig)}

        top, opt, quant = {}, {}, {}
        for key, value in mapping.items():
            if key == 'optimization':
                opt.update(value)
            elif key == 'quantization':
                quant.update(value)
            elif key in own:
                top[key] = value
            elif key in opt_keys:
                opt[key] = value
            elif key in quant_keys:
                quant[key] = value
            else:
                raise ConfigurationError(f"Unknown configuration key: {key!r}")

        # Top-level n_jobs / verbose also drive the optimiser unless the
        # nested mapping sets them explicitly
        for key in own & opt_keys:
            if key in top:
                opt.setdefault(key, top[key])

        unknown = (set(opt) - opt_keys) | (set(quant) - quant_keys)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")

        return cls(
            optimization=OptimizationConfig(**opt),
            quantization=QuantizationConfig(**quant),
            **top,
        )


def prepare_binary_labels(labels: np.ndarray) -> Tuple[Dict[int, np.ndarray], Optional[int], Optional[int]]:
    """Decompose a multi-class label vector into binary label vectors.

    Args:
        labels: Class ids (non-negative integers), shape (n,).

    Returns:
        (binary_labels, positive, negative):
            two classes -> one vector keyed by the larger id (``+1`` for it,
            ``−1`` for the smaller id) and both ids;
            more classes -> one one-vs-rest vector per class, ids None.

    Raises:
        DataError: Non-integer or negative labels, or fewer than two classes.
    """
    labels = np.asarray(labels, dtype=float).ravel()
    if not np.all(np.isfinite(labels)) or np.any(labels != np.round(labels)) or np.any(labels < 0):
        raise DataError("Class labels must be non-negative integers")
    classes = np.unique(labels).astype(int)
    if len(classes) < 2:
        raise DataError(
            f"Classification needs at least two classes, got {classes.tolist()}"
        )

    if len(classes) == 2:
        negative, positive = int(classes[0]), int(classes[1])
        return {positive: np.where(labels == positive, 1.0, -1.0)}, positive, negative

    return (
        {int(c): np.where(labels == c, 1.0, -1.0) for c in classes},
        None,
        None,
    )


class HIKGPModel:
    """GP classifier/regressor with the histogram intersection kernel.

    Args:
        config: Model configuration (defaults if None).
        feature_store: Training features; may also be supplied later via
            :meth:`initialize` or :meth:`set_feature_store`.

    Example:
        >>> model = HIKGPModel(HIKGPConfig(), FeatureStore(X_train))
        >>> model.optimize(y_train)
        >>> label, scores = model.classify(x)
    """

    def __init__(
        self,
        config: Optional[HIKGPConfig] = None,
        feature_store: Optional[FeatureStore] = None,
    ):
        self.initialize(config, feature_store)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def initialize(
        self,
        config: Optional[HIKGPConfig] = None,
        feature_store: Optional[FeatureStore] = None,
    ) -> None:
        """(Re)initialise from a config; clears any training state."""
        if config is None:
            config = HIKGPConfig()
        config.validate()
        # Private copy; the caller's config (and its nested optimiser
        # config) stay untouched
        config = replace(config, optimization=replace(config.optimization))
        if config.verbose:
            config.optimization.verbose = True
        if config.n_jobs != 1:
            config.optimization.n_jobs = config.n_jobs
        self.config = config

        self.solver = IterativeLinearSolver(config.ils_max_iterations, config.ils_tolerance)
        self.eigen_estimator = EigenEstimator(config.eig_max_iterations)

        self.feature_store: Optional[FeatureStore] = None
        self.kernel_sum: Optional[KernelSum] = None
        self.quantizer = None
        self.builder: Optional[ClassificationTableBuilder] = None
        self.variance_estimator: Optional[VarianceEstimator] = None
        self.clear()

        if feature_store is not None:
            self._attach_feature_store(feature_store)

    def clear(self) -> None:
        """Drop all training results."""
        self.is_trained = False
        self.labels: Optional[np.ndarray] = None
        self.binary_labels: Dict[int, np.ndarray] = {}
        self.known_classes: Set[int] = set()
        self.binary_label_positive: Optional[int] = None
        self.binary_label_negative: Optional[int] = None
        self.tables: Dict[int, ClassTables] = {}
        self.previous_alphas: Dict[int, np.ndarray] = {}
        self.eigenvalues: Optional[np.ndarray] = None
        self.eigenvectors: Optional[np.ndarray] = None
        self.optimization_result: Optional[OptimizationResult] = None
        self.hyperparameters: Dict[str, Any] = {}
        if self.variance_estimator is not None:
            self.variance_estimator.reset()

    def _attach_feature_store(self, feature_store: FeatureStore) -> None:
        cfg = self.config
        function = build_parameterized_function(
            cfg.parameterized_function,
            n_dims=feature_store.n_dims,
            initial_value=cfg.initial_parameter_value,
        )
        self.feature_store = feature_store
        self.kernel_sum = KernelSum(
            HIKDataTerm(feature_store, function),
            NoiseTerm(feature_store.n_examples, cfg.noise, cfg.optimization.optimize_noise),
        )
        self.quantizer = build_quantizer(cfg.quantization)
        if self.quantizer is not None:
            self.quantizer.fit(feature_store.raw_features)
        self.builder = ClassificationTableBuilder(feature_store, self.quantizer, cfg.n_jobs)
        self.variance_estimator = VarianceEstimator(
            feature_store, self.kernel_sum, self.solver, self.builder
        )

    # ------------------------------------------------------------------
    # Getters / setters
    # ------------------------------------------------------------------

    def get_known_classes(self) -> Set[int]:
        return set(self.known_classes)

    get_known_class_numbers = get_known_classes

    @property
    def is_binary(self) -> bool:
        return self.binary_label_positive is not None

    def _require_untrained(self, what: str) -> None:
        if self.is_trained:
            raise StateError(f"Cannot change {what} of an already trained model")

    def set_perform_regression(self, perform_regression: bool) -> None:
        self._require_untrained('classification/regression mode')
        self.config.perform_regression = bool(perform_regression)

    def set_feature_store(self, feature_store: FeatureStore) -> None:
        self._require_untrained('the feature store')
        self._attach_feature_store(feature_store)

    def set_n_eigenvalues_for_variance(self, n_eigenvalues: int) -> None:
        self._require_untrained('the variance approximation rank')
        if n_eigenvalues < 1:
            raise ConfigurationError("n_eigenvalues_var_approx must be >= 1")
        self.config.n_eigenvalues_var_approx = int(n_eigenvalues)

    def set_parameter_lower_bound(self, lower: float) -> None:
        if lower >= self.config.optimization.parameter_upper_bound:
            raise ConfigurationError(
                f"Lower bound {lower} must be smaller than upper bound "
                f"{self.config.optimization.parameter_upper_bound}"
            )
        self.config.optimization.parameter_lower_bound = float(lower)

    def set_parameter_upper_bound(self, upper: float) -> None:
        if upper <= self.config.optimization.parameter_lower_bound:
            raise ConfigurationError(
                f"Upper bound {upper} must be larger than lower bound "
                f"{self.config.optimization.parameter_lower_bound}"
            )
        self.config.optimization.parameter_upper_bound = float(upper)

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def _require_feature_store(self) -> None:
        if self.feature_store is None:
            raise ConfigurationError("No FeatureStore set; call initialize() or set_feature_store() first")

    def optimize(self, labels) -> 'HIKGPModel':
        """Optimise hyperparameters and build all tables for ``labels``.

        Args:
            labels: Class ids (classification) or real targets
                (regression), one per training example.

        Returns:
            self (for method chaining)
        """
        self._require_feature_store()
        labels = np.asarray(labels, dtype=float).ravel()
        if len(labels) != self.feature_store.n_examples:
            raise DataError(
                f"Got {len(labels)} labels for {self.feature_store.n_examples} examples"
            )

        if self.config.perform_regression:
            if not np.all(np.isfinite(labels)):
                raise DataError("Regression targets must be finite")
            binary, positive, negative = {0: labels.copy()}, None, None
        else:
            binary, positive, negative = prepare_binary_labels(labels)

        self._train(binary, positive, negative)
        self.labels = labels.copy()
        return self

    def optimize_binary_labels(
        self,
        binary_labels: Mapping[int, np.ndarray],
        negative_class: Optional[int] = None,
    ) -> 'HIKGPModel':
        """Optimise from prepared binary label vectors (entries in {+1, −1, 0}).

        Args:
            binary_labels: Mapping class id -> label vector.
            negative_class: With a single vector, the id of the class
                represented by ``−1``; the model then behaves as a binary
                classifier.
        """
        self._require_feature_store()
        if self.config.perform_regression:
            raise StateError("optimize_binary_labels() is not available in regression mode")
        if not binary_labels:
            raise DataError("No binary label vectors given")

        n = self.feature_store.n_examples
        binary = {}
        for class_id, y in binary_labels.items():
            y = np.asarray(y, dtype=float).ravel()
            if len(y) != n:
                raise DataError(f"Label vector of class {class_id} has {len(y)} entries, expected {n}")
            if not np.all(np.isin(y, (-1.0, 0.0, 1.0))):
                raise DataError(f"Label vector of class {class_id} must only contain -1, 0, +1")
            binary[int(class_id)] = y

        positive = negative = None
        if len(binary) == 1 and negative_class is not None:
            positive, negative = next(iter(binary)), int(negative_class)
        self._train(binary, positive, negative)
        self.labels = None
        return self

    def _run_optimizer(self, binary: Mapping[int, np.ndarray], reoptimize: bool):
        """Search (or keep) hyperparameters; kernel left at the result."""
        likelihood = GPLikelihoodApprox(
            binary,
            self.kernel_sum,
            self.solver,
            self.eigen_estimator,
            LikelihoodConfig(
                n_eigenvalues=self.config.n_eigenvalues,
                verify_approximation=self.config.verify_approximation,
                use_previous_alphas=self.config.use_previous_alphas,
            ),
            initial_alphas=self.previous_alphas,
        )
        opt_config = self.config.optimization
        if not reoptimize:
            opt_config = OptimizationConfig(**{**asdict(opt_config), 'method': 'none'})
        result = HyperparameterOptimizer(opt_config).optimize(likelihood)
        return likelihood.last_evaluation, result

    def _train(
        self,
        binary: Dict[int, np.ndarray],
        positive: Optional[int],
        negative: Optional[int],
        reoptimize: bool = True,
    ) -> None:
        evaluation, result = self._run_optimizer(binary, reoptimize)

        # Features are transformed in place by the kernel's data term;
        # alphas come from the final likelihood evaluation.
        tables = self.builder.build(evaluation.alphas)
        eigenvalues, eigenvectors = self._eigen_decomposition(evaluation)
        variance_estimator = self._prepared_variance_estimator(eigenvalues, eigenvectors)
        hyperparameters = self._collect_hyperparameters(result, eigenvalues)

        # Commit
        self.binary_labels = binary
        self.binary_label_positive = positive
        self.binary_label_negative = negative
        if self.config.perform_regression:
            self.known_classes = set()
        else:
            self.known_classes = set(binary)
            if negative is not None:
                self.known_classes.add(negative)
        self.tables = tables
        self.previous_alphas = {c: a.copy() for c, a in evaluation.alphas.items()}
        self.eigenvalues, self.eigenvectors = eigenvalues, eigenvectors
        self.optimization_result = result
        self.variance_estimator = variance_estimator
        self.hyperparameters = hyperparameters
        self.is_trained = True

        logger.info(
            f"Trained HIK-GP: {self.feature_store.n_examples} examples, "
            f"classes={sorted(self.known_classes) or 'regression'}, "
            f"params={self.kernel_sum.get_all_params()}"
        )

    def _eigen_decomposition(self, evaluation) -> Tuple[np.ndarray, np.ndarray]:
        """Reuse the final likelihood eigenpairs when they suffice."""
        k = self.config.n_eigenvalues
        if self.config.variance_approximation == 'fine':
            k = max(k, self.config.n_eigenvalues_var_approx)
        k = min(k, self.feature_store.n_examples)
        if evaluation is not None and evaluation.eigenvalues is not None and len(evaluation.eigenvalues) >= k:
            return evaluation.eigenvalues, evaluation.eigenvectors
        return self.eigen_estimator.estimate(self.kernel_sum, k)

    def _prepared_variance_estimator(
        self, eigenvalues: np.ndarray, eigenvectors: np.ndarray
    ) -> VarianceEstimator:
        """Fresh estimator prepared for the configured approximation."""
        estimator = VarianceEstimator(
            self.feature_store, self.kernel_sum, self.solver, self.builder
        )
        method = self.config.variance_approximation
        if method == 'rough':
            estimator.prepare_rough(eigenvalues[0])
        elif method == 'fine':
            # _eigen_decomposition already returned enough eigenpairs
            k = min(self.config.n_eigenvalues_var_approx, self.feature_store.n_examples)
            estimator.prepare_fine(eigenvalues, eigenvectors, k)
        return estimator

    def _collect_hyperparameters(
        self, result: Optional[OptimizationResult], eigenvalues: Optional[np.ndarray]
    ) -> Dict[str, Any]:
        hyperparameters = dict(self.kernel_sum.get_all_params())
        hyperparameters['n_examples'] = self.feature_store.n_examples
        if result is not None:
            hyperparameters['neg_log_likelihood'] = result.value
            hyperparameters['termination'] = result.termination
        if eigenvalues is not None:
            hyperparameters['max_eigenvalue'] = float(eigenvalues[0])
        return hyperparameters

    def prepare_variance_approximation_rough(self) -> None:
        """Precompute what the rough variance estimate needs."""
        self._require_trained()
        self.variance_estimator.prepare_rough(self.eigenvalues[0])

    def prepare_variance_approximation_fine(self) -> None:
        """Precompute what the fine variance estimate needs."""
        self._require_trained()
        k = min(self.config.n_eigenvalues_var_approx, self.feature_store.n_examples)
        if len(self.eigenvalues) < k:
            self.eigenvalues, self.eigenvectors = self.eigen_estimator.estimate(self.kernel_sum, k)
        self.variance_estimator.prepare_fine(self.eigenvalues, self.eigenvectors, k)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _require_trained(self) -> None:
        if not self.is_trained:
            raise StateError("Model is not trained; call optimize() first")

    def _scores(self, dims: np.ndarray, values: np.ndarray) -> Dict[int, float]:
        if self.is_binary:
            s = self.builder.score(self.tables[self.binary_label_positive], dims, values)
            return {self.binary_label_negative: -s, self.binary_label_positive: s}
        return {c: self.builder.score(self.tables[c], dims, values) for c in sorted(self.tables)}

    def classify(self, query) -> Tuple[int, Dict[int, float]]:
        """Classify a dense, dict or sparse query.

        Returns:
            (best_class, scores): the class with maximal score (lowest id
            on ties) and the score of every known class.
        """
        self._require_trained()
        if self.config.perform_regression:
            raise StateError("classify() is not available in regression mode; use regress()")
        dims, values = sparse_query(query, self.feature_store.n_dims)
        scores = self._scores(dims, values)

        best_class, best_score = None, -np.inf
        for class_id in sorted(scores):
            if best_class is None or scores[class_id] > best_score:
                best_class, best_score = class_id, scores[class_id]
        return best_class, scores

    def classify_many(self, queries) -> pd.DataFrame:
        """Classify every row of ``queries``.

        Returns:
            DataFrame with one score column per known class and a
            ``predicted_class`` column.
        """
        rows = []
        predictions = []
        for query in _iter_rows(queries):
            best, scores = self.classify(query)
            rows.append(scores)
            predictions.append(best)
        frame = pd.DataFrame(rows, columns=sorted(self.known_classes))
        frame['predicted_class'] = predictions
        return frame

    def regress(self, query) -> float:
        """Predictive mean of a regression model."""
        self._require_trained()
        if not self.config.perform_regression:
            raise StateError("regress() is only available in regression mode")
        dims, values = sparse_query(query, self.feature_store.n_dims)
        return self.builder.score(self.tables[0], dims, values)

    def predictive_variance_rough(self, query) -> float:
        self._require_trained()
        return self.variance_estimator.rough(query)

    def predictive_variance_fine(self, query) -> float:
        self._require_trained()
        return self.variance_estimator.fine(query)

    def predictive_variance_exact(self, query) -> float:
        self._require_trained()
        return self.variance_estimator.exact(query)

    def predictive_variance(self, query) -> float:
        """Variance with the configured ``variance_approximation``."""
        method = self.config.variance_approximation
        if method == 'none':
            raise StateError("variance_approximation is 'none'; choose an explicit estimator")
        self._require_trained()
        return self.variance_estimator.estimate(query, method)

    # ------------------------------------------------------------------
    # Incremental learning
    # ------------------------------------------------------------------

    def add_example(self, example, label, perform_optimization_after_increment: bool = True) -> None:
        """Add one labelled example (see :meth:`add_multiple_examples`)."""
        self.add_multiple_examples([example], [label], perform_optimization_after_increment)

    def add_multiple_examples(
        self,
        examples,
        labels,
        perform_optimization_after_increment: bool = True,
    ) -> None:
        """Integrate new labelled examples into the trained model.

        Args:
            examples: 2-D array / sparse matrix, or a sequence of dense,
                dict or sparse rows.
            labels: One label per example.
            perform_optimization_after_increment: Re-run the hyperparameter
                search; otherwise hyperparameters stay fixed and only the
                alphas and tables are refreshed.

        Raises:
            StateError: Untrained model, or a new class under ``strict_binary``.
            DataError: Invalid examples or labels.  The model is unchanged.
        """
        self._require_trained()
        new_features = self.feature_store.validate_new_examples(
            _examples_to_matrix(examples, self.feature_store.n_dims)
        )
        labels = np.asarray(labels, dtype=float).ravel()
        if len(labels) != len(new_features):
            raise DataError(f"Got {len(labels)} labels for {len(new_features)} examples")
        if len(labels) == 0:
            return

        binary, positive, negative, new_classes = self._extend_binary_labels(labels)

        snapshot = self.feature_store.snapshot()
        parameters = self.kernel_sum.get_parameters()
        previous_alphas = self.previous_alphas
        n_old = self.feature_store.n_examples
        try:
            self.feature_store.add_examples(new_features)
            self.kernel_sum.noise_term.n = self.feature_store.n_examples
            self.previous_alphas = {
                c: np.concatenate([previous_alphas.get(c, np.zeros(n_old)), np.zeros(len(labels))])
                for c in binary
            }
            self._train(binary, positive, negative, reoptimize=perform_optimization_after_increment)
        except Exception:
            self.feature_store.restore(snapshot)
            self.kernel_sum.noise_term.n = self.feature_store.n_examples
            self.kernel_sum.set_parameters(parameters)
            self.previous_alphas = previous_alphas
            logger.error("Increment failed; model restored to its previous state")
            raise

        if self.labels is not None:
            self.labels = np.concatenate([self.labels, labels])
        logger.info(
            f"Added {len(labels)} examples (new classes: {sorted(new_classes) or 'none'}, "
            f"re-optimized: {perform_optimization_after_increment})"
        )

    def _extend_binary_labels(self, labels: np.ndarray):
        """Binary label vectors after appending ``labels`` (no mutation)."""
        if self.config.perform_regression:
            if not np.all(np.isfinite(labels)):
                raise DataError("Regression targets must be finite")
            return {0: np.concatenate([self.binary_labels[0], labels])}, None, None, set()

        if np.any(labels != np.round(labels)) or np.any(labels < 0):
            raise DataError("Class labels must be non-negative integers")
        int_labels = labels.astype(int)
        new_classes = set(int_labels.tolist()) - self.known_classes

        if self.is_binary and not new_classes:
            pos = self.binary_label_positive
            y = np.concatenate([self.binary_labels[pos], np.where(int_labels == pos, 1.0, -1.0)])
            return {pos: y}, pos, self.binary_label_negative, new_classes

        if self.is_binary:
            if self.config.strict_binary:
                raise StateError(
                    f"Binary model (classes {sorted(self.known_classes)}) cannot be "
                    f"extended with new classes {sorted(new_classes)} in strict binary mode"
                )
            pos, neg = self.binary_label_positive, self.binary_label_negative
            y_pos = self.binary_labels[pos]
            old = {pos: y_pos, neg: np.where(y_pos == 0, 0.0, -y_pos)}
        else:
            old = self.binary_labels

        binary = {}
        for class_id, y in old.items():
            binary[class_id] = np.concatenate([y, np.where(int_labels == class_id, 1.0, -1.0)])
        n_old = self.feature_store.n_examples
        for class_id in sorted(new_classes):
            binary[class_id] = np.concatenate([
                -np.ones(n_old), np.where(int_labels == class_id, 1.0, -1.0)
            ])
        return binary, None, None, new_classes

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, filepath: str) -> None:
        """Save the trained model to disk (joblib)."""
        self._require_trained()
        ve = self.variance_estimator
        model_data = {
            'format_version': FORMAT_VERSION,
            'config': self.config,
            'raw_features': self.feature_store.raw_features,
            'function_parameters': self.kernel_sum.data_term.get_parameters(),
            'noise': self.kernel_sum.noise,
            'quantizer': None if self.quantizer is None else self.quantizer.get_state(),
            'labels': self.labels,
            'binary_labels': self.binary_labels,
            'known_classes': sorted(self.known_classes),
            'binary_label_positive': self.binary_label_positive,
            'binary_label_negative': self.binary_label_negative,
            'tables': self.tables,
            'previous_alphas': self.previous_alphas,
            'eigenvalues': self.eigenvalues,
            'eigenvectors': self.eigenvectors,
            'variance': {
                'max_eigenvalue': ve.max_eigenvalue,
                'a_squared': ve.a_squared,
                't_squared': ve.t_squared,
                'eigenvalues': ve.eigenvalues,
                'eigenvector_tables': ve.eigenvector_tables,
            },
            'optimization_result': self.optimization_result,
        }
        joblib.dump(model_data, filepath)
        logger.info(f"Model saved to {filepath}")

    @classmethod
    def load(cls, filepath: str) -> 'HIKGPModel':
        """Restore a model written by :meth:`save`."""
        model_data = joblib.load(filepath)
        if model_data.get('format_version') != FORMAT_VERSION:
            raise DataError(f"Unsupported model format: {model_data.get('format_version')!r}")

        model = cls(model_data['config'], FeatureStore(model_data['raw_features']))
        model.kernel_sum.data_term.set_parameters(model_data['function_parameters'])
        model.kernel_sum.noise_term.noise = model_data['noise']
        if model_data['quantizer'] is not None:
            model.quantizer = quantizer_from_state(model_data['quantizer'])
            model.builder.quantizer = model.quantizer

        model.labels = model_data['labels']
        model.binary_labels = model_data['binary_labels']
        model.known_classes = set(model_data['known_classes'])
        model.binary_label_positive = model_data['binary_label_positive']
        model.binary_label_negative = model_data['binary_label_negative']
        model.tables = model_data['tables']
        model.previous_alphas = model_data['previous_alphas']
        model.eigenvalues = model_data['eigenvalues']
        model.eigenvectors = model_data['eigenvectors']
        model.optimization_result = model_data['optimization_result']

        ve = model.variance_estimator
        variance = model_data['variance']
        ve.max_eigenvalue = variance['max_eigenvalue']
        ve.a_squared = variance['a_squared']
        ve.t_squared = variance['t_squared']
        ve.eigenvalues = variance['eigenvalues']
        ve.eigenvector_tables = variance['eigenvector_tables']

        model.is_trained = True
        model.hyperparameters = model._collect_hyperparameters(
            model.optimization_result, model.eigenvalues
        )
        logger.info(f"Model loaded from {filepath}")
        return model


def _iter_rows(queries):
    """Yield query rows of an array, sparse matrix, DataFrame or sequence."""
    if isinstance(queries, pd.DataFrame):
        queries = queries.to_numpy(dtype=float)
    if sparse.issparse(queries):
        queries = sparse.csr_matrix(queries)
        for i in range(queries.shape[0]):
            yield queries.getrow(i)
    else:
        yield from queries


def _examples_to_matrix(examples, n_dims: int):
    """Stack dense/dict/sparse rows into an (m, n_dims) matrix."""
    if isinstance(examples, pd.DataFrame):
        return examples.to_numpy(dtype=float)
    if sparse.issparse(examples):
        return examples
    if isinstance(examples, np.ndarray) and examples.ndim == 2:
        return examples
    rows = []
    for example in examples:
        dims, values = sparse_query(example, n_dims)
        row = np.zeros(n_dims)
        row[dims] = values
        rows.append(row)
    return np.array(rows).reshape(len(rows), n_dims)
