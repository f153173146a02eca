#!/usr/bin/env python3
"""
HIK-GP Evaluation Script
========================

Trains an HIK-GP model on synthetic histograms and reports:

- hold-out accuracy of exact (A/B) and quantized (LUT) classification
- the largest score deviation between the two
- rough / fine / exact predictive variances on a few hold-out queries
- the effect of an incremental update without re-optimization

Usage:
    python scripts/evaluate_gphik.py --n-per-class 50 --n-dims 20 --n-classes 3

    # Parameterized transform, simplex search and a saved model:
    python scripts/evaluate_gphik.py --function absexp --method downhillsimplex \\
        --save model.joblib
"""

import argparse
import logging
import time

import numpy as np

from gphik.core.feature_store import FeatureStore
from gphik.core.model import HIKGPConfig, HIKGPModel
from gphik.utils.data_generator import DataGenerator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def train(X, y, args, use_quantization: bool) -> HIKGPModel:
    config = HIKGPConfig.from_dict({
        'noise': args.noise,
        'parameterized_function': args.function,
        'method': args.method,
        'parameter_lower_bound': args.lower_bound,
        'parameter_upper_bound': args.upper_bound,
        'parameter_step_size': args.step_size,
        'use_quantization': use_quantization,
        'number_of_bins': args.bins,
        'n_eigenvalues_var_approx': args.n_eigenvalues,
        'n_jobs': args.n_jobs,
        'verbose': args.verbose,
    })
    start = time.perf_counter()
    model = HIKGPModel(config, FeatureStore(X))
    model.optimize(y)
    logger.info(
        f"Trained {'quantized' if use_quantization else 'exact'} model "
        f"in {time.perf_counter() - start:.2f}s: {model.hyperparameters}"
    )
    return model


def main():
    """Main evaluation script."""
    parser = argparse.ArgumentParser(
        description='Evaluate HIK-GP classification and variance estimators',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('--n-per-class', type=int, default=40, help='Examples per class (default: 40)')
    parser.add_argument('--n-dims', type=int, default=16, help='Histogram bins (default: 16)')
    parser.add_argument('--n-classes', type=int, default=3, help='Number of classes (default: 3)')
    parser.add_argument('--sparsity', type=float, default=0.3, help='Fraction of zeroed bins (default: 0.3)')
    parser.add_argument('--seed', type=int, default=0, help='Random seed (default: 0)')
    parser.add_argument('--noise', type=float, default=0.01, help='GP noise (default: 0.01)')
    parser.add_argument(
        '--function',
        choices=['identity', 'absexp', 'weighted_dim'],
        default='identity',
        help='Feature transform (default: identity)'
    )
    parser.add_argument(
        '--method',
        choices=['greedy', 'downhillsimplex', 'none'],
        default='greedy',
        help='Hyperparameter search (default: greedy)'
    )
    parser.add_argument('--lower-bound', type=float, default=1.0, help='Parameter lower bound (default: 1.0)')
    parser.add_argument('--upper-bound', type=float, default=5.0, help='Parameter upper bound (default: 5.0)')
    parser.add_argument('--step-size', type=float, default=0.5, help='Greedy step size (default: 0.5)')
    parser.add_argument('--bins', type=int, default=100, help='Quantization bins (default: 100)')
    parser.add_argument('--n-eigenvalues', type=int, default=5, help='Rank of the fine variance (default: 5)')
    parser.add_argument('--n-jobs', type=int, default=1, help='joblib workers (default: 1)')
    parser.add_argument('--save', type=str, default=None, help='Save the exact model to this path')
    parser.add_argument('--verbose', action='store_true', help='Show progress bars')

    args = parser.parse_args()

    X, y = DataGenerator.generate_histograms(
        args.n_per_class, args.n_dims, args.n_classes, seed=args.seed, sparsity=args.sparsity
    )
    rng = np.random.default_rng(args.seed)
    holdout = rng.random(len(y)) < 0.25
    X_train, y_train = X[~holdout], y[~holdout]
    X_test, y_test = X[holdout], y[holdout]

    logger.info("=" * 80)
    logger.info("HIK-GP Evaluation")
    logger.info("=" * 80)
    logger.info(f"Training examples: {len(y_train)}, hold-out: {len(y_test)}, dims: {args.n_dims}")

    exact = train(X_train, y_train, args, use_quantization=False)
    quantized = train(X_train, y_train, args, use_quantization=True)

    exact_frame = exact.classify_many(X_test)
    quantized_frame = quantized.classify_many(X_test)
    classes = sorted(exact.get_known_classes())
    deviation = np.abs(exact_frame[classes].values - quantized_frame[classes].values).max()

    logger.info("")
    logger.info(f"Exact accuracy:      {np.mean(exact_frame['predicted_class'].values == y_test):.3f}")
    logger.info(f"Quantized accuracy:  {np.mean(quantized_frame['predicted_class'].values == y_test):.3f}")
    logger.info(f"Max score deviation: {deviation:.2e} ({args.bins} bins)")

    exact.prepare_variance_approximation_rough()
    exact.prepare_variance_approximation_fine()
    logger.info("")
    logger.info(f"{'query':>5}  {'rough':>10}  {'fine':>10}  {'exact':>10}")
    for i, q in enumerate(X_test[:5]):
        logger.info(
            f"{i:>5}  {exact.predictive_variance_rough(q):>10.5f}  "
            f"{exact.predictive_variance_fine(q):>10.5f}  "
            f"{exact.predictive_variance_exact(q):>10.5f}"
        )

    start = time.perf_counter()
    exact.add_multiple_examples(X_test, y_test, perform_optimization_after_increment=False)
    logger.info("")
    logger.info(
        f"Incremental update with {len(y_test)} examples took "
        f"{time.perf_counter() - start:.2f}s (n={exact.feature_store.n_examples})"
    )

    if args.save:
        exact.save(args.save)

    logger.info("✓ Evaluation complete!")
    return 0


if __name__ == '__main__':
    exit(main())
