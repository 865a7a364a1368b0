"""
Diagnostic Metrics
Population statistics and run summaries for evolved automata
"""

import json
from pathlib import Path
from typing import Dict, Iterable, Any

import numpy as np


def population_statistics(fitness: np.ndarray) -> Dict[str, float]:
    """
    Summary statistics of one generation's losses.

    Args:
        fitness: Loss of every member (lower is better)

    Returns:
        Dictionary with best, mean, worst and std
    """
    fitness = np.asarray(fitness, dtype=np.float64)
    if fitness.size == 0:
        raise ValueError("fitness must not be empty")

    return {
        'best': float(fitness.min()),
        'mean': float(fitness.mean()),
        'worst': float(fitness.max()),
        'std': float(fitness.std()),
    }


def summarize_results(results: Iterable) -> Dict[str, Any]:
    """
    Aggregate per-task training results.

    Args:
        results: TrainResult objects

    Returns:
        Counts of trained, skipped and solved tasks, mean accuracy/fitness and,
        over every test grid with a known output, the fraction answered exactly
    """
    results = list(results)
    trained = [r for r in results if not r.skipped]

    summary = {
        'num_tasks': len(results),
        'num_trained': len(trained),
        'num_skipped': len(results) - len(trained),
        'num_solved': sum(1 for r in trained if r.solved),
        'mean_train_accuracy': 0.0,
        'mean_best_fitness': None,
        'total_evaluations': sum(r.evaluations for r in trained),
        'total_seconds': sum(r.elapsed_seconds for r in trained),
        'total_test_grids': sum(len(r.test_accuracies) for r in results),
        'total_test_correct': sum(r.test_correct for r in results),
        'test_accuracy': None,
    }

    if summary['total_test_grids']:
        summary['test_accuracy'] = summary['total_test_correct'] / summary['total_test_grids']

    if trained:
        summary['mean_train_accuracy'] = float(np.mean([r.mean_accuracy for r in trained]))
        summary['mean_best_fitness'] = float(np.mean([r.best_fitness for r in trained]))
        summary['solve_rate'] = summary['num_solved'] / len(trained)

    return summary


def save_summary(summary: Dict[str, Any], output_path: str):
    """Write a summary dictionary as indented JSON."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w') as f:
        json.dump(summary, f, indent=2)
