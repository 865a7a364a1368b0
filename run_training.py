"""
Train evolved automata on puzzle tasks and write per-task results
"""

import argparse
import json
import time
from pathlib import Path

from src.cellular_automata.core import UpdatePolicy
from src.cellular_automata.substrate import ChannelLayout
from src.diagnostics.metrics import summarize_results, save_summary
from src.diagnostics.parity import check_parity
from src.training.tasks import load_tasks
from src.training.trainer import NCATrainer
from src.utils.config import apply_mode, load_config
from src.utils.exceptions import ParityError
from src.utils.logger import setup_logger


def main():
    """Command line entry point."""
    parser = argparse.ArgumentParser(description='Train evolved neural cellular automata on grid puzzles')
    parser.add_argument('tasks', help='Task JSON file keyed by task id')
    parser.add_argument('--solutions', help='Optional JSON file with test outputs')
    parser.add_argument('--config', default='configs/train.yaml',
                        help='YAML configuration (created with defaults if missing)')
    parser.add_argument('--mode', choices=['full', 'quick', 'debug'], default='full',
                        help='Search budget preset (default: full)')
    parser.add_argument('--task-ids', nargs='+', help='Only train these task ids')
    parser.add_argument('--output-dir', default='results', help='Directory for result files')
    parser.add_argument('--check-parity', action='store_true',
                        help='Cross-check the parallel executor before training')
    parser.add_argument('--log-file', help='Optional log file')
    parser.add_argument('--verbose', action='store_true', help='Show progress bars')

    args = parser.parse_args()
    logger = setup_logger("nca_trainer", args.log_file)

    config = apply_mode(load_config(args.config), args.mode)

    if args.check_parity:
        report = check_parity(
            layout=ChannelLayout(hidden=config.hidden_channels),
            policy=UpdatePolicy.from_names(config.update_phases, config.update_combine),
            device=config.devices[0],
            weight_layout=config.weight_layout
        )
        if not report.passed:
            raise ParityError(f"Parallel executor disagrees with reference: {report.to_dict()}")

    tasks = load_tasks(args.tasks, args.solutions)
    if args.task_ids:
        wanted = set(args.task_ids)
        tasks = [task for task in tasks if task.task_id in wanted]
    logger.info(f"Loaded {len(tasks)} tasks from {args.tasks}")

    start_time = time.time()
    trainer = NCATrainer(config, logger=logger)
    results = trainer.train_tasks(tasks, verbose=args.verbose)

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    predictions = {}
    for task in tasks:
        result = results[task.task_id]
        with open(output_dir / f"{task.task_id}.json", 'w') as f:
            json.dump(result.to_dict(), f, indent=2)
        predictions[task.task_id] = [
            [grid.to_list() for grid in attempts]
            for attempts in trainer.predict(result, task)
        ]

    with open(output_dir / "predictions.json", 'w') as f:
        json.dump(predictions, f)

    summary = summarize_results(results.values())
    summary['wall_seconds'] = time.time() - start_time
    save_summary(summary, output_dir / "summary.json")

    logger.info(
        f"Done: {summary['num_solved']}/{summary['num_trained']} solved on train, "
        f"{summary['num_skipped']} skipped, {summary['wall_seconds'] / 60:.1f} minutes"
    )
    if summary['test_accuracy'] is not None:
        logger.info(
            f"Test: {summary['total_test_correct']}/{summary['total_test_grids']} grids correct "
            f"({summary['test_accuracy']:.3f})"
        )


if __name__ == "__main__":
    main()
