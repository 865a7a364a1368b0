"""
Tests for Training Loop and Evaluators
"""

import json

import pytest
import numpy as np
from src.cellular_automata.core import AutomatonModel, ParameterShape, UpdatePolicy
from src.cellular_automata.substrate import COLOR_ENCODING, ChannelLayout, Grid
from src.diagnostics.metrics import population_statistics, summarize_results, save_summary
from src.training.evaluator import (
    PopulationEvaluator,
    SequentialEvaluator,
    ParallelEvaluator,
    build_evaluator
)
from src.training.tasks import Example, Task, load_tasks, preserves_grid_size
from src.training.trainer import NCATrainer, TrainedModel, TrainResult
from src.utils.config import TrainConfig
from src.utils.exceptions import ConfigurationError, GridShapeError


def small_config(**overrides):
    values = dict(
        hidden_channels=1,
        max_steps=3,
        population_size=8,
        subset_size=8,
        max_evaluations=32,
        num_models=1,
        seed=0
    )
    values.update(overrides)
    return TrainConfig(**values)


def recolor_task(task_id="recolor"):
    """Task mapping color 1 to color 2, sizes preserved."""
    pairs = [
        ([[1, 0, 0], [0, 1, 0], [0, 0, 1]], [[2, 0, 0], [0, 2, 0], [0, 0, 2]]),
        ([[0, 1], [1, 1]], [[0, 2], [2, 2]]),
    ]
    train = [Example(Grid(i), Grid(o)) for i, o in pairs]
    test = [Example(Grid([[1, 1, 0]]))]
    return Task(task_id, train, test)


def test_task_from_dict():
    """Test parsing of the ARC task shape."""
    data = {
        'train': [{'input': [[1, 2]], 'output': [[2, 1]]}],
        'test': [{'input': [[3, 3]]}]
    }

    task = Task.from_dict("abc", data)

    assert task.task_id == "abc"
    assert task.train_inputs == [Grid([[1, 2]])]
    assert task.train_outputs == [Grid([[2, 1]])]
    assert task.test_inputs == [Grid([[3, 3]])]
    assert task.test[0].output is None
    assert preserves_grid_size(task)


def test_load_tasks(tmp_path):
    """Test loading challenges and attaching solutions."""
    challenges = {
        'b': {'train': [{'input': [[1]], 'output': [[2]]}], 'test': [{'input': [[1]]}]},
        'a': {'train': [{'input': [[1]], 'output': [[2, 2]]}], 'test': [{'input': [[4]]}]},
    }
    solutions = {'b': [[[2]]]}
    (tmp_path / "challenges.json").write_text(json.dumps(challenges))
    (tmp_path / "solutions.json").write_text(json.dumps(solutions))

    tasks = load_tasks(tmp_path / "challenges.json", tmp_path / "solutions.json")

    assert [t.task_id for t in tasks] == ['a', 'b']
    assert not preserves_grid_size(tasks[0])
    assert tasks[1].test[0].output == Grid([[2]])
    assert tasks[0].test[0].output is None


def test_sequential_and_parallel_evaluators_agree():
    """Test that both executors give the same population losses."""
    config = small_config(update_phases="two_phase", update_combine="accumulate", max_steps=6)
    layout = ChannelLayout(hidden=config.hidden_channels)
    policy = UpdatePolicy.from_names(config.update_phases, config.update_combine)
    rng = np.random.default_rng(1)
    population = rng.normal(0.0, 0.3, size=(5, ParameterShape(layout).n_params))
    examples = recolor_task().train

    sequential = build_evaluator(config, layout, policy)
    config.backend = "parallel"
    config.devices = ["cpu", "cpu"]
    parallel = build_evaluator(config, layout, policy)

    assert isinstance(sequential, SequentialEvaluator)
    assert isinstance(parallel, ParallelEvaluator)
    assert np.allclose(
        sequential.evaluate(population, examples, config.max_steps),
        parallel.evaluate(population, examples, config.max_steps),
        atol=1e-9
    )


def test_evaluator_includes_weight_penalty():
    """Test that losses add regularization to the pixel error."""
    layout = ChannelLayout(hidden=0)
    evaluator = SequentialEvaluator(layout, UpdatePolicy(), l1_coeff=0.0, l2_coeff=1.0)
    shape = ParameterShape(layout)
    population = np.zeros((2, shape.n_params))
    population[1, :shape.n_weights] = 0.1
    examples = [Example(Grid([[0]]), Grid([[0]]))]

    losses = evaluator.evaluate(population, examples, steps=0)

    assert losses[0] == pytest.approx(0.0)
    assert losses[1] == pytest.approx(0.01)


def test_evaluator_rejects_bad_examples():
    """Test that examples need same-shape targets."""
    evaluator = SequentialEvaluator(ChannelLayout(), UpdatePolicy())
    population = np.zeros((1, ParameterShape(ChannelLayout()).n_params))

    with pytest.raises(GridShapeError):
        evaluator.evaluate(population, [], 1)
    with pytest.raises(GridShapeError):
        evaluator.evaluate(population, [Example(Grid([[1]]), Grid([[1, 1]]))], 1)
    with pytest.raises(GridShapeError):
        evaluator.evaluate(population, [Example(Grid([[1]]))], 1)


def test_trainer_rejects_invalid_config():
    """Test validation at construction."""
    with pytest.raises(ConfigurationError):
        NCATrainer(small_config(population_size=1))
    with pytest.raises(ConfigurationError):
        NCATrainer(small_config(subset_size=10_000))


def test_train_task():
    """Test one short training run."""
    trainer = NCATrainer(small_config())

    result = trainer.train_task(recolor_task())

    assert not result.skipped
    assert result.generations == 4
    assert result.evaluations == 32
    assert len(result.fitness_history) == 4
    assert result.best_fitness == min(result.fitness_history)
    assert np.isfinite(result.best_fitness)
    assert result.best_model is not None
    assert len(result.train_accuracies) == 2
    assert all(0.0 <= acc <= 1.0 for acc in result.train_accuracies)


def test_train_task_is_reproducible():
    """Test that equal seeds give equal runs."""
    first = NCATrainer(small_config()).train_task(recolor_task())
    second = NCATrainer(small_config()).train_task(recolor_task())

    assert first.best_fitness == second.best_fitness
    assert np.array_equal(first.best_model.params, second.best_model.params)


def test_train_task_parallel_backend():
    """Test training with the batched executor on two devices."""
    trainer = NCATrainer(small_config(backend="parallel", devices=["cpu", "cpu"]))

    result = trainer.train_task(recolor_task())

    assert result.evaluations == 32
    assert trainer.cross_check(result, recolor_task()) <= 1e-5


def test_resized_task_is_skipped():
    """Test that tasks changing grid size are not trained."""
    task = Task("grow", [Example(Grid([[1]]), Grid([[1, 1], [1, 1]]))], [Example(Grid([[1]]))])
    trainer = NCATrainer(small_config())

    result = trainer.train_task(task)

    assert result.skipped
    assert result.best_model is None
    assert trainer.predict(result, task) == [[]]
    assert result.to_dict()['model'] is None


def test_predict_and_train_tasks():
    """Test predictions on test inputs and multi-task training."""
    trainer = NCATrainer(small_config())
    tasks = [recolor_task("t1"), recolor_task("t2")]

    results = trainer.train_tasks(tasks)
    predictions = trainer.predict(results["t1"], tasks[0])

    assert sorted(results) == ["t1", "t2"]
    assert len(predictions) == 1
    assert len(predictions[0]) == 1
    assert predictions[0][0].shape == (1, 3)


def test_result_serialization():
    """Test the JSON-friendly result summary."""
    result = NCATrainer(small_config()).train_task(recolor_task())

    data = json.loads(json.dumps(result.to_dict()))

    assert data['task_id'] == "recolor"
    assert data['evaluations'] == 32
    assert data['model']['hidden_channels'] == 1


def painter(color, train_accuracies, fitness):
    """Trained model that paints every cell with one color."""
    layout = ChannelLayout(hidden=1)
    shape = ParameterShape(layout)
    params = np.zeros(shape.n_params)
    params[shape.n_weights:shape.n_weights + layout.visible] = COLOR_ENCODING[color]
    return TrainedModel(AutomatonModel(params, layout, max_steps=1), fitness, train_accuracies)


def test_population_evaluator_is_abstract():
    """Test that the evaluator base class needs an executor-specific subclass."""
    with pytest.raises(TypeError):
        PopulationEvaluator(ChannelLayout(), UpdatePolicy())


def test_multiple_models_per_task():
    """Test that each task trains several independently seeded models."""
    trainer = NCATrainer(small_config(num_models=3))

    result = trainer.train_task(recolor_task())
    fitness = [m.fitness for m in result.models]

    assert len(result.models) == 3
    assert result.evaluations == 96
    assert result.generations == 12
    assert fitness == sorted(fitness)
    assert result.best_model is result.models[0].model
    assert result.best_fitness == fitness[0]
    assert result.train_accuracies == result.models[0].train_accuracies
    assert len(result.to_dict()['models']) == 3


def test_candidates_prefer_solved_models():
    """Test that models solving every train example are preferred."""
    unsolved = painter(3, [0.5, 1.0], 0.01)
    solved_a = painter(5, [1.0, 1.0], 0.02)
    solved_b = painter(7, [1.0, 1.0], 0.03)

    result = TrainResult("t", models=[unsolved, solved_a, solved_b])

    assert [m.fitness for m in result.candidates()] == [0.02, 0.03]
    assert [m.fitness for m in TrainResult("u", models=[unsolved]).candidates()] == [0.01]
    assert TrainResult("empty").candidates() == []


def test_predict_votes_over_solved_models():
    """Test majority voting with two attempts and best-attempt scoring."""
    models = [
        painter(3, [0.5], 0.01),
        painter(5, [1.0], 0.02),
        painter(7, [1.0], 0.03),
        painter(7, [1.0], 0.04),
    ]
    result = TrainResult("vote", best_model=models[0].model, models=models)
    task = Task(
        "vote",
        [Example(Grid([[1, 2]]), Grid([[7, 7]]))],
        [Example(Grid([[2, 1]]), Grid([[5, 5]]))]
    )

    trainer = NCATrainer(small_config(num_attempts=2))

    assert trainer.predict(result, task) == [[Grid([[7, 7]]), Grid([[5, 5]])]]
    assert trainer.score(result, task) == [1.0]
    assert NCATrainer(small_config(num_attempts=1)).score(result, task) == [0.0]


def test_train_task_scores_test_outputs():
    """Test that known test outputs are scored after training."""
    task = recolor_task()
    task.test[0].output = Grid([[2, 2, 0]])

    result = NCATrainer(small_config()).train_task(task)

    assert len(result.test_accuracies) == 1
    assert 0.0 <= result.test_accuracies[0] <= 1.0
    assert result.to_dict()['test_accuracies'] == result.test_accuracies


def test_skipped_task_counts_test_outputs_as_wrong():
    """Test that a skipped task still reports its test grids."""
    task = Task("grow", [Example(Grid([[1]]), Grid([[1, 1]]))], [Example(Grid([[1]]), Grid([[1, 1]]))])

    result = NCATrainer(small_config()).train_task(task)

    assert result.skipped
    assert result.test_accuracies == [0.0]
    assert result.test_correct == 0


def test_population_statistics():
    """Test per-generation statistics."""
    stats = population_statistics(np.array([3.0, 1.0, 2.0]))

    assert stats['best'] == 1.0
    assert stats['worst'] == 3.0
    assert stats['mean'] == pytest.approx(2.0)
    with pytest.raises(ValueError):
        population_statistics(np.array([]))


def test_summarize_results(tmp_path):
    """Test aggregation over tasks."""
    results = [
        TrainResult("a", best_fitness=0.1, train_accuracies=[1.0, 1.0], evaluations=10,
                    test_accuracies=[1.0, 0.5]),
        TrainResult("b", best_fitness=0.3, train_accuracies=[0.5], evaluations=10,
                    test_accuracies=[1.0]),
        TrainResult("c", skipped=True, test_accuracies=[0.0]),
    ]

    summary = summarize_results(results)
    save_summary(summary, tmp_path / "out" / "summary.json")

    assert summary['num_tasks'] == 3
    assert summary['num_trained'] == 2
    assert summary['num_skipped'] == 1
    assert summary['num_solved'] == 1
    assert summary['mean_train_accuracy'] == pytest.approx(0.75)
    assert summary['total_evaluations'] == 20
    assert summary['total_test_grids'] == 4
    assert summary['total_test_correct'] == 2
    assert summary['test_accuracy'] == pytest.approx(0.5)
    assert summarize_results([TrainResult("d")])['test_accuracy'] is None
    assert json.loads((tmp_path / "out" / "summary.json").read_text())['num_solved'] == 1


if __name__ == "__main__":
    pytest.main([__file__])
