"""
Puzzle Task Types
Input/output grid pairs as consumed by the training loop
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Any, Optional

from ..cellular_automata.substrate import Grid


@dataclass
class Example:
    """One input/output pair; output is None for unsolved test inputs."""
    input: Grid
    output: Optional[Grid] = None


@dataclass
class Task:
    """A puzzle with train pairs and test inputs."""
    task_id: str
    train: List[Example]
    test: List[Example] = field(default_factory=list)

    @classmethod
    def from_dict(cls, task_id: str, data: Dict[str, Any]) -> "Task":
        """
        Build a task from the ARC JSON shape.

        Args:
            task_id: Task identifier
            data: {'train': [{'input': ..., 'output': ...}], 'test': [{'input': ...}]}
        """
        train = [Example(Grid(ex['input']), Grid(ex['output'])) for ex in data['train']]
        test = [
            Example(Grid(ex['input']), Grid(ex['output']) if 'output' in ex else None)
            for ex in data.get('test', [])
        ]
        return cls(task_id, train, test)

    @property
    def train_inputs(self) -> List[Grid]:
        return [ex.input for ex in self.train]

    @property
    def train_outputs(self) -> List[Grid]:
        return [ex.output for ex in self.train]

    @property
    def test_inputs(self) -> List[Grid]:
        return [ex.input for ex in self.test]


def preserves_grid_size(task: Task) -> bool:
    """True when every train input has the shape of its output."""
    return all(ex.input.shape == ex.output.shape for ex in task.train)


def load_tasks(tasks_path: str, solutions_path: Optional[str] = None) -> List[Task]:
    """
    Load tasks from a JSON file keyed by task id, sorted by id.

    Args:
        tasks_path: Challenges file
        solutions_path: Optional file mapping task id to test outputs
    """
    with open(Path(tasks_path), 'r') as f:
        raw = json.load(f)

    solutions = {}
    if solutions_path:
        with open(Path(solutions_path), 'r') as f:
            solutions = json.load(f)

    tasks = []
    for task_id in sorted(raw):
        task = Task.from_dict(task_id, raw[task_id])
        for example, output in zip(task.test, solutions.get(task_id, [])):
            example.output = Grid(output)
        tasks.append(task)
    return tasks
