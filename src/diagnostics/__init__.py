"""
Diagnostics Module
Executor parity checks and run metrics
"""

from .metrics import population_statistics, summarize_results, save_summary
from .parity import (
    ParityReport,
    check_parity,
    assert_parity,
    compare_model,
    compare_substrates
)

__all__ = [
    'population_statistics',
    'summarize_results',
    'save_summary',
    'ParityReport',
    'check_parity',
    'assert_parity',
    'compare_model',
    'compare_substrates'
]
