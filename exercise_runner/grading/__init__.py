"""Test harnesses, result classification and submission grading."""

from exercise_runner.grading.harness import HarnessBuilder
from exercise_runner.grading.orchestrator import SubmissionContractError, SubmissionOrchestrator
from exercise_runner.grading.parser import ResultParser
from exercise_runner.grading.ports import (
    InMemoryProgressTracker,
    InMemorySubmissionStore,
    PersistencePort,
    ProgressPort,
    SubmissionFilter,
)

__all__ = [
    "HarnessBuilder",
    "InMemoryProgressTracker",
    "InMemorySubmissionStore",
    "PersistencePort",
    "ProgressPort",
    "ResultParser",
    "SubmissionContractError",
    "SubmissionFilter",
    "SubmissionOrchestrator",
]
