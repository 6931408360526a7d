"""
Training data export.
"""

from .base import ExportPayload, TrainingDataSource
from .file_source import FileTrainingDataSource, apply_filters
from .jsonl import MIN_EXAMPLES, JsonlTrainingExporter

__all__ = [
    "ExportPayload",
    "TrainingDataSource",
    "FileTrainingDataSource",
    "apply_filters",
    "MIN_EXAMPLES",
    "JsonlTrainingExporter",
]
