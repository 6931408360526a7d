"""
JSONL chat-format training exporter.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from ..core.exceptions import ValidationError
from ..core.types import FilterSpec
from .base import ExportPayload, ExportPreview, TrainingDataSource


logger = logging.getLogger(__name__)


MIN_EXAMPLES = 10
PREVIEW_LIMIT = 50

SYSTEM_PROMPT = (
    "Given a message, extract:\n"
    "- emotion\n"
    "- tone\n"
    "- intensity (0.0 to 1.0)\n"
    "- topic\n"
    "- corrected assistant message (as 'message')\n"
    "- optional therapist note"
)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")


def sanitize_text(value: str) -> str:
    """Strip control characters and collapse whitespace."""
    return _WHITESPACE.sub(" ", _CONTROL_CHARS.sub("", value)).strip()


def is_exportable(row: Dict[str, Any]) -> bool:
    """A row needs content, emotion, tone, numeric intensity and topic."""
    intensity = row.get("intensity")
    return bool(
        row.get("content")
        and row.get("emotion")
        and row.get("tone")
        and isinstance(intensity, (int, float))
        and not isinstance(intensity, bool)
        and row.get("topic")
    )


def row_to_example(row: Dict[str, Any]) -> Dict[str, Any]:
    """Convert one annotated row into a chat-format training example."""
    lines = [
        f"emotion: {row['emotion']}",
        f"tone: {row['tone']}",
        f"intensity: {float(row['intensity']):.2f}",
        f"topic: {row['topic']}",
        f"message: {sanitize_text(row['content'])}",
    ]
    if row.get("note"):
        lines.append(f"note: {sanitize_text(row['note'])}")
    lines.append(f"source: {'annotated' if row.get('annotation_updated_at') else 'auto'}")
    
    return {
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": row["content"].strip()},
            {"role": "assistant", "content": "\n".join(lines)},
        ]
    }


class JsonlTrainingExporter:
    """
    Builds a JSONL training file from a data source.
    
    Example:
        >>> exporter = JsonlTrainingExporter(source, min_examples=10)
        >>> payload = exporter.build(filter_spec)
        >>> payload.example_count
        42
    """
    
    def __init__(self, source: TrainingDataSource, min_examples: int = MIN_EXAMPLES):
        self.source = source
        self.min_examples = min_examples
    
    def build(self, filter_spec: FilterSpec, filename: Optional[str] = None) -> ExportPayload:
        """
        Export the rows selected by ``filter_spec``.
        
        Raises:
            ValidationError: If fewer than min_examples usable rows remain
        """
        rows = self.source.fetch_rows(filter_spec)
        examples: List[str] = [
            json.dumps(row_to_example(row), ensure_ascii=False)
            for row in rows
            if is_exportable(row)
        ]
        skipped = len(rows) - len(examples)
        
        if len(examples) < self.min_examples:
            logger.warning(
                f"Export produced {len(examples)} examples ({skipped} skipped), "
                f"minimum is {self.min_examples}"
            )
            raise ValidationError(
                f"Training file must have at least {self.min_examples} examples "
                f"(found {len(examples)})"
            )
        
        logger.info(f"Built training export with {len(examples)} examples ({skipped} skipped)")
        return ExportPayload(
            content="\n".join(examples).encode("utf-8"),
            example_count=len(examples),
            skipped_count=skipped,
            filename=filename or "training.jsonl",
        )
    
    def preview(self, filter_spec: FilterSpec, limit: int = PREVIEW_LIMIT) -> ExportPreview:
        """Count and sample the rows ``filter_spec`` selects without building a file."""
        rows = self.source.fetch_rows(filter_spec)
        exportable = sum(1 for row in rows if is_exportable(row))
        logger.debug(f"Previewed {len(rows)} rows ({exportable} exportable)")
        return ExportPreview(
            filter_hash=filter_spec.filter_hash,
            total=len(rows),
            exportable=exportable,
            min_examples=self.min_examples,
            rows=[dict(row) for row in rows[:limit]],
        )
