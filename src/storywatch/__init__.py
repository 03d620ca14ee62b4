"""storywatch: asynchronous critique and memory engine for model-assisted story editing."""

from .editor.patches import TextDiffInstruction, apply_diff
from .feedback import FeedbackConfig, FeedbackEngine, TaskType

__all__ = ["FeedbackConfig", "FeedbackEngine", "TaskType", "TextDiffInstruction", "apply_diff"]

__version__ = "0.1.0"
