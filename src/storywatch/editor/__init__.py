"""Text patch helpers for applying model-proposed edits to entity state."""

from .patches import (
    EntityUpdateResult,
    TextDiffInstruction,
    apply_diff,
    apply_entity_updates,
    apply_field_update,
)

__all__ = [
    "EntityUpdateResult",
    "TextDiffInstruction",
    "apply_diff",
    "apply_entity_updates",
    "apply_field_update",
]
