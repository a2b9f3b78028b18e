"""Client-side conversation sync: progression, echo suppression and cross-surface mirroring."""

from src.sync.progression import Phase, ProgressionMachine, Step, Trigger
from src.sync.script import DemoScript, load_script
from src.sync.surface import ConversationSurface

__all__ = [
    "ConversationSurface",
    "DemoScript",
    "Phase",
    "ProgressionMachine",
    "Step",
    "Trigger",
    "load_script",
]
