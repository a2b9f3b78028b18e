"""Demo script loading.

A script is a JSON document::

    {
        "messages": [{"id": "...", "role": "ai-agent", "parts": [...]}, ...],
        "pretrainedWorkflows": [{"id": "...", "workflow": "...", "category": "..."}]
    }

Message content is opaque here; only ids, roles and part types matter to
the progression machine.
"""

from pathlib import Path
from typing import Optional, Union

from pydantic import ConfigDict, ValidationError, field_validator

from src.core.exceptions import ScriptError
from src.core.logger import logger
from src.models.conversation import Message
from src.models.conversation.types import WireModel
from src.sync.panel import WorkflowEntry


class DemoScript(WireModel):
    model_config = ConfigDict(frozen=True)

    messages: tuple[Message, ...] = ()
    pretrained_workflows: tuple[WorkflowEntry, ...] = ()

    @field_validator("messages")
    @classmethod
    def _unique_ids(cls, messages: tuple[Message, ...]) -> tuple[Message, ...]:
        seen: set[str] = set()
        for message in messages:
            if message.id in seen:
                raise ValueError(f"duplicate message id in script: {message.id}")
            seen.add(message.id)
        return messages

    @field_validator("pretrained_workflows")
    @classmethod
    def _mark_pretrained(cls, workflows: tuple[WorkflowEntry, ...]) -> tuple[WorkflowEntry, ...]:
        return tuple(w.model_copy(update={"is_pretrained": True, "is_new": False}) for w in workflows)

    def __len__(self) -> int:
        return len(self.messages)

    def get(self, index: int) -> Optional[Message]:
        if 0 <= index < len(self.messages):
            return self.messages[index]
        return None


def load_script(path: Union[str, Path]) -> DemoScript:
    script_path = Path(path)
    try:
        raw = script_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ScriptError(f"Cannot read demo script {script_path}: {e}") from e

    try:
        script = DemoScript.model_validate_json(raw)
    except ValidationError as e:
        raise ScriptError(f"Invalid demo script {script_path}: {e}") from e

    logger.info(f"Loaded demo script {script_path.name} with {len(script)} messages")
    return script
