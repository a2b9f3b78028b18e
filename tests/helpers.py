from src.models.conversation import Message
from src.sync.script import DemoScript


def make_message(message_id, role="ai-agent", *parts):
    return Message.model_validate({"id": message_id, "role": role, "parts": list(parts)})


def make_script(*messages, pretrained=()):
    return DemoScript(messages=messages, pretrained_workflows=pretrained)


def text(value):
    return {"type": "text", "text": value}


def options(*labels):
    return {"type": "options", "options": [{"label": label, "action": label.lower()} for label in labels]}


def button(action, label="Continue"):
    return {"type": "button", "text": label, "action": action}
