"""
Chat messages and model specifications.

Defines the conversation primitives and the fixed table of models the
pipeline knows how to budget for.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Mapping

from .errors import ConfigurationError


class Role(Enum):
    """Author of a chat message."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ModelType(Enum):
    """Kind of generation endpoint a model is served by."""
    CHAT = "chat"
    COMPLETION = "completion"


@dataclass(frozen=True)
class Message:
    """A single conversation turn."""
    role: Role
    content: str

    @classmethod
    def from_dict(cls, data: Mapping[str, str]) -> "Message":
        """Build a message from a ``{"role", "content"}`` mapping."""
        try:
            role = Role(data["role"])
        except (KeyError, ValueError):
            raise ValueError(f"Invalid message role: {data.get('role')!r}")
        return cls(role=role, content=data.get("content") or "")

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


def to_dicts(messages: Iterable[Message]) -> List[Dict[str, str]]:
    """Serialize messages to the wire format used by chat APIs."""
    return [message.to_dict() for message in messages]


@dataclass(frozen=True)
class ModelSpec:
    """Immutable description of a generation model's limits."""
    id: str
    name: str
    type: ModelType
    max_output_tokens: int
    context_token_limit: int

    def __post_init__(self):
        """Validate model limits."""
        if not self.id or not self.id.strip():
            raise ValueError("model id is required and cannot be empty")
        if self.context_token_limit <= 0:
            raise ValueError("context_token_limit must be > 0")
        if self.max_output_tokens <= 0:
            raise ValueError("max_output_tokens must be > 0")


@dataclass(frozen=True)
class ModelTable:
    """Lookup table of supported models."""
    models: Dict[str, ModelSpec]

    def get(self, model_id: str) -> ModelSpec:
        """Get the spec for a model.

        Args:
            model_id: Model identifier

        Returns:
            ModelSpec for the model

        Raises:
            ConfigurationError: If the model is not configured
        """
        if model_id not in self.models:
            raise ConfigurationError(f"Unknown model: {model_id}")
        return self.models[model_id]

    def __contains__(self, model_id: str) -> bool:
        return model_id in self.models

    @classmethod
    def from_specs(cls, specs: Iterable[ModelSpec]) -> "ModelTable":
        return cls({spec.id: spec for spec in specs})


# Fixed defaults - deployments may replace these through configuration
DEFAULT_MODEL_TABLE = ModelTable.from_specs([
    ModelSpec(
        id="gpt-3.5-turbo",
        name="GPT-3.5",
        type=ModelType.CHAT,
        max_output_tokens=4096,
        context_token_limit=4000,
    ),
    ModelSpec(
        id="gpt-4",
        name="GPT-4",
        type=ModelType.CHAT,
        max_output_tokens=4096,
        context_token_limit=8000,
    ),
    ModelSpec(
        id="gpt-4-turbo-preview",
        name="GPT-4 Turbo",
        type=ModelType.CHAT,
        max_output_tokens=4096,
        context_token_limit=128000,
    ),
])
