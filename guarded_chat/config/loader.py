"""
Configuration management and loading.

Handles application settings and environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from guarded_chat.core.ledger import QuotaConfig, QuotaLimits
from guarded_chat.core.models import DEFAULT_MODEL_TABLE, ModelSpec, ModelTable, ModelType
from guarded_chat.core.retrieval import DEFAULT_TOP_K
from guarded_chat.storage.db import DEFAULT_DB_PATH

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. Follow the user's instructions carefully. "
    "Respond using markdown."
)
DEFAULT_RESERVED_COMPLETION_TOKENS = 1000
DEFAULT_TEMPERATURE = 1.0


@dataclass(frozen=True)
class RetrievalConfig:
    """Similarity index connection and query settings."""
    collection: str = "documents"
    limit: int = DEFAULT_TOP_K
    url: str = "http://localhost:6333"
    api_key: Optional[str] = None

    def __post_init__(self):
        """Validate retrieval settings."""
        if not self.collection:
            raise ValueError("retrieval collection cannot be empty")
        if self.limit <= 0:
            raise ValueError("retrieval limit must be > 0")


@dataclass(frozen=True)
class PipelineConfig:
    """Prompt construction and accounting policy."""
    default_system_prompt: str = DEFAULT_SYSTEM_PROMPT
    reserved_completion_tokens: int = DEFAULT_RESERVED_COMPLETION_TOKENS
    default_temperature: float = DEFAULT_TEMPERATURE
    generation_model: Optional[str] = None
    bill_partial_completions: bool = True
    audit_log_enabled: bool = False

    def __post_init__(self):
        """Validate pipeline settings."""
        if self.reserved_completion_tokens < 0:
            raise ValueError("reserved_completion_tokens cannot be negative")
        if not 0.0 <= self.default_temperature <= 2.0:
            raise ValueError("default_temperature must be between 0 and 2")


@dataclass(frozen=True)
class Settings:
    """Complete application configuration."""
    models: ModelTable = DEFAULT_MODEL_TABLE
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    db_path: str = DEFAULT_DB_PATH
    api_keys: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        """Validate cross-section references."""
        generation_model = self.pipeline.generation_model
        if generation_model is not None and generation_model not in self.models:
            raise ValueError(f"pipeline.generation_model '{generation_model}' is not a configured model")

    @classmethod
    def default(cls) -> "Settings":
        """Settings with built-in defaults and environment overrides applied."""
        return cls(retrieval=_apply_retrieval_env(RetrievalConfig()))


def load_settings(path: str) -> Settings:
    """Load and validate settings from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to runaway token usage or prompts built for the wrong model.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'models', 'quota', 'retrieval', 'pipeline', 'storage', 'auth'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    models = DEFAULT_MODEL_TABLE
    if 'models' in raw_config:
        models = _parse_models(raw_config['models'])

    quota = _parse_quota(_section(raw_config, 'quota'))
    retrieval = _apply_retrieval_env(_parse_retrieval(_section(raw_config, 'retrieval')))
    pipeline = _parse_pipeline(_section(raw_config, 'pipeline'))

    storage_data = _section(raw_config, 'storage')
    _check_keys(storage_data, {'db_path'}, 'storage')
    db_path = str(storage_data.get('db_path', DEFAULT_DB_PATH))

    auth_data = _section(raw_config, 'auth')
    _check_keys(auth_data, {'api_keys'}, 'auth')
    api_keys = auth_data.get('api_keys', {}) or {}
    if not isinstance(api_keys, dict):
        raise ValueError("'auth.api_keys' must be a dictionary of token -> user")
    api_keys = {str(token): str(user) for token, user in api_keys.items()}

    for model_id in quota.models:
        if model_id not in models:
            raise ValueError(f"quota.models references unknown model '{model_id}'")

    return Settings(
        models=models,
        quota=quota,
        retrieval=retrieval,
        pipeline=pipeline,
        db_path=db_path,
        api_keys=api_keys,
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _positive_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"'{path}' must be a positive integer")
    return value


def _parse_models(data: Any) -> ModelTable:
    """Parse the model table.

    Raises:
        ValueError: If any model entry is invalid
    """
    if not isinstance(data, list) or not data:
        raise ValueError("'models' must be a non-empty list")

    specs = []
    for index, entry in enumerate(data):
        path = f"models[{index}]"
        if not isinstance(entry, dict):
            raise ValueError(f"{path} must be a dictionary")
        _check_keys(entry, {'id', 'name', 'type', 'max_output_tokens', 'context_token_limit'}, path)

        for required in ('id', 'max_output_tokens', 'context_token_limit'):
            if required not in entry:
                raise ValueError(f"Missing required '{required}' in {path}")

        type_str = str(entry.get('type', 'chat')).lower()
        try:
            model_type = ModelType(type_str)
        except ValueError:
            valid_types = [t.value for t in ModelType]
            raise ValueError(f"'type' in {path} must be one of: {valid_types}")

        specs.append(ModelSpec(
            id=str(entry['id']),
            name=str(entry.get('name', entry['id'])),
            type=model_type,
            max_output_tokens=_positive_int(entry['max_output_tokens'], f"{path}.max_output_tokens"),
            context_token_limit=_positive_int(entry['context_token_limit'], f"{path}.context_token_limit"),
        ))

    ids = [spec.id for spec in specs]
    if len(ids) != len(set(ids)):
        raise ValueError("Duplicate model ids in 'models'")
    return ModelTable.from_specs(specs)


def _parse_limits(data: Any, path: str) -> QuotaLimits:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    _check_keys(data, {'daily_tokens', 'monthly_tokens'}, path)

    limits = {}
    for key in ('daily_tokens', 'monthly_tokens'):
        value = data.get(key)
        limits[key] = None if value is None else _positive_int(value, f"{path}.{key}")
    return QuotaLimits(**limits)


def _parse_quota(data: Dict) -> QuotaConfig:
    _check_keys(data, {'daily_tokens', 'monthly_tokens', 'models'}, 'quota')

    defaults = _parse_limits(
        {k: v for k, v in data.items() if k != 'models'}, 'quota'
    )

    models_data = data.get('models', {}) or {}
    if not isinstance(models_data, dict):
        raise ValueError("'quota.models' must be a dictionary")

    overrides = {
        str(model_id): _parse_limits(limits, f"quota.models.{model_id}")
        for model_id, limits in models_data.items()
    }
    return QuotaConfig(defaults=defaults, models=overrides)


def _parse_retrieval(data: Dict) -> RetrievalConfig:
    _check_keys(data, {'collection', 'limit', 'url'}, 'retrieval')

    defaults = RetrievalConfig()
    limit = data.get('limit', defaults.limit)
    return RetrievalConfig(
        collection=str(data.get('collection', defaults.collection)),
        limit=_positive_int(limit, 'retrieval.limit'),
        url=str(data.get('url', defaults.url)),
    )


def _apply_retrieval_env(config: RetrievalConfig) -> RetrievalConfig:
    """Environment variables take precedence for the index endpoint and secret."""
    return RetrievalConfig(
        collection=config.collection,
        limit=config.limit,
        url=os.getenv("QDRANT_URL", config.url),
        api_key=os.getenv("QDRANT_API_KEY", config.api_key),
    )


def _parse_pipeline(data: Dict) -> PipelineConfig:
    allowed_keys = {
        'default_system_prompt', 'reserved_completion_tokens', 'default_temperature',
        'generation_model', 'bill_partial_completions', 'audit_log_enabled',
    }
    _check_keys(data, allowed_keys, 'pipeline')

    defaults = PipelineConfig()

    reserved = data.get('reserved_completion_tokens', defaults.reserved_completion_tokens)
    if isinstance(reserved, bool) or not isinstance(reserved, int) or reserved < 0:
        raise ValueError("'pipeline.reserved_completion_tokens' must be a non-negative integer")

    temperature = data.get('default_temperature', defaults.default_temperature)
    if isinstance(temperature, bool) or not isinstance(temperature, (int, float)):
        raise ValueError("'pipeline.default_temperature' must be a number")

    for flag in ('bill_partial_completions', 'audit_log_enabled'):
        if flag in data and not isinstance(data[flag], bool):
            raise ValueError(f"'pipeline.{flag}' must be true or false")

    generation_model = data.get('generation_model')
    return PipelineConfig(
        default_system_prompt=str(data.get('default_system_prompt', defaults.default_system_prompt)),
        reserved_completion_tokens=reserved,
        default_temperature=float(temperature),
        generation_model=str(generation_model) if generation_model is not None else None,
        bill_partial_completions=data.get('bill_partial_completions', defaults.bill_partial_completions),
        audit_log_enabled=data.get('audit_log_enabled', defaults.audit_log_enabled),
    )
