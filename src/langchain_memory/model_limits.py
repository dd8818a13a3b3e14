"""
Model name → token limit registry.

The registry is an explicit object: construct it, call ``load()`` once
(optionally with a LiteLLM ``model_prices_and_context_window.json`` file),
then pass it to whatever needs model limits.
"""

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_MAX_INPUT_TOKENS = 128_000
DEFAULT_MAX_OUTPUT_TOKENS = 4096

PROVIDER_PREFIXES = ("azure/", "openai/", "anthropic/", "bedrock/")

_DATE_SUFFIX = re.compile(r"-(\d{4}-\d{2}-\d{2}|\d{8})$")


@dataclass(frozen=True)
class ModelLimits:
    max_input_tokens: int
    max_output_tokens: int
    provider: Optional[str] = None


# Model → (max input tokens, max output tokens, provider)
BUILTIN_MODEL_LIMITS: dict[str, tuple[int, int, str]] = {
    # Anthropic
    "claude-sonnet-4-5": (200_000, 64_000, "anthropic"),
    "claude-sonnet-4": (200_000, 64_000, "anthropic"),
    "claude-opus-4": (200_000, 32_000, "anthropic"),
    "claude-opus-4-5": (200_000, 64_000, "anthropic"),
    "claude-3-5-sonnet": (200_000, 8192, "anthropic"),
    "claude-3-haiku": (200_000, 4096, "anthropic"),
    # OpenAI
    "gpt-4o": (128_000, 16_384, "openai"),
    "gpt-4o-mini": (128_000, 16_384, "openai"),
    "gpt-4-turbo": (128_000, 4096, "openai"),
    "gpt-4.1": (1_047_576, 32_768, "openai"),
    "gpt-4.1-mini": (1_047_576, 32_768, "openai"),
    "o3-mini": (200_000, 100_000, "openai"),
    "azure/gpt-4o": (128_000, 16_384, "azure"),
    # DeepSeek
    "deepseek-chat": (64_000, 8192, "deepseek"),
    "deepseek-reasoner": (64_000, 8192, "deepseek"),
    # GLM
    "glm-4": (128_000, 4096, "zhipu"),
    "glm-4-flash": (128_000, 4096, "zhipu"),
    "glm-4.7-flash": (128_000, 4096, "zhipu"),
}


def base_model_name(model_name: str) -> str:
    """Strip date and preview/beta suffixes (gpt-4o-2024-05-13 → gpt-4o)."""
    result = _DATE_SUFFIX.sub("", model_name)
    result = re.sub(r"-preview$", "", result)
    result = re.sub(r"-beta$", "", result)
    return result


class ModelLimitRegistry:
    """
    Resolves max input/output tokens for a model name.

    Lookup order: exact name, provider-prefixed name, then the base name
    with date/preview suffixes removed. Unknown models get the defaults.
    """

    def __init__(
        self,
        default_max_input_tokens: int = DEFAULT_MAX_INPUT_TOKENS,
        default_max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
    ):
        self.default_max_input_tokens = default_max_input_tokens
        self.default_max_output_tokens = default_max_output_tokens
        self._models: dict[str, ModelLimits] = {}
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    def load(
        self,
        path: Optional[Union[str, Path]] = None,
        include_builtin: bool = True,
    ) -> "ModelLimitRegistry":
        """
        Populate the registry. Safe to call more than once; later entries
        override earlier ones.

        Args:
            path: Optional LiteLLM-format JSON file.
            include_builtin: Also register the built-in model table.
        """
        if include_builtin:
            for name, (max_in, max_out, provider) in BUILTIN_MODEL_LIMITS.items():
                self._models[name] = ModelLimits(max_in, max_out, provider)

        if path:
            self._load_file(Path(path))

        self._loaded = True
        logger.info("Loaded %d model entries into limit registry", len(self._models))
        return self

    def _load_file(self, path: Path):
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("Failed to load model limits from %s: %s", path, e)
            return

        for name, entry in data.items():
            if name == "sample_spec" or not isinstance(entry, dict):
                continue
            self._models[name] = ModelLimits(
                max_input_tokens=_int_field(
                    entry, "max_input_tokens",
                    _int_field(entry, "max_tokens", self.default_max_input_tokens),
                ),
                max_output_tokens=_int_field(
                    entry, "max_output_tokens",
                    _int_field(entry, "max_tokens", self.default_max_output_tokens),
                ),
                provider=entry.get("litellm_provider")
                if isinstance(entry.get("litellm_provider"), str) else None,
            )

    def register(self, model_name: str, max_input_tokens: int, max_output_tokens: int,
                 provider: Optional[str] = None):
        self._models[model_name] = ModelLimits(max_input_tokens, max_output_tokens, provider)

    def find(self, model_name: Optional[str]) -> Optional[ModelLimits]:
        if not model_name:
            return None

        info = self._models.get(model_name)
        if info:
            return info

        for prefix in PROVIDER_PREFIXES:
            info = self._models.get(prefix + model_name)
            if info:
                return info

        base = base_model_name(model_name)
        if base != model_name:
            return self._models.get(base)
        return None

    def max_input_tokens(self, model_name: Optional[str]) -> int:
        info = self.find(model_name)
        return info.max_input_tokens if info else self.default_max_input_tokens

    def max_output_tokens(self, model_name: Optional[str]) -> int:
        info = self.find(model_name)
        return info.max_output_tokens if info else self.default_max_output_tokens

    def has_model(self, model_name: str) -> bool:
        return self.find(model_name) is not None

    def __len__(self) -> int:
        return len(self._models)


def _int_field(entry: dict, field: str, default: int) -> int:
    value = entry.get(field)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    return default
