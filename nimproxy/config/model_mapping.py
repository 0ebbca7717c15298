"""Client alias -> upstream model identifier table."""

from __future__ import annotations

from pathlib import Path
from types import MappingProxyType
from typing import Iterator, Mapping

import yaml

from nimproxy.core.errors import ModelMappingError
from nimproxy.util.logger import logger

DEFAULT_UPSTREAM_MODEL = "meta/llama-3.1-8b-instruct"

DEFAULT_MODEL_MAPPING: Mapping[str, str] = MappingProxyType(
    {
        "gpt-3.5-turbo": "nvidia/llama-3.1-nemotron-ultra-253b-v1",
        "gpt-4": "qwen/qwen3-coder-480b-a35b-instruct",
        "gpt-4-turbo": "moonshotai/kimi-k2-instruct-0905",
        "gpt-4o": "deepseek-ai/deepseek-v3.1",
        "claude-3-opus": "openai/gpt-oss-120b",
        "claude-3-sonnet": "openai/gpt-oss-20b",
        "gemini-pro": "qwen/qwen3-next-80b-a3b-thinking",
    }
)


class ModelMapping(Mapping[str, str]):
    """Immutable alias table with a fallback for unknown aliases."""

    __slots__ = ("_table", "_default")

    def __init__(self, table: Mapping[str, str], default: str = DEFAULT_UPSTREAM_MODEL) -> None:
        self._table: Mapping[str, str] = MappingProxyType(dict(table))
        self._default = default

    @property
    def default(self) -> str:
        return self._default

    def resolve(self, alias: object) -> str:
        if isinstance(alias, str) and alias in self._table:
            return self._table[alias]
        return self._default

    def aliases(self) -> list[str]:
        return list(self._table)

    def __getitem__(self, alias: str) -> str:
        return self._table[alias]

    def __iter__(self) -> Iterator[str]:
        return iter(self._table)

    def __len__(self) -> int:
        return len(self._table)

    def __repr__(self) -> str:
        return f"ModelMapping({dict(self._table)!r}, default={self._default!r})"


def _coerce_table(raw: object, path: Path) -> dict[str, str]:
    if not isinstance(raw, dict):
        raise ModelMappingError(f"model mapping in {path} must be a mapping of alias to model id")
    table: dict[str, str] = {}
    for alias, target in raw.items():
        if not isinstance(alias, str) or not isinstance(target, str) or not target.strip():
            raise ModelMappingError(f"invalid model mapping entry {alias!r}: {target!r} in {path}")
        table[alias] = target.strip()
    return table


def load_model_mapping(path_str: str, default: str = DEFAULT_UPSTREAM_MODEL) -> ModelMapping:
    """
    Load a mapping from YAML.

    Accepts either a flat ``alias: upstream-id`` document or one with a
    ``models`` table and an optional ``default`` identifier.
    """

    path = Path(path_str)
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ModelMappingError(f"cannot read model mapping file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ModelMappingError(f"invalid YAML in model mapping file {path}: {exc}") from exc

    if isinstance(raw, dict) and "models" in raw:
        fallback = raw.get("default") or default
        if not isinstance(fallback, str):
            raise ModelMappingError(f"default model in {path} must be a string")
        table = _coerce_table(raw.get("models"), path)
    else:
        fallback = default
        table = _coerce_table(raw, path)

    logger.info("model mapping loaded path=%s aliases=%d default=%s", path, len(table), fallback)
    return ModelMapping(table, default=fallback)


def build_model_mapping(mapping_path: str = "", default: str = DEFAULT_UPSTREAM_MODEL) -> ModelMapping:
    if mapping_path.strip():
        return load_model_mapping(mapping_path.strip(), default=default)
    return ModelMapping(DEFAULT_MODEL_MAPPING, default=default)
