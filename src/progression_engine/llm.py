from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Literal, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

PlanT = TypeVar("PlanT", bound=BaseModel)
OutputMethod = Literal["function_calling", "json_mode", "json_schema"]

# Generation runs inline with unit creation; fail fast and let the caller fall back.
GENERATION_TIMEOUT_SECONDS = 60
GENERATION_MAX_RETRIES = 2


class PlanRunnable(Protocol):
    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - LangChain runnable input.
        ...


@dataclass(frozen=True)
class StructuredOutputAdapter(Generic[PlanT]):
    """A structured-output runnable paired with the schema its replies must satisfy."""

    schema: type[PlanT]
    runnable: PlanRunnable

    def invoke(self, prompt: str) -> PlanT:
        """Raises ``RuntimeError`` when the reply does not validate against ``schema``."""
        return coerce_structured_output(self.runnable.invoke(prompt), self.schema)


def resolve_openai_api_key(env_dir: Path | None = None) -> str:
    """Return OPENAI_API_KEY, reading ``env_dir/.env`` (default: cwd) into the environment first.

    Raises:
        RuntimeError: If no key is configured.
    """
    env_file = (env_dir if env_dir is not None else Path.cwd()) / ".env"
    if env_file.is_file():
        load_dotenv(env_file)
    api_key = os.getenv("OPENAI_API_KEY", "").strip()
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY is required when PROGRESSION_OFFLINE_ONLY is false")
    return api_key


def coerce_structured_output(raw: Any, schema: type[PlanT]) -> PlanT:
    """Turn whatever the runnable returned into a validated ``schema`` instance.

    Understands the ``include_raw=True`` envelope (``raw``/``parsed``/``parsing_error``),
    model instances of any schema and plain mappings.

    Raises:
        RuntimeError: If parsing failed upstream or the data does not validate.
    """
    name = schema.__name__
    if isinstance(raw, Mapping) and {"parsed", "parsing_error"} <= raw.keys():
        if raw["parsing_error"] is not None:
            raise RuntimeError(f"{name}: model reply could not be parsed: {raw['parsing_error']!r}")
        raw = raw["parsed"]
    if raw is None:
        raise RuntimeError(f"{name}: model reply was empty")
    if isinstance(raw, schema):
        return raw

    data = raw.model_dump(mode="json") if isinstance(raw, BaseModel) else raw
    if not isinstance(data, Mapping):
        raise RuntimeError(f"{name}: expected an object, model replied with {type(data).__name__}")
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        raise RuntimeError(f"{name}: model reply failed validation: {exc}") from exc


def build_structured_model(
    *,
    model_name: str,
    schema: type[PlanT],
    temperature: float,
    method: OutputMethod = "json_schema",
    env_dir: Path | None = None,
) -> StructuredOutputAdapter[PlanT]:
    """Bind ``schema`` to an OpenAI chat model through ``with_structured_output``.

    Raises:
        ValueError: If ``model_name`` is blank.
        RuntimeError: If OPENAI_API_KEY is not configured.
    """
    if not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    resolve_openai_api_key(env_dir)
    chat = ChatOpenAI(
        model=model_name,
        temperature=temperature,
        timeout=GENERATION_TIMEOUT_SECONDS,
        max_retries=GENERATION_MAX_RETRIES,
    )
    # json_mode has no strict schema enforcement to request.
    strict = None if method == "json_mode" else True
    runnable = chat.with_structured_output(schema, method=method, strict=strict)
    logger.debug("bound %s to %s via %s", schema.__name__, model_name, method)
    return StructuredOutputAdapter(schema=schema, runnable=runnable)
