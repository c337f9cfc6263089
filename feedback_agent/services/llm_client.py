"""
Text generation capability.

The pipeline only depends on ``TextGenerator.generate(prompt, context)``.
Timeout and retry are applied around it by ``generate_with_retry`` so any
implementation (OpenAI, a stub in tests) gets the same failure semantics.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional

from openai import AsyncOpenAI

from feedback_agent.config import settings
from feedback_agent.errors import GenerationFailure
from feedback_agent.utils.logging_config import StructuredLogger, metrics

logger = StructuredLogger(__name__)


CLUSTER_SYSTEM_PROMPT = (
    "You summarize product feedback from a care-sector software pilot. "
    "The feedback is already anonymised: bracketed tokens such as [NAME] or [PHONE] "
    "stand for removed personal data. Never guess or reconstruct what they hide, "
    "and never quote personal details. "
    "Return ONLY valid JSON (no markdown). Schema:\n"
    "{\n"
    '  "label": string (short theme, at most 8 words, lowercase),\n'
    '  "summary": string (2-4 neutral sentences)\n'
    "}"
)

RECOMMENDATION_SYSTEM_PROMPT = (
    "You propose improvements for a care-sector software pilot based on themed "
    "feedback clusters. Recommendations are reviewed by a human before anything "
    "happens; do not claim any action has been taken. Never include personal data. "
    "Return ONLY valid JSON (no markdown). Schema:\n"
    "{\n"
    '  "recommendations": [\n'
    "    {\n"
    '      "cluster_id": string (one of the given ids),\n'
    '      "theme": string,\n'
    '      "proposed_actions": [string, ...] (ordered, most important first),\n'
    '      "priority": "low" | "medium" | "high" | "critical"\n'
    "    }\n"
    "  ]\n"
    "}"
)


class TextGenerator:
    """Single-method generation interface."""

    async def generate(self, prompt: str, context: Dict[str, Any]) -> str:
        raise NotImplementedError


class OpenAITextGenerator(TextGenerator):
    """
    Wrapper around the OpenAI async client.

    ``context["system"]`` becomes the system message. Errors propagate so
    the retry wrapper can count them.
    """

    def __init__(self, model: Optional[str] = None, api_key: Optional[str] = None):
        self.model = model or settings.openai_model
        self._api_key = api_key if api_key is not None else settings.openai_api_key
        self._client: Optional[AsyncOpenAI] = None

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def generate(self, prompt: str, context: Dict[str, Any]) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            response_format={"type": "json_object"},
            max_tokens=settings.openai_max_tokens,
            temperature=0,
            messages=[
                {"role": "system", "content": context.get("system", "")},
                {"role": "user", "content": prompt},
            ],
        )
        return response.choices[0].message.content or ""


async def generate_with_retry(
    generator: TextGenerator,
    prompt: str,
    context: Dict[str, Any],
    timeout: Optional[float] = None,
    max_retries: Optional[int] = None,
    backoff_base: Optional[float] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    parse: Optional[Callable[[str], Any]] = None,
) -> Any:
    """
    Call generator.generate with a per-attempt timeout.

    The first attempt is followed by up to ``max_retries`` retries, waiting
    ``backoff_base * 2**n`` seconds before retry n. Empty output counts as a
    failure, as does a ``parse`` error when a parser is given (the parsed
    value is returned instead of the text). Raises GenerationFailure when
    every attempt fails.
    """
    timeout = timeout if timeout is not None else settings.generation_timeout
    max_retries = max_retries if max_retries is not None else settings.generation_max_retries
    backoff_base = backoff_base if backoff_base is not None else settings.generation_backoff_base

    last_error = "unknown"
    for attempt in range(max_retries + 1):
        if attempt:
            await sleep(backoff_base * 2 ** (attempt - 1))
        try:
            text = await asyncio.wait_for(generator.generate(prompt, context), timeout=timeout)
            if text and text.strip():
                result = parse(text) if parse else text
                metrics.increment("generation.success")
                return result
            last_error = "empty response"
        except asyncio.TimeoutError:
            last_error = f"timed out after {timeout}s"
        except Exception as e:
            last_error = f"{type(e).__name__}: {e}"
        metrics.increment("generation.attempt_failed")
        logger.warning(
            "Generation attempt failed",
            attempt=attempt + 1,
            kind=context.get("kind"),
            error=last_error,
        )

    metrics.increment("generation.exhausted")
    raise GenerationFailure(
        f"Generation failed after {max_retries + 1} attempts: {last_error}",
        attempts=max_retries + 1,
    )


def parse_json_object(text: str) -> Dict[str, Any]:
    """Parse model output as a JSON object, tolerating a markdown fence."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
    data = json.loads(cleaned)
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data


def build_cluster_prompt(texts: List[str], modules: List[str], keywords: List[str]) -> str:
    lines = [
        f"Modules: {', '.join(modules)}",
        f"Keywords: {', '.join(keywords)}",
        f"Feedback items ({len(texts)}):",
    ]
    lines.extend(f"- {t}" for t in texts)
    return "\n".join(lines)


def build_recommendation_prompt(clusters: List[Dict[str, Any]]) -> str:
    return "Themed feedback clusters:\n" + json.dumps(clusters, indent=2, sort_keys=True)
