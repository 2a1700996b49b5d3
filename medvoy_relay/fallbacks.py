"""Capability failure handling as an ordered chain of fallback steps.

A capability declares `on_failure` steps. The relay runs them in order:
a step that raises before producing text hands over to the next one, a step
that completes ends the chain. An empty chain is a silent degrade.
"""

from __future__ import annotations

import contextlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncGenerator

import httpx

from .capability_client import CapabilityClient
from .config import DEFAULT_REPROMPT_NOTE, DEFAULT_SCRAPE_PROMPT, FallbackStepConfig
from .errors import CapabilityError, RelayRequestError
from .json_helpers import bounded_text
from .message_preparation import latest_user_text, system_turn
from .stream_chunks import ResolvedToolCall
from .upstream import UpstreamClient

LOG = logging.getLogger(__name__)

_STEP_FAILURES = (CapabilityError, RelayRequestError, httpx.HTTPError)


class _TemplateArgs(dict):
    """format_map mapping that leaves unknown placeholders untouched."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def fill_placeholders(template: str, **values: str) -> str:
    """Fill `{name}` placeholders in a prompt; other braces are kept as written."""
    try:
        return template.format_map(_TemplateArgs(values))
    except (ValueError, IndexError):
        # Literal braces (a JSON example, say) break format syntax.
        for key, value in values.items():
            template = template.replace("{" + key + "}", value)
        return template


def render_template(value: Any, arguments: dict[str, Any]) -> Any:
    """Format string leaves of a nested body template with tool arguments."""
    if isinstance(value, str):
        try:
            return value.format_map(_TemplateArgs(arguments))
        except (ValueError, IndexError):
            return value
    if isinstance(value, list):
        return [render_template(item, arguments) for item in value]
    if isinstance(value, dict):
        return {key: render_template(item, arguments) for key, item in value.items()}
    return value


@dataclass
class FallbackContext:
    """Everything a fallback step may use to compensate one failed call."""

    upstream: UpstreamClient
    capability_client: CapabilityClient
    model: str
    system_prompt: str
    turns: list[dict[str, Any]]
    call: ResolvedToolCall
    error: Exception
    apology_message: str
    trace_id: str


class FallbackStep(ABC):
    kind = "abstract"

    def __init__(self, cfg: FallbackStepConfig) -> None:
        self.cfg = cfg

    @abstractmethod
    def run(self, ctx: FallbackContext) -> AsyncGenerator[str, None]:
        """Yield text fragments for the client."""


class RepromptFallback(FallbackStep):
    """Ask the model again, explaining that the lookup failed."""

    kind = "reprompt"

    async def run(self, ctx: FallbackContext) -> AsyncGenerator[str, None]:
        note = fill_placeholders(self.cfg.prompt or DEFAULT_REPROMPT_NOTE, tool=ctx.call.name, error=str(ctx.error))
        payload = {
            "model": ctx.model,
            "messages": [system_turn(ctx.system_prompt), *ctx.turns, {"role": "system", "content": note}],
        }
        async with contextlib.aclosing(ctx.upstream.stream_text(payload, trace_id=f"{ctx.trace_id}:reprompt")) as texts:
            async for text in texts:
                yield text


class ScrapeFallback(FallbackStep):
    """Gather raw reference text elsewhere and answer from it in one shot."""

    kind = "scrape"

    async def run(self, ctx: FallbackContext) -> AsyncGenerator[str, None]:
        body = render_template(self.cfg.body, ctx.call.arguments) if self.cfg.body else dict(ctx.call.arguments)
        assert self.cfg.url is not None
        raw = await ctx.capability_client.post_text(
            self.cfg.url,
            body,
            api_key=self.cfg.api_key,
            timeout_seconds=self.cfg.timeout_seconds,
        )
        LOG.info("scrape fallback gathered chars=%s tool=%s", len(raw), ctx.call.name)
        prompt = fill_placeholders(
            self.cfg.prompt or DEFAULT_SCRAPE_PROMPT,
            question=latest_user_text(ctx.turns),
            arguments=json.dumps(ctx.call.arguments, ensure_ascii=False),
            data=bounded_text(raw, self.cfg.max_source_chars),
        )
        payload = {
            "model": ctx.model,
            "messages": [system_turn(ctx.system_prompt), {"role": "user", "content": prompt}],
        }
        async with contextlib.aclosing(ctx.upstream.stream_text(payload, trace_id=f"{ctx.trace_id}:scrape")) as texts:
            async for text in texts:
                yield text


class ApologyFallback(FallbackStep):
    """Static last-resort message."""

    kind = "apology"

    async def run(self, ctx: FallbackContext) -> AsyncGenerator[str, None]:
        yield self.cfg.message or ctx.apology_message


_STEP_TYPES: dict[str, type[FallbackStep]] = {
    RepromptFallback.kind: RepromptFallback,
    ScrapeFallback.kind: ScrapeFallback,
    ApologyFallback.kind: ApologyFallback,
}


def build_fallback_chain(steps: list[FallbackStepConfig]) -> list[FallbackStep]:
    return [_STEP_TYPES[step.kind](step) for step in steps]


async def run_fallback_chain(chain: list[FallbackStep], ctx: FallbackContext) -> AsyncGenerator[str, None]:
    """Run steps in order until one completes."""
    if not chain:
        LOG.info("capability failed, degrading silently tool=%s error=%s", ctx.call.name, ctx.error)
        return

    for step in chain:
        emitted = False
        LOG.info("running fallback step kind=%s tool=%s", step.kind, ctx.call.name)
        try:
            async with contextlib.aclosing(step.run(ctx)) as texts:
                async for text in texts:
                    emitted = True
                    yield text
        except _STEP_FAILURES as exc:
            if emitted:
                LOG.warning("fallback step kind=%s broke off after partial output: %s", step.kind, exc)
                return
            LOG.warning("fallback step kind=%s failed, trying next: %s", step.kind, exc)
            continue
        return

    LOG.error("fallback chain exhausted without an answer tool=%s", ctx.call.name)
