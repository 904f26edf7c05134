"""Tool registry: name -> handler contract, with argument normalization."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Type

from pydantic import BaseModel, ValidationError

from toolstream.config import DEFAULT_TOOL_TIMEOUT_S, TOOL_OUTPUT_LIMIT
from toolstream.log_utils import log_context, log_event, preview
from toolstream.tools.arguments import normalize_tool_arguments
from toolstream.tools.io import truncate_result
from toolstream.tools.results import ToolResult

logger = logging.getLogger(__name__)

MCP_PREFIX = "mcp_"

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    handler: ToolHandler
    args_model: Type[BaseModel] | None = None
    description: str = ""
    timeout_s: float | None = None


class ToolRegistry:
    """Handlers available to one or more sessions.

    Registries are plain objects passed into a `Session`, so tests and
    embedders can run sessions with independent handler sets.
    """

    def __init__(
        self,
        *,
        timeout_s: float | None = DEFAULT_TOOL_TIMEOUT_S,
        output_limit: int = TOOL_OUTPUT_LIMIT,
    ) -> None:
        self._tools: Dict[str, ToolSpec] = {}
        self.timeout_s = timeout_s
        self.output_limit = output_limit

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.resolve(name) is not None

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return list(self._tools)

    def register(
        self,
        name: str,
        handler: ToolHandler,
        *,
        args_model: Type[BaseModel] | None = None,
        description: str = "",
        timeout_s: float | None = None,
    ) -> None:
        if not name:
            raise ValueError("Tool name must not be empty")
        self._tools[name] = ToolSpec(
            name=name,
            handler=handler,
            args_model=args_model,
            description=description,
            timeout_s=timeout_s,
        )

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def copy(self) -> "ToolRegistry":
        clone = ToolRegistry(timeout_s=self.timeout_s, output_limit=self.output_limit)
        clone._tools = dict(self._tools)
        return clone

    def resolve(self, name: str) -> ToolSpec | None:
        spec = self._tools.get(name)
        if spec is None and name.startswith(MCP_PREFIX):
            spec = self._tools.get(name[len(MCP_PREFIX):])
        return spec

    def describe(self) -> list[dict[str, Any]]:
        """Tool advertisement sent to the backend when a session starts."""

        described = []
        for spec in self._tools.values():
            schema: dict[str, Any] = {"type": "object", "properties": {}}
            if spec.args_model is not None:
                schema = spec.args_model.model_json_schema()
            described.append({"name": spec.name, "description": spec.description, "input_schema": schema})
        return described

    async def dispatch(self, name: str, raw_arguments: Any) -> ToolResult:
        """Run a tool by name; every failure comes back as an error result."""

        spec = self.resolve(name)
        if spec is None:
            log_event(logger, "tool.dispatch.unknown", level=logging.WARNING, tool=name)
            return ToolResult.error(f"Unknown tool: {name}")

        parsed = normalize_tool_arguments(raw_arguments)
        if not parsed.ok:
            log_event(
                logger,
                "tool.dispatch.bad_arguments",
                level=logging.WARNING,
                tool=name,
                error=parsed.error,
                raw=preview(raw_arguments),
            )
            return ToolResult.error(parsed.error or "Failed to parse tool arguments")
        if parsed.strategy not in (None, "strict", "structured", "empty"):
            log_event(logger, "tool.dispatch.arguments_repaired", tool=name, strategy=parsed.strategy)

        arguments = parsed.value
        if not isinstance(arguments, dict):
            return ToolResult.error(
                f"Tool arguments must be an object, got {type(arguments).__name__}"
            )

        if spec.args_model is not None:
            try:
                arguments = spec.args_model.model_validate(arguments).model_dump()
            except ValidationError as exc:
                log_event(logger, "tool.dispatch.invalid", level=logging.WARNING, tool=name, error=str(exc))
                return ToolResult.error(f"Invalid arguments: {exc}")

        timeout_s = spec.timeout_s if spec.timeout_s is not None else self.timeout_s
        with log_context(tool_name=spec.name):
            result = await self._invoke(spec, arguments, timeout_s)
        return truncate_result(result, self.output_limit)

    async def _invoke(self, spec: ToolSpec, arguments: Dict[str, Any], timeout_s: float | None) -> ToolResult:
        try:
            outcome = spec.handler(arguments)
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                try:
                    done, _ = await asyncio.wait({task}, timeout=timeout_s or None)
                except asyncio.CancelledError:
                    task.cancel()
                    raise
                if not done:
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)
                    log_event(logger, "tool.dispatch.timeout", level=logging.WARNING, timeout_s=timeout_s)
                    return ToolResult.error(f"Tool {spec.name} timed out after {timeout_s}s")
                outcome = task.result()
        except Exception as exc:
            log_event(logger, "tool.dispatch.raised", level=logging.WARNING, error=repr(exc))
            return ToolResult.error(f"Tool {spec.name} failed: {exc}")
        try:
            return ToolResult.coerce(outcome)
        except ValidationError as exc:
            return ToolResult.error(f"Tool {spec.name} returned an invalid result: {exc}")


__all__ = ["MCP_PREFIX", "ToolHandler", "ToolRegistry", "ToolSpec"]
