"""Execute provider tool calls and feed their results back into the session."""

from __future__ import annotations

import inspect
import logging
import time
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Sequence

import jsonschema

from ..errors import ChatError, InvalidToolArguments, ToolFailed, UnknownTool
from .model_types import ToolCallRequest, ToolCallResult, ToolSpec

if TYPE_CHECKING:
    from ..provider import GenerativeSession, SessionHandle

LOGGER = logging.getLogger(__name__)


class ToolDispatcher:
    """Runs declared tools for the calls a model emits during one turn.

    Tool calls never reach the transcript directly: their results are
    submitted to the session and the model's follow-up text becomes the
    turn's final content.
    """

    def __init__(self, provider: "GenerativeSession", tools: Iterable[ToolSpec] | None = None) -> None:
        self._provider = provider
        self._tools: dict[str, ToolSpec] = {}
        if tools:
            self.declare(tools)

    @property
    def tools(self) -> Mapping[str, ToolSpec]:
        return dict(self._tools)

    def declare(self, tools: Iterable[ToolSpec]) -> tuple[ToolSpec, ...]:
        """Register ``tools`` and return the declarations for a session config."""

        for spec in tools:
            if spec.name in self._tools and self._tools[spec.name] is not spec:
                LOGGER.debug("Replacing tool declaration %s", spec.name)
            self._tools[spec.name] = spec
        return self.declarations()

    def declarations(self) -> tuple[ToolSpec, ...]:
        return tuple(self._tools.values())

    async def execute(self, requests: Sequence[ToolCallRequest], session: "SessionHandle") -> str:
        """Run every request in order, submit the results and return the reply text."""

        results = await self.run_calls(requests)
        LOGGER.debug(
            "Submitting %d tool result(s) (%d failed)",
            len(results),
            sum(1 for result in results if not result.ok),
        )
        return await self._provider.send_tool_results(session, results)

    async def run_calls(self, requests: Sequence[ToolCallRequest]) -> list[ToolCallResult]:
        """Execute ``requests`` sequentially, one result per request, same order."""

        return [await self._run_one(request) for request in requests]

    async def _run_one(self, request: ToolCallRequest) -> ToolCallResult:
        spec = self._tools.get(request.name)
        try:
            if spec is None:
                raise UnknownTool(
                    f"Tool '{request.name}' is not declared",
                    details={"tool": request.name, "call_id": request.call_id},
                )
            arguments = self._validated_arguments(spec, request)
            started = time.perf_counter()
            output = await self._invoke(spec, arguments)
            LOGGER.debug(
                "Tool %s (%s) finished in %.1f ms",
                request.name,
                request.call_id,
                (time.perf_counter() - started) * 1000.0,
            )
        except ChatError as exc:
            LOGGER.warning("Tool call %s failed: %s", request.call_id, exc)
            return ToolCallResult(call_id=request.call_id, name=request.name, output=exc.to_dict(), error=exc)
        except Exception as exc:
            error = ToolFailed(f"{request.name} raised {exc.__class__.__name__}: {exc}", details={"tool": request.name})
            LOGGER.warning("Tool call %s raised", request.call_id, exc_info=True)
            return ToolCallResult(call_id=request.call_id, name=request.name, output=error.to_dict(), error=error)
        return ToolCallResult(call_id=request.call_id, name=request.name, output=output)

    @staticmethod
    def _validated_arguments(spec: ToolSpec, request: ToolCallRequest) -> dict[str, Any]:
        arguments = dict(request.arguments)
        if spec.parameters is None:
            return arguments
        try:
            jsonschema.validate(instance=arguments, schema=dict(spec.parameters))
        except jsonschema.ValidationError as exc:
            raise InvalidToolArguments(
                f"Arguments for '{spec.name}' are invalid: {exc.message}",
                details={"tool": spec.name, "path": list(exc.absolute_path)},
            ) from exc
        return arguments

    @staticmethod
    async def _invoke(spec: ToolSpec, arguments: Mapping[str, Any]) -> Any:
        result = spec.handler(**arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


__all__ = ["ToolDispatcher"]
