"""
External tool adapters.

Scanners, build executors and deploy executors are reached through one typed
interface returning a normalized StageResult. Tool-specific report formats are
translated by the tool's own adapter service; the core only understands
severity counts, a success flag, an optional compliance flag and a reference.
"""

import logging
from typing import Any, Dict, Optional, Protocol

import httpx
from pydantic import ValidationError

from .errors import DefinitionValidationError, ToolInvocationError
from .models import (
    SEVERITIES,
    FindingCounts,
    PipelineDefinition,
    StageInvocation,
    StageResult,
    ToolConfig,
)

logger = logging.getLogger(__name__)


class ToolAdapter(Protocol):
    """Typed interface to one external tool."""

    async def invoke(self, request: StageInvocation) -> StageResult: ...


def normalize_result(data: Dict[str, Any]) -> StageResult:
    """
    Normalize a tool response body into a StageResult.

    Accepts finding counts either nested under `findings` or at the top level,
    and `results_location` / `artifact` / `environment` as the reference.

    Raises:
        ToolInvocationError: If the body cannot be interpreted
    """
    if not isinstance(data, dict):
        raise ToolInvocationError("Tool response must be a JSON object")

    findings: Optional[Dict[str, Any]] = data.get("findings")
    if findings is None and any(severity in data for severity in SEVERITIES):
        findings = {severity: data.get(severity, 0) for severity in SEVERITIES}

    reference = (
        data.get("reference")
        or data.get("results_location")
        or data.get("artifact")
        or data.get("environment")
    )
    try:
        return StageResult(
            findings=FindingCounts(**findings) if findings is not None else None,
            success=bool(data.get("success", True)),
            compliant=data.get("compliant"),
            reference=reference,
            detail=data.get("detail"),
        )
    except ValidationError as e:
        errors = [f"{err['loc']}: {err['msg']}" for err in e.errors()]
        raise ToolInvocationError(f"Malformed tool response: {errors}")


class HttpToolAdapter:
    """Invokes a tool service over HTTP."""

    def __init__(
        self,
        name: str,
        url: str,
        timeout_seconds: float = 300.0,
        headers: Optional[Dict[str, str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.name = name
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.headers = headers or {}
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    async def invoke(self, request: StageInvocation) -> StageResult:
        logger.info(
            f"Invoking tool '{self.name}' for stage '{request.stage}' of change "
            f"{request.change_id} (attempt {request.attempt})"
        )
        try:
            response = await self.http_client.post(
                self.url,
                json=request.model_dump(mode="json"),
                headers=self.headers,
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            return normalize_result(response.json())

        except httpx.TimeoutException:
            raise ToolInvocationError(
                f"Tool '{self.name}' timed out after {self.timeout_seconds}s",
                stage=request.stage,
            )
        except httpx.HTTPStatusError as e:
            raise ToolInvocationError(
                f"Tool '{self.name}' failed with HTTP {e.response.status_code}: "
                f"{e.response.text}",
                stage=request.stage,
            )
        except httpx.HTTPError as e:
            raise ToolInvocationError(f"Tool '{self.name}' failed: {e}", stage=request.stage)
        except ValueError as e:
            raise ToolInvocationError(
                f"Tool '{self.name}' returned invalid JSON: {e}", stage=request.stage
            )

    async def close(self) -> None:
        await self.http_client.aclose()


class FixedResultAdapter:
    """Returns a configured result; used for rehearsals and dry runs."""

    def __init__(self, name: str, result: StageResult) -> None:
        self.name = name
        self.result = result
        self.calls: int = 0

    async def invoke(self, request: StageInvocation) -> StageResult:
        self.calls += 1
        logger.info(
            f"Tool '{self.name}' returning fixed result for stage '{request.stage}'"
        )
        return self.result.model_copy(deep=True)


class AdapterRegistry:
    """Maps tool names to adapters."""

    def __init__(self, adapters: Optional[Dict[str, ToolAdapter]] = None) -> None:
        self._adapters: Dict[str, ToolAdapter] = dict(adapters or {})

    def register(self, name: str, adapter: ToolAdapter) -> None:
        self._adapters[name] = adapter

    def get(self, name: str) -> ToolAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise ToolInvocationError(f"No adapter registered for tool '{name}'", tool=name)
        return adapter

    def __contains__(self, name: str) -> bool:
        return name in self._adapters

    @classmethod
    def from_definition(
        cls,
        definition: PipelineDefinition,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "AdapterRegistry":
        """Build adapters for every tool declared in a pipeline definition."""
        registry = cls()
        for name, tool in definition.tools.items():
            registry.register(name, build_adapter(name, tool, http_client))
        return registry

    async def close(self) -> None:
        for adapter in self._adapters.values():
            close = getattr(adapter, "close", None)
            if close is not None:
                await close()


def build_adapter(
    name: str, tool: ToolConfig, http_client: Optional[httpx.AsyncClient] = None
) -> ToolAdapter:
    if tool.kind == "http":
        assert tool.url is not None
        return HttpToolAdapter(
            name,
            tool.url,
            timeout_seconds=tool.timeout_seconds,
            headers=tool.headers,
            http_client=http_client,
        )
    if tool.kind == "fixed":
        assert tool.result is not None
        return FixedResultAdapter(name, tool.result)
    raise DefinitionValidationError(f"Unknown tool kind '{tool.kind}'", tool=name)
