"""Decorators for tracing MCP components."""

import functools
from collections.abc import Callable
from datetime import datetime
from typing import Any

import logfire


def trace_tool(tool_name: str):
    """Decorator to trace MCP tool execution."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(arguments: dict[str, Any], *args, **kwargs):
            with logfire.span(
                f"tool.execution.{tool_name}",
                tool_name=tool_name,
                tool_category=_categorize_tool(tool_name),
            ) as span:
                start_time = datetime.now()
                _add_attributes(span, "input", arguments or {})

                try:
                    result = await func(arguments, *args, **kwargs)
                except Exception as e:
                    span.set_attribute("tool.success", False)
                    span.set_attribute("tool.error", str(e))
                    raise

                span.set_attribute("tool.success", not result.get("isError", False))
                span.set_attribute(
                    "tool.duration_ms", (datetime.now() - start_time).total_seconds() * 1000
                )
                _add_tool_result_metrics(span, result)
                return result

        return wrapper

    return decorator


def trace_resource(resource_type: str):
    """Lightweight decorator for resource reads."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            with logfire.span(
                f"resource.read.{resource_type}",
                resource_type=resource_type,
            ) as span:
                _add_attributes(span, "params", kwargs)
                result = await func(*args, **kwargs)

                if isinstance(result, dict) and "items" in result:
                    span.set_attribute("result.item_count", len(result["items"]))
                return result

        return wrapper

    return decorator


def _categorize_tool(tool_name: str) -> str:
    if "fine" in tool_name:
        return "fines"
    if "reserv" in tool_name or "hold" in tool_name:
        return "reservations"
    if "copy" in tool_name:
        return "catalog"
    return "circulation"


def _add_attributes(span, prefix: str, data: dict):
    for key, value in data.items():
        if isinstance(value, str | int | float | bool):
            span.set_attribute(f"{prefix}.{key}", value)


def _add_tool_result_metrics(span, result: dict[str, Any]):
    error = (result.get("data") or {}).get("error")
    if error:
        span.set_attribute("result.error_kind", error.get("kind", "error"))
        if error.get("code"):
            span.set_attribute("result.error_code", error["code"])
