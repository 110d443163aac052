"""Boundary protocols for the external generators.

Both collaborators may be implemented with plain or ``async`` methods.  Plain
methods are run in a worker thread so a slow synchronous generator cannot
stall the event loop (or the build timeout that guards it).
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Protocol, TypeVar, Union, runtime_checkable

from appforge.models import BuildTarget, GeneratedProject

T = TypeVar("T")


@runtime_checkable
class BlueprintGenerator(Protocol):
    """Turns a prompt into a blueprint dict, or raises."""

    def generate(self, prompt: str, target: BuildTarget) -> Union[dict[str, Any], Awaitable[dict[str, Any]]]: ...


@runtime_checkable
class CodeGenerator(Protocol):
    """Turns a blueprint into a map of relative path -> file content, or raises."""

    def generate(
        self, job_id: str, blueprint: dict[str, Any]
    ) -> Union[GeneratedProject, dict[str, Any], Awaitable[Any]]: ...


async def maybe_await(value: Union[T, Awaitable[T]]) -> T:
    if inspect.isawaitable(value):
        return await value
    return value


async def call_collaborator(method: Callable[..., Any], *args: Any) -> Any:
    """Call a generator method without blocking the event loop."""
    if inspect.iscoroutinefunction(method):
        return await method(*args)
    return await maybe_await(await asyncio.to_thread(method, *args))


def coerce_project(result: Any) -> GeneratedProject:
    """Accept a ``GeneratedProject``, ``{"files": {...}}`` or a bare file map."""
    if isinstance(result, GeneratedProject):
        return result
    if isinstance(result, dict):
        files = result["files"] if "files" in result else result
        return GeneratedProject(files=files)
    raise TypeError(f"Code generator returned {type(result).__name__}, expected a file map")
