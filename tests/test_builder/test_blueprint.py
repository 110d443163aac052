"""Tests for appforge.builder.blueprint and appforge.builder.collaborators.

Tests cover:
- fallback_blueprint shape
- blueprint_summary on well-formed and malformed blueprints
- maybe_await with plain values and coroutines
- call_collaborator: async methods on the loop, plain methods off it
- coerce_project accepted shapes and rejection of anything else
- Protocol runtime checks for collaborator objects
"""

from __future__ import annotations

import threading

import pytest

from appforge.builder.blueprint import FALLBACK_APP_NAME, blueprint_summary, fallback_blueprint
from appforge.builder.codegen import TemplateCodeGenerator
from appforge.builder.collaborators import (
    BlueprintGenerator,
    CodeGenerator,
    call_collaborator,
    coerce_project,
    maybe_await,
)
from appforge.models import BuildTarget, GeneratedProject


class TestFallbackBlueprint:
    @pytest.mark.unit
    def test_shape(self):
        blueprint = fallback_blueprint(BuildTarget.ANDROID, "timeout")

        assert blueprint["appName"] == FALLBACK_APP_NAME
        assert blueprint["target"] == "android"
        assert [page["route"] for page in blueprint["pages"]] == ["/"]
        assert blueprint["dataModel"] == []
        assert blueprint["authRequired"] is False
        assert blueprint["notes"] == "Fallback blueprint due to: timeout"

    @pytest.mark.unit
    def test_plain_string_target(self):
        assert fallback_blueprint("multi", "x")["target"] == "multi"


class TestBlueprintSummary:
    @pytest.mark.unit
    def test_counts(self):
        summary = blueprint_summary(
            {"appName": "Shop", "pages": [{}, {}, {}], "dataModel": [{"name": "Item"}]}
        )
        assert summary == ("Shop", 3, 1)

    @pytest.mark.unit
    def test_malformed_counts_as_zero(self):
        assert blueprint_summary({"pages": "home", "dataModel": None}) == (FALLBACK_APP_NAME, 0, 0)


class TestMaybeAwait:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_plain_value(self):
        assert await maybe_await(42) == 42

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_coroutine(self):
        async def produce():
            return "done"

        assert await maybe_await(produce()) == "done"


class TestCallCollaborator:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_async_method_runs_on_the_loop_thread(self):
        async def generate(prompt):
            return prompt, threading.get_ident()

        result, thread_id = await call_collaborator(generate, "todo")

        assert result == "todo"
        assert thread_id == threading.get_ident()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_plain_method_runs_in_a_worker_thread(self):
        def generate(job_id, blueprint):
            return {"files": {"a.txt": blueprint["appName"]}}, threading.get_ident()

        result, thread_id = await call_collaborator(generate, "job-1", {"appName": "Shop"})

        assert result == {"files": {"a.txt": "Shop"}}
        assert thread_id != threading.get_ident()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_plain_method_returning_a_coroutine(self):
        async def later():
            return "awaited"

        def generate():
            return later()

        assert await call_collaborator(generate) == "awaited"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        def generate():
            raise RuntimeError("model unavailable")

        with pytest.raises(RuntimeError, match="model unavailable"):
            await call_collaborator(generate)


class TestCoerceProject:
    @pytest.mark.unit
    def test_generated_project_passes_through(self):
        project = GeneratedProject(files={"a.txt": "a"})
        assert coerce_project(project) is project

    @pytest.mark.unit
    def test_files_wrapper(self):
        assert coerce_project({"files": {"a.txt": "a"}}).files == {"a.txt": "a"}

    @pytest.mark.unit
    def test_bare_file_map(self):
        assert coerce_project({"a.txt": b"\x00\x01"}).files == {"a.txt": b"\x00\x01"}

    @pytest.mark.unit
    @pytest.mark.parametrize("result", [None, ["a.txt"], "a.txt"])
    def test_rejects_other_shapes(self, result):
        with pytest.raises(TypeError):
            coerce_project(result)


class TestProtocols:
    @pytest.mark.unit
    def test_template_generator_is_code_generator(self):
        assert isinstance(TemplateCodeGenerator(), CodeGenerator)

    @pytest.mark.unit
    def test_object_without_generate_is_rejected(self):
        assert not isinstance(object(), BlueprintGenerator)
