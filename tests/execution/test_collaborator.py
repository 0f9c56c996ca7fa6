"""Tests for the call-execution collaborator adapter."""

import pytest

from apicron.core.errors import ConfigError
from apicron.core.models import CallResult, Schedule
from apicron.execution.collaborator import FunctionCallExecutor, invoke, load_call_executor


class TestInvoke:
    """Sync and async collaborators produce a CallResult."""

    @pytest.mark.asyncio
    async def test_sync_function_mapping_result(self):
        executor = FunctionCallExecutor(lambda s: {"success": True, "message": f"ran {s.id}"})
        result = await invoke(executor, Schedule(id=3))
        assert result == CallResult(success=True, message="ran 3")

    @pytest.mark.asyncio
    async def test_async_function(self):
        async def call(schedule):
            return CallResult(success=False, message="rate limited")

        result = await invoke(FunctionCallExecutor(call), Schedule(id=1))
        assert result.success is False
        assert result.message == "rate limited"

    @pytest.mark.asyncio
    async def test_async_method(self, scripted):
        executor = scripted(True)
        result = await invoke(executor, Schedule(id=8))
        assert result.success is True
        assert executor.calls == [8]

    @pytest.mark.asyncio
    async def test_mapping_without_success_is_failure(self):
        result = await invoke(FunctionCallExecutor(lambda s: {"message": "?"}), Schedule(id=1))
        assert result.success is False

    @pytest.mark.asyncio
    async def test_unsupported_result_type(self):
        with pytest.raises(TypeError):
            await invoke(FunctionCallExecutor(lambda s: "done"), Schedule(id=1))


class TestLoadCallExecutor:
    """``module:attribute`` resolution."""

    def test_function_is_wrapped(self):
        executor = load_call_executor("json:dumps")
        assert isinstance(executor, FunctionCallExecutor)

    @pytest.mark.parametrize("path", ["json.dumps", ":dumps", "json:"])
    def test_malformed_path(self, path):
        with pytest.raises(ConfigError):
            load_call_executor(path)

    def test_missing_module(self):
        with pytest.raises(ConfigError) as exc_info:
            load_call_executor("no_such_module_for_apicron:run")
        assert isinstance(exc_info.value.cause, ImportError)

    def test_missing_attribute(self):
        with pytest.raises(ConfigError):
            load_call_executor("json:no_such_function")

    def test_non_callable(self):
        with pytest.raises(ConfigError):
            load_call_executor("types:SimpleNamespace")
