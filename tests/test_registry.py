import inspect
from types import ModuleType

import pytest
from mcp.server.fastmcp import FastMCP
from targetprocess_mcp.core.client import TargetProcessClient
from targetprocess_mcp.core.registry import (
    discover_tool_modules,
    register_discovered_tools,
)

BASE = "https://acme.tpondemand.com/api/v1"


def _make_module(name: str, code: str) -> ModuleType:
    module = ModuleType(name)
    exec(code, module.__dict__)
    return module


def _recording_app(registered):
    app = FastMCP("test")

    def record_tool(name):
        def decorator(fn):
            registered.append((name, fn))
            return fn

        return decorator

    app.tool = record_tool  # type: ignore[attr-defined]
    return app


@pytest.mark.asyncio
async def test_register_discovered_tools_registers_valid_tools_only():
    code = """
async def tool_fn(client, *, foo:int=1):
    return (client.base_url, foo)

async def _private(client):
    return None

async def wrong_first(arg1, client):
    return None

def sync_func(client):
    return None
"""
    mod = _make_module("fake_mod", code)
    registered = []
    app = _recording_app(registered)
    client = TargetProcessClient(base_url=BASE, access_token="tok")

    names = register_discovered_tools(app, client, modules=[mod])

    assert names == ["tool_fn"]
    sig = inspect.signature(registered[0][1])
    assert "client" not in sig.parameters

    result = await registered[0][1](foo=5)
    assert result == (BASE, 5)
    await client.aclose()


def test_register_discovered_tools_duplicate_names_raise():
    mod1 = _make_module("mod1", "async def tool_fn(client): return None")
    mod2 = _make_module("mod2", "async def tool_fn(client): return None")
    client = TargetProcessClient(base_url=BASE, access_token="tok")

    with pytest.raises(ValueError):
        register_discovered_tools(FastMCP("test"), client, modules=[mod1, mod2])


def test_register_requires_tool_decorator():
    client = TargetProcessClient(base_url=BASE, access_token="tok")
    with pytest.raises(TypeError):
        register_discovered_tools(object(), client, modules=[])


def test_discovers_shipped_tools():
    registered = []
    app = _recording_app(registered)
    client = TargetProcessClient(base_url=BASE, access_token="tok")

    register_discovered_tools(app, lambda: client, modules=discover_tool_modules())

    assert sorted(name for name, _ in registered) == [
        "create_entity",
        "get_entity",
        "inspect_entity_type",
        "list_entity_types",
        "search_entities",
        "update_entity",
    ]
    for _, fn in registered:
        assert "client" not in inspect.signature(fn).parameters


def test_discover_tool_modules_skips_import_failures(monkeypatch, caplog):
    import importlib
    import pkgutil

    class Info:
        def __init__(self, name):
            self.name = name

    def fake_iter_modules(path, prefix):
        return [Info(prefix + "good"), Info(prefix + "bad")]

    good_mod = _make_module(
        "targetprocess_mcp.tools.good", "async def tool_fn(client): return None"
    )
    real_import_module = importlib.import_module

    def fake_import_module(name, *args, **kwargs):
        if name == "targetprocess_mcp.tools.bad":
            raise ImportError("boom")
        if name == "targetprocess_mcp.tools.good":
            return good_mod
        return real_import_module(name, *args, **kwargs)

    monkeypatch.setattr(pkgutil, "iter_modules", fake_iter_modules)
    monkeypatch.setattr(importlib, "import_module", fake_import_module)

    with caplog.at_level("ERROR"):
        modules = discover_tool_modules()

    assert [m.__name__ for m in modules] == ["targetprocess_mcp.tools.good"]
    assert any("Failed importing tool module" in rec.message for rec in caplog.records)
