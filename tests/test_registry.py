# tests/test_registry.py
"""Handler registry and handler module loading"""
from __future__ import annotations

import sys
import types

import pytest

from symphony.core.registry import (
    FunctionHandler,
    HandlerRegistry,
    handler_name,
    parse_handler_modules,
    register_handler_modules,
)


class AuditHandler:
    name = "audit"

    async def handle(self, message, context):
        return None


async def sync_crm(message, context):
    return None


class TestHandlerRegistry:
    def test_register_object_handler(self):
        registry = HandlerRegistry()
        handler = AuditHandler()
        assert registry.register("contact_updated", handler) is handler
        assert registry.get_handler("contact_updated") is handler
        assert registry.has_handler("contact_updated")

    def test_register_function_wraps_it(self):
        registry = HandlerRegistry()
        wrapped = registry.register("contact_updated", sync_crm)
        assert isinstance(wrapped, FunctionHandler)
        assert handler_name(wrapped) == "sync_crm"

    def test_sync_function_rejected(self):
        def not_async(message, context):
            return None

        with pytest.raises(TypeError):
            HandlerRegistry().register("x", not_async)

    def test_empty_type_rejected(self):
        with pytest.raises(ValueError):
            HandlerRegistry().register("", AuditHandler())

    def test_fan_out_keeps_registration_order(self):
        registry = HandlerRegistry()
        first, second = AuditHandler(), AuditHandler()
        registry.register("contact_updated", first)
        registry.register("contact_updated", second)
        registry.register("contact_updated", first)  # already there
        assert registry.get_handlers("contact_updated") == [first, second]
        assert registry.get_handler("contact_updated") is first

    def test_unregister_one_and_all(self):
        registry = HandlerRegistry()
        first, second = AuditHandler(), AuditHandler()
        registry.register("t", first)
        registry.register("t", second)
        registry.unregister("t", first)
        assert registry.get_handlers("t") == [second]
        registry.unregister("t")
        assert not registry.has_handler("t")
        assert registry.get_handler("t") is None

    def test_list_and_clear(self):
        registry = HandlerRegistry()
        registry.register("a", AuditHandler())
        registry.register("b", AuditHandler())
        assert registry.list_types() == ["a", "b"]
        registry.clear()
        assert registry.list_types() == []

    def test_handler_name_falls_back_to_class(self):
        class Nameless:
            async def handle(self, message, context):
                return None

        assert handler_name(Nameless()) == "Nameless"


class TestHandlerModules:
    def test_parse(self):
        assert parse_handler_modules("") == []
        assert parse_handler_modules(" crm.handlers, ,campaigns.handlers ") == [
            "crm.handlers",
            "campaigns.handlers",
        ]

    def test_register_from_module(self, monkeypatch):
        mod = types.ModuleType("fake_handlers")

        def register(registry):
            registry.register("ping", AuditHandler())

        mod.register = register
        monkeypatch.setitem(sys.modules, "fake_handlers", mod)

        registry = HandlerRegistry()
        assert register_handler_modules(registry, ["fake_handlers"]) == ["fake_handlers"]
        assert registry.has_handler("ping")

    def test_missing_module_and_missing_register_are_skipped(self, monkeypatch):
        monkeypatch.setitem(sys.modules, "no_register_here", types.ModuleType("no_register_here"))
        registry = HandlerRegistry()
        registered = register_handler_modules(registry, ["does.not.exist", "no_register_here"])
        assert registered == []
        assert registry.list_types() == []
