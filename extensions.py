from __future__ import annotations

import importlib.util
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple


EXTENSION_API_VERSION = 1

EVENTS = frozenset(
    {
        "program_start",
        "before_line",
        "after_line",
        "before_call",
        "after_call",
        "on_import",
        "on_error",
        "program_end",
    }
)

Handler = Callable[..., None]


class AlisahinExtensionError(Exception):
    pass


@dataclass
class HookRegistry:
    """Event name -> handlers, highest priority first, then registration order."""

    _handlers: Dict[str, List[Tuple[int, int, Handler]]] = field(default_factory=dict)
    _registered: int = 0

    def on_event(self, event: str, handler: Handler, *, priority: int = 0) -> None:
        if event not in EVENTS:
            raise AlisahinExtensionError(f"Unknown event '{event}'")
        self._registered += 1
        handlers = self._handlers.setdefault(event, [])
        handlers.append((-priority, self._registered, handler))
        handlers.sort(key=lambda item: item[:2])

    def handlers(self, event: str) -> List[Handler]:
        return [handler for _, _, handler in self._handlers.get(event, ())]


@dataclass
class RuntimeServices:
    hook_registry: HookRegistry = field(default_factory=HookRegistry)
    loaded: List[str] = field(default_factory=list)


class ExtensionAPI:
    """What an extension's ``alisahin_register(ext)`` receives."""

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self.name = ext_name

    def on_event(self, event: str, handler: Optional[Handler] = None, *, priority: int = 0):
        registry = self._services.hook_registry
        if handler is not None:
            registry.on_event(event, handler, priority=priority)
            return handler

        def deco(fn: Handler) -> Handler:
            registry.on_event(event, fn, priority=priority)
            return fn

        return deco


def load_extension_module(path: str) -> Any:
    stem = os.path.splitext(os.path.basename(path))[0]
    spec = importlib.util.spec_from_file_location(f"alisahin_ext_{stem}", path)
    if spec is None or spec.loader is None:
        raise AlisahinExtensionError(f"Extension not found or not a Python file: {path}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except FileNotFoundError:
        raise AlisahinExtensionError(f"Extension not found: {path}") from None
    return module


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = RuntimeServices()
    for path in paths:
        module = load_extension_module(path)
        wanted = getattr(module, "ALISAHIN_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
        if wanted != EXTENSION_API_VERSION:
            raise AlisahinExtensionError(f"Extension {path} targets API {wanted}; this interpreter provides {EXTENSION_API_VERSION}")
        register = getattr(module, "alisahin_register", None)
        if not callable(register):
            raise AlisahinExtensionError(f"Extension {path} must define alisahin_register(ext)")
        name = getattr(module, "ALISAHIN_EXTENSION_NAME", module.__name__[len("alisahin_ext_"):])
        register(ExtensionAPI(services=services, ext_name=str(name)))
        services.loaded.append(str(name))
    return services
