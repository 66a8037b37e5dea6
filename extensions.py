"""Extension hooks for the xasm interpreter.

An extension is a Python file defining ``xasm_register(ext)``. It receives
an :class:`ExtensionAPI` and subscribes handlers to interpreter events or
to periodic step rules. ``.xasmx`` files list extension paths, one per
line.
"""

from __future__ import annotations

import contextlib
import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence


EXTENSION_API_VERSION = 1

# event name -> positional arguments handlers receive
EVENT_SIGNATURES: Dict[str, tuple] = {
    "program_start": ("interpreter", "program"),
    "before_command": ("interpreter", "index", "command"),
    "after_command": ("interpreter", "index", "command"),
    "on_error": ("interpreter", "error"),
    "program_end": ("interpreter", "result"),
}
EVENTS = frozenset(EVENT_SIGNATURES)

POINTER_SUFFIX = ".xasmx"


class ASMExtensionError(Exception):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    index: int
    op: str
    location: Any  # SourceLocation | None


@dataclass(frozen=True)
class _Hook:
    priority: int
    handler: Callable[..., None]
    extension: str


@dataclass(frozen=True)
class _StepRule:
    name: str
    every_n: int
    handler: Callable[[Any, StepContext], None]
    extension: str

    def due(self, ctx: StepContext) -> bool:
        return ctx.step_index % self.every_n == 0


@dataclass
class HookRegistry:
    _hooks: Dict[str, List[_Hook]] = field(default_factory=dict)
    _rules: List[_StepRule] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int = 0, ext_name: str = "") -> None:
        if event not in EVENTS:
            raise ASMExtensionError(f"Unknown event '{event}' (expected one of {', '.join(sorted(EVENTS))})")
        hooks = self._hooks.setdefault(event, [])
        hooks.append(_Hook(priority, handler, ext_name))
        # Higher priority first; equal priorities keep registration order.
        hooks.sort(key=lambda hook: -hook.priority)

    def handlers(self, event: str) -> List[Callable[..., None]]:
        return [hook.handler for hook in self._hooks.get(event, ())]

    def has_handlers(self, event: str) -> bool:
        return bool(self._hooks.get(event))

    def emit(self, event: str, *args: Any) -> None:
        for handler in self.handlers(event):
            handler(*args)

    def add_step_rule(
        self, *, name: str, every_n: int, handler: Callable[[Any, StepContext], None], ext_name: str = ""
    ) -> None:
        if every_n < 1:
            raise ASMExtensionError(f"Step rule '{name}' needs every_n >= 1, got {every_n}")
        self._rules.append(_StepRule(name, every_n, handler, ext_name))

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for rule in self._rules:
            if rule.due(ctx):
                rule.handler(interpreter, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)


class ExtensionAPI:
    """Handle passed to ``xasm_register``; every registration is tagged with the extension name."""

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self.name = ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        if requires_api != EXTENSION_API_VERSION:
            raise ASMExtensionError(
                f"Extension '{name}' requires API {requires_api}, host supports {EXTENSION_API_VERSION}"
            )
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        """Subscribe ``handler`` to ``event``; without a handler, acts as a decorator."""

        def subscribe(fn: Callable[..., None]) -> Callable[..., None]:
            self._services.hook_registry.on_event(event, fn, priority=priority, ext_name=self.name)
            return fn

        return subscribe if handler is None else subscribe(handler)

    def every_n_steps(self, every_n: int, handler: Optional[Callable[[Any, StepContext], None]] = None, *, name: str = ""):
        def subscribe(fn: Callable[[Any, StepContext], None]) -> Callable[[Any, StepContext], None]:
            self._services.hook_registry.add_step_rule(
                name=name or fn.__name__, every_n=every_n, handler=fn, ext_name=self.name
            )
            return fn

        return subscribe if handler is None else subscribe(handler)


@contextlib.contextmanager
def _sibling_imports(directory: str) -> Iterator[None]:
    # Extensions may import helpers that sit next to them.
    sys.path.insert(0, directory)
    try:
        yield
    finally:
        with contextlib.suppress(ValueError):
            sys.path.remove(directory)


def _module_name(path: str) -> str:
    stem = os.path.splitext(os.path.basename(path))[0]
    safe = "".join(ch if ch.isalnum() else "_" for ch in stem)
    digest = hashlib.sha1(path.encode("utf-8")).hexdigest()[:10]
    return f"xasm_ext_{safe}_{digest}"


def load_extension_module(path: str) -> Any:
    path = os.path.abspath(path)
    if not os.path.isfile(path):
        raise ASMExtensionError(f"Extension not found: {path}")
    spec = importlib.util.spec_from_file_location(_module_name(path), path)
    if spec is None or spec.loader is None:
        raise ASMExtensionError(f"Cannot import extension: {path}")
    module = importlib.util.module_from_spec(spec)
    with _sibling_imports(os.path.dirname(path)):
        spec.loader.exec_module(module)
    return module


def read_xasmx(pointer_file: str) -> List[str]:
    """Read an ``.xasmx`` file listing one extension path per line.

    ``#`` starts a comment. Relative paths resolve against the file's
    directory.
    """
    if not os.path.isfile(pointer_file):
        raise ASMExtensionError(f"{POINTER_SUFFIX} file not found: {pointer_file}")
    base_dir = os.path.dirname(os.path.abspath(pointer_file))
    with open(pointer_file, "r", encoding="utf-8") as handle:
        entries = [raw.partition("#")[0].strip() for raw in handle]
    return [os.path.join(base_dir, entry) for entry in entries if entry]


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    expanded: List[str] = []
    for path in paths:
        if path.lower().endswith(POINTER_SUFFIX):
            expanded.extend(read_xasmx(path))
        else:
            expanded.append(path)
    return [os.path.abspath(path) for path in expanded]


def register_extension(services: RuntimeServices, module: Any, origin: str = "") -> None:
    """Run a loaded module's ``xasm_register`` against ``services``."""
    origin = origin or getattr(module, "__file__", None) or repr(module)
    api_version = getattr(module, "XASM_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if api_version != EXTENSION_API_VERSION:
        raise ASMExtensionError(f"Extension {origin} requires API {api_version}, host supports {EXTENSION_API_VERSION}")
    register = getattr(module, "xasm_register", None)
    if not callable(register):
        raise ASMExtensionError(f"Extension {origin} must define callable xasm_register(ext)")
    default_name = os.path.splitext(os.path.basename(origin))[0]
    ext_name = str(getattr(module, "XASM_EXTENSION_NAME", default_name))
    register(ExtensionAPI(services=services, ext_name=ext_name))


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = RuntimeServices()
    for path in gather_extension_paths(paths):
        register_extension(services, load_extension_module(path), path)
    return services
