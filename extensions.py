from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from project import VMError


EXTENSION_API_VERSION = 1
POINTER_FILE_SUFFIX = ".bvx"


class ExtensionError(VMError):
    pass


class BlockType:
    COMMAND = "command"
    REPORTER = "reporter"
    BOOLEAN = "Boolean"


class BlockShape:
    ROUND = "round"
    HEXAGONAL = "hexagonal"
    SQUARE = "square"


class ArgumentType:
    STRING = "string"
    NUMBER = "number"
    ANGLE = "angle"
    BOOLEAN = "Boolean"


class TargetType:
    SPRITE = "sprite"
    STAGE = "stage"


_BLOCK_TYPES = {BlockType.COMMAND, BlockType.REPORTER, BlockType.BOOLEAN}

# Primitive handler contract shared with the runtime: fn(args, util) -> value.
BlockImpl = Callable[[Dict[str, Any], Any], Any]


@dataclass(frozen=True)
class ExtensionMetadata:
    id: str
    name: str
    version: str = "0.0.0"
    color1: Optional[str] = None
    requires_api: int = EXTENSION_API_VERSION


# ---- Types ----

TypeToStr = Callable[[Any], str]


@dataclass(frozen=True)
class TypeSpec:
    name: str
    cls: type
    to_str: TypeToStr
    # Descriptor fragments extensions splice into block and argument declarations.
    block: Dict[str, Any] = field(default_factory=dict)
    argument: Dict[str, Any] = field(default_factory=dict)
    ext_id: str = ""


@dataclass
class TypeRegistry:
    _types: Dict[str, TypeSpec] = field(default_factory=dict)
    _sealed: set[str] = field(default_factory=set)

    def seal(self, name: str) -> None:
        self._sealed.add(name)

    def register(self, spec: TypeSpec) -> None:
        name = spec.name
        if not name or not isinstance(name, str):
            raise ExtensionError("Type name must be a non-empty string")
        if name in self._sealed:
            raise ExtensionError(f"Type '{name}' is built in and cannot be redefined")
        if name in self._types:
            raise ExtensionError(f"Type '{name}' is already defined")
        self._types[name] = spec

    def has(self, name: str) -> bool:
        return name in self._types

    def get(self, name: str) -> TypeSpec:
        try:
            return self._types[name]
        except KeyError:
            raise ExtensionError(f"Unknown type '{name}'")

    def get_optional(self, name: str) -> Optional[TypeSpec]:
        return self._types.get(name)

    def spec_for_value(self, value: Any) -> Optional[TypeSpec]:
        for spec in self._types.values():
            if isinstance(value, spec.cls):
                return spec
        return None

    def names(self) -> set[str]:
        return set(self._types.keys())


# ---- Blocks ----


@dataclass(frozen=True)
class ArgumentInfo:
    type: Optional[str] = None
    default_value: Any = None
    menu: Optional[str] = None
    shape: Optional[str] = None
    check: Tuple[str, ...] = ()


@dataclass(frozen=True)
class BlockInfo:
    opcode: str
    impl: BlockImpl
    text: str
    block_type: str = BlockType.COMMAND
    arguments: Dict[str, ArgumentInfo] = field(default_factory=dict)
    filter: Tuple[str, ...] = ()
    block_shape: Optional[str] = None
    force_output_type: Optional[str] = None
    disable_monitor: bool = False


SEPARATOR = "---"


@dataclass
class ExtensionInfo:
    metadata: ExtensionMetadata
    # BlockInfo entries interleaved with SEPARATOR markers, in palette order.
    blocks: List[Any] = field(default_factory=list)
    menus: Dict[str, List[str]] = field(default_factory=dict)

    def block_infos(self) -> List[BlockInfo]:
        return [b for b in self.blocks if isinstance(b, BlockInfo)]


@dataclass
class HookRegistry:
    # event -> list[(priority, handler, ext_id)]
    _events: Dict[str, List[Tuple[int, Callable[..., None], str]]] = field(default_factory=dict)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int, ext_id: str) -> None:
        self._events.setdefault(event, []).append((priority, handler, ext_id))
        self._events[event].sort(key=lambda t: t[0], reverse=True)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler, _ext in self._events.get(event, []):
            handler(*args, **kwargs)


@dataclass
class RuntimeServices:
    extensions: Dict[str, ExtensionInfo] = field(default_factory=dict)
    type_registry: TypeRegistry = field(default_factory=TypeRegistry)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)
    # Directories searched by ExtensionAPI.require for sibling extensions.
    search_paths: List[str] = field(default_factory=list)

    def is_loaded(self, ext_id: str) -> bool:
        return ext_id in self.extensions

    def blocks(self) -> List[Tuple[str, BlockInfo]]:
        out: List[Tuple[str, BlockInfo]] = []
        for ext_id, info in self.extensions.items():
            for block in info.block_infos():
                out.append((ext_id, block))
        return out


class ExtensionAPI:
    def __init__(self, *, services: RuntimeServices, ext_id: str) -> None:
        self._services = services
        self._ext_id = ext_id
        self._info = services.extensions.setdefault(
            ext_id, ExtensionInfo(metadata=ExtensionMetadata(id=ext_id, name=ext_id))
        )

    @property
    def ext_id(self) -> str:
        return self._ext_id

    # ---- metadata ----
    def metadata(
        self,
        *,
        name: str,
        version: str = "0.0.0",
        color1: Optional[str] = None,
        requires_api: int = EXTENSION_API_VERSION,
    ) -> None:
        self._info.metadata = ExtensionMetadata(
            id=self._ext_id, name=name, version=version, color1=color1, requires_api=requires_api
        )

    # ---- blocks ----
    def register_block(
        self,
        opcode: str,
        impl: BlockImpl,
        *,
        text: str,
        block_type: str = BlockType.COMMAND,
        arguments: Optional[Dict[str, Any]] = None,
        filter: Sequence[str] = (),
        block_shape: Optional[str] = None,
        force_output_type: Optional[str] = None,
        disable_monitor: bool = False,
    ) -> None:
        if not opcode:
            raise ExtensionError("Block opcode must be non-empty")
        if block_type not in _BLOCK_TYPES:
            raise ExtensionError(f"Block '{opcode}' has unknown block type '{block_type}'")
        if any(b.opcode == opcode for b in self._info.block_infos()):
            raise ExtensionError(f"Block '{opcode}' is already registered by '{self._ext_id}'")
        args: Dict[str, ArgumentInfo] = {}
        for arg_name, raw in (arguments or {}).items():
            args[arg_name] = raw if isinstance(raw, ArgumentInfo) else _argument_from_dict(arg_name, raw)
        self._info.blocks.append(
            BlockInfo(
                opcode=opcode,
                impl=impl,
                text=text,
                block_type=block_type,
                arguments=args,
                filter=tuple(filter),
                block_shape=block_shape,
                force_output_type=force_output_type,
                disable_monitor=disable_monitor,
            )
        )

    def block(self, opcode: str, **kwargs: Any):
        def deco(fn: BlockImpl) -> BlockImpl:
            self.register_block(opcode, fn, **kwargs)
            return fn

        return deco

    def separator(self) -> None:
        self._info.blocks.append(SEPARATOR)

    def register_menu(self, name: str, items: Sequence[str]) -> None:
        if not name:
            raise ExtensionError("Menu name must be non-empty")
        self._info.menus[name] = [str(i) for i in items]

    # ---- types ----
    def register_type(
        self,
        name: str,
        cls: type,
        *,
        to_str: Optional[TypeToStr] = None,
        block: Optional[Dict[str, Any]] = None,
        argument: Optional[Dict[str, Any]] = None,
    ) -> TypeSpec:
        spec = TypeSpec(
            name=name,
            cls=cls,
            to_str=to_str or str,
            block=dict(block or {}),
            argument=dict(argument or {}),
            ext_id=self._ext_id,
        )
        self._services.type_registry.register(spec)
        return spec

    def get_type(self, name: str) -> TypeSpec:
        return self._services.type_registry.get(name)

    def require(self, ext_id: str) -> None:
        """Load a sibling extension by id unless it is already loaded."""
        if self._services.is_loaded(ext_id):
            return
        for directory in self._services.search_paths:
            candidate = os.path.join(directory, f"{ext_id}.py")
            if os.path.exists(candidate):
                register_extension_module(self._services, load_extension_module(candidate), candidate)
                if not self._services.is_loaded(ext_id):
                    raise ExtensionError(f"{candidate} does not define extension '{ext_id}'")
                return
        raise ExtensionError(f"Extension '{self._ext_id}' requires '{ext_id}', which was not found")

    # ---- hooks ----
    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        if handler is None:
            def deco(fn: Callable[..., None]) -> Callable[..., None]:
                self._services.hook_registry.on_event(event, fn, priority=priority, ext_id=self._ext_id)
                return fn
            return deco
        self._services.hook_registry.on_event(event, handler, priority=priority, ext_id=self._ext_id)
        return handler


def _argument_from_dict(arg_name: str, raw: Any) -> ArgumentInfo:
    if not isinstance(raw, dict):
        raise ExtensionError(f"Argument '{arg_name}' must be declared with a mapping")
    return ArgumentInfo(
        type=raw.get("type"),
        default_value=raw.get("default_value", raw.get("defaultValue")),
        menu=raw.get("menu"),
        shape=raw.get("shape"),
        check=tuple(raw.get("check") or ()),
    )


def _unique_module_name(path: str) -> str:
    base = os.path.basename(path)
    digest = hashlib.sha256(os.path.abspath(path).encode("utf-8")).hexdigest()[:12]
    safe = "".join(ch if ch.isalnum() else "_" for ch in base)
    return f"blockvm_ext_{safe}_{digest}"


def load_extension_module(path: str) -> Any:
    if not os.path.exists(path):
        raise ExtensionError(f"Extension not found: {path}")
    mod_name = _unique_module_name(path)
    spec = importlib.util.spec_from_file_location(mod_name, path)
    if spec is None or spec.loader is None:
        raise ExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)

    # Let extensions import siblings by temporarily prepending their directory.
    ext_dir = os.path.dirname(os.path.abspath(path))
    sys.path.insert(0, ext_dir)
    try:
        spec.loader.exec_module(module)  # type: ignore[union-attr]
    finally:
        if sys.path and sys.path[0] == ext_dir:
            sys.path.pop(0)
    return module


def register_extension_module(services: RuntimeServices, module: Any, path: str) -> str:
    api_version = getattr(module, "BLOCKVM_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if api_version != EXTENSION_API_VERSION:
        raise ExtensionError(
            f"Extension {path} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
        )
    register = getattr(module, "blockvm_register", None)
    if register is None or not callable(register):
        raise ExtensionError(f"Extension {path} must define callable blockvm_register(ext)")
    ext_id = str(getattr(module, "BLOCKVM_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0]))
    if services.is_loaded(ext_id):
        return ext_id
    directory = os.path.dirname(os.path.abspath(path))
    if directory not in services.search_paths:
        services.search_paths.append(directory)
    ext = ExtensionAPI(services=services, ext_id=ext_id)
    try:
        register(ext)
    except Exception:
        # Leave no half-registered extension behind.
        services.extensions.pop(ext_id, None)
        raise
    return ext_id


def read_pointer_file(pointer_file: str) -> List[str]:
    if not os.path.exists(pointer_file):
        raise ExtensionError(f"{POINTER_FILE_SUFFIX} file not found: {pointer_file}")
    base_dir = os.path.dirname(os.path.abspath(pointer_file))
    out: List[str] = []
    with open(pointer_file, "r", encoding="utf-8") as handle:
        for raw in handle.read().splitlines():
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            # Allow inline comments: path # comment
            if "#" in line:
                line = line.split("#", 1)[0].strip()
                if not line:
                    continue
            if not os.path.isabs(line):
                line = os.path.abspath(os.path.join(base_dir, line))
            out.append(line)
    return out


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    expanded: List[str] = []
    for p in paths:
        if p.lower().endswith(POINTER_FILE_SUFFIX):
            expanded.extend(read_pointer_file(p))
        else:
            expanded.append(p)
    return [os.path.abspath(p) for p in expanded]


def build_default_services() -> RuntimeServices:
    services = RuntimeServices()
    # Reserve the host's own value types so extensions cannot redefine them.
    services.type_registry.seal("String")
    services.type_registry.seal("Number")
    services.type_registry.seal("Boolean")
    return services


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    resolved = gather_extension_paths(paths)
    for path in resolved:
        directory = os.path.dirname(path)
        if directory not in services.search_paths:
            services.search_paths.append(directory)
    for path in resolved:
        module = load_extension_module(path)
        register_extension_module(services, module, path)
    return services
