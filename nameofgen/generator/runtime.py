"""Loaded-module tier: reflection over assemblies loaded into the process.

Assemblies are loaded through pythonnet. The loader is explicit state owned by
one generation pass, so a module identity is loaded at most once per pass and
tests can substitute their own loader.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from .metadata import broadest, generic_parameter_names
from .types import (
    BinaryType,
    MemberKind,
    MemberRecord,
    Tier,
    TypeKind,
    TypeRecord,
    Visibility,
    split_arity,
)

logger = logging.getLogger(__name__)

_g_runtime_ready = False
_g_runtime_lock = threading.Lock()


class ModuleLoadError(RuntimeError):
    """Raised when a module cannot be loaded into the process."""


class LoadedModule(ABC):
    """A module living in the process, able to describe its types."""

    identity: str
    location: Path | None

    @abstractmethod
    def find_type(self, full_name: str) -> BinaryType | None:
        """Describe a type by metadata full name, e.g. Ns.Outer+Inner."""


class ModuleLoader(ABC):
    """Loads modules by identity and remembers the outcome for the pass."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._modules: dict[str, LoadedModule | None] = {}

    def load(self, identity: str) -> LoadedModule | None:
        """Load a module, or return the earlier result for the same identity."""
        with self._lock:
            if identity in self._modules:
                return self._modules[identity]
            try:
                module: LoadedModule | None = self._load(identity)
            except Exception as e:  # pylint: disable=broad-except
                logger.debug("Cannot load module %s: %s", identity, e)
                module = None
            self._modules[identity] = module
            return module

    def loaded_location(self, identity: str) -> Path | None:
        """File of an already loaded module, without loading anything."""
        with self._lock:
            module = self._modules.get(identity)
        return module.location if module is not None else None

    def runtime_directory(self) -> Path | None:
        """Folder of the core library of the runtime modules are loaded into."""
        return None

    @abstractmethod
    def _load(self, identity: str) -> LoadedModule:
        """Load a module, raising ModuleLoadError on failure."""


def clr_visibility(t: Any) -> Visibility:
    if t.IsPublic or t.IsNestedPublic:
        return Visibility.PUBLIC
    if t.IsNestedPrivate:
        return Visibility.PRIVATE
    if t.IsNestedFamily:
        return Visibility.PROTECTED
    if t.IsNestedFamANDAssem:
        return Visibility.PRIVATE_PROTECTED
    if t.IsNestedFamORAssem:
        return Visibility.PROTECTED_INTERNAL
    return Visibility.INTERNAL


def clr_member_visibility(member: Any) -> Visibility:
    """Visibility of a FieldInfo or MethodBase."""
    if member.IsPublic:
        return Visibility.PUBLIC
    if member.IsFamilyOrAssembly:
        return Visibility.PROTECTED_INTERNAL
    if member.IsAssembly:
        return Visibility.INTERNAL
    if member.IsFamily:
        return Visibility.PROTECTED
    if member.IsFamilyAndAssembly:
        return Visibility.PRIVATE_PROTECTED
    return Visibility.PRIVATE


def _clr_kind(t: Any) -> TypeKind:
    if t.IsInterface:
        return TypeKind.INTERFACE
    if t.IsEnum:
        return TypeKind.ENUM
    if t.IsValueType:
        return TypeKind.STRUCT
    return TypeKind.CLASS


def _accessors(methods: Iterable[Any]) -> Visibility:
    return broadest(clr_member_visibility(m) for m in methods if m is not None)


def record_from_clr(t: Any, member_flags: Any = None, nested_flags: Any = None) -> TypeRecord:
    """Describe a System.Type.

    member_flags and nested_flags are the BindingFlags used for member and
    nested type queries; they should ask for declared members of every
    visibility, static and instance alike.
    """
    _, arity = split_arity(t.Name)
    record = TypeRecord(
        name=t.Name,
        namespace=t.Namespace or None,
        kind=_clr_kind(t),
        visibility=clr_visibility(t),
        type_parameters=generic_parameter_names(arity),
    )

    for f in t.GetFields(member_flags):
        record.members.append(MemberRecord(f.Name, MemberKind.FIELD, clr_member_visibility(f)))
    for p in t.GetProperties(member_flags):
        record.members.append(
            MemberRecord(p.Name, MemberKind.PROPERTY, _accessors(p.GetAccessors(True)))
        )
    for e in t.GetEvents(member_flags):
        accessors = [e.GetAddMethod(True), e.GetRemoveMethod(True), e.GetRaiseMethod(True)]
        record.members.append(MemberRecord(e.Name, MemberKind.EVENT, _accessors(accessors)))
    for m in t.GetMethods(member_flags):
        record.members.append(
            MemberRecord(
                m.Name, MemberKind.METHOD, clr_member_visibility(m), special=bool(m.IsSpecialName)
            )
        )

    for nested in t.GetNestedTypes(nested_flags):
        record.nested.append(record_from_clr(nested, member_flags, nested_flags))
    return record


def _runtime(runtime: str | None) -> Any:
    """Start the CLR once per process and return the clr module."""
    global _g_runtime_ready

    with _g_runtime_lock:
        if not _g_runtime_ready:
            if runtime:
                import pythonnet

                pythonnet.load(runtime)
            _g_runtime_ready = True

    import clr

    return clr


class ClrModule(LoadedModule):
    def __init__(self, assembly: Any, identity: str):
        self.assembly = assembly
        self.identity = identity
        location = str(assembly.Location or "")
        self.location = Path(location) if location else None

    def find_type(self, full_name: str) -> BinaryType | None:
        from System.Reflection import BindingFlags

        t = self.assembly.GetType(full_name, False)
        if t is None:
            return None

        member_flags = (
            BindingFlags.DeclaredOnly
            | BindingFlags.Instance
            | BindingFlags.Static
            | BindingFlags.Public
            | BindingFlags.NonPublic
        )
        nested_flags = BindingFlags.Public | BindingFlags.NonPublic
        record = record_from_clr(t, member_flags, nested_flags)

        # Describe the enclosing chain too, so nested targets know their ancestry
        containing: BinaryType | None = None
        chain = []
        outer = t.DeclaringType
        while outer is not None:
            chain.append(outer)
            outer = outer.DeclaringType
        for outer in reversed(chain):
            shell = record_from_clr(outer, BindingFlags.DeclaredOnly, BindingFlags.DeclaredOnly)
            containing = BinaryType(shell, Tier.LOADED, containing=containing)
        return BinaryType(record, Tier.LOADED, containing=containing)


class ClrModuleLoader(ModuleLoader):
    """Loads assemblies into a .NET runtime hosted by pythonnet.

    known_paths are assembly files tried when loading by name fails, e.g. the
    program's references. runtime selects the pythonnet runtime ("coreclr",
    "mono", "netfx") before first use; None keeps pythonnet's default.
    """

    def __init__(self, known_paths: Iterable[Path] = (), runtime: str | None = None):
        super().__init__()
        self.known_paths = [Path(p) for p in known_paths]
        self.runtime = runtime

    def _load(self, identity: str) -> LoadedModule:
        _runtime(self.runtime)
        from System import AppDomain
        from System.Reflection import Assembly

        for assembly in AppDomain.CurrentDomain.GetAssemblies():
            if assembly.GetName().Name == identity:
                logger.debug("Reusing loaded module %s", identity)
                return ClrModule(assembly, identity)

        try:
            return ClrModule(Assembly.Load(identity), identity)
        except Exception as e:  # pylint: disable=broad-except
            logger.debug("Assembly.Load(%s) failed: %s", identity, e)

        for path in self.known_paths:
            if path.stem == identity and path.is_file():
                return ClrModule(Assembly.LoadFrom(str(path.resolve())), identity)
        raise ModuleLoadError(f"Module {identity} is not loadable")

    def runtime_directory(self) -> Path | None:
        try:
            clr = _runtime(self.runtime)
            import System

            location = clr.GetClrType(System.Object).Assembly.Location
        except Exception as e:  # pylint: disable=broad-except
            logger.debug("No runtime directory: %s", e)
            return None
        return Path(str(location)).parent if location else None
