"""Tests for whole generation passes."""

import threading

import pytest

from nameofgen.generator import pipeline
from nameofgen.generator.markers import MarkerError
from nameofgen.generator.metadata import (
    AssemblyLocator,
    MetadataReader,
    RawMember,
    RawTypeDef,
    ReferenceSet,
    build_records,
    find_type,
)
from nameofgen.generator.pipeline import (
    RESOLUTION_EXHAUSTED,
    SYNTHESIS_FAILURE,
    UNSUPPORTED_SHAPE,
    EmissionRegistry,
    GenerationPass,
    GeneratorOptions,
    TargetStatus,
    collect_targets,
    is_supported_full_name,
    parse_extra_marker,
)
from nameofgen.generator.resolver import LoadedModuleTier, MetadataTier, StaticTier, SymbolResolver
from nameofgen.generator.runtime import LoadedModule, ModuleLoader, ModuleLoadError
from nameofgen.generator.source import SourceProgram
from nameofgen.generator.types import (
    AccessModifier,
    Severity,
    TargetDescriptor,
    Tier,
    TypeRef,
)

PRIVATE = 0x1
PUBLIC = 0x6

SOURCE = """
using Nameof;

namespace App
{
    public class Local
    {
        private int _x;
    }

    public class Empty
    {
        public int Shown;
    }

    internal class Hidden
    {
        private int _y;
    }

    public interface IContract
    {
    }
}
"""


def _records():
    typedefs = [
        RawTypeDef(
            1,
            "Hidden",
            "Lib",
            0x0,
            fields=[RawMember("_a", PRIVATE), RawMember("b", PUBLIC)],
        ),
        RawTypeDef(2, "Visible", "Lib", 0x1),
    ]
    return build_records(typedefs, [])


class FakeModule(LoadedModule):
    def __init__(self, identity, records):
        self.identity = identity
        self.records = records
        self.location = None

    def find_type(self, full_name):
        return find_type(self.records, full_name, Tier.LOADED)


class FakeLoader(ModuleLoader):
    def __init__(self, modules=None):
        super().__init__()
        self.modules = modules or {}

    def _load(self, identity):
        if identity not in self.modules:
            raise ModuleLoadError(identity)
        return self.modules[identity]


class FakeReader(MetadataReader):
    def _read(self, path):
        return _records()


@pytest.fixture
def program():
    program = SourceProgram("App")
    program.add_source(SOURCE)
    return program


@pytest.fixture
def library(tmp_path):
    path = tmp_path / "Lib.dll"
    path.write_bytes(b"")
    return path


def _resolver(program, library, loader=None):
    loader = loader or FakeLoader()
    reader = FakeReader()
    locator = AssemblyLocator(references=[library], loader=loader, roots=[])
    tiers = [StaticTier(program), LoadedModuleTier(loader), MetadataTier(locator, reader)]
    return SymbolResolver(program, tiers, ReferenceSet([library], reader))


def _direct(name, access=None):
    return TargetDescriptor.direct(TypeRef.parse_dotted(name), access=access)


def _units(result):
    return [u for u in result.units if u.hint_name != "Nameof.Core.g.cs"]


def describe_generation_pass():
    def emits_the_core_unit_first(expect, program, library):
        result = GenerationPass(_resolver(program, library)).run([_direct("App.Local")])
        expect(result.units[0].hint_name) == "Nameof.Core.g.cs"
        expect(result.units[1].hint_name) == "Nameof.App_Local.g.cs"

    def can_skip_the_core_unit(expect, program, library):
        options = GeneratorOptions(emit_core=False)
        result = GenerationPass(_resolver(program, library), options).run([_direct("App.Local")])
        expect([u.hint_name for u in result.units]) == ["Nameof.App_Local.g.cs"]

    def falls_back_to_metadata_with_the_same_output(expect, program, library):
        descriptor = TargetDescriptor.textual("Lib.Hidden", module="Lib")
        metadata = GenerationPass(_resolver(program, library)).run([descriptor])
        loader = FakeLoader({"Lib": FakeModule("Lib", _records())})
        loaded = GenerationPass(_resolver(program, library, loader)).run([descriptor])

        [unit] = _units(metadata)
        expect(unit.tier) == Tier.METADATA
        expect(unit.source).includes('public static string _a => "_a";')
        expect(unit.source).excludes('"b"')
        expect(_units(loaded)[0].tier) == Tier.LOADED
        expect(_units(loaded)[0].source) == unit.source

    def rejects_unsupported_textual_shapes(expect, program, library):
        descriptor = TargetDescriptor.textual("Lib.List`1", module="Lib")
        result = GenerationPass(_resolver(program, library)).run([descriptor])
        expect(_units(result)) == []
        [diagnostic] = result.diagnostics
        expect(diagnostic.id) == UNSUPPORTED_SHAPE
        expect(diagnostic.severity) == Severity.WARNING
        expect(diagnostic.message).includes('GenerateNameof("Lib.List`1") is not supported')
        expect(result.reports[0].status) == TargetStatus.UNSUPPORTED

    def reports_unresolved_targets(expect, program, library):
        descriptor = TargetDescriptor.textual("Lib.Missing", module="Lib")
        result = GenerationPass(_resolver(program, library)).run([descriptor])
        [diagnostic] = result.diagnostics
        expect(diagnostic.id) == RESOLUTION_EXHAUSTED
        expect(diagnostic.severity) == Severity.INFO
        expect(diagnostic.message).includes('"Lib.Missing"')
        expect(result.reports[0].status) == TargetStatus.UNRESOLVED

    def emits_each_target_once(expect, program, library):
        descriptors = [
            _direct("App.Local"),
            _direct("Local"),
            TargetDescriptor.textual("App.Local", module="App"),
        ]
        result = GenerationPass(_resolver(program, library)).run(descriptors)
        expect(len(_units(result))) == 1
        expect([r.status for r in result.reports]) == [
            TargetStatus.EMITTED,
            TargetStatus.DUPLICATE,
            TargetStatus.DUPLICATE,
        ]

    def emits_nothing_for_types_without_restricted_members(expect, program, library):
        result = GenerationPass(_resolver(program, library)).run([_direct("App.Empty")])
        expect(_units(result)) == []
        expect(result.diagnostics) == []
        expect(result.reports[0].status) == TargetStatus.EMPTY

    def rejects_private_nested_source_types(expect, library):
        program = SourceProgram("App")
        program.add_source(
            """
            namespace App
            {
                public class Outer
                {
                    [GenerateNameof]
                    private class Secret { private int _hidden; }
                }
            }
            """
        )
        result = GenerationPass(_resolver(program, library)).run(collect_targets(program))
        expect(_units(result)) == []
        [diagnostic] = result.diagnostics
        expect(diagnostic.id) == UNSUPPORTED_SHAPE
        expect(diagnostic.message).includes("is not accessible outside its enclosing type")
        expect(result.reports[0].status) == TargetStatus.UNSUPPORTED

    def isolates_failing_targets(expect, program, library, monkeypatch):
        resolver = _resolver(program, library)
        original = resolver.resolve

        def resolve(target):
            if target.full_name == "App.Local":
                raise RuntimeError("broken module")
            return original(target)

        monkeypatch.setattr(resolver, "resolve", resolve)
        descriptors = [_direct("App.Local"), TargetDescriptor.textual("Lib.Hidden", module="Lib")]
        result = GenerationPass(resolver, GeneratorOptions(emit_core=False)).run(descriptors)
        expect([u.target for u in result.units]) == ["Lib.Hidden (in assembly of Lib)"]
        [diagnostic] = result.diagnostics
        expect(diagnostic.id) == SYNTHESIS_FAILURE
        expect(diagnostic.message).includes("broken module")

    def isolates_rendering_failures(expect, program, library, monkeypatch):
        original = pipeline.render

        def render(resolved, *args):
            if resolved.type.name == "Hidden" and resolved.in_source:
                raise ValueError("bad template")
            return original(resolved, *args)

        monkeypatch.setattr(pipeline, "render", render)
        descriptors = [_direct("App.Hidden"), _direct("App.Local")]
        result = GenerationPass(_resolver(program, library)).run(descriptors)
        expect([u.hint_name for u in _units(result)]) == ["Nameof.App_Local.g.cs"]
        expect(result.diagnostics[0].message).includes("Failed generating nameof extension")
        expect(result.reports[0].status) == TargetStatus.FAILED

    def applies_the_default_access(expect, program, library):
        options = GeneratorOptions(access=AccessModifier.INTERNAL, emit_core=False)
        result = GenerationPass(_resolver(program, library), options).run([_direct("App.Local")])
        expect(result.units[0].source).includes("internal static class Nameof_App_Local")

    def lets_markers_override_the_default_access(expect, program, library):
        descriptor = _direct("App.Local", AccessModifier.INTERNAL)
        result = GenerationPass(_resolver(program, library)).run([descriptor])
        expect(_units(result)[0].source).includes("internal static class Nameof_App_Local")

    def keeps_descriptor_order_with_parallel_jobs(expect, program, library):
        descriptors = [
            TargetDescriptor.textual("Lib.Missing", module="Lib"),
            _direct("App.Local"),
            TargetDescriptor.textual("Lib.Hidden", module="Lib"),
            _direct("App.Hidden"),
        ]
        options = GeneratorOptions(jobs=4, emit_core=False)
        result = GenerationPass(_resolver(program, library), options).run(descriptors)
        expect([u.hint_name for u in result.units]) == [
            "Nameof.App_Local.g.cs",
            "Nameof.Lib_Hidden.g.cs",
            "Nameof.App_Hidden.g.cs",
        ]
        expect([r.target for r in result.reports]) == [str(d) for d in descriptors]

    def suffixes_colliding_unit_identities(expect, program, library):
        descriptors = [_direct("App.Hidden"), TargetDescriptor.textual("App.Hidden", module="Lib")]
        reader_records = {"App.Hidden": _records()["Lib.Hidden"]}
        reader_records["App.Hidden"].namespace = "App"

        class AppReader(MetadataReader):
            def _read(self, path):
                return reader_records

        locator = AssemblyLocator(references=[library], roots=[])
        resolver = SymbolResolver(
            program, [StaticTier(program), MetadataTier(locator, AppReader())]
        )
        result = GenerationPass(resolver, GeneratorOptions(emit_core=False)).run(descriptors)
        expect([u.hint_name for u in result.units]) == [
            "Nameof.App_Hidden.g.cs",
            "Nameof.App_Hidden_2.g.cs",
        ]
        expect(result.units[1].source).includes("Nameof_App_Hidden_2")


def describe_emission_registry():
    def claims_each_key_once_across_threads(expect):
        registry = EmissionRegistry()
        wins = []

        def claim():
            if registry.claim("App|App.Local"):
                wins.append(True)

        threads = [threading.Thread(target=claim) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        expect(wins) == [True]

    def shares_claims_between_passes(expect, program, library):
        registry = EmissionRegistry()
        first = GenerationPass(_resolver(program, library), registry=registry)
        second = GenerationPass(_resolver(program, library), registry=registry)
        expect(len(first.run([_direct("App.Local")]).units)) == 2
        result = second.run([_direct("App.Local")])
        expect(result.units) == []
        expect(result.reports[0].status) == TargetStatus.DUPLICATE

    def suffixes_identities(expect):
        registry = EmissionRegistry()
        expect(registry.claim_identity("App_Local")) == "App_Local"
        expect(registry.claim_identity("App_Local")) == "App_Local_2"


def describe_is_supported_full_name():
    def accepts_plain_top_level_names(expect):
        expect(is_supported_full_name("Lib.Hidden")) == True
        expect(is_supported_full_name("Hidden")) == True

    def rejects_generic_nested_and_decorated_names(expect):
        for name in ("Lib.List`1", "Lib.Outer+Inner", "Lib.Type[]", "Lib.Type*", "Lib..Type", ""):
            expect(is_supported_full_name(name)) == False


def describe_collect_targets():
    def reads_type_and_assembly_markers(expect):
        program = SourceProgram("App")
        program.add_source(
            """
            [assembly: Nameof.GenerateNameof(typeof(App.Local))]
            namespace App
            {
                [GenerateNameof(NameofAccessModifier.Internal)]
                public class Local { private int _x; }
            }
            """
        )
        descriptors = collect_targets(program)
        expect([str(d.type_ref) for d in descriptors]) == ["App.Local", "global::App.Local"]
        expect(descriptors[1].access) == AccessModifier.INTERNAL

    def expands_assembly_wide_markers(expect, program):
        program.add_source("[assembly: GenerateNameof]")
        descriptors = collect_targets(program)
        expect([d.type_ref.dotted for d in descriptors]) == ["App.Local", "App.Empty", "App.Hidden"]

    def skips_malformed_markers(expect):
        program = SourceProgram("App")
        program.add_source('[assembly: GenerateNameof("Lib.Hidden")]')
        expect(collect_targets(program)) == []

    def appends_extra_markers(expect, program):
        descriptors = collect_targets(
            program, ['[assembly: GenerateNameof("Lib.Hidden", assemblyName: "Lib")]']
        )
        expect(descriptors[-1].full_name) == "Lib.Hidden"
        expect(descriptors[-1].module) == "Lib"


def describe_parse_extra_marker():
    def accepts_bare_attribute_text(expect):
        descriptor = parse_extra_marker("GenerateNameof<App.Local>")
        expect(descriptor.type_ref.dotted) == "App.Local"

    def rejects_other_attributes(expect):
        with pytest.raises(MarkerError) as exc:
            parse_extra_marker("[Obsolete]")
        expect(str(exc.value)).includes("is not a GenerateNameof attribute")

    def rejects_markers_without_a_type(expect):
        with pytest.raises(MarkerError) as exc:
            parse_extra_marker("[assembly: GenerateNameof]")
        expect(str(exc.value)).includes("does not name a type")
