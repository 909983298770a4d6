"""Tests for the raw metadata tier."""

from pathlib import Path

import pytest

from nameofgen.generator.metadata import (
    AssemblyLocator,
    MetadataError,
    MetadataReader,
    RawAccessorGroup,
    RawMember,
    RawTypeDef,
    ReferenceSet,
    broadest,
    build_records,
    find_type,
    generic_parameter_names,
    member_visibility,
    shared_framework_dirs,
    type_visibility,
)
from nameofgen.generator.types import MemberKind, Tier, TypeKind, TypeRef, Visibility

# FieldAttributes / MethodAttributes access values
PRIVATE = 0x1
ASSEMBLY = 0x3
PUBLIC = 0x6
SPECIAL_NAME = 0x800

# TypeAttributes visibility values
NOT_PUBLIC = 0x0
TYPE_PUBLIC = 0x1
NESTED_PRIVATE = 0x3
INTERFACE = 0x20


def _typedefs():
    return [
        RawTypeDef(1, "<Module>", "", NOT_PUBLIC),
        RawTypeDef(
            2,
            "Hidden",
            "Lib",
            NOT_PUBLIC,
            extends="System.Object",
            fields=[RawMember("_a", PRIVATE), RawMember("b", PUBLIC)],
            methods=[
                RawMember(".ctor", PUBLIC | SPECIAL_NAME),
                RawMember("get_Size", ASSEMBLY | SPECIAL_NAME),
                RawMember("Run", ASSEMBLY),
            ],
            properties=[RawAccessorGroup("Size", [ASSEMBLY])],
        ),
        RawTypeDef(3, "Inner`1", "", NESTED_PRIVATE, extends="System.ValueType"),
        RawTypeDef(4, "Color", "Lib", TYPE_PUBLIC, extends="System.Enum"),
        RawTypeDef(5, "IShape", "Lib", TYPE_PUBLIC | INTERFACE),
    ]


@pytest.fixture
def records():
    return build_records(_typedefs(), [(3, 2)])


@pytest.fixture
def runtime_assembly():
    """The Python.Runtime assembly that ships inside the pythonnet package."""
    pythonnet = pytest.importorskip("pythonnet")
    path = Path(pythonnet.__file__).parent / "runtime" / "Python.Runtime.dll"
    if not path.is_file():
        pytest.skip("pythonnet ships no runtime assembly")
    return path


class FakeReader(MetadataReader):
    """Serves prepared records instead of opening files."""

    def __init__(self, files):
        super().__init__()
        self.files = files
        self.reads = []

    def _read(self, path):
        self.reads.append(path.name)
        if path.name not in self.files:
            raise MetadataError(f"{path} does not exist")
        return self.files[path.name]


def describe_flag_maps():
    def maps_type_visibility(expect):
        expect(type_visibility(NOT_PUBLIC)) == Visibility.INTERNAL
        expect(type_visibility(TYPE_PUBLIC | INTERFACE)) == Visibility.PUBLIC
        expect(type_visibility(NESTED_PRIVATE)) == Visibility.PRIVATE

    def maps_member_visibility(expect):
        expect(member_visibility(PRIVATE)) == Visibility.PRIVATE
        expect(member_visibility(ASSEMBLY | SPECIAL_NAME)) == Visibility.INTERNAL
        expect(member_visibility(PUBLIC)) == Visibility.PUBLIC

    def picks_the_broadest_visibility(expect):
        expect(broadest([Visibility.PRIVATE, Visibility.INTERNAL])) == Visibility.INTERNAL
        expect(broadest([])) == Visibility.PRIVATE

    def synthesizes_generic_parameter_names(expect):
        expect(generic_parameter_names(0)) == ()
        expect(generic_parameter_names(1)) == ("T",)
        expect(generic_parameter_names(3)) == ("T1", "T2", "T3")


def describe_build_records():
    def keys_top_level_types_by_full_name(expect, records):
        expect(sorted(records)) == ["Lib.Color", "Lib.Hidden", "Lib.IShape"]

    def hangs_nested_types_off_their_parent(expect, records):
        nested = records["Lib.Hidden"].nested
        expect([n.name for n in nested]) == ["Inner`1"]
        expect(nested[0].type_parameters) == ("T",)
        expect(nested[0].kind) == TypeKind.STRUCT

    def derives_type_kinds(expect, records):
        expect(records["Lib.Color"].kind) == TypeKind.ENUM
        expect(records["Lib.IShape"].kind) == TypeKind.INTERFACE
        expect(records["Lib.Hidden"].kind) == TypeKind.CLASS

    def reads_members(expect, records):
        members = {m.name: m for m in records["Lib.Hidden"].members}
        expect(members["_a"].visibility) == Visibility.PRIVATE
        expect(members["b"].visibility) == Visibility.PUBLIC
        expect(members["get_Size"].special) == True
        expect(members["Run"].special) == False
        expect(members["Size"].kind) == MemberKind.PROPERTY
        expect(members["Size"].visibility) == Visibility.INTERNAL


def describe_find_type():
    def finds_top_level_types(expect, records):
        t = find_type(records, "Lib.Hidden")
        expect(t.full_name) == "Lib.Hidden"
        expect(t.tier) == Tier.METADATA

    def finds_nested_types(expect, records):
        t = find_type(records, "Lib.Hidden+Inner`1", Tier.LOADED)
        expect(t.name) == "Inner"
        expect(t.containing.name) == "Hidden"
        expect(t.tier) == Tier.LOADED

    def returns_none_for_unknown_names(expect, records):
        expect(find_type(records, "Lib.Missing")) == None
        expect(find_type(records, "Lib.Hidden+Missing")) == None


def describe_metadata_reader():
    def caches_records_per_file(expect, tmp_path, records):
        reader = FakeReader({"Lib.dll": records})
        path = tmp_path / "Lib.dll"
        expect(reader.read(path)) == records
        reader.read(path)
        expect(reader.reads) == ["Lib.dll"]

    def rejects_missing_files(expect, tmp_path):
        with pytest.raises(MetadataError):
            MetadataReader().read(tmp_path / "Missing.dll")

    def rejects_files_without_metadata(expect, tmp_path):
        path = tmp_path / "Broken.dll"
        path.write_bytes(b"not a portable executable")
        with pytest.raises(MetadataError):
            MetadataReader().read(path)

    def reads_private_fields_of_a_compiled_assembly(expect, runtime_assembly):
        records = MetadataReader().read(runtime_assembly)
        engine = find_type(records, "Python.Runtime.PythonEngine")
        expect(engine.visibility) == Visibility.PUBLIC
        expect(engine.kind) == TypeKind.CLASS
        members = {m.name: m for m in engine.members()}
        expect(members["initialized"].kind) == MemberKind.FIELD
        expect(members["initialized"].visibility) == Visibility.PRIVATE
        expect(members["delegateManager"].visibility) == Visibility.PRIVATE

    def reads_nested_types_of_a_compiled_assembly(expect, runtime_assembly):
        records = MetadataReader().read(runtime_assembly)
        delegates = find_type(records, "Python.Runtime.Runtime+Delegates")
        expect(delegates.visibility) == Visibility.INTERNAL
        expect(delegates.containing.name) == "Runtime"
        expect(delegates.tier) == Tier.METADATA


def describe_assembly_locator():
    def prefers_explicit_references(expect, tmp_path):
        reference = tmp_path / "refs" / "Lib.dll"
        reference.parent.mkdir()
        reference.write_bytes(b"")
        locator = AssemblyLocator(references=[reference], roots=[])
        expect(locator.locate("Lib")) == reference

    def searches_extra_folders(expect, tmp_path):
        (tmp_path / "Tool.exe").write_bytes(b"")
        locator = AssemblyLocator(search_paths=[tmp_path], roots=[])
        expect(locator.locate("Tool")) == tmp_path / "Tool.exe"

    def searches_next_to_references(expect, tmp_path):
        (tmp_path / "Lib.dll").write_bytes(b"")
        (tmp_path / "Dependency.dll").write_bytes(b"")
        locator = AssemblyLocator(references=[tmp_path / "Lib.dll"], roots=[])
        expect(locator.locate("Dependency")) == tmp_path / "Dependency.dll"

    def searches_shared_frameworks(expect, tmp_path):
        newest = tmp_path / "shared" / "Microsoft.NETCore.App" / "9.0.1"
        older = tmp_path / "shared" / "Microsoft.NETCore.App" / "8.0.10"
        for folder in (newest, older):
            folder.mkdir(parents=True)
            (folder / "System.Runtime.dll").write_bytes(b"")
        locator = AssemblyLocator(roots=[tmp_path])
        expect(locator.locate("System.Runtime")) == newest / "System.Runtime.dll"

    def returns_none_when_nothing_matches(expect, tmp_path):
        locator = AssemblyLocator(search_paths=[tmp_path], roots=[])
        expect(locator.locate("Missing")) == None


def describe_shared_framework_dirs():
    def orders_versions_numerically(expect, tmp_path):
        for version in ("8.0.2", "10.0.0", "8.0.10"):
            (tmp_path / "shared" / "App" / version).mkdir(parents=True)
        names = [p.name for p in shared_framework_dirs(tmp_path)]
        expect(names) == ["10.0.0", "8.0.10", "8.0.2"]

    def yields_nothing_without_a_shared_folder(expect, tmp_path):
        expect(list(shared_framework_dirs(tmp_path))) == []


def describe_reference_set():
    def finds_the_module_of_a_type(expect, tmp_path, records):
        reader = FakeReader({"Lib.dll": records})
        references = ReferenceSet([tmp_path / "Lib.dll"], reader)
        found = references.find(TypeRef.parse_dotted("Lib.Hidden"))
        expect(found) == ("Lib", "Lib.Hidden")
        expect(references.find(TypeRef.parse_dotted("Hidden.Inner"))) == None

    def matches_unqualified_references(expect, tmp_path, records):
        reader = FakeReader({"Lib.dll": records})
        references = ReferenceSet([tmp_path / "Lib.dll"], reader)
        expect(references.find(TypeRef.parse_dotted("Color"))) == ("Lib", "Lib.Color")

    def skips_unreadable_references(expect, tmp_path, records):
        reader = FakeReader({"Lib.dll": records})
        references = ReferenceSet([tmp_path / "Broken.dll", tmp_path / "Lib.dll"], reader)
        expect(references.find(TypeRef.parse_dotted("Lib.IShape"))) == ("Lib", "Lib.IShape")

    def gives_up_on_ambiguous_tails(expect, tmp_path, records):
        reader = FakeReader({"A.dll": records, "B.dll": records})
        references = ReferenceSet([tmp_path / "A.dll", tmp_path / "B.dll"], reader)
        expect(references.find(TypeRef.parse_dotted("Color"))) == None
        expect(references.find(TypeRef.parse_dotted("global::Lib.Color"))) == ("A", "Lib.Color")
