import json
import pytest
from pydantic import ValidationError
from pkgfetch.pkg import *

SOURCE = "https://goo.foo/part"

def build_pkg() -> tuple[Pkg, bytes]:
    builder = new_docker_image_pkg_builder(PartsType.FILE, "someone@example.com", ["one"])
    builder.add_part("one", "a" * 64, "alpine:3.5", ["c2ln"], 33, SOURCE, PartSource(url="https://mirror.foo/part"))
    return builder.build()

def test_pkg_id_is_repeatable_and_independent_of_image_id_order():
    id_1 = pkg_id("someone", 1500000000000000000, ["b", "a", "c"])
    id_2 = pkg_id("someone", 1500000000000000000, ["c", "b", "a"])
    assert id_1 == id_2
    assert is_sha256sum_str(id_1)
    assert pkg_id("someone", 1500000000000000001, ["a", "b", "c"]) != id_1
    assert pkg_id("someone else", 1500000000000000000, ["a", "b", "c"]) != id_1

def test_builders_with_the_same_build_time_share_the_pkg_id():
    one = new_docker_image_pkg_builder(PartsType.FILE, "someone", ["x"])
    two = PkgBuilder(PartsType.FILE, "someone", ["x"], create_ts=one.create_ts)
    assert one.id == two.id

def test_pkg_serializes_to_the_wire_format():
    pkg, pkg_bytes = build_pkg()
    doc = json.loads(pkg_bytes)
    assert doc["id"] == pkg.id
    assert set(doc["meta"].keys()) == {"parts_type", "author", "spec_version", "provides", "createTS"}
    assert doc["meta"]["parts_type"] == "FILE"
    assert doc["meta"]["provides"] == {"provides_types": "DOCKER", "images": {"one": "alpine:3.5"}}
    assert doc["parts"]["one"] == {
        "id": "one",
        "sha256sum": "a" * 64,
        "signatures": ["c2ln"],
        "bytes": 33,
        "sources": [{"url": SOURCE}, {"url": "https://mirror.foo/part"}],
    }

def test_pkg_parses_its_serialization():
    pkg, pkg_bytes = build_pkg()
    parsed = Pkg.from_bytes(pkg_bytes)
    assert parsed == pkg
    assert parsed.parts["one"].expected_bytes == 33
    assert parsed.meta.create_ts == pkg.meta.create_ts

def test_pkg_rejects_unknown_parts_type():
    _, pkg_bytes = build_pkg()
    doc = json.loads(pkg_bytes)
    doc["meta"]["parts_type"] = "REGISTRY"
    with pytest.raises(ValidationError):
        Pkg.from_bytes(json.dumps(doc))

def test_pkg_is_immutable():
    pkg, _ = build_pkg()
    with pytest.raises(ValidationError):
        pkg.id = "other"

def test_safe_file_names():
    assert is_safe_file_name("a" * 64)
    assert is_safe_file_name("layer.tar")
    assert not is_safe_file_name("")
    assert not is_safe_file_name("..")
    assert not is_safe_file_name("../etc")
    assert not is_safe_file_name("a/b")

def test_pkg_parses_null_lists_as_empty():
    _, pkg_bytes = build_pkg()
    doc = json.loads(pkg_bytes)
    doc["parts"]["one"]["signatures"] = None
    doc["parts"]["one"]["sources"] = None

    pkg = Pkg.from_bytes(json.dumps(doc))
    assert pkg.parts["one"].signatures == ()
    assert pkg.parts["one"].sources == ()

    doc["parts"] = None
    doc["meta"]["provides"]["images"] = None
    pkg = Pkg.from_bytes(json.dumps(doc))
    assert pkg.parts == {}
    assert pkg.meta.provides.images == {}
