import logging
import threading
import pytest
from pkgfetch.pkg import *

AUTHOR = "someguy@overthar.it"
SHA_A = "a" * 64
SHA_B = "0123456789abcdef" * 4
SHA_C = "b" * 64
SOURCE = "https://goo.foo/part"

def new_builder(image_ids=None) -> PkgBuilder:
    return new_docker_image_pkg_builder(PartsType.FILE, AUTHOR, image_ids or [])

def test_builder_produces_empty_pkg_with_proper_meta():
    pkg, pkg_bytes = new_builder().build()
    assert pkg.meta.parts_type == PartsType.FILE
    assert pkg.meta.author == AUTHOR
    assert pkg.meta.spec_version == SPEC_VERSION
    assert pkg.meta.provides.provides_type == ProvidesType.DOCKER
    assert len(pkg.meta.provides.images) == 0
    assert len(pkg.parts) == 0
    assert Pkg.from_bytes(pkg_bytes) == pkg

def test_builder_rejects_unknown_parts_type():
    with pytest.raises(PkgBuildError):
        new_docker_image_pkg_builder("REGISTRY", AUTHOR, [])

def test_add_part_checks_sha256sum_length():
    with pytest.raises(PkgBuildError):
        new_builder().add_part("", "1222", "someimage:latest", ["foo"], 33, SOURCE)
    with pytest.raises(PkgBuildError):
        new_builder().add_part("", "a" * 65, "someimage:latest", ["foo"], 33, SOURCE)

def test_add_part_checks_sha256sum_content():
    with pytest.raises(PkgBuildError):
        new_builder().add_part("", "1234567890123456789012345678901234567890123456789012345678901#3", "someimage:latest", ["foo"], 33, SOURCE)
    #alphanumeric, but not hex
    with pytest.raises(PkgBuildError):
        new_builder().add_part("", "g" * 64, "someimage:latest", ["foo"], 33, SOURCE)

def test_add_part_disallows_empty_signatures_by_default():
    with pytest.raises(PkgBuildError):
        new_builder().add_part("", SHA_A, "someimage:latest", [], 33, SOURCE)

def test_add_part_permits_empty_signatures_when_configured(caplog):
    builder = new_builder(["someimage"])
    with caplog.at_level(logging.WARNING):
        builder.set_permit_empty_signatures()
    assert any("permit_empty_signatures" in r.message for r in caplog.records)

    builder.add_part("someimage", SHA_A, "someimage:latest", [], 33, SOURCE)
    pkg, _ = builder.build()
    assert pkg.parts["someimage"].signatures == ()

def test_add_part_requires_sources():
    with pytest.raises(PkgBuildError):
        new_builder().add_part("", SHA_A, "someimage:latest", ["foo"], 33)

def test_add_part_defaults_id_to_sha256sum():
    pkg, _ = new_builder().add_part("", SHA_A, "someimage:latest", ["foo"], 33, SOURCE).build()
    assert list(pkg.parts.keys()) == [SHA_A]
    assert pkg.parts[SHA_A].id == SHA_A
    assert pkg.parts[SHA_A].sources == (PartSource(url=SOURCE),)
    assert pkg.image_name(SHA_A) == "someimage:latest"

@pytest.mark.parametrize("part_id, sha, image_name", [
    ("one", SHA_B, "other:latest"),   #same id
    ("two", SHA_A, "other:latest"),   #same sha256sum
    ("two", SHA_B, "someimage:latest"), #same image name
])
def test_add_part_rejects_conflicts_and_leaves_builder_unchanged(part_id, sha, image_name):
    builder = new_builder()
    builder.add_part("one", SHA_A, "someimage:latest", ["foo"], 33, SOURCE)
    pkg_before, bytes_before = builder.build()

    with pytest.raises(PkgBuildError):
        builder.add_part(part_id, sha, image_name, ["bar"], 44, SOURCE)

    pkg_after, bytes_after = builder.build()
    assert pkg_after == pkg_before
    assert bytes_after == bytes_before

def test_add_part_rejects_sha256sum_conflict_regardless_of_case():
    builder = new_builder().add_part("one", SHA_A, "someimage:latest", ["foo"], 33, SOURCE)
    with pytest.raises(PkgBuildError):
        builder.add_part("two", SHA_A.upper(), "other:latest", ["foo"], 33, SOURCE)

def test_build_requires_all_declared_image_ids():
    builder = new_builder(["one", "two"])
    builder.add_part("one", SHA_A, "someimage:latest", ["foo"], 33, SOURCE)
    with pytest.raises(PkgBuildError):
        builder.build()
    builder.add_part("two", SHA_B, "other:latest", ["foo"], 33, SOURCE)
    pkg, _ = builder.build()
    assert set(pkg.parts.keys()) == {"one", "two"}
    assert pkg.id == builder.id

def test_add_part_is_safe_for_concurrent_callers():
    builder = new_builder()
    errors = []

    #all threads try to add a part with the same sha256sum, only one may succeed
    def add(i):
        try:
            builder.add_part(f"part-{i}", SHA_C, f"image-{i}:latest", ["foo"], 33, SOURCE)
        except PkgBuildError as e:
            errors.append(e)

    threads = [threading.Thread(target=add, args=(i,)) for i in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    pkg, _ = builder.build()
    assert len(pkg.parts) == 1
    assert len(pkg.meta.provides.images) == 1
    assert len(errors) == 15
