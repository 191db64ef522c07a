import errno
from pathlib import Path

import pytest

from machine_pull.errors import NameAlreadyExists, RegistryLookupFailed
from machine_pull.flags import PullFlags
from machine_pull.images import (
    MACHINE_SEARCH_PATHS,
    Image,
    ImageNotFound,
    ImageRegistry,
    check_conflict,
)


class FakeRegistry:
    def __init__(self, images=(), error: OSError | None = None) -> None:
        self.images = set(images)
        self.error = error
        self.lookups: list[str] = []

    def find(self, name: str) -> Image:
        self.lookups.append(name)
        if self.error is not None:
            raise self.error
        if name not in self.images:
            raise ImageNotFound(name)
        return Image(name=name, type="raw", path=Path("/images") / f"{name}.raw")


def test_registry_finds_directory_and_raw(tmp_path: Path) -> None:
    (tmp_path / "fedora").mkdir()
    (tmp_path / "debian.raw").write_bytes(b"")
    registry = ImageRegistry([tmp_path])

    assert registry.find("fedora") == Image(name="fedora", type="directory", path=tmp_path / "fedora")
    assert registry.find("debian") == Image(name="debian", type="raw", path=tmp_path / "debian.raw")
    with pytest.raises(ImageNotFound):
        registry.find("arch")


def test_registry_searches_in_order_and_skips_missing_paths(tmp_path: Path) -> None:
    first = tmp_path / "first"
    second = tmp_path / "second"
    second.mkdir()
    (second / "foo").mkdir()

    registry = ImageRegistry([tmp_path / "missing", first, second])
    assert registry.find("foo").path == second / "foo"


def test_registry_host_always_exists(tmp_path: Path) -> None:
    assert ImageRegistry([tmp_path]).find(".host").type == "host"


def test_registry_for_image_root_dedups(tmp_path: Path) -> None:
    registry = ImageRegistry.for_image_root("/var/lib/machines")
    assert registry.search_paths[0] == Path("/var/lib/machines")
    assert len(registry.search_paths) == len(MACHINE_SEARCH_PATHS)

    registry = ImageRegistry.for_image_root(tmp_path)
    assert registry.search_paths[0] == tmp_path


def test_conflict_not_found_passes() -> None:
    registry = FakeRegistry()
    check_conflict(registry, "foo", PullFlags(0))
    assert registry.lookups == ["foo"]


def test_conflict_existing_image_fails() -> None:
    with pytest.raises(NameAlreadyExists) as excinfo:
        check_conflict(FakeRegistry(["foo"]), "foo", PullFlags.SETTINGS)
    assert excinfo.value.errno == errno.EEXIST


def test_conflict_force_skips_lookup() -> None:
    registry = FakeRegistry(["foo"], error=PermissionError(errno.EACCES, "denied"))
    check_conflict(registry, "foo", PullFlags.FORCE)
    assert registry.lookups == []


def test_conflict_lookup_error_propagates() -> None:
    registry = FakeRegistry(error=PermissionError(errno.EACCES, "denied"))
    with pytest.raises(RegistryLookupFailed) as excinfo:
        check_conflict(registry, "foo", PullFlags(0))
    assert excinfo.value.errno == errno.EACCES
    assert isinstance(excinfo.value.__cause__, PermissionError)
