import pytest

from machine_pull.errors import InvalidLocalName, InvalidURL, NameDerivationFailed
from machine_pull.names import (
    RAW_SUFFIXES,
    TAR_SUFFIXES,
    hostname_is_valid,
    http_url_is_valid,
    resolve_local_name,
    strip_suffixes,
    url_last_component,
)


@pytest.mark.parametrize(
    "url",
    ["https://example.com/images/foo.tar.xz", "http://10.0.0.1:8080/x.raw", "https://example.com"],
)
def test_http_url_is_valid(url: str) -> None:
    assert http_url_is_valid(url)


@pytest.mark.parametrize(
    "url",
    ["", "ftp://example.com/foo.tar", "file:///tmp/foo.tar", "https://", "example.com/foo.tar", "https://exa mple.com/x"],
)
def test_http_url_is_invalid(url: str) -> None:
    assert not http_url_is_valid(url)


def test_url_last_component() -> None:
    assert url_last_component("https://example.com/a/b/foo.raw.xz?x=1#frag") == "foo.raw.xz"
    assert url_last_component("https://example.com/a/foo%20bar.tar/") == "foo bar.tar"


@pytest.mark.parametrize("url", ["https://example.com", "https://example.com/", "https://example.com/a/..", "https://example.com/?q=foo"])
def test_url_last_component_missing(url: str) -> None:
    with pytest.raises(NameDerivationFailed):
        url_last_component(url)


@pytest.mark.parametrize(
    ("name", "suffixes", "expected"),
    [
        ("foo.tar.xz", TAR_SUFFIXES, "foo"),
        ("foo.tgz", TAR_SUFFIXES, "foo"),
        ("foo.tar", TAR_SUFFIXES, "foo"),
        ("foo.raw.gz", RAW_SUFFIXES, "foo"),
        ("foo.img.xz", RAW_SUFFIXES, "foo"),
        ("foo-1.2", RAW_SUFFIXES, "foo-1.2"),
        (".raw", RAW_SUFFIXES, ".raw"),
    ],
)
def test_strip_suffixes(name: str, suffixes: tuple, expected: str) -> None:
    assert strip_suffixes(name, suffixes) == expected


@pytest.mark.parametrize("name", ["foo", "my.image-1", "Fedora_39", "a", "a--b", "x" * 63, "x" * 64])
def test_hostname_is_valid(name: str) -> None:
    assert hostname_is_valid(name)


@pytest.mark.parametrize("name", ["", ".", "..", "-bad", "bad-", ".foo", "foo.", "a..b", "foo bar", "foo/bar", "x" * 65, "foo.-bar", "foo-.bar", "foo.bar-", "-"])
def test_hostname_is_invalid(name: str) -> None:
    assert not hostname_is_valid(name)


def test_resolve_derives_and_strips_name() -> None:
    assert resolve_local_name("https://example.com/images/foo.tar.xz", None, TAR_SUFFIXES) == "foo"


def test_resolve_explicit_name_is_stripped_too() -> None:
    assert resolve_local_name("https://example.com/x.raw", "bar.raw", RAW_SUFFIXES) == "bar"


@pytest.mark.parametrize("name", ["", "-"])
def test_resolve_dry_pull(name: str) -> None:
    assert resolve_local_name("https://example.com/x.raw", name, RAW_SUFFIXES) is None


def test_resolve_rejects_bad_url() -> None:
    with pytest.raises(InvalidURL):
        resolve_local_name("ftp://example.com/foo.tar", None, TAR_SUFFIXES)


def test_resolve_rejects_url_without_component() -> None:
    with pytest.raises(NameDerivationFailed):
        resolve_local_name("https://example.com/", None, TAR_SUFFIXES)


@pytest.mark.parametrize("name", ["-bad", "foo bar", ".."])
def test_resolve_rejects_bad_name(name: str) -> None:
    with pytest.raises(InvalidLocalName):
        resolve_local_name("https://example.com/x.tar", name, TAR_SUFFIXES)


def test_errors_carry_einval() -> None:
    with pytest.raises(InvalidLocalName) as excinfo:
        resolve_local_name("https://example.com/-x.tar", None, TAR_SUFFIXES)
    assert excinfo.value.errno == 22


def test_zstd_suffix_is_not_stripped() -> None:
    assert strip_suffixes("foo.raw.zst", RAW_SUFFIXES) == "foo.raw.zst"
    assert strip_suffixes("foo.tar.zst", TAR_SUFFIXES) == "foo.tar.zst"
