"""Turn a source URL and an optional NAME argument into a local image name."""

import logging
import re
from typing import Iterable, Optional
from urllib.parse import unquote, urlsplit

from .errors import InvalidLocalName, InvalidURL, NameDerivationFailed

logger = logging.getLogger(__name__)

HOST_NAME_MAX = 64

COMPRESSION_SUFFIXES = (".xz", ".gz", ".bz2")
TAR_SUFFIXES = (
    ".tar",
    ".tar.xz",
    ".tar.gz",
    ".tar.bz2",
    ".txz",
    ".tgz",
    ".tbz2",
) + COMPRESSION_SUFFIXES
RAW_SUFFIXES = (".raw", ".img") + COMPRESSION_SUFFIXES

_VALID_CHARS = re.compile(r"^[A-Za-z0-9._-]+$")
_BAD_URL_CHARS = re.compile(r"[\x00-\x20\x7f]")


def http_url_is_valid(url: str) -> bool:
    if not url or _BAD_URL_CHARS.search(url):
        return False
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.hostname)


def url_last_component(url: str) -> str:
    """Last non-empty path component of ``url``, with query and fragment dropped."""
    path = urlsplit(url).path
    component = unquote(path.rstrip("/").rpartition("/")[2])
    if not component or component in (".", ".."):
        raise NameDerivationFailed(
            f"Failed to get final component of URL '{url}'"
        )
    return component


def strip_suffixes(name: str, suffixes: Iterable[str]) -> str:
    """Strip known suffixes repeatedly, longest match first.

    ``foo.tar.xz`` and ``foo.raw.gz`` both end up as ``foo``. A suffix is
    never stripped if doing so would leave nothing behind.
    """
    ordered = sorted(suffixes, key=len, reverse=True)
    stripped = True
    while stripped:
        stripped = False
        for suffix in ordered:
            if name.endswith(suffix) and len(name) > len(suffix):
                name = name[: -len(suffix)]
                stripped = True
                break
    return name


def hostname_is_valid(name: str) -> bool:
    """Hostname label rules, plus underscores.

    Every dot-separated label is non-empty and neither starts nor ends with a
    hyphen; no trailing dot.
    """
    if not name or len(name) > HOST_NAME_MAX:
        return False
    if not _VALID_CHARS.match(name):
        return False

    dot = hyphen = True
    for c in name:
        if c == ".":
            if dot or hyphen:
                return False
            dot, hyphen = True, False
        elif c == "-":
            if dot:
                return False
            dot, hyphen = False, True
        else:
            dot = hyphen = False
    return not dot and not hyphen


def empty_or_dash_to_none(value: Optional[str]) -> Optional[str]:
    if value in ("", "-"):
        return None
    return value


def resolve_local_name(
    url: str, name: Optional[str], suffixes: Iterable[str]
) -> Optional[str]:
    """Validate ``url`` and work out the local name to store the image under.

    Returns ``None`` for a dry pull (NAME given as ``""`` or ``"-"``).
    """
    if not http_url_is_valid(url):
        raise InvalidURL(f"URL '{url}' is not valid.")

    if name is None:
        name = url_last_component(url)
        logger.debug(f"[ ] Derived name '{name}' from URL")

    local = empty_or_dash_to_none(name)
    if local is None:
        return None

    local = strip_suffixes(local, suffixes)
    if not hostname_is_valid(local):
        raise InvalidLocalName(f"Local image name '{local}' is not valid.")
    return local
