"""Lookup of locally installed machine images, used to refuse overwrites."""

import errno
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Literal, Optional, Protocol

from .errors import NameAlreadyExists, RegistryLookupFailed
from .flags import PullFlags

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_ROOT = "/var/lib/machines"

MACHINE_SEARCH_PATHS = (
    "/etc/machines",
    "/run/machines",
    "/var/lib/machines",
    "/usr/local/lib/machines",
    "/usr/lib/machines",
)

TYPE_IMAGE = Literal["directory", "raw", "host"]


@dataclass(frozen=True)
class Image:
    name: str
    type: TYPE_IMAGE
    path: Optional[Path]
    """``None`` only for the ``.host`` pseudo image"""


class ImageNotFound(FileNotFoundError):
    def __init__(self, name: str):
        super().__init__(errno.ENOENT, "No such image", name)


class ImageLookup(Protocol):
    def find(self, name: str) -> Image: ...


class ImageRegistry:
    """
    Finds images by name in a list of directories, first hit wins.

    Args:
        search_paths: directories to scan. Defaults to ``MACHINE_SEARCH_PATHS``.
    """

    def __init__(self, search_paths: Iterable[str | os.PathLike] = MACHINE_SEARCH_PATHS):
        seen: list[Path] = []
        for p in search_paths:
            p = Path(p)
            if p not in seen:
                seen.append(p)
        self.search_paths = seen

    @classmethod
    def for_image_root(cls, image_root: str | os.PathLike) -> "ImageRegistry":
        return cls([image_root, *MACHINE_SEARCH_PATHS])

    def find(self, name: str) -> Image:
        """Raises ``ImageNotFound`` when no search path holds ``name``.

        Any other ``OSError`` (permissions, I/O) propagates unchanged.
        """
        if name == ".host":
            return Image(name=name, type="host", path=None)

        for root in self.search_paths:
            image = self._find_in(root, name)
            if image is not None:
                logger.debug(f"[ ] Found image '{name}' at {image.path}")
                return image
        raise ImageNotFound(name)

    @staticmethod
    def _find_in(root: Path, name: str) -> Optional[Image]:
        candidate = root / name
        try:
            if candidate.is_dir():
                return Image(name=name, type="directory", path=candidate)
            raw = root / f"{name}.raw"
            if raw.is_file():
                return Image(name=name, type="raw", path=raw)
        except OSError as e:
            # a missing search path is not an error
            if e.errno in (errno.ENOENT, errno.ENOTDIR):
                return None
            raise
        return None


def check_conflict(registry: ImageLookup, name: str, flags: PullFlags) -> None:
    """Refuse to pull onto an existing image name unless ``FORCE`` is set.

    Check-then-act: nothing is locked between this lookup and the write made
    later by the puller, which does its own check at write time.
    """
    if flags & PullFlags.FORCE:
        logger.debug(f"[ ] --force given, not checking whether '{name}' exists")
        return

    try:
        registry.find(name)
    except FileNotFoundError:
        return
    except OSError as e:
        raise RegistryLookupFailed(
            f"Failed to check whether image '{name}' exists: {e}",
            errno=e.errno or errno.EIO,
        ) from e

    raise NameAlreadyExists(f"Image '{name}' already exists.")
