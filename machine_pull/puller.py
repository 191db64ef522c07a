"""
Default pullers: download an image archive with ``requests``, verify it against
the published ``SHA256SUMS`` and store it under the image root.

The orchestration layer only relies on the small ``Puller`` protocol below
(create, ``start()``, ``close()``, completion callback); everything else in this
module is an implementation detail of ``TarPuller`` and ``RawPuller``.

Blocking network and disk work runs in a private worker thread; the event loop
only sees one awaitable per pull.
"""

import asyncio
import bz2
import errno
import gzip
import hashlib
import logging
import lzma
import os
import shutil
import subprocess
import sys
import tarfile
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol
from urllib.parse import quote, urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from . import __version__
from .errors import (
    ChecksumMismatch,
    PullCancelled,
    PullError,
    PullStartFailed,
    SignatureInvalid,
    UnsupportedFormat,
)
from .flags import PULL_FLAGS_MASK_RAW, PULL_FLAGS_MASK_TAR, PullFlags, VerificationMode
from .names import (
    RAW_SUFFIXES,
    TAR_SUFFIXES,
    hostname_is_valid,
    http_url_is_valid,
    strip_suffixes,
    url_last_component,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
TIMEOUT = 30
BAR_WIDTH = 50
PUBRING_PATHS = (
    "/etc/systemd/import-pubring.gpg",
    "/usr/lib/systemd/import-pubring.gpg",
)


def create_session(retries: int = 3) -> requests.Session:
    """
    Session shared by every download of one pull.

    Transient server errors are retried with backoff; only GET is ever issued.
    Proxies come from the usual ``*_proxy`` environment variables, which
    requests reads on its own unless ``trust_env`` is turned off.
    """
    session = requests.Session()
    session.headers["User-Agent"] = f"machine-pull/{__version__}"
    adapter = HTTPAdapter(
        max_retries=Retry(
            total=retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
        )
    )
    for scheme in ("http://", "https://"):
        session.mount(scheme, adapter)

    if any(os.environ.get(v) for v in ("HTTPS_PROXY", "https_proxy", "HTTP_PROXY", "http_proxy")):
        logger.info("[+] Using proxy settings from environment")
    return session


@dataclass(frozen=True)
class PullRequest:
    url: str
    local: Optional[str]
    """``None`` means download and verify only, store nothing"""
    image_root: Path
    flags: PullFlags
    verify: VerificationMode


FinishedCallback = Callable[["Puller", int], None]
"""Called once with 0 on success or a negative errno on failure"""


class Puller(Protocol):
    def start(self, request: PullRequest) -> None: ...

    def close(self) -> None: ...


############################################ HELPERS ######################################################


def progress_bar(label: str, done: int, total: int, width: int = BAR_WIDTH) -> None:
    """Redraw ``label: [=====>    ]  42%`` in place on stderr."""
    done = min(done, total)
    filled = done * width // total if total else 0
    bar = ("=" * (filled - 1) + ">") if filled else ""
    percent = done * 100 // total if total else 0
    print(f"\r{label}: [{bar:<{width}}] {percent:3d}%", end="", file=sys.stderr, flush=True)


def parse_sha256sums(text: str) -> dict[str, str]:
    """``<hex>  name`` or ``<hex> *name`` lines, as written by sha256sum(1)."""
    sums = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        digest, _, name = line.partition(" ")
        name = name.lstrip(" ").lstrip("*")
        if len(digest) == 64 and name:
            sums[name] = digest.lower()
    return sums


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(CHUNK_SIZE):
            h.update(chunk)
    return h.hexdigest()


def error_to_errno(e: BaseException) -> int:
    """Negative errno describing ``e``, for the completion callback."""
    if isinstance(e, PullError):
        return -e.errno
    if isinstance(e, requests.exceptions.HTTPError):
        if e.response is not None and e.response.status_code == 404:
            return -errno.ENOENT
        return -errno.EIO
    if isinstance(e, requests.exceptions.Timeout):
        return -errno.ETIMEDOUT
    if isinstance(e, requests.exceptions.RequestException):
        return -errno.EIO
    if isinstance(e, OSError) and e.errno:
        return -e.errno
    if isinstance(e, tarfile.TarError):
        return -errno.EBADMSG
    return -errno.EIO


############################################## MAIN ########################################################


class HttpPuller:
    """
    Fetch one image over HTTP(S) and store it under ``image_root``.

    Args:
        loop: event loop the pull is scheduled on.
        image_root: directory images are written to.
        on_finished: completion callback, run on ``loop``.
        session: requests.Session instance. Default uses create_session() result.
    """

    suffixes: tuple[str, ...] = ()
    flags_mask = PullFlags(0)
    artifacts: dict[PullFlags, str] = {PullFlags.SETTINGS: ".nspawn"}
    """Optional files fetched next to the image, by the flag selecting them"""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        image_root: str | os.PathLike,
        on_finished: Optional[FinishedCallback] = None,
        session: Optional[requests.Session] = None,
    ):
        self.loop = loop
        self.image_root = Path(image_root)
        self.on_finished = on_finished
        self.session = session or create_session()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.request: Optional[PullRequest] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    def start(self, request: PullRequest) -> None:
        """Validate ``request`` and schedule the pull; failures raise immediately."""
        if self._closed or self._task is not None:
            raise PullStartFailed("Puller already used", errno=errno.EBUSY)
        if not http_url_is_valid(request.url):
            raise PullStartFailed(f"URL '{request.url}' is not valid.")
        if request.local is not None and not hostname_is_valid(request.local):
            raise PullStartFailed(f"Local image name '{request.local}' is not valid.")
        if request.flags & ~self.flags_mask:
            raise PullStartFailed(
                f"Flags {request.flags!r} not supported by {type(self).__name__}",
                errno=errno.EOPNOTSUPP,
            )

        self.request = request
        self._task = self.loop.create_task(self._run(request))
        self._task.add_done_callback(self._task_done)

    def close(self) -> None:
        """Cancel any in-flight work; the completion callback will not fire after this.

        The worker is a daemon thread and is never joined: one stuck in a
        blocking read cannot hold up interpreter exit.
        """
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.session.close()

    async def _run(self, request: PullRequest) -> None:
        future = self.loop.create_future()

        def deliver(error: Optional[Exception]) -> None:
            if future.done():
                return
            if error is None:
                future.set_result(None)
            else:
                future.set_exception(error)

        def work() -> None:
            error = None
            try:
                self._pull(request)
            except Exception as e:
                error = e
            try:
                self.loop.call_soon_threadsafe(deliver, error)
            except RuntimeError:
                # loop already closed
                logger.debug(f"[ ] Pull of {request.url} abandoned")

        self._thread = threading.Thread(target=work, name="pull", daemon=True)
        self._thread.start()
        await future

    def _task_done(self, task: asyncio.Task) -> None:
        if self._closed:
            return
        if task.cancelled():
            error = -errno.ECANCELED
        elif (e := task.exception()) is not None:
            logger.error(f"[-] Pull of {self.request.url} failed: {e}")
            error = error_to_errno(e)
        else:
            error = 0
        if self.on_finished is not None:
            self.on_finished(self, error)

    ############## Worker thread

    def _check_stop(self) -> None:
        if self._stop.is_set():
            raise PullCancelled("Pull cancelled")

    def _pull(self, request: PullRequest) -> None:
        self.image_root.mkdir(parents=True, exist_ok=True)
        workdir = Path(tempfile.mkdtemp(prefix=".#pull-", dir=self.image_root))
        logger.debug(f"[ ] Using temporary directory: {workdir}")
        try:
            filename = url_last_component(request.url)
            payload = workdir / filename
            self._download(request.url, payload)

            artifacts: dict[str, Path] = {}
            for flag, suffix in self.artifacts.items():
                if not request.flags & flag:
                    continue
                url = self.artifact_url(request.url, suffix)
                dest = workdir / url_last_component(url)
                if self._download(url, dest, optional=True):
                    artifacts[suffix] = dest

            self._verify(request, workdir, [payload, *artifacts.values()])

            if request.local is None:
                logger.info(f"[+] Downloaded and verified {filename}, not storing it")
                return
            self._check_stop()
            self.install(request, payload)
            for suffix, path in artifacts.items():
                self._install_file(path, self.image_root / f"{request.local}{suffix}", request.flags)
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    def artifact_url(self, url: str, suffix: str) -> str:
        """URL of the file next to ``url`` with the image suffix swapped for ``suffix``"""
        base = strip_suffixes(url_last_component(url), self.suffixes)
        return urljoin(url, quote(base + suffix))

    def _download(self, url: str, dest: Path, optional: bool = False) -> bool:
        """Stream ``url`` into ``dest``; False if ``optional`` and the server has no such file."""
        self._check_stop()
        logger.info(f"[+] Downloading {url}")
        resp = self.session.get(url, stream=True, timeout=TIMEOUT)
        with resp:
            if optional and resp.status_code == 404:
                logger.info(f"[-] {url} not available, skipping")
                return False
            resp.raise_for_status()

            content_length = int(resp.headers.get("Content-Length", "0") or 0)
            show = content_length > 0 and sys.stderr.isatty()
            received = 0
            with open(dest, "wb") as file:
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    self._check_stop()
                    if not chunk:
                        continue
                    file.write(chunk)
                    received += len(chunk)
                    if show:
                        progress_bar(dest.name, received, content_length)
            if show:
                print(file=sys.stderr)
        logger.debug(f"[ ] {dest.name}: Downloaded [{content_length or '?'}]")
        return True

    def _verify(self, request: PullRequest, workdir: Path, files: list[Path]) -> None:
        if request.verify == VerificationMode.NO:
            logger.info("[-] Not verifying downloaded files")
            return

        sums_url = urljoin(request.url, "SHA256SUMS")
        sums_path = workdir / "SHA256SUMS"
        self._download(sums_url, sums_path)

        if request.verify == VerificationMode.SIGNATURE:
            sig_path = workdir / "SHA256SUMS.gpg"
            self._download(urljoin(request.url, "SHA256SUMS.gpg"), sig_path)
            self._verify_signature(sums_path, sig_path)

        sums = parse_sha256sums(sums_path.read_text(encoding="utf-8", errors="replace"))
        for path in files:
            self._check_stop()
            expected = sums.get(path.name)
            if expected is None:
                raise ChecksumMismatch(f"Checksum of {path.name} not found in SHA256SUMS")
            actual = sha256_file(path)
            if actual != expected:
                raise ChecksumMismatch(
                    f"Checksum of {path.name} does not match: expected {expected}, got {actual}"
                )
            logger.info(f"[+] SHA256 checksum of {path.name} is valid")

    def _verify_signature(self, sums_path: Path, sig_path: Path) -> None:
        pubring = next((p for p in PUBRING_PATHS if os.path.exists(p)), None)
        if pubring is None:
            raise SignatureInvalid(
                f"No keyring for signature verification, looked in {', '.join(PUBRING_PATHS)}"
            )
        with tempfile.TemporaryDirectory(prefix=".gnupg-") as gnupghome:
            cmd = [
                "gpg",
                "--no-options",
                "--no-default-keyring",
                "--no-auto-key-locate",
                "--no-auto-check-trustdb",
                "--batch",
                "--trust-model=always",
                f"--keyring={pubring}",
                "--verify",
                str(sig_path),
                str(sums_path),
            ]
            logger.debug(f"[ ] Running {' '.join(cmd)}")
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                env={**os.environ, "GNUPGHOME": gnupghome},
            )
        if proc.returncode != 0:
            logger.debug(proc.stderr)
            raise SignatureInvalid("Signature verification of SHA256SUMS failed")
        logger.info("[+] Signature verification succeeded")

    def _prepare_target(self, target: Path, flags: PullFlags) -> None:
        """Second, write-time guard against clobbering an existing image."""
        if not os.path.lexists(target):
            return
        if not flags & PullFlags.FORCE:
            raise FileExistsError(errno.EEXIST, "Image already exists", str(target))
        logger.info(f"[+] Replacing existing {target}")
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        else:
            target.unlink()

    def _install_file(self, src: Path, target: Path, flags: PullFlags) -> None:
        self._prepare_target(target, flags)
        shutil.move(src, target)
        logger.info(f"[+] Stored {target}")

    def install(self, request: PullRequest, payload: Path) -> None:
        raise NotImplementedError


class TarPuller(HttpPuller):
    """Unpacks a (compressed) tarball into ``<image_root>/<name>``."""

    suffixes = TAR_SUFFIXES
    flags_mask = PULL_FLAGS_MASK_TAR

    def install(self, request: PullRequest, payload: Path) -> None:
        target = self.image_root / request.local
        tmp = Path(tempfile.mkdtemp(prefix=f".#{request.local}-", dir=self.image_root))
        try:
            logger.info(f"[=] Extracting {payload.name}")
            with tarfile.open(payload, "r:*") as tar:
                for member in tar:
                    self._check_stop()
                    tar.extract(member, tmp, filter="tar")
            self._prepare_target(target, request.flags)
            os.rename(tmp, target)
        except BaseException:
            shutil.rmtree(tmp, ignore_errors=True)
            raise
        logger.info(f"[+] Image saved to {target}")


class RawPuller(HttpPuller):
    """Decompresses a disk image into ``<image_root>/<name>.raw``."""

    suffixes = RAW_SUFFIXES
    flags_mask = PULL_FLAGS_MASK_RAW
    artifacts = {
        PullFlags.SETTINGS: ".nspawn",
        PullFlags.ROOTHASH: ".roothash",
        PullFlags.ROOTHASH_SIGNATURE: ".roothash.p7s",
        PullFlags.VERITY: ".verity",
    }

    compressions = (
        (b"\xfd7zXZ\x00", "xz", lzma.open),
        (b"\x1f\x8b", "gzip", gzip.open),
        (b"BZh", "bzip2", bz2.open),
    )
    """Decompressors by leading magic bytes; anything else is stored as-is"""

    unsupported = (
        (b"\x28\xb5\x2f\xfd", "zstd"),
        (b"QFI\xfb", "qcow2"),
    )
    """Formats recognised but never written out as a raw image"""

    def _check_supported(self, head: bytes, name: str) -> None:
        for magic, kind in self.unsupported:
            if head.startswith(magic):
                raise UnsupportedFormat(f"{name}: {kind} images are not supported")

    def _opener(self, payload: Path) -> Callable:
        with open(payload, "rb") as f:
            head = f.read(8)
        self._check_supported(head, payload.name)
        for magic, kind, opener in self.compressions:
            if head.startswith(magic):
                logger.debug(f"[ ] {payload.name} is {kind} compressed")
                return opener
        return open

    def install(self, request: PullRequest, payload: Path) -> None:
        target = self.image_root / f"{request.local}.raw"
        opener = self._opener(payload)
        fd, tmp_name = tempfile.mkstemp(prefix=f".#{request.local}-", suffix=".raw", dir=self.image_root)
        tmp = Path(tmp_name)
        try:
            logger.info(f"[=] Writing {payload.name} to {target.name}")
            with os.fdopen(fd, "wb") as dst, opener(payload, "rb") as src:
                chunk = src.read(CHUNK_SIZE)
                # compressed payloads may wrap a qcow2 image
                self._check_supported(chunk, payload.name)
                while chunk:
                    self._check_stop()
                    dst.write(chunk)
                    chunk = src.read(CHUNK_SIZE)
            self._prepare_target(target, request.flags)
            os.rename(tmp, target)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        logger.info(f"[+] Image saved to {target}")
