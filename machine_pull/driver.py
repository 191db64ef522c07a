"""
Run one pull inside an asyncio event loop until it completes or the process is
asked to stop, and turn the outcome into an exit status.

```python
fmt = FORMATS["tar"]
request = prepare_request(fmt, config, url, name)
sys.exit(report(PullDriver(fmt, request).run()))
```
"""

import asyncio
import enum
import errno
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .errors import PullError, PullStartFailed
from .flags import (
    PULL_FLAGS_DEFAULT,
    PULL_FLAGS_MASK_RAW,
    PULL_FLAGS_MASK_TAR,
    PullFlags,
    VerificationMode,
)
from .images import DEFAULT_IMAGE_ROOT, ImageLookup, ImageRegistry, check_conflict
from .names import RAW_SUFFIXES, TAR_SUFFIXES, resolve_local_name
from .puller import FinishedCallback, Puller, PullRequest, RawPuller, TarPuller

logger = logging.getLogger(__name__)

INTERRUPT_SIGNALS = (signal.SIGTERM, signal.SIGINT)

PullerFactory = Callable[[asyncio.AbstractEventLoop, Path, FinishedCallback], Puller]


@dataclass(frozen=True)
class PullConfig:
    """Command line settings, built once and passed down unchanged."""

    image_root: Path = Path(DEFAULT_IMAGE_ROOT)
    flags: PullFlags = PULL_FLAGS_DEFAULT
    verify: VerificationMode = VerificationMode.SIGNATURE


@dataclass(frozen=True)
class PullFormat:
    """What differs between pulling a tarball and pulling a disk image."""

    name: str
    create_puller: PullerFactory
    suffixes: tuple[str, ...]
    flags_mask: PullFlags


TAR = PullFormat("tar", TarPuller, TAR_SUFFIXES, PULL_FLAGS_MASK_TAR)
RAW = PullFormat("raw", RawPuller, RAW_SUFFIXES, PULL_FLAGS_MASK_RAW)
FORMATS = {fmt.name: fmt for fmt in (TAR, RAW)}


@dataclass(frozen=True)
class PullResult:
    code: int = 0
    """0 on success, otherwise a positive errno"""
    signal: Optional[int] = None
    """Set when the pull was cut short by this signal"""

    @property
    def interrupted(self) -> bool:
        return self.signal is not None

    @property
    def ok(self) -> bool:
        return not self.interrupted and self.code == 0


class PullState(enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    RUNNING = "running"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"


def prepare_request(
    fmt: PullFormat,
    config: PullConfig,
    url: str,
    name: Optional[str] = None,
    registry: Optional[ImageLookup] = None,
) -> PullRequest:
    """Resolve the local name, refuse existing images and build the request.

    Raises ``PullError`` subclasses; nothing has touched the network yet.
    """
    local = resolve_local_name(url, name, fmt.suffixes)
    flags = PullFlags(config.flags & fmt.flags_mask)

    if local is not None:
        if registry is None:
            registry = ImageRegistry.for_image_root(config.image_root)
        check_conflict(registry, local, flags)
        logger.info(f"[+] Pulling '{url}', saving as '{local}'.")
    else:
        logger.info(f"[+] Pulling '{url}'.")

    return PullRequest(
        url=url,
        local=local,
        image_root=config.image_root,
        flags=flags,
        verify=config.verify,
    )


class PullDriver:
    """
    Owns the event loop for a single pull.

    Args:
        fmt: image format, provides the puller.
        request: validated pull request.
        signals: signals that abort the pull.
    """

    def __init__(
        self,
        fmt: PullFormat,
        request: PullRequest,
        signals: tuple[int, ...] = INTERRUPT_SIGNALS,
    ):
        self.fmt = fmt
        self.request = request
        self.signals = signals
        self.state = PullState.IDLE
        self._done: Optional[asyncio.Future] = None

    def run(self) -> PullResult:
        """Block until the pull finishes or a signal arrives."""
        loop = asyncio.new_event_loop()
        try:
            return loop.run_until_complete(self._main(loop))
        finally:
            try:
                _cancel_all_tasks(loop)
                loop.run_until_complete(loop.shutdown_asyncgens())
            finally:
                loop.close()

    async def _main(self, loop: asyncio.AbstractEventLoop) -> PullResult:
        self._done = loop.create_future()
        for sig in self.signals:
            loop.add_signal_handler(sig, self._on_signal, sig)

        puller: Optional[Puller] = None
        try:
            self.state = PullState.VALIDATING
            puller = self.fmt.create_puller(loop, self.request.image_root, self._on_finished)
            try:
                puller.start(self.request)
            except PullStartFailed:
                raise
            except (PullError, OSError) as e:
                raise PullStartFailed(
                    f"Failed to pull image: {e}", errno=getattr(e, "errno", 0) or errno.EINVAL
                ) from e

            self.state = PullState.RUNNING
            result = await self._done
            self.state = PullState.INTERRUPTED if result.interrupted else PullState.COMPLETED
            return result
        finally:
            if puller is not None:
                puller.close()
            for sig in self.signals:
                loop.remove_signal_handler(sig)

    def _on_signal(self, signum: int) -> None:
        logger.warning("[-] Transfer aborted.")
        self._resolve(PullResult(code=errno.EINTR, signal=signum))

    def _on_finished(self, puller: Puller, error: int) -> None:
        self._resolve(PullResult(code=abs(error)))

    def _resolve(self, result: PullResult) -> None:
        # first terminal event wins
        if self._done is not None and not self._done.done():
            self._done.set_result(result)


def _cancel_all_tasks(loop: asyncio.AbstractEventLoop) -> None:
    pending = asyncio.all_tasks(loop)
    if not pending:
        return
    for task in pending:
        task.cancel()
    loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))


############################################ EXIT ######################################################


def exit_status(result: PullResult) -> int:
    if result.interrupted:
        return 128 + result.signal
    return min(abs(result.code), 255)


def report(result: PullResult) -> int:
    """Log how the pull ended and return the process exit status."""
    if result.interrupted:
        logger.warning(
            f"[-] Pull interrupted by {signal.Signals(result.signal).name}, "
            "partial downloads were discarded"
        )
    elif result.code:
        logger.error(f"[-] Pull failed: {os.strerror(result.code)}")
    else:
        logger.info("[+] Operation completed successfully.")
    logger.info("Exiting.")
    return exit_status(result)


def pull_image(
    fmt: PullFormat,
    config: PullConfig,
    url: str,
    name: Optional[str] = None,
    registry: Optional[ImageLookup] = None,
) -> int:
    """Pull ``url`` as format ``fmt`` and return the process exit status."""
    try:
        request = prepare_request(fmt, config, url, name, registry)
        result = PullDriver(fmt, request).run()
    except PullError as e:
        logger.error(f"[-] {e}")
        return e.errno
    return report(result)
