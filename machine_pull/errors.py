"""Error types raised by the pull orchestration layer.

Every error carries an ``errno`` which the CLI returns as the process exit
status when the error aborts a run.
"""

import errno as _errno


class PullError(Exception):
    """Base class; ``errno`` is the process exit status for this failure."""

    errno: int = _errno.EINVAL

    def __init__(self, message: str, *, errno: int = 0):
        super().__init__(message)
        if errno:
            self.errno = abs(errno)


class InvalidURL(PullError):
    pass


class NameDerivationFailed(PullError):
    pass


class InvalidLocalName(PullError):
    pass


class InvalidVerificationMode(PullError):
    pass


class InvalidBoolean(PullError):
    pass


class NameAlreadyExists(PullError):
    errno = _errno.EEXIST


class RegistryLookupFailed(PullError):
    errno = _errno.EIO


class PullStartFailed(PullError):
    pass


class ChecksumMismatch(PullError):
    """Downloaded payload does not match the published SHA256SUMS entry"""

    errno = _errno.EBADMSG


class SignatureInvalid(PullError):
    errno = _errno.EBADMSG


class PullCancelled(PullError):
    errno = _errno.ECANCELED


class UnsupportedFormat(PullError):
    """Payload is in a format this puller cannot store"""

    errno = _errno.EPROTONOSUPPORT
