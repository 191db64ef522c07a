"""Artifact-selection flags and verification policy for a pull."""

import enum
from typing import Mapping, Self

from .errors import InvalidBoolean, InvalidVerificationMode


class PullFlags(enum.IntFlag):
    FORCE = 1 << 0
    SETTINGS = 1 << 1
    ROOTHASH = 1 << 2
    ROOTHASH_SIGNATURE = 1 << 3
    VERITY = 1 << 4

    def set(self, flag: "PullFlags", value: bool) -> "PullFlags":
        """Return a copy with ``flag`` switched on or off.

        Switching off ``ROOTHASH`` also switches off ``ROOTHASH_SIGNATURE``;
        a signature is useless without the hash it signs.
        """
        result = self | flag if value else self & ~flag
        if flag & PullFlags.ROOTHASH and not value:
            result &= ~PullFlags.ROOTHASH_SIGNATURE
        return PullFlags(result)

    def to_settings(self) -> dict[str, bool]:
        return {name: bool(self & flag) for name, flag in SETTING_NAMES.items()}

    @classmethod
    def from_settings(cls, settings: Mapping[str, bool]) -> Self:
        flags = cls(0)
        for name, flag in SETTING_NAMES.items():
            if settings.get(name):
                flags |= flag
        return flags


SETTING_NAMES: dict[str, PullFlags] = {
    "force": PullFlags.FORCE,
    "settings": PullFlags.SETTINGS,
    "roothash": PullFlags.ROOTHASH,
    "roothash-signature": PullFlags.ROOTHASH_SIGNATURE,
    "verity": PullFlags.VERITY,
}
"""Option name of each flag, as spelled on the command line"""

PULL_FLAGS_DEFAULT = (
    PullFlags.SETTINGS
    | PullFlags.ROOTHASH
    | PullFlags.ROOTHASH_SIGNATURE
    | PullFlags.VERITY
)
PULL_FLAGS_MASK_TAR = PullFlags.FORCE | PullFlags.SETTINGS
PULL_FLAGS_MASK_RAW = (
    PullFlags.FORCE
    | PullFlags.SETTINGS
    | PullFlags.ROOTHASH
    | PullFlags.ROOTHASH_SIGNATURE
    | PullFlags.VERITY
)


class VerificationMode(enum.Enum):
    NO = "no"
    CHECKSUM = "checksum"
    SIGNATURE = "signature"

    @classmethod
    def from_string(cls, value: str) -> Self:
        try:
            return cls(value)
        except ValueError:
            raise InvalidVerificationMode(
                f"Invalid verification setting '{value}'"
            ) from None

    def __str__(self) -> str:
        return self.value


_TRUE = ("1", "yes", "y", "true", "t", "on")
_FALSE = ("0", "no", "n", "false", "f", "off")


def parse_boolean(value: str) -> bool:
    v = value.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise InvalidBoolean(f"Failed to parse boolean value '{value}'")
