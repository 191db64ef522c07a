import pytest

from machine_pull.errors import InvalidBoolean, InvalidVerificationMode
from machine_pull.flags import (
    PULL_FLAGS_DEFAULT,
    PULL_FLAGS_MASK_RAW,
    PULL_FLAGS_MASK_TAR,
    PullFlags,
    VerificationMode,
    parse_boolean,
)

ALL = PullFlags(PULL_FLAGS_MASK_RAW)


@pytest.mark.parametrize("start", [PullFlags(0), PULL_FLAGS_DEFAULT, ALL, PullFlags.ROOTHASH_SIGNATURE])
def test_disabling_roothash_disables_signature(start: PullFlags) -> None:
    once = start.set(PullFlags.ROOTHASH, False)
    twice = once.set(PullFlags.ROOTHASH, False)

    assert not once & PullFlags.ROOTHASH
    assert not once & PullFlags.ROOTHASH_SIGNATURE
    assert once == twice


def test_set_leaves_other_flags_alone() -> None:
    flags = PULL_FLAGS_DEFAULT.set(PullFlags.ROOTHASH, False)
    assert flags & PullFlags.SETTINGS
    assert flags & PullFlags.VERITY

    flags = PULL_FLAGS_DEFAULT.set(PullFlags.ROOTHASH_SIGNATURE, False)
    assert flags & PullFlags.ROOTHASH
    assert not flags & PullFlags.ROOTHASH_SIGNATURE

    flags = PullFlags(0).set(PullFlags.ROOTHASH, True)
    assert flags == PullFlags.ROOTHASH


@pytest.mark.parametrize(
    "flags",
    [PullFlags(0), PULL_FLAGS_DEFAULT, ALL, PullFlags.FORCE | PullFlags.VERITY, PullFlags.SETTINGS],
)
def test_settings_round_trip(flags: PullFlags) -> None:
    settings = flags.to_settings()
    assert set(settings) == {"force", "settings", "roothash", "roothash-signature", "verity"}
    assert PullFlags.from_settings(settings) == flags


def test_format_masks() -> None:
    assert PULL_FLAGS_MASK_TAR == PullFlags.FORCE | PullFlags.SETTINGS
    assert PULL_FLAGS_DEFAULT & PULL_FLAGS_MASK_TAR == PullFlags.SETTINGS
    assert PULL_FLAGS_DEFAULT & PULL_FLAGS_MASK_RAW == PULL_FLAGS_DEFAULT


@pytest.mark.parametrize(
    ("text", "mode"),
    [("no", VerificationMode.NO), ("checksum", VerificationMode.CHECKSUM), ("signature", VerificationMode.SIGNATURE)],
)
def test_verification_mode_from_string(text: str, mode: VerificationMode) -> None:
    assert VerificationMode.from_string(text) is mode
    assert str(mode) == text


@pytest.mark.parametrize("text", ["", "yes", "Signature", "CHECKSUM", "gpg"])
def test_verification_mode_rejects_unknown(text: str) -> None:
    with pytest.raises(InvalidVerificationMode):
        VerificationMode.from_string(text)


@pytest.mark.parametrize("text", ["1", "yes", "Y", "true", "T", "on", " On "])
def test_parse_boolean_true(text: str) -> None:
    assert parse_boolean(text) is True


@pytest.mark.parametrize("text", ["0", "no", "N", "false", "f", "OFF"])
def test_parse_boolean_false(text: str) -> None:
    assert parse_boolean(text) is False


@pytest.mark.parametrize("text", ["", "2", "maybe", "yess"])
def test_parse_boolean_invalid(text: str) -> None:
    with pytest.raises(InvalidBoolean):
        parse_boolean(text)
