"""Signing gate: an agreement may only be activated once every party has signed."""

from __future__ import annotations

from family_compact.charter.schema import SigningStatus


def is_complete(signing_status: object) -> bool:
    """True only for the exact ``complete`` token."""
    if isinstance(signing_status, SigningStatus):
        signing_status = signing_status.value
    return isinstance(signing_status, str) and signing_status == SigningStatus.COMPLETE.value


class SigningGate:
    """Injectable wrapper so workflows can be tested with a different gate."""

    def is_complete(self, signing_status: object) -> bool:
        return is_complete(signing_status)
