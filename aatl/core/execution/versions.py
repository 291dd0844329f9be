"""
EntryPoint protocol revisions.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Union

from aatl.config import Settings, settings as default_settings


class EntryPointVersion(str, Enum):
    """EntryPoint revisions with incompatible hashing and wire formats."""
    V0_6 = "0.6"
    V0_7 = "0.7"
    V0_8 = "0.8"

    @property
    def is_packed(self) -> bool:
        """v0.7+ split factory/paymaster fields and pack gas pairs into bytes32."""
        return self is not EntryPointVersion.V0_6


def resolve_entry_point_version(
    entry_point: str,
    version: Optional[Union[EntryPointVersion, str]] = None,
    delegate: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> EntryPointVersion:
    """
    Classify an EntryPoint address into a protocol revision.

    An explicit ``version`` always wins. Without one this is a best-effort
    heuristic, not a protocol guarantee: configured well-known addresses are
    matched case-insensitively, addresses starting with the reserved v0.8
    prefix (``0x4337``) are v0.8, and anything else is assumed to be v0.6.
    When a 7702 ``delegate`` is requested an unrecognised address is assumed
    to be v0.8 instead, since delegated operations only exist on the packed
    revisions. Callers that need certainty should pass ``version``.
    """
    if version is not None:
        return EntryPointVersion(version)

    cfg = settings or default_settings
    address = (entry_point or "").lower()

    if cfg.entry_point_v08_address and address == cfg.entry_point_v08_address.lower():
        return EntryPointVersion.V0_8
    if cfg.entry_point_v08_prefix and address.startswith(cfg.entry_point_v08_prefix.lower()):
        return EntryPointVersion.V0_8
    if cfg.entry_point_v07_address and address == cfg.entry_point_v07_address.lower():
        return EntryPointVersion.V0_7
    if cfg.entry_point_v06_address and address == cfg.entry_point_v06_address.lower():
        return EntryPointVersion.V0_6

    if delegate:
        return EntryPointVersion.V0_8
    return EntryPointVersion.V0_6
