"""Profile write rules: optimistic version guard and preferences-mode transitions.

Everything here is pure. Rule violations are returned as ``Conflict`` values
so the saga can re-derive decisions on replay without exception handling.
"""

from dataclasses import dataclass

from profile_saga.models.profile import LEGACY_SETTINGS_VERSION, ServicesPreferencesMode
from profile_saga.schemas.profile import RetrievedProfile, ServicesPreferencesSettings

_OPTED_IN_MODES = frozenset({ServicesPreferencesMode.AUTO, ServicesPreferencesMode.MANUAL})


@dataclass(frozen=True)
class Conflict:
    """A write or transition rejected by a business rule."""

    reason: str


def check_version(requested_version: int, current_profile: RetrievedProfile) -> Conflict | None:
    """Reject writes that do not target the current profile version."""
    if requested_version != current_profile.version:
        return Conflict(
            f"Version mismatch: requested={requested_version} current={current_profile.version}"
        )
    return None


def transition_preferences(
    old_settings: ServicesPreferencesSettings | None,
    requested_mode: ServicesPreferencesMode | None,
) -> ServicesPreferencesSettings | Conflict:
    """Apply the LEGACY/AUTO/MANUAL state machine.

    A missing ``old_settings`` is a brand-new profile and behaves as LEGACY with
    the sentinel settings version. A missing ``requested_mode`` means "keep the
    current mode", which is only acceptable while still in LEGACY. The settings
    version is bumped exactly when the mode changes.
    """
    old = old_settings or ServicesPreferencesSettings(
        mode=ServicesPreferencesMode.LEGACY, version=LEGACY_SETTINGS_VERSION
    )

    if requested_mode is None:
        if old.mode == ServicesPreferencesMode.LEGACY:
            return ServicesPreferencesSettings(mode=old.mode, version=old.version)
        return Conflict("Services preferences settings must be sent once opted in")

    if requested_mode == ServicesPreferencesMode.LEGACY and old.mode in _OPTED_IN_MODES:
        return Conflict(f"Cannot go back to LEGACY mode from {old.mode.value}")

    if requested_mode == old.mode:
        return ServicesPreferencesSettings(mode=old.mode, version=old.version)

    return ServicesPreferencesSettings(mode=requested_mode, version=old.version + 1)


def has_just_enabled_inbox(
    new_profile: RetrievedProfile, old_profile: RetrievedProfile | None
) -> bool:
    """True when the inbox is on now and was off (or absent) before this change."""
    return new_profile.is_inbox_enabled and (
        old_profile is None or not old_profile.is_inbox_enabled
    )
