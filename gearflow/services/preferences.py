"""Per-user notification preferences.

Stored on ``profiles.notification_preferences`` as ``{channel: {event: bool}}``.
Missing entries fall back to the channel default from ``NOTIFICATION_DEFAULTS``.
"""
from __future__ import annotations

from enum import Enum

from gearflow.config import settings
from gearflow.errors import ValidationError


class Channel(str, Enum):
    IN_APP = 'in_app'
    EMAIL = 'email'
    PUSH = 'push'


class Event(str, Enum):
    GEAR_REQUESTS = 'gear_requests'
    GEAR_CHECKINS = 'gear_checkins'
    CAR_BOOKINGS = 'car_bookings'
    RESERVATIONS = 'reservations'
    ANNOUNCEMENTS = 'announcements'
    PROFILE_UPDATES = 'profile_updates'
    SECURITY = 'security'
    OVERDUE_REMINDERS = 'overdue_reminders'


def channel_default(channel: Channel) -> bool:
    return settings.notification_channel_defaults.get(channel.value, True)


def is_enabled(preferences: dict | None, channel: Channel, event: Event) -> bool:
    per_channel = (preferences or {}).get(channel.value)
    if isinstance(per_channel, dict):
        value = per_channel.get(event.value)
        if isinstance(value, bool):
            return value
    return channel_default(channel)


def resolve_preferences(preferences: dict | None) -> dict[str, dict[str, bool]]:
    return {
        channel.value: {event.value: is_enabled(preferences, channel, event) for event in Event}
        for channel in Channel
    }


def validate_preferences(payload: object) -> dict[str, dict[str, bool]]:
    if not isinstance(payload, dict):
        raise ValidationError('Notification preferences must be an object')

    channels = {channel.value for channel in Channel}
    events = {event.value for event in Event}
    cleaned: dict[str, dict[str, bool]] = {}
    for channel_key, per_event in payload.items():
        if channel_key not in channels:
            raise ValidationError(f'Unknown notification channel: {channel_key}')
        if not isinstance(per_event, dict):
            raise ValidationError(f'Preferences for {channel_key} must be an object')
        for event_key, enabled in per_event.items():
            if event_key not in events:
                raise ValidationError(f'Unknown notification event: {event_key}')
            if not isinstance(enabled, bool):
                raise ValidationError(f'Preference {channel_key}.{event_key} must be true or false')
            cleaned.setdefault(channel_key, {})[event_key] = enabled
    return cleaned


def merge_preferences(current: dict | None, update: dict[str, dict[str, bool]]) -> dict[str, dict[str, bool]]:
    merged: dict[str, dict[str, bool]] = {}
    for channel_key, per_event in (current or {}).items():
        if isinstance(per_event, dict):
            merged[channel_key] = dict(per_event)
    for channel_key, per_event in update.items():
        merged.setdefault(channel_key, {}).update(per_event)
    return merged
