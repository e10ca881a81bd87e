from __future__ import annotations


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'s' if count > 1 else ''}"


def format_duration(seconds: int) -> str:
    if seconds >= 86400:
        return f"{seconds // 86400}j"
    if seconds >= 3600:
        return f"{seconds // 3600}h"
    if seconds >= 60:
        return f"{seconds // 60}m"
    return "Récent"


def format_duration_detailed(seconds: int) -> str:
    if seconds >= 86400:
        days = seconds // 86400
        hours = (seconds % 86400) // 3600
        return f"{_plural(days, 'jour')} {hours}h" if hours else _plural(days, "jour")

    if seconds >= 3600:
        hours = seconds // 3600
        minutes = (seconds % 3600) // 60
        return f"{_plural(hours, 'heure')} {minutes}m" if minutes else _plural(hours, "heure")

    if seconds >= 60:
        minutes = seconds // 60
        remaining = seconds % 60
        return f"{_plural(minutes, 'minute')} {remaining}s" if remaining else _plural(minutes, "minute")

    if seconds > 0:
        return _plural(seconds, "seconde")
    return "Instant"


def stage_display_duration(seconds: int, *, is_active: bool) -> str:
    if is_active:
        return f"En cours · {format_duration(seconds)}"
    return format_duration(seconds)
