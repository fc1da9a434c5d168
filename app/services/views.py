from __future__ import annotations

from typing import Any, Optional

from app.domain.models import Paste

_MS_PER_DAY = 86_400_000


def remaining_views(paste: Paste) -> Optional[int]:
    """Views left after this one, or ``None`` for pastes without a view limit."""
    if paste.max_views is None:
        return None
    return max(0, paste.max_views - paste.view_count)


def _civil_from_days(days: int) -> tuple[int, int, int]:
    """Proleptic Gregorian (year, month, day) for a day count since 1970-01-01."""
    days += 719_468
    era = days // 146_097
    day_of_era = days - era * 146_097
    year_of_era = (
        day_of_era - day_of_era // 1_460 + day_of_era // 36_524 - day_of_era // 146_096
    ) // 365
    day_of_year = day_of_era - (365 * year_of_era + year_of_era // 4 - year_of_era // 100)
    shifted_month = (5 * day_of_year + 2) // 153
    day = day_of_year - (153 * shifted_month + 2) // 5 + 1
    month = shifted_month + 3 if shifted_month < 10 else shifted_month - 9
    year = year_of_era + era * 400 + (1 if month <= 2 else 0)
    return year, month, day


def to_iso_z(epoch_ms: int) -> str:
    """
    Render epoch milliseconds as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` (UTC).

    Works for any integer. Years outside 0000-9999 use the expanded
    ``+YYYYYY`` / ``-YYYYYY`` form.
    """
    days, ms_of_day = divmod(epoch_ms, _MS_PER_DAY)
    year, month, day = _civil_from_days(days)
    seconds_of_day, millis = divmod(ms_of_day, 1000)
    hours, rest = divmod(seconds_of_day, 3600)
    minutes, seconds = divmod(rest, 60)

    if 0 <= year <= 9999:
        year_text = f"{year:04d}"
    else:
        year_text = f"{'+' if year > 0 else '-'}{abs(year):06d}"
    return (
        f"{year_text}-{month:02d}-{day:02d}"
        f"T{hours:02d}:{minutes:02d}:{seconds:02d}.{millis:03d}Z"
    )


def expiry_timestamp(paste: Paste) -> Optional[str]:
    """Absolute expiry instant as ISO-8601, or ``None`` for pastes without a TTL."""
    expires_at = paste.expires_at_ms
    if expires_at is None:
        return None
    return to_iso_z(expires_at)


def paste_to_fetch_dto(paste: Paste) -> dict[str, Any]:
    return {
        "content": paste.content,
        "remaining_views": remaining_views(paste),
        "expires_at": expiry_timestamp(paste),
    }
