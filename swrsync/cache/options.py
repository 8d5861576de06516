"""
Revalidation options and their defaults.
"""
from dataclasses import dataclass, fields, replace
from typing import Any, Dict

from config.settings import settings


@dataclass(frozen=True)
class SWROptions:
    """
    Per-consumer fetch behaviour. All intervals are in seconds.
    """
    revalidate_on_focus: bool = True
    revalidate_on_reconnect: bool = True
    deduping_interval: float = 2.0        # Minimum gap between automatic fetches
    focus_throttle_interval: float = 5.0
    should_retry_on_error: bool = True
    error_retry_count: int = 3
    error_retry_interval: float = 5.0

    @classmethod
    def from_settings(cls) -> "SWROptions":
        """Build defaults from the loaded application settings."""
        return cls(
            revalidate_on_focus=settings.revalidate_on_focus,
            revalidate_on_reconnect=settings.revalidate_on_reconnect,
            deduping_interval=settings.deduping_interval,
            focus_throttle_interval=settings.focus_throttle_interval,
            should_retry_on_error=settings.should_retry_on_error,
            error_retry_count=settings.error_retry_count,
            error_retry_interval=settings.error_retry_interval,
        )

    def merged(self, **overrides: Any) -> "SWROptions":
        """
        Return a copy with the given fields replaced.

        Unknown option names raise TypeError so typos surface early.
        None values are ignored.
        """
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(f"Unknown SWR options: {sorted(unknown)}")
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}
