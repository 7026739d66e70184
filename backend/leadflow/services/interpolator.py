"""Template interpolation for action configs.

Placeholders look like ``{{ expr }}`` where ``expr`` is either a dot-path into
the context (``lead.name``) or a relative time (``now``, ``now+3d``,
``now-2h``, ``now+15m``). Paths that do not resolve render as an empty
string. Anything else between the braces is left untouched so literal braces
typed by users survive. ``\\{{`` escapes a placeholder.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional

from leadflow.services.paths import MISSING, format_timestamp, resolve_path, stringify

PLACEHOLDER_RE = re.compile(r"(\\)?\{\{\s*([^{}]*?)\s*\}\}")
RELATIVE_TIME_RE = re.compile(r"^now(?:\s*([+-])\s*(\d+)\s*([dhm]))?$")
PATH_RE = re.compile(r"^[A-Za-z_][\w-]*(?:\.[\w-]+)*$")

_UNITS = {
    "d": "days",
    "h": "hours",
    "m": "minutes",
}


class TemplateInterpolator:
    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def render(self, template: str, context: Mapping[str, Any], now: Optional[datetime] = None) -> str:
        if "{{" not in template:
            return template
        now = now or self.clock()

        def replace(match):
            escaped, expr = match.group(1), match.group(2)
            if escaped:
                return match.group(0)[1:]
            return self._evaluate(expr, context, now, match.group(0))

        return PLACEHOLDER_RE.sub(replace, template)

    def render_config(self, config: Any, context: Mapping[str, Any], now: Optional[datetime] = None) -> Any:
        """Interpolate every string leaf of a nested config; other leaves pass through."""
        now = now or self.clock()
        if isinstance(config, str):
            return self.render(config, context, now)
        if isinstance(config, Mapping):
            return {key: self.render_config(value, context, now) for key, value in config.items()}
        if isinstance(config, list):
            return [self.render_config(item, context, now) for item in config]
        if isinstance(config, tuple):
            return tuple(self.render_config(item, context, now) for item in config)
        return config

    def _evaluate(self, expr: str, context: Mapping[str, Any], now: datetime, raw: str) -> str:
        relative = RELATIVE_TIME_RE.match(expr)
        if relative:
            sign, amount, unit = relative.groups()
            moment = now
            if sign:
                delta = timedelta(**{_UNITS[unit]: int(amount)})
                moment = now + delta if sign == "+" else now - delta
            return format_timestamp(moment)

        if PATH_RE.match(expr):
            value = resolve_path(context, expr)
            if value is MISSING:
                return ""
            return stringify(value)

        return raw


_default = TemplateInterpolator()


def interpolate(template: str, context: Mapping[str, Any], now: Optional[datetime] = None) -> str:
    return _default.render(template, context, now)


def interpolate_config(config: Any, context: Mapping[str, Any], now: Optional[datetime] = None) -> Any:
    return _default.render_config(config, context, now)
