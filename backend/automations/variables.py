"""
Template interpolation for automation messages and action configs.

    render("Olá {{contact.first_name | capitalize}}", context)
    render("Total: {{trigger.data.total_value | currency}}", context)
    render("{{contact.email | default:'sem email'}}", context)

Tokens are ``{{ path | filter:arg:arg }}``. Paths are dotted lookups into the
run context (``items.0.name`` and ``items[0].name`` both work). A missing path
renders as an empty string, an unknown filter leaves the value untouched and a
failing filter falls back to the unfiltered value: rendering never raises.
"""
from __future__ import annotations

import base64
import json
import logging
import math
import re
from datetime import date, datetime, timezone as dt_timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List
from urllib.parse import quote

from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from django.utils.text import slugify
from django.utils.timesince import timesince

from . import conf

logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
PIPE_RE = re.compile(r"""(?:[^|'"]|'[^']*'|"[^"]*")+""")
ARG_RE = re.compile(r"""'([^']*)'|"([^"]*)"|([^:]+)""")
INDEX_RE = re.compile(r"\[(\d+)\]")
DATE_TOKEN_RE = re.compile(r"yyyy|yy|MM|dd|HH|mm|ss")

DATE_TOKENS = {"yyyy": "%Y", "yy": "%y", "MM": "%m", "dd": "%d", "HH": "%H", "mm": "%M", "ss": "%S"}

# prefix, thousands separator, decimal separator
CURRENCY_FORMATS = {
    "BRL": ("R$ ", ".", ","),
    "USD": ("$", ",", "."),
    "EUR": ("€ ", ".", ","),
    "GBP": ("£", ",", "."),
    "XOF": ("CFA ", " ", ","),
}

SPECIAL_VARIABLES: Dict[str, Callable[[], Any]] = {
    "now": timezone.now,
    "today": timezone.localdate,
}

FILTERS: Dict[str, Callable[..., Any]] = {}


def register_filter(*names):
    def deco(func):
        for name in names:
            FILTERS[name] = func
        return func
    return deco


# --------------------------------------------------------------------------
# Lookup
# --------------------------------------------------------------------------
def resolve_path(context: Any, path: str, default: Any = None) -> Any:
    """Nested dotted lookup; returns `default` for anything not found."""
    if not isinstance(path, str) or not path.strip():
        return default
    current = context
    for segment in INDEX_RE.sub(r".\1", path.strip()).split("."):
        segment = segment.strip()
        if not segment:
            return default
        if isinstance(current, dict):
            if segment not in current:
                return default
            current = current[segment]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                return default
        else:
            return default
    return current


def _split_pipes(expr: str) -> List[str]:
    return [p.strip() for p in PIPE_RE.findall(expr)]


def _coerce_arg(raw: str) -> Any:
    raw = raw.strip()
    low = raw.lower()
    if low in ("true", "false"):
        return low == "true"
    if low in ("null", "none"):
        return None
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw


def _parse_filter(part: str):
    name, _, rest = part.partition(":")
    args = []
    if rest:
        for single, double, bare in ARG_RE.findall(rest):
            if single or double:
                args.append(single or double)
            elif bare.strip():
                args.append(_coerce_arg(bare))
    return name.strip(), args


def evaluate(expr: str, context: Dict[str, Any]) -> Any:
    parts = _split_pipes(expr)
    if not parts:
        return None
    path = parts[0]
    value = resolve_path(context, path)
    if value is None and path in SPECIAL_VARIABLES:
        value = SPECIAL_VARIABLES[path]()

    for part in parts[1:]:
        name, args = _parse_filter(part)
        func = FILTERS.get(name)
        if func is None:
            continue
        try:
            value = func(value, *args)
        except Exception:
            logger.debug("filter %r failed on %r", name, value, exc_info=True)
    return value


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


# --------------------------------------------------------------------------
# Public API
# --------------------------------------------------------------------------
def render(template: Any, context: Any = None) -> str:
    if template is None:
        return ""
    if not isinstance(template, str):
        return to_text(template)
    if "{{" not in template:
        return template
    ctx = context if isinstance(context, dict) else {}

    def _sub(match):
        try:
            return to_text(evaluate(match.group(1), ctx))
        except Exception:
            logger.warning("could not render token %r", match.group(0), exc_info=True)
            return ""

    return TOKEN_RE.sub(_sub, template)


def render_object(obj: Any, context: Any = None) -> Any:
    """Render every string inside a (nested) dict/list config."""
    if isinstance(obj, str):
        return render(obj, context)
    if isinstance(obj, dict):
        return {k: render_object(v, context) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [render_object(v, context) for v in obj]
    return obj


def build_context(base: Any = None, **extra) -> Dict[str, Any]:
    """Render context with `now`/`today` pinned for every token in one pass."""
    ctx = {"now": timezone.now().isoformat(), "today": timezone.localdate().isoformat()}
    if isinstance(base, dict):
        ctx.update(base)
    ctx.update(extra)
    return ctx


def extract_variables(template: Any) -> List[str]:
    if not isinstance(template, str):
        return []
    seen = []
    for expr in TOKEN_RE.findall(template):
        parts = _split_pipes(expr)
        if parts and parts[0] not in seen:
            seen.append(parts[0])
    return seen


# --------------------------------------------------------------------------
# Filters
# --------------------------------------------------------------------------
def _text(value) -> str:
    return to_text(value)


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, str):
        value = value.strip().replace(" ", "")
        # accept "1.234,56" as well as "1234.56"
        if "," in value and value.rfind(",") > value.rfind("."):
            value = value.replace(".", "").replace(",", ".")
    return Decimal(str(value))


def _group(amount: Decimal, decimals: int, thousands: str, decimal_sep: str) -> str:
    formatted = f"{abs(amount):,.{decimals}f}"
    formatted = formatted.replace(",", "\0").replace(".", decimal_sep).replace("\0", thousands)
    return f"-{formatted}" if amount < 0 else formatted


def _to_datetime(value):
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # epoch seconds or milliseconds
        ts = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(ts, tz=dt_timezone.utc)
    text = str(value).strip()
    parsed = parse_datetime(text)
    if parsed is None:
        d = parse_date(text)
        if d is None:
            raise ValueError(f"not a date: {value!r}")
        parsed = datetime(d.year, d.month, d.day)
    return parsed


def _strftime(value, pattern: str) -> str:
    dt = _to_datetime(value)
    if timezone.is_aware(dt):
        dt = timezone.localtime(dt)
    return dt.strftime(DATE_TOKEN_RE.sub(lambda m: DATE_TOKENS[m.group(0)], pattern))


@register_filter("upper", "uppercase")
def f_upper(value):
    return _text(value).upper()


@register_filter("lower", "lowercase")
def f_lower(value):
    return _text(value).lower()


@register_filter("capitalize")
def f_capitalize(value):
    text = _text(value)
    return text[:1].upper() + text[1:].lower()


@register_filter("title", "titlecase")
def f_title(value):
    return _text(value).title()


@register_filter("trim", "strip")
def f_trim(value):
    return _text(value).strip()


@register_filter("truncate")
def f_truncate(value, length=50, suffix="..."):
    text = _text(value)
    length = int(length)
    return text if len(text) <= length else text[:length] + str(suffix)


@register_filter("replace")
def f_replace(value, old="", new=""):
    return _text(value).replace(str(old), str(new))


@register_filter("slug", "slugify")
def f_slug(value):
    return slugify(_text(value))


@register_filter("default", "ifEmpty")
def f_default(value, fallback=""):
    if value is None or value == "" or value == [] or value == {}:
        return fallback
    return value


@register_filter("number")
def f_number(value, decimals=0):
    _, thousands, decimal_sep = CURRENCY_FORMATS.get(conf.get("AUTOMATION_DEFAULT_CURRENCY"), CURRENCY_FORMATS["BRL"])
    return _group(_to_decimal(value), int(decimals), thousands, decimal_sep)


@register_filter("currency")
def f_currency(value, code=None):
    code = (code or conf.get("AUTOMATION_DEFAULT_CURRENCY")).upper()
    prefix, thousands, decimal_sep = CURRENCY_FORMATS.get(code, (f"{code} ", ",", "."))
    return prefix + _group(_to_decimal(value), 2, thousands, decimal_sep)


@register_filter("percent")
def f_percent(value, decimals=0):
    return f"{float(value):.{int(decimals)}f}%"


@register_filter("round")
def f_round(value, decimals=0):
    decimals = int(decimals)
    result = round(float(value), decimals)
    return int(result) if decimals == 0 else result


@register_filter("floor")
def f_floor(value):
    return math.floor(float(value))


@register_filter("ceil")
def f_ceil(value):
    return math.ceil(float(value))


@register_filter("abs")
def f_abs(value):
    return abs(float(value))


@register_filter("date")
def f_date(value, pattern="dd/MM/yyyy"):
    return _strftime(value, str(pattern))


@register_filter("datetime")
def f_datetime(value, pattern="dd/MM/yyyy HH:mm"):
    return _strftime(value, str(pattern))


@register_filter("timesince", "relative")
def f_timesince(value):
    dt = _to_datetime(value)
    if timezone.is_naive(dt):
        dt = timezone.make_aware(dt)
    return timesince(dt)


@register_filter("join")
def f_join(value, sep=", "):
    if isinstance(value, (list, tuple)):
        return str(sep).join(_text(v) for v in value)
    return value


@register_filter("first")
def f_first(value):
    return value[0] if value else None


@register_filter("last")
def f_last(value):
    return value[-1] if value else None


@register_filter("length", "count")
def f_length(value):
    return 0 if value is None else len(value)


@register_filter("reverse")
def f_reverse(value):
    if isinstance(value, str):
        return value[::-1]
    return list(reversed(value))


@register_filter("sort")
def f_sort(value):
    return sorted(value, key=_text)


@register_filter("unique")
def f_unique(value):
    out = []
    for item in value:
        if item not in out:
            out.append(item)
    return out


@register_filter("json")
def f_json(value):
    return json.dumps(value, ensure_ascii=False, default=str)


@register_filter("urlencode", "encodeUri")
def f_urlencode(value):
    return quote(_text(value), safe="")


@register_filter("base64")
def f_base64(value):
    return base64.b64encode(_text(value).encode("utf-8")).decode("ascii")


@register_filter("phone")
def f_phone(value):
    digits = re.sub(r"\D", "", _text(value))
    if len(digits) == 13 and digits.startswith("55"):
        return f"+55 ({digits[2:4]}) {digits[4:9]}-{digits[9:]}"
    if len(digits) == 11:
        return f"({digits[:2]}) {digits[2:7]}-{digits[7:]}"
    if len(digits) == 10:
        return f"({digits[:2]}) {digits[2:6]}-{digits[6:]}"
    return value
