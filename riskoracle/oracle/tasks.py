"""
Feed execution on an oracle node.

Placeholders are resolved only here, on a private copy of each fetch task;
the feed that was hashed is never modified. Error messages name tokens and
unresolved URLs, never resolved values.
"""

import json
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Mapping, Optional

import requests

from riskoracle.errors import TaskExecutionError
from riskoracle.feed import PLACEHOLDER_RE, Clamp, Feed, Header, HttpFetch, JsonExtract, Scale

log = logging.getLogger("risk-oracle.tasks")

TIMEOUT = 5

Fetch = Callable[[str, Dict[str, str]], str]


def http_get(url: str, headers: Dict[str, str]) -> str:
    try:
        r = requests.get(url, headers=headers, timeout=TIMEOUT)
    except requests.RequestException as e:
        raise TaskExecutionError(f"request failed: {type(e).__name__}")
    if r.status_code >= 400:
        raise TaskExecutionError(f"source returned HTTP {r.status_code}")
    return r.text


def resolve_placeholders(text: str, overrides: Mapping[str, str]) -> str:
    def sub(m):
        name = m.group(1)
        if name not in overrides:
            raise TaskExecutionError(f"no value supplied for placeholder ${{{name}}}")
        return str(overrides[name])

    return PLACEHOLDER_RE.sub(sub, text)


def resolve_fetch(task: HttpFetch, overrides: Mapping[str, str]) -> HttpFetch:
    return HttpFetch(
        url=resolve_placeholders(task.url, overrides),
        headers=tuple(Header(h.key, resolve_placeholders(h.value, overrides)) for h in task.headers),
    )


# -------------------------
# JSON path subset: $ .field ['field'] [index]
# -------------------------

_PATH_STEP = re.compile(r"\.([A-Za-z_][A-Za-z0-9_]*)|\[(\d+)\]|\['([^']*)'\]|\[\"([^\"]*)\"\]")


def _path_steps(path: str):
    if not path.startswith("$"):
        raise TaskExecutionError(f"json path must start with '$': {path!r}")
    steps = []
    pos = 1
    while pos < len(path):
        m = _PATH_STEP.match(path, pos)
        if m is None:
            raise TaskExecutionError(f"unsupported json path {path!r} at position {pos}")
        name, index, single, double = m.groups()
        if index is not None:
            steps.append(int(index))
        else:
            steps.append(next(s for s in (name, single, double) if s is not None))
        pos = m.end()
    return steps


def extract_json(text: str, path: str) -> Decimal:
    try:
        node = json.loads(text, parse_float=Decimal)
    except ValueError:
        raise TaskExecutionError("source response is not valid JSON")

    for step in _path_steps(path):
        if isinstance(step, int):
            if not isinstance(node, list) or step >= len(node):
                raise TaskExecutionError(f"json path {path} not found (index {step})")
        elif not isinstance(node, dict) or step not in node:
            raise TaskExecutionError(f"json path {path} not found (field {step!r})")
        node = node[step]

    if isinstance(node, bool) or node is None:
        raise TaskExecutionError(f"json path {path} selected {json.dumps(node)}, not a number")
    if isinstance(node, (int, Decimal)):
        value = Decimal(node)
    elif isinstance(node, str):
        try:
            value = Decimal(node.strip())
        except InvalidOperation:
            raise TaskExecutionError(f"json path {path} selected a non-numeric string")
    else:
        raise TaskExecutionError(f"json path {path} selected a {type(node).__name__}, not a number")

    if not value.is_finite():
        raise TaskExecutionError(f"json path {path} selected a non-finite number")
    return value


def apply_transform(task, value: Decimal) -> Decimal:
    if isinstance(task, Scale):
        return value * task.multiplier
    if isinstance(task, Clamp):
        if value < task.lower_bound:
            return task.on_exceeds_lower
        if value > task.upper_bound:
            return task.on_exceeds_upper
        return value
    raise TaskExecutionError(f"{type(task).__name__} is not a numeric transform")


def execute_feed(
    feed: Feed,
    variable_overrides: Optional[Mapping[str, str]] = None,
    fetch: Fetch = http_get,
) -> Decimal:
    """Run the feed's tasks in order and return the final number."""
    feed.validate()
    overrides = variable_overrides or {}
    missing = [name for name in feed.placeholders() if name not in overrides]
    if missing:
        raise TaskExecutionError(f"no value supplied for placeholder(s): {', '.join(missing)}")

    current = None
    for task in feed.tasks:
        if isinstance(task, HttpFetch):
            resolved = resolve_fetch(task, overrides)
            try:
                current = fetch(resolved.url, {h.key: h.value for h in resolved.headers})
            except TaskExecutionError as e:
                raise TaskExecutionError(f"fetch {task.url} failed: {e.message}")
            log.debug(f"Fetched {task.url} ({len(current)} bytes)")
        elif isinstance(task, JsonExtract):
            current = extract_json(current, task.path)
        else:
            current = apply_transform(task, current)
    return current
