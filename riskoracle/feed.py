"""
Feed model — a declarative fetch-and-transform pipeline.

A feed is an ordered list of tasks plus aggregation settings. Each task
consumes the previous task's output:

  HttpFetch    -> text      (url + headers, may hold ${NAME} placeholders)
  JsonExtract  text -> number
  Scale        number -> number
  Clamp        number -> number

Feeds are immutable. Any field change yields a different FeedId.
"""

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import ClassVar, List, Tuple, Union

from riskoracle.errors import FeedValidationError

PLACEHOLDER_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

TEXT = "text"
NUMBER = "number"


@dataclass(frozen=True)
class Header:
    key: str
    value: str


@dataclass(frozen=True)
class HttpFetch:
    TYPE: ClassVar[str] = "httpFetch"
    TAG: ClassVar[int] = 1

    url: str
    headers: Tuple[Header, ...] = ()


@dataclass(frozen=True)
class JsonExtract:
    TYPE: ClassVar[str] = "jsonExtract"
    TAG: ClassVar[int] = 2

    path: str


@dataclass(frozen=True)
class Scale:
    TYPE: ClassVar[str] = "scale"
    TAG: ClassVar[int] = 3

    multiplier: Decimal


@dataclass(frozen=True)
class Clamp:
    """Bound a number; a value past a bound is replaced by that side's substitute."""

    TYPE: ClassVar[str] = "clamp"
    TAG: ClassVar[int] = 4

    lower_bound: Decimal
    on_exceeds_lower: Decimal
    upper_bound: Decimal
    on_exceeds_upper: Decimal


Task = Union[HttpFetch, JsonExtract, Scale, Clamp]
TASK_TYPES = (HttpFetch, JsonExtract, Scale, Clamp)

# (input kind, output kind); None input means "must be first".
_FLOW = {
    HttpFetch: (None, TEXT),
    JsonExtract: (TEXT, NUMBER),
    Scale: (NUMBER, NUMBER),
    Clamp: (NUMBER, NUMBER),
}


@dataclass(frozen=True)
class Feed:
    name: str
    tasks: Tuple[Task, ...]
    min_job_responses: int = 1
    min_oracle_samples: int = 1
    max_job_range_pct: Decimal = Decimal(100)

    def validate(self) -> "Feed":
        """Raise FeedValidationError unless this feed can be hashed and run."""
        if not isinstance(self.name, str):
            raise FeedValidationError("feed name must be a string")
        if not self.tasks:
            raise FeedValidationError("feed has no tasks")

        current = None
        for i, task in enumerate(self.tasks):
            if type(task) not in _FLOW:
                raise FeedValidationError(
                    f"task {i}: unsupported task type {type(task).__name__}"
                )
            wants, produces = _FLOW[type(task)]
            if wants != current:
                expected = "first position" if wants is None else f"{wants} input"
                got = "nothing" if current is None else current
                raise FeedValidationError(
                    f"task {i} ({task.TYPE}) needs {expected}, previous task yields {got}"
                )
            _validate_task(i, task)
            current = produces

        if current != NUMBER:
            raise FeedValidationError("feed pipeline must end with a numeric value")

        for name in ("min_job_responses", "min_oracle_samples"):
            v = getattr(self, name)
            if isinstance(v, bool) or not isinstance(v, int) or v < 1:
                raise FeedValidationError(f"{name} must be an integer >= 1, got {v!r}")
            if v > 0xFFFFFFFF:
                raise FeedValidationError(f"{name} out of range: {v}")
        _require_decimal("max_job_range_pct", self.max_job_range_pct)
        if self.max_job_range_pct < 0:
            raise FeedValidationError("max_job_range_pct must not be negative")
        return self

    def placeholders(self) -> List[str]:
        """Placeholder token names referenced by fetch tasks, in order of appearance."""
        names = []
        for task in self.tasks:
            if isinstance(task, HttpFetch):
                texts = [task.url] + [h.value for h in task.headers]
                for text in texts:
                    for name in PLACEHOLDER_RE.findall(text):
                        if name not in names:
                            names.append(name)
        return names

    # -------------------------
    # Wire form
    # -------------------------

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "tasks": [task_to_dict(t) for t in self.tasks],
            "minJobResponses": self.min_job_responses,
            "minOracleSamples": self.min_oracle_samples,
            "maxJobRangePct": str(self.max_job_range_pct),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Feed":
        try:
            return cls(
                name=data.get("name", ""),
                tasks=tuple(task_from_dict(t) for t in data["tasks"]),
                min_job_responses=int(data.get("minJobResponses", 1)),
                min_oracle_samples=int(data.get("minOracleSamples", 1)),
                max_job_range_pct=_parse_decimal(
                    "maxJobRangePct", data.get("maxJobRangePct", "100")
                ),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            if isinstance(e, FeedValidationError):
                raise
            raise FeedValidationError(f"malformed feed: {e}") from e


def _validate_task(i: int, task) -> None:
    if isinstance(task, HttpFetch):
        if not isinstance(task.url, str) or not task.url:
            raise FeedValidationError(f"task {i}: url must be a non-empty string")
        for h in task.headers:
            if not isinstance(h, Header):
                raise FeedValidationError(f"task {i}: headers must be Header values")
            if not isinstance(h.key, str) or not h.key:
                raise FeedValidationError(f"task {i}: header key must be a non-empty string")
            if not isinstance(h.value, str):
                raise FeedValidationError(f"task {i}: header {h.key} value must be a string")
    elif isinstance(task, JsonExtract):
        if not isinstance(task.path, str) or not task.path.startswith("$"):
            raise FeedValidationError(f"task {i}: json path must start with '$'")
    elif isinstance(task, Scale):
        _require_decimal(f"task {i} multiplier", task.multiplier)
    elif isinstance(task, Clamp):
        for name in ("lower_bound", "on_exceeds_lower", "upper_bound", "on_exceeds_upper"):
            _require_decimal(f"task {i} {name}", getattr(task, name))
        if task.lower_bound > task.upper_bound:
            raise FeedValidationError(
                f"task {i}: lower bound {task.lower_bound} exceeds upper bound {task.upper_bound}"
            )


def _require_decimal(name: str, value) -> None:
    # floats are refused outright: their binary rounding would leak into the hash
    if not isinstance(value, Decimal):
        raise FeedValidationError(f"{name} must be a Decimal, got {type(value).__name__}")
    if not value.is_finite():
        raise FeedValidationError(f"{name} must be finite, got {value}")


def _parse_decimal(name: str, raw) -> Decimal:
    if isinstance(raw, float):
        raise FeedValidationError(f"{name} must be a decimal string, not a float")
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        raise FeedValidationError(f"{name} is not a decimal: {raw!r}")


def task_to_dict(task) -> dict:
    if isinstance(task, HttpFetch):
        return {
            "type": HttpFetch.TYPE,
            "url": task.url,
            "headers": [{"key": h.key, "value": h.value} for h in task.headers],
        }
    if isinstance(task, JsonExtract):
        return {"type": JsonExtract.TYPE, "path": task.path}
    if isinstance(task, Scale):
        return {"type": Scale.TYPE, "multiplier": str(task.multiplier)}
    if isinstance(task, Clamp):
        return {
            "type": Clamp.TYPE,
            "lowerBound": str(task.lower_bound),
            "onExceedsLower": str(task.on_exceeds_lower),
            "upperBound": str(task.upper_bound),
            "onExceedsUpper": str(task.on_exceeds_upper),
        }
    raise FeedValidationError(f"unsupported task type {type(task).__name__}")


def task_from_dict(data: dict):
    kind = data.get("type")
    if kind == HttpFetch.TYPE:
        return HttpFetch(
            url=data["url"],
            headers=tuple(Header(h["key"], h["value"]) for h in data.get("headers", [])),
        )
    if kind == JsonExtract.TYPE:
        return JsonExtract(path=data["path"])
    if kind == Scale.TYPE:
        return Scale(multiplier=_parse_decimal("multiplier", data["multiplier"]))
    if kind == Clamp.TYPE:
        return Clamp(
            lower_bound=_parse_decimal("lowerBound", data["lowerBound"]),
            on_exceeds_lower=_parse_decimal("onExceedsLower", data["onExceedsLower"]),
            upper_bound=_parse_decimal("upperBound", data["upperBound"]),
            on_exceeds_upper=_parse_decimal("onExceedsUpper", data["onExceedsUpper"]),
        )
    raise FeedValidationError(f"unsupported task type {kind!r}")
