from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional, Union

import httpx
import orjson
from jsonpath_ng import parse as parse_jsonpath
from jsonpath_ng.exceptions import JsonPathLexerError, JsonPathParserError

from ..config import Settings
from ..schemas import (
    METRIC_JSONPATH,
    METRIC_LOCAL,
    METRIC_PROMETHEUS,
    MetricQuery,
    Trial,
)
from ..utils import epoch_seconds, parse_number
from .query import MetricCaptureError, render_query

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_RETRY_DELAY = 5.0

_FRACTION = re.compile(r"\.(\d+)")


@dataclass(frozen=True)
class Captured:
    value: float
    error: Optional[float] = None


@dataclass(frozen=True)
class Retry:
    """Not ready yet; a ``None`` delay leaves the timing to the caller."""

    delay: Optional[float] = None


CaptureOutcome = Union[Captured, Retry]


@dataclass(frozen=True)
class DirectSource:
    pass


@dataclass(frozen=True)
class RangeQuerySource:
    url: str


@dataclass(frozen=True)
class HttpJsonPathSource:
    url: str
    name: str


MetricSource = Union[DirectSource, RangeQuerySource, HttpJsonPathSource]


def metric_source(metric: MetricQuery) -> MetricSource:
    if metric.type in (METRIC_LOCAL, ""):
        return DirectSource()
    if metric.type == METRIC_PROMETHEUS:
        return RangeQuerySource(url=metric.url.rstrip("/"))
    if metric.type == METRIC_JSONPATH:
        return HttpJsonPathSource(url=metric.url, name=metric.name)
    raise MetricCaptureError(f"unknown metric type: {metric.type}")


def parse_float(text: Any, what: str) -> float:
    value = parse_number(str(text))
    if value is None:
        raise MetricCaptureError(f"{what}: not a number: {text!r}")
    return value


def parse_rfc3339(text: str) -> datetime:
    # Prometheus reports nanoseconds; datetime keeps microseconds
    value = text.strip().replace("Z", "+00:00")
    value = _FRACTION.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), value, count=1)
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise MetricCaptureError(f"bad timestamp: {text!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_jsonpath(query: str) -> str:
    path = query.strip()
    if path.startswith("{") and path.endswith("}"):
        path = path[1:-1].strip()
    if path.startswith("."):
        path = "$" + path
    return path


class MetricCapture:
    """Resolves metric values for trials; owns the HTTP client it is given."""

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        timeout: float = DEFAULT_TIMEOUT,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        self.client = client or httpx.Client(timeout=timeout)
        self.timeout = timeout
        self.retry_delay = retry_delay

    @classmethod
    def from_settings(cls, settings: Settings) -> "MetricCapture":
        return cls(
            timeout=settings.metric_timeout_seconds,
            retry_delay=settings.metric_retry_delay_seconds,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "MetricCapture":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def capture(self, metric: MetricQuery, trial: Trial) -> CaptureOutcome:
        query = render_query(metric, trial)
        source = metric_source(metric)
        if isinstance(source, DirectSource):
            return Captured(parse_float(query, metric.name))
        if isinstance(source, RangeQuerySource):
            return self.capture_range_query(source, query, trial)
        return self.capture_json_path(source, query)

    def _get_json(self, url: str, params: Optional[dict] = None) -> Any:
        try:
            response = self.client.get(
                url, params=params, headers={"Accept": "application/json"}, timeout=self.timeout
            )
        except httpx.HTTPError as exc:
            raise MetricCaptureError(f"GET {url} failed: {exc}") from exc
        if not response.is_success:
            raise MetricCaptureError(f"GET {url} failed with status {response.status_code}")
        try:
            return orjson.loads(response.content)
        except orjson.JSONDecodeError as exc:
            raise MetricCaptureError(f"invalid JSON from {url}: {exc}") from exc

    def _prometheus_data(self, url: str, params: Optional[dict] = None) -> Any:
        document = self._get_json(url, params)
        if not isinstance(document, dict) or document.get("status") != "success":
            error = document.get("error") if isinstance(document, dict) else None
            raise MetricCaptureError(f"prometheus request to {url} failed: {error}")
        return document.get("data")

    def capture_range_query(
        self, source: RangeQuerySource, query: str, trial: Trial
    ) -> CaptureOutcome:
        completion = trial.status.completion_time
        if completion is None:
            raise MetricCaptureError(
                f"trial {trial.metadata.name} has no completion time to query at"
            )
        if completion.tzinfo is None:
            completion = completion.replace(tzinfo=timezone.utc)

        # Every active target must have been scraped since the trial completed
        data = self._prometheus_data(f"{source.url}/api/v1/targets", {"state": "active"})
        targets = data.get("activeTargets", []) if isinstance(data, dict) else []
        for target in targets:
            last_scrape = parse_rfc3339(str(target.get("lastScrape", "")))
            if last_scrape < completion:
                logger.debug(
                    "Target %s last scraped at %s, before %s",
                    target.get("scrapeUrl", ""),
                    last_scrape,
                    completion,
                )
                return Retry(self.retry_delay)

        data = self._prometheus_data(
            f"{source.url}/api/v1/query",
            {"query": query, "time": f"{epoch_seconds(completion):.3f}"},
        )
        return Captured(parse_float(self._single_sample(data), query))

    @staticmethod
    def _single_sample(data: Any) -> Any:
        if not isinstance(data, dict):
            raise MetricCaptureError("prometheus query returned no data")
        result_type = data.get("resultType")
        result = data.get("result")
        if result_type in ("scalar", "string") and isinstance(result, list) and len(result) == 2:
            return result[1]
        if result_type == "vector" and isinstance(result, list):
            if len(result) != 1:
                raise MetricCaptureError(
                    f"prometheus query returned {len(result)} samples, expected 1"
                )
            value = result[0].get("value")
            if isinstance(value, list) and len(value) == 2:
                return value[1]
        raise MetricCaptureError(f"unsupported prometheus result type: {result_type}")

    def capture_json_path(self, source: HttpJsonPathSource, query: str) -> CaptureOutcome:
        try:
            response = self.client.get(
                source.url, headers={"Accept": "application/json"}, timeout=self.timeout
            )
        except httpx.HTTPError as exc:
            raise MetricCaptureError(f"GET {source.url} failed: {exc}") from exc

        if response.status_code != 200:
            logger.debug("Metric %s not available: status %s", source.name, response.status_code)
            return Retry()

        try:
            document = orjson.loads(response.content)
        except orjson.JSONDecodeError as exc:
            raise MetricCaptureError(f"invalid JSON from {source.url}: {exc}") from exc

        try:
            expression = parse_jsonpath(normalize_jsonpath(query))
        except (JsonPathLexerError, JsonPathParserError) as exc:
            raise MetricCaptureError(f"metric {source.name!r}: bad JSON path: {exc}") from exc

        scalars: List[Any] = [
            match.value
            for match in expression.find(document)
            if isinstance(match.value, (int, float, str)) and not isinstance(match.value, bool)
        ]
        if not scalars:
            raise MetricCaptureError(f"metric {source.name!r}: JSON path matched no scalar value")
        return Captured(parse_float(scalars[-1], source.name))
