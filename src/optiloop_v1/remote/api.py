from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, Type, TypeVar
from urllib.parse import quote

import httpx
import orjson
from pydantic import ValidationError

from ..config import Settings
from ..utils import canonical_dumps
from .models import (
    RemoteAssignment,
    RemoteExperiment,
    RemoteModel,
    TrialAssignments,
    TrialValues,
)

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 5.0
JSON_HEADERS = {"Accept": "application/json", "Content-Type": "application/json"}

ModelT = TypeVar("ModelT", bound=RemoteModel)


class APIError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ExperimentStopped(APIError):
    pass


class TrialUnavailable(APIError):
    def __init__(self, message: str, retry_after: float = DEFAULT_RETRY_AFTER) -> None:
        super().__init__(message, status_code=503)
        self.retry_after = retry_after


class RemoteAPI(Protocol):
    def create_experiment(self, name: str, experiment: RemoteExperiment) -> str:
        ...

    def get_experiment(self, url: str) -> RemoteExperiment:
        ...

    def get_experiment_by_name(self, name: str) -> RemoteExperiment:
        ...

    def delete_experiment(self, url: str) -> None:
        ...

    def next_trial(self, url: str) -> Tuple[TrialAssignments, str]:
        ...

    def report_trial(self, url: str, values: TrialValues) -> None:
        ...

    def create_trial(self, url: str, assignments: TrialAssignments) -> str:
        ...


def _parse_retry_after(value: Optional[str], default: float) -> float:
    if not value:
        return default
    try:
        seconds = float(value.strip())
    except ValueError:
        return default
    return seconds if seconds >= 0 else default


def _link(response: httpx.Response, rel: str) -> str:
    link = response.links.get(rel)
    if not link or not link.get("url"):
        return ""
    return str(response.url.join(link["url"]))


def _location(response: httpx.Response) -> str:
    location = response.headers.get("Location", "")
    if not location:
        return ""
    return str(response.url.join(location))


class HttpRemoteAPI:
    def __init__(
        self,
        address: str,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
        default_retry_after: float = DEFAULT_RETRY_AFTER,
    ) -> None:
        if not address:
            raise APIError("remote server address is not configured")
        self.address = address.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)
        self.default_retry_after = default_retry_after

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpRemoteAPI":
        return cls(
            settings.server_address,
            timeout=settings.api_timeout_seconds,
            default_retry_after=settings.default_retry_after_seconds,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "HttpRemoteAPI":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def experiment_url(self, name: str) -> str:
        return f"{self.address}/api/experiments/{quote(name, safe='')}"

    def _send(self, method: str, url: str, payload: Any = None) -> httpx.Response:
        content = canonical_dumps(payload) if payload is not None else None
        try:
            return self.client.request(method, url, content=content, headers=JSON_HEADERS)
        except httpx.HTTPError as exc:
            raise APIError(f"{method} {url} failed: {exc}") from exc

    def _check(self, response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        raise APIError(
            f"{action} failed with status {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )

    def _decode(self, response: httpx.Response) -> Dict[str, Any]:
        if not response.content:
            return {}
        try:
            data = orjson.loads(response.content)
        except orjson.JSONDecodeError as exc:
            raise APIError(f"invalid JSON from {response.url}: {exc}") from exc
        if not isinstance(data, dict):
            raise APIError(f"unexpected JSON document from {response.url}")
        return data

    def _model(self, response: httpx.Response, model: Type[ModelT]) -> ModelT:
        try:
            return model.model_validate(self._decode(response))
        except ValidationError as exc:
            raise APIError(f"malformed {model.__name__} from {response.url}: {exc}") from exc

    def create_experiment(self, name: str, experiment: RemoteExperiment) -> str:
        url = self.experiment_url(name)
        response = self._send("PUT", url, experiment.to_payload())
        self._check(response, "create experiment")
        return _location(response) or url

    def get_experiment(self, url: str) -> RemoteExperiment:
        response = self._send("GET", url)
        self._check(response, "get experiment")
        experiment = self._model(response, RemoteExperiment)
        experiment.self_ref = url
        experiment.generate_ref = _link(response, "next")
        experiment.trials_ref = _link(response, "trials")
        return experiment

    def get_experiment_by_name(self, name: str) -> RemoteExperiment:
        return self.get_experiment(self.experiment_url(name))

    def delete_experiment(self, url: str) -> None:
        response = self._send("DELETE", url)
        if response.status_code == 404:
            return
        self._check(response, "delete experiment")

    def next_trial(self, url: str) -> Tuple[TrialAssignments, str]:
        response = self._send("POST", url)
        if response.status_code == 410:
            raise ExperimentStopped("experiment is stopped", status_code=410)
        if response.status_code == 503:
            retry_after = _parse_retry_after(
                response.headers.get("Retry-After"), self.default_retry_after
            )
            raise TrialUnavailable("no trial suggestions available", retry_after=retry_after)
        self._check(response, "next trial")
        report_url = _location(response)
        if not report_url:
            raise APIError("next trial response is missing a report location")
        return self._model(response, TrialAssignments), report_url

    def report_trial(self, url: str, values: TrialValues) -> None:
        response = self._send("POST", url, values.to_payload())
        self._check(response, "report trial")

    def create_trial(self, url: str, assignments: TrialAssignments) -> str:
        response = self._send("POST", url, assignments.to_payload())
        self._check(response, "create trial")
        return _location(response)


class StaticRemoteAPI:
    """In-process optimization server that hands out queued suggestions."""

    def __init__(
        self,
        base_url: str = "http://optimizer.test",
        max_parallel_trials: int = 0,
        retry_after: float = DEFAULT_RETRY_AFTER,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.max_parallel_trials = max_parallel_trials
        self.retry_after = retry_after
        self.experiments: Dict[str, RemoteExperiment] = {}
        self.suggestions: List[Dict[str, Any]] = []
        self.stopped = False
        self.offer_suggestions = True
        self.fail_reports = False
        self.fail_deletes = False
        self.fail_creates = False
        self.calls: List[Tuple[str, str]] = []
        self.reports: List[Tuple[str, TrialValues]] = []
        self.created_trials: List[Tuple[str, TrialAssignments]] = []
        self._issued = 0

    def queue_suggestion(self, assignments: Mapping[str, Any]) -> None:
        self.suggestions.append(dict(assignments))

    def call_count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def _lookup(self, url: str) -> RemoteExperiment:
        experiment = self.experiments.get(url)
        if experiment is None:
            raise APIError(f"experiment {url} not found", status_code=404)
        return experiment

    def create_experiment(self, name: str, experiment: RemoteExperiment) -> str:
        self.calls.append(("create_experiment", name))
        if self.fail_creates:
            raise APIError("create experiment failed with status 500", status_code=500)
        url = f"{self.base_url}/api/experiments/{name}"
        stored = experiment.model_copy(deep=True)
        if self.max_parallel_trials > 0:
            stored.optimization.parallel_trials = self.max_parallel_trials
        stored.self_ref = url
        stored.trials_ref = f"{url}/trials"
        self.experiments[url] = stored
        return url

    def get_experiment(self, url: str) -> RemoteExperiment:
        self.calls.append(("get_experiment", url))
        experiment = self._lookup(url).model_copy(deep=True)
        if self.offer_suggestions and not self.stopped:
            experiment.generate_ref = f"{url}/next"
        return experiment

    def get_experiment_by_name(self, name: str) -> RemoteExperiment:
        return self.get_experiment(f"{self.base_url}/api/experiments/{name}")

    def delete_experiment(self, url: str) -> None:
        self.calls.append(("delete_experiment", url))
        if self.fail_deletes:
            raise APIError("delete experiment failed with status 503", status_code=503)
        self.experiments.pop(url, None)

    def next_trial(self, url: str) -> Tuple[TrialAssignments, str]:
        self.calls.append(("next_trial", url))
        if self.stopped:
            raise ExperimentStopped("experiment is stopped", status_code=410)
        if not self.suggestions:
            raise TrialUnavailable("no trial suggestions available", retry_after=self.retry_after)
        assignments = self.suggestions.pop(0)
        self._issued += 1
        experiment_url = url.rsplit("/", 1)[0]
        report_url = f"{experiment_url}/trials/{self._issued}"
        return (
            TrialAssignments(
                assignments=[
                    RemoteAssignment(parameter_name=name, value=value)
                    for name, value in assignments.items()
                ]
            ),
            report_url,
        )

    def report_trial(self, url: str, values: TrialValues) -> None:
        self.calls.append(("report_trial", url))
        if self.fail_reports:
            raise APIError("report trial failed with status 500", status_code=500)
        self.reports.append((url, values.model_copy(deep=True)))

    def create_trial(self, url: str, assignments: TrialAssignments) -> str:
        self.calls.append(("create_trial", url))
        self.created_trials.append((url, assignments.model_copy(deep=True)))
        return f"{url}/{len(self.created_trials)}"
