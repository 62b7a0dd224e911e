"""
Provider adapters for PayPer.

One adapter per external generation service. Each exposes the same
contract: create_task(prompt, options) -> task id, and
query_task(task_id) -> the provider's raw status variant. Normalizing that
raw status is the job of payper.normalizer.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from payper.errors import InvalidOptions, ProviderUnavailable, TaskNotFound
from payper.schemas import (
    JobStateStatus,
    ProviderId,
    RawStatus,
    StatusFlagStatus,
    SuccessFlagStatus,
)

logger = logging.getLogger("payper.providers")

IMAGE_SIZES = (
    "square",
    "square_hd",
    "portrait_4_3",
    "portrait_16_9",
    "landscape_4_3",
    "landscape_16_9",
)


class ProviderAdapter(ABC):
    """
    Abstract base class for generation providers.

    Subclasses declare their option vocabulary: defaults applied when the
    caller omits a key, allowed choices, numeric ranges, and free-form keys
    passed through unchanged. Anything else is dropped.
    """

    provider_id: ProviderId
    option_defaults: Dict[str, Any] = {}
    option_choices: Dict[str, tuple] = {}
    option_ranges: Dict[str, tuple] = {}
    passthrough_options: tuple = ()

    def prepare_options(self, options: Optional[dict]) -> dict:
        """Apply defaults and validate options, raising InvalidOptions on bad values."""
        options = dict(options or {})
        prepared = dict(self.option_defaults)

        for key, value in options.items():
            if value is None:
                continue
            if key in self.option_choices:
                prepared[key] = self._check_choice(key, value)
            elif key in self.option_ranges:
                prepared[key] = self._check_range(key, value)
            elif key in self.option_defaults or key in self.passthrough_options:
                prepared[key] = value
            else:
                logger.debug("%s: ignoring unknown option %r", self.provider_id.value, key)
        return prepared

    def _check_choice(self, key: str, value: Any) -> Any:
        for choice in self.option_choices[key]:
            if value == choice or str(value) == str(choice):
                return choice
        allowed = ", ".join(str(c) for c in self.option_choices[key])
        raise InvalidOptions(
            f"Invalid value {value!r} for option '{key}' (allowed: {allowed})",
            provider_id=self.provider_id.value,
        )

    def _check_range(self, key: str, value: Any) -> Any:
        low, high = self.option_ranges[key]
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise InvalidOptions(
                f"Option '{key}' must be a number, got {value!r}",
                provider_id=self.provider_id.value,
            )
        if number < low or number > high:
            raise InvalidOptions(
                f"Option '{key}' must be between {low} and {high}, got {value}",
                provider_id=self.provider_id.value,
            )
        return int(number) if isinstance(low, int) and number.is_integer() else number

    @abstractmethod
    def create_task(self, prompt: str, options: dict) -> str:
        """Create a generation task and return its provider task id."""
        pass

    @abstractmethod
    def query_task(self, task_id: str) -> RawStatus:
        """Fetch the raw status of a task."""
        pass


class KieAdapter(ProviderAdapter):
    """
    Shared HTTP plumbing for the Kie.ai API family.

    Responses are wrapped as {"code": 200, "msg": ..., "data": {...}}; the
    envelope code can signal an error even when the HTTP status is 200.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = "https://api.kie.ai",
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
        callback_url: Optional[str] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client()
        self.timeout = timeout
        self.callback_url = callback_url

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _request(
        self, method: str, path: str, creating: bool, task_id: Optional[str] = None, **kwargs
    ) -> dict:
        name = self.provider_id.value
        try:
            response = self.client.request(
                method,
                f"{self.base_url}{path}",
                headers=self._headers(),
                timeout=self.timeout,
                **kwargs,
            )
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"{name}: request failed: {e}", provider_id=name) from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        code = body.get("code", response.status_code) if isinstance(body, dict) else response.status_code
        message = body.get("msg") if isinstance(body, dict) else None

        if response.status_code >= 400 or code != 200:
            status = code if response.status_code < 400 else response.status_code
            detail = message or response.text[:200]
            if creating and status in (400, 422):
                raise InvalidOptions(f"{name} rejected the request: {detail}", provider_id=name)
            if task_id is not None and status in (400, 404, 422):
                raise TaskNotFound(task_id)
            raise ProviderUnavailable(f"{name} returned {status}: {detail}", provider_id=name)

        data = body.get("data")
        if not isinstance(data, dict):
            raise ProviderUnavailable(f"{name}: response has no data object", provider_id=name)
        return data

    def _post(self, path: str, payload: dict) -> dict:
        if self.callback_url:
            payload = {**payload, "callBackUrl": self.callback_url}
        return self._request("POST", path, creating=True, json=payload)

    def _get(self, path: str, params: dict) -> dict:
        return self._request("GET", path, creating=False, task_id=params.get("taskId"), params=params)

    def _task_id(self, data: dict) -> str:
        task_id = data.get("taskId")
        if not task_id:
            raise ProviderUnavailable(
                f"{self.provider_id.value}: task creation returned no taskId",
                provider_id=self.provider_id.value,
            )
        return str(task_id)


def _flag(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _urls(response: Any) -> tuple:
    if not isinstance(response, dict):
        return ()
    return tuple(u for u in response.get("resultUrls") or [] if u)


class GPT4oImageAdapter(KieAdapter):
    """4o Image: named status plus successFlag."""

    provider_id = ProviderId.GPT4O_IMAGE
    option_defaults = {"size": "1:1", "nVariants": 1}
    option_choices = {"size": ("1:1", "3:2", "2:3"), "nVariants": (1, 2, 4)}
    passthrough_options = ("filesUrl",)

    def create_task(self, prompt: str, options: dict) -> str:
        payload = {"prompt": prompt, **options}
        return self._task_id(self._post("/api/v1/gpt4o-image/generate", payload))

    def query_task(self, task_id: str) -> StatusFlagStatus:
        data = self._get("/api/v1/gpt4o-image/record-info", {"taskId": task_id})
        return StatusFlagStatus(
            provider_id=self.provider_id,
            task_id=str(data.get("taskId") or task_id),
            status=data.get("status"),
            success_flag=_flag(data.get("successFlag")),
            result_urls=_urls(data.get("response")),
            progress=data.get("progress"),
            error_code=_str_or_none(data.get("errorCode")),
            error_message=data.get("errorMessage"),
            raw=data,
        )


class VeoAdapter(KieAdapter):
    """Veo 3.1: numeric successFlag only."""

    provider_id = ProviderId.VEO
    option_defaults = {"aspectRatio": "16:9", "model": "veo3_fast"}
    option_choices = {"aspectRatio": ("16:9", "9:16", "Auto"), "model": ("veo3", "veo3_fast")}
    passthrough_options = ("imageUrls", "seeds")

    def create_task(self, prompt: str, options: dict) -> str:
        payload = {"prompt": prompt, **options}
        return self._task_id(self._post("/api/v1/veo/generate", payload))

    def query_task(self, task_id: str) -> SuccessFlagStatus:
        data = self._get("/api/v1/veo/record-info", {"taskId": task_id})
        return SuccessFlagStatus(
            provider_id=self.provider_id,
            task_id=str(data.get("taskId") or task_id),
            success_flag=_flag(data.get("successFlag")),
            result_urls=_urls(data.get("response")),
            error_code=_str_or_none(data.get("errorCode")),
            error_message=data.get("errorMessage"),
            raw=data,
        )


class JobsAdapter(KieAdapter):
    """
    Generic jobs endpoint: {"model": ..., "input": {...}} in, named state out.

    `wire_keys` maps option names to the snake_case input fields.
    """

    job_model: str = ""
    wire_keys: Dict[str, str] = {}

    def create_task(self, prompt: str, options: dict) -> str:
        job_input = {"prompt": prompt}
        for key, value in options.items():
            job_input[self.wire_keys.get(key, key)] = value
        payload = {"model": self.job_model, "input": job_input}
        return self._task_id(self._post("/api/v1/jobs/createTask", payload))

    def query_task(self, task_id: str) -> JobStateStatus:
        data = self._get("/api/v1/jobs/recordInfo", {"taskId": task_id})
        return JobStateStatus(
            provider_id=self.provider_id,
            task_id=str(data.get("taskId") or task_id),
            state=data.get("state"),
            result_json=data.get("resultJson"),
            fail_code=_str_or_none(data.get("failCode")),
            fail_msg=data.get("failMsg"),
            raw=data,
        )


class SoraAdapter(JobsAdapter):
    provider_id = ProviderId.SORA
    job_model = "sora-2-text-to-video"
    option_defaults = {"aspect_ratio": "landscape", "n_frames": "10", "remove_watermark": True}
    option_choices = {"aspect_ratio": ("landscape", "portrait"), "n_frames": ("10", "15")}


class IdeogramAdapter(JobsAdapter):
    provider_id = ProviderId.IDEOGRAM
    job_model = "ideogram/v3-text-to-image"
    option_defaults = {
        "renderingSpeed": "BALANCED",
        "style": "AUTO",
        "expandPrompt": True,
        "imageSize": "square_hd",
        "numImages": "1",
    }
    option_choices = {
        "renderingSpeed": ("TURBO", "BALANCED", "QUALITY"),
        "style": ("AUTO", "GENERAL", "REALISTIC", "DESIGN"),
        "imageSize": IMAGE_SIZES,
        "numImages": ("1", "2", "3", "4"),
    }
    passthrough_options = ("seed", "negativePrompt")
    wire_keys = {
        "renderingSpeed": "rendering_speed",
        "expandPrompt": "expand_prompt",
        "imageSize": "image_size",
        "numImages": "num_images",
        "negativePrompt": "negative_prompt",
    }


class QwenAdapter(JobsAdapter):
    provider_id = ProviderId.QWEN
    job_model = "qwen/text-to-image"
    option_defaults = {
        "imageSize": "square_hd",
        "numInferenceSteps": 30,
        "guidanceScale": 2.5,
        "enableSafetyChecker": True,
        "outputFormat": "png",
        "acceleration": "none",
    }
    option_choices = {
        "imageSize": IMAGE_SIZES,
        "outputFormat": ("png", "jpeg"),
        "acceleration": ("none", "regular", "high"),
    }
    option_ranges = {"numInferenceSteps": (2, 250), "guidanceScale": (0.0, 20.0)}
    passthrough_options = ("seed", "negativePrompt")
    wire_keys = {
        "imageSize": "image_size",
        "numInferenceSteps": "num_inference_steps",
        "guidanceScale": "guidance_scale",
        "enableSafetyChecker": "enable_safety_checker",
        "outputFormat": "output_format",
        "negativePrompt": "negative_prompt",
    }


class MockAdapter(ProviderAdapter):
    """
    In-process provider for dry runs and tests.

    Tasks report "generating" for `polls_until_done` queries, then succeed
    (or fail when `fail` is set).
    """

    provider_id = ProviderId.MOCK
    passthrough_options = ("size",)

    def __init__(self, polls_until_done: int = 1, fail: bool = False, result_urls: Optional[list] = None):
        self.polls_until_done = polls_until_done
        self.fail = fail
        self.result_urls = result_urls or ["https://example.invalid/mock.png"]
        self.created: list[tuple[str, str, dict]] = []
        self._polls: dict[str, int] = {}
        self._lock = threading.Lock()

    def create_task(self, prompt: str, options: dict) -> str:
        task_id = f"mock-{uuid.uuid4().hex[:12]}"
        with self._lock:
            self.created.append((task_id, prompt, dict(options)))
            self._polls[task_id] = 0
        return task_id

    def query_task(self, task_id: str) -> JobStateStatus:
        with self._lock:
            polls = self._polls.get(task_id, 0) + 1
            self._polls[task_id] = polls
        if polls <= self.polls_until_done:
            return JobStateStatus(self.provider_id, task_id, state="generating")
        if self.fail:
            return JobStateStatus(self.provider_id, task_id, state="fail", fail_code="500", fail_msg="mock failure")
        return JobStateStatus(
            self.provider_id,
            task_id,
            state="success",
            result_json=json.dumps({"resultUrls": self.result_urls}),
        )


def _str_or_none(value: Any) -> Optional[str]:
    return None if value is None or value == "" else str(value)


def build_adapters(
    api_key: Optional[str] = None,
    base_url: str = "https://api.kie.ai",
    client: Optional[httpx.Client] = None,
    timeout: float = 30.0,
    callback_url: Optional[str] = None,
) -> Dict[ProviderId, ProviderAdapter]:
    """Create the production adapter set sharing one HTTP client."""
    client = client or httpx.Client()
    kwargs = dict(api_key=api_key, base_url=base_url, client=client, timeout=timeout, callback_url=callback_url)
    adapters = [
        GPT4oImageAdapter(**kwargs),
        IdeogramAdapter(**kwargs),
        QwenAdapter(**kwargs),
        SoraAdapter(**kwargs),
        VeoAdapter(**kwargs),
    ]
    return {adapter.provider_id: adapter for adapter in adapters}
