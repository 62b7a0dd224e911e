"""Tests for provider adapters."""

import json

import httpx
import pytest

from payper.errors import InvalidOptions, ProviderUnavailable, TaskNotFound
from payper.providers import (
    GPT4oImageAdapter,
    IdeogramAdapter,
    MockAdapter,
    QwenAdapter,
    SoraAdapter,
    VeoAdapter,
    build_adapters,
)
from payper.schemas import JobStateStatus, ProviderId, StatusFlagStatus, SuccessFlagStatus


class Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, status=200, body=None):
        self.status = status
        self.body = body if body is not None else {"code": 200, "msg": "success", "data": {"taskId": "task-1"}}
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return httpx.Response(self.status, json=self.body)

    @property
    def last_json(self):
        return json.loads(self.requests[-1].content)


def client_for(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestPrepareOptions:
    """Test option defaults and validation."""

    def test_defaults_applied(self):
        adapter = GPT4oImageAdapter(client=client_for(Recorder()))
        assert adapter.prepare_options(None) == {"size": "1:1", "nVariants": 1}

    def test_choice_matched_as_string(self):
        """Form-encoded clients send numbers as strings."""
        adapter = GPT4oImageAdapter(client=client_for(Recorder()))
        assert adapter.prepare_options({"nVariants": "4"})["nVariants"] == 4

    def test_invalid_choice(self):
        adapter = GPT4oImageAdapter(client=client_for(Recorder()))
        with pytest.raises(InvalidOptions, match="size"):
            adapter.prepare_options({"size": "16:9"})

    def test_range_checked(self):
        adapter = QwenAdapter(client=client_for(Recorder()))
        assert adapter.prepare_options({"numInferenceSteps": "40"})["numInferenceSteps"] == 40
        with pytest.raises(InvalidOptions):
            adapter.prepare_options({"guidanceScale": 25})
        with pytest.raises(InvalidOptions):
            adapter.prepare_options({"numInferenceSteps": "many"})

    def test_unknown_options_dropped(self):
        adapter = VeoAdapter(client=client_for(Recorder()))
        prepared = adapter.prepare_options({"imageUrls": ["https://x/y.png"], "bogus": 1})
        assert "bogus" not in prepared
        assert prepared["imageUrls"] == ["https://x/y.png"]


class TestKieAdapters:
    """Test request shapes and response parsing against a mock transport."""

    def test_gpt4o_create(self):
        recorder = Recorder()
        adapter = GPT4oImageAdapter(api_key="secret", base_url="https://kie.test", client=client_for(recorder))

        task_id = adapter.create_task("a fox", adapter.prepare_options({}))

        assert task_id == "task-1"
        request = recorder.requests[0]
        assert request.url.path == "/api/v1/gpt4o-image/generate"
        assert request.headers["Authorization"] == "Bearer secret"
        assert recorder.last_json == {"prompt": "a fox", "size": "1:1", "nVariants": 1}

    def test_callback_url_included(self):
        recorder = Recorder()
        adapter = VeoAdapter(client=client_for(recorder), callback_url="https://me.test/cb")
        adapter.create_task("waves", adapter.prepare_options({}))
        assert recorder.last_json["callBackUrl"] == "https://me.test/cb"

    def test_gpt4o_query(self):
        recorder = Recorder(body={
            "code": 200,
            "data": {
                "taskId": "task-1",
                "status": "SUCCESS",
                "successFlag": 1,
                "progress": "1.00",
                "response": {"resultUrls": ["https://cdn/a.png"]},
            },
        })
        raw = GPT4oImageAdapter(client=client_for(recorder)).query_task("task-1")

        assert isinstance(raw, StatusFlagStatus)
        assert raw.status == "SUCCESS"
        assert raw.success_flag == 1
        assert raw.result_urls == ("https://cdn/a.png",)
        assert recorder.requests[0].url.params["taskId"] == "task-1"

    def test_veo_query(self):
        recorder = Recorder(body={
            "code": 200,
            "data": {"taskId": "task-1", "successFlag": "2", "errorCode": 400, "errorMessage": "blocked"},
        })
        raw = VeoAdapter(client=client_for(recorder)).query_task("task-1")

        assert isinstance(raw, SuccessFlagStatus)
        assert raw.success_flag == 2
        assert raw.error_code == "400"
        assert recorder.requests[0].url.path == "/api/v1/veo/record-info"

    def test_jobs_create_maps_wire_keys(self):
        recorder = Recorder()
        adapter = IdeogramAdapter(client=client_for(recorder))
        adapter.create_task("a poster", adapter.prepare_options({"renderingSpeed": "TURBO"}))

        body = recorder.last_json
        assert recorder.requests[0].url.path == "/api/v1/jobs/createTask"
        assert body["model"] == "ideogram/v3-text-to-image"
        assert body["input"]["prompt"] == "a poster"
        assert body["input"]["rendering_speed"] == "TURBO"
        assert body["input"]["image_size"] == "square_hd"

    def test_sora_defaults(self):
        recorder = Recorder()
        adapter = SoraAdapter(client=client_for(recorder))
        adapter.create_task("a cat", adapter.prepare_options({"aspect_ratio": "portrait"}))
        job_input = recorder.last_json["input"]
        assert job_input["aspect_ratio"] == "portrait"
        assert job_input["n_frames"] == "10"
        assert job_input["remove_watermark"] is True

    def test_jobs_query(self):
        recorder = Recorder(body={
            "code": 200,
            "data": {"taskId": "task-1", "state": "success", "resultJson": '{"resultUrls": ["u"]}'},
        })
        raw = QwenAdapter(client=client_for(recorder)).query_task("task-1")
        assert isinstance(raw, JobStateStatus)
        assert raw.state == "success"
        assert recorder.requests[0].url.path == "/api/v1/jobs/recordInfo"

    def test_envelope_rejection_is_invalid_options(self):
        """HTTP 200 with code 422 while creating is a bad request, not an outage."""
        recorder = Recorder(body={"code": 422, "msg": "prompt rejected", "data": None})
        adapter = GPT4oImageAdapter(client=client_for(recorder))
        with pytest.raises(InvalidOptions, match="prompt rejected"):
            adapter.create_task("x", {})

    def test_unknown_task_query_is_not_found(self):
        recorder = Recorder(body={"code": 422, "msg": "recordInfo is null", "data": None})
        adapter = QwenAdapter(client=client_for(recorder))
        with pytest.raises(TaskNotFound) as exc_info:
            adapter.query_task("bogus")
        assert exc_info.value.task_id == "bogus"

    def test_server_error_is_unavailable(self):
        adapter = SoraAdapter(client=client_for(Recorder(status=500, body={"msg": "boom"})))
        with pytest.raises(ProviderUnavailable):
            adapter.create_task("x", {})

    def test_transport_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        adapter = VeoAdapter(client=client_for(handler))
        with pytest.raises(ProviderUnavailable, match="request failed"):
            adapter.query_task("task-1")

    def test_missing_task_id(self):
        adapter = VeoAdapter(client=client_for(Recorder(body={"code": 200, "data": {}})))
        with pytest.raises(ProviderUnavailable, match="no taskId"):
            adapter.create_task("x", {})


class TestMockAdapter:
    """Test the in-process provider."""

    def test_lifecycle(self):
        adapter = MockAdapter(polls_until_done=2)
        task_id = adapter.create_task("x", {})

        assert adapter.query_task(task_id).state == "generating"
        assert adapter.query_task(task_id).state == "generating"
        done = adapter.query_task(task_id)
        assert done.state == "success"
        assert "resultUrls" in json.loads(done.result_json)

    def test_failure(self):
        adapter = MockAdapter(polls_until_done=0, fail=True)
        raw = adapter.query_task(adapter.create_task("x", {}))
        assert raw.state == "fail"
        assert raw.fail_msg == "mock failure"


def test_build_adapters_covers_every_remote_provider():
    adapters = build_adapters(client=client_for(Recorder()))
    assert set(adapters) == {p for p in ProviderId if p != ProviderId.MOCK}
