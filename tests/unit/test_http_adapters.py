"""
Tests for the HTTP adapters with the network layer replaced.
"""

import base64

import pytest

from canvas_studio.adapters.base import (
    AdapterRequest,
    AuthenticationError,
    GenerationError,
    ProviderConfig,
    RateLimitError,
)
from canvas_studio.adapters import gemini
from canvas_studio.adapters.gemini import REMOVE_BG_PROMPT, GeminiAdapter
from canvas_studio.adapters.runninghub import RunningHubAdapter
from canvas_studio.config import Settings
from canvas_studio.core.errors import Cancelled, MissingInput
from canvas_studio.core.execution import ExecutionContext
from canvas_studio.core.node_types import NodeKind
from canvas_studio.core.resolver import ResolvedInputs
from canvas_studio.core.task_queue import AbortSignal

PNG_B64 = base64.b64encode(b"\x89PNG fake").decode()
REF_IMAGE = f"data:image/png;base64,{PNG_B64}"


def _image_response():
    return {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": PNG_B64}}]}}]}


def _text_response(*texts):
    return {"candidates": [{"content": {"parts": [{"text": t} for t in texts]}}]}


def _request(kind, primary=None, ports=None, **fields):
    return AdapterRequest(
        node_id="n1",
        kind=kind,
        inputs=ResolvedInputs(primary=primary, ports=ports or {}),
        fields=fields,
    )


class FakeGemini(GeminiAdapter):
    """Gemini adapter answering from a list of canned responses."""

    def __init__(self, responses):
        super().__init__(ProviderConfig(api_key="test-key"))
        self.responses = list(responses)
        self.requests = []

    async def _post(self, url, body):
        self.requests.append((url, body))
        return self.responses.pop(0)


class FakeRunningHub(RunningHubAdapter):
    """RunningHub adapter answering from a list of canned responses."""

    def __init__(self, responses):
        super().__init__(ProviderConfig(api_key="rh-key"))
        self.responses = list(responses)
        self.requests = []

    async def _post(self, session, path, body):
        self.requests.append((path, body))
        return self.responses.pop(0)


class FakeResponse:
    """Response whose JSON body is fixed."""

    def __init__(self, status, payload):
        self.status = status
        self.payload = payload

    async def json(self, content_type="application/json"):
        return self.payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Session returning the same response for every POST."""

    def __init__(self, response):
        self.response = response
        self.posts = []

    def post(self, url, **kwargs):
        self.posts.append(url)
        return self.response

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class TestGeminiAdapter:
    """Tests for GeminiAdapter request building and parsing."""

    @pytest.mark.asyncio
    async def test_text_to_image(self):
        adapter = FakeGemini([_image_response()])
        request = _request(NodeKind.IMAGE, ports={"prompt": "a cat"}, aspect_ratio="AUTO", resolution="4K")

        result = await adapter.execute(request, ExecutionContext("n1"))

        assert result.content == REF_IMAGE
        url, body = adapter.requests[0]
        assert url.endswith("gemini-3-pro-image-preview:generateContent")
        assert body["generationConfig"]["imageConfig"] == {"aspectRatio": "1:1", "imageSize": "4K"}
        assert body["contents"][0]["parts"] == [{"text": "a cat"}]

    @pytest.mark.asyncio
    async def test_image_without_prompt_passes_through(self):
        adapter = FakeGemini([])
        result = await adapter.execute(_request(NodeKind.IMAGE, "cat.png"), ExecutionContext("n1"))
        assert result.content == "cat.png"
        assert adapter.requests == []

    @pytest.mark.asyncio
    async def test_image_without_anything(self):
        with pytest.raises(MissingInput):
            await FakeGemini([]).execute(_request(NodeKind.IMAGE), ExecutionContext("n1"))

    @pytest.mark.asyncio
    async def test_edit_sends_reference_images(self):
        adapter = FakeGemini([_image_response()])
        request = _request(
            NodeKind.EDIT, [REF_IMAGE], ports={"prompt": "make it blue"},
            aspect_ratio="AUTO", resolution="AUTO",
        )

        result = await adapter.execute(request, ExecutionContext("n1"))

        assert result.output == REF_IMAGE
        _, body = adapter.requests[0]
        parts = body["contents"][0]["parts"]
        assert parts[0]["inlineData"] == {"mimeType": "image/png", "data": PNG_B64}
        assert parts[1] == {"text": "make it blue"}
        assert "imageConfig" not in body["generationConfig"]

    @pytest.mark.asyncio
    async def test_remove_bg_prompt(self):
        adapter = FakeGemini([_image_response()])
        await adapter.execute(_request(NodeKind.REMOVE_BG, REF_IMAGE), ExecutionContext("n1"))
        _, body = adapter.requests[0]
        assert body["contents"][0]["parts"][-1] == {"text": REMOVE_BG_PROMPT}

    @pytest.mark.asyncio
    async def test_llm(self):
        adapter = FakeGemini([_text_response("hel", "lo")])
        request = _request(NodeKind.LLM, "say hello", system_instruction="Be brief.")

        result = await adapter.execute(request, ExecutionContext("n1"))

        assert result.output == "hello"
        url, body = adapter.requests[0]
        assert url.endswith("gemini-2.5-pro:generateContent")
        assert body["systemInstruction"]["parts"][0]["text"] == "Be brief."

    @pytest.mark.asyncio
    async def test_bp_runs_agents_then_renders(self):
        template = {
            "id": 1,
            "title": "Shot",
            "prompt": "A /product in {scene}",
            "bpFields": [
                {"id": "a", "name": "product", "type": "input"},
                {"id": "b", "name": "scene", "type": "agent", "agentConfig": {"instruction": "Scene for /product"}},
            ],
        }
        adapter = FakeGemini([_text_response("a forest"), _image_response()])
        request = _request(NodeKind.BP, template=template, bp_inputs={"product": "mug"})

        result = await adapter.execute(request, ExecutionContext("n1"))

        assert result.output == REF_IMAGE
        assert result.fields["rendered_prompt"] == "A mug in a forest"
        agent_body = adapter.requests[0][1]
        assert agent_body["contents"][0]["parts"][-1] == {"text": "Scene for mug"}

    @pytest.mark.asyncio
    async def test_blocked_response(self):
        adapter = FakeGemini([{"promptFeedback": {"blockReason": "SAFETY"}}])
        with pytest.raises(GenerationError, match="SAFETY"):
            await adapter.execute(_request(NodeKind.IDEA, "a cat"), ExecutionContext("n1"))

    @pytest.mark.asyncio
    async def test_aborted_before_request(self):
        adapter = FakeGemini([_image_response()])
        signal = AbortSignal()
        signal.abort()
        with pytest.raises(Cancelled):
            await adapter.execute(_request(NodeKind.IDEA, "a cat"), ExecutionContext("n1", signal))
        assert adapter.requests == []

    @pytest.mark.asyncio
    async def test_null_json_body(self, monkeypatch):
        session = FakeSession(FakeResponse(200, None))
        monkeypatch.setattr(gemini.aiohttp, "ClientSession", lambda: session)
        adapter = GeminiAdapter(ProviderConfig(api_key="test-key"))

        with pytest.raises(GenerationError, match="No image"):
            await adapter.execute(_request(NodeKind.IMAGE, ports={"prompt": "a cat"}), ExecutionContext("n1"))
        assert len(session.posts) == 1

    def test_check_error(self):
        adapter = GeminiAdapter(ProviderConfig(api_key="k"))
        with pytest.raises(AuthenticationError):
            adapter._check_error(403, {})
        with pytest.raises(RateLimitError) as exc:
            adapter._check_error(429, {})
        assert exc.value.retry_after == 60
        with pytest.raises(GenerationError, match="quota"):
            adapter._check_error(500, {"error": {"message": "quota"}})
        adapter._check_error(200, {})

    def test_requires_api_key(self):
        with pytest.raises(AuthenticationError):
            GeminiAdapter(ProviderConfig()).require_api_key()


class TestRunningHubAdapter:
    """Tests for RunningHubAdapter submission and polling."""

    NODE_INFO = [
        {"nodeId": "3", "fieldName": "prompt", "fieldType": "STRING", "fieldValue": "default"},
        {"nodeId": "5", "fieldName": "image", "fieldType": "IMAGE"},
    ]

    def _context(self, signal=None):
        return ExecutionContext("n1", signal, Settings(poll_interval=0.01))

    @pytest.mark.asyncio
    async def test_submit_and_poll(self):
        adapter = FakeRunningHub([
            {"code": 0, "data": {"taskId": 99}},
            {"code": 813},
            {"code": 804},
            {"code": 0, "data": [{"fileUrl": "https://x/1.png"}, {"fileUrl": "https://x/2.png"}]},
        ])
        request = _request(
            NodeKind.RUNNINGHUB,
            ports={"3_prompt": "a cat", "5_image": "api/abc.png"},
            webapp_id="123",
            node_info_list=self.NODE_INFO,
        )

        result = await adapter.execute(request, self._context())

        assert result.content == "https://x/1.png"
        assert result.fields["outputs"] == ["https://x/1.png", "https://x/2.png"]
        path, body = adapter.requests[0]
        assert path == "/task/openapi/ai-app/run"
        assert body["webappId"] == "123"
        assert body["nodeInfoList"] == [
            {"nodeId": "3", "fieldName": "prompt", "fieldValue": "a cat"},
            {"nodeId": "5", "fieldName": "image", "fieldValue": "api/abc.png"},
        ]
        assert [p for p, _ in adapter.requests[1:]] == ["/task/openapi/outputs"] * 3

    @pytest.mark.asyncio
    async def test_task_failed(self):
        adapter = FakeRunningHub([
            {"code": 0, "data": {"taskId": 1}},
            {"code": 805, "data": {"failedReason": "out of memory"}},
        ])
        request = _request(NodeKind.RUNNINGHUB, webapp_id="1")
        with pytest.raises(GenerationError, match="out of memory"):
            await adapter.execute(request, self._context())

    @pytest.mark.asyncio
    async def test_submit_rejected(self):
        adapter = FakeRunningHub([{"code": 1, "msg": "bad app"}])
        with pytest.raises(GenerationError, match="bad app"):
            await adapter.execute(_request(NodeKind.RUNNINGHUB, webapp_id="1"), self._context())

    @pytest.mark.asyncio
    async def test_abort_while_polling(self):
        signal = AbortSignal()
        adapter = FakeRunningHub([{"code": 0, "data": {"taskId": 1}}] + [{"code": 804}] * 100)
        context = self._context(signal)

        def abort_when_running(message, fraction=None):
            if message == "Running":
                signal.abort()

        context.report_progress = abort_when_running

        with pytest.raises(Cancelled):
            await adapter.execute(_request(NodeKind.RUNNINGHUB, webapp_id="1"), context)
        assert len(adapter.requests) == 2

    @pytest.mark.asyncio
    async def test_missing_app_id(self):
        with pytest.raises(GenerationError):
            await FakeRunningHub([]).execute(_request(NodeKind.RUNNINGHUB), self._context())

    def test_needs_upload(self):
        adapter = RunningHubAdapter(ProviderConfig(api_key="k"))
        assert adapter._needs_upload(REF_IMAGE)
        assert adapter._needs_upload("https://x/cat.png")
        assert not adapter._needs_upload("api/abc.png")
        assert not adapter._needs_upload(None)

    @pytest.mark.asyncio
    async def test_null_json_body(self):
        adapter = RunningHubAdapter(ProviderConfig(api_key="rh-key"))
        session = FakeSession(FakeResponse(200, None))

        assert await adapter._post(session, "/task/openapi/outputs", {}) == {}
        with pytest.raises(GenerationError, match="Failed to start task"):
            await adapter._submit(session, "rh-key", "1", [])

    @pytest.mark.asyncio
    async def test_null_json_body_on_error_status(self):
        adapter = RunningHubAdapter(ProviderConfig(api_key="rh-key"))
        session = FakeSession(FakeResponse(500, None))

        with pytest.raises(GenerationError, match=r"\(500\): Unknown error"):
            await adapter._post(session, "/task/openapi/ai-app/run", {})
