"""
RunningHub Adapter - Run external AI applications.

Serves runninghub nodes. One run:
1. Upload every image/video parameter that isn't already a RunningHub file
2. POST /task/openapi/ai-app/run with the app id and its nodeInfoList
3. Poll /task/openapi/outputs until the task succeeds or fails

Note: RunningHub reports task state through the `code` field:
0 = success, 804 = running, 813 = queued, 805 = failed.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, TYPE_CHECKING

import aiohttp

from canvas_studio.adapters.base import (
    AdapterRequest,
    AdapterResult,
    AuthenticationError,
    GenerationError,
    HTTPAdapter,
    ProviderConfig,
    RateLimitError,
)
from canvas_studio.adapters.imaging import guess_mime_type, load_image_bytes
from canvas_studio.core.node_types import NodeKind

if TYPE_CHECKING:
    from canvas_studio.core.execution import ExecutionContext

logger = logging.getLogger(__name__)

CODE_SUCCESS = 0
CODE_RUNNING = 804
CODE_FAILED = 805
CODE_QUEUED = 813

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_TIMEOUT = 600.0

FILE_FIELD_TYPES = {"IMAGE", "VIDEO", "AUDIO"}


class RunningHubAdapter(HTTPAdapter):
    """
    RunningHub AI-app adapter.

    Uses async polling; polls honour the run's abort signal and give up
    after config.extra["timeout"] seconds.
    """

    id = "runninghub"
    name = "RunningHub"
    base_url = "https://www.runninghub.cn"
    kinds = (NodeKind.RUNNINGHUB,)

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self.timeout = float(config.extra.get("timeout", DEFAULT_TIMEOUT))

    async def execute(self, request: AdapterRequest, context: ExecutionContext) -> AdapterResult:
        webapp_id = request.field("webapp_id")
        if not webapp_id:
            raise GenerationError("RunningHub node has no app id")
        api_key = self.require_api_key()

        interval = DEFAULT_POLL_INTERVAL
        if context.settings is not None:
            interval = context.settings.poll_interval

        async with aiohttp.ClientSession() as session:
            node_info_list = await self._build_node_info(session, request, context)
            context.check_cancelled()

            task_id = await self._submit(session, api_key, webapp_id, node_info_list)
            logger.info("RunningHub task %s started for app %s", task_id, webapp_id)
            context.report_progress("Queued")

            outputs = await self._poll_outputs(session, api_key, task_id, interval, context)

        urls = [o.get("fileUrl") for o in outputs if o.get("fileUrl")]
        if not urls:
            raise GenerationError("No outputs in RunningHub response")
        return AdapterResult(content=urls[0], fields={"outputs": urls})

    async def _build_node_info(
        self,
        session: aiohttp.ClientSession,
        request: AdapterRequest,
        context: ExecutionContext,
    ) -> list[dict[str, Any]]:
        node_info_list = []
        for info in request.fields.get("node_info_list") or []:
            key = f"{info.get('nodeId')}_{info.get('fieldName')}"
            value = request.inputs.get(key, info.get("fieldValue"))
            field_type = str(info.get("fieldType", "")).upper()

            if field_type in FILE_FIELD_TYPES and value and self._needs_upload(value):
                context.check_cancelled()
                value = await self.upload(session, value)

            node_info_list.append({
                "nodeId": info.get("nodeId"),
                "fieldName": info.get("fieldName"),
                "fieldValue": "" if value is None else value,
            })
        return node_info_list

    def _needs_upload(self, value: Any) -> bool:
        # Already-uploaded RunningHub files are referenced by bare name
        if not isinstance(value, str):
            return False
        return value.startswith(("data:", "http://", "https://", "/", "~")) or Path(value).exists()

    async def upload(self, session: aiohttp.ClientSession, ref: str) -> str:
        """Upload a file reference; returns RunningHub's file name."""
        mime_type, data = await load_image_bytes(ref, session)
        extension = mime_type.split("/")[-1].replace("jpeg", "jpg")

        form = aiohttp.FormData()
        form.add_field("apiKey", self.require_api_key())
        form.add_field("fileType", "input")
        form.add_field(
            "file",
            data,
            filename=f"upload.{extension}",
            content_type=mime_type or guess_mime_type(ref),
        )

        async with session.post(f"{self.base_url}/task/openapi/upload", data=form) as resp:
            result = await resp.json(content_type=None) or {}
            self._check_error(resp.status, result)

        if result.get("code") != CODE_SUCCESS:
            raise GenerationError(f"RunningHub upload failed: {result.get('msg', 'Unknown error')}")
        file_name = (result.get("data") or {}).get("fileName")
        if not file_name:
            raise GenerationError("No file name in RunningHub upload response")
        return file_name

    async def _submit(
        self,
        session: aiohttp.ClientSession,
        api_key: str,
        webapp_id: str,
        node_info_list: list[dict[str, Any]],
    ) -> str:
        body = {"apiKey": api_key, "webappId": webapp_id, "nodeInfoList": node_info_list}
        data = await self._post(session, "/task/openapi/ai-app/run", body)
        if data.get("code") != CODE_SUCCESS:
            raise GenerationError(f"RunningHub error: {data.get('msg', 'Failed to start task')}")
        task_id = (data.get("data") or {}).get("taskId")
        if not task_id:
            raise GenerationError("No task ID in RunningHub response")
        return str(task_id)

    async def _poll_outputs(
        self,
        session: aiohttp.ClientSession,
        api_key: str,
        task_id: str,
        interval: float,
        context: ExecutionContext,
    ) -> list[dict[str, Any]]:
        """Poll for task outputs until success, failure, abort or timeout."""
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            context.check_cancelled()
            if loop.time() - start_time > self.timeout:
                raise GenerationError("RunningHub task timed out")

            data = await self._post(
                session, "/task/openapi/outputs", {"apiKey": api_key, "taskId": task_id}
            )
            code = data.get("code")

            if code == CODE_SUCCESS:
                return data.get("data") or []
            elif code == CODE_FAILED:
                reason = (data.get("data") or {}).get("failedReason") or data.get("msg", "Unknown")
                raise GenerationError(f"RunningHub task failed: {reason}")
            elif code in (CODE_RUNNING, CODE_QUEUED):
                context.report_progress("Running" if code == CODE_RUNNING else "Queued")
                await self._sleep(interval, context)
            else:
                raise GenerationError(f"RunningHub error: {data.get('msg', f'code {code}')}")

    async def _sleep(self, interval: float, context: ExecutionContext) -> None:
        """Sleep between polls, waking early if the run is aborted."""
        try:
            await asyncio.wait_for(context.signal.wait(), timeout=interval)
        except asyncio.TimeoutError:
            return
        context.check_cancelled()

    async def _post(self, session: aiohttp.ClientSession, path: str, body: dict) -> dict:
        async with session.post(
            f"{self.base_url}{path}",
            json=body,
            headers={"Content-Type": "application/json"},
        ) as resp:
            data = await resp.json(content_type=None) or {}
            self._check_error(resp.status, data)
            return data

    def _check_error(self, status: int, data: dict) -> None:
        """Check for API errors."""
        if status == 401 or status == 403:
            raise AuthenticationError("Invalid RunningHub API key")
        elif status == 429:
            error = RateLimitError("RunningHub rate limit exceeded")
            error.retry_after = 60
            raise error
        elif status >= 400:
            raise GenerationError(f"RunningHub error ({status}): {data.get('msg', 'Unknown error')}")
