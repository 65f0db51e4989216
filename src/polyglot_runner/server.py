"""HTTP and WebSocket transport for the execution core.

Run with `python -m pgr serve` or
`uvicorn polyglot_runner.server:create_app --factory`.
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import iterate_in_threadpool, run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .execution.capabilities import toolchain_report
from .execution.types import ExecutionOutcome, ExecutionRequest, FailureKind, OutputEvent
from .policy import RunnerPolicy
from .runner import INTERNAL_ERROR_MESSAGE, Orchestrator
from .snippets import InMemorySnippetStore, SnippetStore
from .templates import starter_template

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "POLYGLOT_RUNNER_CONFIG"
REQUIRED_FIELDS_MESSAGE = "Language and code are required"
INVALID_STREAM_MESSAGE = "Invalid request: expected a JSON object with 'language' and 'code'"

router = APIRouter()


class ExecuteBody(BaseModel):
    language: str | None = None
    code: str | None = None


class ShareBody(BaseModel):
    language: str
    code: str


def get_orchestrator(request: Request) -> Orchestrator:
    """Return the orchestrator owned by the running app.

    Example:
        ```python
        orchestrator: Orchestrator = Depends(get_orchestrator)
        ```
    """
    return request.app.state.orchestrator


def get_snippets(request: Request) -> SnippetStore:
    """Return the snippet store owned by the running app.

    Example:
        ```python
        store: SnippetStore = Depends(get_snippets)
        ```
    """
    return request.app.state.snippets


def _failure(status_code: int, message: str) -> JSONResponse:
    """Build a `{success: false, error}` response.

    Example:
        ```python
        _failure(400, "Empty code provided")
        ```
    """
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


@router.post("/api/execute")
def execute(body: ExecuteBody, orchestrator: Orchestrator = Depends(get_orchestrator)) -> JSONResponse:
    """Buffered mode: run the snippet and answer once it is done.

    Example:
        ```python
        client.post("/api/execute", json={"language": "python", "code": "print(1)"})
        ```
    """
    if not body.language or body.code is None:
        return _failure(400, REQUIRED_FIELDS_MESSAGE)
    try:
        outcome = orchestrator.execute(
            ExecutionRequest(language=body.language, source_code=body.code)
        )
    except Exception:
        logger.exception("Unhandled error while executing a %s request", body.language)
        return _failure(500, INTERNAL_ERROR_MESSAGE)

    if outcome.failure_kind is FailureKind.INTERNAL_ERROR:
        return _failure(500, INTERNAL_ERROR_MESSAGE)
    if outcome.failure_kind is not None and outcome.failure_kind.is_rejection:
        return _failure(400, outcome.stderr)
    return JSONResponse(outcome.to_response())


def _parse_stream_request(raw: str) -> ExecutionRequest | None:
    """Decode one client message, or return None when it is malformed.

    Example:
        ```python
        _parse_stream_request('{"language": "python", "code": "print(1)"}')
        ```
    """
    try:
        payload = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    language = payload.get("language")
    code = payload.get("code")
    if not isinstance(language, str) or not isinstance(code, str):
        return None
    return ExecutionRequest(language=language, source_code=code)


def _malformed_events() -> list[OutputEvent]:
    """Return the `start`, `error`, `complete` reply to a malformed message.

    Example:
        ```python
        [event.to_message() for event in _malformed_events()]
        ```
    """
    return [
        OutputEvent.start(),
        OutputEvent.error(INVALID_STREAM_MESSAGE),
        OutputEvent.complete(ExecutionOutcome(success=False, stderr=INVALID_STREAM_MESSAGE)),
    ]


@router.websocket("/ws/execute")
async def execute_stream(websocket: WebSocket) -> None:
    """Streaming mode: one `start ... complete` sequence per client message.

    Example:
        ```python
        with client.websocket_connect("/ws/execute") as ws:
            ws.send_json({"language": "python", "code": "print(1)"})
        ```
    """
    await websocket.accept()
    orchestrator: Orchestrator = websocket.app.state.orchestrator
    try:
        while True:
            raw = await websocket.receive_text()
            request = _parse_stream_request(raw)
            if request is None:
                for event in _malformed_events():
                    await websocket.send_json(event.to_message())
                continue
            events = orchestrator.stream(request)
            try:
                async for event in iterate_in_threadpool(events):
                    await websocket.send_json(event.to_message())
            finally:
                # Kills the child and removes the workspace if the client left mid-run.
                await run_in_threadpool(events.close)
    except WebSocketDisconnect:
        logger.debug("Streaming client disconnected")


@router.get("/api/languages")
def languages(orchestrator: Orchestrator = Depends(get_orchestrator)) -> list[dict[str, Any]]:
    """List languages with their templates and toolchain availability.

    Example:
        ```python
        client.get("/api/languages").json()[0]["id"]  # "python"
        ```
    """
    descriptors = orchestrator.descriptors
    out: list[dict[str, Any]] = []
    for caps in toolchain_report(descriptors, orchestrator.policy.search_path):
        descriptor = descriptors[caps.language]
        out.append(
            {
                "id": caps.language.value,
                "name": descriptor.display_name,
                "extension": descriptor.source_extension,
                "compiled": descriptor.compile_required,
                "available": caps.available,
                "template": starter_template(caps.language),
            }
        )
    return out


@router.post("/api/snippets", status_code=201, response_model=None)
def share_snippet(body: ShareBody, store: SnippetStore = Depends(get_snippets)) -> dict[str, str] | JSONResponse:
    """Store a snippet and return its share id.

    Example:
        ```python
        client.post("/api/snippets", json={"language": "c", "code": source})
        ```
    """
    try:
        share_id = store.put(body.language, body.code)
    except ValueError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    return {"shareId": share_id}


@router.get("/api/snippets/{share_id}", response_model=None)
def load_snippet(share_id: str, store: SnippetStore = Depends(get_snippets)) -> dict[str, str] | JSONResponse:
    """Return a stored snippet, or 404.

    Example:
        ```python
        client.get("/api/snippets/k3x9a0qz")
        ```
    """
    snippet = store.get(share_id)
    if snippet is None:
        return JSONResponse({"error": "Snippet not found"}, status_code=404)
    return {"language": snippet.language, "code": snippet.code}


async def _invalid_body(request: Request, exc: Exception) -> JSONResponse:
    """Answer unparseable request bodies with the missing-fields error.

    Example:
        ```python
        app.add_exception_handler(RequestValidationError, _invalid_body)
        ```
    """
    logger.debug("Rejected malformed body for %s: %s", request.url.path, exc)
    return _failure(400, REQUIRED_FIELDS_MESSAGE)


def _policy_from_env() -> RunnerPolicy:
    """Load the policy named by `$POLYGLOT_RUNNER_CONFIG`, or the defaults.

    Example:
        ```python
        policy = _policy_from_env()
        ```
    """
    config_path = os.environ.get(CONFIG_ENV_VAR)
    if config_path:
        return RunnerPolicy.from_file(config_path)
    return RunnerPolicy()


def _log_toolchains(orchestrator: Orchestrator) -> None:
    """Log which toolchains are usable at startup.

    Example:
        ```python
        _log_toolchains(app.state.orchestrator)
        ```
    """
    for caps in toolchain_report(orchestrator.descriptors, orchestrator.policy.search_path):
        if caps.available:
            logger.info("Toolchain ready: %s", caps.language.value)
        else:
            missing = [
                binary
                for binary, found in (
                    (caps.compiler, caps.compiler_available),
                    (caps.runtime, caps.runtime_available),
                )
                if binary and not found
            ]
            logger.warning("Toolchain missing for %s: %s", caps.language.value, ", ".join(missing))


def create_app(
    policy: RunnerPolicy | None = None,
    *,
    orchestrator: Orchestrator | None = None,
    snippets: SnippetStore | None = None,
) -> FastAPI:
    """Build the application; the orchestrator is created at startup.

    With no arguments the policy is read from `$POLYGLOT_RUNNER_CONFIG` or the
    bundled defaults.

    Example:
        ```python
        app = create_app(RunnerPolicy(timeout_seconds=5))
        ```
    """
    if orchestrator is not None and policy is not None:
        raise ValueError("Provide either 'orchestrator' or 'policy', not both")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Own the orchestrator and snippet store for the app's lifetime.

        Example:
            ```python
            FastAPI(lifespan=lifespan)
            ```
        """
        app.state.orchestrator = orchestrator or Orchestrator(policy or _policy_from_env())
        app.state.snippets = snippets if snippets is not None else InMemorySnippetStore()
        _log_toolchains(app.state.orchestrator)
        logger.info("polyglot-runner ready")
        yield
        logger.info("polyglot-runner shutting down")

    app = FastAPI(title="polyglot-runner", lifespan=lifespan)
    app.include_router(router)
    app.add_exception_handler(RequestValidationError, _invalid_body)
    return app
