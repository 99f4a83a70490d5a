"""
FastAPI server for the warehouse knowledge base.

Every successful response is wrapped as ``{"success": true, "data": ...}``;
pipeline errors become ``{"success": false, "error": {"code", "message"}}``
with the error's HTTP status. The caller is identified by the ``X-User-Id``
and ``X-User-Role`` headers set by the upstream gateway.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from .answers.workflow import AnswerEndEvent, AnswerFragmentEvent, AnswerInputEvent
from .errors import InvalidQueryError, PermissionDeniedError, WarehouseKBError
from .logging_utils import setup_logging
from .models import (
    AnswerRequest,
    DocumentSearchRequest,
    FeedbackRequest,
    MultiSearchRequest,
    SearchRequest,
)
from .search.orchestrator import ANSWER_QUERY_BOUNDS, validate_query
from .services import Services, build_services
from .storage import FeedbackRecord, SearchLogEntry


logger = logging.getLogger(__name__)


def _ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": jsonable_encoder(data, by_alias=True)}


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": {"code": code, "message": message}},
        status_code=status_code,
    )


def _history_item(entry: SearchLogEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "query": entry.query,
        "filters": entry.filters,
        "resultsCount": entry.results_count,
        "executionTimeMs": entry.execution_time_ms,
        "language": entry.language,
        "successful": entry.successful,
        "cached": entry.cached,
        "createdAt": entry.created_at.isoformat(),
    }


def create_app(services: Services | None = None) -> FastAPI:
    """Build the API. Without ``services`` the default stack is built at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging()
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services()
        current: Services = app.state.services
        current.task_queue.start()
        logger.info("Warehouse knowledge API ready (db=%s)", current.settings.db_path)
        try:
            yield
        finally:
            await current.aclose()

    app = FastAPI(
        title="Warehouse Knowledge Base",
        description="Semantic search and grounded answers over warehouse documents",
        lifespan=lifespan,
    )
    app.state.services = services

    @app.exception_handler(WarehouseKBError)
    async def handle_pipeline_error(request: Request, exc: WarehouseKBError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return _error(exc.status_code, exc.code, str(exc))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = [
            f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}"
            for err in exc.errors()
        ]
        return _error(400, InvalidQueryError.code, "; ".join(messages))

    def get_services(request: Request) -> Services:
        return request.app.state.services

    def require_admin(x_user_role: str | None = Header(default=None)) -> None:
        if (x_user_role or "").lower() != "admin":
            raise PermissionDeniedError("This endpoint requires the admin role.")

    # -- search ---------------------------------------------------------------------

    @app.post("/api/search")
    async def search(
        body: SearchRequest,
        services: Services = Depends(get_services),
        x_user_id: str | None = Header(default=None),
        x_search_slot: str | None = Header(default=None),
    ):
        """Semantic search with optional answer synthesis."""
        response = await services.orchestrator.search(
            body, user_id=x_user_id, slot=x_search_slot or x_user_id
        )
        return _ok(response)

    @app.post("/api/search/more")
    async def load_more(
        body: SearchRequest,
        services: Services = Depends(get_services),
        x_user_id: str | None = Header(default=None),
    ):
        """The page after the one described by ``offset`` and ``limit``."""
        return _ok(await services.orchestrator.load_more(body, user_id=x_user_id))

    @app.post("/api/search/advanced")
    async def advanced_search(
        body: MultiSearchRequest,
        services: Services = Depends(get_services),
        x_user_id: str | None = Header(default=None),
    ):
        return _ok(await services.orchestrator.multi_search(body, user_id=x_user_id))

    @app.post("/api/search/document/{document_id}")
    async def search_document(
        document_id: str,
        body: DocumentSearchRequest,
        services: Services = Depends(get_services),
    ):
        results = await services.orchestrator.search_in_document(
            document_id, body.query, limit=body.limit, threshold=body.threshold
        )
        return _ok({"documentId": document_id, "results": results})

    @app.get("/api/search/similar/{document_id}")
    async def similar_documents(
        document_id: str,
        limit: int = Query(default=5, ge=1, le=50),
        services: Services = Depends(get_services),
    ):
        similar = await services.orchestrator.find_similar(document_id, limit=limit)
        return _ok(
            [
                {
                    "documentId": doc.document_id,
                    "title": doc.title,
                    "category": doc.category,
                    "documentType": doc.document_type,
                    "score": doc.score,
                }
                for doc in similar
            ]
        )

    # -- answers --------------------------------------------------------------------

    @app.post("/api/search/answer")
    async def answer(
        body: AnswerRequest,
        request: Request,
        services: Services = Depends(get_services),
        x_user_id: str | None = Header(default=None),
    ):
        """Answer a question. With ``stream`` the answer arrives as SSE fragments."""
        if not body.stream:
            return _ok(await services.orchestrator.answer(body, user_id=x_user_id))

        query = validate_query(body.query, ANSWER_QUERY_BOUNDS)
        start_event = AnswerInputEvent(
            query=query,
            answer_type=body.type,
            language=body.language,
            conversation_id=body.conversation_id,
            document_ids=body.context,
        )
        return StreamingResponse(
            _answer_stream(services, start_event, request),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    # -- suggestions, history, feedback ---------------------------------------------

    @app.get("/api/search/suggestions")
    async def suggestions(
        q: str = Query(default=""),
        limit: int = Query(default=5, ge=1, le=20),
        services: Services = Depends(get_services),
    ):
        completions = await services.analytics.autocomplete(q, limit=limit)
        if len(completions) < limit and len(q.strip()) >= 2:
            for related in await services.analytics.related_queries(q, limit=limit):
                if related not in completions:
                    completions.append(related)
        return _ok(completions[:limit])

    @app.get("/api/search/history")
    async def history(
        limit: int = Query(default=20, ge=1, le=100),
        offset: int = Query(default=0, ge=0),
        services: Services = Depends(get_services),
        x_user_id: str | None = Header(default=None),
    ):
        if not x_user_id:
            raise InvalidQueryError("X-User-Id header is required for search history.")
        entries = await services.analytics.history(x_user_id, limit=limit, offset=offset)
        return _ok([_history_item(entry) for entry in entries])

    @app.post("/api/search/feedback")
    async def feedback(
        body: FeedbackRequest,
        services: Services = Depends(get_services),
        x_user_id: str | None = Header(default=None),
    ):
        await services.analytics.record_feedback(
            FeedbackRecord(
                search_log_id=body.search_id,
                rating=body.rating,
                user_id=x_user_id,
                result_id=body.result_id,
                clicked=body.clicked,
                time_to_click_ms=body.time_to_click_ms,
                dwell_time_ms=body.dwell_time_ms,
                comment=body.comment,
                result_position=body.result_position,
            )
        )
        return {"success": True}

    # -- admin ----------------------------------------------------------------------

    @app.delete("/api/search/cache", dependencies=[Depends(require_admin)])
    async def clear_cache(
        pattern: str | None = Query(default=None),
        services: Services = Depends(get_services),
    ):
        removed = await services.orchestrator.clear_cache(pattern)
        return _ok({"removed": removed})

    @app.get("/api/search/analytics", dependencies=[Depends(require_admin)])
    async def analytics(
        days: int = Query(default=7, ge=1, le=365),
        services: Services = Depends(get_services),
    ):
        return _ok(await services.analytics.stats(days=days))

    @app.get("/api/search/trending", dependencies=[Depends(require_admin)])
    async def trending(
        days: int = Query(default=7, ge=1, le=365),
        limit: int = Query(default=10, ge=1, le=100),
        language: str | None = Query(default=None),
        services: Services = Depends(get_services),
    ):
        ranked = await services.analytics.trending(days=days, limit=limit, language=language)
        return _ok([item.to_dict() for item in ranked])

    @app.get("/api/search/usage", dependencies=[Depends(require_admin)])
    async def usage(services: Services = Depends(get_services)):
        return _ok(services.usage.summary())

    return app


async def _answer_stream(
    services: Services, start_event: AnswerInputEvent, request: Request
) -> AsyncIterator[str]:
    handler = services.answer_workflow().run(start_event=start_event)
    try:
        async for event in handler.stream_events():
            if await request.is_disconnected():
                logger.info("Client disconnected from answer stream")
                return
            if isinstance(event, AnswerFragmentEvent):
                yield f"data: {json.dumps({'content': event.content})}\n\n"

        result = await handler
        if isinstance(result, AnswerEndEvent) and result.status == "failed":
            payload = {"code": "answer_failed", "message": result.error or "Answer failed"}
            yield f"event: error\ndata: {json.dumps(payload)}\n\n"
        elif isinstance(result, AnswerEndEvent) and result.status == "no_context":
            yield f"data: {json.dumps({'content': '', 'status': 'no_context'})}\n\n"
        yield "data: [DONE]\n\n"
    finally:
        if not handler.done():
            await handler.cancel_run()


app = create_app()
