"""REST API: FastAPI endpoints over the Incentra workflows.

Every successful call returns ``{success: true, data, message}``. Domain errors
come back as ``{success: false, message, errors}`` with the error's status code.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, AsyncIterator

import aiosqlite
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from incentra import contribution_service, ipr_service, progress_tracker, review_service, suggestion_service
from incentra.auth import get_actor, oracle
from incentra.collaborators import Actor, Capability, LocalBlobStore
from incentra.config import settings
from incentra.database import get_db
from incentra.errors import IncentraError, NotFoundError, PermissionDeniedError
from incentra.history_service import get_reviews, get_status_history
from incentra.middleware import RequestLoggingMiddleware, RequestSizeLimitMiddleware
from incentra.models import (
    ContributionCreate,
    ContributionStatus,
    ContributionUpdate,
    EntityType,
    IprCreate,
    IprStatus,
    PolicyCreate,
    PolicyScope,
    PublicationType,
    SuggestionCreate,
    SuggestionResponse,
    SuggestionStatus,
    SuggestionTarget,
    TrackerCreate,
    TrackerStatus,
    TrackerTransition,
    TrackerType,
    TrackerUpdate,
)
from incentra.notification_service import DatabaseNotificationSink, list_notifications, mark_read
from incentra.policy_store import add_policy, deactivate_policy, find_active_policy, list_policies

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Incentra",
    description="Research incentive and IPR workflow service",
    version="0.1.0",
)

app.add_middleware(RequestSizeLimitMiddleware, max_bytes=settings.server.max_request_bytes)
app.add_middleware(RequestLoggingMiddleware)

if settings.server.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )


# ---------------------------------------------------------------------------
# Envelope and dependencies
# ---------------------------------------------------------------------------

@app.exception_handler(IncentraError)
async def _incentra_error_handler(request: Request, exc: IncentraError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.to_dict())
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message, "errors": jsonable_encoder(exc.details)},
    )


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Invalid request", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("%s %s failed", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal server error", "errors": {}},
    )


def _ok(data: Any = None, message: str = "") -> dict[str, Any]:
    return {"success": True, "data": data, "message": message}


def _clamp_limit(limit: int, default: int = 50) -> int:
    if limit <= 0:
        return default
    return min(limit, settings.server.max_page_size)


async def db_session() -> AsyncIterator[aiosqlite.Connection]:
    db = await get_db()
    try:
        yield db
    finally:
        await db.close()


def get_blob_store() -> LocalBlobStore:
    return LocalBlobStore(settings.blob_path)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class CommentsRequest(BaseModel):
    comments: str = Field(default="", max_length=10_000)


class RequestChangesRequest(BaseModel):
    comments: str = Field(min_length=1, max_length=10_000)
    suggestions: list[SuggestionCreate] = Field(default_factory=list)


class DrdReviewRequest(BaseModel):
    decision: str
    comments: str = Field(default="", max_length=10_000)
    edits: dict[str, Any] | None = None


class AssignReviewerRequest(BaseModel):
    reviewer_id: str | None = None


class GovtFilingRequest(BaseModel):
    govt_application_id: str = Field(min_length=1)
    filing_date: date | None = None


class PublicationIdRequest(BaseModel):
    publication_id: str = Field(min_length=1)
    publication_date: date | None = None
    comments: str = ""


class SuggestionRequest(SuggestionCreate):
    target_type: SuggestionTarget
    target_id: str


class MentorSuggestionsRequest(BaseModel):
    target_type: SuggestionTarget
    target_id: str
    suggestions: list[SuggestionCreate] = Field(min_length=1)


class RespondRequest(BaseModel):
    action: str
    response: str | None = None


class BatchRespondRequest(BaseModel):
    responses: list[SuggestionResponse] = Field(min_length=1)


class LinkRequest(BaseModel):
    contribution_id: str


# ---------------------------------------------------------------------------
# Read guards
# ---------------------------------------------------------------------------

def _can_view_contribution(actor: Actor, c) -> bool:
    return (
        actor.id == c.applicant_id
        or actor.id in contribution_service.internal_user_ids(c)
        or actor.has_permission(Capability.RESEARCH_REVIEW)
        or actor.has_permission(Capability.RESEARCH_APPROVE)
    )


def _can_view_ipr(actor: Actor, app_) -> bool:
    return (
        actor.id in ipr_service.contributor_user_ids(app_)
        or actor.has_permission(Capability.DRD_REVIEW)
        or actor.has_permission(Capability.DRD_HEAD)
        or actor.has_permission(Capability.IPR_GOVT_FILING)
    )


async def _visible_contribution(db: aiosqlite.Connection, actor: Actor, contribution_id: str):
    c = await contribution_service.get_contribution(db, contribution_id)
    if not _can_view_contribution(actor, c):
        raise PermissionDeniedError("You cannot view this contribution", details={"guard": "viewer"})
    return c


async def _visible_ipr(db: aiosqlite.Connection, actor: Actor, ipr_id: str):
    app_ = await ipr_service.get_ipr_application(db, ipr_id)
    if not _can_view_ipr(actor, app_):
        raise PermissionDeniedError("You cannot view this application", details={"guard": "viewer"})
    return app_


# ---------------------------------------------------------------------------
# Contribution endpoints
# ---------------------------------------------------------------------------

@app.post("/api/contributions", tags=["contributions"])
async def api_create_contribution(
    req: ContributionCreate,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    c = await contribution_service.create_contribution(db, actor, req, DatabaseNotificationSink(db))
    return _ok(c, f"Draft {c.application_number} created")


@app.get("/api/contributions", tags=["contributions"])
async def api_list_contributions(
    status: ContributionStatus | None = None,
    limit: int = 50,
    offset: int = 0,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    items = await contribution_service.list_contributions(
        db, applicant_id=actor.id, status=status, limit=_clamp_limit(limit), offset=max(offset, 0)
    )
    return _ok(items)


@app.get("/api/contributions/{contribution_id}", tags=["contributions"])
async def api_get_contribution(
    contribution_id: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    return _ok(await _visible_contribution(db, actor, contribution_id))


@app.patch("/api/contributions/{contribution_id}", tags=["contributions"])
async def api_update_contribution(
    contribution_id: str,
    req: ContributionUpdate,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    c = await contribution_service.update_contribution(
        db, actor, contribution_id, req, DatabaseNotificationSink(db)
    )
    return _ok(c, "Contribution updated")


@app.delete("/api/contributions/{contribution_id}", tags=["contributions"])
async def api_delete_contribution(
    contribution_id: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    await contribution_service.delete_contribution(db, actor, contribution_id)
    return _ok(None, "Draft deleted")


@app.post("/api/contributions/{contribution_id}/submit", tags=["contributions"])
async def api_submit_contribution(
    contribution_id: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    c = await contribution_service.submit_contribution(db, actor, contribution_id, DatabaseNotificationSink(db))
    return _ok(c, f"Contribution is now {c.status.value}")


@app.post("/api/contributions/{contribution_id}/mentor-approve", tags=["contributions"])
async def api_mentor_approve_contribution(
    contribution_id: str,
    req: CommentsRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    c = await contribution_service.mentor_approve_contribution(
        db, actor, contribution_id, req.comments, DatabaseNotificationSink(db)
    )
    return _ok(c, "Forwarded for review")


@app.post("/api/contributions/{contribution_id}/mentor-reject", tags=["contributions"])
async def api_mentor_reject_contribution(
    contribution_id: str,
    req: CommentsRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    c = await contribution_service.mentor_reject_contribution(
        db, actor, contribution_id, req.comments, DatabaseNotificationSink(db)
    )
    return _ok(c, "Returned to applicant")


@app.post("/api/contributions/{contribution_id}/resubmit", tags=["contributions"])
async def api_resubmit_contribution(
    contribution_id: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    c = await contribution_service.resubmit_contribution(db, actor, contribution_id, DatabaseNotificationSink(db))
    return _ok(c, "Contribution resubmitted")


@app.post("/api/contributions/{contribution_id}/documents", tags=["contributions"])
async def api_attach_document(
    contribution_id: str,
    request: Request,
    filename: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
    blobs: LocalBlobStore = Depends(get_blob_store),
):
    data = await request.body()
    c = await contribution_service.attach_document(
        db, actor, contribution_id, blobs, data, filename, request.headers.get("content-type", "")
    )
    return _ok(c, "Document attached")


@app.get("/api/contributions/{contribution_id}/documents/{key:path}", tags=["contributions"])
async def api_read_document(
    contribution_id: str,
    key: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
    blobs: LocalBlobStore = Depends(get_blob_store),
):
    c = await _visible_contribution(db, actor, contribution_id)
    if key not in c.document_keys:
        raise NotFoundError("document", key)
    blob = await contribution_service.read_document(blobs, key)
    return StreamingResponse(
        blob.stream, media_type=blob.content_type, headers={"Content-Length": str(blob.length)}
    )


@app.get("/api/contributions/{contribution_id}/history", tags=["contributions"])
async def api_contribution_history(
    contribution_id: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    await _visible_contribution(db, actor, contribution_id)
    return _ok(await get_status_history(db, EntityType.CONTRIBUTION, contribution_id))


# ---------------------------------------------------------------------------
# Review endpoints
# ---------------------------------------------------------------------------

@app.get("/api/reviews/pending", tags=["reviews"])
async def api_pending_reviews(
    publication_type: PublicationType | None = None,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    return _ok(await review_service.list_pending_reviews(db, actor, publication_type))


@app.get("/api/reviews/statistics", tags=["reviews"])
async def api_review_statistics(
    school_id: str | None = None,
    publication_type: PublicationType | None = None,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    if not (actor.has_permission(Capability.RESEARCH_REVIEW) or actor.has_permission(Capability.RESEARCH_APPROVE)):
        actor.require(Capability.RESEARCH_REVIEW)
    return _ok(await review_service.review_statistics(db, school_id, publication_type))


@app.get("/api/contributions/{contribution_id}/reviews", tags=["reviews"])
async def api_contribution_reviews(
    contribution_id: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    await _visible_contribution(db, actor, contribution_id)
    return _ok(await get_reviews(db, EntityType.CONTRIBUTION, contribution_id))


@app.post("/api/contributions/{contribution_id}/review/start", tags=["reviews"])
async def api_start_review(
    contribution_id: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    c = await review_service.start_review(db, actor, contribution_id, DatabaseNotificationSink(db))
    return _ok(c, "Review started")


@app.post("/api/contributions/{contribution_id}/review/request-changes", tags=["reviews"])
async def api_request_changes(
    contribution_id: str,
    req: RequestChangesRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    c = await review_service.request_changes(
        db, actor, contribution_id, req.comments, req.suggestions, DatabaseNotificationSink(db)
    )
    return _ok(c, "Changes requested")


@app.post("/api/contributions/{contribution_id}/review/recommend", tags=["reviews"])
async def api_recommend(
    contribution_id: str,
    req: CommentsRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    c = await review_service.recommend_for_approval(
        db, actor, contribution_id, req.comments, DatabaseNotificationSink(db), oracle
    )
    return _ok(c, "Recommended for approval")


@app.post("/api/contributions/{contribution_id}/review/approve", tags=["reviews"])
async def api_approve(
    contribution_id: str,
    req: CommentsRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    c = await review_service.approve_contribution(
        db, actor, contribution_id, req.comments, DatabaseNotificationSink(db)
    )
    return _ok(c, "Contribution approved")


@app.post("/api/contributions/{contribution_id}/review/reject", tags=["reviews"])
async def api_reject(
    contribution_id: str,
    req: CommentsRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    c = await review_service.reject_contribution(
        db, actor, contribution_id, req.comments, DatabaseNotificationSink(db)
    )
    return _ok(c, "Contribution rejected")


@app.post("/api/contributions/{contribution_id}/complete", tags=["reviews"])
async def api_complete(
    contribution_id: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    return _ok(await review_service.mark_completed(db, actor, contribution_id), "Contribution completed")


# ---------------------------------------------------------------------------
# Suggestion endpoints
# ---------------------------------------------------------------------------

@app.post("/api/suggestions", tags=["suggestions"])
async def api_create_suggestion(
    req: SuggestionRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    payload = SuggestionCreate(**req.model_dump(include=set(SuggestionCreate.model_fields)))
    s = await suggestion_service.create_suggestion(
        db, actor, req.target_type, req.target_id, payload, DatabaseNotificationSink(db)
    )
    return _ok(s, "Suggestion recorded")


@app.post("/api/suggestions/mentor", tags=["suggestions"])
async def api_create_mentor_suggestions(
    req: MentorSuggestionsRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    items = await suggestion_service.create_mentor_suggestions(
        db, actor, req.target_type, req.target_id, req.suggestions, DatabaseNotificationSink(db)
    )
    return _ok(items, f"{len(items)} suggestion(s) recorded")


@app.get("/api/suggestions", tags=["suggestions"])
async def api_list_suggestions(
    target_type: SuggestionTarget,
    target_id: str,
    status: SuggestionStatus | None = None,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    if target_type == SuggestionTarget.CONTRIBUTION:
        await _visible_contribution(db, actor, target_id)
    else:
        await _visible_ipr(db, actor, target_id)
    return _ok(await suggestion_service.list_suggestions(db, target_type, target_id, status))


@app.post("/api/suggestions/respond-batch", tags=["suggestions"])
async def api_respond_batch(
    req: BatchRespondRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    items = await suggestion_service.respond_in_batch(db, actor, req.responses, DatabaseNotificationSink(db))
    return _ok(items, f"{len(items)} suggestion(s) resolved")


@app.post("/api/suggestions/{suggestion_id}/respond", tags=["suggestions"])
async def api_respond(
    suggestion_id: str,
    req: RespondRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    s = await suggestion_service.respond_to_suggestion(
        db, actor, suggestion_id, req.action, req.response, DatabaseNotificationSink(db)
    )
    return _ok(s, f"Suggestion {s.status.value}")


# ---------------------------------------------------------------------------
# IPR endpoints
# ---------------------------------------------------------------------------

@app.post("/api/ipr", tags=["ipr"])
async def api_create_ipr(
    req: IprCreate,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    app_ = await ipr_service.create_ipr_application(db, actor, req, DatabaseNotificationSink(db))
    return _ok(app_, f"Draft {app_.application_number} created")


@app.get("/api/ipr", tags=["ipr"])
async def api_list_ipr(
    status: IprStatus | None = None,
    limit: int = 50,
    offset: int = 0,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    items = await ipr_service.list_ipr_applications(
        db, applicant_id=actor.id, status=status, limit=_clamp_limit(limit), offset=max(offset, 0)
    )
    return _ok(items)


@app.get("/api/ipr/drd-queue", tags=["ipr"])
async def api_drd_queue(
    status: IprStatus | None = None,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    return _ok(await ipr_service.list_drd_queue(db, actor, status))


@app.get("/api/ipr/{ipr_id}", tags=["ipr"])
async def api_get_ipr(
    ipr_id: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    return _ok(await _visible_ipr(db, actor, ipr_id))


@app.get("/api/ipr/{ipr_id}/history", tags=["ipr"])
async def api_ipr_history(
    ipr_id: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    await _visible_ipr(db, actor, ipr_id)
    return _ok({
        "history": await get_status_history(db, EntityType.IPR_APPLICATION, ipr_id),
        "reviews": await get_reviews(db, EntityType.IPR_APPLICATION, ipr_id),
    })


@app.post("/api/ipr/{ipr_id}/submit", tags=["ipr"])
async def api_submit_ipr(
    ipr_id: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    app_ = await ipr_service.submit_ipr_application(db, actor, ipr_id, DatabaseNotificationSink(db))
    return _ok(app_, f"Application is now {app_.status.value}")


@app.post("/api/ipr/{ipr_id}/mentor-approve", tags=["ipr"])
async def api_mentor_approve_ipr(
    ipr_id: str,
    req: CommentsRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    app_ = await ipr_service.mentor_approve_ipr(db, actor, ipr_id, req.comments, DatabaseNotificationSink(db))
    return _ok(app_, "Forwarded to DRD")


@app.post("/api/ipr/{ipr_id}/mentor-reject", tags=["ipr"])
async def api_mentor_reject_ipr(
    ipr_id: str,
    req: CommentsRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    app_ = await ipr_service.mentor_reject_ipr(db, actor, ipr_id, req.comments, DatabaseNotificationSink(db))
    return _ok(app_, "Returned to applicant")


@app.post("/api/ipr/{ipr_id}/resubmit", tags=["ipr"])
async def api_resubmit_ipr(
    ipr_id: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    app_ = await ipr_service.resubmit_ipr(db, actor, ipr_id, DatabaseNotificationSink(db))
    return _ok(app_, "Application resubmitted")


@app.post("/api/ipr/{ipr_id}/assign", tags=["ipr"])
async def api_assign_drd_reviewer(
    ipr_id: str,
    req: AssignReviewerRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    app_ = await ipr_service.assign_drd_reviewer(db, actor, ipr_id, req.reviewer_id, DatabaseNotificationSink(db))
    return _ok(app_, "Reviewer assigned")


@app.post("/api/ipr/{ipr_id}/drd-review", tags=["ipr"])
async def api_drd_review(
    ipr_id: str,
    req: DrdReviewRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    app_ = await ipr_service.submit_drd_review(
        db, actor, ipr_id, req.decision, req.comments, req.edits, DatabaseNotificationSink(db)
    )
    return _ok(app_, f"Application is now {app_.status.value}")


@app.post("/api/ipr/{ipr_id}/head-approve", tags=["ipr"])
async def api_head_approve(
    ipr_id: str,
    req: CommentsRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    app_ = await ipr_service.head_approve(db, actor, ipr_id, req.comments, DatabaseNotificationSink(db))
    return _ok(app_, "Application approved")


@app.post("/api/ipr/{ipr_id}/submit-to-govt", tags=["ipr"])
async def api_submit_to_govt(
    ipr_id: str,
    req: CommentsRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    app_ = await ipr_service.submit_to_govt(db, actor, ipr_id, req.comments, DatabaseNotificationSink(db))
    return _ok(app_, "Submitted to government")


@app.post("/api/ipr/{ipr_id}/final-reject", tags=["ipr"])
async def api_final_reject(
    ipr_id: str,
    req: CommentsRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    app_ = await ipr_service.final_rejection(db, actor, ipr_id, req.comments, DatabaseNotificationSink(db))
    return _ok(app_, "Application rejected")


@app.post("/api/ipr/{ipr_id}/govt-application", tags=["ipr"])
async def api_govt_application(
    ipr_id: str,
    req: GovtFilingRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    app_ = await ipr_service.add_govt_application_id(
        db, actor, ipr_id, req.govt_application_id, req.filing_date, DatabaseNotificationSink(db)
    )
    return _ok(app_, "Government application recorded")


@app.post("/api/ipr/{ipr_id}/govt-rejected", tags=["ipr"])
async def api_govt_rejected(
    ipr_id: str,
    req: CommentsRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    app_ = await ipr_service.mark_govt_rejected(db, actor, ipr_id, req.comments, DatabaseNotificationSink(db))
    return _ok(app_, "Government rejection recorded")


@app.post("/api/ipr/{ipr_id}/publication", tags=["ipr"])
async def api_publication(
    ipr_id: str,
    req: PublicationIdRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    app_ = await ipr_service.add_publication_id(
        db, actor, ipr_id, req.publication_id, req.publication_date, req.comments, DatabaseNotificationSink(db)
    )
    return _ok(app_, "Publication recorded")


# ---------------------------------------------------------------------------
# Progress tracker endpoints
# ---------------------------------------------------------------------------

@app.post("/api/trackers", tags=["trackers"])
async def api_create_tracker(
    req: TrackerCreate,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    t = await progress_tracker.create_tracker(db, actor, req)
    return _ok(t, f"Tracker {t.tracking_number} created")


@app.get("/api/trackers", tags=["trackers"])
async def api_list_trackers(
    status: TrackerStatus | None = None,
    tracker_type: TrackerType | None = None,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    return _ok(await progress_tracker.list_trackers(db, actor, status, tracker_type))


@app.get("/api/trackers/stats", tags=["trackers"])
async def api_tracker_stats(
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    return _ok(await progress_tracker.tracker_stats(db, actor))


@app.get("/api/trackers/{tracker_id}", tags=["trackers"])
async def api_get_tracker(
    tracker_id: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    return _ok(await progress_tracker.get_tracker(db, actor, tracker_id))


@app.patch("/api/trackers/{tracker_id}", tags=["trackers"])
async def api_update_tracker(
    tracker_id: str,
    req: TrackerUpdate,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    return _ok(await progress_tracker.update_tracker(db, actor, tracker_id, req), "Tracker updated")


@app.delete("/api/trackers/{tracker_id}", tags=["trackers"])
async def api_delete_tracker(
    tracker_id: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    await progress_tracker.delete_tracker(db, actor, tracker_id)
    return _ok(None, "Tracker deleted")


@app.post("/api/trackers/{tracker_id}/transition", tags=["trackers"])
async def api_transition_tracker(
    tracker_id: str,
    req: TrackerTransition,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    t = await progress_tracker.transition_tracker(db, actor, tracker_id, req)
    return _ok(t, f"Tracker is now {t.current_status.value}")


@app.get("/api/trackers/{tracker_id}/history", tags=["trackers"])
async def api_tracker_history(
    tracker_id: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    return _ok(await progress_tracker.get_tracker_history(db, actor, tracker_id))


@app.get("/api/trackers/{tracker_id}/prefill", tags=["trackers"])
async def api_tracker_prefill(
    tracker_id: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    return _ok(await progress_tracker.submission_prefill(db, actor, tracker_id))


@app.post("/api/trackers/{tracker_id}/link", tags=["trackers"])
async def api_link_tracker(
    tracker_id: str,
    req: LinkRequest,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    t, c = await progress_tracker.link_to_contribution(db, actor, tracker_id, req.contribution_id)
    return _ok({"tracker": t, "contribution": c}, "Tracker linked")


# ---------------------------------------------------------------------------
# Policy endpoints
# ---------------------------------------------------------------------------

@app.get("/api/policies", tags=["policies"])
async def api_list_policies(
    scope: PolicyScope | None = None,
    active_only: bool = False,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    return _ok(await list_policies(db, scope, active_only))


@app.get("/api/policies/active", tags=["policies"])
async def api_active_policy(
    scope: PolicyScope,
    sub_type: str | None = None,
    as_of: date | None = None,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    return _ok(await find_active_policy(db, scope, sub_type, as_of))


@app.post("/api/policies", tags=["policies"])
async def api_add_policy(
    req: PolicyCreate,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    return _ok(await add_policy(db, actor, req), "Policy stored")


@app.post("/api/policies/{policy_id}/deactivate", tags=["policies"])
async def api_deactivate_policy(
    policy_id: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    return _ok(await deactivate_policy(db, actor, policy_id), "Policy deactivated")


# ---------------------------------------------------------------------------
# Notifications and ops
# ---------------------------------------------------------------------------

@app.get("/api/notifications", tags=["notifications"])
async def api_notifications(
    unread_only: bool = False,
    limit: int = 50,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    return _ok(await list_notifications(db, actor.id, unread_only, _clamp_limit(limit)))


@app.post("/api/notifications/{notification_id}/read", tags=["notifications"])
async def api_mark_read(
    notification_id: str,
    actor: Actor = Depends(get_actor),
    db: aiosqlite.Connection = Depends(db_session),
):
    if not await mark_read(db, actor.id, notification_id):
        raise NotFoundError("notification", notification_id)
    return _ok(None, "Marked as read")


@app.get("/healthz", tags=["ops"])
async def healthz():
    """Liveness probe."""
    return {"status": "ok"}


@app.get("/readyz", tags=["ops"])
async def readyz(db: aiosqlite.Connection = Depends(db_session)):
    """Readiness probe (DB connectivity)."""
    async with db.execute("SELECT 1") as cursor:
        _ = await cursor.fetchone()
    return {"status": "ready"}
