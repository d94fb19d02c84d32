"""
Activity Routes
FastAPI routes for submitting papers and driving activities through their stages
"""

import logging
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from database import managed_session
from services.activity_service import ActivityService
from services.reviewer_team_service import ReviewerTeamService
from services.timeline_service import TimelineService
from utils.error_handler import ErrorCode, build_error, http_status_for
from utils.exceptions import TransientFailure, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/activities", tags=["activities"])


class SubmitActivityRequest(BaseModel):
    paper_title: str
    creator_id: int
    template: Union[int, str]
    funding_amount: Optional[int] = None
    abstract: Optional[str] = None


class ParticipantRequest(BaseModel):
    user_id: int


class ProgressRequest(BaseModel):
    activity_type: str
    triggered_by: Optional[int] = None
    forced_transition_id: Optional[int] = None


class AwardRequest(BaseModel):
    giver_id: int
    receiver_id: int
    award_type: str
    round_number: int = 1


class FinalizationRequest(BaseModel):
    reviewer_id: int
    finalized: bool
    content_hash: Optional[str] = None


class SnapshotRequest(BaseModel):
    content: str
    content_hash: Optional[str] = None


class ReviewRequest(BaseModel):
    reviewer_id: int
    content: str
    round_number: int = 1


class AuthorResponseRequest(BaseModel):
    author_id: int
    content: str
    round_number: int = 1


class PublicationRequest(BaseModel):
    user_id: int
    choice: str
    notes: Optional[str] = None
    external_submission_details: Optional[Dict[str, Any]] = None


def _render(result) -> dict:
    """Turn a service result into a response, raising on a failed outcome"""
    error_code: Optional[ErrorCode] = getattr(result, "error_code", None)
    if error_code is not None:
        payload = build_error(error_code, details=result.to_dict()).to_dict()
        raise HTTPException(status_code=http_status_for(error_code), detail=payload)
    return result.to_dict()


def _call(operation: str, func, *args, **kwargs) -> dict:
    try:
        return _render(func(*args, **kwargs))
    except HTTPException:
        raise
    except ValidationError as e:
        logger.info(f"⚠️ {operation}_REJECTED: {e}")
        raise HTTPException(status_code=422, detail=str(e))
    except TransientFailure as e:
        logger.warning(f"🔄 {operation}_TRANSIENT: {e}")
        raise HTTPException(status_code=503, detail="Temporarily unavailable, please retry")
    except Exception as e:
        logger.error(f"❌ {operation}_ERROR: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("")
def submit_activity(body: SubmitActivityRequest):
    """Create a paper and its activity, funding escrow from the creator's wallet"""
    return _call(
        "SUBMIT_ACTIVITY",
        ActivityService.submit_activity,
        body.paper_title,
        body.creator_id,
        body.template,
        funding_amount=body.funding_amount,
        abstract=body.abstract,
    )


@router.post("/{activity_id}/team")
def join_reviewer_team(activity_id: int, body: ParticipantRequest):
    return _call("JOIN_TEAM", ActivityService.join_reviewer_team, activity_id, body.user_id)


@router.post("/{activity_id}/team/lock-in")
def lock_in(activity_id: int, body: ParticipantRequest):
    return _call("LOCK_IN", ActivityService.lock_in, activity_id, body.user_id)


@router.post("/{activity_id}/progress")
def try_progress(activity_id: int, body: ProgressRequest):
    """Evaluate automatic transitions, or apply a forced one"""
    return _call(
        "TRY_PROGRESS",
        ActivityService.try_progress,
        body.activity_type,
        activity_id,
        triggered_by=body.triggered_by,
        forced_transition_id=body.forced_transition_id,
    )


@router.post("/{activity_id}/awards")
def give_award(activity_id: int, body: AwardRequest):
    return _call(
        "GIVE_AWARD",
        ActivityService.give_award,
        activity_id,
        body.giver_id,
        body.receiver_id,
        body.award_type,
        round_number=body.round_number,
    )


@router.post("/{activity_id}/awards/distributed")
def mark_awards_distributed(activity_id: int, body: ParticipantRequest):
    return _call("AWARDS_DISTRIBUTED", ActivityService.mark_awards_distributed, activity_id, body.user_id)


@router.post("/{activity_id}/finalization")
def toggle_finalization(activity_id: int, body: FinalizationRequest):
    return _call(
        "TOGGLE_FINALIZATION",
        ActivityService.toggle_finalization,
        activity_id,
        body.reviewer_id,
        body.finalized,
        content_hash=body.content_hash,
    )


@router.post("/{activity_id}/assessment/snapshot")
def record_snapshot(activity_id: int, body: SnapshotRequest):
    """Store a backup of the shared assessment; a content change resets finalization"""
    try:
        reset = ActivityService.record_assessment_snapshot(activity_id, body.content, content_hash=body.content_hash)
    except TransientFailure:
        raise HTTPException(status_code=503, detail="Temporarily unavailable, please retry")
    return {"success": True, "content_reset": reset}


@router.post("/{activity_id}/reviews")
def submit_review(activity_id: int, body: ReviewRequest):
    return _call(
        "SUBMIT_REVIEW",
        ActivityService.submit_review,
        activity_id,
        body.reviewer_id,
        body.content,
        round_number=body.round_number,
    )


@router.post("/{activity_id}/author-response")
def submit_author_response(activity_id: int, body: AuthorResponseRequest):
    return _call(
        "AUTHOR_RESPONSE",
        ActivityService.submit_author_response,
        activity_id,
        body.author_id,
        body.content,
        round_number=body.round_number,
    )


@router.post("/{activity_id}/publication")
def choose_publication(activity_id: int, body: PublicationRequest):
    return _call(
        "CHOOSE_PUBLICATION",
        ActivityService.choose_publication,
        activity_id,
        body.user_id,
        body.choice,
        notes=body.notes,
        external_submission_details=body.external_submission_details,
    )


@router.get("/{activity_id}")
def get_activity(activity_id: int):
    with managed_session() as session:
        summary = ActivityService.activity_summary(session, activity_id)
    if summary is None:
        raise HTTPException(
            status_code=404, detail=build_error(ErrorCode.ACTIVITY_NOT_FOUND, {"activity_id": activity_id}).to_dict()
        )
    return summary


@router.get("/{activity_id}/team")
def get_team(activity_id: int):
    with managed_session() as session:
        return {
            "activity_id": activity_id,
            "members": [
                {
                    "user_id": member.user_id,
                    "status": member.status,
                    "joined_at": member.joined_at.isoformat() if member.joined_at else None,
                    "locked_in_at": member.locked_in_at.isoformat() if member.locked_in_at else None,
                }
                for member in ReviewerTeamService.get_team(session, activity_id)
            ],
        }


@router.get("/{activity_id}/timeline")
def get_timeline(activity_id: int):
    with managed_session() as session:
        return {
            "activity_id": activity_id,
            "events": [
                {
                    "event_type": event.event_type,
                    "title": event.title,
                    "description": event.description,
                    "user_id": event.user_id,
                    "from_stage": event.from_stage_key,
                    "stage": event.stage_key,
                    "created_at": event.created_at.isoformat() if event.created_at else None,
                }
                for event in TimelineService.for_activity(session, activity_id)
            ],
        }
