"""
Vote API endpoints.

Handles vote submission, the "have I voted" check, and vote token minting.
Rejections are returned as {message, reason[, resetAt]} with a status code
chosen by rejection reason.
"""

from datetime import datetime, timezone
from typing import Annotated, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import JSONResponse

from api.deps import (
    get_client_ip,
    get_current_user_id_optional,
    get_fingerprint,
    get_vote_integrity_service,
)
from repositories.provider import PollRepositoryProtocol, get_poll_repository
from schemas.poll import PollSettings
from schemas.vote import (
    HasVotedResponse,
    VoteErrorResponse,
    VoteSubmitRequest,
    VoteSubmitResponse,
    VoteTokenResponse,
)
from services.vote_integrity import (
    RejectionReason,
    VoteDecision,
    VoteIntegrityService,
    VoteOutcome,
    VoteSubmission,
)
from services.vote_token import serialize_vote_token

logger = structlog.get_logger(__name__)

router = APIRouter()

REJECTION_STATUS = {
    RejectionReason.POLL_CLOSED: status.HTTP_400_BAD_REQUEST,
    RejectionReason.INVALID_SELECTION: status.HTTP_400_BAD_REQUEST,
    RejectionReason.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    RejectionReason.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    RejectionReason.TOKEN_INVALID: status.HTTP_400_BAD_REQUEST,
    RejectionReason.BEHAVIORAL_REJECT: status.HTTP_400_BAD_REQUEST,
    RejectionReason.TIMING_REJECT: status.HTTP_400_BAD_REQUEST,
    RejectionReason.ALREADY_VOTED: status.HTTP_400_BAD_REQUEST,
}

ERROR_RESPONSES = {
    400: {"model": VoteErrorResponse, "description": "Rejected submission"},
    401: {"model": VoteErrorResponse, "description": "Authentication required"},
    404: {"description": "Poll not found"},
    429: {"model": VoteErrorResponse, "description": "Too many attempts"},
}


async def _get_poll_settings(poll_id: str, poll_repo: PollRepositoryProtocol) -> PollSettings:
    poll = await poll_repo.get_by_id(poll_id)
    if not poll:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Poll not found",
        )
    return PollSettings.from_poll(poll)


def _rejection_response(decision: VoteDecision) -> JSONResponse:
    body = VoteErrorResponse(
        message=decision.message,
        reason=decision.reason.value if decision.reason else None,
        reset_at=decision.reset_at,
    )
    headers = {}
    if decision.reset_at is not None:
        retry_after = (decision.reset_at - datetime.now(timezone.utc)).total_seconds()
        headers["Retry-After"] = str(max(int(retry_after), 1))
    return JSONResponse(
        status_code=REJECTION_STATUS[decision.reason],
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
        headers=headers,
    )


@router.post(
    "/{poll_id}/vote",
    response_model=VoteSubmitResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def submit_vote(
    poll_id: str,
    vote_request: VoteSubmitRequest,
    response: Response,
    client_ip: Annotated[str, Depends(get_client_ip)],
    fingerprint: Annotated[Optional[str], Depends(get_fingerprint)],
    voter_id: Annotated[Optional[str], Depends(get_current_user_id_optional)],
    poll_repo: PollRepositoryProtocol = Depends(get_poll_repository),
    integrity: VoteIntegrityService = Depends(get_vote_integrity_service),
):
    """
    Cast or change a vote on a poll.

    Returns 201 when new votes were recorded and 200 when an existing vote
    was changed (only on polls that allow vote changes).
    """
    poll = await _get_poll_settings(poll_id, poll_repo)

    decision = await integrity.submit_vote(
        poll,
        VoteSubmission(
            option_ids=vote_request.selected_option_ids(),
            voter_id=voter_id,
            ip_address=client_ip,
            fingerprint=fingerprint,
            vote_token=vote_request.vote_token,
            time_on_page=vote_request.time_on_page,
        ),
    )

    if not decision.accepted:
        return _rejection_response(decision)

    if decision.outcome == VoteOutcome.UPDATED:
        response.status_code = status.HTTP_200_OK

    if poll.is_multiple_choice:
        return VoteSubmitResponse(message=decision.message, vote_ids=decision.vote_ids)
    return VoteSubmitResponse(
        message=decision.message,
        vote_id=decision.vote_ids[0] if decision.vote_ids else None,
    )


@router.get("/{poll_id}/has-voted", response_model=HasVotedResponse)
async def has_voted(
    poll_id: str,
    client_ip: Annotated[str, Depends(get_client_ip)],
    fingerprint: Annotated[Optional[str], Depends(get_fingerprint)],
    voter_id: Annotated[Optional[str], Depends(get_current_user_id_optional)],
    poll_repo: PollRepositoryProtocol = Depends(get_poll_repository),
    integrity: VoteIntegrityService = Depends(get_vote_integrity_service),
) -> HasVotedResponse:
    """Check whether the caller already voted, without revealing the choice."""
    poll = await _get_poll_settings(poll_id, poll_repo)
    voted = await integrity.has_voted(poll, voter_id, client_ip, fingerprint)
    return HasVotedResponse(has_voted=voted)


@router.post("/{poll_id}/vote-token", response_model=VoteTokenResponse)
async def issue_vote_token(
    poll_id: str,
    fingerprint: Annotated[Optional[str], Depends(get_fingerprint)],
    poll_repo: PollRepositoryProtocol = Depends(get_poll_repository),
    integrity: VoteIntegrityService = Depends(get_vote_integrity_service),
) -> VoteTokenResponse:
    """
    Mint a server-signed vote token for this poll and device.

    The token is valid for a few minutes and can be spent on one submission.
    """
    if not fingerprint:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Fingerprint header is required",
        )

    poll = await _get_poll_settings(poll_id, poll_repo)
    token = integrity.mint_token(poll.id, fingerprint)
    expires_at = datetime.fromtimestamp(
        integrity.token_service.expires_at_ms(token) / 1000, tz=timezone.utc
    )
    return VoteTokenResponse(vote_token=serialize_vote_token(token), expires_at=expires_at)
