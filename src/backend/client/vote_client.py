"""
Async HTTP client for the PollGuard vote API.

Wraps fingerprint collection, vote tokens and local vote hints around the
three vote endpoints. The device fingerprint is computed once per client
instance and sent as X-Fingerprint on every request.
"""

from datetime import datetime
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from client.fingerprint import FingerprintCollector, FingerprintEnvironment
from client.vote_hint import LocalVoteHint
from schemas.vote import HasVotedResponse, VoteErrorResponse, VoteSubmitResponse, VoteTokenResponse
from services.vote_token import mint_client_token, serialize_vote_token

logger = structlog.get_logger(__name__)

FINGERPRINT_HEADER = "X-Fingerprint"
DEFAULT_TIMEOUT = 10.0


class VoteSubmissionError(Exception):
    """The server rejected a vote."""

    def __init__(
        self,
        status_code: int,
        message: str,
        reason: Optional[str] = None,
        reset_at: Optional[datetime] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.reason = reason
        self.reset_at = reset_at


class VoteResult(BaseModel):
    message: str
    vote_ids: list[str] = Field(default_factory=list)
    updated: bool = False


class PollVoteClient:
    """
    Client for casting votes from one device.

    Usage:
        async with PollVoteClient("https://polls.example.com", env, hint) as client:
            if not await client.has_voted(poll_id):
                await client.vote(poll_id, [option_id], time_on_page=12)
    """

    def __init__(
        self,
        base_url: str,
        environment: FingerprintEnvironment,
        hint: Optional[LocalVoteHint] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        access_token: Optional[str] = None,
    ):
        self.collector = FingerprintCollector(environment)
        self.hint = hint
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(base_url=base_url, timeout=DEFAULT_TIMEOUT)
        self.access_token = access_token
        self._fingerprint: Optional[str] = None

    async def __aenter__(self) -> "PollVoteClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    async def fingerprint(self) -> str:
        """Enhanced device fingerprint, cached for the life of the client."""
        if self._fingerprint is None:
            self._fingerprint = await self.collector.enhanced_fingerprint()
        return self._fingerprint

    async def _headers(self) -> dict[str, str]:
        headers = {FINGERPRINT_HEADER: await self.fingerprint()}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def has_voted(self, poll_id: str) -> bool:
        """Local hint first, then ask the server."""
        if self.hint is not None and await self.hint.has_voted(poll_id):
            return True

        response = await self.http.get(f"/api/polls/{poll_id}/has-voted", headers=await self._headers())
        response.raise_for_status()
        return HasVotedResponse.model_validate(response.json()).has_voted

    async def get_vote_token(self, poll_id: str) -> str:
        """
        Fetch a server-signed vote token.

        Falls back to a client-minted token when the server cannot be
        reached or refuses. Those are only accepted by servers configured
        to trust them.
        """
        fingerprint = await self.fingerprint()
        try:
            response = await self.http.post(
                f"/api/polls/{poll_id}/vote-token",
                headers=await self._headers(),
            )
            if response.status_code == httpx.codes.OK:
                return VoteTokenResponse.model_validate(response.json()).vote_token
            logger.warning("vote_token_request_refused", poll_id=poll_id, status=response.status_code)
        except httpx.HTTPError as e:
            logger.warning("vote_token_request_failed", poll_id=poll_id, error=str(e))

        return serialize_vote_token(mint_client_token(poll_id, fingerprint))

    async def vote(
        self,
        poll_id: str,
        option_ids: list[str],
        time_on_page: Optional[float] = None,
        vote_token: Optional[str] = None,
    ) -> VoteResult:
        """
        Submit a vote and remember it locally on success.

        Raises:
            VoteSubmissionError: If the server rejects the vote.
        """
        token = vote_token or await self.get_vote_token(poll_id)

        body: dict = {"voteToken": token}
        if time_on_page is not None:
            body["timeOnPage"] = time_on_page
        if len(option_ids) == 1:
            body["optionId"] = option_ids[0]
        else:
            body["optionIds"] = option_ids

        response = await self.http.post(
            f"/api/polls/{poll_id}/vote",
            json=body,
            headers=await self._headers(),
        )

        if response.is_error:
            try:
                error = VoteErrorResponse.model_validate(response.json())
            except ValueError:
                error = VoteErrorResponse(message=response.text or response.reason_phrase)
            logger.info(
                "vote_submission_rejected",
                poll_id=poll_id,
                status=response.status_code,
                reason=error.reason,
            )
            raise VoteSubmissionError(
                status_code=response.status_code,
                message=error.message,
                reason=error.reason,
                reset_at=error.reset_at,
            )

        accepted = VoteSubmitResponse.model_validate(response.json())
        vote_ids = accepted.vote_ids or ([accepted.vote_id] if accepted.vote_id else [])

        if self.hint is not None:
            await self.hint.record_vote(poll_id, await self.fingerprint(), option_ids)

        return VoteResult(
            message=accepted.message,
            vote_ids=vote_ids,
            updated=response.status_code == httpx.codes.OK,
        )
