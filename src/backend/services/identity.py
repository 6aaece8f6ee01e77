"""
Voter identity policy.

A poll's flags decide which signals identify "the same participant":

- Non-anonymous poll: the authenticated voter id, nothing else.
- Anonymous poll with a device fingerprint: (ip, hashed fingerprint).
- Anonymous poll without one: ip alone. Anyone sharing the IP and also
  sending no fingerprint counts as the same participant.

The identity is resolved once per request and passed as a single value to
storage and the duplicate resolver.
"""

from typing import Literal, Optional, Union

from pydantic import BaseModel

from schemas.poll import PollSettings


class AuthenticatedIdentity(BaseModel):
    kind: Literal["authenticated"] = "authenticated"
    voter_id: str

    model_config = {"frozen": True}


class AnonymousStrongIdentity(BaseModel):
    kind: Literal["anonymous_strong"] = "anonymous_strong"
    ip_address: str
    hashed_fingerprint: str

    model_config = {"frozen": True}


class AnonymousWeakIdentity(BaseModel):
    kind: Literal["anonymous_weak"] = "anonymous_weak"
    ip_address: str

    model_config = {"frozen": True}


VoterIdentity = Union[AuthenticatedIdentity, AnonymousStrongIdentity, AnonymousWeakIdentity]


def resolve_identity(
    poll: PollSettings,
    voter_id: Optional[str],
    ip_address: str,
    hashed_fingerprint: Optional[str],
) -> Optional[VoterIdentity]:
    """
    Pick the identity used to deduplicate votes on ``poll``.

    Returns None when the poll requires an account and no voter id is
    available; callers treat that as an authentication failure.
    """
    if not poll.is_anonymous:
        if not voter_id:
            return None
        return AuthenticatedIdentity(voter_id=voter_id)

    if hashed_fingerprint:
        return AnonymousStrongIdentity(ip_address=ip_address, hashed_fingerprint=hashed_fingerprint)
    return AnonymousWeakIdentity(ip_address=ip_address)
