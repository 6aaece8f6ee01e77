"""Python client for PollGuard: device fingerprinting, local vote hints, API access."""

from client.fingerprint import (
    FingerprintCollector,
    FingerprintComponents,
    StaticEnvironment,
    SystemEnvironment,
    hash_components,
)
from client.vote_client import PollVoteClient, VoteResult, VoteSubmissionError
from client.vote_hint import (
    CookieHintStore,
    JsonFileHintStore,
    LocalVoteHint,
    MemoryHintStore,
    SqliteHintStore,
)

__all__ = [
    "CookieHintStore",
    "FingerprintCollector",
    "FingerprintComponents",
    "JsonFileHintStore",
    "LocalVoteHint",
    "MemoryHintStore",
    "PollVoteClient",
    "SqliteHintStore",
    "StaticEnvironment",
    "SystemEnvironment",
    "VoteResult",
    "VoteSubmissionError",
    "hash_components",
]
