"""
Conflict resolution between a stored document and an incoming write.

resolve() is a pure function: it never touches a store and returns the same
outcome for the same inputs. Callers apply the outcome.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from common.exceptions import OwnershipViolation
from common.types import Document

logger = logging.getLogger(__name__)


class ConflictPolicy(str, Enum):
    """Strategy applied when the stored version is strictly newer."""
    SERVER_WINS = "server-wins"
    CLIENT_WINS = "client-wins"
    TIMESTAMP_WINS = "timestamp-wins"
    MANUAL = "manual"


TIE_CLIENT = "client"
TIE_SERVER = "server"

ConflictHandler = Callable[[Document, Document, Optional[str]], Optional[Document]]


@dataclass(frozen=True)
class Insert:
    document: Document
    kind: str = "insert"


@dataclass(frozen=True)
class Accept:
    document: Document
    kind: str = "accept"


@dataclass(frozen=True)
class Reject:
    server_document: Document
    kind: str = "reject"


@dataclass(frozen=True)
class Merge:
    document: Document
    kind: str = "merge"


@dataclass(frozen=True)
class Queue:
    server_document: Document
    client_document: Document
    kind: str = "queue"


@dataclass(frozen=True)
class NoOp:
    kind: str = "noop"


Outcome = Union[Insert, Accept, Reject, Merge, Queue, NoOp]


def check_ownership(
    client_doc: Document,
    actor_id: Optional[str],
    server_doc: Optional[Document] = None
) -> None:
    """
    Verify the actor may write this document.

    Args:
        client_doc: Incoming version
        actor_id: Requesting actor, None when ownership is not enforced
        server_doc: Stored version, if any

    Raises:
        OwnershipViolation: If either version is owned by another actor
    """
    if actor_id is None:
        return

    if client_doc.owner_id is not None and client_doc.owner_id != actor_id:
        raise OwnershipViolation(
            f"Actor {actor_id} cannot write document {client_doc.id} owned by {client_doc.owner_id}"
        )

    if server_doc is not None and server_doc.owner_id is not None and server_doc.owner_id != actor_id:
        raise OwnershipViolation(
            f"Actor {actor_id} cannot overwrite document {server_doc.id} owned by {server_doc.owner_id}"
        )


def resolve(
    server_doc: Optional[Document],
    client_doc: Document,
    policy: Union[ConflictPolicy, str] = ConflictPolicy.SERVER_WINS,
    actor_id: Optional[str] = None,
    conflict_handler: Optional[ConflictHandler] = None,
    tie_breaker: str = TIE_CLIENT
) -> Outcome:
    """
    Classify an incoming write against the stored version.

    Args:
        server_doc: Stored version, or None if the document does not exist
        client_doc: Incoming version
        policy: Conflict policy for the strictly-server-newer case
        actor_id: Requesting actor, passed to the conflict handler
        conflict_handler: Optional merge function overriding policy on conflict
        tie_breaker: "client" (default) lets equal timestamps through,
            "server" treats them as a conflict

    Returns:
        Outcome describing what to store and what to report
    """
    policy = ConflictPolicy(policy)

    if server_doc is None:
        if client_doc.deleted:
            return NoOp()
        return Insert(client_doc)

    if client_doc.deleted and client_doc.updated_at >= server_doc.updated_at:
        return Accept(client_doc)

    server_newer = server_doc.updated_at > client_doc.updated_at
    if not server_newer and tie_breaker == TIE_SERVER:
        server_newer = (
            server_doc.updated_at == client_doc.updated_at
            and (server_doc.payload, server_doc.deleted) != (client_doc.payload, client_doc.deleted)
        )

    if not server_newer:
        return Accept(client_doc)

    if conflict_handler is not None:
        merged = conflict_handler(server_doc, client_doc, actor_id)
        if merged is None:
            return Reject(server_doc)
        return Merge(merged)

    if policy == ConflictPolicy.CLIENT_WINS:
        return Accept(client_doc)
    if policy == ConflictPolicy.MANUAL:
        return Queue(server_doc, client_doc)
    # server-wins and timestamp-wins both keep the strictly newer server copy
    return Reject(server_doc)
