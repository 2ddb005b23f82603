"""Per-collection validation, transform and merge hooks."""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from common.conflict_resolver import ConflictHandler, ConflictPolicy
from common.schema import CollectionSchema
from common.types import Document

logger = logging.getLogger(__name__)

Validator = Callable[[Document, Optional[str]], bool]
Transform = Callable[[Document, Optional[str]], Document]


@dataclass
class CollectionPolicy:
    """
    Hooks a collection may declare.

    Attributes:
        validate: Returns False to reject an incoming document
        transform: Rewrites each outbound document for the requesting actor
        conflict_handler: Merge function used instead of the conflict policy
        conflict_policy: Policy override for this collection
        schema: Collection schema used to upgrade older documents
    """
    validate: Optional[Validator] = None
    transform: Optional[Transform] = None
    conflict_handler: Optional[ConflictHandler] = None
    conflict_policy: Optional[ConflictPolicy] = None
    schema: Optional[CollectionSchema] = None


class PolicyRegistry:
    """Collection name -> CollectionPolicy lookup with an empty default."""

    def __init__(self, policies: Optional[Dict[str, CollectionPolicy]] = None):
        self._policies: Dict[str, CollectionPolicy] = dict(policies or {})
        self._default = CollectionPolicy()

    def register(self, collection: str, policy: CollectionPolicy) -> None:
        self._policies[collection] = policy
        logger.info(f"Registered policy for collection {collection}")

    def get(self, collection: str) -> CollectionPolicy:
        return self._policies.get(collection, self._default)

    def collections(self):
        return sorted(self._policies)
