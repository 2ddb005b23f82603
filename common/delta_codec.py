"""
Delta codec for document transfer.

Computes a structural diff between two versions of the same document and
falls back to sending the full document when the diff is not worth it.
Diffs are lists of set/unset operations over JSON paths; nested objects
recurse, lists and scalars are replaced whole. Each delta records the
revision of the version it was computed against, so it can only be
applied to that exact base.
"""

import copy
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from common.constants import DELTA_SIZE_THRESHOLD
from common.exceptions import DeltaApplyError, InvalidDocument
from common.types import DELTA_FIELD, Document, ID_FIELD

logger = logging.getLogger(__name__)

OP_SET = "set"
OP_UNSET = "unset"

OPS_KEY = "ops"
BASE_REVISION_KEY = "baseRevision"


@dataclass(frozen=True)
class FullUnit:
    """Transfer unit carrying the complete document."""
    document: Document


@dataclass(frozen=True)
class DeltaUnit:
    """Transfer unit carrying a diff against a known base revision."""
    document_id: str
    diff: List[Dict[str, Any]]
    base_revision: int


TransferUnit = Union[FullUnit, DeltaUnit]


def serialized_size(value: Any) -> int:
    """
    Size in bytes of the compact, key-sorted JSON encoding of a value.
    """
    return len(json.dumps(value, sort_keys=True, separators=(",", ":")).encode("utf-8"))


def diff_values(previous: Dict[str, Any], current: Dict[str, Any], path: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    """
    Compute set/unset operations turning `previous` into `current`.

    Args:
        previous: Old JSON object
        current: New JSON object
        path: Path prefix of the objects being compared

    Returns:
        Operations in deterministic (sorted key) order
    """
    prefix = path or []
    operations: List[Dict[str, Any]] = []

    for key in sorted(set(previous) | set(current)):
        key_path = prefix + [key]
        if key not in current:
            operations.append({"op": OP_UNSET, "path": key_path})
            continue

        new_value = current[key]
        if key not in previous:
            operations.append({"op": OP_SET, "path": key_path, "value": copy.deepcopy(new_value)})
            continue

        old_value = previous[key]
        if isinstance(old_value, dict) and isinstance(new_value, dict):
            operations.extend(diff_values(old_value, new_value, key_path))
        elif old_value != new_value or type(old_value) is not type(new_value):
            operations.append({"op": OP_SET, "path": key_path, "value": copy.deepcopy(new_value)})

    return operations


def patch_values(base: Dict[str, Any], operations: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Apply set/unset operations to a copy of `base`.

    Raises:
        DeltaApplyError: If an operation is malformed or its parent path is missing
    """
    result = copy.deepcopy(base)

    for operation in operations:
        op = operation.get("op") if isinstance(operation, dict) else None
        path = operation.get("path") if isinstance(operation, dict) else None
        if op not in (OP_SET, OP_UNSET) or not isinstance(path, list) or not path:
            raise DeltaApplyError(f"Malformed delta operation: {operation!r}")

        parent = result
        for segment in path[:-1]:
            child = parent.get(segment) if isinstance(parent, dict) else None
            if not isinstance(child, dict):
                raise DeltaApplyError(f"Delta path {path} does not exist in base document")
            parent = child

        leaf = path[-1]
        if op == OP_SET:
            if "value" not in operation:
                raise DeltaApplyError(f"Delta set operation at {path} has no value")
            parent[leaf] = copy.deepcopy(operation["value"])
        else:
            parent.pop(leaf, None)

    return result


def compute_transfer_unit(
    previous: Optional[Document],
    current: Document,
    threshold: float = DELTA_SIZE_THRESHOLD
) -> TransferUnit:
    """
    Produce the cheapest transfer unit for `current`.

    Args:
        previous: Last version the receiver is known to hold, or None
        current: Version to transfer
        threshold: Maximum diff size as a fraction of the full document size

    Returns:
        DeltaUnit when the diff is small enough, FullUnit otherwise

    Raises:
        ValueError: If previous and current are different logical documents
    """
    if previous is None:
        return FullUnit(current)

    if previous.id != current.id:
        raise ValueError(
            f"Cannot diff unrelated documents {previous.id!r} and {current.id!r}"
        )

    current_data = current.to_dict()
    operations = diff_values(previous.to_dict(), current_data)

    diff_size = serialized_size(operations)
    full_size = serialized_size(current_data)

    if diff_size > full_size * threshold:
        logger.debug(
            f"Sending full document [doc_id={current.id}] "
            f"(diff {diff_size}B > {threshold:.0%} of {full_size}B)"
        )
        return FullUnit(current)

    return DeltaUnit(document_id=current.id, diff=operations, base_revision=previous.revision)


def apply_transfer_unit(base: Optional[Document], unit: TransferUnit) -> Document:
    """
    Reconstruct a document from a transfer unit.

    Args:
        base: Receiver's copy of the document (required for deltas)
        unit: FullUnit or DeltaUnit

    Returns:
        Reconstructed Document

    Raises:
        DeltaApplyError: If the base is missing or is not the recorded base revision
    """
    if isinstance(unit, FullUnit):
        return unit.document

    if base is None:
        raise DeltaApplyError(f"No base document available for delta on {unit.document_id}")
    if base.id != unit.document_id:
        raise DeltaApplyError(
            f"Delta for {unit.document_id} cannot be applied to document {base.id}"
        )
    if base.revision != unit.base_revision:
        raise DeltaApplyError(
            f"Delta for {unit.document_id} expects base revision {unit.base_revision}, "
            f"found {base.revision}"
        )

    patched = patch_values(base.to_dict(), unit.diff)
    try:
        return Document.from_dict(patched)
    except InvalidDocument as e:
        raise DeltaApplyError(f"Delta for {unit.document_id} produced an invalid document: {e}") from e


def is_delta_entry(data: Any) -> bool:
    """Whether a wire entry carries the delta envelope rather than a document."""
    return isinstance(data, dict) and DELTA_FIELD in data


def unit_to_dict(unit: TransferUnit) -> Dict[str, Any]:
    """
    Encode a transfer unit as a wire entry.

    Deltas travel as `{"id": ..., "$delta": {"ops": [...], "baseRevision": n}}`;
    `$delta` is a reserved field, so no document can be mistaken for one.
    """
    if isinstance(unit, FullUnit):
        return unit.document.to_dict()
    return {
        ID_FIELD: unit.document_id,
        DELTA_FIELD: {
            OPS_KEY: unit.diff,
            BASE_REVISION_KEY: unit.base_revision,
        },
    }


def unit_from_dict(data: Dict[str, Any]) -> TransferUnit:
    """
    Decode a wire entry into a transfer unit.

    Raises:
        InvalidDocument: If the entry is neither a valid document nor a valid delta
    """
    if not is_delta_entry(data):
        return FullUnit(Document.from_dict(data))

    document_id = data.get(ID_FIELD)
    envelope = data[DELTA_FIELD]
    if not isinstance(document_id, str) or not document_id:
        raise InvalidDocument("Delta entry requires a document id")
    if not isinstance(envelope, dict):
        raise InvalidDocument(f"Malformed delta entry for {document_id}")
    diff = envelope.get(OPS_KEY)
    base_revision = envelope.get(BASE_REVISION_KEY)
    if not isinstance(diff, list) or not isinstance(base_revision, int) or isinstance(base_revision, bool):
        raise InvalidDocument(f"Malformed delta entry for {document_id}")
    return DeltaUnit(document_id=document_id, diff=diff, base_revision=base_revision)
