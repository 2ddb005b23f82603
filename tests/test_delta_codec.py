"""Tests for the delta codec and wire protocol."""

import pytest

from common.delta_codec import (
    DeltaUnit,
    FullUnit,
    apply_transfer_unit,
    compute_transfer_unit,
    diff_values,
    serialized_size,
    unit_from_dict,
    unit_to_dict,
)
from common.exceptions import DeltaApplyError, InvalidDocument
from common.protocol import SyncRequest, SyncResponse
from common.types import Document, SyncResults


@pytest.fixture
def large_doc():
    payload = {
        "title": "Quarterly report",
        "body": "lorem ipsum " * 40,
        "meta": {"author": "alice", "reviewers": ["bob", "carol"], "draft": True},
    }
    return Document(id="report", updated_at=100, revision=3, payload=payload)


def edit_with_size_ratio(numerator, denominator):
    """
    Build a title edit whose diff is exactly numerator/denominator of the
    edited document's serialized size, padding an unchanged field to fit.
    """
    for title_length in range(1, 100):
        previous = Document(id="r", updated_at=100, revision=2, payload={"pad": "", "title": ""})
        current = Document(
            id="r", updated_at=101, revision=2, payload={"pad": "", "title": "t" * title_length}
        )
        diff_size = serialized_size(diff_values(previous.to_dict(), current.to_dict()))
        full_size = serialized_size(current.to_dict())

        target, remainder = divmod(diff_size * denominator, numerator)
        padding = target - full_size
        if remainder == 0 and padding >= 0:
            payload = {"pad": "p" * padding}
            return (
                Document(id="r", updated_at=100, revision=2, payload={**payload, "title": ""}),
                Document(id="r", updated_at=101, revision=2, payload={**payload, "title": "t" * title_length}),
            )
    raise AssertionError("no edit with the requested size ratio")


class TestComputeTransferUnit:
    """Test delta vs full selection."""

    def test_no_previous_sends_full(self, large_doc):
        assert compute_transfer_unit(None, large_doc) == FullUnit(large_doc)

    def test_small_change_sends_delta(self, large_doc):
        edited = Document.from_dict({**large_doc.to_dict(), "updatedAt": 101, "title": "Q3 report"})

        unit = compute_transfer_unit(large_doc, edited)

        assert isinstance(unit, DeltaUnit)
        assert unit.base_revision == 3
        assert {"op": "set", "path": ["title"], "value": "Q3 report"} in unit.diff

    def test_large_change_sends_full(self, large_doc):
        rewritten = Document(
            id="report", updated_at=101, revision=3,
            payload={"title": "new", "body": "completely different " * 40},
        )

        assert isinstance(compute_transfer_unit(large_doc, rewritten), FullUnit)

    def test_threshold_is_tunable(self, large_doc):
        edited = Document.from_dict({**large_doc.to_dict(), "updatedAt": 101, "title": "Q3"})
        assert isinstance(compute_transfer_unit(large_doc, edited, threshold=0.0), FullUnit)

    def test_diff_at_exactly_threshold_stays_delta(self):
        previous, current = edit_with_size_ratio(3, 5)

        unit = compute_transfer_unit(previous, current)

        assert isinstance(unit, DeltaUnit)
        assert apply_transfer_unit(previous, unit) == current

    def test_diff_at_seventy_percent_sends_full(self):
        previous, current = edit_with_size_ratio(7, 10)

        assert compute_transfer_unit(previous, current) == FullUnit(current)

    def test_unrelated_documents_rejected(self, large_doc):
        other = Document(id="other", updated_at=1)
        with pytest.raises(ValueError):
            compute_transfer_unit(large_doc, other)


class TestApplyTransferUnit:
    """Test reconstruction from units."""

    def test_round_trip_with_nested_changes(self, large_doc):
        data = large_doc.to_dict()
        data["updatedAt"] = 150
        data["meta"] = {"author": "alice", "reviewers": ["bob"]}
        data["status"] = "final"
        edited = Document.from_dict(data)

        unit = compute_transfer_unit(large_doc, edited)
        assert isinstance(unit, DeltaUnit)

        assert apply_transfer_unit(large_doc, unit) == edited

    def test_full_unit_ignores_base(self, large_doc):
        replacement = Document(id="report", updated_at=200)
        assert apply_transfer_unit(None, FullUnit(replacement)) is replacement

    def test_delta_requires_base(self):
        unit = DeltaUnit(document_id="x", diff=[], base_revision=1)
        with pytest.raises(DeltaApplyError):
            apply_transfer_unit(None, unit)

    def test_delta_requires_matching_revision(self, large_doc):
        unit = DeltaUnit(
            document_id="report",
            diff=[{"op": "set", "path": ["title"], "value": "x"}],
            base_revision=2,
        )
        with pytest.raises(DeltaApplyError):
            apply_transfer_unit(large_doc, unit)

    def test_delta_with_missing_parent_path(self, large_doc):
        unit = DeltaUnit(
            document_id="report",
            diff=[{"op": "set", "path": ["nope", "deeper"], "value": 1}],
            base_revision=3,
        )
        with pytest.raises(DeltaApplyError):
            apply_transfer_unit(large_doc, unit)

    def test_delta_producing_invalid_document(self, large_doc):
        unit = DeltaUnit(
            document_id="report",
            diff=[{"op": "set", "path": ["updatedAt"], "value": -1}],
            base_revision=3,
        )
        with pytest.raises(DeltaApplyError):
            apply_transfer_unit(large_doc, unit)


class TestWireEntries:
    """Test unit encoding on the wire."""

    def test_delta_entry_shape(self):
        unit = DeltaUnit(document_id="a", diff=[{"op": "unset", "path": ["x"]}], base_revision=4)
        entry = unit_to_dict(unit)

        assert entry == {
            "id": "a",
            "$delta": {"ops": [{"op": "unset", "path": ["x"]}], "baseRevision": 4},
        }
        assert unit_from_dict(entry) == unit

    def test_full_entry_is_document(self):
        doc = Document(id="a", updated_at=3, payload={"x": 1})
        assert unit_from_dict(unit_to_dict(FullUnit(doc))) == FullUnit(doc)

    def test_payload_named_like_delta_stays_full(self):
        doc = Document(
            id="a", updated_at=3, payload={"delta": [], "baseRevision": 1, "title": "new"}
        )
        entry = unit_to_dict(FullUnit(doc))

        assert unit_from_dict(entry) == FullUnit(doc)

    def test_delta_field_is_reserved(self):
        with pytest.raises(InvalidDocument):
            Document(id="a", updated_at=3, payload={"$delta": 1})

    @pytest.mark.parametrize("entry", [
        {"id": "a", "$delta": "oops"},
        {"id": "a", "$delta": {"ops": "x", "baseRevision": 1}},
        {"id": "a", "$delta": {"ops": [], "baseRevision": "1"}},
        {"$delta": {"ops": [], "baseRevision": 1}},
    ])
    def test_malformed_delta_entry(self, entry):
        with pytest.raises(InvalidDocument):
            unit_from_dict(entry)


class TestProtocol:
    """Test exchange envelopes."""

    def test_request_camel_case(self):
        doc = Document(id="a", updated_at=3)
        request = SyncRequest.from_units(42, [FullUnit(doc)])

        body = request.to_dict()

        assert body["lastSyncTimestamp"] == 42
        assert body["changedDocs"][0]["id"] == "a"
        assert SyncRequest.from_dict(body) == request

    def test_request_rejects_negative_watermark(self):
        with pytest.raises(InvalidDocument):
            SyncRequest.from_dict({"lastSyncTimestamp": -1, "changedDocs": []})

    def test_request_rejects_non_list_docs(self):
        with pytest.raises(InvalidDocument):
            SyncRequest.from_dict({"changedDocs": {"id": "a"}})

    def test_response_round_trip(self):
        response = SyncResponse(
            timestamp=77,
            docs=[Document(id="a", updated_at=3, revision=1, server_updated_at=70)],
            sync_results=SyncResults(added=1),
            resync_ids=["b"],
        )

        body = response.to_dict()

        assert set(body) == {"timestamp", "docs", "syncResults", "resyncIds"}
        assert SyncResponse.from_dict(body) == response

    def test_response_requires_timestamp(self):
        with pytest.raises(InvalidDocument):
            SyncResponse.from_dict({"docs": []})
