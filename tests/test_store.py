import pytest

from farmassist.errors import AnalysisNotFoundError, StatusTransitionError
from farmassist.models import Detection, Location, ProcessingStep


def _create(store, **fields):
    values = {"imageUrl": "http://x/img.jpg", "crop": "wheat", "location": Location(state="Punjab")}
    values.update(fields)
    return store.create_record(values)


class TestRecords:
    def test_create_and_get(self, store):
        analysis_id = _create(store, user="farmer-1")
        record = store.get_record(analysis_id)
        assert record.id == analysis_id
        assert record.status == "pending"
        assert record.user == "farmer-1"
        assert record.location.state == "Punjab"
        assert record.processingSteps == []
        assert record.createdAt is not None
        assert record.confidencePercentage == 0

    def test_get_missing_raises(self, store):
        with pytest.raises(AnalysisNotFoundError):
            store.get_record("does-not-exist")

    def test_unknown_field_rejected(self, store):
        with pytest.raises(ValueError):
            store.create_record({"imageUrl": "http://x", "colour": "green"})

    def test_json_fields_round_trip(self, store):
        analysis_id = _create(store)
        store.update_fields(analysis_id, {
            "status": "processing",
            "detection": Detection(disease="Leaf Rust", confidence=0.924, severity="high", reliable=True),
        })
        record = store.get_record(analysis_id)
        assert record.detection.disease == "Leaf Rust"
        assert record.detection.reliable is True
        assert record.confidencePercentage == 92

    def test_image_base64_not_serialized(self, store):
        analysis_id = store.create_record({"imageBase64": "aGVsbG8="})
        record = store.get_record(analysis_id)
        assert record.image_ref().base64 == "aGVsbG8="
        assert "imageBase64" not in record.model_dump()


class TestStatusTransitions:
    @pytest.mark.parametrize("path", [
        ["processing", "completed"],
        ["processing", "failed", "pending", "processing"],
        ["failed", "pending"],
    ])
    def test_allowed_paths(self, store, path):
        analysis_id = _create(store)
        for status in path:
            store.update_fields(analysis_id, {"status": status})
        assert store.get_record(analysis_id).status == path[-1]

    @pytest.mark.parametrize("path", [
        ["completed"],
        ["processing", "pending"],
        ["processing", "completed", "failed"],
        ["processing", "completed", "processing"],
    ])
    def test_rejected_paths(self, store, path):
        analysis_id = _create(store)
        for status in path[:-1]:
            store.update_fields(analysis_id, {"status": status})
        with pytest.raises(StatusTransitionError):
            store.update_fields(analysis_id, {"status": path[-1]})
        assert store.get_record(analysis_id).status == (path[-2] if len(path) > 1 else "pending")

    def test_rejected_transition_writes_nothing(self, store):
        analysis_id = _create(store)
        with pytest.raises(StatusTransitionError):
            store.update_fields(analysis_id, {"status": "completed", "error": "should not land"})
        assert store.get_record(analysis_id).error is None

    @pytest.mark.parametrize("status", ["pending", "processing"])
    def test_same_status_write_rejected(self, store, status):
        analysis_id = _create(store)
        if status != "pending":
            store.update_fields(analysis_id, {"status": status})
        with pytest.raises(StatusTransitionError):
            store.update_fields(analysis_id, {"status": status})

    def test_expected_status_mismatch_rejected(self, store):
        analysis_id = _create(store)
        with pytest.raises(StatusTransitionError):
            store.update_fields(analysis_id, {"status": "processing"}, expected_status="failed")
        assert store.get_record(analysis_id).status == "pending"

        store.update_fields(analysis_id, {"status": "processing"}, expected_status="pending")
        assert store.get_record(analysis_id).status == "processing"


class TestSteps:
    def test_append_preserves_order(self, store):
        analysis_id = _create(store)
        for name in ("initialization", "imageAnalysis", "diseaseDetection"):
            store.append_step(analysis_id, ProcessingStep(step=name, status="completed", result={"n": name}))
        store.append_step(analysis_id, {"step": "recommendations", "status": "failed", "error": "boom"})

        steps = store.get_record(analysis_id).processingSteps
        assert [s.step for s in steps] == ["initialization", "imageAnalysis", "diseaseDetection", "recommendations"]
        assert steps[0].result == {"n": "initialization"}
        assert steps[-1].error == "boom"

    def test_append_to_missing_record(self, store):
        with pytest.raises(AnalysisNotFoundError):
            store.append_step("missing", ProcessingStep(step="initialization", status="completed"))

    def test_append_with_fields_is_atomic(self, store):
        analysis_id = _create(store)
        store.append_step(
            analysis_id,
            ProcessingStep(step="initialization", status="completed"),
            fields={"status": "processing"},
            expected_status="pending",
        )
        with pytest.raises(StatusTransitionError):
            store.append_step(
                analysis_id,
                ProcessingStep(step="finalization", status="completed"),
                fields={"status": "completed", "aiProvider": "groq"},
                expected_status="pending",
            )

        record = store.get_record(analysis_id)
        assert record.status == "processing"
        assert record.aiProvider is None
        assert [s.step for s in record.processingSteps] == ["initialization"]

    def test_raw_responses_merge(self, store):
        analysis_id = _create(store)
        store.set_raw_response(analysis_id, "imageAnalysis", {"disease": "Leaf Rust"})
        store.set_raw_response(analysis_id, "retry", {"attempt": 2})
        raw = store.get_record(analysis_id).rawResponses
        assert raw == {"imageAnalysis": {"disease": "Leaf Rust"}, "retry": {"attempt": 2}}


class TestQueries:
    def test_list_newest_first_with_filters(self, store):
        first = _create(store, user="a")
        second = _create(store, user="a")
        other = _create(store, user="b")
        store.update_fields(second, {"status": "processing"})
        store.append_step(first, ProcessingStep(step="initialization", status="completed"))

        records, total = store.list_records(user="a")
        assert total == 2
        assert [r.id for r in records] == [second, first]
        assert records[1].processingSteps == []

        records, total = store.list_records(status="processing")
        assert [r.id for r in records] == [second]

        records, total = store.list_records(limit=1, offset=1)
        assert total == 3
        assert len(records) == 1
        assert other in [r.id for r in store.list_records()[0]]

    def test_count_by_status(self, store):
        a = _create(store, user="a")
        _create(store, user="a")
        _create(store, user="b")
        store.update_fields(a, {"status": "failed", "error": "x"})

        counts = store.count_by_status(user="a")
        assert counts == {"pending": 1, "processing": 0, "completed": 0, "failed": 1, "total": 2}
        assert store.count_by_status()["total"] == 3

    def test_delete(self, store):
        analysis_id = _create(store, user="a")
        store.append_step(analysis_id, ProcessingStep(step="initialization", status="completed"))
        with pytest.raises(AnalysisNotFoundError):
            store.delete_record(analysis_id, user="b")
        store.delete_record(analysis_id, user="a")
        with pytest.raises(AnalysisNotFoundError):
            store.get_record(analysis_id)
