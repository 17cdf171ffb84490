"""
Tests for JSONSerializer.
"""

import json

import pytest

from stowage.exceptions import DecodingError, SerializationError
from stowage.serialization import JSONSerializer, Serializer
from stowage.workflow import Response, Workflow


class TestJSONSerializer:
    """Tests for workflow and response encoding."""

    def test_conforms_to_protocol(self, json_serializer):
        assert isinstance(json_serializer, Serializer)

    def test_workflow_document_names_workflow(self, json_serializer, make_workflow):
        wf = make_workflow({"order_id": "order-123", "items": [1, 2]})

        document = json.loads(json_serializer.serialize_workflow(wf))

        assert document == {
            "workflow": "OrderWorkflow",
            "state": {"order_id": "order-123", "items": [1, 2]},
        }

    def test_workflow_is_restored_through_repository(
        self, json_serializer, make_workflow, repository
    ):
        wf = make_workflow({"order_id": "order-123"})

        restored = json_serializer.deserialize_workflow(
            json_serializer.serialize_workflow(wf), repository
        )

        assert type(restored) is repository.resolve("OrderWorkflow")
        assert restored.data == {"order_id": "order-123"}

    def test_unserializable_state(self, json_serializer, make_workflow):
        with pytest.raises(SerializationError):
            json_serializer.serialize_workflow(make_workflow({"when": object()}))

    @pytest.mark.parametrize(
        "payload",
        [
            "{not json",
            "[]",
            '{"state": {}}',
            '{"workflow": "OrderWorkflow", "state": [1, 2]}',
            '{"workflow": "UnknownWorkflow", "state": {}}',
            '{"workflow": [], "state": {}}',
            '{"workflow": {"name": "OrderWorkflow"}, "state": {}}',
        ],
    )
    def test_undecodable_workflow(self, json_serializer, repository, payload):
        with pytest.raises(DecodingError):
            json_serializer.deserialize_workflow(payload, repository)

    def test_response_with_error(self, json_serializer):
        response = Response("cid-1", exception="card declined")

        restored = json_serializer.deserialize_response(json_serializer.serialize_response(response))

        assert restored == response
        assert restored.timeout is False

    def test_failing_from_state_is_a_decoding_error(self, json_serializer, repository):
        @repository.register
        class PricedWorkflow(Workflow):
            @classmethod
            def from_state(cls, state):
                return cls({"price": state["price"]})

        with pytest.raises(DecodingError) as exc_info:
            json_serializer.deserialize_workflow(
                '{"workflow": "PricedWorkflow", "state": {}}', repository
            )

        assert isinstance(exc_info.value.__cause__, KeyError)

    @pytest.mark.parametrize("payload", ["not json", '{"unexpected": 1}', "[]", '"text"'])
    def test_undecodable_response(self, json_serializer, payload):
        with pytest.raises(DecodingError):
            json_serializer.deserialize_response(payload)


@pytest.mark.asyncio
async def test_default_serializer_is_json(sqlite_storage):
    assert isinstance(sqlite_storage.serializer, JSONSerializer)
