"""
Serialization of workflows and responses.

The storage treats serialized workflows as opaque text. Any object conforming
to the Serializer protocol can be plugged into SQLAlchemyStorage; JSONSerializer
is the default.
"""

import json
from dataclasses import asdict
from typing import Any, Protocol, runtime_checkable

from stowage.exceptions import DecodingError, SerializationError
from stowage.workflow import Response, Workflow, WorkflowRepository


@runtime_checkable
class Serializer(Protocol):
    """Converts workflows and responses to and from their stored form."""

    def serialize_workflow(self, workflow: Workflow) -> str:
        """
        Encode a workflow's persistent state.

        Raises:
            SerializationError: If the state cannot be encoded
        """
        ...

    def deserialize_workflow(self, data: str, repository: WorkflowRepository) -> Workflow:
        """
        Decode a workflow, resolving its class through the repository.

        Raises:
            DecodingError: If the payload is corrupt or names an unknown workflow
        """
        ...

    def serialize_response(self, response: Response) -> str: ...

    def deserialize_response(self, data: str) -> Response: ...


class JSONSerializer:
    """Serializer storing workflows and responses as JSON documents."""

    def serialize_workflow(self, workflow: Workflow) -> str:
        document = {"workflow": workflow.workflow_name, "state": workflow.get_state()}
        return self._dumps(document, f"workflow {workflow.id}")

    def deserialize_workflow(self, data: str, repository: WorkflowRepository) -> Workflow:
        document = self._loads(data)
        try:
            workflow_name = document["workflow"]
            state = document["state"]
        except (KeyError, TypeError) as e:
            raise DecodingError(f"Malformed workflow document: {e!r}") from e

        if not isinstance(workflow_name, str):
            raise DecodingError(
                f"Workflow name must be a string, got {type(workflow_name).__name__}"
            )
        try:
            workflow_class = repository.resolve(workflow_name)
        except KeyError as e:
            raise DecodingError(f"Unknown workflow '{workflow_name}'") from e

        if not isinstance(state, dict):
            raise DecodingError(f"Workflow state must be an object, got {type(state).__name__}")
        try:
            return workflow_class.from_state(state)
        except Exception as e:
            raise DecodingError(f"Cannot restore workflow '{workflow_name}': {e!r}") from e

    def serialize_response(self, response: Response) -> str:
        return self._dumps(asdict(response), f"response {response.correlation_id}")

    def deserialize_response(self, data: str) -> Response:
        document = self._loads(data)
        if not isinstance(document, dict):
            raise DecodingError(f"Response must be an object, got {type(document).__name__}")
        try:
            return Response(**document)
        except (TypeError, ValueError) as e:
            raise DecodingError(f"Malformed response document: {e}") from e

    @staticmethod
    def _dumps(document: dict[str, Any], what: str) -> str:
        try:
            return json.dumps(document)
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Cannot serialize {what}: {e}") from e

    @staticmethod
    def _loads(data: str) -> Any:
        try:
            return json.loads(data)
        except (TypeError, ValueError) as e:
            raise DecodingError(f"Invalid JSON payload: {e}") from e
