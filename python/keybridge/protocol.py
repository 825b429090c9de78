"""
Wire protocol between the page side and the peer.

All messages travel as plain dicts (JSON objects). The models here validate
them and translate between Python field names and the wire names.
"""

from enum import Enum
from typing import Any as PyAny, Dict, List, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Action(str, Enum):
    BACKGROUND_OPERATION = "backgroundoperation"
    GET_EXTENSION_PROPERTIES = "getExtensionProperties"
    LOG = "log"


class OperationKind(str, Enum):
    FUNCTION_CALL = "functionCall"
    PROPERTY_ACCESS = "propertyAccess"
    PROPERTY_SET = "propertySet"

    @property
    def wire_name(self) -> str:
        # Reads and writes share one wire operation; the argument count tells them apart
        if self is OperationKind.PROPERTY_SET:
            return OperationKind.PROPERTY_ACCESS.value
        return self.value


class PropertyKind(str, Enum):
    VALUE = "value"
    OBJECT = "object"
    FUNCTION = "function"


class RemoteOperationRequest(BaseModel):
    """A function call, property read or property write on the peer."""

    model_config = ConfigDict(populate_by_name=True)

    property_path: str = Field(alias="property")
    operation_kind: OperationKind = Field(alias="operation")
    arguments: List[PyAny] = Field(default_factory=list, alias="args")
    function_argument_indices: List[int] = Field(default_factory=list, alias="functionArgs")

    @model_validator(mode="after")
    def _check_arguments(self) -> "RemoteOperationRequest":
        for index in self.function_argument_indices:
            if index < 0 or index >= len(self.arguments):
                raise ValueError(f"Callback index {index} is not a valid argument position")
        if self.operation_kind is OperationKind.PROPERTY_SET and len(self.arguments) != 1:
            raise ValueError("A property write takes exactly one value")
        if self.operation_kind is OperationKind.PROPERTY_ACCESS and self.arguments:
            raise ValueError("A property read takes no arguments")
        return self

    def to_message(self) -> Dict[str, PyAny]:
        return {
            "action": Action.BACKGROUND_OPERATION.value,
            "property": self.property_path,
            "operation": self.operation_kind.wire_name,
            "args": list(self.arguments),
            "functionArgs": list(self.function_argument_indices),
        }

    @classmethod
    def from_message(cls, message: Dict[str, PyAny]) -> "RemoteOperationRequest":
        """Parse a ``backgroundoperation`` message, telling reads from writes."""
        args = message.get("args") or []
        operation = message.get("operation")
        if operation == OperationKind.PROPERTY_ACCESS.value:
            operation = OperationKind.PROPERTY_SET if args else OperationKind.PROPERTY_ACCESS
        return cls(
            property_path=message.get("property", ""),
            operation_kind=operation,
            arguments=args,
            function_argument_indices=message.get("functionArgs") or [],
        )


class OperationResult(BaseModel):
    """Ordinary reply to a request: a result or an error payload."""

    result: PyAny = None
    error: PyAny = None


class CallbackInvocation(BaseModel):
    """Out-of-band reply asking the page side to run a callback argument."""

    model_config = ConfigDict(populate_by_name=True)

    index: int = Field(alias="calledArg")
    args: List[PyAny] = Field(default_factory=list)

    def to_message(self) -> Dict[str, PyAny]:
        return {"calledArg": self.index, "args": list(self.args)}


Reply = Union[OperationResult, CallbackInvocation]


def parse_reply(reply: Dict[str, PyAny]) -> Reply:
    if "calledArg" in reply:
        return CallbackInvocation.model_validate(reply)
    return OperationResult.model_validate(reply)


class PeerPropertyDescriptor(BaseModel):
    """One node of the described peer object graph."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    kind: PropertyKind = Field(default=PropertyKind.VALUE, alias="type")
    children: List["PeerPropertyDescriptor"] = Field(default_factory=list, alias="properties")

    @field_validator("kind", mode="before")
    @classmethod
    def _coerce_kind(cls, value: PyAny) -> PyAny:
        # Anything that is neither an object nor a function is read as a plain value
        if isinstance(value, PropertyKind):
            return value
        if value in (PropertyKind.OBJECT.value, PropertyKind.FUNCTION.value):
            return value
        return PropertyKind.VALUE

    def to_message(self) -> Dict[str, PyAny]:
        message = {"name": self.name, "type": self.kind.value}
        if self.kind is PropertyKind.OBJECT:
            message["properties"] = [child.to_message() for child in self.children]
        return message


PeerPropertyDescriptor.model_rebuild()


class PropertiesReply(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    extension_objects: List[PeerPropertyDescriptor] = Field(
        default_factory=list, alias="extensionObjects"
    )

    def to_message(self) -> Dict[str, PyAny]:
        return {"extensionObjects": [d.to_message() for d in self.extension_objects]}


class LogMessage(BaseModel):
    value: PyAny = None

    def to_message(self) -> Dict[str, PyAny]:
        return {"action": Action.LOG.value, "value": self.value}


def properties_request() -> Dict[str, PyAny]:
    return {"action": Action.GET_EXTENSION_PROPERTIES.value}
