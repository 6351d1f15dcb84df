"""Operation types and their payload shapes.

Each operation type has exactly one payload model. Records store the payload
as JSON; ``parse_payload`` turns it back into the typed variant so the
executor can dispatch on the class rather than on loose dict keys.
"""

from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field

CREATE_LIST = "create_list"
UPDATE_LIST = "update_list"
DELETE_LIST = "delete_list"
CLEAR_LIST = "clear_list"
ADD_MOVIE = "add_movie"
REMOVE_MOVIE = "remove_movie"
TOGGLE_PRIVACY = "toggle_privacy"

OPERATION_TYPES = (
    CREATE_LIST,
    UPDATE_LIST,
    DELETE_LIST,
    CLEAR_LIST,
    ADD_MOVIE,
    REMOVE_MOVIE,
    TOGGLE_PRIVACY,
)

# Operations whose target list already exists remotely.
LIST_SCOPED_TYPES = frozenset(OPERATION_TYPES) - {CREATE_LIST}


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class CreateListPayload(_Payload):
    operation_type: Literal["create_list"] = CREATE_LIST
    name: str = Field(min_length=1)
    description: str = ""
    is_public: bool = False


class UpdateListPayload(_Payload):
    operation_type: Literal["update_list"] = UPDATE_LIST
    name: str | None = None
    description: str | None = None
    is_public: bool | None = None

    def remote_fields(self) -> dict:
        fields = {"name": self.name, "description": self.description, "public": self.is_public}
        return {k: v for k, v in fields.items() if v is not None}


class DeleteListPayload(_Payload):
    operation_type: Literal["delete_list"] = DELETE_LIST


class ClearListPayload(_Payload):
    operation_type: Literal["clear_list"] = CLEAR_LIST


class AddMoviePayload(_Payload):
    operation_type: Literal["add_movie"] = ADD_MOVIE
    movie_id: int = Field(ge=1)


class RemoveMoviePayload(_Payload):
    operation_type: Literal["remove_movie"] = REMOVE_MOVIE
    movie_id: int = Field(ge=1)


class TogglePrivacyPayload(_Payload):
    operation_type: Literal["toggle_privacy"] = TOGGLE_PRIVACY
    is_public: bool


OperationPayload = Union[
    CreateListPayload,
    UpdateListPayload,
    DeleteListPayload,
    ClearListPayload,
    AddMoviePayload,
    RemoveMoviePayload,
    TogglePrivacyPayload,
]


def parse_payload(operation_type: str, data: dict | None) -> OperationPayload:
    """Validate a stored payload against its operation type.

    Raises ``ValueError`` for unknown types and pydantic's
    ``ValidationError`` (a ``ValueError`` subclass) for bad data.
    """
    if operation_type not in OPERATION_TYPES:
        raise ValueError(f"Unsupported operation type: {operation_type}")
    raw = {k: v for k, v in (data or {}).items() if k != "operation_type"}
    return _PAYLOAD_BY_TYPE[operation_type].model_validate(raw)


def dump_payload(payload: OperationPayload) -> dict:
    return payload.model_dump(exclude={"operation_type"}, exclude_none=True)


_PAYLOAD_BY_TYPE: dict[str, type[_Payload]] = {
    CREATE_LIST: CreateListPayload,
    UPDATE_LIST: UpdateListPayload,
    DELETE_LIST: DeleteListPayload,
    CLEAR_LIST: ClearListPayload,
    ADD_MOVIE: AddMoviePayload,
    REMOVE_MOVIE: RemoveMoviePayload,
    TOGGLE_PRIVACY: TogglePrivacyPayload,
}
