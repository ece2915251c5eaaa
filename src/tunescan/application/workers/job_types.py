"""Job types and their payload schemas.

Hey future me - EVERY job type needs an entry in JOB_PAYLOAD_SCHEMAS! enqueue() validates
against it (bad payloads never reach the table) and the worker re-parses the stored JSON
before calling the handler, so handlers always receive a typed model.

Wire format is camelCase (scanId, allowedRoots, ...) because the API layer speaks JSON that
way; Python code uses the snake_case attributes.
"""

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from tunescan.config import SCAN_DIRECTORY_JOB_TYPE
from tunescan.domain.exceptions import JobPayloadValidationError


class JobType(str, Enum):
    """Registered job types."""

    SCAN_DIRECTORY = SCAN_DIRECTORY_JOB_TYPE


NonEmptyStr = Annotated[StrictStr, Field(min_length=1)]
PositiveStrictInt = Annotated[StrictInt, Field(gt=0)]


class _Payload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class ScanOptions(_Payload):
    """Traversal options of a scan.directory job."""

    max_depth: PositiveStrictInt | None = None
    max_files: PositiveStrictInt | None = None
    ignore_directories: list[StrictStr] = Field(default_factory=list)
    ignore_extensions: list[StrictStr] = Field(default_factory=list)


class ScanDirectoryPayload(_Payload):
    """Payload of a scan.directory job."""

    scan_id: NonEmptyStr
    user_id: NonEmptyStr
    root_path: NonEmptyStr
    allowed_roots: Annotated[list[NonEmptyStr], Field(min_length=1)]
    options: ScanOptions = Field(default_factory=ScanOptions)


JOB_PAYLOAD_SCHEMAS: dict[str, type[BaseModel]] = {
    JobType.SCAN_DIRECTORY.value: ScanDirectoryPayload,
}


def parse_payload(job_type: str, payload: Any) -> BaseModel:
    """Validate a payload against the schema registered for its job type.

    Args:
        job_type: Job type discriminator
        payload: Raw payload (dict or already-built model)

    Returns:
        The validated payload model

    Raises:
        JobPayloadValidationError: Unknown job type or invalid payload
    """
    schema = JOB_PAYLOAD_SCHEMAS.get(str(getattr(job_type, "value", job_type)))
    if schema is None:
        raise JobPayloadValidationError(
            str(job_type), message=f"Unknown job type '{job_type}'"
        )

    if isinstance(payload, schema):
        return payload

    try:
        return schema.model_validate(payload)
    except PydanticValidationError as e:
        raise JobPayloadValidationError(
            str(job_type),
            errors=e.errors(include_url=False, include_context=False),
        ) from e


def dump_payload(payload: BaseModel) -> dict[str, Any]:
    """Serialize a validated payload to its camelCase JSON-ready form."""
    return payload.model_dump(by_alias=True, mode="json")
