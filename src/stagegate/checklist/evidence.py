"""Evidence payloads attached when a checklist item is completed.

Evidence is a tagged union keyed by ``type``; each variant has its own
mandatory fields.  Validation only checks the payload: the caller's dict is
stored as given, with ``timestamp`` filled in when missing.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from ..utils import _now_iso

EVIDENCE_TYPES = (
    "file_created",
    "file_modified",
    "command_run",
    "test_passed",
    "validation_passed",
    "manual",
    "other",
)


class _EvidenceBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    description: str = Field(min_length=1)
    timestamp: Optional[str] = None
    verified: Optional[bool] = None


class FileEvidence(_EvidenceBase):
    type: Literal["file_created", "file_modified"]
    files: list[str] = Field(min_length=1)

    @field_validator("files")
    @classmethod
    def _files_not_blank(cls, value: list[str]) -> list[str]:
        if any(not f.strip() for f in value):
            raise ValueError("file paths must be non-empty")
        return value


class CommandEvidence(_EvidenceBase):
    type: Literal["command_run"]
    command: str = Field(min_length=1)
    output: Optional[str] = None


class SuiteResults(BaseModel):
    passed: int = Field(ge=0)
    failed: int = Field(ge=0)
    total: int = Field(ge=0)


class SuitePassedEvidence(_EvidenceBase):
    type: Literal["test_passed"]
    test_results: SuiteResults = Field(alias="testResults")


class ValidationEvidence(_EvidenceBase):
    type: Literal["validation_passed"]
    validation_results: Optional[Any] = Field(default=None, alias="validationResults")


class ManualEvidence(_EvidenceBase):
    type: Literal["manual"]
    manual_notes: str = Field(min_length=1, alias="manualNotes")


class OtherEvidence(_EvidenceBase):
    type: Literal["other"]


Evidence = Annotated[
    Union[
        FileEvidence,
        CommandEvidence,
        SuitePassedEvidence,
        ValidationEvidence,
        ManualEvidence,
        OtherEvidence,
    ],
    Field(discriminator="type"),
]

_EVIDENCE_ADAPTER: TypeAdapter[Any] = TypeAdapter(Evidence)


def _describe(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p)
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def validate_evidence(evidence: Any, *, item_id: str = "") -> dict[str, Any]:
    """Check *evidence* against its variant and return the dict to store.

    Raises:
        ValidationError: unknown ``type`` or a missing variant field.
    """
    label = f" for item '{item_id}'" if item_id else ""
    if not isinstance(evidence, dict):
        raise ValidationError(f"Evidence{label} must be an object with a 'type' field")
    kind = evidence.get("type")
    if kind not in EVIDENCE_TYPES:
        raise ValidationError(
            f"Invalid evidence type{label}: {kind!r}; expected one of {', '.join(EVIDENCE_TYPES)}"
        )
    try:
        _EVIDENCE_ADAPTER.validate_python(evidence)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {kind} evidence{label}: {_describe(exc)}") from exc
    stored = dict(evidence)
    if not stored.get("timestamp"):
        stored["timestamp"] = _now_iso()
    return stored
