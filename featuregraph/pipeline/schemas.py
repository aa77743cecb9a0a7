"""Response schemas for inference-oracle answers.

Every oracle response passes through `validate_response` before any value in
it is used. A response that does not match its schema raises
`OracleValidationError`, which callers treat as a per-unit, non-retryable
failure.
"""

from typing import Any, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

from featuregraph.errors import OracleValidationError
from featuregraph.feature import FeatureType

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def _not_blank(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value


class FeatureHypothesis(BaseModel, frozen=True):
    """Feature inferred from one evidence cluster."""

    feature_name: str
    description: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str

    @field_validator("feature_name", "description", "reasoning")
    @classmethod
    def not_blank(cls, value: str) -> str:
        return _not_blank(value)


class DuplicateJudgement(BaseModel, frozen=True):
    """Whether two features describe the same capability."""

    is_duplicate: bool
    similarity_score: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    recommended_merge: str | None = Field(default=None, description="'feature1', 'feature2' or 'combine'.")


class ClassificationJudgement(BaseModel, frozen=True):
    """Epic, story or task, with the indicators that decided it."""

    feature_type: FeatureType
    reasoning: str = ""
    indicators: list[str] = Field(default_factory=list)

    @field_validator("feature_type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class StoryAssignment(BaseModel, frozen=True):
    story: str
    parent_epic: str


class ProposedEpic(BaseModel, frozen=True):
    name: str
    description: str = ""

    @field_validator("name")
    @classmethod
    def not_blank(cls, value: str) -> str:
        return _not_blank(value)


class EpicSynthesis(BaseModel, frozen=True):
    """Story-to-epic assignments plus any epics the oracle proposes to create."""

    assignments: list[StoryAssignment] = Field(default_factory=list)
    new_epics: list[ProposedEpic] = Field(default_factory=list)


class ParentChildJudgement(BaseModel, frozen=True):
    """Pairwise answer: is the candidate a child of the proposed parent?"""

    is_child_of: bool
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    recommended_type: str | None = None


def validate_response(schema: type[SchemaT], data: Any) -> SchemaT:
    """Validate parsed oracle JSON against `schema`.

    Raises:
        OracleValidationError: If `data` is not an object or violates the
            schema. `field` names the first offending location.
    """
    if not isinstance(data, dict):
        raise OracleValidationError(f"{schema.__name__}: expected a JSON object, got {type(data).__name__}")
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        raise OracleValidationError(f"{schema.__name__}: {field}: {first.get('msg')}", field=field or None) from e
