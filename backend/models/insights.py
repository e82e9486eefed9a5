"""Strict response schemas for the insight generator.

Every generator response is a JSON object tagged with "kind". Anything that
does not validate against the matching variant is treated as a collaborator
failure and the caller falls back to the keyword heuristics.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class FeatureDraft(_StrictModel):
    """Feature as described by the generator, before cluster metadata is attached."""

    name: str = Field(min_length=1)
    description: str = ""
    business_value: str = ""
    complexity: Literal["low", "medium", "high"] = "low"
    commits: list[str] = Field(default_factory=list)  # hashes (or prefixes) from the cluster


class FeatureExtractionResult(_StrictModel):
    kind: Literal["feature_extraction"]
    features: list[FeatureDraft]


class InsightResult(_StrictModel):
    kind: Literal["insights"]
    insights: list[Annotated[str, Field(min_length=1)]]


class AnswerResult(_StrictModel):
    kind: Literal["answer"]
    answer: str = Field(min_length=1)


InsightResponse = Annotated[
    Union[FeatureExtractionResult, InsightResult, AnswerResult],
    Field(discriminator="kind"),
]

insight_response_adapter = TypeAdapter(InsightResponse)
