"""Type-tagged quality payloads: one variant per sample type.

The ``sample_type`` literal is the tag. Fields are all optional so the
same models serve as partial updates; only fields the caller actually
sent are merged into the stored payload.
"""

import uuid
from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, RootModel

from cryobank.models.enums import SampleType


class SpermQuality(BaseModel):
    sample_type: Literal["sperm"] = "sperm"
    volume: float | None = None
    concentration: float | None = None
    motility: float | None = None
    progressive_motility: float | None = None
    morphology: float | None = None
    ph: float | None = None
    viscosity: str | None = Field(default=None, max_length=100)
    liquefaction: str | None = Field(default=None, max_length=100)
    color: str | None = Field(default=None, max_length=100)
    total_sperm_count: int | None = None


class OocyteQuality(BaseModel):
    sample_type: Literal["oocyte"] = "oocyte"
    maturity_stage: str | None = Field(default=None, max_length=20)
    is_mature: bool | None = None
    retrieval_date: datetime | None = None
    cumulus_cells: str | None = Field(default=None, max_length=200)
    cytoplasm_appearance: str | None = Field(default=None, max_length=200)
    is_vitrified: bool | None = None
    vitrification_date: datetime | None = None


class EmbryoQuality(BaseModel):
    sample_type: Literal["embryo"] = "embryo"
    day_of_development: int | None = None
    grade: str | None = Field(default=None, max_length=20)
    cell_count: int | None = None
    morphology: str | None = Field(default=None, max_length=200)
    is_biopsied: bool | None = None
    is_pgt_tested: bool | None = None
    pgt_result: str | None = Field(default=None, max_length=200)
    fertilization_method: str | None = Field(default=None, max_length=50)
    oocyte_sample_id: uuid.UUID | None = None
    sperm_sample_id: uuid.UUID | None = None


QualityPayload = Annotated[
    Union[SpermQuality, OocyteQuality, EmbryoQuality],
    Field(discriminator="sample_type"),
]


class QualityUpdate(RootModel[QualityPayload]):
    """Request body for a partial quality update: one tagged variant."""


QUALITY_MODELS: dict[SampleType, type[BaseModel]] = {
    SampleType.SPERM: SpermQuality,
    SampleType.OOCYTE: OocyteQuality,
    SampleType.EMBRYO: EmbryoQuality,
}


def payload_tag(payload: BaseModel) -> SampleType:
    return SampleType(payload.sample_type)


def load_payload(sample_type: SampleType, stored: dict | None) -> BaseModel:
    """Rebuild the tagged variant from the stored field dict."""
    return QUALITY_MODELS[sample_type].model_validate(
        {**(stored or {}), "sample_type": sample_type.value}
    )


def payload_fields(payload: BaseModel, *, only_set: bool = True) -> dict:
    """JSON-ready field dict without the tag."""
    return payload.model_dump(
        mode="json", exclude_unset=only_set, exclude={"sample_type"}
    )
