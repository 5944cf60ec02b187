"""
Shipment insurance descriptor.

Stored as JSON on the shipment row and decoded into a typed union at the
column boundary, so the rest of the code never sees a loose dict.
"""

from decimal import Decimal
from typing import Literal, Union, Annotated

from pydantic import BaseModel, Field, TypeAdapter
from sqlalchemy.types import TypeDecorator, JSON


class NoInsurance(BaseModel):
    type: Literal["NONE"] = "NONE"


class CarrierRisk(BaseModel):
    type: Literal["CARRIER_RISK"] = "CARRIER_RISK"
    declared_value: Decimal
    cost: Decimal


Insurance = Annotated[Union[NoInsurance, CarrierRisk], Field(discriminator="type")]

_insurance_adapter = TypeAdapter(Insurance)


def parse_insurance(value) -> Union[NoInsurance, CarrierRisk]:
    return _insurance_adapter.validate_python(value)


class InsuranceType(TypeDecorator):
    """JSON column holding a NoInsurance | CarrierRisk descriptor."""

    impl = JSON
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            value = NoInsurance()
        if isinstance(value, dict):
            value = parse_insurance(value)
        return value.model_dump(mode="json")

    def process_result_value(self, value, dialect):
        if value is None:
            return NoInsurance()
        return parse_insurance(value)
