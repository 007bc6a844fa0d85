"""Expected response shapes per document type.

Each shape is a pydantic model tagged by ``document_type``; the tagged union
is validated in one explicit step that either returns a typed record or raises
SchemaValidationError. Keys are required (values may be null) so a reply that
silently drops a field is caught.
"""

from datetime import date
from typing import Annotated, Any, Literal, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from errors import SchemaValidationError

DBSCheckType = Literal["basic", "standard", "enhanced", "enhanced_barred"]
DonorType = Literal["individual", "corporate", "foundation", "trust", "government", "other"]
DonationSource = Literal["online", "cash", "cheque", "bank_transfer", "other"]
TransferMethod = Literal["bank_transfer", "wire_transfer", "cash_courier", "other"]


class _Shape(BaseModel):
    model_config = ConfigDict(extra="ignore")

    confidence: float = Field(ge=0.0, le=1.0)


class DBSCertificate(_Shape):
    document_type: Literal["dbs_certificate"] = "dbs_certificate"
    person_name: str | None
    dbs_certificate_number: Annotated[str, Field(pattern=r"^\d{12}$")] | None
    issue_date: date | None
    dbs_check_type: DBSCheckType | None
    expiry_date: date | None = None

    @field_validator("dbs_certificate_number", mode="before")
    @classmethod
    def _digits_as_text(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return f"{value:012d}"
        if isinstance(value, str):
            return value.replace(" ", "").replace("-", "")
        return value


class Receipt(_Shape):
    document_type: Literal["receipt"] = "receipt"
    vendor_name: str | None
    amount: Annotated[float, Field(ge=0)] | None
    currency: str = "GBP"
    transaction_date: date | None
    category: str | None = None
    reference_number: str | None = None


class Donation(_Shape):
    document_type: Literal["donation"] = "donation"
    donor_name: str | None
    amount: float = Field(ge=0)
    date_received: date
    source: DonationSource = "other"
    donor_type: DonorType = "individual"
    is_anonymous: bool = False
    restricted_funds: bool = False
    restriction_details: str | None = None
    gift_aid_eligible: bool = False
    reference_number: str | None = None


class OverseasTransfer(_Shape):
    document_type: Literal["overseas_transfer"] = "overseas_transfer"
    country_name: str
    amount: float = Field(ge=0)
    currency: str
    amount_gbp: float | None = None
    transfer_method: TransferMethod = "bank_transfer"
    transfer_date: date
    activity_description: str | None = None
    partner_organization: str | None = None


ExtractedDocument = Annotated[
    Union[DBSCertificate, Receipt, Donation, OverseasTransfer],
    Field(discriminator="document_type"),
]

_ADAPTER: TypeAdapter = TypeAdapter(ExtractedDocument)

# Document types that share a shape with another tag.
SHAPE_ALIASES = {"expense": "receipt"}


def validate_document(document_type: str, data: dict[str, Any]) -> BaseModel:
    """Validate an inference reply against its document type's shape."""
    tag = SHAPE_ALIASES.get(document_type, document_type)
    try:
        return _ADAPTER.validate_python({**data, "document_type": tag})
    except pydantic.ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'][1:]) or 'document_type'}: {err['msg']}"
            for err in e.errors()
        ]
        raise SchemaValidationError(document_type, errors) from e
