"""Target import schemas and CSV template export."""

import csv
import io
from datetime import date, timedelta

from errors import ValidationError
from models import FieldType, ImportSchema, SchemaField

IMPORT_SCHEMAS: dict[str, ImportSchema] = {
    "safeguarding": ImportSchema(id="safeguarding", fields=[
        SchemaField(name="person_name", type=FieldType.STRING, required=True,
                    description="Full name of person"),
        SchemaField(name="dbs_certificate_number", type=FieldType.STRING, required=False,
                    description="12-digit DBS certificate number"),
        SchemaField(name="issue_date", type=FieldType.DATE, required=True,
                    description="Date certificate was issued"),
        SchemaField(name="expiry_date", type=FieldType.DATE, required=True,
                    description="Date certificate expires"),
        SchemaField(name="role_title", type=FieldType.STRING, required=True,
                    description="Job title or role"),
        SchemaField(name="role_type", type=FieldType.ENUM, required=True,
                    description="employee, volunteer, trustee, or contractor",
                    choices=["employee", "volunteer", "trustee", "contractor"]),
        SchemaField(name="dbs_check_type", type=FieldType.ENUM, required=True,
                    description="basic, standard, enhanced, or enhanced_barred",
                    choices=["basic", "standard", "enhanced", "enhanced_barred"]),
        SchemaField(name="department", type=FieldType.STRING, required=False,
                    description="Department or team"),
    ]),
    "fundraising": ImportSchema(id="fundraising", fields=[
        SchemaField(name="source", type=FieldType.STRING, required=True,
                    description="Source of income"),
        SchemaField(name="amount", type=FieldType.NUMBER, required=True,
                    description="Amount received"),
        SchemaField(name="date_received", type=FieldType.DATE, required=True,
                    description="Date of receipt"),
        SchemaField(name="donor_name", type=FieldType.STRING, required=False,
                    description="Name of donor"),
        SchemaField(name="donor_type", type=FieldType.ENUM, required=True,
                    description="individual, corporate, foundation, trust, government, or other",
                    choices=["individual", "corporate", "foundation", "trust", "government", "other"]),
        SchemaField(name="is_anonymous", type=FieldType.BOOLEAN, required=False,
                    description="Whether donation is anonymous"),
        SchemaField(name="gift_aid_eligible", type=FieldType.BOOLEAN, required=False,
                    description="Eligible for Gift Aid"),
        SchemaField(name="reference_number", type=FieldType.STRING, required=False,
                    description="Reference or invoice number"),
    ]),
    "overseas_activities": ImportSchema(id="overseas_activities", fields=[
        SchemaField(name="activity_name", type=FieldType.STRING, required=True,
                    description="Name of activity"),
        SchemaField(name="country_code", type=FieldType.STRING, required=True,
                    description="Country code or name"),
        SchemaField(name="amount", type=FieldType.NUMBER, required=True,
                    description="Amount in original currency"),
        SchemaField(name="currency", type=FieldType.STRING, required=True,
                    description="Currency code"),
        SchemaField(name="amount_gbp", type=FieldType.NUMBER, required=False,
                    description="Amount in GBP"),
        SchemaField(name="transfer_date", type=FieldType.DATE, required=True,
                    description="Date of transfer"),
        SchemaField(name="transfer_method", type=FieldType.ENUM, required=True,
                    description="bank_transfer, wire_transfer, cash_courier, or other",
                    choices=["bank_transfer", "wire_transfer", "cash_courier", "other"]),
        SchemaField(name="partner_organization", type=FieldType.STRING, required=False,
                    description="Partner organization name"),
    ]),
}

_SAMPLE_COUNTRIES = ["Kenya", "India", "Uganda"]


def get_schema(schema_id: str) -> ImportSchema:
    schema = IMPORT_SCHEMAS.get(schema_id)
    if schema is None:
        raise ValidationError(f"Unknown import schema: {schema_id}")
    return schema


def generate_csv_template(schema_id: str, rows: int = 3, today: date | None = None) -> str:
    """Header row plus illustrative sample rows for an import schema."""
    schema = get_schema(schema_id)
    today = today or date.today()

    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow([f.name for f in schema.fields])
    for i in range(1, rows + 1):
        writer.writerow([_sample_value(f, i, today) for f in schema.fields])
    return buf.getvalue()


def _sample_value(field: SchemaField, i: int, today: date) -> str:
    name = field.name
    if field.type == FieldType.DATE:
        offset = timedelta(days=365 * 3 - 30 * i) if "expiry" in name else -timedelta(days=30 * i)
        return (today + offset).isoformat()
    if field.type == FieldType.BOOLEAN:
        return "Yes" if i % 2 == 0 else "No"
    if field.type == FieldType.NUMBER:
        base = 1000 if "amount" in name else 100
        return f"{base * i:.2f}"
    if field.type == FieldType.ENUM:
        return field.choices[0] if field.choices else ""
    if "certificate_number" in name:
        return f"{123456789012 + i - 1:012d}"
    if "name" in name:
        return f"Example Person {i}" if name in ("person_name", "donor_name") else f"Example {name.replace('_', ' ').title()} {i}"
    if name == "country_code":
        return _SAMPLE_COUNTRIES[(i - 1) % len(_SAMPLE_COUNTRIES)]
    if name == "currency":
        return "GBP"
    if "reference" in name:
        return f"REF-{today.year}-{i:03d}"
    return f"Sample {name.replace('_', ' ')} {i}"
