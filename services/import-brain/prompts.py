"""Instruction templates for extraction and column mapping.

Each extraction prompt names the exact JSON keys the response shape in
document_types.py validates, plus an overall "confidence" the engine uses for
routing.
"""

import re

_JSON_SUFFIX = """

CRITICAL OUTPUT RULES:
- Return ONLY a single valid JSON object. No other text before or after.
- Do NOT wrap in code fences. Just raw JSON.
- If a field cannot be determined with confidence, set it to null.
- Optionally add "<field>_confidence" (0.0-1.0) for any field you are unsure about."""

EXTRACTION_SYSTEM = (
    "You are a data extraction specialist. Extract structured data from the supplied "
    "content accurately. Return valid JSON only."
)

MAPPING_SYSTEM = (
    "You are a data mapping expert. Analyze CSV columns and map them to database "
    "schema fields accurately."
)

_DBS_CERTIFICATE = """Extract the following information from this DBS certificate:

1. Full name of the person
2. DBS certificate number (exactly 12 digits)
3. Date of issue (format: YYYY-MM-DD)
4. Type of check (Basic, Standard, Enhanced, or Enhanced with Barred List)
5. Any visible expiry date if mentioned

Return as JSON with these fields:
{
  "person_name": "string",
  "dbs_certificate_number": "string (12 digits)",
  "issue_date": "YYYY-MM-DD",
  "dbs_check_type": "basic" | "standard" | "enhanced" | "enhanced_barred",
  "expiry_date": "YYYY-MM-DD or null",
  "confidence": 0.0-1.0
}""" + _JSON_SUFFIX

_RECEIPT = """Extract expense information from this receipt:

1. Vendor/Organization name
2. Total amount (in original currency)
3. Currency (GBP, USD, EUR, etc.)
4. Date of transaction
5. Category (if determinable)
6. Any reference numbers

Return as JSON:
{
  "vendor_name": "string",
  "amount": number,
  "currency": "string",
  "transaction_date": "YYYY-MM-DD",
  "category": "string or null",
  "reference_number": "string or null",
  "confidence": 0.0-1.0
}""" + _JSON_SUFFIX

_DONATION = """Extract donation information from this content:

Look for:
- Donor name (individual or organization)
- Donation amount
- Date received
- Any restrictions or designations
- Reference numbers
- Gift Aid declaration

Return as JSON:
{
  "donor_name": "string or null",
  "amount": number,
  "date_received": "YYYY-MM-DD",
  "source": "online" | "cash" | "cheque" | "bank_transfer" | "other",
  "donor_type": "individual" | "corporate" | "foundation" | "trust" | "government" | "other",
  "is_anonymous": boolean,
  "restricted_funds": boolean,
  "restriction_details": "string or null",
  "gift_aid_eligible": boolean,
  "reference_number": "string or null",
  "confidence": 0.0-1.0
}""" + _JSON_SUFFIX

_OVERSEAS_TRANSFER = """Extract international transfer information:

Look for:
- Recipient country
- Transfer amount and currency
- Transfer method
- Date of transfer
- Purpose/Activity description
- Any partner organization mentioned

Return as JSON:
{
  "country_name": "string",
  "amount": number,
  "currency": "string",
  "amount_gbp": "number (convert if possible) or null",
  "transfer_method": "bank_transfer" | "wire_transfer" | "cash_courier" | "other",
  "transfer_date": "YYYY-MM-DD",
  "activity_description": "string or null",
  "partner_organization": "string or null",
  "confidence": 0.0-1.0
}""" + _JSON_SUFFIX

EXTRACTION_PROMPTS: dict[str, str] = {
    "dbs_certificate": _DBS_CERTIFICATE,
    "donation": _DONATION,
    "expense": _RECEIPT,
    "receipt": _RECEIPT,
    "overseas_transfer": _OVERSEAS_TRANSFER,
}

CSV_MAPPING = """You are a CSV column mapping expert. Map the provided CSV columns to our database schema.

CSV Headers: {{headers}}

Target Schema Fields:
{{schema_fields}}

For each target field, identify the most likely CSV column that contains that data.
Consider variations in naming, abbreviations, and common alternatives.
Match columns based on both name similarity and data content.

Return as JSON:
{
  "mappings": {
    "target_field_1": {
      "csv_column": "matched column name or null",
      "confidence": 0.0-1.0,
      "reason": "brief explanation"
    }
  },
  "unmapped_columns": ["columns that don't match any field"],
  "missing_required": ["required fields with no match"]
}"""

COLUMN_SUGGESTION = """Given a CSV column named "{{column}}" with these sample values:
{{sample_values}}

Which of these target fields is the best match?
{{target_fields}}

Return only the field name or null if no good match."""


def fill_prompt(template: str, variables: dict) -> str:
    """Substitute {{name}} placeholders; unknown placeholders are left as-is."""
    def _sub(match: re.Match) -> str:
        value = variables.get(match.group(1))
        return match.group(0) if value is None else str(value)

    return re.sub(r"\{\{(\w+)\}\}", _sub, template)
