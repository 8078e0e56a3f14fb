from marshmallow import (
    Schema, fields, validate, validates, validates_schema, ValidationError, EXCLUDE, INCLUDE,
)

from carecore import config

FHIR_ID_PATTERN = r'^[A-Za-z0-9\-.]{1,64}$'
PATIENT_REF_PATTERN = r'^(Patient/)?[A-Za-z0-9\-.]{1,64}$'
PRACTITIONER_REF_PATTERN = r'^Practitioner/[A-Za-z0-9\-.]{1,64}$'
DATE_PATTERN = r'^\d{4}-\d{2}-\d{2}'


class SearchParamsSchema(Schema):
    """Schema for list/search query parameters."""

    class Meta:
        # Ignore unknown query parameters instead of raising errors
        unknown = EXCLUDE

    page = fields.Integer(load_default=1, validate=validate.Range(min=1))
    limit = fields.Integer(
        load_default=config.DEFAULT_PAGE_SIZE,
        validate=validate.Range(min=1, max=config.MAX_PAGE_SIZE),
    )
    subject = fields.String(validate=validate.Regexp(
        PATIENT_REF_PATTERN, error='subject must be a patient id or Patient/{{id}}'))
    status = fields.String(validate=validate.Length(min=1, max=32))
    date = fields.String(validate=validate.Regexp(
        DATE_PATTERN, error='date must start with YYYY-MM-DD'))
    sort = fields.String(validate=validate.Length(max=64))


class ShareConsentSchema(Schema):
    """Schema for sharing a consent with a practitioner."""

    class Meta:
        unknown = EXCLUDE

    practitioner_reference = fields.String(
        required=True, data_key='practitionerReference',
        validate=validate.Regexp(PRACTITIONER_REF_PATTERN,
                                 error='practitionerReference must match Practitioner/{{id}}'),
        error_messages={'required': 'practitionerReference is required'},
    )
    practitioner_display = fields.String(data_key='practitionerDisplay', allow_none=True)
    days = fields.Integer(required=True, validate=validate.Range(min=1, max=365))


class ResourceBodySchema(Schema):
    """Envelope checks for a FHIR resource body; other fields pass through."""

    class Meta:
        unknown = INCLUDE

    resourceType = fields.String(required=True)
    id = fields.String(validate=validate.Regexp(
        FHIR_ID_PATTERN, error='Resource id must match {regex}'))
    status = fields.Raw(allow_none=True)

    @validates('status')
    def validate_status(self, value, **kwargs):
        if value is not None and not isinstance(value, str):
            raise ValidationError('status must be a string')

    @validates_schema
    def validate_references(self, data, **kwargs):
        """subject and patient, when present, must be references to a Patient."""
        for key in ('subject', 'patient'):
            value = data.get(key)
            if value is None:
                continue
            reference = value.get('reference') if isinstance(value, dict) else None
            if not isinstance(reference, str) or not reference:
                raise ValidationError(f'{key} must be a Reference with a reference string',
                                      field_name=key)
            if key == 'patient' and not reference.startswith('Patient/'):
                raise ValidationError('patient must reference Patient/{id}', field_name=key)
