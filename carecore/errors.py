"""
Caller-visible error types.

Each error knows its HTTP status and FHIR issue code so the blueprint can
render it as an OperationOutcome. ``Forbidden`` keeps the specific reason
for logs only; the message sent to the caller stays generic.
"""


class CareCoreError(Exception):
    status_code = 500
    issue_code = 'exception'

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class InvalidRequest(CareCoreError):
    status_code = 400
    issue_code = 'invalid'

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors or {}


class Unauthorized(CareCoreError):
    status_code = 401
    issue_code = 'login'


class NotFound(CareCoreError):
    """The record does not exist or has been soft-deleted."""
    status_code = 404
    issue_code = 'not-found'

    def __init__(self, resource_type, resource_id):
        super().__init__(f'{resource_type}/{resource_id} not found')
        self.resource_type = resource_type
        self.resource_id = resource_id


class Forbidden(CareCoreError):
    """The record exists but the access decision denied it."""
    status_code = 403
    issue_code = 'forbidden'

    def __init__(self, message='You do not have permission to access this resource', reason=None):
        super().__init__(message)
        self.reason = reason


class LookupFailure(CareCoreError):
    """An ownership or record lookup failed. Retryable."""
    status_code = 503
    issue_code = 'transient'

    def __init__(self, message='Lookup temporarily unavailable', cause=None):
        super().__init__(message)
        self.cause = cause


class Conflict(CareCoreError):
    status_code = 409
    issue_code = 'duplicate'


class StorageFailure(CareCoreError):
    status_code = 500
    issue_code = 'exception'

    def __init__(self, message='Failed to store resource', cause=None):
        super().__init__(message)
        self.cause = cause
