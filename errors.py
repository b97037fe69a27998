"""
Typed failures raised by the engagement pipeline.

Every error carries an HTTP status and a machine-readable code so the
Flask error handler in server.py can render it without inspecting the
message text.
"""


class PipelineError(Exception):
    status_code = 500
    code = "internal_error"
    retryable = False

    def __init__(self, message=None, **details):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details

    def to_dict(self):
        data = {"error": self.message, "code": self.code}
        if self.retryable:
            data["retryable"] = True
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(PipelineError):
    status_code = 400
    code = "validation_error"


class NotFoundError(PipelineError):
    status_code = 404
    code = "not_found"


class Forbidden(PipelineError):
    status_code = 403
    code = "forbidden"


class IllegalStateTransition(PipelineError):
    status_code = 409
    code = "illegal_state_transition"


class Conflict(PipelineError):
    """Lost a compare-and-set race. Refetch and retry."""
    status_code = 409
    code = "conflict"
    retryable = True


class ExternalDependencyError(PipelineError):
    status_code = 502
    code = "external_dependency_error"
