"""Error taxonomy for scoring, completion, and benchmark recomputation."""


def build_error_payload(code, message, details=None):
    payload = {"error": {"code": code, "message": message}}
    if details is not None:
        payload["error"]["details"] = details
    return payload


class AssessmentError(Exception):
    """Base class for intended, meaningful failures surfaced to callers."""

    code = "assessment_error"

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        return build_error_payload(self.code, self.message, self.details)


class NotFound(AssessmentError):
    code = "not_found"


class InsufficientData(AssessmentError):
    # Completion attempted with no completed invitations
    code = "insufficient_data"


class InvalidTransition(InsufficientData):
    # Status move not permitted from the current state
    code = "invalid_transition"


class InvalidTemplateConfiguration(AssessmentError):
    code = "invalid_template_configuration"


class InvalidResponse(AssessmentError):
    code = "invalid_response"


class ResponseAlreadyComplete(AssessmentError):
    # Completed responses are immutable
    code = "response_already_complete"


class ConcurrentCompletionConflict(AssessmentError):
    # Caller should re-fetch rather than retry blindly
    code = "concurrent_completion_conflict"


class BenchmarkRecomputationConflict(AssessmentError):
    code = "benchmark_recomputation_conflict"


class BenchmarkSampleShrank(AssessmentError):
    code = "benchmark_sample_shrank"
