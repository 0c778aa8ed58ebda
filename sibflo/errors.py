# sibflo/errors.py


class SibfloError(Exception):
    pass


class RecoveryError(SibfloError):
    """
    Raised when every recovery strategy failed to pull structured data
    out of a model response.
    """

    def __init__(self, context: str, raw: str | None = None):
        super().__init__(f"Failed to extract valid JSON from {context}")
        self.context = context
        self.raw = raw


class NotInitializedError(SibfloError):
    pass


class MaxRetryErrorsException(SibfloError):
    pass


class PerItemGenerationError(SibfloError):
    """
    One item of a fan-out batch failed. Never propagated past the batch:
    the batch converts it into a placeholder for that slot.
    """

    def __init__(self, index: int, cause: BaseException):
        super().__init__(f"Item {index} failed: {cause}")
        self.index = index
        self.cause = cause


class ValidationError(SibfloError):
    pass


class MissingFieldError(SibfloError):
    def __init__(self, template_name: str, missing: list[str]):
        super().__init__(f"Template '{template_name}' is missing required fields: {', '.join(missing)}")
        self.template_name = template_name
        self.missing = missing
