"""Error hierarchy for the automation engine."""


class AutomationError(Exception):
    """Base error for all engine failures."""

    code = "AUTOMATION_ERROR"

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(AutomationError):
    """An action cannot run as configured (unknown type, missing executor)."""

    code = "CONFIGURATION_ERROR"


class AutomationValidationError(AutomationError):
    """An automation definition was rejected at save time."""

    code = "VALIDATION"

    def __init__(self, message: str, field: str = None):
        super().__init__(message, {"field": field} if field else None)
        self.field = field


class ConditionEvaluationError(AutomationError):
    """A condition is malformed and cannot be evaluated."""

    code = "CONDITION_ERROR"

    def __init__(self, message: str, field: str = None, operator: str = None):
        super().__init__(message, {"field": field, "operator": operator})
        self.field = field
        self.operator = operator


class ActionTimeoutError(AutomationError):
    """An action executor did not answer within its timeout."""

    code = "TIMEOUT"


class PersistenceError(AutomationError):
    """The persistence layer kept failing after retries."""

    code = "PERSISTENCE_ERROR"

    def __init__(self, message: str, operation: str = None, attempts: int = 0):
        super().__init__(message, {"operation": operation, "attempts": attempts})
        self.operation = operation
        self.attempts = attempts


class AutomationNotFoundError(AutomationError):
    code = "NOT_FOUND"


class ExecutionNotFoundError(AutomationError):
    code = "NOT_FOUND"
