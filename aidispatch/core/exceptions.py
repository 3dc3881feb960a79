from typing import Optional


class DispatchCoreError(Exception):
    """Base exception for all dispatch-core errors."""
    error_code: str = "internal_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ModelNotFoundError(DispatchCoreError):
    error_code = "config_missing"

    def __init__(self, model_id: str):
        self.model_id = model_id
        super().__init__(f"Model '{model_id}' is not registered")


class UnknownCategoryError(DispatchCoreError):
    error_code = "unknown_category"

    def __init__(self, task_category: str):
        self.task_category = task_category
        super().__init__(f"No task policy configured for category '{task_category}'")


class BackendError(DispatchCoreError):
    error_code = "backend_error"

    def __init__(self, message: str, model_id: str = "", original_status: int = 0):
        self.model_id = model_id
        self.original_status = original_status
        super().__init__(message)


class BackendConfigError(BackendError):
    """The backend cannot serve this model at all (missing key, unknown model)."""
    error_code = "config_missing"


class BackendRateLimitedError(BackendError):
    error_code = "rate_limited"

    def __init__(
        self,
        message: str,
        model_id: str = "",
        original_status: int = 429,
        retry_after: Optional[float] = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, model_id, original_status)


class BackendTransientError(BackendError):
    """Timeout, network failure or a rejected payload; the next candidate may succeed."""
    error_code = "transient"


class ImageResolutionError(DispatchCoreError):
    error_code = "resolution_failed"

    def __init__(self, message: str, ref: str = ""):
        self.ref = ref
        super().__init__(message)


class BudgetExhaustedError(DispatchCoreError):
    error_code = "budget_exhausted"


class ChainExhaustedError(DispatchCoreError):
    error_code = "exhausted"

    def __init__(self, message: str, tried: Optional[list] = None):
        self.tried = tried or []
        super().__init__(message)


class LedgerUnavailableError(DispatchCoreError):
    error_code = "ledger_unavailable"
