from esp_integration.auth.dependencies import require_internal_caller

__all__ = [
    "require_internal_caller",
]
