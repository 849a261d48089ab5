# =============================================================================
# lms_core/services/__init__.py
# Service layer primitives
# =============================================================================

from .base_service import BaseService, ServiceResult

__all__ = ["BaseService", "ServiceResult"]
