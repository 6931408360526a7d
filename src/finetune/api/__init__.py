"""
HTTP-equivalent request handlers.
"""

from .handlers import ApiResponse, FineTuneApi, error_response

__all__ = ["ApiResponse", "FineTuneApi", "error_response"]
