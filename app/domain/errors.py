# app/domain/errors.py
"""
Exception classes for the scene composer pipeline
"""
from typing import Optional, Dict, Any


class SceneComposerError(Exception):
    """Base exception class for scene composer errors"""
    def __init__(self, message: str, code: str = "UNKNOWN_ERROR", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to standard error format"""
        return {
            "code": self.code,
            "message": str(self),
            "details": self.details
        }


class ConfigurationError(SceneComposerError):
    """Raised when there's an error in configuration or environment variables"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="CONFIGURATION_ERROR", details=details)


class ImageProcessingError(SceneComposerError):
    """Raised when a pipeline stage (resize, annotate, crop, encode...) fails"""
    def __init__(self, message: str, stage: str = "unknown", details: Optional[Dict[str, Any]] = None, code: str = "IMAGE_PROCESSING_ERROR"):
        merged = {"stage": stage}
        merged.update(details or {})
        super().__init__(message, code=code, details=merged)
        self.stage = stage


class DecodeError(ImageProcessingError):
    """Raised when input bytes are not a valid/loadable image"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, stage="decode", details=details, code="DECODE_ERROR")


class CompositeValidationError(ImageProcessingError):
    """Raised when a composite request is rejected before any work starts"""
    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else None
        super().__init__(message, stage="validation", details=details, code="VALIDATION_ERROR")


class ExternalBoundaryError(SceneComposerError):
    """Raised when the generative model returns no usable image or fails explicitly"""
    def __init__(self, message: str, raw_response: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        merged = dict(details or {})
        if raw_response is not None:
            merged["raw_response"] = raw_response
        super().__init__(message, code="EXTERNAL_BOUNDARY_ERROR", details=merged)
        self.raw_response = raw_response
