"""Common error handling for all services"""

class ServiceError(Exception):
    """Base exception for all service errors"""
    pass

class CaptureError(ServiceError):
    """Base exception for capture-related errors"""
    pass

class CaptureUnavailableError(CaptureError):
    """Raised when a capture device or its permission is unavailable"""
    pass

class AnalyzerError(ServiceError):
    """Base exception for analyzer-related errors"""
    pass

class ClassificationError(AnalyzerError):
    """Raised when a multimodal classification call fails"""
    pass

class DialogueError(ServiceError):
    """Base exception for voice dialogue errors"""
    pass

class RecoverableDialogueError(DialogueError):
    """Dialogue error after which the conversation may continue"""
    pass

class NoSpeechDetectedError(RecoverableDialogueError):
    """Raised when a recording contains no usable speech"""
    pass

class SynthesisError(RecoverableDialogueError):
    """Raised when speech synthesis fails"""
    pass

class FatalDialogueError(DialogueError):
    """Dialogue error that ends the conversation"""
    pass

class DatabaseError(ServiceError):
    """Base exception for database-related errors"""
    pass

class SessionError(ServiceError):
    """Raised for invalid focus session operations"""
    pass
