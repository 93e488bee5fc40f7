# src/edge_gateway/utils/exceptions.py

class EdgeGatewayError(Exception):
    """Base exception class for the Edge Gateway"""
    pass

class ConfigurationError(EdgeGatewayError):
    """Raised when there are issues with configuration"""
    pass

class InitializationError(EdgeGatewayError):
    """Raised when component initialization fails"""
    pass

class DecodeError(EdgeGatewayError):
    """Raised when an inbound wire payload cannot be turned into an Event"""
    pass

class RuleEvaluationError(EdgeGatewayError):
    """Raised when a processing rule condition cannot be evaluated"""
    pass

class QueueFullError(EdgeGatewayError):
    """Raised when the dispatcher queue cannot accept an event without waiting"""
    pass

class NetworkError(EdgeGatewayError):
    """Raised when communication with the upstream endpoint fails"""
    pass

class StorageError(EdgeGatewayError):
    """Base exception for local store errors"""
    pass

class ConnectionPoolError(StorageError):
    """Exception for connection pool related errors"""
    pass
