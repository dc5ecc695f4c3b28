"""
Errors raised by the delivery workflow
"""


class DeliveryWorkflowError(Exception):
    """Base class for delivery workflow errors"""
    error_code = 'DELIVERY_WORKFLOW_ERROR'

    def __init__(self, message, field_errors=None):
        super().__init__(message)
        self.message = message
        self.field_errors = field_errors or {}


class DeliveryValidationError(DeliveryWorkflowError):
    """The capture was rejected; never retried"""
    error_code = 'VALIDATION_ERROR'


class InvalidGpsCoordinates(DeliveryValidationError):
    error_code = 'INVALID_GPS_COORDINATES'


class InvalidSignature(DeliveryValidationError):
    error_code = 'INVALID_SIGNATURE'


class InvalidPhoto(DeliveryValidationError):
    error_code = 'INVALID_PHOTO'


class PhotoProcessingFailed(DeliveryValidationError):
    error_code = 'PHOTO_PROCESSING_FAILED'


class ShipmentNotDeliverable(DeliveryValidationError):
    error_code = 'SHIPMENT_NOT_DELIVERABLE'


class DeliveryAccessDenied(DeliveryWorkflowError):
    error_code = 'ACCESS_DENIED'


class SyncNotRetryable(DeliveryWorkflowError):
    error_code = 'SYNC_NOT_RETRYABLE'
