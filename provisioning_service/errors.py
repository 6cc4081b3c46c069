from common.error_handling import BusinessLogicError, ServiceError, ErrorCodes

class ProvisioningUnavailable(ServiceError):
    """Device unreachable, timed out, or its circuit is open"""

    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(ErrorCodes.PROVISIONING_UNAVAILABLE, message, original_error)

class ProvisioningRejected(ServiceError):
    """Device answered but refused the request; retry with backoff"""

    def __init__(self, message: str, original_error: Exception = None, status_code: int = None):
        self.status_code = status_code
        super().__init__(ErrorCodes.PROVISIONING_REJECTED, message, original_error)

class InvalidCredentialInput(BusinessLogicError):
    def __init__(self, message: str):
        super().__init__(ErrorCodes.INVALID_CREDENTIAL_INPUT, message, field="mac_address")
