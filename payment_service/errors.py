class PaymentServiceError(Exception):
    pass


class GatewayError(PaymentServiceError):
    """The M-Pesa gateway could not be reached or returned an unusable response."""


class PaymentNotFound(PaymentServiceError):
    def __init__(self, transaction_id: str):
        super().__init__(f"Payment not found for checkout request: {transaction_id}")
        self.transaction_id = transaction_id


class InvalidTransition(PaymentServiceError):
    def __init__(self, current, target):
        super().__init__(f"Transition {current.value} -> {target.value} is not allowed")
        self.current = current
        self.target = target


class DuplicateReceipt(PaymentServiceError):
    def __init__(self, receipt_number: str):
        super().__init__(f"Receipt already recorded on another payment: {receipt_number}")
        self.receipt_number = receipt_number
