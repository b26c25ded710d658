"""
Domain errors raised by the marketplace logic.

Every error carries the HTTP status the API answers with and a message that
is safe to show to the user.
"""


class MarketError(Exception):
    status_code = 400
    default_message = "Request could not be processed"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InsufficientStock(MarketError):
    def __init__(self, product_name, requested, available):
        self.product_name = product_name
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {product_name}. Available: {available}, Requested: {requested}"
        )


class ProductNotFound(MarketError):
    status_code = 404
    default_message = "Product not found"


class NotFoundOrUnauthorized(MarketError):
    # Same message whether the review is missing or belongs to someone else.
    status_code = 404
    default_message = "Review not found or unauthorized"

    def __init__(self):
        super().__init__()


class RatingOutOfRange(MarketError):
    default_message = "Rating must be between 1 and 5"


class InvalidOrderStatus(MarketError):
    def __init__(self, status):
        self.status = status
        super().__init__(f"Invalid order status: {status}")


class InvalidStatusTransition(MarketError):
    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot change order status from {current} to {requested}")


class OrderNotFound(MarketError):
    status_code = 404
    default_message = "Order not found"


class ReviewNotAllowed(MarketError):
    status_code = 403
    default_message = "You can only review products you have purchased and received"


class AlreadyReviewed(MarketError):
    status_code = 409
    default_message = "You have already reviewed this product"


class ConversationNotFound(MarketError):
    status_code = 404
    default_message = "Conversation not found"
