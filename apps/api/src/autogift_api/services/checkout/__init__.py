from .auto_gift import AutoGiftCheckoutService, CheckoutResult, checkout_metadata, generate_order_number

__all__ = ["AutoGiftCheckoutService", "CheckoutResult", "checkout_metadata", "generate_order_number"]
