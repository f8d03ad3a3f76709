"""Discount code lookup, pricing and redemption."""

from billing_modules.discounts.service import DiscountService

__all__ = ["DiscountService"]
