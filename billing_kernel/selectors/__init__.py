"""Read-only selectors."""

from billing_kernel.selectors.base import BaseSelector

__all__ = ["BaseSelector"]
