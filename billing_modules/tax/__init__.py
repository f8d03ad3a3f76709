"""Tax suggestions and rate validation."""

from billing_modules.tax.service import ApplicableTax, TaxService

__all__ = ["ApplicableTax", "TaxService"]
