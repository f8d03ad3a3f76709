"""Catalog tables: customers, contacts, products, plans, templates, taxes, discounts."""
